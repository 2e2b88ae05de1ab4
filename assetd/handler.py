import mimetypes
from email.utils import formatdate, parsedate_to_datetime
from typing import Optional, Tuple
from urllib.parse import quote

from .assets import AssetRoot
from .models import Asset, Request, ResponseSpec

INDEX_PAGE = "index.html"

TEXT_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "X-Content-Type-Options": "nosniff",
}


class RangeNotSatisfiable(Exception):
    pass


class FileHandler:
    def __init__(self, assets: AssetRoot) -> None:
        self.assets = assets

    def handle(self, req: Request) -> ResponseSpec:
        try:
            return self._serve(req)
        except OSError:
            return not_found()

    def _serve(self, req: Request) -> ResponseSpec:
        parts = self.assets.clean(req.path)
        if parts is None:
            return not_found()
        path = "/" + "/".join(parts)

        if req.path.endswith("/" + INDEX_PAGE):
            return self._redirect(req, req.path[: -len(INDEX_PAGE)])

        if self.assets.is_dir(path):
            if not req.path.endswith("/"):
                return self._redirect(req, req.path + "/")
            asset = self.assets.get(path.rstrip("/") + "/" + INDEX_PAGE)
        else:
            asset = self.assets.get(path)
            if asset is not None and req.path.endswith("/"):
                return self._redirect(req, req.path.rstrip("/"))

        if asset is None:
            return not_found()
        return self._asset_response(req, asset)

    def _asset_response(self, req: Request, asset: Asset) -> ResponseSpec:
        headers = {
            "Content-Type": self._content_type(asset.name),
            "Accept-Ranges": "bytes",
        }
        if asset.mtime is not None:
            headers["Last-Modified"] = formatdate(asset.mtime, usegmt=True)
            if self._not_modified(req, asset.mtime):
                del headers["Content-Type"]
                return ResponseSpec(304, "Not Modified", headers=headers)

        try:
            byte_range = self._parse_range(req.headers.get("range"), asset.size)
        except RangeNotSatisfiable:
            resp = simple_response(416, "Requested Range Not Satisfiable", "invalid range: failed to overlap\n")
            resp.headers["Content-Range"] = f"bytes */{asset.size}"
            return resp

        if byte_range is None:
            return ResponseSpec(200, "OK", headers=headers, asset=asset, body_size=asset.size)

        start, length = byte_range
        headers["Content-Range"] = f"bytes {start}-{start + length - 1}/{asset.size}"
        return ResponseSpec(206, "Partial Content", headers=headers, asset=asset,
                            offset=start, body_size=length)

    @staticmethod
    def _content_type(name: str) -> str:
        ctype, _ = mimetypes.guess_type(name)
        if ctype is None:
            return "application/octet-stream"
        if ctype.startswith("text/"):
            ctype += "; charset=utf-8"
        return ctype

    @staticmethod
    def _not_modified(req: Request, mtime: float) -> bool:
        since = req.headers.get("if-modified-since")
        if not since:
            return False
        try:
            ims = parsedate_to_datetime(since)
        except (TypeError, ValueError):
            return False
        if ims is None or ims.tzinfo is None:
            return False
        return int(mtime) <= ims.timestamp()

    @staticmethod
    def _parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
        """Parse a single ``bytes=`` range into (start, length).

        Returns None when the header is absent or asks for more than one
        range; the whole file is served in that case. A malformed or
        non-overlapping range raises RangeNotSatisfiable.
        """
        if not header:
            return None
        if not header.startswith("bytes="):
            raise RangeNotSatisfiable(header)
        spec = header[len("bytes="):].strip()
        if "," in spec:
            return None
        first, sep, last = spec.partition("-")
        first, last = first.strip(), last.strip()
        if not sep:
            raise RangeNotSatisfiable(header)

        if not first:
            if not last.isdigit():
                raise RangeNotSatisfiable(header)
            suffix = int(last)
            if suffix == 0:
                raise RangeNotSatisfiable(header)
            suffix = min(suffix, size)
            return size - suffix, suffix

        if not first.isdigit():
            raise RangeNotSatisfiable(header)
        start = int(first)
        if start >= size:
            raise RangeNotSatisfiable(header)
        end = size - 1
        if last:
            if not last.isdigit() or int(last) < start:
                raise RangeNotSatisfiable(header)
            end = min(int(last), size - 1)
        return start, end - start + 1

    @staticmethod
    def _redirect(req: Request, location: str) -> ResponseSpec:
        location = quote("/" + location.lstrip("/"), safe="/")
        if req.query:
            location += "?" + req.query
        headers = {"Location": location, "Content-Type": "text/html; charset=utf-8"}
        body = f'<a href="{location}">Moved Permanently</a>.\n\n'.encode("utf-8")
        return ResponseSpec(301, "Moved Permanently", headers=headers, body=body, body_size=len(body))


def not_found() -> ResponseSpec:
    return simple_response(404, "Not Found", "404 page not found\n")


def simple_response(status: int, reason: str, text: str = "") -> ResponseSpec:
    body = text.encode("utf-8")
    return ResponseSpec(status, reason, headers=dict(TEXT_HEADERS), body=body, body_size=len(body))
