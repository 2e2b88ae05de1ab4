import logging
import socket
import time
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import unquote, urlsplit

from .errors import RequestHeaderTooLarge
from .handler import simple_response
from .models import ConnState, Request, ResponseSpec

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")

StateCallback = Callable[[ConnState], bool]


def _always(state: ConnState) -> bool:
    return True


class Engine:
    def handle_connection(self, conn: socket.socket, on_state: Optional[StateCallback] = None) -> None:
        try:
            self.process(conn, on_state or _always)
        finally:
            try:
                conn.close()
            except OSError:
                pass

    def process(self, conn: socket.socket, on_state: StateCallback) -> None:
        raise NotImplementedError


class HTTPEngine(Engine):
    """HTTP/1.1 connection loop.

    Every socket operation runs against a deadline rather than a per-call
    timeout:

    * the request head must arrive within ``read_timeout``, counted from
      accept for the first request and from the first byte for later ones;
    * the response must be written within ``write_timeout`` of the head
      being read;
    * a kept-alive connection waits at most ``idle_timeout`` for the next
      request before it is closed.

    ``on_state`` is told when the connection becomes ACTIVE (request bytes
    arrived) or IDLE (waiting for the next request). A False answer means
    the server is closing the connection and the loop must stop.
    """

    def __init__(self, config, request_handler) -> None:
        self.config = config
        self.request_handler = request_handler
        self.server_name = "assetd"

    def process(self, conn: socket.socket, on_state: StateCallback) -> None:
        buf = bytearray()
        first = True
        started = time.monotonic()
        try:
            while True:
                wait = self.config.read_timeout if first else self.config.idle_timeout
                if not buf:
                    chunk = self._recv(conn, started + wait)
                    if not chunk:
                        return
                    buf.extend(chunk)
                if not first:
                    started = time.monotonic()
                if not on_state(ConnState.ACTIVE):
                    return

                if not self._serve_one(conn, buf, started + self.config.read_timeout):
                    return
                if not on_state(ConnState.IDLE):
                    return
                first = False
                started = time.monotonic()

        except TimeoutError:
            logger.debug("connection timed out")
        except OSError as e:
            logger.debug("connection dropped: %s", e)

    def _serve_one(self, conn: socket.socket, buf: bytearray, read_deadline: float) -> bool:
        """Read, answer and account for one request. Returns True to keep the connection."""
        try:
            raw = self._read_headers(conn, buf, read_deadline)
        except RequestHeaderTooLarge:
            resp = simple_response(431, "Request Header Fields Too Large", "431 Request Header Fields Too Large")
            self._send(conn, "GET", resp, False, time.monotonic() + self.config.write_timeout)
            return False
        if raw is None:
            return False

        write_deadline = time.monotonic() + self.config.write_timeout
        try:
            req = self._parse_request(raw)
        except ValueError as e:
            logger.debug("bad request: %s", e)
            self._send(conn, "GET", simple_response(400, "Bad Request", "400 Bad Request"), False, write_deadline)
            return False

        if not req.version.startswith("HTTP/1."):
            resp = simple_response(505, "HTTP Version Not Supported", "505 HTTP Version Not Supported")
            self._send(conn, "GET", resp, False, write_deadline)
            return False

        keep_alive = req.keep_alive
        try:
            if not self._discard_body(conn, buf, req, read_deadline):
                keep_alive = False
        except ValueError:
            self._send(conn, "GET", simple_response(400, "Bad Request", "400 Bad Request"), False, write_deadline)
            return False

        resp = self._dispatch(req)
        logger.debug('"%s %s %s" %d', req.method, req.target, req.version, resp.status)
        self._send(conn, req.method, resp, keep_alive, write_deadline)
        return keep_alive

    def _dispatch(self, req: Request) -> ResponseSpec:
        if req.method not in ALLOWED_METHODS:
            resp = simple_response(405, "Method Not Allowed", "Method Not Allowed\n")
            resp.headers["Allow"] = ", ".join(ALLOWED_METHODS)
            return resp
        try:
            return self.request_handler.handle(req)
        except Exception:
            logger.exception("error handling %s %s", req.method, req.target)
            return simple_response(500, "Internal Server Error", "500 Internal Server Error\n")

    def _recv(self, conn: socket.socket, deadline: float) -> bytes:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("read deadline exceeded")
        conn.settimeout(remaining)
        return conn.recv(self.config.chunk_size)

    def _sendall(self, conn: socket.socket, data: bytes, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("write deadline exceeded")
        conn.settimeout(remaining)
        conn.sendall(data)

    def _read_headers(self, conn: socket.socket, buf: bytearray, deadline: float) -> Optional[bytes]:
        while True:
            end = buf.find(b"\r\n\r\n")
            if end >= 0:
                if end > self.config.max_header_bytes:
                    raise RequestHeaderTooLarge(end)
                raw = bytes(buf[:end])
                del buf[:end + 4]
                return raw
            if len(buf) > self.config.max_header_bytes:
                raise RequestHeaderTooLarge(len(buf))
            chunk = self._recv(conn, deadline)
            if chunk == b"":
                return None
            buf.extend(chunk)

    def _discard_body(self, conn: socket.socket, buf: bytearray, req: Request, deadline: float) -> bool:
        """Consume a request body so the next request can be read.

        Returns False when the body cannot be framed and the connection
        has to be closed after the response.
        """
        if "transfer-encoding" in req.headers:
            return False
        length = req.headers.get("content-length")
        if length is None:
            return True
        if not length.isdigit():
            raise ValueError("bad content-length")

        remaining = int(length)
        while remaining > 0:
            if not buf:
                chunk = self._recv(conn, deadline)
                if not chunk:
                    return False
                buf.extend(chunk)
            taken = min(remaining, len(buf))
            del buf[:taken]
            remaining -= taken
        return True

    def _parse_request(self, raw: bytes) -> Request:
        head = raw.lstrip(b"\r\n")
        lines = head.split(b"\r\n")
        if not lines or not lines[0]:
            raise ValueError("empty request")

        request_line = lines[0].decode("iso-8859-1")
        parts = request_line.split()
        if len(parts) != 3:
            raise ValueError("bad request line")

        method, target, version = parts
        if not version.startswith("HTTP/"):
            raise ValueError("bad http version")

        headers = {}
        for bline in lines[1:]:
            if not bline:
                continue
            line = bline.decode("iso-8859-1", errors="ignore")
            if ":" not in line:
                raise ValueError("malformed header line")
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()

        if version == "HTTP/1.1" and "host" not in headers:
            raise ValueError("missing required Host header")

        if target.startswith(("http://", "https://")):
            split = urlsplit(target)
            path, query = split.path or "/", split.query
        else:
            path, _, query = target.partition("?")
        if not path.startswith("/"):
            raise ValueError("bad request target")

        return Request(method=method, target=target, path=unquote(path), query=query,
                       version=version, headers=headers)

    def _send(self, conn: socket.socket, method: str, resp: ResponseSpec, keep_alive: bool,
              deadline: float) -> None:
        head_only = (method.upper() == "HEAD")

        headers = dict(resp.headers)
        headers.setdefault("Date", self._http_date())
        headers.setdefault("Server", self.server_name)
        headers.setdefault("Connection", "keep-alive" if keep_alive else "close")
        if resp.status not in (204, 304):
            headers.setdefault("Content-Length", str(resp.body_size))

        status_line = f"HTTP/1.1 {resp.status} {resp.reason}\r\n"
        header_block = status_line + "".join(f"{k}: {v}\r\n" for k, v in headers.items()) + "\r\n"
        self._sendall(conn, header_block.encode("iso-8859-1"), deadline)

        if head_only or resp.status in (204, 304):
            return

        if resp.asset is not None:
            self._send_asset(conn, resp, deadline)
        elif resp.body:
            self._sendall(conn, resp.body, deadline)

    def _send_asset(self, conn: socket.socket, resp: ResponseSpec, deadline: float) -> None:
        remaining = resp.body_size
        with resp.asset.open() as f:
            if resp.offset:
                f.seek(resp.offset)
            while remaining > 0:
                data = f.read(min(self.config.chunk_size, remaining))
                if not data:
                    break
                self._sendall(conn, data, deadline)
                remaining -= len(data)

    @staticmethod
    def _http_date() -> str:
        dt = datetime.now(timezone.utc)
        return dt.strftime("%a, %d %b %Y %H:%M:%S GMT")
