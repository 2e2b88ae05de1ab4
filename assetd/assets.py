"""
Read-only view of a static file tree.

An AssetRoot is a sub-view of a larger source: the tree bundled with the
package (``web/public``, reached through importlib.resources so it also
works from a zipped install), an archive opened as ``zipfile.Path``, or
any directory handed in at startup. Any Traversable will do. Request
paths are cleaned lexically before lookup so ``..`` can never climb above
the root, and directory-backed roots additionally reject anything whose
real path lies outside the root (symlinks).
"""
import importlib.resources
import os
import pathlib
import posixpath
import zipfile
from typing import List, Optional

from .errors import AssetSourceError
from .models import Asset

BUNDLE_SUBPATH = "web/public"


class AssetRoot:
    def __init__(self, source, subpath: str = "") -> None:
        root = source
        for part in subpath.split("/"):
            if part:
                root = root.joinpath(part)
        if not root.is_dir():
            raise AssetSourceError(f"asset root {root} is not a directory")

        self._root = root
        self._real = None
        if isinstance(root, pathlib.Path):
            self._real = os.path.realpath(root)

    @classmethod
    def bundled(cls) -> "AssetRoot":
        return cls(importlib.resources.files("assetd"), BUNDLE_SUBPATH)

    @classmethod
    def from_directory(cls, path) -> "AssetRoot":
        return cls(pathlib.Path(path))

    @classmethod
    def from_archive(cls, path, subpath: str = "") -> "AssetRoot":
        try:
            archive = zipfile.Path(path)
        except (OSError, zipfile.BadZipFile) as e:
            raise AssetSourceError(f"cannot open asset archive {path}: {e}") from e
        return cls(archive, subpath)

    def __repr__(self) -> str:
        return f"AssetRoot({str(self._root)!r})"

    @staticmethod
    def clean(url_path: str) -> Optional[List[str]]:
        """Split a URL path into segments below the root, or None if unusable."""
        if "\x00" in url_path or "\\" in url_path:
            return None
        cleaned = posixpath.normpath("/" + url_path)
        return [part for part in cleaned.split("/") if part]

    def is_dir(self, url_path: str) -> bool:
        node = self._lookup(url_path)
        return node is not None and node.is_dir()

    def get(self, url_path: str) -> Optional[Asset]:
        """Return the regular file at url_path, or None."""
        node = self._lookup(url_path)
        if node is None or not node.is_file():
            return None

        parts = self.clean(url_path)
        name = "/".join(parts)
        if isinstance(node, pathlib.Path):
            st = node.stat()
            return Asset(name=name, resource=node, size=st.st_size, mtime=st.st_mtime)
        return Asset(name=name, resource=node, size=len(node.read_bytes()))

    def _lookup(self, url_path: str):
        parts = self.clean(url_path)
        if parts is None:
            return None

        node = self._root
        for part in parts:
            node = node.joinpath(part)

        if self._real is not None and not self._contains(node):
            return None
        if not (node.is_file() or node.is_dir()):
            return None
        return node

    def _contains(self, node) -> bool:
        real = os.path.realpath(node)
        return real == self._real or real.startswith(self._real + os.sep)
