from email.utils import formatdate

import pytest

from assetd.handler import FileHandler
from assetd.models import Request


def get(path, query="", **headers):
    headers = {k.replace("_", "-"): v for k, v in headers.items()}
    return Request(method="GET", target=path, path=path, query=query, version="HTTP/1.1", headers=headers)


@pytest.fixture
def handler(assets):
    return FileHandler(assets)


def test_root_serves_index(handler, asset_dir):
    resp = handler.handle(get("/"))
    assert resp.status == 200
    assert resp.asset.name == "index.html"
    assert resp.body_size == (asset_dir / "index.html").stat().st_size
    assert resp.headers["Content-Type"] == "text/html; charset=utf-8"
    assert resp.headers["Accept-Ranges"] == "bytes"
    assert "Last-Modified" in resp.headers


@pytest.mark.parametrize("path, ctype", [
    ("/css/style.css", "text/css; charset=utf-8"),
    ("/notes.txt", "text/plain; charset=utf-8"),
    ("/data.bin", "application/octet-stream"),
])
def test_content_type(handler, path, ctype):
    assert handler.handle(get(path)).headers["Content-Type"] == ctype


@pytest.mark.parametrize("path", [
    "/missing.txt",
    "/../secret.txt",
    "/../../../../etc/passwd",
    "/empty/",
    "/a\x00b",
])
def test_not_found(handler, path):
    resp = handler.handle(get(path))
    assert resp.status == 404
    assert resp.body == b"404 page not found\n"
    assert resp.asset is None


def test_directory_redirects_to_slash(handler):
    resp = handler.handle(get("/docs", query="a=1"))
    assert resp.status == 301
    assert resp.headers["Location"] == "/docs/?a=1"

    resp = handler.handle(get("/docs/"))
    assert resp.status == 200
    assert resp.asset.name == "docs/index.html"


def test_index_html_redirects_to_directory(handler):
    assert handler.handle(get("/index.html")).headers["Location"] == "/"
    assert handler.handle(get("/docs/index.html")).headers["Location"] == "/docs/"


def test_file_with_trailing_slash_redirects(handler):
    resp = handler.handle(get("/notes.txt/"))
    assert resp.status == 301
    assert resp.headers["Location"] == "/notes.txt"


def test_redirect_never_leaves_host(handler):
    resp = handler.handle(get("//example.com/index.html"))
    assert resp.status == 301
    assert resp.headers["Location"] == "/example.com/"


def test_if_modified_since(handler, asset_dir):
    mtime = (asset_dir / "notes.txt").stat().st_mtime
    resp = handler.handle(get("/notes.txt", if_modified_since=formatdate(mtime + 60, usegmt=True)))
    assert resp.status == 304
    assert resp.asset is None

    resp = handler.handle(get("/notes.txt", if_modified_since=formatdate(mtime - 3600, usegmt=True)))
    assert resp.status == 200

    resp = handler.handle(get("/notes.txt", if_modified_since="yesterday-ish"))
    assert resp.status == 200


@pytest.mark.parametrize("header, offset, length", [
    ("bytes=0-9", 0, 10),
    ("bytes=100-", 100, 199_900),
    ("bytes=-50", 199_950, 50),
    ("bytes=199990-300000", 199_990, 10),
    ("bytes=-999999", 0, 200_000),
])
def test_range(handler, header, offset, length):
    resp = handler.handle(get("/data.bin", range=header))
    assert resp.status == 206
    assert resp.offset == offset
    assert resp.body_size == length
    assert resp.headers["Content-Range"] == f"bytes {offset}-{offset + length - 1}/200000"


@pytest.mark.parametrize("header", [
    "bytes=200000-",
    "bytes=-0",
    "items=0-5",
    "bytes=abc",
    "bytes=9-3",
    "bytes=-x",
])
def test_range_not_satisfiable(handler, header):
    resp = handler.handle(get("/data.bin", range=header))
    assert resp.status == 416
    assert resp.headers["Content-Range"] == "bytes */200000"


def test_multiple_ranges_serve_whole_file(handler):
    resp = handler.handle(get("/data.bin", range="bytes=0-1,5-6"))
    assert resp.status == 200
    assert resp.body_size == 200_000


def test_if_modified_since_wins_over_range(handler, asset_dir):
    mtime = (asset_dir / "data.bin").stat().st_mtime
    resp = handler.handle(get("/data.bin", range="bytes=0-9",
                              if_modified_since=formatdate(mtime + 60, usegmt=True)))
    assert resp.status == 304
    assert "Content-Range" not in resp.headers
