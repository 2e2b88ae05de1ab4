import http.client
import os
import zipfile

import pytest

from assetd.assets import AssetRoot
from assetd.config import Config
from assetd.server import ServerState, ThreadedHTTPServer

INDEX_HTML = b"<!DOCTYPE html><html><body>hello</body></html>\n"


@pytest.fixture
def asset_dir(tmp_path):
    root = tmp_path / "public"
    root.mkdir()
    (root / "index.html").write_bytes(INDEX_HTML)
    (root / "notes.txt").write_bytes(b"plain text\n")
    (root / "data.bin").write_bytes(os.urandom(200_000))
    (root / "css").mkdir()
    (root / "css" / "style.css").write_bytes(b"body { margin: 0; }\n")
    (root / "docs").mkdir()
    (root / "docs" / "index.html").write_bytes(b"<p>docs</p>\n")
    (root / "empty").mkdir()
    (tmp_path / "secret.txt").write_bytes(b"top secret\n")
    return root


@pytest.fixture
def asset_archive(asset_dir, tmp_path):
    path = tmp_path / "assets.zip"
    with zipfile.ZipFile(path, "w") as zf:
        for file in sorted(asset_dir.rglob("*")):
            if file.is_file():
                zf.write(file, "public/" + file.relative_to(asset_dir).as_posix())
        zf.writestr("secret.txt", b"top secret\n")
    return path


@pytest.fixture
def assets(asset_dir):
    return AssetRoot.from_directory(asset_dir)


def make_config(**overrides):
    values = dict(
        host="127.0.0.1",
        port=0,
        read_timeout=2.0,
        write_timeout=2.0,
        idle_timeout=2.0,
        shutdown_timeout=2.0,
        accept_timeout=0.1,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def start_server(assets):
    started = []

    def start(**overrides):
        server = ThreadedHTTPServer(make_config(**overrides), assets)
        server.start()
        started.append(server)
        return server

    yield start

    for server in started:
        if server.state is ServerState.RUNNING:
            server.shutdown(timeout=1.0)


@pytest.fixture
def server(start_server):
    return start_server()


def request(server, method, path, headers=None):
    host, port = server.address
    conn = http.client.HTTPConnection(host, port, timeout=5)
    try:
        conn.request(method, path, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read()
    finally:
        conn.close()
