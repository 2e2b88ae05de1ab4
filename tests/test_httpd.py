import os
import signal
import socket
import threading

import pytest

import httpd


def test_missing_root_exits_nonzero(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        httpd.main(["--root", str(tmp_path / "nope")])
    assert excinfo.value.code == 1


def test_port_in_use_exits_nonzero(asset_dir):
    with socket.socket() as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen(1)
        port = taken.getsockname()[1]
        with pytest.raises(SystemExit) as excinfo:
            httpd.main(["-H", "127.0.0.1", "-p", str(port), "-r", str(asset_dir)])
    assert excinfo.value.code == 1


def test_sigterm_exits_zero(asset_dir):
    timer = threading.Timer(0.5, os.kill, args=(os.getpid(), signal.SIGTERM))
    timer.start()
    try:
        with pytest.raises(SystemExit) as excinfo:
            httpd.main(["--host", "127.0.0.1", "--port", "0", "--root", str(asset_dir)])
    finally:
        timer.cancel()
    assert excinfo.value.code == 0


def test_bad_archive_exits_nonzero(tmp_path):
    (tmp_path / "assets.zip").write_bytes(b"not a zip file")
    with pytest.raises(SystemExit) as excinfo:
        httpd.main(["--root", str(tmp_path / "assets.zip")])
    assert excinfo.value.code == 1


def test_archive_root(asset_archive):
    timer = threading.Timer(0.5, os.kill, args=(os.getpid(), signal.SIGTERM))
    timer.start()
    try:
        with pytest.raises(SystemExit) as excinfo:
            httpd.main(["--host", "127.0.0.1", "--port", "0", "--root", str(asset_archive)])
    finally:
        timer.cancel()
    assert excinfo.value.code == 0
