import enum
import logging
import socket
import threading
import time
from typing import Optional, Tuple

from .assets import AssetRoot
from .config import Config
from .engine import Engine, HTTPEngine
from .errors import BindError, StateError
from .handler import FileHandler
from .pool import ConnectionPool

logger = logging.getLogger(__name__)


class ServerState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting down"
    STOPPED = "stopped"


_NEXT_STATE = {
    ServerState.CREATED: ServerState.RUNNING,
    ServerState.RUNNING: ServerState.SHUTTING_DOWN,
    ServerState.SHUTTING_DOWN: ServerState.STOPPED,
}


class ThreadedHTTPServer:
    def __init__(self, config: Config, assets: AssetRoot) -> None:
        self.config = config
        self.assets = assets

        # Created on start()
        self._listen_sock: Optional[socket.socket] = None
        self._engine: Optional[Engine] = None
        self._pool: Optional[ConnectionPool] = None
        self._accept_thread: Optional[threading.Thread] = None

        # Stop coordination
        self._stop_event = threading.Event()
        self._abort_event = threading.Event()

        self._state = ServerState.CREATED
        self._state_lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def address(self) -> Tuple[str, int]:
        if self._listen_sock is None:
            return self.config.host, self.config.port
        return self._listen_sock.getsockname()[:2]

    def start(self) -> None:
        """Bind the listener and run the accept loop on a background thread.

        Raises BindError if the address cannot be bound; the server stays
        CREATED in that case.
        """
        if self._state is not ServerState.CREATED:
            raise StateError(f"cannot start a server that is {self._state.value}")

        self._listen_sock = self._create_listen_socket()
        self._engine = HTTPEngine(self.config, FileHandler(self.assets))
        self._pool = ConnectionPool(self.config, self._engine)

        self._transition(ServerState.RUNNING)
        self._accept_thread = threading.Thread(target=self._accept_loop, name="accept", daemon=True)
        self._accept_thread.start()

        host, port = self.address
        logger.info("serving %s on http://%s:%d", self.assets, host or "0.0.0.0", port)

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting, drain in-flight requests, and stop.

        Returns True when every connection finished within ``timeout``
        (default ``config.shutdown_timeout``). Otherwise the remaining
        connections are closed forcibly and False is returned; the server
        is STOPPED either way.
        """
        self._transition(ServerState.SHUTTING_DOWN)
        if timeout is None:
            timeout = self.config.shutdown_timeout
        deadline = time.monotonic() + timeout

        self._stop_event.set()
        self._close_listener()
        self._accept_thread.join()

        idle = self._pool.close_idle()
        if idle:
            logger.debug("closed %d idle connections", idle)

        clean = self._pool.wait(max(0.0, deadline - time.monotonic()), self._abort_event)
        if not clean:
            forced = self._pool.force_close()
            logger.warning("closed %d connections still in flight", forced)
            # Let the workers release their sockets before reporting.
            self._pool.wait(self.config.accept_timeout)

        self._cleanup()
        self._transition(ServerState.STOPPED)
        return clean

    def abort(self) -> None:
        """Cut an ongoing graceful shutdown short."""
        self._abort_event.set()

    def _transition(self, new: ServerState) -> None:
        with self._state_lock:
            if _NEXT_STATE.get(self._state) is not new:
                raise StateError(f"cannot go from {self._state.value} to {new.value}")
            self._state = new
        logger.debug("server %s", new.value)

    def _close_listener(self) -> None:
        if self._listen_sock is None:
            return
        # shutdown() wakes a blocked accept(); close() alone does not on Linux.
        try:
            self._listen_sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._listen_sock.close()
        except OSError:
            pass

    def _cleanup(self) -> None:
        self._listen_sock = None
        self._pool = None
        self._engine = None

    def _create_listen_socket(self) -> socket.socket:
        """
        Create/bind/listen.
        Uses SO_REUSEADDR to make restarts easier during development.
        """
        address = (self.config.host, self.config.port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(address)
            sock.listen(self.config.backlog)
        except OSError as e:
            sock.close()
            raise BindError(address, e.strerror or str(e)) from e

        sock.settimeout(self.config.accept_timeout)

        return sock

    def _accept_loop(self) -> None:
        """
        Accept connections and hand each to the pool.
        Exits when stop_event is set or listen socket is closed.
        """
        assert self._listen_sock is not None
        assert self._pool is not None
        listen_sock, pool = self._listen_sock, self._pool

        while not self._stop_event.is_set():
            try:
                conn, addr = listen_sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set():
                    break
                logger.error("accept failed: %s", e)
                self._stop_event.wait(self.config.accept_timeout)
                continue

            if self._stop_event.is_set():
                conn.close()
                break

            try:
                conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                try:
                    conn.close()
                except OSError:
                    pass
                continue

            # Pool closes conn after handling.
            pool.submit(conn, addr)
