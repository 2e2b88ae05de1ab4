from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .config import Config
from .engine import Engine
from .models import ConnState

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Task:
    conn: socket.socket
    addr: Tuple[str, int]
    state: ConnState = ConnState.NEW
    accepted: float = field(default_factory=time.monotonic)


class ConnectionPool:
    """One worker thread per accepted connection.

    The pool remembers every live connection and its state so shutdown can
    close idle ones right away, wait for active ones, and finally cut off
    whatever is left.
    """

    def __init__(self, config: Config, engine: Engine) -> None:
        self.config = config
        self.engine = engine

        self._tasks: set[Task] = set()
        self._lock = threading.Lock()
        self._done = threading.Condition(self._lock)
        self._closing = False
        self._ids = itertools.count()

        self._poll_timeout = 0.2

    def submit(self, conn: socket.socket, addr: Tuple[str, int]) -> bool:
        task = Task(conn=conn, addr=addr)
        with self._lock:
            if self._closing:
                task = None
            else:
                self._tasks.add(task)

        if task is None:
            _close(conn)
            return False

        logger.debug("accepted connection from %s", addr)
        t = threading.Thread(
            target=self._worker,
            args=(task,),
            name=f"conn-{next(self._ids)}",
            daemon=True,
        )
        try:
            t.start()
        except RuntimeError as e:
            logger.error("cannot start worker for %s: %s", addr, e)
            with self._done:
                self._tasks.discard(task)
                self._done.notify_all()
            _close(conn)
            return False
        return True

    def close_idle(self) -> int:
        """Refuse new connections and close the ones not serving a request.

        A connection that has not sent anything yet counts as idle only once
        it is older than ``config.new_conn_grace``; a younger one may still be
        about to send its request.
        """
        with self._lock:
            self._closing = True
            idle = self._take_idle()

        for task in idle:
            _abort(task.conn)
        return len(idle)

    def wait(self, timeout: float, abort: Optional[threading.Event] = None) -> bool:
        """Wait for every connection to finish. False if time ran out or abort was set."""
        deadline = time.monotonic() + timeout
        with self._done:
            while self._tasks:
                if abort is not None and abort.is_set():
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._done.wait(min(remaining, self._poll_timeout))
                for task in self._take_idle():
                    _abort(task.conn)
        return True

    def force_close(self) -> int:
        with self._lock:
            self._closing = True
            victims = list(self._tasks)
            for task in victims:
                task.state = ConnState.CLOSED

        for task in victims:
            logger.debug("force closing connection from %s", task.addr)
            _abort(task.conn)
        return len(victims)

    def _take_idle(self) -> list[Task]:
        # Caller holds the lock.
        if not self._closing:
            return []
        stale = time.monotonic() - self.config.new_conn_grace
        idle = [
            t for t in self._tasks
            if t.state is ConnState.IDLE or (t.state is ConnState.NEW and t.accepted <= stale)
        ]
        for task in idle:
            task.state = ConnState.CLOSED
        return idle

    def _set_state(self, task: Task, state: ConnState) -> bool:
        with self._lock:
            if task.state is ConnState.CLOSED:
                return False
            if self._closing and state is ConnState.IDLE:
                task.state = ConnState.CLOSED
                return False
            task.state = state
            return True

    def _worker(self, task: Task) -> None:
        try:
            self.engine.handle_connection(task.conn, lambda state: self._set_state(task, state))
        except Exception:
            logger.exception("unhandled exception on connection from %s", task.addr)
        finally:
            with self._done:
                task.state = ConnState.CLOSED
                self._tasks.discard(task)
                self._done.notify_all()
            logger.debug("closed connection from %s", task.addr)


def _abort(conn: socket.socket) -> None:
    # Wakes the worker blocked on this socket; the worker closes it.
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


def _close(conn: socket.socket) -> None:
    try:
        conn.close()
    except OSError:
        pass
