"""
Process lifecycle: start the server, wait for SIGINT/SIGTERM, shut down.

The main thread blocks on a queue fed by the signal handler. The first
signal starts a graceful shutdown bounded by ``Config.shutdown_timeout``;
any further signal while that is in progress gives up on the remaining
connections and closes them at once.
"""
import logging
import queue
import signal

from .assets import AssetRoot
from .config import Config
from .errors import ServerError
from .server import ThreadedHTTPServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_FORCED_SHUTDOWN = 2

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Lifecycle:
    def __init__(self, server: ThreadedHTTPServer, signals=SHUTDOWN_SIGNALS) -> None:
        self.server = server
        self.signals = tuple(signals)
        self._received: "queue.SimpleQueue[int]" = queue.SimpleQueue()
        self._signalled = False

    def run(self) -> int:
        """Serve until signalled and return the process exit code.

        Must be called from the main thread.
        """
        previous = {sig: signal.signal(sig, self._on_signal) for sig in self.signals}
        try:
            try:
                self.server.start()
            except ServerError as e:
                logger.critical("startup failed: %s", e)
                return EXIT_STARTUP_FAILURE

            signum = self._received.get()
            logger.info(
                "received %s, shutting down (deadline %gs)",
                signal.Signals(signum).name,
                self.server.config.shutdown_timeout,
            )
            clean = self.server.shutdown()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        if not clean:
            logger.error("forced shutdown: in-flight requests were cut off")
            return EXIT_FORCED_SHUTDOWN
        logger.info("server exited gracefully")
        return EXIT_OK

    def _on_signal(self, signum, frame) -> None:
        # Only ever runs on the main thread.
        if self._signalled:
            logger.warning("received %s during shutdown, closing remaining connections",
                           signal.Signals(signum).name)
            self.server.abort()
            return
        self._signalled = True
        self._received.put(signum)


def serve(config: Config, assets: AssetRoot) -> int:
    return Lifecycle(ThreadedHTTPServer(config, assets)).run()
