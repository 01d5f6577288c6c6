"""
Graceful shutdown: drain the buffer before closing storage.

The storage connection must stay open until drain() returns, otherwise the
final flushes would fail and their events would be lost with the process.
"""

import atexit
import logging
import os
import signal
import threading
from typing import Callable, Iterable, Optional

from ingest_sdk.ingestion import IngestionService
from ingest_sdk.storage import StorageClient

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def graceful_shutdown(
    service: IngestionService,
    storage: Optional[StorageClient] = None,
    timeout: Optional[float] = None,
) -> bool:
    """
    Drain the buffer, then close the storage client.

    Args:
        service: Ingestion entry point owning the buffer
        storage: Store to close afterwards (defaults to service.storage)
        timeout: Seconds to allow for the drain; None waits until empty

    Returns:
        True if every buffered event was flushed
    """
    storage = storage or service.storage
    logger.info(f"Graceful shutdown initiated, {service.buffer.pending_count} events buffered")

    service.stop_accepting()
    drained = service.drain(timeout=timeout)
    if drained:
        logger.info("Buffer flushed successfully")
    else:
        logger.error(
            f"Shutdown drain timed out, {service.buffer.pending_count} events still buffered"
        )

    storage.close()
    logger.info("Storage connection closed")
    return drained


class ShutdownHandler:
    """
    Runs graceful_shutdown once, from a signal or at interpreter exit.

    Usage:
        handler = install_shutdown_handlers(service)
        app.run()
    """

    def __init__(
        self,
        service: IngestionService,
        storage: Optional[StorageClient] = None,
        timeout: Optional[float] = None,
        exit_func: Callable[[int], None] = os._exit,
    ):
        self.service = service
        self.storage = storage
        self.timeout = timeout
        self._exit = exit_func
        self._lock = threading.Lock()
        self._done = False
        self._thread: Optional[threading.Thread] = None
        self.drained: Optional[bool] = None

    def run(self) -> Optional[bool]:
        """Shut down once; later calls return the first result."""
        with self._lock:
            if self._done:
                return self.drained
            self._done = True
            self.drained = graceful_shutdown(self.service, self.storage, self.timeout)
            return self.drained

    def handle_signal(self, signum, frame) -> None:
        """
        Start the shutdown on its own thread and return at once.

        The interrupted main thread may be holding the buffer lock, so the
        drain cannot run inside the handler. Repeat signals are ignored
        while the shutdown is in progress.
        """
        if self._thread is not None:
            logger.info(f"Received signal {signal.Signals(signum).name}, shutdown already running")
            return
        logger.info(f"Received signal {signal.Signals(signum).name}")
        self._thread = threading.Thread(
            target=self._run_and_exit, name="ingest-shutdown", daemon=True
        )
        self._thread.start()

    def _run_and_exit(self) -> None:
        drained = self.run()
        self._exit(0 if drained else 1)


def install_shutdown_handlers(
    service: IngestionService,
    storage: Optional[StorageClient] = None,
    signals: Iterable[int] = DEFAULT_SIGNALS,
    timeout: Optional[float] = None,
) -> ShutdownHandler:
    """
    Register signal handlers and an atexit hook that drain the buffer.

    Must be called from the main thread (signal.signal requirement).
    """
    handler = ShutdownHandler(service, storage, timeout)
    for signum in signals:
        signal.signal(signum, handler.handle_signal)
    atexit.register(handler.run)
    return handler
