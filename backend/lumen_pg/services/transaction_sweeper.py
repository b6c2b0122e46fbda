"""
Transaction Sweeper - background expiry of idle transactions
"""
from typing import Optional
import threading

import structlog

logger = structlog.get_logger()


class TransactionSweeper:
    """Calls ``engine.sweep()`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, engine, interval: float = 5.0):
        self.engine = engine
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="transaction-sweeper", daemon=True)
        self._thread.start()
        logger.info("transaction_sweeper_started", interval=self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("transaction_sweeper_stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.engine.sweep()
            except Exception as e:
                logger.error("transaction_sweep_failed", error=str(e))
