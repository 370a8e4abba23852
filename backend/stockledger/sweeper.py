"""Background expiry of reservations whose ``expires_at`` has passed.

The sweeper runs ``InventoryOrchestrator.expire_reservations`` on a fixed
interval in a daemon thread. ``POST /maintenance/expire-reservations`` runs
the same pass on demand, so deployments that prefer an external scheduler
can disable the thread.
"""

import threading

from .logging_config import get_logger
from .orchestrator import InventoryOrchestrator

logger = get_logger(__name__)


class ExpirySweeper:
    def __init__(self, orchestrator: InventoryOrchestrator, interval: float, batch_size: int | None = None):
        if interval <= 0:
            raise ValueError("sweep interval must be positive")
        self.orchestrator = orchestrator
        self.interval = interval
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        return self.orchestrator.expire_reservations(limit=self.batch_size, stop_event=self._stop)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reservation-expiry", daemon=True)
        self._thread.start()
        logger.info("sweeper.started", interval=self.interval, batch_size=self.batch_size)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("sweeper.stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("sweeper.failed")
