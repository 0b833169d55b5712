"""
Scheduler - periodic reconciliation thread

Ticks every scan_interval seconds and runs every active instance once per
tick through the RulesEngine. Runs in a separate thread with graceful
shutdown support.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)


class Scheduler:
    """
    Background scheduler that drives reconciliation runs

    A single thread ticks at a fixed interval; each tick runs all instances
    sequentially. A failing tick is logged and the next one retries.
    """

    def __init__(self, engine, scan_interval: float = 20.0):
        """
        Initialize scheduler

        Args:
            engine: RulesEngine instance
            scan_interval: Seconds between ticks (default: 20)
        """
        self.engine = engine
        self.scan_interval = scan_interval

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self.last_tick_completed: Optional[datetime] = None
        self.ticks = 0

        logger.info(f"Scheduler initialized (interval {scan_interval}s)")

    def start(self):
        """Start scheduler thread"""
        if self.running and self.thread and self.thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._wake.clear()
        self.thread = threading.Thread(target=self._run_loop, daemon=False, name="scheduler")
        self.thread.start()
        logger.info("Scheduler thread started")

    def stop(self, timeout: float = 30.0):
        """
        Stop scheduler thread gracefully

        Args:
            timeout: Maximum seconds to wait for the current tick to complete
        """
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.running = False
        self._wake.set()

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)

            if self.thread.is_alive():
                logger.warning(f"Scheduler did not stop within {timeout}s timeout")
            else:
                logger.info("Scheduler stopped gracefully")

    def is_alive(self) -> bool:
        """Check if scheduler thread is alive"""
        return self.thread is not None and self.thread.is_alive()

    def get_status(self) -> Dict[str, Any]:
        """
        Get scheduler status

        Returns:
            Dictionary with scheduler status information
        """
        return {
            'running': self.running,
            'thread_alive': self.is_alive(),
            'ticks': self.ticks,
            'last_tick_completed': self.last_tick_completed.isoformat() if self.last_tick_completed else None,
            'scan_interval': self.scan_interval,
        }

    def tick(self):
        """Run every instance once"""
        started = time.monotonic()
        results = self.engine.run()
        self.ticks += 1
        self.last_tick_completed = datetime.now(timezone.utc)
        logger.debug(
            f"Tick {self.ticks} finished in {time.monotonic() - started:.2f}s "
            f"({len(results)} instances)"
        )

    def _run_loop(self):
        """Main scheduler loop - runs in separate thread"""
        logger.info("Scheduler loop started")

        while self.running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Unexpected error in scheduler loop: {e}", exc_info=True)

            self._wake.wait(self.scan_interval)

        logger.info("Scheduler loop exited")

    def __repr__(self) -> str:
        return f"<Scheduler running={self.running} alive={self.is_alive()}>"
