"""Single-worker scheduler that runs sync passes one at a time."""
import logging
import threading
import time
from typing import List, Optional

from processor.models import SyncResult

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs engine passes on a worker thread.

    Triggers from the interval timer, source change signals or manual requests
    set a pending flag. Triggers arriving while a pass runs coalesce into a
    single follow-up pass.
    """

    def __init__(self, engine, interval_seconds: float = 300):
        """
        Initialize the scheduler.

        Args:
            engine: ReconciliationEngine whose run_pass is invoked
            interval_seconds: Seconds between timed passes; 0 disables the timer
        """
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[Exception] = None
        self.passes_run = 0

        self._condition = threading.Condition()
        self._pass_lock = threading.Lock()
        self._pending_reasons: List[str] = []
        self._running = False
        self._stopping = False
        self._worker: Optional[threading.Thread] = None

    @property
    def busy(self) -> bool:
        with self._condition:
            return self._running or bool(self._pending_reasons)

    def start(self) -> None:
        """Start the worker and queue the initial pass."""
        with self._condition:
            if self._worker is not None:
                return
            self._stopping = False
            self._worker = threading.Thread(
                target=self._worker_loop, name='sync-worker', daemon=True
            )
            self._worker.start()
        self.trigger('startup')

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the worker, letting an in-flight pass finish."""
        with self._condition:
            worker = self._worker
            if worker is None:
                return
            self._stopping = True
            self._condition.notify_all()
        worker.join(timeout)
        with self._condition:
            self._worker = None
        logger.info("Sync scheduler stopped")

    def trigger(self, reason: str = 'manual') -> None:
        """Request a pass; coalesces with any pass already pending."""
        with self._condition:
            if self._pending_reasons:
                logger.debug(f"Sync already pending, coalescing trigger: {reason}")
            self._pending_reasons.append(reason)
            self._condition.notify_all()

    def run_once(self) -> Optional[SyncResult]:
        """
        Run one pass on the calling thread.

        Returns:
            SyncResult, or None if the pass raised
        """
        return self._execute('run_once')

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no pass is running or pending.

        Returns:
            True if idle before the timeout
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: not self._running and not self._pending_reasons, timeout
            )

    def _worker_loop(self) -> None:
        next_run = self._next_deadline()
        while True:
            with self._condition:
                while not self._pending_reasons and not self._stopping:
                    if next_run is not None and time.monotonic() >= next_run:
                        self._pending_reasons.append('interval')
                        break
                    wait = None if next_run is None else next_run - time.monotonic()
                    self._condition.wait(wait)

                if self._stopping:
                    return

                reasons = self._pending_reasons
                self._pending_reasons = []
                self._running = True

            try:
                self._execute(', '.join(dict.fromkeys(reasons)))
            finally:
                with self._condition:
                    self._running = False
                    self._condition.notify_all()
            next_run = self._next_deadline()

    def _next_deadline(self) -> Optional[float]:
        if not self.interval_seconds:
            return None
        return time.monotonic() + self.interval_seconds

    def _execute(self, reason: str) -> Optional[SyncResult]:
        with self._pass_lock:
            logger.info(f"Starting sync pass ({reason})")
            try:
                result = self.engine.run_pass()
            except Exception as e:
                logger.error(
                    f"Sync pass failed: {e}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                self.last_error = e
                return None
            finally:
                self.passes_run += 1

            self.last_result = result
            self.last_error = None
            return result
