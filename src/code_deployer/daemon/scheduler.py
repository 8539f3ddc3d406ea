"""
Deployment Scheduler for timer-triggered deployment cycles.

Runs DeploymentService.run_cycle() on a background thread, waking up when
the earliest repository check is due. Cycles never overlap.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from ..services.deployment_service import CycleResult, DeploymentService

logger = logging.getLogger(__name__)


class DeploymentScheduler:
    """
    Timer-based scheduler for deployment cycles.

    Sleeps until the service's next check time, runs a cycle, and repeats.
    When the next check time is already past the scheduler waits
    retry_interval_seconds instead, so a repository that keeps failing does
    not spin the loop.
    """

    def __init__(
        self,
        service: DeploymentService,
        retry_interval_seconds: float = 30.0,
        max_sleep_seconds: float = 3600.0,
        now_provider: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the deployment scheduler.

        Args:
            service: Deployment service whose cycles are scheduled
            retry_interval_seconds: Wait used when the next check is already due
            max_sleep_seconds: Upper bound on a single wait, so config edits are picked up
            now_provider: Clock used to compute waits
        """
        self.service = service
        self.retry_interval_seconds = retry_interval_seconds
        self.max_sleep_seconds = max_sleep_seconds
        self._now = now_provider

        # Thread management
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()
        self._trigger_event = threading.Event()
        self.last_result: Optional[CycleResult] = None

    def is_running(self) -> bool:
        """
        Check if scheduler is running.

        Returns:
            True if background thread is active
        """
        return self._running

    def start(self) -> None:
        """
        Start the scheduler background thread.

        Idempotent: Safe to call multiple times
        """
        if self._running:
            logger.debug("Deployment scheduler already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._scheduler_loop, daemon=True)
        self._thread.start()
        logger.info("Deployment scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the scheduler background thread.

        Waits up to timeout seconds for a running cycle to finish.

        Idempotent: Safe to call multiple times
        """
        if not self._running:
            logger.debug("Deployment scheduler already stopped")
            return

        self._running = False
        self._trigger_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

        logger.info("Deployment scheduler stopped")

    def trigger(self) -> None:
        """Request a cycle as soon as possible. Requests made during a cycle collapse into one."""
        self._trigger_event.set()

    def is_due(self) -> bool:
        return self.service.next_check_time <= self._now()

    def get_sleep_seconds(self) -> float:
        """Seconds to wait before the next cycle."""
        next_check = self.service.next_check_time
        if next_check == datetime.max:
            return self.max_sleep_seconds

        remaining = (next_check - self._now()).total_seconds()
        if remaining <= 0:
            return self.retry_interval_seconds
        return min(remaining, self.max_sleep_seconds)

    def run_cycle_now(self) -> Optional[CycleResult]:
        """
        Run one cycle on the calling thread.

        Returns:
            The cycle result, or None if another cycle was running or the
            cycle raised
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Deployment cycle already in progress, skipping")
            return None

        try:
            self.last_result = self.service.run_cycle()
            return self.last_result
        except Exception as e:
            logger.error(f"Deployment cycle failed: {e}", exc_info=True)
            return None
        finally:
            self._cycle_lock.release()

    def _scheduler_loop(self) -> None:
        """Background thread loop: run due cycles, then sleep until the next one."""
        logger.debug("Deployment scheduler loop started")

        while self._running:
            if self._trigger_event.is_set() or self.is_due():
                self._trigger_event.clear()
                self.run_cycle_now()

            if not self._running:
                break

            try:
                sleep_remaining = self.get_sleep_seconds()
            except Exception as e:
                logger.error(f"Could not compute next check time: {e}", exc_info=True)
                sleep_remaining = self.retry_interval_seconds
            logger.debug(f"Next deployment cycle in {sleep_remaining:.0f}s")

            # Sleep in small increments to allow faster shutdown
            while sleep_remaining > 0 and self._running and not self._trigger_event.is_set():
                sleep_chunk = min(1.0, sleep_remaining)
                time.sleep(sleep_chunk)
                sleep_remaining -= sleep_chunk

        logger.debug("Deployment scheduler loop exited")
