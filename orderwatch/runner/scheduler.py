from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass
from typing import Optional

from orderwatch.orders.models import utc_now_iso

log = logging.getLogger("orderwatch.scheduler")


@dataclass
class SchedulerState:
    running: bool = False
    interval_seconds: float = 10.0
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None
    last_cycle_at: Optional[str] = None
    cycle_count: int = 0
    skipped_count: int = 0
    last_error: Optional[str] = None


class MonitorScheduler:
    """
    Calls coordinator.run_once() every interval_seconds on a daemon thread.

    The first sweep runs immediately after start(). A sweep that raises is
    recorded in last_error and the loop keeps going; stop() wakes the sleeping
    thread and waits for the sweep in progress to finish.
    """

    def __init__(self, coordinator, interval_seconds: float = 10.0, *, audit=None):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.coordinator = coordinator
        self.audit = audit
        self.state = SchedulerState(interval_seconds=float(interval_seconds))

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: Optional[float] = None) -> bool:
        """Returns False when already running."""
        with self._guard:
            if self.running:
                return False
            if interval_seconds is not None:
                if interval_seconds <= 0:
                    raise ValueError("interval_seconds must be > 0")
                self.state.interval_seconds = float(interval_seconds)

            self._stop.clear()
            self.state.running = True
            self.state.started_at = utc_now_iso()
            self.state.stopped_at = None
            self.state.last_error = None

            self._thread = threading.Thread(
                target=self._loop,
                name="orderwatch-monitor",
                daemon=True,
            )
            self._thread.start()

        log.info("monitor started, interval=%ss", self.state.interval_seconds)
        self._event("MONITOR_STARTED")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Returns False when it was not running."""
        with self._guard:
            thread = self._thread
            if thread is None:
                return False
            self._stop.set()

        if thread is not threading.current_thread():
            thread.join(timeout)

        with self._guard:
            if thread.is_alive() and thread is not threading.current_thread():
                # sweep still in flight; keep the handle so start() cannot spawn a second worker
                log.warning("monitor thread still finishing a sweep after %ss", timeout)
                return True
            self._thread = None
            self.state.running = False
            self.state.stopped_at = utc_now_iso()

        log.info("monitor stopped after %d cycles", self.state.cycle_count)
        self._event("MONITOR_STOPPED")
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            # Event.wait doubles as the sleep and the cancellation point
            if self._stop.wait(self.state.interval_seconds):
                break

    def tick(self) -> None:
        self.state.last_cycle_at = utc_now_iso()
        try:
            result = self.coordinator.run_once()
        except Exception:
            err = traceback.format_exc()
            self.state.last_error = err
            if self.audit is None:
                log.error("monitor sweep raised:\n%s", err)
            else:
                self.audit.error("MONITOR_SWEEP_ERROR", "monitor sweep raised", traceback=err)
            return

        if result.skipped:
            self.state.skipped_count += 1
        else:
            self.state.cycle_count += 1
            self.state.last_error = None

    def status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self.state.interval_seconds,
            "started_at": self.state.started_at,
            "stopped_at": self.state.stopped_at,
            "last_cycle_at": self.state.last_cycle_at,
            "cycle_count": self.state.cycle_count,
            "skipped_count": self.state.skipped_count,
            "last_error": self.state.last_error,
        }

    def _event(self, action: str, details: Optional[dict] = None) -> None:
        if self.audit is None:
            return
        self.audit.event(event_type="MONITOR", action=action, details=details or {})
