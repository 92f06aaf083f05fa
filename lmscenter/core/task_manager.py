"""
Single place for scheduling: named in-memory timers, one-shot or repeating.
"""
import logging
import threading
from datetime import datetime, timezone
from threading import Timer
from typing import Any, Callable, Dict, List, Optional


class TaskManager:
    """
    Repeating tasks are re-armed before their callback runs, so they keep a fixed
    cadence and a slow callback can overlap the next tick. Callers that must not
    overlap guard themselves.
    """

    def __init__(self):
        self.tasks: Dict[str, Timer] = {}
        self.logger = logging.getLogger("TaskManager")
        self._lock = threading.Lock()
        # identifies the current schedule per name; a stale timer must not re-arm
        self._tokens: Dict[str, object] = {}

    def schedule_task(
        self,
        name: str,
        callback: Callable,
        delay: float,
        one_time: bool = True,
        interval: Optional[float] = None,
    ) -> None:
        """Schedule a task to run after delay seconds, then every interval seconds (default: delay) unless one_time."""
        with self._lock:
            token = object()
            self._tokens[name] = token
            self._arm(name, token, callback, delay, one_time, interval if interval is not None else delay)

    def _arm(self, name: str, token: object, callback: Callable, delay: float, one_time: bool, interval: float) -> None:
        try:
            if name in self.tasks:
                self.logger.debug(f"Cancelling existing task {name}")
                self.tasks[name].cancel()

            scheduled_time = datetime.now().timestamp() + delay
            timer = Timer(delay, self._run_task, args=(name, token, callback, one_time, interval))
            timer.daemon = True
            timer.scheduled_time = scheduled_time

            self.tasks[name] = timer
            timer.start()
            self.logger.info(f"Timer started for {name}, scheduled for {datetime.fromtimestamp(scheduled_time)}")
        except Exception as e:
            self.logger.error(f"Error scheduling task {name}: {e}")

    def _run_task(self, name: str, token: object, callback: Callable, one_time: bool, interval: float) -> None:
        """Re-arm (for repeating tasks) and run the callback."""
        with self._lock:
            if self._tokens.get(name) is not token:
                return
            if one_time:
                self.tasks.pop(name, None)
                self._tokens.pop(name, None)
            else:
                self._arm(name, token, callback, interval, one_time, interval)
        try:
            callback()
        except Exception as e:
            self.logger.error(f"Error running task {name}: {e}")

    def cancel_task(self, name: str) -> bool:
        """Cancel a scheduled task. Returns False if nothing was scheduled under name."""
        with self._lock:
            self._tokens.pop(name, None)
            timer = self.tasks.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        self.logger.info(f"Cancelled task {name}")
        return True

    def is_scheduled(self, name: str) -> bool:
        with self._lock:
            return name in self._tokens

    def get_active_timers(self) -> List[Dict[str, Any]]:
        """Return list of active timer names and their next run time (for API)."""
        result = []
        with self._lock:
            timers = list(self.tasks.items())
        for name, timer in timers:
            if getattr(timer, "scheduled_time", None) is not None:
                next_run = datetime.fromtimestamp(timer.scheduled_time, tz=timezone.utc)
                result.append({"name": name, "next_run_at": next_run})
        return result

    def stop(self) -> None:
        """Stop all scheduled tasks."""
        with self._lock:
            timers = list(self.tasks.values())
            self.tasks.clear()
            self._tokens.clear()
        for task in timers:
            task.cancel()
