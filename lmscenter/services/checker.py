"""
Polling and change detection over one LMS client.

The checker owns the snapshot of the last fetched assignment list. Each cycle
fetches, diffs against the snapshot by id, replaces it, tells snapshot listeners,
and notifies the user about assignments not seen before. The first successful
cycle after (re)initialization only establishes the baseline.
"""
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from lmscenter.clients import create_client
from lmscenter.clients.base import (
    Assignment,
    Course,
    Lecture,
    LMSClient,
    SubmissionData,
    SubmissionResult,
    parse_datetime,
)
from lmscenter.core.task_manager import TaskManager
from lmscenter.services.notifications import Notification, NotificationSink

TASK_NAME = "assignment-check"


class CheckerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    POLLING = "polling"
    CHECKING = "checking"
    FAILED = "failed"


class CheckerStatus(BaseModel):
    state: CheckerState
    lms_type: Optional[str] = None
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    snapshot_size: int = 0
    next_check: Optional[datetime] = None


def format_due_date(due_date: str, now: Optional[datetime] = None) -> str:
    """Relative due time: 'overdue', 'in 3 days', 'in 1 hour', 'in less than an hour'."""
    try:
        due = parse_datetime(due_date)
    except (TypeError, ValueError):
        return due_date
    now = now or datetime.now(timezone.utc)
    seconds = (due - now).total_seconds()
    if seconds < 0:
        return "overdue"
    days = int(seconds // 86400)
    if days > 0:
        return f"in {days} day{'s' if days != 1 else ''}"
    hours = int(seconds // 3600)
    if hours > 0:
        return f"in {hours} hour{'s' if hours != 1 else ''}"
    return "in less than an hour"


class AssignmentChecker:
    """
    settings must provide get_settings() -> LMSConfig and is_configured().

    Cycles run on the timer thread or the caller's thread (check_now). A cycle that
    finds another one of the same generation in progress is skipped; restart()
    starts a new generation and results of older cycles are discarded.
    """

    def __init__(
        self,
        settings,
        sink: NotificationSink,
        task_manager: Optional[TaskManager] = None,
        client_factory: Callable[..., LMSClient] = create_client,
    ):
        self.settings = settings
        self.sink = sink
        self.task_manager = task_manager or TaskManager()
        self.client_factory = client_factory
        self.logger = logging.getLogger(self.__class__.__name__)

        self._state_lock = threading.RLock()
        self._cycle_lock = threading.Lock()
        self._generation = 0
        self._client: Optional[LMSClient] = None
        self._snapshot: Dict[str, Assignment] = {}
        self._state = CheckerState.UNINITIALIZED
        self._lms_type: Optional[str] = None
        self._last_check: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self.new_assignments_callbacks: List[Callable[[List[Assignment]], None]] = []
        self.snapshot_callbacks: List[Callable[[List[Assignment]], None]] = []
        self.status_callbacks: List[Callable[[CheckerStatus], None]] = []

    def register_new_assignments_callback(self, callback: Callable[[List[Assignment]], None]) -> None:
        """Called once per cycle that found new assignments, with only the new ones."""
        self.new_assignments_callbacks.append(callback)

    def register_snapshot_callback(self, callback: Callable[[List[Assignment]], None]) -> None:
        """Called after every successful cycle with the full list."""
        self.snapshot_callbacks.append(callback)

    def register_status_callback(self, callback: Callable[[CheckerStatus], None]) -> None:
        self.status_callbacks.append(callback)

    @property
    def state(self) -> CheckerState:
        return self._state

    @property
    def snapshot(self) -> List[Assignment]:
        with self._state_lock:
            return list(self._snapshot.values())

    def status(self) -> CheckerStatus:
        next_check = None
        for timer in self.task_manager.get_active_timers():
            if timer["name"] == TASK_NAME:
                next_check = timer["next_run_at"]
        with self._state_lock:
            return CheckerStatus(
                state=self._state,
                lms_type=self._lms_type,
                last_check=self._last_check,
                last_error=self._last_error,
                snapshot_size=len(self._snapshot),
                next_check=next_check,
            )

    def _emit(self, callbacks: List[Callable], payload) -> None:
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                self.logger.error(f"Error in checker callback {getattr(callback, '__name__', callback)}: {e}")

    def _set_state(self, state: CheckerState, error: Optional[str] = None, generation: Optional[int] = None) -> None:
        """Transition and emit status. With ``generation``, a superseded caller changes nothing."""
        with self._state_lock:
            if generation is not None and generation != self._generation:
                return
            self._state = state
            if error is not None:
                self._last_error = error
        self.logger.debug(f"State -> {state.value}")
        self._emit(self.status_callbacks, self.status())

    def _reset(self) -> int:
        """Drop client and snapshot and open a new generation. Returns it."""
        self.task_manager.cancel_task(TASK_NAME)
        with self._state_lock:
            self._generation += 1
            self._client = None
            self._lms_type = None
            self._snapshot = {}
            self._last_error = None
            # a stale cycle keeps the old lock; the new generation is not blocked by it
            self._cycle_lock = threading.Lock()
            return self._generation

    def start(self) -> None:
        """Connect if configured, run the first cycle and start the timer."""
        generation = self._reset()

        if not self.settings.is_configured():
            self.logger.info("LMS not configured yet")
            self._set_state(CheckerState.UNINITIALIZED)
            return

        config = self.settings.get_settings()
        self.logger.info(
            f"Initializing: lms_type={config.lms_type}, lms_url={config.lms_url}, "
            f"has_token={bool(config.api_token)}, credential_login={config.use_credential_login}"
        )
        self._set_state(CheckerState.CONNECTING, generation=generation)

        try:
            client = self.client_factory(config)
            connected = client.test_connection()
        except Exception as e:
            self.logger.error(f"Error initializing LMS client: {e}")
            self._fail(generation, str(e))
            return

        if not connected:
            self.logger.error(f"Failed to connect to {config.lms_url}")
            self._fail(generation, "Connection test failed")
            return

        with self._state_lock:
            if generation != self._generation:
                self.logger.info("Initialization superseded by a restart")
                return
            self._client = client
            self._lms_type = client.lms_type
        self.logger.info("Successfully connected to LMS")
        self._set_state(CheckerState.POLLING, generation=generation)

        self._run_cycle(generation)

        interval = config.check_interval * 60
        with self._state_lock:
            if generation != self._generation:
                return
        self.task_manager.schedule_task(
            TASK_NAME, lambda: self._run_cycle(generation), delay=interval, one_time=False
        )

    def _fail(self, generation: int, error: str) -> None:
        self._set_state(CheckerState.FAILED, error, generation=generation)

    def _run_cycle(self, generation: int) -> bool:
        """One fetch-and-diff cycle. Returns False if skipped."""
        with self._state_lock:
            client = self._client
            lock = self._cycle_lock
            if client is None or generation != self._generation:
                return False
        if not lock.acquire(blocking=False):
            self.logger.info("Check already in progress, skipping")
            return False
        try:
            self.logger.info("Checking for assignments...")
            self._set_state(CheckerState.CHECKING, generation=generation)
            try:
                assignments = client.get_assignments()
            except Exception as e:
                self.logger.exception(f"Error checking assignments: {e}")
                self._set_state(CheckerState.POLLING, str(e), generation=generation)
                return True

            with self._state_lock:
                if generation != self._generation:
                    self.logger.info("Discarding result of a check started before restart")
                    return True
                new_assignments = (
                    [a for a in assignments if a.id not in self._snapshot] if self._snapshot else []
                )
                self._snapshot = {a.id: a for a in assignments}
                self._last_check = datetime.now(timezone.utc)
                self._last_error = None

            self.logger.info(f"Found {len(assignments)} assignments, {len(new_assignments)} new")
            self._set_state(CheckerState.POLLING, generation=generation)
            self._emit(self.snapshot_callbacks, list(assignments))
            if new_assignments:
                self._notify(new_assignments)
                self._emit(self.new_assignments_callbacks, new_assignments)
            return True
        finally:
            lock.release()

    def _notify(self, assignments: List[Assignment]) -> None:
        silent = not self.settings.get_settings().sound_enabled
        for assignment in assignments:
            notification = Notification(
                title="New Assignment",
                body=(
                    f"{assignment.name}\n"
                    f"Due: {format_due_date(assignment.due_date)}\n"
                    f"Course: {assignment.course_name}"
                ),
                silent=silent,
                urgency="critical",
            )
            try:
                self.sink.show(notification)
            except Exception as e:
                self.logger.error(f"Notification sink failed: {e}")

    def check_now(self) -> bool:
        """Run one cycle now unless one is already running. Returns whether it ran."""
        with self._state_lock:
            generation = self._generation
        return self._run_cycle(generation)

    def restart(self) -> None:
        self.logger.info("Restarting assignment checker...")
        self.start()

    def stop(self) -> None:
        self.task_manager.cancel_task(TASK_NAME)

    def _current_client(self) -> Optional[LMSClient]:
        with self._state_lock:
            return self._client

    def get_assignments(self) -> List[Assignment]:
        """Live fetch; does not touch the snapshot."""
        client = self._current_client()
        if client is None:
            self.logger.info("No client available for get_assignments")
            return []
        try:
            return client.get_assignments()
        except Exception as e:
            self.logger.error(f"Error getting assignments: {e}")
            return []

    def get_courses(self) -> List[Course]:
        client = self._current_client()
        if client is None:
            self.logger.info("No client available for get_courses")
            return []
        try:
            return client.get_courses()
        except Exception as e:
            self.logger.error(f"Error getting courses: {e}")
            return []

    def get_lectures(self) -> List[Lecture]:
        client = self._current_client()
        if client is None:
            self.logger.info("No client available for get_lectures")
            return []
        try:
            return client.get_lectures()
        except Exception as e:
            self.logger.error(f"Error getting lectures: {e}")
            return []

    def submit_assignment(self, data: SubmissionData) -> SubmissionResult:
        client = self._current_client()
        if client is None:
            return SubmissionResult(success=False, error="LMS client is not connected")
        try:
            return client.submit_assignment(data)
        except Exception as e:
            self.logger.exception(f"Unexpected error submitting assignment {data.assignment_id}: {e}")
            return SubmissionResult(success=False, error=str(e))

    def test_connection(self) -> bool:
        client = self._current_client()
        if client is None:
            return False
        try:
            return client.test_connection()
        except Exception as e:
            self.logger.error(f"Connection test failed: {e}")
            return False
