"""Notification sinks for user-facing alerts."""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Notification(BaseModel):
    title: str
    body: str
    silent: bool = False
    urgency: str = "normal"  # low, normal, critical
    created_at: datetime = Field(default_factory=_utc_now)


class NotificationSink(ABC):
    """Fire-and-forget receiver; show() must not raise into the caller."""

    @abstractmethod
    def show(self, notification: Notification) -> None:
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the log."""

    def show(self, notification: Notification) -> None:
        body = notification.body.replace("\n", " | ")
        logger.warning(f"NOTIFICATION [{notification.urgency}] {notification.title}: {body}")


class RecentNotificationSink(LogNotificationSink):
    """Logs and also keeps the last few notifications in memory for the API."""

    def __init__(self, maxlen: int = 50):
        self._recent = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def show(self, notification: Notification) -> None:
        super().show(notification)
        with self._lock:
            self._recent.appendleft(notification)

    def recent(self, limit: Optional[int] = None) -> List[Notification]:
        """Newest first."""
        with self._lock:
            items = list(self._recent)
        return items[:limit] if limit is not None else items
