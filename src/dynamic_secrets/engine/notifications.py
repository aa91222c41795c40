"""User-facing error notifications.

Revocation runs during teardown, after the consuming process is gone, so its
failures cannot be raised to anyone. They are reported here instead: every
notification is logged to stderr and kept in memory so the host (the MCP
tools) can show it to the user later.

Example:
    >>> notifier = ErrorNotifier()
    >>> notifier.notify_error("Error revoking leases: Revoke lease db/creds/1: 403 Forbidden")
    >>> [n.message for n in notifier.get_notifications()]
    ['Error revoking leases: Revoke lease db/creds/1: 403 Forbidden']
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_MAX_NOTIFICATIONS = 200


class Notification(BaseModel):
    """A single notification shown to the user."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(description="ISO 8601 timestamp")
    level: str = Field(default="error", description="error or warning")
    message: str


class ErrorNotifier:
    """In-memory notification sink with bounded history.

    Thread-safe: revocations may report from any thread.
    """

    def __init__(self, max_notifications: int = DEFAULT_MAX_NOTIFICATIONS) -> None:
        self._max = max_notifications
        self._notifications: list[Notification] = []
        self._lock = threading.Lock()

    def notify_error(self, message: str) -> None:
        self._add("error", message)
        logger.error(message)

    def notify_warning(self, message: str) -> None:
        self._add("warning", message)
        logger.warning(message)

    def _add(self, level: str, message: str) -> None:
        notification = Notification(
            timestamp=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            level=level,
            message=message,
        )
        with self._lock:
            self._notifications.append(notification)
            if len(self._notifications) > self._max:
                del self._notifications[: len(self._notifications) - self._max]

    def get_notifications(self, level: str | None = None) -> list[Notification]:
        """Return notifications, oldest first, optionally filtered by level."""
        with self._lock:
            notifications = list(self._notifications)
        if level is not None:
            notifications = [n for n in notifications if n.level == level]
        return notifications

    def drain(self) -> list[Notification]:
        """Return and forget all notifications."""
        with self._lock:
            notifications = self._notifications
            self._notifications = []
        return notifications

    def __len__(self) -> int:
        with self._lock:
            return len(self._notifications)


__all__ = ["Notification", "ErrorNotifier"]
