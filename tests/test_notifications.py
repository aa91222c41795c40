"""Tests for the error notification sink."""

import pytest

from dynamic_secrets.engine import ErrorNotifier


def test_notifications_are_kept_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    notifier = ErrorNotifier()
    notifier.notify_error("Error revoking leases: boom")
    notifier.notify_warning("Lease L2 registered after teardown")

    notifications = notifier.get_notifications()
    assert [(n.level, n.message) for n in notifications] == [
        ("error", "Error revoking leases: boom"),
        ("warning", "Lease L2 registered after teardown"),
    ]
    assert notifications[0].timestamp.endswith("Z")
    assert "Error revoking leases: boom" in caplog.text


def test_filter_by_level() -> None:
    notifier = ErrorNotifier()
    notifier.notify_error("e")
    notifier.notify_warning("w")
    assert [n.message for n in notifier.get_notifications("warning")] == ["w"]


def test_history_is_bounded() -> None:
    notifier = ErrorNotifier(max_notifications=3)
    for i in range(5):
        notifier.notify_error(f"error {i}")
    assert [n.message for n in notifier.get_notifications()] == ["error 2", "error 3", "error 4"]


def test_drain_forgets_notifications() -> None:
    notifier = ErrorNotifier()
    notifier.notify_error("e")
    assert len(notifier.drain()) == 1
    assert len(notifier) == 0
