"""Unit tests for notify/dispatcher.py -- NotificationDispatcher and templates.

Covers:
- submitted notifications reach the notifier off the calling thread
- a full backlog refuses new work and logs at ERROR
- a notifier that raises is logged with its traceback, not propagated
- activation / recovery links point at the configured website address
"""

import logging
import threading

from notify.dispatcher import (
    ACTIVATION_TEMPLATE,
    RECOVERY_TEMPLATE,
    LogNotifier,
    Notification,
    NotificationDispatcher,
    activation_notice,
    recovery_notice,
)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, recipient: str, template_id: str, payload: dict) -> None:
        self.sent.append((recipient, template_id, payload))


class BlockingNotifier:
    """Holds every send() until release is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()

    def send(self, recipient: str, template_id: str, payload: dict) -> None:
        self.started.set()
        self.release.wait(timeout=5)


class ExplodingNotifier:
    def send(self, recipient: str, template_id: str, payload: dict) -> None:
        raise RuntimeError("smtp down")


class TestDispatch:
    def test_delivers(self) -> None:
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier, workers=2, backlog=10)
        try:
            assert dispatcher.submit(Notification("a@example.com", ACTIVATION_TEMPLATE, {"link": "x"}))
            dispatcher.flush(timeout=5)
        finally:
            dispatcher.close()
        assert notifier.sent == [("a@example.com", ACTIVATION_TEMPLATE, {"link": "x"})]

    def test_full_backlog_refuses_and_logs(self, caplog) -> None:
        notifier = BlockingNotifier()
        dispatcher = NotificationDispatcher(notifier, workers=1, backlog=2)
        try:
            assert dispatcher.submit(Notification("a@example.com", RECOVERY_TEMPLATE))
            assert notifier.started.wait(timeout=5)
            assert dispatcher.submit(Notification("b@example.com", RECOVERY_TEMPLATE))
            with caplog.at_level(logging.ERROR, logger="crowdcontrol.notify"):
                assert not dispatcher.submit(Notification("c@example.com", RECOVERY_TEMPLATE))
            assert "backlog full" in caplog.text
        finally:
            notifier.release.set()
            dispatcher.close()

    def test_failure_is_logged(self, caplog) -> None:
        dispatcher = NotificationDispatcher(ExplodingNotifier(), workers=1, backlog=5)
        with caplog.at_level(logging.ERROR, logger="crowdcontrol.notify"):
            assert dispatcher.submit(Notification("a@example.com", ACTIVATION_TEMPLATE))
            dispatcher.close()
        assert "failed" in caplog.text
        assert "smtp down" in caplog.text

    def test_log_notifier(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="crowdcontrol.notify"):
            LogNotifier().send("a@example.com", ACTIVATION_TEMPLATE, {"link": "http://x/enable-acc?code=1"})
        assert "http://x/enable-acc?code=1" in caplog.text


class TestTemplates:
    def test_activation_link(self) -> None:
        notice = activation_notice("a@example.com", "abc-_123", "https://cc.example.com/")
        assert notice.template_id == ACTIVATION_TEMPLATE
        assert notice.payload["link"] == "https://cc.example.com/enable-acc?code=abc-_123"

    def test_recovery_link(self) -> None:
        notice = recovery_notice("a@example.com", "xyz", "http://localhost:8000")
        assert notice.recipient == "a@example.com"
        assert notice.payload["link"] == "http://localhost:8000/reset-pass?code=xyz"
