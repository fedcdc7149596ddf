"""
notify/dispatcher.py -- Out-of-band notifications (activation and recovery links).

Request handlers never send mail themselves. They hand a Notification to
NotificationDispatcher.submit(), which queues it on a bounded thread pool and
returns at once. Delivery is best effort:

  - at most `backlog` notifications may be pending; beyond that submit()
    refuses, logs at ERROR and returns False
  - a Notifier that raises is logged with its traceback from the future's
    done-callback; nothing propagates back to the request

Notifier is the delivery seam. LogNotifier (the default) writes the message
to the log, which is enough for development and for operators who scrape
the log. A real SMTP or API notifier only has to implement send().

Layer rule: notify/ imports stdlib only. Links are built from the
website_address the caller passes in.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import quote

logger = logging.getLogger("crowdcontrol.notify")

ACTIVATION_TEMPLATE = "account-activation"
RECOVERY_TEMPLATE = "account-recovery"


@dataclass(frozen=True)
class Notification:
    recipient: str
    template_id: str
    payload: dict = field(default_factory=dict)


class Notifier(Protocol):
    def send(self, recipient: str, template_id: str, payload: dict) -> None: ...


class LogNotifier:
    """Writes each notification to the crowdcontrol.notify log at INFO."""

    def send(self, recipient: str, template_id: str, payload: dict) -> None:
        logger.info("Notification %s for %s: %s", template_id, recipient, payload.get("link", ""))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def activation_notice(recipient: str, code: str, website_address: str) -> Notification:
    link = f"{website_address.rstrip('/')}/enable-acc?code={quote(code)}"
    return Notification(recipient, ACTIVATION_TEMPLATE, {"link": link})


def recovery_notice(recipient: str, code: str, website_address: str) -> Notification:
    link = f"{website_address.rstrip('/')}/reset-pass?code={quote(code)}"
    return Notification(recipient, RECOVERY_TEMPLATE, {"link": link})


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, workers: int = 2, backlog: int = 100) -> None:
        self._notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")
        self._slots = threading.BoundedSemaphore(backlog)
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, notification: Notification) -> bool:
        """Queue notification for delivery. False if the backlog is full."""
        if not self._slots.acquire(blocking=False):
            logger.error(
                "Notification backlog full; dropping %s for %s",
                notification.template_id,
                notification.recipient,
            )
            return False
        try:
            future = self._executor.submit(
                self._notifier.send, notification.recipient, notification.template_id, notification.payload
            )
        except RuntimeError:
            self._slots.release()
            logger.error("Notification dispatcher is shut down; dropping %s", notification.template_id)
            return False
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(f, notification))
        return True

    def _on_done(self, future: Future, notification: Notification) -> None:
        with self._lock:
            self._pending.discard(future)
        self._slots.release()
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Notification %s for %s failed",
                notification.template_id,
                notification.recipient,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def flush(self, timeout: float | None = None) -> None:
        """Wait for every notification submitted so far."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already logged by _on_done().
                pass

    def close(self) -> None:
        self._executor.shutdown(wait=True)
