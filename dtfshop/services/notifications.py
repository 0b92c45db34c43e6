# dtfshop/services/notifications.py
"""
After-commit side effects. Messages are queued while a unit of work runs and
delivered by `dispatch()` once the caller has committed; a sender failure is
logged and never reaches the payment state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..model import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    kind: str
    text: str
    user_id: int | None = None
    email: str | None = None
    subject: str | None = None


class InAppSender:
    """Writes a Notification row in its own short transaction."""

    def __init__(self, session):
        self.session = session

    def send(self, msg: Message):
        if msg.user_id is None:
            return
        try:
            self.session.add(Notification(user_id=msg.user_id, kind=msg.kind, message=msg.text[:255]))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


class LoggingEmailSender:
    def send(self, msg: Message):
        if not msg.email:
            return
        logger.info("email to %s: %s | %s", msg.email, msg.subject or msg.kind, msg.text)


class NotificationDispatcher:
    def __init__(self, senders=()):
        self.senders = list(senders)
        self._queue: list[Message] = []

    def queue(self, kind, text, user_id=None, email=None, subject=None):
        self._queue.append(Message(kind=kind, text=text, user_id=user_id, email=email, subject=subject))

    @property
    def pending(self):
        return list(self._queue)

    def discard(self):
        self._queue.clear()

    def dispatch(self) -> int:
        """Deliver queued messages; returns how many sender calls failed."""
        queued, self._queue = self._queue, []
        failures = 0
        for msg in queued:
            for sender in self.senders:
                try:
                    sender.send(msg)
                except Exception:
                    failures += 1
                    logger.exception("notification %s via %s failed", msg.kind, type(sender).__name__)
        return failures
