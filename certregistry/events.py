# certregistry/events.py
import logging
from typing import Callable, List

from .registry import CertificateIssued, Notification, StatusUpdated

log = logging.getLogger("events")

Subscriber = Callable[[Notification], None]

__all__ = ["CertificateIssued", "StatusUpdated", "Notification", "Notifier"]


class Notifier:
    """
    In-process fan-out of committed registry notifications.
    Subscribers only ever see events whose transaction is final.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Subscriber:
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: Notification):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # the mutation is already final; a broken observer must not hide that
                log.exception("Subscriber %r failed on %s", callback, event.name)
