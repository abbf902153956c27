"""
Outbound notification hook.

Subscribers (mail/SMS senders) are called after a transition has been
stored. A failing subscriber is logged and never changes the outcome of
the transition that triggered it.
"""

import logging
import threading

logger = logging.getLogger(__name__)

RESERVATION_CONFIRMED = "reservation.confirmed"
RESERVATION_CHECKED_IN = "reservation.checked_in"
RESERVATION_CHECKED_OUT = "reservation.checked_out"
RESERVATION_CANCELLED = "reservation.cancelled"

EVENTS = (
    RESERVATION_CONFIRMED,
    RESERVATION_CHECKED_IN,
    RESERVATION_CHECKED_OUT,
    RESERVATION_CANCELLED,
)


class Notifier:
    """
    Fan-out of reservation events to subscribers.

    Args:
        executor: optional ``concurrent.futures.Executor``; when given,
            deliveries are submitted to it instead of run inline
    """

    def __init__(self, executor=None):
        self.executor = executor
        self._lock = threading.Lock()
        self._subscribers = []

    def subscribe(self, callback):
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event, payload):
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}")

        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            if self.executor is not None:
                self.executor.submit(self._deliver, callback, event, payload)
            else:
                self._deliver(callback, event, payload)

    def _deliver(self, callback, event, payload):
        try:
            callback(event, payload)
        except Exception:
            logger.exception("Notification subscriber %r failed for %s", callback, event)
