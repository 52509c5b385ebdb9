# channel.py
# Per-invocation message channel.
#
# The controller publishes every message it appends, in order. Subscriptions
# live only as long as the invocation: close() drops them all, and nothing is
# shared between conversations.

import logging
import threading
from collections.abc import Callable

from react_harness.models import Message

logger = logging.getLogger(__name__)

Subscriber = Callable[[Message], None]


class MessageChannel:
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a callable that unsubscribes it."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Channel for thread {self.thread_id} is closed.")
            self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: Message) -> None:
        with self._lock:
            if self._closed:
                return
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(message)
            except Exception:
                logger.exception("Subscriber failed on thread %s; unsubscribing", self.thread_id)
                self.unsubscribe(subscriber)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()

    def __enter__(self) -> "MessageChannel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
