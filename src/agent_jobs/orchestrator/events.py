"""In-process publish/subscribe hub for live job events."""

from __future__ import annotations

import logging
import threading
from collections import deque
from types import TracebackType

from agent_jobs.orchestrator.models import JobEvent

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_BUFFER = 1_000


class Subscription:
    """Bounded event buffer for one subscriber of one job.

    The terminal event is always accepted and closes the subscription. A
    subscriber that falls ``maxsize`` events behind is marked ``overflowed``
    and closed instead of blocking the publisher.
    """

    def __init__(self, hub: JobEventHub, job_id: str, *, maxsize: int) -> None:
        self.job_id = job_id
        self.overflowed = False
        self._hub = hub
        self._maxsize = max(1, maxsize)
        self._items: deque[JobEvent] = deque()
        self._condition = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def exhausted(self) -> bool:
        """Closed and fully drained."""

        with self._condition:
            return self._closed and not self._items

    def offer(self, event: JobEvent) -> bool:
        with self._condition:
            if self._closed:
                return False
            if event.terminal:
                self._items.append(event)
                self._closed = True
            elif len(self._items) >= self._maxsize:
                self.overflowed = True
                self._closed = True
                logger.warning("Subscriber for job_id=%s overflowed; dropping it", self.job_id)
            else:
                self._items.append(event)
            self._condition.notify_all()
            return not self.overflowed

    def get(self, timeout: float | None = None) -> JobEvent | None:
        """Next event, or ``None`` on timeout or once closed and drained."""

        with self._condition:
            self._condition.wait_for(lambda: bool(self._items) or self._closed, timeout)
            if self._items:
                return self._items.popleft()
            return None

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        self._hub.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class JobEventHub:
    """Fan out job events from executor threads to any number of subscribers."""

    def __init__(self, *, subscription_buffer: int = DEFAULT_SUBSCRIPTION_BUFFER) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._subscription_buffer = subscription_buffer

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id, maxsize=self._subscription_buffer)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]

    def publish(self, event: JobEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(event.job_id, ()))
            if event.terminal:
                self._subscribers.pop(event.job_id, None)
        for subscription in subscribers:
            if not subscription.offer(event):
                self.unsubscribe(subscription)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))
