"""
Change Notifier.

Fans structured resource-state events out to subscribers. Delivery is
synchronous, best-effort and at-most-once: there is no replay buffer, and a
subscriber that raises is logged and skipped.
"""

from __future__ import annotations

import threading
from typing import Callable, Iterable, List, Tuple

from harbormaster.core.models import ChangeEvent, OperationResult, ResourceAction, ResourceType, ResultStatus
from harbormaster.utils.logger import logger

Subscriber = Callable[[ChangeEvent], None]


class ChangeNotifier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Change subscriber {callback!r} failed on {event.type.value}/{event.action.value}: {e}")

    def publish_result(self, result: OperationResult) -> List[ChangeEvent]:
        """One event per distinct (type, action) among the result's successes."""
        if result.status is ResultStatus.FAILED:
            return []
        events = [
            ChangeEvent(type=rtype, project=result.project, action=action)
            for rtype, action in _categories((op.resource, op.action) for op in result.succeeded)
        ]
        for event in events:
            self.publish(event)
        if events:
            logger.debug(f"Published {len(events)} change events for project '{result.project}'")
        return events


def _categories(pairs: Iterable[Tuple[ResourceType, ResourceAction]]) -> List[Tuple[ResourceType, ResourceAction]]:
    seen: List[Tuple[ResourceType, ResourceAction]] = []
    for pair in pairs:
        if pair not in seen:
            seen.append(pair)
    return seen
