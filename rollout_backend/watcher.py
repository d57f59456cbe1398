"""
Blocking waits on cluster state, driven by watch events.

Every wake-up re-lists the matching objects and evaluates the predicate on the
fresh list; events are only used as a signal that something changed. The
subscription is reopened at least every poll interval so the predicate is also
re-checked when the feed stays silent.
"""
import logging
import math
import threading
import time
from typing import Any, Callable, List, Mapping, Optional

from .errors import RolloutCancelledError, SubscriptionError, TimedOutError
from .kube_client import ClusterFacade
from .kube_types import EventType, ObjectKind

logger = logging.getLogger(__name__)

Predicate = Callable[[List[Any]], bool]


class ConvergenceWatcher:
    """Waits until a predicate over a selected object set holds."""

    def __init__(self, cluster: ClusterFacade, poll_interval: float = 3.0,
                 cancel: Optional[threading.Event] = None, clock: Callable[[], float] = time.monotonic):
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.cancel = cancel
        self._clock = clock

    def wait_until(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]],
                   fields: Optional[Mapping[str, str]], predicate: Predicate,
                   timeout: Optional[float], description: str) -> List[Any]:
        """
        Block until ``predicate`` holds for the objects matching the selectors.

        Args:
            kind: Object kind to observe
            namespace: Namespace to observe
            labels: Label selector map
            fields: Field selector map
            predicate: Called with the freshly listed objects
            timeout: Budget in seconds, None to wait without bound
            description: Human readable condition for logs and errors

        Returns:
            The object list that satisfied the predicate
        """
        deadline = None if timeout is None else self._clock() + timeout
        logger.info(f"⏳ Waiting for {description}")

        while True:
            self._check_cancelled(description)
            window = self._next_window(deadline, description)
            with self.cluster.watch(kind, namespace, labels, fields, timeout_seconds=window) as subscription:
                items = self.cluster.list(kind, namespace, labels, fields)
                if predicate(items):
                    logger.info(f"✅ Observed {description}")
                    return items

                for event in subscription:
                    if event.type == EventType.ERROR:
                        raise SubscriptionError(f"Watch failed while waiting for {description}: {event.message}")
                    self._check_cancelled(description)
                    items = self.cluster.list(kind, namespace, labels, fields)
                    if predicate(items):
                        logger.info(f"✅ Observed {description}")
                        return items
                    if self._expired(deadline):
                        break

    def _expired(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() >= deadline

    def _next_window(self, deadline: Optional[float], description: str) -> int:
        """Server-side timeout of the next subscription, in whole seconds."""
        if deadline is None:
            return max(1, math.ceil(self.poll_interval))
        remaining = deadline - self._clock()
        if remaining <= 0:
            logger.error(f"❌ Timed out waiting for {description}")
            raise TimedOutError(f"Timed out waiting for {description}")
        return max(1, math.ceil(min(self.poll_interval, remaining)))

    def _check_cancelled(self, description: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            logger.warning(f"⚠️ Rollout cancelled while waiting for {description}")
            raise RolloutCancelledError(f"Cancelled while waiting for {description}")
