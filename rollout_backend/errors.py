"""
Error taxonomy for rollout operations.
"""
from typing import Optional


class RolloutError(Exception):
    """Base class for every failure a rollout can surface."""

    status_code: int = 500

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class NotFoundError(RolloutError):
    """Referenced workload, pod or node is absent."""
    status_code = 404


class BadFormatError(RolloutError):
    """Rollout input is unparseable, of the wrong kind or inconsistent."""
    status_code = 400


class MultipleItemsError(BadFormatError):
    """Rollout manifest specifies more than one object."""


class MissingPartitionLabelError(RolloutError):
    """Old or new pod template lacks the partition label."""
    status_code = 400


class NoEligibleCapacityUnitError(RolloutError):
    """No node carries the partition label value of the old workload."""
    status_code = 409


class ConflictError(RolloutError):
    """Optimistic-concurrency failure on create or update."""
    status_code = 409


class TimedOutError(RolloutError):
    """A wait condition never became true within its budget."""
    status_code = 504


class ClusterAPIError(RolloutError):
    """Transport, authorization or other failure reported by the cluster API."""
    status_code = 502


class SubscriptionError(ClusterAPIError):
    """A change subscription delivered an error event or broke."""


class RolloutCancelledError(RolloutError):
    """The caller cancelled the rollout while it was waiting."""
    status_code = 499
