"""
Replica accounting while capacity moves from the old workload to the new one.
"""
from dataclasses import dataclass


@dataclass
class ReplicaLedger:
    """
    Tracks how many old replicas remain and how many new ones were granted.

    ``old_remaining + new_allocated`` always equals ``original_total`` and
    ``new_allocated`` never exceeds ``target``.
    """
    original_total: int
    target: int
    new_allocated: int = 0

    def __post_init__(self):
        if self.original_total < 0 or self.target < 0:
            raise ValueError("replica counts cannot be negative")
        if self.new_allocated > min(self.target, self.original_total):
            raise ValueError("allocated replicas exceed target or total")
        self.old_remaining = self.original_total - self.new_allocated

    def allocate(self, n: int) -> int:
        """Move up to ``n`` replicas to the new workload and return how many moved."""
        delta = max(0, min(n, self.target - self.new_allocated, self.old_remaining))
        self.new_allocated += delta
        self.old_remaining -= delta
        return delta

    def final_correction(self) -> int:
        """Replicas still owed to the new workload once every unit is processed."""
        return max(0, self.target - self.new_allocated)
