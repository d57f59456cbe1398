"""
Type definitions for Kubernetes objects handled during a rollout.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ObjectKind(str, Enum):
    """Object kinds the cluster facade serves."""
    WORKLOAD = "Deployment"
    POD = "Pod"
    NODE = "Node"
    SERVICE = "Service"


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class EventType(str, Enum):
    """Change event tags delivered by a watch subscription."""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"


@dataclass
class Workload:
    """Kubernetes Deployment representation."""
    name: str
    namespace: str
    replicas: int
    selector: Dict[str, str]
    template_labels: Dict[str, str]
    node_selector: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    container_images: List[str] = field(default_factory=list)
    status_replicas: int = 0
    resource_version: Optional[str] = None
    # Full manifest, only needed when the object is created.
    body: Optional[Dict[str, Any]] = None


@dataclass
class Pod:
    """Kubernetes Pod representation."""
    name: str
    namespace: str
    status: str
    labels: Dict[str, str]
    ready: bool = False
    node_name: Optional[str] = None
    restart_count: int = 0
    terminating: bool = False
    resource_version: Optional[str] = None
    creation_timestamp: Optional[datetime] = None

    @property
    def running_and_ready(self) -> bool:
        return self.status == PodPhase.RUNNING.value and self.ready and not self.terminating


@dataclass
class Node:
    """Kubernetes Node representation (a capacity unit)."""
    name: str
    labels: Dict[str, str]
    unschedulable: bool = False
    resource_version: Optional[str] = None


@dataclass
class Service:
    """Kubernetes Service representation."""
    name: str
    namespace: str
    selector: Dict[str, str]
    labels: Dict[str, str] = field(default_factory=dict)
    ports: List[Dict[str, Any]] = field(default_factory=list)
    resource_version: Optional[str] = None


@dataclass
class ChangeEvent:
    """One watch notification; ``object`` is None for ERROR events."""
    type: EventType
    object: Any = None
    message: Optional[str] = None


@dataclass
class RolloutTimeouts:
    """Timing budget of a rollout, in seconds. None means unbounded."""
    poll_interval: float = 3.0
    phase_timeout: Optional[float] = 300.0
    deletion_timeout: Optional[float] = 600.0
    creation_timeout: Optional[float] = 900.0


@dataclass
class PodInfo:
    """Aggregate information about the pods of a workload."""
    current: int
    desired: int
    running: int = 0
    pending: int = 0
    failed: int = 0


@dataclass
class RolloutResult:
    """Summary returned by a finished rollout."""
    old_name: str
    new_name: str
    namespace: str
    strategy: str
    units_processed: int
    final_replicas: int
    swept_pods: int = 0
