"""
Rolling replacement of a Deployment by a new one.

Two strategies are provided:

* ``NodeRollingUpdater`` migrates node by node. Each node carrying the old
  partition label value is quarantined and drained of old pods; only then is
  the old workload scaled down. The node is relabeled to the new value and only
  left behind once the new pods granted to it are running and ready. Replicas
  move from the old workload to the new one through a ``ReplicaLedger``.
* ``PodRollingUpdater`` swaps pods one at a time across the whole fleet: the
  new workload is created fully sized and every old pod is deleted in turn,
  waiting until one more new pod is running and ready somewhere in the fleet.

Both run strictly sequentially and fail fast: the first error aborts the
rollout and is re-raised unchanged, leaving the cluster as the last completed
phase left it. Every phase is idempotent, so calling the same rollout again
resumes it.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .capacity import count_pods_per_unit, list_capacity_units, pods_by_node
from .config import settings
from .errors import BadFormatError, ConflictError, MissingPartitionLabelError, NotFoundError
from .kube_client import ClusterFacade
from .kube_types import Node, ObjectKind, Pod, RolloutResult, RolloutTimeouts, Workload
from .ledger import ReplicaLedger
from .manifest import parse_workload_manifest, with_annotations, with_replicas
from .phases import PhaseExecutor
from .selectors import is_selector_matching, parse_selector_string, to_selector_string
from .watcher import ConvergenceWatcher

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"

# Recorded on a whole-swap workload so an interrupted swap can find the pods
# its predecessor left behind once that workload is gone.
REPLACES_ANNOTATION = "rollout-backend/replaces"
REPLACED_SELECTOR_ANNOTATION = "rollout-backend/replaced-selector"


class RolloutState(str, Enum):
    VALIDATING = "Validating"
    CREATING_NEW_WORKLOAD = "CreatingNewWorkload"
    PROCESSING_UNITS = "ProcessingUnits"
    FINALIZING = "Finalizing"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class RolloutSession:
    """In-memory state of one rollout; discarded when the rollout returns."""
    namespace: str
    old_name: str
    timeouts: RolloutTimeouts
    old: Optional[Workload] = None
    new: Optional[Workload] = None
    partition_key: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    units: List[Node] = field(default_factory=list)
    unit_pod_counts: List[int] = field(default_factory=list)
    old_pods: List[Pod] = field(default_factory=list)
    ledger: Optional[ReplicaLedger] = None
    old_desired: int = 0
    state: RolloutState = RolloutState.VALIDATING
    unit_index: int = 0
    units_processed: int = 0
    swept_pods: int = 0
    error: Optional[Exception] = None


TransitionCallback = Callable[[RolloutSession], None]


class _RollingUpdater:
    """Shared state machine plumbing of both strategies."""

    strategy = ""

    def __init__(self, cluster: ClusterFacade, namespace: str = "", timeouts: Optional[RolloutTimeouts] = None,
                 grace_period_seconds: Optional[int] = None, conflict_retries: Optional[int] = None,
                 cancel: Optional[threading.Event] = None, on_transition: Optional[TransitionCallback] = None):
        self.cluster = cluster
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.timeouts = timeouts or settings.rollout_timeouts()
        self.on_transition = on_transition
        self.watcher = ConvergenceWatcher(cluster, poll_interval=self.timeouts.poll_interval, cancel=cancel)
        self.phases = PhaseExecutor(
            cluster, self.watcher, self.namespace, self.timeouts,
            grace_period_seconds=(grace_period_seconds if grace_period_seconds is not None
                                  else settings.ROLLOUT_DELETE_GRACE_PERIOD_SECS),
            conflict_retries=conflict_retries or settings.ROLLOUT_CONFLICT_RETRIES,
        )

    def _transition(self, session: RolloutSession, state: RolloutState) -> None:
        session.state = state
        if state == RolloutState.PROCESSING_UNITS:
            logger.info(f"[{session.old_name}] {state.value} (unit {session.unit_index + 1}/{len(session.units) or len(session.old_pods)})")
        else:
            logger.info(f"[{session.old_name}] {state.value}")
        if self.on_transition is not None:
            self.on_transition(session)

    def _run(self, session: RolloutSession, steps: List[Callable[[RolloutSession], None]]) -> RolloutResult:
        try:
            for step in steps:
                step(session)
        except Exception as e:
            session.error = e
            logger.error(f"❌ Rolling update of {session.old_name} failed in state {session.state.value}: {e}")
            self._transition(session, RolloutState.FAILED)
            raise
        self._transition(session, RolloutState.DONE)
        final = session.new.replicas if session.ledger is None else max(session.ledger.target, session.ledger.new_allocated)
        logger.info(f"✅ Rolling update {session.old_name} -> {session.new.name} completed")
        return RolloutResult(
            old_name=session.old_name,
            new_name=session.new.name,
            namespace=session.namespace,
            strategy=self.strategy,
            units_processed=session.units_processed,
            final_replicas=final,
            swept_pods=session.swept_pods,
        )

    def _get_old(self, session: RolloutSession, new: Workload) -> Workload:
        return self.cluster.get(ObjectKind.WORKLOAD, session.namespace, session.old_name)

    def _load_workloads(self, session: RolloutSession, manifest: str, source: str) -> None:
        new = parse_workload_manifest(manifest, source=source, namespace=session.namespace)
        old = self._get_old(session, new)

        if new.name == old.name:
            raise BadFormatError(f"New workload must have a different name than {old.name}")
        if (is_selector_matching(new.selector, old.template_labels)
                or is_selector_matching(old.selector, new.template_labels)):
            raise BadFormatError(f"Selectors of {old.name} and {new.name} overlap; pods would be owned by both")
        session.old = old
        session.new = new

    def _find_existing(self, session: RolloutSession) -> Optional[Workload]:
        try:
            existing = self.cluster.get(ObjectKind.WORKLOAD, session.namespace, session.new.name)
        except NotFoundError:
            return None
        if existing.selector != session.new.selector:
            raise ConflictError(f"Workload {existing.name} already exists with a different selector")
        logger.info(f"Workload {existing.name} already exists with {existing.replicas} replicas, resuming")
        return existing

    def _finalize(self, session: RolloutSession) -> None:
        self._transition(session, RolloutState.FINALIZING)
        if session.ledger is not None:
            correction = session.ledger.final_correction()
            if correction > 0:
                logger.info(f"Topping up {session.new.name} by {correction} replicas")
                self.phases.scale(session.new.name, session.ledger.new_allocated + correction)

        try:
            self.cluster.delete(ObjectKind.WORKLOAD, session.namespace, session.old.name)
            logger.info(f"🗑️ Deleted workload {session.old.name}")
        except NotFoundError:
            logger.debug(f"Workload {session.old.name} already deleted")

        for pod in self.cluster.list(ObjectKind.POD, session.namespace, labels=session.old.selector):
            if pod.terminating:
                continue
            try:
                self.cluster.delete(ObjectKind.POD, session.namespace, pod.name,
                                    grace_period_seconds=self.phases.grace_period_seconds)
                session.swept_pods += 1
            except NotFoundError:
                continue
        if session.swept_pods:
            logger.warning(f"⚠️ Swept {session.swept_pods} leftover pods of {session.old.name}")


class NodeRollingUpdater(_RollingUpdater):
    """Node-by-node rollout steered by a partition label on nodes."""

    strategy = "by-node"

    def __init__(self, cluster: ClusterFacade, namespace: str = "", timeouts: Optional[RolloutTimeouts] = None,
                 quarantine_value: Optional[str] = None, **kwargs):
        super().__init__(cluster, namespace, timeouts, **kwargs)
        self.quarantine_value = quarantine_value or settings.ROLLOUT_QUARANTINE_VALUE

    def update(self, old_name: str, manifest: str, partition_key: str, source: str = "manifest") -> RolloutResult:
        """
        Replace workload ``old_name`` with the one described by ``manifest``.

        Args:
            old_name: Name of the running workload
            manifest: YAML/JSON text of exactly one Deployment
            partition_key: Node label whose value routes pods to old or new workload
            source: Name of the manifest used in error messages

        Returns:
            RolloutResult summary
        """
        session = RolloutSession(namespace=self.namespace, old_name=old_name, timeouts=self.timeouts,
                                 partition_key=partition_key)
        logger.info(f"🚀 Starting rolling update by node of {old_name} (label {partition_key})")
        return self._run(session, [
            lambda s: self._validate(s, manifest, source),
            self._create_new_workload,
            self._process_units,
            self._finalize,
        ])

    def _validate(self, session: RolloutSession, manifest: str, source: str) -> None:
        self._transition(session, RolloutState.VALIDATING)
        key = session.partition_key
        if not key:
            raise BadFormatError("Node label name is empty")
        self._load_workloads(session, manifest, source)

        old_value = session.old.node_selector.get(key)
        if old_value is None:
            raise MissingPartitionLabelError(f"Pod template of {session.old.name} has no nodeSelector {key}")
        new_value = session.new.node_selector.get(key)
        if new_value is None:
            raise MissingPartitionLabelError(f"Pod template of {session.new.name} has no nodeSelector {key}")
        if old_value == new_value:
            raise BadFormatError(f"Old and new workloads both select nodes with {key}={old_value}")
        if self.quarantine_value in (old_value, new_value):
            raise BadFormatError(f"Quarantine value {self.quarantine_value!r} collides with a workload's {key}")
        session.old_value = old_value
        session.new_value = new_value
        session.old_desired = session.old.replicas

        session.units = list_capacity_units(self.cluster, key, old_value, self.quarantine_value)
        grouped = pods_by_node(self.cluster, session.namespace, session.old.selector)
        session.unit_pod_counts = count_pods_per_unit(session.units, grouped)
        logger.info(f"Old pods per node: "
                    f"{dict(zip([node.name for node in session.units], session.unit_pod_counts))}")

    def _create_new_workload(self, session: RolloutSession) -> None:
        self._transition(session, RolloutState.CREATING_NEW_WORKLOAD)
        existing = self._find_existing(session)
        if existing is None:
            self.cluster.create(ObjectKind.WORKLOAD, session.namespace, with_replicas(session.new, 0))
            session.ledger = ReplicaLedger(original_total=session.old.replicas, target=session.new.replicas)
            return
        granted = min(existing.replicas, session.new.replicas)
        session.ledger = ReplicaLedger(original_total=session.old.replicas + granted,
                                       target=session.new.replicas, new_allocated=granted)

    def _process_units(self, session: RolloutSession) -> None:
        ledger = session.ledger
        key = session.partition_key
        for index, node in enumerate(session.units):
            session.unit_index = index
            self._transition(session, RolloutState.PROCESSING_UNITS)
            count = session.unit_pod_counts[index]
            allocated = ledger.allocate(count)

            self.phases.relabel(node.name, key, self.quarantine_value)
            self.phases.drain(session.old.selector, node.name)
            # Lowered only once the node is empty, so the controller sheds the
            # replacements it started meanwhile rather than pods on untouched nodes.
            session.old_desired = max(0, session.old_desired - count)
            self.phases.scale(session.old.name, session.old_desired)
            self.phases.relabel(node.name, key, session.new_value)
            self.phases.scale(session.new.name, ledger.new_allocated)
            self.phases.converge(session.new.selector, node.name, allocated)

            session.units_processed += 1
            logger.info(f"✅ Node {node.name} migrated ({allocated} replicas); "
                        f"old remaining {ledger.old_remaining}, new allocated {ledger.new_allocated}/{ledger.target}")


class PodRollingUpdater(_RollingUpdater):
    """Fleet-wide rollout replacing one old pod at a time."""

    strategy = "by-pod"

    def update(self, old_name: str, manifest: str, source: str = "manifest") -> RolloutResult:
        """
        Replace workload ``old_name`` with the one described by ``manifest``, pod by pod.

        The old workload is deleted with orphaned pods first, so the pods it
        leaves behind are not recreated while they are swapped out. The new
        workload records the old name and selector, so calling again after a
        failure finds the remaining orphans even though the old workload is gone.
        """
        session = RolloutSession(namespace=self.namespace, old_name=old_name, timeouts=self.timeouts)
        logger.info(f"🚀 Starting rolling update of {old_name}")
        return self._run(session, [
            lambda s: self._validate(s, manifest, source),
            self._create_new_workload,
            self._process_pods,
            self._finalize,
        ])

    def _get_old(self, session: RolloutSession, new: Workload) -> Workload:
        try:
            return super()._get_old(session, new)
        except NotFoundError:
            orphaned = self._orphaned_workload(session, new)
            if orphaned is None:
                raise
            logger.info(f"Workload {session.old_name} is gone, resuming the swap of the pods it left behind")
            return orphaned

    def _orphaned_workload(self, session: RolloutSession, new: Workload) -> Optional[Workload]:
        """Rebuild the old workload's selector from the annotations of an interrupted swap."""
        try:
            existing = self.cluster.get(ObjectKind.WORKLOAD, session.namespace, new.name)
        except NotFoundError:
            return None
        if existing.annotations.get(REPLACES_ANNOTATION) != session.old_name:
            return None
        try:
            selector = parse_selector_string(existing.annotations.get(REPLACED_SELECTOR_ANNOTATION))
        except ValueError as e:
            raise BadFormatError(f"Workload {existing.name} has an unreadable {REPLACED_SELECTOR_ANNOTATION}: {e}")
        if not selector:
            return None
        return Workload(name=session.old_name, namespace=session.namespace, replicas=0,
                        selector=selector, template_labels=dict(selector))

    def _validate(self, session: RolloutSession, manifest: str, source: str) -> None:
        self._transition(session, RolloutState.VALIDATING)
        self._load_workloads(session, manifest, source)
        pods = [pod for pod in self.cluster.list(ObjectKind.POD, session.namespace, labels=session.old.selector)
                if not pod.terminating]
        session.old_pods = sorted(pods, key=lambda pod: (pod.node_name or "", pod.name))

    def _create_new_workload(self, session: RolloutSession) -> None:
        self._transition(session, RolloutState.CREATING_NEW_WORKLOAD)
        if self._find_existing(session) is None:
            new = with_annotations(session.new, {
                REPLACES_ANNOTATION: session.old.name,
                REPLACED_SELECTOR_ANNOTATION: to_selector_string(session.old.selector),
            })
            self.cluster.create(ObjectKind.WORKLOAD, session.namespace, new)

    def _process_pods(self, session: RolloutSession) -> None:
        try:
            self.cluster.delete(ObjectKind.WORKLOAD, session.namespace, session.old.name, propagation_policy="Orphan")
            logger.info(f"Released pods of {session.old.name} from their controller")
        except NotFoundError:
            logger.debug(f"Workload {session.old.name} already deleted")

        selector = session.new.selector
        for index, pod in enumerate(session.old_pods):
            session.unit_index = index
            self._transition(session, RolloutState.PROCESSING_UNITS)
            # The scheduler may place the replacement on any node, so wait for
            # one more ready new pod anywhere (capped at the declared size).
            expected = min(session.new.replicas, self.phases.count_ready(selector) + 1)
            self.phases.drain_pod(pod)
            self.phases.converge(selector, None, expected)
            session.units_processed += 1


def rolling_update(cluster: ClusterFacade, old_name: str, manifest: str, namespace: str = "",
                   source: str = "manifest", timeouts: Optional[RolloutTimeouts] = None,
                   cancel: Optional[threading.Event] = None,
                   on_transition: Optional[TransitionCallback] = None) -> RolloutResult:
    """Replace ``old_name`` fleet-wide, one pod at a time."""
    updater = PodRollingUpdater(cluster, namespace, timeouts, cancel=cancel, on_transition=on_transition)
    return updater.update(old_name, manifest, source=source)


def rolling_update_by_node(cluster: ClusterFacade, old_name: str, manifest: str, namespace: str,
                           partition_label_key: str, poll_interval: float = 0, timeout: float = 0,
                           deletion_timeout: float = 0, creation_timeout: float = 0, source: str = "manifest",
                           cancel: Optional[threading.Event] = None,
                           on_transition: Optional[TransitionCallback] = None) -> RolloutResult:
    """Replace ``old_name`` node by node; zero timing values use the configured defaults."""
    timeouts = settings.rollout_timeouts(poll_interval, timeout, deletion_timeout, creation_timeout)
    updater = NodeRollingUpdater(cluster, namespace, timeouts, cancel=cancel, on_transition=on_transition)
    return updater.update(old_name, manifest, partition_label_key, source=source)
