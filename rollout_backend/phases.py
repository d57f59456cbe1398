"""
Per-node rollout phases: drain, relabel, scale and converge.

Each phase is safe to re-run: a phase whose goal already holds issues no
mutation and, where possible, no wait.
"""
import logging
from typing import List, Mapping, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, stop_after_delay, wait_exponential

from .errors import ConflictError, NotFoundError
from .kube_client import ClusterFacade
from .kube_types import Node, ObjectKind, Pod, RolloutTimeouts, Workload
from .selectors import name_fields, node_fields, to_selector_string
from .watcher import ConvergenceWatcher

logger = logging.getLogger(__name__)


def count_running_ready(pods: List[Pod]) -> int:
    return sum(1 for pod in pods if pod.running_and_ready)


class PhaseExecutor:
    """Runs the phases of one rollout against the cluster."""

    def __init__(self, cluster: ClusterFacade, watcher: ConvergenceWatcher, namespace: str,
                 timeouts: RolloutTimeouts, grace_period_seconds: Optional[int] = None,
                 conflict_retries: int = 5):
        self.cluster = cluster
        self.watcher = watcher
        self.namespace = namespace
        self.timeouts = timeouts
        self.grace_period_seconds = grace_period_seconds
        self.conflict_retries = max(1, conflict_retries)

    def _retrying(self) -> Retrying:
        """Retry policy for read-modify-write cycles that lose an update race."""
        stop = stop_after_attempt(self.conflict_retries)
        if self.timeouts.phase_timeout is not None:
            stop = stop | stop_after_delay(self.timeouts.phase_timeout)
        return Retrying(
            retry=retry_if_exception_type(ConflictError),
            stop=stop,
            wait=wait_exponential(multiplier=0.1, max=max(0.1, self.timeouts.poll_interval)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _delete_pod(self, pod: Pod) -> None:
        try:
            self.cluster.delete(ObjectKind.POD, self.namespace, pod.name,
                                grace_period_seconds=self.grace_period_seconds)
        except NotFoundError:
            logger.debug(f"Pod {pod.name} already gone")

    def drain(self, selector: Mapping[str, str], node_name: str) -> int:
        """
        Delete the pods matching ``selector`` on a node and wait until none is left.

        Args:
            selector: Pod selector of the workload being drained
            node_name: Node to drain

        Returns:
            Number of pods found on the node before deletion
        """
        fields = node_fields(node_name)
        pods = self.cluster.list(ObjectKind.POD, self.namespace, labels=selector, fields=fields)
        if not pods:
            logger.info(f"Node {node_name} has no pods to drain")
            return 0

        logger.info(f"🧹 Draining {len(pods)} pods from node {node_name}")
        for pod in pods:
            if not pod.terminating:
                self._delete_pod(pod)

        self.watcher.wait_until(
            ObjectKind.POD, self.namespace, selector, fields,
            lambda items: len(items) == 0,
            self.timeouts.deletion_timeout,
            f"deletion of {len(pods)} pods on node {node_name}",
        )
        return len(pods)

    def drain_pod(self, pod: Pod) -> None:
        """Delete a single pod and wait until its deletion is observed."""
        logger.info(f"🧹 Deleting pod {pod.name} on node {pod.node_name or '<unscheduled>'}")
        self._delete_pod(pod)
        self.watcher.wait_until(
            ObjectKind.POD, self.namespace, None, name_fields(pod.name),
            lambda items: len(items) == 0,
            self.timeouts.deletion_timeout,
            f"deletion of pod {pod.name}",
        )

    def relabel(self, node_name: str, label_key: str, value: str) -> Node:
        """Set a node's partition label, retrying when a concurrent writer wins the race."""
        for attempt in self._retrying():
            with attempt:
                node = self.cluster.get(ObjectKind.NODE, "", node_name)
                if node.labels.get(label_key) == value:
                    logger.debug(f"Node {node_name} already labeled {label_key}={value}")
                    return node
                previous = node.labels.get(label_key)
                node.labels[label_key] = value
                node = self.cluster.update(ObjectKind.NODE, "", node)
                logger.info(f"🏷️ Relabeled node {node_name}: {label_key}={previous} -> {value}")
                return node

    def scale(self, workload_name: str, replicas: int) -> Workload:
        """Set a workload's desired replica count, retrying on conflict."""
        for attempt in self._retrying():
            with attempt:
                workload = self.cluster.get(ObjectKind.WORKLOAD, self.namespace, workload_name)
                if workload.replicas == replicas:
                    return workload
                previous = workload.replicas
                workload.replicas = replicas
                workload = self.cluster.update(ObjectKind.WORKLOAD, self.namespace, workload)
                logger.info(f"📈 Scaled {workload_name}: {previous} -> {replicas} replicas")
                return workload

    def count_ready(self, selector: Mapping[str, str], node_name: Optional[str] = None) -> int:
        fields = node_fields(node_name) if node_name else None
        return count_running_ready(self.cluster.list(ObjectKind.POD, self.namespace, labels=selector, fields=fields))

    def converge(self, selector: Mapping[str, str], node_name: Optional[str], expected: int) -> int:
        """
        Wait until ``expected`` pods matching ``selector`` run and are ready.

        Args:
            selector: Pod selector of the workload
            node_name: Node the pods must run on, None to count across the namespace
            expected: Minimum number of running and ready pods

        Returns:
            The observed running and ready count, 0 when nothing was expected
        """
        if expected <= 0:
            return 0
        fields = node_fields(node_name) if node_name else None
        where = f"on node {node_name}" if node_name else f"in namespace {self.namespace}"
        pods = self.watcher.wait_until(
            ObjectKind.POD, self.namespace, selector, fields,
            lambda items: count_running_ready(items) >= expected,
            self.timeouts.creation_timeout,
            f"{expected} ready pods of {to_selector_string(selector)} {where}",
        )
        return count_running_ready(pods)
