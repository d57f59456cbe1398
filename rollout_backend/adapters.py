"""
Adapters between the HTTP layer and the rollout engine.
"""
import logging
import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from .errors import NotFoundError
from .kube_client import ClusterFacade
from .kube_types import ObjectKind, Pod, PodInfo, PodPhase, Service, Workload
from .rollout import rolling_update, rolling_update_by_node
from .selectors import is_selector_matching

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


def _pod_info(workload: Workload, pods: List[Pod]) -> PodInfo:
    info = PodInfo(current=workload.status_replicas, desired=workload.replicas)
    for pod in pods:
        if pod.status == PodPhase.RUNNING.value:
            info.running += 1
        elif pod.status == PodPhase.PENDING.value:
            info.pending += 1
        elif pod.status == PodPhase.FAILED.value:
            info.failed += 1
    return info


def _matching_services(services: List[Service], workload: Workload) -> List[Service]:
    """Services in the workload's namespace whose selector targets its pods (or a subset)."""
    return [service for service in services
            if service.namespace == workload.namespace and is_selector_matching(service.selector, workload.selector)]


def _internal_endpoint(service: Service) -> Dict[str, Any]:
    # "my-service" in the default namespace, "my-service.namespace" elsewhere
    host = service.name if service.namespace == DEFAULT_NAMESPACE else f"{service.name}.{service.namespace}"
    return {"host": host, "ports": list(service.ports)}


class RolloutAdapters:
    """Adapters for the rollout routes."""

    def __init__(self, cluster: ClusterFacade):
        self.cluster = cluster

    def rolling_update(self, namespace: str, old_name: str, name: str, content: str,
                       cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Run a fleet-wide, pod by pod rolling update."""
        result = rolling_update(self.cluster, old_name, content, namespace=namespace, source=name, cancel=cancel)
        return {"success": True, **asdict(result)}

    def rolling_update_by_node(self, namespace: str, old_name: str, name: str, content: str, node_label: str,
                               poll_interval: int = 0, timeout: int = 0, deletion_timeout: int = 0,
                               creation_timeout: int = 0, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Run a node by node rolling update."""
        result = rolling_update_by_node(
            self.cluster, old_name, content, namespace, node_label,
            poll_interval=poll_interval, timeout=timeout, deletion_timeout=deletion_timeout,
            creation_timeout=creation_timeout, source=name, cancel=cancel,
        )
        return {"success": True, **asdict(result)}

    def list_workloads(self, namespace: str) -> Dict[str, Any]:
        """
        List the workloads of a namespace with their pod counts and services.

        Args:
            namespace: Namespace to list

        Returns:
            Dict with a ``workloads`` list
        """
        workloads = self.cluster.list(ObjectKind.WORKLOAD, namespace)
        services = self.cluster.list(ObjectKind.SERVICE, namespace)
        pods = self.cluster.list(ObjectKind.POD, namespace)

        items = []
        for workload in sorted(workloads, key=lambda w: w.name):
            matching_pods = [pod for pod in pods if pod.namespace == workload.namespace
                             and is_selector_matching(workload.selector, pod.labels)]
            items.append({
                "name": workload.name,
                "namespace": workload.namespace,
                "labels": workload.labels,
                "pods": asdict(_pod_info(workload, matching_pods)),
                "container_images": workload.container_images,
                "internal_endpoints": [_internal_endpoint(service)
                                       for service in _matching_services(services, workload)],
            })
        logger.info(f"📋 Retrieved {len(items)} workloads in {namespace}")
        return {"workloads": items}

    def get_workload_detail(self, namespace: str, name: str) -> Dict[str, Any]:
        """Detail of one workload: its pods with restart counts and the services targeting it."""
        workload = self.cluster.get(ObjectKind.WORKLOAD, namespace, name)
        pods = self.cluster.list(ObjectKind.POD, namespace, labels=workload.selector)
        services = self.cluster.list(ObjectKind.SERVICE, namespace)
        return {
            "name": workload.name,
            "namespace": workload.namespace,
            "labels": workload.labels,
            "label_selector": workload.selector,
            "container_images": workload.container_images,
            "pod_info": asdict(_pod_info(workload, pods)),
            "pods": [{
                "name": pod.name,
                "pod_phase": pod.status,
                "start_time": pod.creation_timestamp,
                "node_name": pod.node_name,
                "ready": pod.ready,
                "restart_count": pod.restart_count,
            } for pod in sorted(pods, key=lambda p: p.name)],
            "services": [{
                "name": service.name,
                "internal_endpoint": _internal_endpoint(service),
                "selector": service.selector,
            } for service in _matching_services(services, workload)],
        }

    def get_pod_info(self, namespace: str, name: str) -> Dict[str, Any]:
        """Aggregate pod phases of a workload."""
        workload = self.cluster.get(ObjectKind.WORKLOAD, namespace, name)
        pods = self.cluster.list(ObjectKind.POD, namespace, labels=workload.selector)
        return asdict(_pod_info(workload, pods))

    def update_replicas(self, namespace: str, name: str, replicas: int) -> Dict[str, Any]:
        """Set the desired replica count of a workload."""
        workload = self.cluster.get(ObjectKind.WORKLOAD, namespace, name)
        workload.replicas = replicas
        workload = self.cluster.update(ObjectKind.WORKLOAD, namespace, workload)
        logger.info(f"✅ Set {namespace}/{name} to {replicas} replicas")
        return {"success": True, "name": name, "namespace": namespace, "replicas": workload.replicas}

    def _services_for_deletion(self, workload: Workload) -> List[Service]:
        # Only when the selector targets this workload alone; shared services are kept.
        owners = self.cluster.list(ObjectKind.WORKLOAD, workload.namespace, labels=workload.selector)
        if len(owners) != 1:
            logger.info(f"Keeping services of {workload.name}: its selector targets {len(owners)} workloads")
            return []
        return self.cluster.list(ObjectKind.SERVICE, workload.namespace, labels=workload.selector)

    def delete_workload(self, namespace: str, name: str, delete_pods: bool = True,
                        delete_services: bool = False) -> Dict[str, Any]:
        """Delete a workload and, optionally, every pod its selector matches and its services."""
        workload = self.cluster.get(ObjectKind.WORKLOAD, namespace, name)

        deleted_services = []
        if delete_services:
            for service in self._services_for_deletion(workload):
                self.cluster.delete(ObjectKind.SERVICE, namespace, service.name)
                deleted_services.append(service.name)

        self.cluster.delete(ObjectKind.WORKLOAD, namespace, name,
                            propagation_policy=None if delete_pods else "Orphan")
        deleted = 0
        if delete_pods:
            for pod in self.cluster.list(ObjectKind.POD, namespace, labels=workload.selector):
                if pod.terminating:
                    continue
                try:
                    self.cluster.delete(ObjectKind.POD, namespace, pod.name)
                    deleted += 1
                except NotFoundError:
                    continue
        logger.info(f"✅ Deleted workload {namespace}/{name} ({deleted} pods, {len(deleted_services)} services)")
        return {"success": True, "name": name, "namespace": namespace, "deleted_pods": deleted,
                "deleted_services": deleted_services}
