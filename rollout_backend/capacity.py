"""
Enumeration of the nodes a rollout migrates, and of the pods on them.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Mapping, Optional

from .errors import NoEligibleCapacityUnitError
from .kube_client import ClusterFacade
from .kube_types import Node, ObjectKind, Pod

logger = logging.getLogger(__name__)


def list_capacity_units(cluster: ClusterFacade, label_key: str, old_value: str,
                        quarantine_value: Optional[str] = None) -> List[Node]:
    """
    List the nodes to migrate, in processing order.

    Nodes left in quarantine by an interrupted rollout come first so they are
    finished before untouched ones; within each group nodes are sorted by name.
    """
    units: List[Node] = []
    if quarantine_value:
        units.extend(sorted(cluster.list(ObjectKind.NODE, "", labels={label_key: quarantine_value}),
                            key=lambda node: node.name))
    units.extend(sorted(cluster.list(ObjectKind.NODE, "", labels={label_key: old_value}),
                        key=lambda node: node.name))
    if not units:
        raise NoEligibleCapacityUnitError(f"No node is labeled {label_key}={old_value}")
    logger.info(f"Found {len(units)} nodes to migrate: {[node.name for node in units]}")
    return units


def pods_by_node(cluster: ClusterFacade, namespace: str, selector: Mapping[str, str]) -> Dict[str, List[Pod]]:
    """Group the live (not terminating) pods matching ``selector`` by node name.

    Pods not yet bound to a node are grouped under the empty string.
    """
    grouped: Dict[str, List[Pod]] = defaultdict(list)
    for pod in cluster.list(ObjectKind.POD, namespace, labels=selector):
        if pod.terminating:
            continue
        grouped[pod.node_name or ""].append(pod)
    return dict(grouped)


def count_pods_per_unit(units: List[Node], grouped: Mapping[str, List[Pod]]) -> List[int]:
    return [len(grouped.get(node.name, [])) for node in units]
