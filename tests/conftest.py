from typing import Dict, Optional

import pytest
import yaml

from fake_cluster import FakeCluster
from rollout_backend.kube_types import RolloutTimeouts

PARTITION_KEY = "web_version"


def deployment_manifest(name: str, replicas: int, app: str, node_selector: Optional[Dict[str, str]] = None,
                        kind: str = "Deployment") -> Dict:
    template_spec = {"containers": [{"name": "web", "image": f"busybox:{name}"}]}
    if node_selector is not None:
        template_spec["nodeSelector"] = node_selector
    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": name, "labels": {"app": app}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": app}},
            "template": {"metadata": {"labels": {"app": app}}, "spec": template_spec},
        },
    }


def manifest_yaml(*docs: Dict) -> str:
    return yaml.safe_dump_all(list(docs))


def seed_fleet(cluster: FakeCluster, pods_per_node: Dict[str, int], app: str = "web-v1",
               partition_value: str = "v1", replicas: Optional[int] = None) -> None:
    """Old workload ``app`` with pods already running on nodes labeled ``web_version=v1``."""
    node_selector = {PARTITION_KEY: partition_value}
    for node_name in pods_per_node:
        cluster.add_node(node_name, {PARTITION_KEY: partition_value, "kubernetes.io/hostname": node_name})
    total = sum(pods_per_node.values())
    cluster.add_workload(app, replicas if replicas is not None else total, {"app": app}, node_selector)
    for node_name, count in pods_per_node.items():
        for i in range(count):
            cluster.add_pod(f"{app}-{node_name}-{i}", {"app": app}, node_name, node_selector=node_selector)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fast_timeouts() -> RolloutTimeouts:
    return RolloutTimeouts(poll_interval=1, phase_timeout=5, deletion_timeout=5, creation_timeout=5)


@pytest.fixture
def new_manifest() -> str:
    return manifest_yaml(deployment_manifest("web-v2", 4, "web-v2", {PARTITION_KEY: "v2"}))
