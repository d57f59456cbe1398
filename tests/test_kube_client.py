from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from rollout_backend.errors import ClusterAPIError, ConflictError, NotFoundError
from rollout_backend.kube_client import (KubeClient, _node_from_api, _pod_from_api, _service_from_api, _workload_from_api,
                                         translate_api_exception)
from rollout_backend.kube_types import Node, ObjectKind, Workload


def make_client() -> KubeClient:
    kube = KubeClient.__new__(KubeClient)
    kube.namespace = "default"
    kube.in_cluster = False
    kube.v1 = MagicMock()
    kube.apps_v1 = MagicMock()
    return kube


def api_deployment(name: str = "web-v1", replicas: int = 3) -> client.V1Deployment:
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, namespace="default", resource_version="42", labels={"app": name},
                                     annotations={"owner": "team-web"}),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": name}),
                spec=client.V1PodSpec(containers=[client.V1Container(name="web", image="busybox")],
                                      node_selector={"web_version": "v1"}),
            ),
        ),
        status=client.V1DeploymentStatus(replicas=2),
    )


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("status, expected", [
    (404, NotFoundError),
    (409, ConflictError),
    (403, ClusterAPIError),
    (500, ClusterAPIError),
])
def test_translate_api_exception(status, expected) -> None:
    error = translate_api_exception(ApiException(status=status, reason="nope"), "Get deployment default/web")

    assert type(error) is expected
    assert error.message == f"Get deployment default/web failed: {status} nope"


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def test_workload_from_api() -> None:
    workload = _workload_from_api(api_deployment())

    assert workload.name == "web-v1"
    assert workload.replicas == 3
    assert workload.selector == {"app": "web-v1"}
    assert workload.template_labels == {"app": "web-v1"}
    assert workload.node_selector == {"web_version": "v1"}
    assert workload.status_replicas == 2
    assert workload.resource_version == "42"
    assert workload.annotations == {"owner": "team-web"}
    assert workload.container_images == ["busybox"]


def test_pod_from_api_reads_readiness_and_termination() -> None:
    pod = client.V1Pod(
        metadata=client.V1ObjectMeta(name="web-1", namespace="default", labels={"app": "web"},
                                     deletion_timestamp=None),
        spec=client.V1PodSpec(containers=[client.V1Container(name="web")], node_name="node-a"),
        status=client.V1PodStatus(
            phase="Running",
            conditions=[client.V1PodCondition(type="Ready", status="True")],
            container_statuses=[client.V1ContainerStatus(name="web", image="busybox", image_id="", ready=True,
                                                         restart_count=2)],
        ),
    )

    converted = _pod_from_api(pod)

    assert converted.node_name == "node-a"
    assert converted.running_and_ready
    assert converted.restart_count == 2
    assert not converted.terminating


def test_pod_without_status_is_unknown() -> None:
    pod = client.V1Pod(metadata=client.V1ObjectMeta(name="web-1", namespace="default"))

    converted = _pod_from_api(pod)

    assert converted.status == "Unknown"
    assert not converted.ready
    assert converted.node_name is None


def test_node_from_api() -> None:
    node = client.V1Node(metadata=client.V1ObjectMeta(name="node-a", labels={"web_version": "v1"}),
                         spec=client.V1NodeSpec(unschedulable=True))

    converted = _node_from_api(node)

    assert converted.labels == {"web_version": "v1"}
    assert converted.unschedulable


# ---------------------------------------------------------------------------
# KubeClient calls
# ---------------------------------------------------------------------------


def test_get_missing_deployment_raises_not_found() -> None:
    kube = make_client()
    kube.apps_v1.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(NotFoundError):
        kube.get(ObjectKind.WORKLOAD, "default", "web-v1")


def test_list_pods_passes_selectors() -> None:
    kube = make_client()
    kube.v1.list_namespaced_pod.return_value = client.V1PodList(items=[])

    kube.list(ObjectKind.POD, "prod", labels={"app": "web"}, fields={"spec.nodeName": "node-a"})

    kube.v1.list_namespaced_pod.assert_called_once_with(
        namespace="prod", label_selector="app=web", field_selector="spec.nodeName=node-a")


def test_update_workload_patches_replicas_with_resource_version() -> None:
    kube = make_client()
    kube.apps_v1.patch_namespaced_deployment.return_value = api_deployment(replicas=5)
    workload = Workload(name="web-v1", namespace="default", replicas=5, selector={"app": "web-v1"},
                        template_labels={"app": "web-v1"}, resource_version="42")

    updated = kube.update(ObjectKind.WORKLOAD, "default", workload)

    kube.apps_v1.patch_namespaced_deployment.assert_called_once_with(
        name="web-v1", namespace="default", body={"metadata": {"resourceVersion": "42"}, "spec": {"replicas": 5}})
    assert updated.replicas == 5


def test_update_node_conflict() -> None:
    kube = make_client()
    kube.v1.patch_node.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ConflictError):
        kube.update(ObjectKind.NODE, "", Node(name="node-a", labels={"web_version": "v2"}, resource_version="7"))


def test_delete_workload_with_orphan_propagation() -> None:
    kube = make_client()

    kube.delete(ObjectKind.WORKLOAD, "default", "web-v1", propagation_policy="Orphan")

    options = kube.apps_v1.delete_namespaced_deployment.call_args.kwargs["body"]
    assert options.propagation_policy == "Orphan"
    assert options.grace_period_seconds is None


def test_watch_passes_timeout() -> None:
    kube = make_client()

    subscription = kube.watch(ObjectKind.NODE, "", labels={"web_version": "v1"}, timeout_seconds=3)

    assert subscription._list_fn is kube.v1.list_node
    assert subscription._kwargs == {"label_selector": "web_version=v1", "field_selector": None,
                                   "timeout_seconds": 3, "_request_timeout": 8}


def test_watch_without_timeout_sets_no_request_timeout() -> None:
    kube = make_client()

    subscription = kube.watch(ObjectKind.POD, "prod", labels={"app": "web"})

    assert "_request_timeout" not in subscription._kwargs
    assert subscription._kwargs["namespace"] == "prod"


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def test_service_from_api() -> None:
    service = _service_from_api(client.V1Service(
        metadata=client.V1ObjectMeta(name="web", namespace="prod", labels={"app": "web"}, resource_version="9"),
        spec=client.V1ServiceSpec(selector={"app": "web"},
                                  ports=[client.V1ServicePort(port=80, protocol="TCP")]),
    ))

    assert service.name == "web"
    assert service.namespace == "prod"
    assert service.selector == {"app": "web"}
    assert service.ports == [{"port": 80, "protocol": "TCP"}]
    assert service.resource_version == "9"


def test_list_and_delete_services() -> None:
    kube = make_client()
    kube.v1.list_namespaced_service.return_value = client.V1ServiceList(items=[])

    assert kube.list(ObjectKind.SERVICE, "prod", labels={"app": "web"}) == []
    kube.delete(ObjectKind.SERVICE, "prod", "web")

    kube.v1.list_namespaced_service.assert_called_once_with(
        namespace="prod", label_selector="app=web", field_selector=None)
    assert kube.v1.delete_namespaced_service.call_args.kwargs["name"] == "web"
