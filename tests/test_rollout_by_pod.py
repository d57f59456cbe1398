import pytest

from conftest import deployment_manifest, manifest_yaml, seed_fleet
from rollout_backend.errors import ConflictError, MultipleItemsError, NotFoundError, TimedOutError
from rollout_backend.kube_types import ObjectKind, RolloutTimeouts
from rollout_backend.rollout import REPLACED_SELECTOR_ANNOTATION, REPLACES_ANNOTATION, RolloutState, rolling_update


def v2_manifest(replicas: int = 4) -> str:
    return manifest_yaml(deployment_manifest("web-v2", replicas, "web-v2"))


def test_whole_swap_replaces_every_pod(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 2, "node-b": 2})

    result = rolling_update(cluster, "web-v1", v2_manifest(4), timeouts=fast_timeouts)

    assert ("default", "web-v1") not in cluster.workloads
    assert cluster.pods_matching({"app": "web-v1"}) == []
    new_pods = cluster.pods_matching({"app": "web-v2"}, include_terminating=False)
    assert len(new_pods) == 4
    assert all(pod.running_and_ready for pod in new_pods)
    assert result.strategy == "by-pod"
    assert result.units_processed == 4
    assert result.final_replicas == 4


def test_old_workload_is_orphaned_before_pods_are_swapped(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1, "node-b": 1})

    rolling_update(cluster, "web-v1", v2_manifest(2), timeouts=fast_timeouts)

    mutations = [(call.op, call.kind, call.name) for call in cluster.mutations()]
    assert mutations[:3] == [
        ("create", ObjectKind.WORKLOAD, "web-v2"),
        ("delete", ObjectKind.WORKLOAD, "web-v1"),
        ("delete", ObjectKind.POD, "web-v1-node-a-0"),
    ]
    assert cluster.mutations()[1].detail["propagation_policy"] == "Orphan"


def test_new_workload_records_what_it_replaces(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1})

    rolling_update(cluster, "web-v1", v2_manifest(1), timeouts=fast_timeouts)

    annotations = cluster.workloads[("default", "web-v2")].annotations
    assert annotations[REPLACES_ANNOTATION] == "web-v1"
    assert annotations[REPLACED_SELECTOR_ANNOTATION] == "app=web-v1"


def test_pods_are_swapped_in_node_order(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-b": 1, "node-a": 2})

    rolling_update(cluster, "web-v1", v2_manifest(3), timeouts=fast_timeouts)

    deleted = [call.name for call in cluster.calls if call.op == "delete" and call.kind == ObjectKind.POD]
    assert deleted == ["web-v1-node-a-0", "web-v1-node-a-1", "web-v1-node-b-0"]


def test_existing_new_workload_is_reused(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1})
    cluster.add_workload("web-v2", 1, {"app": "web-v2"}, {})

    result = rolling_update(cluster, "web-v1", v2_manifest(1), timeouts=fast_timeouts)

    assert [call for call in cluster.calls if call.op == "create"] == []
    assert result.final_replicas == 1


def test_existing_workload_with_other_selector_conflicts(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1})
    cluster.add_workload("web-v2", 1, {"app": "something-else"}, {})

    with pytest.raises(ConflictError):
        rolling_update(cluster, "web-v1", v2_manifest(1), timeouts=fast_timeouts)

    assert cluster.mutations() == []


def test_unknown_old_workload(cluster, fast_timeouts) -> None:
    with pytest.raises(NotFoundError):
        rolling_update(cluster, "web-v1", v2_manifest(1), timeouts=fast_timeouts)


def test_multiple_documents_rejected(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1})
    manifest = manifest_yaml(deployment_manifest("web-v2", 1, "web-v2"), deployment_manifest("web-v3", 1, "web-v3"))

    with pytest.raises(MultipleItemsError):
        rolling_update(cluster, "web-v1", manifest, timeouts=fast_timeouts)

    assert cluster.mutations() == []


def test_stuck_replacement_times_out(cluster) -> None:
    seed_fleet(cluster, {"node-a": 1, "node-b": 1})
    cluster.stalled.add("web-v2")
    timeouts = RolloutTimeouts(poll_interval=1, phase_timeout=5, deletion_timeout=5, creation_timeout=0.3)
    states = []

    with pytest.raises(TimedOutError):
        rolling_update(cluster, "web-v1", v2_manifest(2), timeouts=timeouts,
                       on_transition=lambda s: states.append(s.state))

    assert states[-1] == RolloutState.FAILED
    assert ("default", "web-v1-node-b-0") in cluster.pods
    assert not cluster.pods[("default", "web-v1-node-b-0")].terminating


def test_rerun_after_failure_swaps_the_remaining_orphans(cluster, fast_timeouts) -> None:
    seed_fleet(cluster, {"node-a": 1, "node-b": 1})
    cluster.stalled.add("web-v2")
    stuck = RolloutTimeouts(poll_interval=1, phase_timeout=5, deletion_timeout=5, creation_timeout=0.3)
    with pytest.raises(TimedOutError):
        rolling_update(cluster, "web-v1", v2_manifest(2), timeouts=stuck)
    assert ("default", "web-v1") not in cluster.workloads

    cluster.stalled.clear()
    result = rolling_update(cluster, "web-v1", v2_manifest(2), timeouts=fast_timeouts)

    deleted = [call.name for call in cluster.calls if call.op == "delete" and call.kind == ObjectKind.POD]
    assert deleted == ["web-v1-node-a-0", "web-v1-node-b-0"]
    assert cluster.pods_matching({"app": "web-v1"}) == []
    assert len(cluster.pods_matching({"app": "web-v2"}, include_terminating=False)) == 2
    assert result.units_processed == 1
    assert result.final_replicas == 2


def test_rerun_without_record_of_the_old_workload(cluster, fast_timeouts) -> None:
    cluster.add_workload("web-v2", 1, {"app": "web-v2"}, {})

    with pytest.raises(NotFoundError):
        rolling_update(cluster, "web-v1", v2_manifest(1), timeouts=fast_timeouts)
