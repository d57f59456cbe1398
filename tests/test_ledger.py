import pytest

from rollout_backend.ledger import ReplicaLedger


def test_allocate_moves_replicas_and_conserves_total() -> None:
    ledger = ReplicaLedger(original_total=10, target=10)
    for count in (4, 3, 3):
        moved = ledger.allocate(count)
        assert moved == count
        assert ledger.old_remaining + ledger.new_allocated == 10
    assert ledger.final_correction() == 0


def test_allocate_never_exceeds_target() -> None:
    ledger = ReplicaLedger(original_total=10, target=8)
    assert [ledger.allocate(n) for n in (4, 3, 3)] == [4, 3, 1]
    assert ledger.new_allocated == 8
    assert ledger.old_remaining == 2
    assert ledger.final_correction() == 0


def test_final_correction_tops_up_short_allocation() -> None:
    ledger = ReplicaLedger(original_total=10, target=12)
    for count in (4, 3, 3):
        ledger.allocate(count)
    assert ledger.new_allocated == 10
    assert ledger.final_correction() == 2


def test_final_correction_when_pods_were_missing_from_nodes() -> None:
    ledger = ReplicaLedger(original_total=10, target=10)
    for count in (4, 3, 2):
        ledger.allocate(count)
    assert ledger.final_correction() == 1


def test_allocate_zero_is_a_no_op() -> None:
    ledger = ReplicaLedger(original_total=3, target=3)
    assert ledger.allocate(0) == 0
    assert ledger.old_remaining == 3


def test_allocate_bounded_by_old_remaining() -> None:
    ledger = ReplicaLedger(original_total=2, target=5)
    assert ledger.allocate(4) == 2
    assert ledger.old_remaining == 0


def test_resumed_ledger_starts_with_granted_replicas() -> None:
    ledger = ReplicaLedger(original_total=6, target=4, new_allocated=2)
    assert ledger.old_remaining == 4
    assert ledger.allocate(3) == 2
    assert ledger.new_allocated == 4


def test_invalid_ledger() -> None:
    with pytest.raises(ValueError):
        ReplicaLedger(original_total=-1, target=2)
    with pytest.raises(ValueError):
        ReplicaLedger(original_total=2, target=2, new_allocated=3)
