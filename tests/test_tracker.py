from __future__ import annotations

import pytest

from ordinalsplus.errors import ErrorCode, InscriptionError, TrackerStateError
from ordinalsplus.tracker import (
    TrackedTransaction,
    TransactionStatus,
    TransactionStatusTracker,
    TransactionType,
)


def test_lifecycle_moves_forward() -> None:
    tracker = TransactionStatusTracker()
    tx = tracker.create_transaction(TransactionType.COMMIT)
    assert tx.id.startswith("commit-")
    assert tx.status is TransactionStatus.PENDING

    tracker.set_transaction_status(tx.id, TransactionStatus.CONFIRMING)
    tracker.set_transaction_status(tx.id, TransactionStatus.CONFIRMING)  # no-op
    tracker.set_transaction_status(tx.id, TransactionStatus.CONFIRMED)
    assert tracker.get_transaction(tx.id).status is TransactionStatus.CONFIRMED
    assert tracker.get_transaction(tx.id).is_terminal


@pytest.mark.parametrize(
    "path",
    [
        [TransactionStatus.CONFIRMING, TransactionStatus.PENDING],
        [TransactionStatus.CONFIRMED],
        [TransactionStatus.FAILED, TransactionStatus.CONFIRMING],
    ],
)
def test_invalid_transitions_raise(path) -> None:
    tracker = TransactionStatusTracker()
    tx = tracker.add_transaction(TrackedTransaction(id="tx-1", type=TransactionType.REVEAL))
    with pytest.raises(TrackerStateError) as excinfo:
        for status in path:
            tracker.set_transaction_status(tx.id, status)
    assert excinfo.value.code is ErrorCode.STATE_ERROR


def test_error_forces_failed_from_any_state() -> None:
    tracker = TransactionStatusTracker()
    tx = tracker.create_transaction(TransactionType.REVEAL)
    tracker.set_transaction_status(tx.id, TransactionStatus.CONFIRMING)
    tracker.set_transaction_error(
        tx.id, InscriptionError(ErrorCode.BROADCAST_FAILURE, "rejected by node")
    )
    stored = tracker.get_transaction(tx.id)
    assert stored.status is TransactionStatus.FAILED
    assert stored.error["code"] == "BROADCAST_FAILURE"
    assert stored.error["category"] == "network"
    assert "timestamp" in stored.error


def test_error_from_plain_exception_and_mapping() -> None:
    tracker = TransactionStatusTracker()
    first = tracker.create_transaction(TransactionType.COMMIT)
    second = tracker.create_transaction(TransactionType.COMMIT)
    tracker.set_transaction_error(first.id, ValueError("boom"))
    tracker.set_transaction_error(second.id, {"code": "CUSTOM", "message": "x"})
    assert tracker.get_transaction(first.id).error["code"] == "UNEXPECTED_ERROR"
    assert tracker.get_transaction(second.id).error["timestamp"]


def test_progress_events_are_ordered() -> None:
    tracker = TransactionStatusTracker()
    tx = tracker.create_transaction(TransactionType.COMMIT)
    tracker.add_transaction_progress_event(tx.id, "first", timestamp=1.0)
    tracker.add_transaction_progress_event(tx.id, "second", timestamp=2.0, data={"n": 2})
    events = tracker.get_progress_events(tx.id)
    assert [e.message for e in events] == ["first", "second"]
    assert events[1].data == {"n": 2}


def test_child_transactions_link_to_parent() -> None:
    tracker = TransactionStatusTracker()
    commit = tracker.create_transaction(TransactionType.COMMIT)
    reveal = tracker.create_transaction(TransactionType.REVEAL, parent_id=commit.id)
    tracker.create_transaction(TransactionType.REVEAL)
    assert tracker.get_child_transactions(commit.id) == [reveal]
    assert len(tracker) == 3


def test_unknown_and_duplicate_ids() -> None:
    tracker = TransactionStatusTracker()
    assert tracker.get_transaction("missing") is None
    with pytest.raises(InscriptionError):
        tracker.set_transaction_status("missing", TransactionStatus.CONFIRMING)
    tracker.add_transaction(TrackedTransaction(id="dup", type=TransactionType.COMMIT))
    with pytest.raises(InscriptionError):
        tracker.add_transaction(TrackedTransaction(id="dup", type=TransactionType.COMMIT))


def test_trackers_are_independent() -> None:
    first = TransactionStatusTracker()
    second = TransactionStatusTracker()
    tx = first.create_transaction(TransactionType.COMMIT)
    assert tx.id in first
    assert tx.id not in second
    first.clear()
    assert len(first) == 0
