from __future__ import annotations

import json
from pathlib import Path

import pytest

from ordinalsplus.config import EngineConfig
from ordinalsplus.errors import BroadcastError, ErrorCode, InscriptionError
from ordinalsplus.esplora import TransactionConfirmation
from ordinalsplus.keys import from_private_key
from ordinalsplus.ordinals import InscriptionEngine, prepare_inscription, write_receipt
from ordinalsplus.ordinals.envelope import parse_envelope
from ordinalsplus.tracker import TransactionStatus, TransactionType
from ordinalsplus.utxo import UTXO

CHANGE_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
CHANGE_SCRIPT = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
DESTINATION = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"


class StubBroadcaster:
    def __init__(self, reject_with: str | None = None) -> None:
        self.reject_with = reject_with
        self.sent: list[str] = []
        self.confirmed: set[str] = set()
        self.dropped: set[str] = set()

    def broadcast_transaction(self, network: str, raw_tx_hex: str) -> str:
        if self.reject_with:
            raise BroadcastError("rejected", status_code=400, response=self.reject_with)
        self.sent.append(raw_tx_hex)
        return f"{len(self.sent):064x}"

    def get_transaction_status(self, network: str, txid: str) -> TransactionConfirmation:
        if txid in self.confirmed:
            return TransactionConfirmation(status="confirmed", confirmations=1, block_height=10)
        if txid in self.dropped:
            return TransactionConfirmation(status="not_found")
        return TransactionConfirmation(status="pending")


def test_prepare_hello_ordinals() -> None:
    prepared = prepare_inscription("Hello, Ordinals!", "text/plain", fee_rate=10)
    assert prepared.commit_address.startswith("bc1p")
    assert prepared.estimated_reveal_fee > 0
    assert prepared.required_commit_amount == prepared.estimated_reveal_fee + prepared.postage
    envelope = parse_envelope(prepared.leaf_script.script)
    assert envelope.content_type == "text/plain"
    assert envelope.body == b"Hello, Ordinals!"
    assert prepared.key_pair.public_key in prepared.leaf_script.script

    summary = prepared.summary()
    assert summary["commit_address"] == prepared.commit_address
    assert "private" not in json.dumps(summary)


def test_fresh_key_per_inscription() -> None:
    first = prepare_inscription("same", "text/plain", fee_rate=2)
    second = prepare_inscription("same", "text/plain", fee_rate=2)
    assert first.key_pair.public_key != second.key_pair.public_key
    assert first.commit_address != second.commit_address


def test_recovery_key_changes_internal_key() -> None:
    reveal_key = from_private_key("11" * 32)
    recovery = from_private_key("33" * 32)
    plain = prepare_inscription("x", "text/plain", fee_rate=2, reveal_key_pair=reveal_key)
    recoverable = prepare_inscription(
        "x", "text/plain", fee_rate=2, reveal_key_pair=reveal_key, recovery_public_key=recovery.public_key
    )
    assert recoverable.commit_details.internal_key == recovery.public_key
    assert recoverable.commit_address != plain.commit_address
    assert recoverable.leaf_script.script == plain.leaf_script.script


def test_testnet_addresses() -> None:
    prepared = prepare_inscription("x", "text/plain", fee_rate=2, network="testnet")
    assert prepared.commit_address.startswith("tb1p")
    assert prepared.network == "testnet"


def test_prepare_rejects_bad_inputs() -> None:
    with pytest.raises(InscriptionError) as excinfo:
        prepare_inscription("x", "text/plain", fee_rate=0)
    assert excinfo.value.code is ErrorCode.INVALID_FEE_RATE
    with pytest.raises(InscriptionError):
        prepare_inscription("x", "text/plain", fee_rate=1, network="moonnet")


def _engine(broadcaster: StubBroadcaster) -> InscriptionEngine:
    return InscriptionEngine(EngineConfig(fee_rate_sat_vb=10, retry_base_delay=0), broadcaster=broadcaster)


def test_engine_commit_reveal_broadcast_flow() -> None:
    broadcaster = StubBroadcaster()
    engine = _engine(broadcaster)
    prepared = engine.prepare("Hello, Ordinals!", "text/plain", reveal_key_pair=from_private_key("11" * 32))
    assert prepared.fee_rate == 10

    commit = engine.commit(
        prepared, [UTXO(txid="aa" * 32, vout=0, value=50_000, script_pubkey=CHANGE_SCRIPT)], CHANGE_ADDRESS
    )
    commit_txid = engine.broadcast(commit.tracking_id, commit.unsigned_tx_hex)
    assert engine.tracker.get_transaction(commit.tracking_id).status is TransactionStatus.CONFIRMING

    reveal = engine.reveal(
        prepared, commit.commit_utxo(commit_txid), DESTINATION, parent_id=commit.tracking_id
    )
    assert reveal.plan.postage_amount == prepared.postage
    assert reveal.plan.fee == prepared.estimated_reveal_fee
    children = engine.tracker.get_child_transactions(commit.tracking_id)
    assert [child.type for child in children] == [TransactionType.REVEAL]

    reveal_txid = engine.broadcast(reveal.tracking_id, reveal.hex)
    assert engine.refresh_status(reveal.tracking_id).status is TransactionStatus.CONFIRMING
    broadcaster.confirmed.add(reveal_txid)
    tracked = engine.refresh_status(reveal.tracking_id)
    assert tracked.status is TransactionStatus.CONFIRMED
    assert tracked.txid == reveal_txid
    assert broadcaster.sent == [commit.unsigned_tx_hex, reveal.hex]


def test_broadcast_failure_marks_failed_with_hint() -> None:
    engine = _engine(StubBroadcaster(reject_with="min relay fee not met"))
    tracked = engine.tracker.create_transaction(TransactionType.REVEAL)
    with pytest.raises(BroadcastError) as excinfo:
        engine.broadcast(tracked.id, "00")
    assert "fee rate" in excinfo.value.details["hint"]
    stored = engine.tracker.get_transaction(tracked.id)
    assert stored.status is TransactionStatus.FAILED
    assert stored.error["code"] == "BROADCAST_FAILURE"


def test_broadcast_requires_collaborator() -> None:
    engine = InscriptionEngine(EngineConfig(fee_rate_sat_vb=5))
    tracked = engine.tracker.create_transaction(TransactionType.COMMIT)
    with pytest.raises(InscriptionError) as excinfo:
        engine.broadcast(tracked.id, "00")
    assert excinfo.value.code is ErrorCode.INITIALIZATION_FAILED


def test_reveal_retry_surfaces_last_error() -> None:
    engine = _engine(StubBroadcaster())
    prepared = engine.prepare("retry", "text/plain")
    bad_utxo = UTXO(txid="cc" * 32, vout=0, value=0, script_pubkey=prepared.commit_details.script)
    with pytest.raises(InscriptionError) as excinfo:
        engine.reveal(prepared, bad_utxo, DESTINATION, retry=True)
    assert excinfo.value.code is ErrorCode.INVALID_UTXO


def test_write_receipt(tmp_path: Path) -> None:
    prepared = prepare_inscription(
        "receipt", "text/plain", fee_rate=3, reveal_key_pair=from_private_key("11" * 32)
    )
    path = write_receipt(tmp_path / "out" / "receipt.json", prepared)
    data = json.loads(path.read_text())
    assert data["commit_address"] == prepared.commit_address
    assert data["leaf_script_hex"] == prepared.leaf_script.script.hex()
    assert "reveal_private_key_hex" not in data

    write_receipt(path, prepared, include_private_key=True)
    assert json.loads(path.read_text())["reveal_private_key_hex"] == "11" * 32


def test_failed_entry_is_not_rebroadcast() -> None:
    broadcaster = StubBroadcaster(reject_with="txn-mempool-conflict")
    engine = _engine(broadcaster)
    tracked = engine.tracker.create_transaction(TransactionType.REVEAL)
    with pytest.raises(BroadcastError):
        engine.broadcast(tracked.id, "00")

    broadcaster.reject_with = None
    with pytest.raises(InscriptionError) as excinfo:
        engine.broadcast(tracked.id, "00")
    assert excinfo.value.code is ErrorCode.STATE_ERROR
    assert broadcaster.sent == []
    stored = engine.tracker.get_transaction(tracked.id)
    assert stored.status is TransactionStatus.FAILED
    assert stored.txid is None


def test_missing_transaction_eventually_fails() -> None:
    broadcaster = StubBroadcaster()
    engine = InscriptionEngine(EngineConfig(fee_rate_sat_vb=10), broadcaster=broadcaster, max_not_found_polls=2)
    tracked = engine.tracker.create_transaction(TransactionType.COMMIT)
    txid = engine.broadcast(tracked.id, "00")

    broadcaster.dropped.add(txid)
    assert engine.refresh_status(tracked.id).status is TransactionStatus.CONFIRMING
    broadcaster.dropped.clear()
    assert engine.refresh_status(tracked.id).metadata["not_found_polls"] == 0

    broadcaster.dropped.add(txid)
    engine.refresh_status(tracked.id)
    stored = engine.refresh_status(tracked.id)
    assert stored.status is TransactionStatus.FAILED
    assert stored.error["code"] == "BROADCAST_FAILURE"
    assert engine.refresh_status(tracked.id).status is TransactionStatus.FAILED


def test_engine_batch_commit_funds_each_reveal() -> None:
    engine = _engine(StubBroadcaster())
    prepared = [
        engine.prepare("one", "text/plain", reveal_key_pair=from_private_key("11" * 32)),
        engine.prepare("two", "text/plain", reveal_key_pair=from_private_key("22" * 32)),
    ]
    batch = engine.batch_commit(
        prepared, [UTXO(txid="aa" * 32, vout=0, value=50_000, script_pubkey=CHANGE_SCRIPT)], CHANGE_ADDRESS
    )
    assert batch.total_commit_amount == sum(p.required_commit_amount for p in prepared)

    txid = engine.broadcast(batch.tracking_id, batch.unsigned_tx_hex)
    for index, item in enumerate(prepared):
        reveal = engine.reveal(item, batch.commit_utxo(index, txid), DESTINATION, parent_id=batch.tracking_id)
        assert reveal.plan.postage_amount == item.postage
        assert reveal.tx.inputs[0].vout == index
    assert len(engine.tracker.get_child_transactions(batch.tracking_id)) == 2

    with pytest.raises(InscriptionError) as excinfo:
        engine.batch_commit([], [], CHANGE_ADDRESS)
    assert excinfo.value.code is ErrorCode.INVALID_INPUT
