from __future__ import annotations

import base64

import pytest
from coincurve import PublicKeyXOnly

from ordinalsplus.errors import ErrorCode, InscriptionError
from ordinalsplus.keys import from_private_key
from ordinalsplus.ordinals.envelope import build_envelope, build_leaf_script
from ordinalsplus.ordinals.taproot import TapLeaf, derive_address
from ordinalsplus.transaction import (
    PartiallySignedTransaction,
    PsbtInput,
    Transaction,
    TxOut,
    taproot_script_path_sighash,
)

TXID = "a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6a1b2c3d4e5f6a1b2"
P2WPKH = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")


def _unsigned() -> Transaction:
    tx = Transaction()
    tx.add_input(TXID, 1)
    tx.add_output(1000, P2WPKH)
    return tx


def test_serialization_layout() -> None:
    tx = _unsigned()
    raw = tx.serialize()
    assert raw[:4] == b"\x02\x00\x00\x00"
    assert raw[4] == 1  # no witness: no marker/flag
    assert raw[5:37] == bytes.fromhex(TXID)[::-1]
    assert raw[37:41] == b"\x01\x00\x00\x00"
    assert raw[42:46] == b"\xfd\xff\xff\xff"
    assert raw[-4:] == b"\x00\x00\x00\x00"
    assert len(raw) == 10 + 41 + 31
    assert tx.vsize == 82


def test_witness_does_not_change_txid() -> None:
    tx = _unsigned()
    txid = tx.txid
    tx.inputs[0].witness = [b"\x01" * 64]
    assert tx.txid == txid
    assert tx.serialize()[4:6] == b"\x00\x01"
    assert tx.vsize > 82


def test_psbt_serialization() -> None:
    tx = _unsigned()
    psbt = PartiallySignedTransaction(tx, [PsbtInput(witness_utxo=TxOut(5000, P2WPKH))])
    encoded = psbt.to_base64()
    assert encoded.startswith("cHNidP8")
    raw = base64.b64decode(encoded)
    unsigned = tx.serialize(include_witness=False)
    assert raw[5:8] == b"\x01\x00" + bytes([len(unsigned)])
    assert unsigned in raw
    assert TxOut(5000, P2WPKH).serialize() in raw


def test_extract_before_finalize_is_fatal() -> None:
    psbt = PartiallySignedTransaction(_unsigned(), [PsbtInput(witness_utxo=TxOut(5000, P2WPKH))])
    with pytest.raises(InscriptionError) as excinfo:
        psbt.extract_transaction()
    assert excinfo.value.code is ErrorCode.INVALID_TRANSACTION
    assert excinfo.value.recoverable is False
    with pytest.raises(InscriptionError):
        psbt.finalize_input(0)


def test_script_path_signature_verifies() -> None:
    key = from_private_key("11" * 32)
    script = build_leaf_script(build_envelope("sig test", "text/plain"), key.public_key)
    details = derive_address(key.public_key, TapLeaf(script))
    tx = Transaction()
    tx.add_input(TXID, 0)
    tx.add_output(600, P2WPKH)
    prevout = TxOut(2000, details.script)
    psbt = PartiallySignedTransaction(
        tx, [PsbtInput(witness_utxo=prevout, tap_leaf_script=details.tap_leaf_script())]
    )

    signature = psbt.sign_script_path(0, key.private_key)
    sighash = taproot_script_path_sighash(tx, 0, [prevout], details.tap_leaf_script().leaf_hash)
    assert len(signature) == 64
    assert PublicKeyXOnly(key.public_key).verify(signature, sighash)

    witness = psbt.finalize_input(0)
    assert witness == [signature, script, details.leaf.control_block]
    final = psbt.extract_transaction()
    assert final.inputs[0].witness == witness
    assert final.txid == tx.txid


def test_signing_with_foreign_key_fails() -> None:
    key = from_private_key("11" * 32)
    other = from_private_key("22" * 32)
    script = build_leaf_script(build_envelope("x", "text/plain"), key.public_key)
    details = derive_address(key.public_key, TapLeaf(script))
    tx = Transaction()
    tx.add_input(TXID, 0)
    tx.add_output(600, P2WPKH)
    psbt = PartiallySignedTransaction(
        tx,
        [PsbtInput(witness_utxo=TxOut(2000, details.script), tap_leaf_script=details.tap_leaf_script())],
    )
    with pytest.raises(InscriptionError) as excinfo:
        psbt.sign_script_path(0, other.private_key)
    assert excinfo.value.code is ErrorCode.SIGNING_ERROR


def test_sighash_commits_to_outputs() -> None:
    tx = _unsigned()
    prevouts = [TxOut(5000, P2WPKH)]
    leaf_hash = bytes(32)
    before = taproot_script_path_sighash(tx, 0, prevouts, leaf_hash)
    tx.outputs[0].value = 999
    assert taproot_script_path_sighash(tx, 0, prevouts, leaf_hash) != before
    with pytest.raises(ValueError):
        taproot_script_path_sighash(tx, 0, [], leaf_hash)
