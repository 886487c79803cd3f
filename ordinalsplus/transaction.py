"""Segwit transaction model, BIP341 script-path signing and minimal PSBT support.

The commit transaction leaves this module as an unsigned PSBT (BIP174 v0) so an
external wallet can sign its funding inputs. The reveal transaction is signed
here with the ephemeral reveal key: the input carries a :class:`TapLeafScript`
descriptor, :meth:`PartiallySignedTransaction.sign_script_path` produces the
BIP340 signature over the BIP341 sighash, :meth:`finalize_input` assembles the
witness and :meth:`extract_transaction` returns the network transaction.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from coincurve import PrivateKey, PublicKeyXOnly

from .crypto import (
    TAPSCRIPT_LEAF_VERSION,
    double_sha256,
    ser_compact_size,
    sha256,
    tagged_hash,
    taproot_leaf_hash,
)
from .errors import ErrorCode, InscriptionError

logger = logging.getLogger(__name__)

TX_VERSION = 2
SEQUENCE_RBF = 0xFFFFFFFD
SIGHASH_DEFAULT = 0x00

PSBT_MAGIC = b"psbt\xff"
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + ser_compact_size(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class TxIn:
    """A transaction input referencing ``txid:vout`` (txid in display byte order)."""

    txid: str
    vout: int
    sequence: int = SEQUENCE_RBF
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + self.vout.to_bytes(4, "little")

    def serialize(self) -> bytes:
        return (
            self.outpoint
            + ser_compact_size(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    def add_input(self, txid: str, vout: int, *, sequence: int = SEQUENCE_RBF) -> TxIn:
        tx_in = TxIn(txid=txid, vout=vout, sequence=sequence)
        self.inputs.append(tx_in)
        return tx_in

    def add_output(self, value: int, script_pubkey: bytes) -> TxOut:
        tx_out = TxOut(value=value, script_pubkey=script_pubkey)
        self.outputs.append(tx_out)
        return tx_out

    @property
    def has_witness(self) -> bool:
        return any(tx_in.witness for tx_in in self.inputs)

    def serialize(self, *, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        parts = [self.version.to_bytes(4, "little")]
        if with_witness:
            parts.append(b"\x00\x01")
        parts.append(ser_compact_size(len(self.inputs)))
        parts.extend(tx_in.serialize() for tx_in in self.inputs)
        parts.append(ser_compact_size(len(self.outputs)))
        parts.extend(tx_out.serialize() for tx_out in self.outputs)
        if with_witness:
            for tx_in in self.inputs:
                parts.append(ser_compact_size(len(tx_in.witness)))
                for item in tx_in.witness:
                    parts.append(ser_compact_size(len(item)) + item)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    @property
    def output_value(self) -> int:
        return sum(out.value for out in self.outputs)


@dataclass(frozen=True)
class TapLeafScript:
    """Everything a signer needs to spend a single tapscript leaf."""

    internal_key: bytes
    control_block: bytes
    script: bytes
    leaf_version: int = TAPSCRIPT_LEAF_VERSION

    @property
    def leaf_hash(self) -> bytes:
        return taproot_leaf_hash(self.script, self.leaf_version)


def taproot_script_path_sighash(
    tx: Transaction,
    input_index: int,
    prevouts: Sequence[TxOut],
    leaf_hash: bytes,
    *,
    hash_type: int = SIGHASH_DEFAULT,
) -> bytes:
    """Compute the BIP341 signature message hash for a tapscript spend.

    Only ``SIGHASH_DEFAULT`` is supported, which commits to every input and
    output of the transaction.

    Args:
        tx: Transaction being signed
        input_index: Index of the input spending the script path
        prevouts: Outputs being spent, one per input, in input order
        leaf_hash: TapLeaf hash of the script being executed

    Returns:
        32-byte ``TapSighash`` tagged hash
    """
    if hash_type != SIGHASH_DEFAULT:
        raise ValueError("Only SIGHASH_DEFAULT is supported")
    if len(prevouts) != len(tx.inputs):
        raise ValueError("One prevout is required for every input")
    if not 0 <= input_index < len(tx.inputs):
        raise ValueError(f"Input index {input_index} out of range")

    sha_prevouts = sha256(b"".join(tx_in.outpoint for tx_in in tx.inputs))
    sha_amounts = sha256(b"".join(out.value.to_bytes(8, "little") for out in prevouts))
    sha_scriptpubkeys = sha256(
        b"".join(ser_compact_size(len(out.script_pubkey)) + out.script_pubkey for out in prevouts)
    )
    sha_sequences = sha256(b"".join(tx_in.sequence.to_bytes(4, "little") for tx_in in tx.inputs))
    sha_outputs = sha256(b"".join(out.serialize() for out in tx.outputs))

    spend_type = 2  # script path, no annex
    message = b"".join(
        [
            b"\x00",  # epoch
            bytes([hash_type]),
            tx.version.to_bytes(4, "little"),
            tx.locktime.to_bytes(4, "little"),
            sha_prevouts,
            sha_amounts,
            sha_scriptpubkeys,
            sha_sequences,
            sha_outputs,
            bytes([spend_type]),
            input_index.to_bytes(4, "little"),
            leaf_hash,
            b"\x00",  # key_version
            (0xFFFFFFFF).to_bytes(4, "little"),  # codesep_pos
        ]
    )
    return tagged_hash("TapSighash", message)


@dataclass
class PsbtInput:
    witness_utxo: TxOut | None = None
    tap_leaf_script: TapLeafScript | None = None
    tap_script_sigs: dict[bytes, bytes] = field(default_factory=dict)
    final_script_witness: list[bytes] | None = None


class PartiallySignedTransaction:
    """A transaction plus per-input signing metadata."""

    def __init__(self, tx: Transaction, inputs: Iterable[PsbtInput] | None = None) -> None:
        self.tx = tx
        self.inputs = list(inputs) if inputs is not None else [PsbtInput() for _ in tx.inputs]
        if len(self.inputs) != len(tx.inputs):
            raise ValueError("PSBT input metadata must match the transaction inputs")

    def _prevouts(self) -> list[TxOut]:
        prevouts = []
        for index, psbt_in in enumerate(self.inputs):
            if psbt_in.witness_utxo is None:
                raise InscriptionError(
                    ErrorCode.SIGNING_ERROR,
                    f"Input {index} is missing its witness UTXO; cannot compute a taproot sighash",
                )
            prevouts.append(psbt_in.witness_utxo)
        return prevouts

    def sign_script_path(self, index: int, private_key: bytes) -> bytes:
        """Sign input ``index`` through its tapleaf script with ``private_key``.

        Aux randomness is fixed at zero so the same key and transaction always
        produce the same signature.

        Raises:
            InscriptionError: ``SIGNING_ERROR`` if the input lacks a leaf
                descriptor or the produced signature does not verify
        """
        psbt_in = self.inputs[index]
        leaf = psbt_in.tap_leaf_script
        if leaf is None:
            raise InscriptionError(
                ErrorCode.SIGNING_ERROR, f"Input {index} has no tapleaf script descriptor"
            )
        try:
            sighash = taproot_script_path_sighash(self.tx, index, self._prevouts(), leaf.leaf_hash)
            signer = PrivateKey(private_key)
            signature = signer.sign_schnorr(sighash, bytes(32))
            xonly = signer.public_key_xonly.format()
            verified = PublicKeyXOnly(xonly).verify(signature, sighash)
        except InscriptionError:
            raise
        except (ValueError, TypeError) as exc:
            raise InscriptionError(
                ErrorCode.SIGNING_ERROR, f"Failed to sign input {index}: {exc}"
            ) from exc
        if not verified:
            raise InscriptionError(
                ErrorCode.SIGNING_ERROR, f"Schnorr signature for input {index} failed verification"
            )
        if xonly not in leaf.script:
            raise InscriptionError(
                ErrorCode.SIGNING_ERROR,
                f"Signing key {xonly.hex()} is not the key committed in the leaf script",
            )
        psbt_in.tap_script_sigs[xonly + leaf.leaf_hash] = signature
        logger.debug("Signed input %s via script path (leaf %s)", index, leaf.leaf_hash.hex())
        return signature

    def finalize_input(self, index: int) -> list[bytes]:
        """Assemble ``[signature, script, control_block]`` as the input witness."""
        psbt_in = self.inputs[index]
        leaf = psbt_in.tap_leaf_script
        if leaf is None or not psbt_in.tap_script_sigs:
            raise InscriptionError(
                ErrorCode.INVALID_TRANSACTION, f"Input {index} is not signed and cannot be finalized"
            )
        signature = next(
            (sig for key, sig in psbt_in.tap_script_sigs.items() if key.endswith(leaf.leaf_hash)),
            None,
        )
        if signature is None:
            raise InscriptionError(
                ErrorCode.INVALID_TRANSACTION, f"Input {index} has no signature for its leaf"
            )
        psbt_in.final_script_witness = [signature, leaf.script, leaf.control_block]
        return psbt_in.final_script_witness

    def extract_transaction(self) -> Transaction:
        """Return the finalized network transaction.

        Raises:
            InscriptionError: ``INVALID_TRANSACTION`` (non-recoverable) when any
                input has not been finalized
        """
        missing = [i for i, psbt_in in enumerate(self.inputs) if psbt_in.final_script_witness is None]
        if missing:
            raise InscriptionError(
                ErrorCode.INVALID_TRANSACTION,
                f"Cannot extract transaction: inputs {missing} are not finalized",
                recoverable=False,
            )
        extracted = Transaction(
            inputs=[
                TxIn(
                    txid=tx_in.txid,
                    vout=tx_in.vout,
                    sequence=tx_in.sequence,
                    witness=list(psbt_in.final_script_witness or []),
                )
                for tx_in, psbt_in in zip(self.tx.inputs, self.inputs)
            ],
            outputs=[TxOut(out.value, out.script_pubkey) for out in self.tx.outputs],
            version=self.tx.version,
            locktime=self.tx.locktime,
        )
        return extracted

    def serialize(self) -> bytes:
        """Serialize as a BIP174 version 0 PSBT."""

        def _pair(key: bytes, value: bytes) -> bytes:
            return ser_compact_size(len(key)) + key + ser_compact_size(len(value)) + value

        unsigned = self.tx.serialize(include_witness=False)
        parts = [PSBT_MAGIC, _pair(bytes([PSBT_GLOBAL_UNSIGNED_TX]), unsigned), b"\x00"]
        for psbt_in in self.inputs:
            if psbt_in.witness_utxo is not None:
                parts.append(_pair(bytes([PSBT_IN_WITNESS_UTXO]), psbt_in.witness_utxo.serialize()))
            leaf = psbt_in.tap_leaf_script
            if leaf is not None:
                parts.append(
                    _pair(
                        bytes([PSBT_IN_TAP_LEAF_SCRIPT]) + leaf.control_block,
                        leaf.script + bytes([leaf.leaf_version]),
                    )
                )
                parts.append(_pair(bytes([PSBT_IN_TAP_INTERNAL_KEY]), leaf.internal_key))
            for key, sig in psbt_in.tap_script_sigs.items():
                parts.append(_pair(bytes([PSBT_IN_TAP_SCRIPT_SIG]) + key, sig))
            if psbt_in.final_script_witness is not None:
                witness = ser_compact_size(len(psbt_in.final_script_witness)) + b"".join(
                    ser_compact_size(len(item)) + item for item in psbt_in.final_script_witness
                )
                parts.append(_pair(bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), witness))
            parts.append(b"\x00")
        parts.extend(b"\x00" for _ in self.tx.outputs)
        return b"".join(parts)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")
