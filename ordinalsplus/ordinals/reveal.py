"""Reveal transaction construction and signing.

The reveal spends the commit output through its envelope leaf. The leaf and
P2TR details passed in must be the exact values used to derive the commit
address; they are cross-checked before anything is signed. The ephemeral
reveal key signs the BIP341 script-path sighash with zero aux randomness,
so rebuilding from the same commit output and key reproduces the same
transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List

from ..addresses import address_to_script_pubkey
from ..errors import ErrorCode, InscriptionError, InsufficientFundsError, to_inscription_error
from ..fees import DUST_LIMIT, POSTAGE_VALUE, calculate_fee, estimate_reveal_size, validate_fee_rate
from ..keys import KeyPair, from_private_key
from ..networks import get_network
from ..tracker import TransactionStatusTracker, TransactionType
from ..transaction import PartiallySignedTransaction, PsbtInput, Transaction, TxOut
from ..utxo import UTXO
from .taproot import LeafScriptInfo, P2TRDetails, verify_leaf_commitment

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], bool]

# Effective fee rates this far below the target are flagged.
FEE_RATE_TOLERANCE = 0.9


@dataclass
class RevealRequest:
    commit_utxo: UTXO
    leaf_script: LeafScriptInfo
    commit_details: P2TRDetails
    destination_address: str
    fee_rate: float
    reveal_private_key: bytes | str
    network: str = "mainnet"
    change_address: str | None = None
    postage: int = POSTAGE_VALUE
    parent_id: str | None = None


@dataclass
class RevealPlan:
    input_utxo: UTXO
    postage_amount: int
    change_amount: int
    fee: int


@dataclass
class RevealResult:
    plan: RevealPlan
    tx: Transaction
    txid: str
    hex: str
    vsize: int
    tracking_id: str
    warnings: List[str] = field(default_factory=list)

    @property
    def inscription_id(self) -> str:
        return f"{self.txid}i0"


def _check_health(health_check: HealthCheck | None) -> None:
    if health_check is None:
        return
    try:
        healthy = health_check()
    except Exception as exc:  # noqa: BLE001
        logger.error("Health check raised: %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG))
        raise InscriptionError(
            ErrorCode.INITIALIZATION_FAILED, f"System health check failed: {exc}"
        ) from exc
    if not healthy:
        raise InscriptionError(
            ErrorCode.INITIALIZATION_FAILED,
            "System health check failed; refusing to build a reveal transaction",
        )


def _validate(request: RevealRequest) -> tuple[float, KeyPair, bytes, bytes | None]:
    utxo = request.commit_utxo
    if utxo is None or not utxo.txid:
        raise InscriptionError(ErrorCode.INVALID_UTXO, "A commit UTXO is required")
    if utxo.value is None or utxo.value <= 0:
        raise InscriptionError(
            ErrorCode.INVALID_UTXO, f"Commit UTXO {utxo.outpoint} has non-positive value {utxo.value}"
        )
    if request.leaf_script is None or not request.leaf_script.script:
        raise InscriptionError(ErrorCode.INVALID_INPUT, "Leaf script is required for the reveal")
    if request.commit_details is None:
        raise InscriptionError(ErrorCode.INVALID_INPUT, "Commit P2TR details are required for the reveal")
    rate = validate_fee_rate(request.fee_rate)
    if request.postage <= 0:
        raise InscriptionError(ErrorCode.INVALID_INPUT, f"Postage must be positive, got {request.postage}")
    if get_network(request.network).name != request.commit_details.network:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT,
            f"Commit address was derived for {request.commit_details.network}, not {request.network}",
        )

    key_pair = from_private_key(request.reveal_private_key)
    if key_pair.public_key not in request.leaf_script.script:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT, "Reveal private key does not match the key committed in the leaf script"
        )
    if not verify_leaf_commitment(request.commit_details, request.leaf_script):
        raise InscriptionError(
            ErrorCode.INVALID_INPUT,
            "Leaf script and control block do not match the commit address; reuse the values "
            "produced when the commit address was derived",
        )
    if utxo.script_pubkey and utxo.script_pubkey != request.commit_details.script:
        raise InscriptionError(
            ErrorCode.INVALID_UTXO,
            f"Commit UTXO {utxo.outpoint} does not pay the commit address {request.commit_details.address}",
        )

    destination = address_to_script_pubkey(request.destination_address, request.network)
    change = (
        address_to_script_pubkey(request.change_address, request.network)
        if request.change_address
        else None
    )
    return rate, key_pair, destination, change


def create_reveal(
    request: RevealRequest,
    tracker: TransactionStatusTracker,
    *,
    health_check: HealthCheck | None = None,
) -> RevealResult:
    """Build, sign and finalize the reveal transaction for a funded commit output.

    The tracker entry stays ``pending``; broadcasting moves it forward.

    Raises:
        InscriptionError: ``INITIALIZATION_FAILED`` when ``health_check`` fails,
            validation codes before anything is tracked, ``INSUFFICIENT_FUNDS``
            exactly when the commit value is below the reveal fee, and
            ``SIGNING_ERROR`` / ``INVALID_TRANSACTION`` (non-recoverable)
    """

    _check_health(health_check)
    rate, key_pair, destination_script, change_script = _validate(request)
    utxo = request.commit_utxo
    leaf = request.leaf_script

    tracked = tracker.create_transaction(
        TransactionType.REVEAL,
        parent_id=request.parent_id,
        metadata={
            "commit_outpoint": utxo.outpoint,
            "destination": request.destination_address,
            "fee_rate": rate,
            "network": request.commit_details.network,
        },
    )
    tracking_id = tracked.id
    warnings: List[str] = []

    def warn(message: str, **data: object) -> None:
        logger.warning("Reveal %s: %s", tracking_id, message)
        warnings.append(message)
        tracker.add_transaction_progress_event(tracking_id, message, data={"warning": True, **data})

    try:
        tracker.add_transaction_progress_event(
            tracking_id, "Estimating reveal fee", data={"commit_value": utxo.value}
        )
        vbytes = estimate_reveal_size(len(leaf.script), len(leaf.control_block), [len(destination_script)])
        fee = calculate_fee(vbytes, rate)
        if utxo.value < fee:
            raise InsufficientFundsError(
                fee,
                utxo.value,
                f"Commit output of {utxo.value} sats cannot cover the reveal fee of {fee} sats",
            )

        remainder = utxo.value - fee
        postage = request.postage
        if remainder < postage:
            postage = remainder
            warn(f"Postage reduced to {postage} sats to fit the commit value", postage=postage)
            if postage < DUST_LIMIT:
                warn(f"Postage output of {postage} sats is below the {DUST_LIMIT} sat dust limit")

        change = 0
        excess = remainder - postage
        if excess > 0 and change_script is not None:
            change_vbytes = estimate_reveal_size(
                len(leaf.script),
                len(leaf.control_block),
                [len(destination_script), len(change_script)],
            )
            change_fee = calculate_fee(change_vbytes, rate)
            candidate = utxo.value - postage - change_fee
            if candidate >= DUST_LIMIT:
                change, fee, vbytes = candidate, change_fee, change_vbytes
        if not change:
            fee = utxo.value - postage
            if excess > 0:
                warn(f"Added {excess} sats of leftover value to the reveal fee", excess=excess)
        tracker.add_transaction_progress_event(
            tracking_id,
            "Calculated reveal fee",
            data={"fee": fee, "vbytes": vbytes, "postage": postage, "change": change},
        )

        tx = Transaction()
        tx.add_input(utxo.txid, utxo.vout)
        tx.add_output(postage, destination_script)
        if change:
            tx.add_output(change, change_script or b"")
        psbt = PartiallySignedTransaction(
            tx,
            [
                PsbtInput(
                    witness_utxo=TxOut(utxo.value, request.commit_details.script),
                    tap_leaf_script=request.commit_details.tap_leaf_script(leaf),
                )
            ],
        )

        tracker.add_transaction_progress_event(tracking_id, "Signing reveal transaction")
        psbt.sign_script_path(0, key_pair.private_key)
        psbt.finalize_input(0)
        final_tx = psbt.extract_transaction()

        if postage + change + fee != utxo.value or final_tx.output_value + fee != utxo.value:
            raise InscriptionError(
                ErrorCode.INVALID_TRANSACTION,
                "Reveal outputs and fee do not add up to the commit value",
                details={"postage": postage, "change": change, "fee": fee, "value": utxo.value},
                recoverable=False,
            )

        effective_rate = fee / final_tx.vsize
        if effective_rate < rate * FEE_RATE_TOLERANCE:
            warn(
                f"Effective fee rate {effective_rate:.2f} sat/vB is below the target {rate:.2f}",
                effective_fee_rate=effective_rate,
            )
    except Exception as exc:  # noqa: BLE001
        error = to_inscription_error(exc)
        tracker.set_transaction_error(tracking_id, error)
        if error is exc:
            raise
        raise error from exc

    txid = final_tx.txid
    tracker.set_transaction_txid(tracking_id, txid)
    tracker.add_transaction_progress_event(
        tracking_id, "Reveal transaction signed", data={"txid": txid, "vsize": final_tx.vsize}
    )
    logger.info("Reveal %s signed: txid=%s vsize=%d fee=%d", tracking_id, txid, final_tx.vsize, fee)
    return RevealResult(
        plan=RevealPlan(input_utxo=utxo, postage_amount=postage, change_amount=change, fee=fee),
        tx=final_tx,
        txid=txid,
        hex=final_tx.to_hex(),
        vsize=final_tx.vsize,
        tracking_id=tracking_id,
        warnings=warnings,
    )
