"""Unsigned commit transaction construction.

The commit pays the inscription's P2TR address exactly the amount the reveal
will need. Funding inputs belong to the user's wallet, so the result is an
unsigned PSBT for an external signer; this module never sees wallet keys.

:func:`prepare_batch_commit` funds several prepared inscriptions from one
transaction, one Taproot output per inscription in request order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING, List, NoReturn, Sequence, Tuple

from ..addresses import address_to_script_pubkey
from ..errors import ErrorCode, InscriptionError, to_inscription_error
from ..fees import DUST_LIMIT, estimate_commit_size, validate_fee_rate
from ..networks import get_network
from ..tracker import TransactionStatusTracker, TransactionType
from ..transaction import PartiallySignedTransaction, PsbtInput, Transaction, TxOut
from ..utxo import UTXO, SelectionOptions, SelectionResult, select_utxos
from .taproot import P2TRDetails

if TYPE_CHECKING:
    from .workflows import PreparedInscription

logger = logging.getLogger(__name__)


@dataclass
class CommitRequest:
    """Inputs for :func:`prepare_commit`.

    ``minimum_commit_amount`` is normally the estimated reveal fee plus
    postage so the reveal transaction is self-funding.
    """

    commit_details: P2TRDetails
    utxos: Sequence[UTXO]
    change_address: str
    fee_rate: float
    network: str = "mainnet"
    minimum_commit_amount: int = DUST_LIMIT
    selection_options: SelectionOptions | None = None


@dataclass
class CommitPlan:
    selected_utxos: List[UTXO]
    required_commit_amount: int
    change_amount: int
    fee: int


@dataclass
class CommitResult:
    plan: CommitPlan
    commit_address: str
    commit_script: bytes
    psbt_base64: str
    unsigned_tx_hex: str
    expected_txid: str
    commit_vout: int
    estimated_vbytes: int
    tracking_id: str
    warnings: List[str] = field(default_factory=list)

    @property
    def commit_amount(self) -> int:
        return self.plan.required_commit_amount

    def commit_utxo(self, txid: str | None = None) -> UTXO:
        """Describe the commit output as a UTXO for the reveal builder.

        ``txid`` defaults to the unsigned transaction's id, which is final for
        segwit funding inputs because signatures live in the witness.
        """
        return UTXO(
            txid=txid or self.expected_txid,
            vout=self.commit_vout,
            value=self.plan.required_commit_amount,
            script_pubkey=self.commit_script,
            address=self.commit_address,
        )


@dataclass
class BatchCommitRequest:
    inscriptions: Sequence["PreparedInscription"]
    utxos: Sequence[UTXO]
    change_address: str
    fee_rate: float
    network: str = "mainnet"
    selection_options: SelectionOptions | None = None


@dataclass(frozen=True)
class BatchCommitOutput:
    index: int
    commit_address: str
    commit_script: bytes
    amount: int
    vout: int


@dataclass
class BatchCommitResult:
    """A batch commit; ``plan.required_commit_amount`` is the sum of all outputs."""

    plan: CommitPlan
    outputs: List[BatchCommitOutput]
    psbt_base64: str
    unsigned_tx_hex: str
    expected_txid: str
    estimated_vbytes: int
    tracking_id: str
    warnings: List[str] = field(default_factory=list)

    @property
    def total_commit_amount(self) -> int:
        return self.plan.required_commit_amount

    def commit_utxo(self, index: int, txid: str | None = None) -> UTXO:
        output = self.outputs[index]
        return UTXO(
            txid=txid or self.expected_txid,
            vout=output.vout,
            value=output.amount,
            script_pubkey=output.commit_script,
            address=output.commit_address,
        )


@dataclass
class _Assembled:
    selection: SelectionResult
    tx: Transaction
    psbt: PartiallySignedTransaction
    change: int
    fee: int


def _check_common(
    fee_rate: float, utxos: Sequence[UTXO], change_address: str, network: str
) -> tuple[float, bytes]:
    rate = validate_fee_rate(fee_rate)
    if not utxos:
        raise InscriptionError(ErrorCode.INVALID_UTXO, "No UTXOs supplied to fund the commit transaction")
    return rate, address_to_script_pubkey(change_address, network)


def _check_network(details: P2TRDetails, network: str) -> None:
    if get_network(network).name != details.network:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT,
            f"Commit address was derived for {details.network}, not {network}",
        )


def _validate(request: CommitRequest) -> tuple[float, bytes]:
    if request.commit_details is None:
        raise InscriptionError(ErrorCode.INVALID_INPUT, "Commit address details are required")
    if request.minimum_commit_amount is None or request.minimum_commit_amount < 0:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT,
            f"Minimum commit amount must be non-negative, got {request.minimum_commit_amount}",
        )
    _check_network(request.commit_details, request.network)
    return _check_common(request.fee_rate, request.utxos, request.change_address, request.network)


def _fail(tracker: TransactionStatusTracker, tracking_id: str, exc: Exception) -> NoReturn:
    error = to_inscription_error(exc)
    tracker.set_transaction_error(tracking_id, error)
    if error is exc:
        raise error
    raise error from exc


def _assemble(
    tracker: TransactionStatusTracker,
    tracking_id: str,
    utxos: Sequence[UTXO],
    commit_outputs: Sequence[Tuple[int, bytes]],
    change_script: bytes,
    rate: float,
    selection_options: SelectionOptions | None,
) -> _Assembled:
    candidates = []
    for utxo in utxos:
        if not utxo.script_pubkey:
            logger.warning("Skipping UTXO %s: missing scriptPubKey", utxo.outpoint)
            continue
        candidates.append(utxo)
    if not candidates:
        raise InscriptionError(
            ErrorCode.INVALID_UTXO, "No valid UTXOs with a scriptPubKey are available"
        )

    required = sum(amount for amount, _ in commit_outputs)
    tracker.add_transaction_progress_event(
        tracking_id, "Selecting UTXOs", data={"candidates": len(candidates), "required": required}
    )
    options = replace(
        selection_options or SelectionOptions(), output_count=len(commit_outputs) + 1
    )
    selection = select_utxos(
        candidates,
        required,
        rate,
        options,
        size_estimator=partial(
            estimate_commit_size,
            commit_outputs=len(commit_outputs),
            change_script_length=len(change_script),
        ),
    )
    tracker.add_transaction_progress_event(
        tracking_id,
        f"Selected {len(selection.selected_utxos)} UTXOs",
        data={
            "utxos": [u.outpoint for u in selection.selected_utxos],
            "total_value": selection.total_value,
        },
    )

    change = selection.change_amount if selection.change_amount >= DUST_LIMIT else 0
    fee = selection.total_value - required - change
    tracker.add_transaction_progress_event(
        tracking_id,
        "Calculated commit fee",
        data={"fee": fee, "vbytes": selection.vbytes, "change": change},
    )

    tx = Transaction()
    for utxo in selection.selected_utxos:
        tx.add_input(utxo.txid, utxo.vout)
    for amount, script in commit_outputs:
        tx.add_output(amount, script)
    if change:
        tx.add_output(change, change_script)
    psbt = PartiallySignedTransaction(
        tx,
        [
            PsbtInput(witness_utxo=TxOut(utxo.value, utxo.script_pubkey or b""))
            for utxo in selection.selected_utxos
        ],
    )
    tracker.add_transaction_progress_event(
        tracking_id,
        "Assembled commit outputs",
        data={"outputs": len(tx.outputs), "commit_amount": required},
    )
    return _Assembled(selection=selection, tx=tx, psbt=psbt, change=change, fee=fee)


def prepare_commit(request: CommitRequest, tracker: TransactionStatusTracker) -> CommitResult:
    """Select funding inputs and build the unsigned commit transaction.

    Arguments are validated before anything is tracked. Once the tracker
    entry exists, every failure marks it failed before being re-raised.

    Raises:
        InscriptionError: ``INVALID_FEE_RATE``, ``INVALID_INPUT``,
            ``INVALID_ADDRESS``, ``INVALID_UTXO`` or ``INSUFFICIENT_FUNDS``
    """

    rate, change_script = _validate(request)
    required = max(int(request.minimum_commit_amount), DUST_LIMIT)
    details = request.commit_details

    tracked = tracker.create_transaction(
        TransactionType.COMMIT,
        metadata={
            "commit_address": details.address,
            "required_commit_amount": required,
            "fee_rate": rate,
            "network": details.network,
        },
    )
    tracking_id = tracked.id
    logger.info("Preparing commit %s paying %d sats to %s", tracking_id, required, details.address)

    try:
        built = _assemble(
            tracker,
            tracking_id,
            request.utxos,
            [(required, details.script)],
            change_script,
            rate,
            request.selection_options,
        )
    except Exception as exc:  # noqa: BLE001
        _fail(tracker, tracking_id, exc)

    tx = built.tx
    tracked.metadata["expected_txid"] = tx.txid
    logger.info(
        "Commit %s ready: %d inputs, fee %d sats, change %d sats",
        tracking_id,
        len(tx.inputs),
        built.fee,
        built.change,
    )
    return CommitResult(
        plan=CommitPlan(
            selected_utxos=list(built.selection.selected_utxos),
            required_commit_amount=required,
            change_amount=built.change,
            fee=built.fee,
        ),
        commit_address=details.address,
        commit_script=details.script,
        psbt_base64=built.psbt.to_base64(),
        unsigned_tx_hex=tx.to_hex(),
        expected_txid=tx.txid,
        commit_vout=0,
        estimated_vbytes=built.selection.vbytes,
        tracking_id=tracking_id,
        warnings=list(built.selection.warnings),
    )


def prepare_batch_commit(
    request: BatchCommitRequest, tracker: TransactionStatusTracker
) -> BatchCommitResult:
    """Fund several prepared inscriptions from a single commit transaction.

    Output ``i`` pays inscription ``i`` its ``required_commit_amount`` (at
    least the dust limit); change, when it clears dust, comes last. One
    tracker entry covers the whole batch.
    """

    if not request.inscriptions:
        raise InscriptionError(ErrorCode.INVALID_INPUT, "No inscriptions supplied for the batch commit")
    for prepared in request.inscriptions:
        _check_network(prepared.commit_details, request.network)
    rate, change_script = _check_common(
        request.fee_rate, request.utxos, request.change_address, request.network
    )
    amounts = [max(int(p.required_commit_amount), DUST_LIMIT) for p in request.inscriptions]
    total = sum(amounts)

    tracked = tracker.create_transaction(
        TransactionType.COMMIT,
        metadata={
            "batch_size": len(amounts),
            "commit_addresses": [p.commit_address for p in request.inscriptions],
            "required_commit_amount": total,
            "fee_rate": rate,
            "network": get_network(request.network).name,
        },
    )
    tracking_id = tracked.id
    logger.info(
        "Preparing batch commit %s for %d inscriptions (%d sats)", tracking_id, len(amounts), total
    )

    try:
        built = _assemble(
            tracker,
            tracking_id,
            request.utxos,
            [(amount, p.commit_details.script) for amount, p in zip(amounts, request.inscriptions)],
            change_script,
            rate,
            request.selection_options,
        )
    except Exception as exc:  # noqa: BLE001
        _fail(tracker, tracking_id, exc)

    tx = built.tx
    tracked.metadata["expected_txid"] = tx.txid
    outputs = [
        BatchCommitOutput(
            index=index,
            commit_address=prepared.commit_address,
            commit_script=prepared.commit_details.script,
            amount=amount,
            vout=index,
        )
        for index, (amount, prepared) in enumerate(zip(amounts, request.inscriptions))
    ]
    logger.info(
        "Batch commit %s ready: %d inputs, %d commit outputs, fee %d sats",
        tracking_id,
        len(tx.inputs),
        len(outputs),
        built.fee,
    )
    return BatchCommitResult(
        plan=CommitPlan(
            selected_utxos=list(built.selection.selected_utxos),
            required_commit_amount=total,
            change_amount=built.change,
            fee=built.fee,
        ),
        outputs=outputs,
        psbt_base64=built.psbt.to_base64(),
        unsigned_tx_hex=tx.to_hex(),
        expected_txid=tx.txid,
        estimated_vbytes=built.selection.vbytes,
        tracking_id=tracking_id,
        warnings=list(built.selection.warnings),
    )
