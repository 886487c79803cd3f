"""Programmatic inscription workflows.

:func:`prepare_inscription` turns content into everything the commit step
needs: the envelope, an ephemeral reveal key, the leaf script, the commit
P2TR details and the amount the commit must lock up. :class:`InscriptionEngine`
wires the commit and reveal builders to a tracker and a broadcaster supplied
by the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from ..config import EngineConfig
from ..errors import BroadcastError, ErrorCode, InscriptionError, TrackerStateError, to_inscription_error
from ..esplora import Broadcaster, format_broadcast_hint
from ..fees import (
    P2TR_SCRIPT_LENGTH,
    POSTAGE_VALUE,
    apply_fee_rate_floor,
    calculate_fee,
    estimate_reveal_size,
    validate_fee_rate,
)
from ..keys import KeyPair, from_public_key, generate_key_pair
from ..networks import get_network
from ..retry import with_retry
from ..tracker import TrackedTransaction, TransactionStatus, TransactionStatusTracker
from ..utxo import UTXO, SelectionOptions
from .commit import (
    BatchCommitRequest,
    BatchCommitResult,
    CommitRequest,
    CommitResult,
    prepare_batch_commit,
    prepare_commit,
)
from .envelope import InscriptionEnvelope, MetadataInput, build_envelope, build_leaf_script
from .reveal import HealthCheck, RevealRequest, RevealResult, create_reveal
from .taproot import LeafScriptInfo, P2TRDetails, TapLeaf, derive_address

logger = logging.getLogger(__name__)


@dataclass
class PreparedInscription:
    """Everything needed to fund and later reveal one inscription.

    ``key_pair`` holds the ephemeral reveal secret. It is needed again for
    the reveal (and for any retry of it), so callers must keep it until the
    reveal confirms.
    """

    envelope: InscriptionEnvelope
    key_pair: KeyPair
    leaf_script: LeafScriptInfo
    commit_details: P2TRDetails
    fee_rate: float
    estimated_reveal_vbytes: int
    estimated_reveal_fee: int
    postage: int
    required_commit_amount: int
    network: str

    @property
    def commit_address(self) -> str:
        return self.commit_details.address

    def summary(self) -> dict[str, Any]:
        return {
            "network": self.network,
            "content_type": self.envelope.content_type,
            "content_length": len(self.envelope.body),
            "commit_address": self.commit_details.address,
            "reveal_public_key": self.key_pair.public_key_hex,
            "leaf_script_bytes": len(self.leaf_script.script),
            "fee_rate_sat_vb": self.fee_rate,
            "estimated_reveal_vbytes": self.estimated_reveal_vbytes,
            "estimated_reveal_fee": self.estimated_reveal_fee,
            "postage": self.postage,
            "required_commit_amount": self.required_commit_amount,
        }


def prepare_inscription(
    content: str | bytes,
    content_type: str,
    *,
    fee_rate: float,
    network: str = "mainnet",
    metadata: MetadataInput | None = None,
    reveal_key_pair: KeyPair | None = None,
    recovery_public_key: bytes | str | None = None,
    postage: int = POSTAGE_VALUE,
    parent_inscription_id: str | None = None,
    metaprotocol: str | None = None,
    destination_script_length: int = P2TR_SCRIPT_LENGTH,
) -> PreparedInscription:
    """Build the envelope, reveal key and commit address for ``content``.

    The commit address uses the reveal public key as its internal key unless
    ``recovery_public_key`` is given, in which case the commit output can also
    be swept through the key path by the holder of that key.

    ``required_commit_amount`` is exactly ``estimated_reveal_fee + postage``,
    with the reveal estimated for a single output of
    ``destination_script_length`` bytes.
    """

    rate = validate_fee_rate(fee_rate)
    params = get_network(network)
    if postage <= 0:
        raise InscriptionError(ErrorCode.INVALID_INPUT, f"Postage must be positive, got {postage}")

    envelope = build_envelope(
        content,
        content_type,
        metadata,
        parent_inscription_id=parent_inscription_id,
        metaprotocol=metaprotocol,
    )
    key_pair = reveal_key_pair or generate_key_pair()
    script = build_leaf_script(envelope, key_pair.public_key)
    internal_key = (
        from_public_key(recovery_public_key).public_key
        if recovery_public_key is not None
        else key_pair.public_key
    )
    details = derive_address(internal_key, TapLeaf(script), params)
    if details.leaf is None:
        raise InscriptionError(ErrorCode.UNEXPECTED_ERROR, "Commit derivation did not produce leaf data")

    vbytes = estimate_reveal_size(
        len(details.leaf.script), len(details.leaf.control_block), [destination_script_length]
    )
    reveal_fee = calculate_fee(vbytes, rate)
    prepared = PreparedInscription(
        envelope=envelope,
        key_pair=key_pair,
        leaf_script=details.leaf,
        commit_details=details,
        fee_rate=rate,
        estimated_reveal_vbytes=vbytes,
        estimated_reveal_fee=reveal_fee,
        postage=postage,
        required_commit_amount=reveal_fee + postage,
        network=params.name,
    )
    logger.info(
        "Prepared %s inscription (%d bytes) at %s; commit needs %d sats",
        content_type or "<no content type>",
        len(envelope.body),
        details.address,
        prepared.required_commit_amount,
    )
    return prepared


def write_receipt(
    path: Path,
    prepared: PreparedInscription,
    *,
    commit: CommitResult | None = None,
    reveal: RevealResult | None = None,
    include_private_key: bool = False,
) -> Path:
    """Persist a JSON receipt for the inscription flow."""

    path.parent.mkdir(parents=True, exist_ok=True)
    receipt: dict[str, Any] = prepared.summary()
    receipt["leaf_script_hex"] = prepared.leaf_script.script.hex()
    receipt["control_block_hex"] = prepared.leaf_script.control_block.hex()
    if include_private_key:
        receipt["reveal_private_key_hex"] = prepared.key_pair.private_key_hex
    if commit is not None:
        receipt["commit"] = {
            "tracking_id": commit.tracking_id,
            "expected_txid": commit.expected_txid,
            "psbt_base64": commit.psbt_base64,
            "fee": commit.plan.fee,
            "change": commit.plan.change_amount,
        }
    if reveal is not None:
        receipt["reveal"] = {
            "tracking_id": reveal.tracking_id,
            "txid": reveal.txid,
            "inscription_id": reveal.inscription_id,
            "hex": reveal.hex,
            "fee": reveal.plan.fee,
            "warnings": reveal.warnings,
        }
    path.write_text(json.dumps(receipt, indent=2))
    return path


class InscriptionEngine:
    """Runs the commit/reveal flow against injected collaborators.

    The tracker, broadcaster and health check are all owned by the caller;
    nothing here is process-global.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        tracker: TransactionStatusTracker | None = None,
        broadcaster: Broadcaster | None = None,
        health_check: HealthCheck | None = None,
        max_not_found_polls: int = 3,
    ) -> None:
        if max_not_found_polls < 1:
            raise ValueError("max_not_found_polls must be at least 1")
        self.config = config or EngineConfig()
        self.tracker = tracker or TransactionStatusTracker()
        self.broadcaster = broadcaster
        self.health_check = health_check
        self.max_not_found_polls = max_not_found_polls

    def _fee_rate(self, fee_rate: float | None) -> float:
        rate = validate_fee_rate(fee_rate if fee_rate is not None else self.config.fee_rate_sat_vb)
        return apply_fee_rate_floor(rate)

    def prepare(
        self,
        content: str | bytes,
        content_type: str,
        *,
        fee_rate: float | None = None,
        **kwargs: Any,
    ) -> PreparedInscription:
        kwargs.setdefault("postage", self.config.postage)
        return prepare_inscription(
            content,
            content_type,
            fee_rate=self._fee_rate(fee_rate),
            network=self.config.network,
            **kwargs,
        )

    def commit(
        self,
        prepared: PreparedInscription,
        utxos: Sequence[UTXO],
        change_address: str,
        *,
        fee_rate: float | None = None,
        selection_options: SelectionOptions | None = None,
    ) -> CommitResult:
        return prepare_commit(
            CommitRequest(
                commit_details=prepared.commit_details,
                utxos=utxos,
                change_address=change_address,
                fee_rate=self._fee_rate(fee_rate) if fee_rate is not None else prepared.fee_rate,
                network=prepared.network,
                minimum_commit_amount=prepared.required_commit_amount,
                selection_options=selection_options,
            ),
            self.tracker,
        )

    def batch_commit(
        self,
        prepared: Sequence[PreparedInscription],
        utxos: Sequence[UTXO],
        change_address: str,
        *,
        fee_rate: float | None = None,
        selection_options: SelectionOptions | None = None,
    ) -> BatchCommitResult:
        """Fund several prepared inscriptions from one commit transaction.

        Output ``i`` of the commit pays ``prepared[i]``; reveal each one with
        ``result.commit_utxo(i)``.
        """

        if not prepared:
            raise InscriptionError(ErrorCode.INVALID_INPUT, "Batch commit needs at least one inscription")
        rate = self._fee_rate(fee_rate) if fee_rate is not None else max(p.fee_rate for p in prepared)
        return prepare_batch_commit(
            BatchCommitRequest(
                inscriptions=list(prepared),
                utxos=utxos,
                change_address=change_address,
                fee_rate=rate,
                network=prepared[0].network,
                selection_options=selection_options,
            ),
            self.tracker,
        )

    def reveal(
        self,
        prepared: PreparedInscription,
        commit_utxo: UTXO,
        destination_address: str,
        *,
        change_address: str | None = None,
        parent_id: str | None = None,
        retry: bool = False,
    ) -> RevealResult:
        """Build the signed reveal, optionally retrying recoverable failures.

        Retries reuse the prepared reveal key: it is bound into the committed
        leaf, so a different key could never spend the commit output.
        """

        request = RevealRequest(
            commit_utxo=commit_utxo,
            leaf_script=prepared.leaf_script,
            commit_details=prepared.commit_details,
            destination_address=destination_address,
            fee_rate=prepared.fee_rate,
            reveal_private_key=prepared.key_pair.private_key,
            network=prepared.network,
            change_address=change_address,
            postage=prepared.postage,
            parent_id=parent_id,
        )

        def build() -> RevealResult:
            return create_reveal(request, self.tracker, health_check=self.health_check)

        if not retry:
            return build()
        return with_retry(
            build,
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
        )

    def _require_broadcaster(self) -> Broadcaster:
        if self.broadcaster is None:
            raise InscriptionError(
                ErrorCode.INITIALIZATION_FAILED, "No broadcaster configured for this engine"
            )
        return self.broadcaster

    def broadcast(self, tracking_id: str, raw_tx_hex: str) -> str:
        """Broadcast a signed transaction and move its tracker entry to ``confirming``."""

        broadcaster = self._require_broadcaster()
        tracked = self.tracker.get_transaction(tracking_id)
        if tracked is None:
            raise InscriptionError(ErrorCode.STATE_ERROR, f"Unknown transaction id {tracking_id}")
        if tracked.is_terminal:
            # Terminal entries never move again, so the network must not see the tx.
            raise TrackerStateError(
                tracking_id, tracked.status.value, TransactionStatus.CONFIRMING.value
            )
        try:
            txid = broadcaster.broadcast_transaction(self.config.network, raw_tx_hex)
        except BroadcastError as exc:
            hint = format_broadcast_hint(exc)
            if hint:
                exc.details["hint"] = hint
                logger.error("Broadcast of %s failed. Hint: %s", tracking_id, hint)
            self.tracker.set_transaction_error(tracking_id, exc)
            raise
        except Exception as exc:  # noqa: BLE001
            error = to_inscription_error(exc, code=ErrorCode.BROADCAST_FAILURE)
            self.tracker.set_transaction_error(tracking_id, error)
            raise error from exc

        self.tracker.set_transaction_txid(tracking_id, txid)
        self.tracker.set_transaction_status(tracking_id, TransactionStatus.CONFIRMING)
        self.tracker.add_transaction_progress_event(tracking_id, "Broadcast transaction", data={"txid": txid})
        return txid

    def refresh_status(self, tracking_id: str) -> TrackedTransaction:
        """Poll the broadcaster and move a ``confirming`` entry forward.

        ``confirmed`` marks the entry confirmed. ``failed`` (reported by custom
        broadcasters) or ``max_not_found_polls`` consecutive ``not_found``
        answers mark it failed, since the transaction has left the mempool.
        """

        broadcaster = self._require_broadcaster()
        tracked = self.tracker.get_transaction(tracking_id)
        if tracked is None:
            raise InscriptionError(ErrorCode.STATE_ERROR, f"Unknown transaction id {tracking_id}")
        if tracked.txid is None or tracked.status != TransactionStatus.CONFIRMING:
            return tracked

        confirmation = broadcaster.get_transaction_status(self.config.network, tracked.txid)
        if confirmation.status == "not_found":
            misses = tracked.metadata.get("not_found_polls", 0) + 1
            tracked.metadata["not_found_polls"] = misses
            logger.warning("Transaction %s not found (%d/%d)", tracked.txid, misses, self.max_not_found_polls)
            if misses >= self.max_not_found_polls:
                self.tracker.set_transaction_error(
                    tracking_id,
                    InscriptionError(
                        ErrorCode.BROADCAST_FAILURE,
                        f"Transaction {tracked.txid} was not found after {misses} status polls",
                    ),
                )
            return tracked

        tracked.metadata["not_found_polls"] = 0
        if confirmation.status == "confirmed":
            self.tracker.set_transaction_status(tracking_id, TransactionStatus.CONFIRMED)
            self.tracker.add_transaction_progress_event(
                tracking_id,
                "Transaction confirmed",
                data={"confirmations": confirmation.confirmations},
            )
        elif confirmation.status == "failed":
            self.tracker.set_transaction_error(
                tracking_id,
                InscriptionError(ErrorCode.BROADCAST_FAILURE, f"Transaction {tracked.txid} was rejected"),
            )
        return tracked
