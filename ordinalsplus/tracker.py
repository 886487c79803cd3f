"""In-memory lifecycle tracking for commit and reveal transactions.

Each tracked transaction moves ``pending -> confirming -> confirmed|failed``.
Transitions never go backwards and recording an error always forces the entry
to ``failed``. The tracker is an ordinary object: create one per process or
per request and pass it to the builders that need it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

from .errors import ErrorCode, InscriptionError, TrackerStateError, to_inscription_error

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionType(str, Enum):
    COMMIT = "commit"
    REVEAL = "reveal"


_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.CONFIRMING, TransactionStatus.FAILED},
    TransactionStatus.CONFIRMING: {TransactionStatus.CONFIRMED, TransactionStatus.FAILED},
    TransactionStatus.CONFIRMED: set(),
    TransactionStatus.FAILED: set(),
}


@dataclass(frozen=True)
class TransactionProgressEvent:
    message: str
    timestamp: float
    data: Mapping[str, Any] | None = None


@dataclass
class TrackedTransaction:
    id: str
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    txid: str | None = None
    parent_id: str | None = None
    created_at: float = field(default_factory=time.time)
    last_updated_at: float = field(default_factory=time.time)
    error: Dict[str, Any] | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    events: List[TransactionProgressEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)


class TransactionStatusTracker:
    """Owns the set of tracked transactions for one flow or process."""

    def __init__(self) -> None:
        self._transactions: Dict[str, TrackedTransaction] = {}

    def __len__(self) -> int:
        return len(self._transactions)

    def __contains__(self, transaction_id: object) -> bool:
        return transaction_id in self._transactions

    def add_transaction(self, transaction: TrackedTransaction) -> TrackedTransaction:
        if transaction.id in self._transactions:
            raise InscriptionError(
                ErrorCode.STATE_ERROR, f"Transaction {transaction.id} is already tracked"
            )
        self._transactions[transaction.id] = transaction
        logger.debug(
            "Tracking %s transaction %s (parent=%s)",
            transaction.type.value,
            transaction.id,
            transaction.parent_id,
        )
        return transaction

    def create_transaction(
        self,
        transaction_type: TransactionType,
        *,
        parent_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TrackedTransaction:
        """Register a new pending entry with a generated ``<type>-<uuid>`` id."""

        transaction_id = f"{transaction_type.value}-{uuid.uuid4().hex[:12]}"
        return self.add_transaction(
            TrackedTransaction(
                id=transaction_id,
                type=transaction_type,
                parent_id=parent_id,
                metadata=dict(metadata or {}),
            )
        )

    def get_transaction(self, transaction_id: str) -> TrackedTransaction | None:
        return self._transactions.get(transaction_id)

    def _require(self, transaction_id: str) -> TrackedTransaction:
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise InscriptionError(
                ErrorCode.STATE_ERROR, f"Unknown transaction id {transaction_id}"
            )
        return transaction

    def set_transaction_status(self, transaction_id: str, status: TransactionStatus) -> TrackedTransaction:
        """Move a transaction forward; setting the current status again is a no-op.

        Raises:
            TrackerStateError: For backwards or out-of-terminal transitions
        """

        transaction = self._require(transaction_id)
        status = TransactionStatus(status)
        if transaction.status == status:
            return transaction
        if status not in _ALLOWED_TRANSITIONS[transaction.status]:
            raise TrackerStateError(transaction_id, transaction.status.value, status.value)
        logger.info(
            "Transaction %s: %s -> %s", transaction_id, transaction.status.value, status.value
        )
        transaction.status = status
        transaction.last_updated_at = time.time()
        return transaction

    def set_transaction_txid(self, transaction_id: str, txid: str) -> TrackedTransaction:
        transaction = self._require(transaction_id)
        transaction.txid = txid
        transaction.last_updated_at = time.time()
        return transaction

    def set_transaction_error(self, transaction_id: str, error: BaseException | Mapping[str, Any]) -> TrackedTransaction:
        """Record a structured error and force the entry to ``failed``."""

        transaction = self._require(transaction_id)
        if isinstance(error, BaseException):
            record = to_inscription_error(error).to_record()
        else:
            record = dict(error)
            record.setdefault("timestamp", time.time())
        transaction.error = record
        transaction.status = TransactionStatus.FAILED
        transaction.last_updated_at = time.time()
        logger.warning(
            "Transaction %s failed: %s %s",
            transaction_id,
            record.get("code"),
            record.get("message"),
        )
        return transaction

    def add_transaction_progress_event(
        self,
        transaction_id: str,
        message: str,
        timestamp: float | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> TransactionProgressEvent:
        transaction = self._require(transaction_id)
        event = TransactionProgressEvent(
            message=message,
            timestamp=time.time() if timestamp is None else timestamp,
            data=dict(data) if data is not None else None,
        )
        transaction.events.append(event)
        transaction.last_updated_at = event.timestamp
        logger.debug("Transaction %s: %s", transaction_id, message)
        return event

    def get_progress_events(self, transaction_id: str) -> List[TransactionProgressEvent]:
        return list(self._require(transaction_id).events)

    def get_child_transactions(self, parent_id: str) -> List[TrackedTransaction]:
        return [tx for tx in self._transactions.values() if tx.parent_id == parent_id]

    def list_transactions(self) -> List[TrackedTransaction]:
        return sorted(self._transactions.values(), key=lambda tx: tx.created_at)

    def clear(self) -> None:
        self._transactions.clear()
