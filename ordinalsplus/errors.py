"""Structured error types shared by the inscription engine.

Every failure raised by the commit/reveal builders is an
:class:`InscriptionError` carrying a stable :class:`ErrorCode`, a coarse
category used by the retry wrapper, and a severity. Callers that need to
branch on a specific failure mode can catch the typed subclasses instead of
inspecting the code.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Mapping


class ErrorCode(str, Enum):
    INVALID_UTXO = "INVALID_UTXO"
    INVALID_FEE_RATE = "INVALID_FEE_RATE"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    SIGNING_ERROR = "SIGNING_ERROR"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    BROADCAST_FAILURE = "BROADCAST_FAILURE"
    INITIALIZATION_FAILED = "INITIALIZATION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    STATE_ERROR = "STATE_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ErrorCategory(str, Enum):
    NETWORK = "network"
    WALLET = "wallet"
    VALIDATION = "validation"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# code -> (category, severity, recoverable, suggestion)
_ERROR_DEFAULTS: dict[ErrorCode, tuple[ErrorCategory, ErrorSeverity, bool, str]] = {
    ErrorCode.INVALID_UTXO: (
        ErrorCategory.VALIDATION,
        ErrorSeverity.ERROR,
        True,
        "Refresh the wallet UTXO set and make sure every input has a value and scriptPubKey.",
    ),
    ErrorCode.INVALID_FEE_RATE: (
        ErrorCategory.VALIDATION,
        ErrorSeverity.ERROR,
        True,
        "Use a fee rate greater than zero sat/vB.",
    ),
    ErrorCode.INVALID_INPUT: (
        ErrorCategory.VALIDATION,
        ErrorSeverity.ERROR,
        True,
        "Check the inscription content, leaf script and commit details passed to the builder.",
    ),
    ErrorCode.INVALID_ADDRESS: (
        ErrorCategory.VALIDATION,
        ErrorSeverity.ERROR,
        True,
        "Verify the address is well formed and belongs to the selected network.",
    ),
    ErrorCode.INSUFFICIENT_FUNDS: (
        ErrorCategory.WALLET,
        ErrorSeverity.ERROR,
        True,
        "Fund the wallet or lower the fee rate, then try again.",
    ),
    ErrorCode.SIGNING_ERROR: (
        ErrorCategory.WALLET,
        ErrorSeverity.CRITICAL,
        False,
        "Regenerate the reveal inputs before retrying; the signature did not verify.",
    ),
    ErrorCode.INVALID_TRANSACTION: (
        ErrorCategory.SYSTEM,
        ErrorSeverity.CRITICAL,
        False,
        "The transaction could not be finalized; rebuild it from the commit output.",
    ),
    ErrorCode.BROADCAST_FAILURE: (
        ErrorCategory.NETWORK,
        ErrorSeverity.ERROR,
        True,
        "The broadcast service rejected the transaction; inspect the node response and retry.",
    ),
    ErrorCode.INITIALIZATION_FAILED: (
        ErrorCategory.SYSTEM,
        ErrorSeverity.CRITICAL,
        True,
        "The backing services are unhealthy; wait for them to recover before building a reveal.",
    ),
    ErrorCode.NETWORK_ERROR: (
        ErrorCategory.NETWORK,
        ErrorSeverity.ERROR,
        True,
        "Check connectivity to the configured API endpoint.",
    ),
    ErrorCode.STATE_ERROR: (
        ErrorCategory.SYSTEM,
        ErrorSeverity.ERROR,
        False,
        "The tracked transaction cannot move to the requested status.",
    ),
    ErrorCode.UNEXPECTED_ERROR: (
        ErrorCategory.SYSTEM,
        ErrorSeverity.ERROR,
        False,
        "An unexpected error occurred; enable debug logging for details.",
    ),
}


class InscriptionError(RuntimeError):
    """Raised for any failure during inscription construction or submission."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
        recoverable: bool | None = None,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
    ) -> None:
        super().__init__(message)
        default_category, default_severity, default_recoverable, suggestion = _ERROR_DEFAULTS[code]
        self.code = code
        self.message = message
        self.category = category or default_category
        self.severity = severity or default_severity
        self.recoverable = default_recoverable if recoverable is None else recoverable
        self.suggestion = suggestion
        self.details = dict(details or {})
        self.timestamp = time.time()

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_record(self) -> dict[str, Any]:
        """Return a JSON-friendly description suitable for tracker storage."""

        return {
            "code": self.code.value,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp,
            "details": dict(self.details),
            "suggestion": self.suggestion,
        }


class InsufficientFundsError(InscriptionError):
    """Raised when the available value cannot cover the target plus fees."""

    def __init__(self, required: int, available: int, message: str | None = None) -> None:
        super().__init__(
            ErrorCode.INSUFFICIENT_FUNDS,
            message or f"Insufficient funds. Required: {required}, Available: {available}",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class AllUtxosContainResourcesError(InscriptionError):
    """Raised when every candidate UTXO is protected because it carries an inscription."""

    def __init__(self, candidate_count: int) -> None:
        super().__init__(
            ErrorCode.INVALID_UTXO,
            "All UTXOs contain resources; none can be spent as funding inputs",
            details={"candidates": candidate_count},
        )


class NoEligibleUtxosError(InscriptionError):
    """Raised when no candidate survives filtering for reasons other than resources."""

    def __init__(self, candidate_count: int) -> None:
        super().__init__(
            ErrorCode.INVALID_UTXO,
            "No eligible UTXOs available for selection",
            details={"candidates": candidate_count},
        )


class TrackerStateError(InscriptionError):
    def __init__(self, transaction_id: str, current: str, requested: str) -> None:
        super().__init__(
            ErrorCode.STATE_ERROR,
            f"Transaction {transaction_id} cannot move from {current} to {requested}",
            details={"transaction_id": transaction_id, "current": current, "requested": requested},
        )


class BroadcastError(InscriptionError):
    """Raised when the broadcast collaborator rejects a transaction."""

    def __init__(self, message: str, *, status_code: int | None = None, response: str | None = None) -> None:
        super().__init__(
            ErrorCode.BROADCAST_FAILURE,
            message,
            details={"status_code": status_code, "response": response},
        )
        self.status_code = status_code


def to_inscription_error(exc: BaseException, *, code: ErrorCode | None = None) -> InscriptionError:
    """Wrap arbitrary exceptions so callers always observe an :class:`InscriptionError`."""

    if isinstance(exc, InscriptionError):
        return exc
    wrapped = InscriptionError(
        code or ErrorCode.UNEXPECTED_ERROR,
        str(exc) or exc.__class__.__name__,
        details={"exception": exc.__class__.__name__},
    )
    wrapped.__cause__ = exc
    return wrapped
