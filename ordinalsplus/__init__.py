"""Ordinal inscription commit/reveal transaction engine."""

from .errors import (
    AllUtxosContainResourcesError,
    BroadcastError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    InscriptionError,
    InsufficientFundsError,
    NoEligibleUtxosError,
)
from .fees import DUST_LIMIT, POSTAGE_VALUE, FeeEstimate, calculate_fee, estimate_size
from .keys import KeyPair, PublicKeyOnly, decode_wif, from_private_key, from_public_key, generate_key_pair
from .tracker import (
    TrackedTransaction,
    TransactionStatus,
    TransactionStatusTracker,
    TransactionType,
)
from .utxo import UTXO, SelectionOptions, SelectionResult, select_utxos

__all__ = [
    "InscriptionError",
    "ErrorCode",
    "ErrorCategory",
    "ErrorSeverity",
    "InsufficientFundsError",
    "AllUtxosContainResourcesError",
    "NoEligibleUtxosError",
    "BroadcastError",
    "DUST_LIMIT",
    "POSTAGE_VALUE",
    "FeeEstimate",
    "calculate_fee",
    "estimate_size",
    "KeyPair",
    "PublicKeyOnly",
    "generate_key_pair",
    "from_private_key",
    "from_public_key",
    "decode_wif",
    "UTXO",
    "SelectionOptions",
    "SelectionResult",
    "select_utxos",
    "TrackedTransaction",
    "TransactionStatus",
    "TransactionStatusTracker",
    "TransactionType",
]
