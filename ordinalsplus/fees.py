"""Linear vbyte estimates and fee arithmetic for commit and reveal transactions."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Mapping, Sequence

from .crypto import ser_compact_size
from .errors import ErrorCode, InscriptionError

logger = logging.getLogger(__name__)

TX_OVERHEAD_VBYTES = 10.5
P2WPKH_INPUT_VBYTES = 68
P2WPKH_OUTPUT_VBYTES = 31
P2TR_OUTPUT_VBYTES = 43
P2TR_SCRIPT_LENGTH = 34
P2WPKH_SCRIPT_LENGTH = 22

# Non-witness part of any segwit input: outpoint, empty scriptSig, sequence.
SEGWIT_INPUT_BASE_VBYTES = 41
SCHNORR_SIGNATURE_SIZE = 64

DUST_LIMIT = 546
POSTAGE_VALUE = 551

ENV_MIN_FEE_RATE_FLOOR = "ORDINALSPLUS_MIN_FEE_RATE_SATVB"


@dataclass(frozen=True)
class FeeEstimate:
    vbytes: int
    fee_sats: int
    fee_rate: float


def validate_fee_rate(fee_rate: float | int | None) -> float:
    """Return ``fee_rate`` as a float, rejecting missing or non-positive values."""

    if fee_rate is None or isinstance(fee_rate, bool):
        raise InscriptionError(ErrorCode.INVALID_FEE_RATE, "Fee rate is required")
    try:
        rate = float(fee_rate)
    except (TypeError, ValueError) as exc:
        raise InscriptionError(ErrorCode.INVALID_FEE_RATE, f"Invalid fee rate: {fee_rate}") from exc
    if not math.isfinite(rate) or rate <= 0:
        raise InscriptionError(
            ErrorCode.INVALID_FEE_RATE, f"Fee rate must be greater than zero, got {fee_rate}"
        )
    return rate


def calculate_fee(vbytes: float | int, fee_rate: float | int) -> int:
    """Return ``ceil(vbytes * fee_rate)`` in satoshis.

    The product is computed on the decimal representations so that rates such
    as ``1.1`` sat/vB do not round up an extra satoshi through binary float
    error.
    """

    product = Decimal(str(vbytes)) * Decimal(str(fee_rate))
    return int(product.to_integral_value(rounding=ROUND_CEILING))


def estimate_size(input_count: int, output_count: int) -> int:
    """Estimate vbytes for a transaction of P2WPKH inputs and outputs."""

    if input_count < 0 or output_count < 0:
        raise ValueError("Input and output counts must be non-negative")
    return math.ceil(
        TX_OVERHEAD_VBYTES + P2WPKH_INPUT_VBYTES * input_count + P2WPKH_OUTPUT_VBYTES * output_count
    )


def _output_vbytes(script_length: int) -> int:
    return 8 + len(ser_compact_size(script_length)) + script_length


def estimate_commit_size(
    input_count: int,
    output_count: int,
    *,
    commit_outputs: int = 1,
    change_script_length: int = P2WPKH_SCRIPT_LENGTH,
) -> int:
    """Estimate vbytes for a commit paying ``commit_outputs`` Taproot outputs.

    The other ``output_count - commit_outputs`` outputs are change, priced
    from ``change_script_length``.
    """

    if input_count < 0 or commit_outputs < 1 or output_count < commit_outputs:
        raise ValueError(
            f"Invalid commit shape: {input_count} inputs, {output_count} outputs, {commit_outputs} commit outputs"
        )
    return math.ceil(
        TX_OVERHEAD_VBYTES
        + P2WPKH_INPUT_VBYTES * input_count
        + P2TR_OUTPUT_VBYTES * commit_outputs
        + _output_vbytes(change_script_length) * (output_count - commit_outputs)
    )


def estimate_reveal_size(
    script_length: int,
    control_block_length: int,
    output_script_lengths: Sequence[int] | None = None,
) -> int:
    """Estimate vbytes for a single-input tapscript reveal.

    Witness bytes (signature, leaf script and control block, each with its
    length prefix, plus the stack item count) are counted at one quarter
    weight. ``output_script_lengths`` defaults to a single Taproot output.
    """

    lengths = list(output_script_lengths) if output_script_lengths else [P2TR_SCRIPT_LENGTH]
    witness_bytes = (
        1
        + 1 + SCHNORR_SIGNATURE_SIZE
        + len(ser_compact_size(script_length)) + script_length
        + len(ser_compact_size(control_block_length)) + control_block_length
    )
    outputs = sum(_output_vbytes(length) for length in lengths)
    vbytes = TX_OVERHEAD_VBYTES + SEGWIT_INPUT_BASE_VBYTES + outputs + witness_bytes / 4
    return math.ceil(vbytes)


def estimate_fee(vbytes: int, fee_rate: float | int) -> FeeEstimate:
    rate = validate_fee_rate(fee_rate)
    return FeeEstimate(vbytes=vbytes, fee_sats=calculate_fee(vbytes, rate), fee_rate=rate)


def _env_float(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key)
    if raw in {None, ""}:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%s", key, raw)
        return None


def apply_fee_rate_floor(fee_rate: float, *, env: Mapping[str, str] | None = None) -> float:
    """Raise ``fee_rate`` to the ``ORDINALSPLUS_MIN_FEE_RATE_SATVB`` floor when set."""

    env_map = os.environ if env is None else env
    floor = _env_float(env_map, ENV_MIN_FEE_RATE_FLOOR)
    if floor is not None and floor > fee_rate:
        logger.info("Applying fee rate floor %.3f sat/vB (requested %.3f)", floor, fee_rate)
        return floor
    return fee_rate
