"""UTXO model and funding-input selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Sequence

from .errors import (
    AllUtxosContainResourcesError,
    ErrorCode,
    InscriptionError,
    InsufficientFundsError,
    NoEligibleUtxosError,
)
from .fees import DUST_LIMIT, calculate_fee, estimate_size, validate_fee_rate

logger = logging.getLogger(__name__)

STRATEGY_VALUE_DESC = "value-desc"
STRATEGY_CLOSEST = "closest-to-target"
STRATEGY_OLDEST = "oldest-first"
STRATEGIES = (STRATEGY_VALUE_DESC, STRATEGY_CLOSEST, STRATEGY_OLDEST)

SizeEstimator = Callable[[int, int], int]


@dataclass(frozen=True)
class UTXO:
    txid: str
    vout: int
    value: int
    script_pubkey: bytes | None = None
    has_resource: bool = False
    address: str | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UTXO":
        """Build a UTXO from an API-style mapping (``scriptPubKey`` as hex)."""

        script = data.get("script_pubkey", data.get("scriptPubKey"))
        if isinstance(script, str):
            script = bytes.fromhex(script)
        return cls(
            txid=str(data["txid"]),
            vout=int(data["vout"]),
            value=int(data["value"]),
            script_pubkey=script,
            has_resource=bool(data.get("has_resource", data.get("hasResource", False))),
            address=data.get("address"),
        )


@dataclass
class SelectionOptions:
    allow_resource_utxos: bool = False
    avoid_utxo_ids: Sequence[str] = ()
    strategy: str = STRATEGY_VALUE_DESC
    output_count: int = 2


@dataclass
class SelectionResult:
    selected_utxos: List[UTXO]
    total_value: int
    fee: int
    change_amount: int
    vbytes: int = 0
    warnings: List[str] = field(default_factory=list)


def _order(candidates: List[UTXO], strategy: str, target: int) -> List[UTXO]:
    if strategy == STRATEGY_VALUE_DESC:
        return sorted(candidates, key=lambda u: (-u.value, u.txid, u.vout))
    if strategy == STRATEGY_CLOSEST:
        # Covering candidates first by smallest overshoot, then the rest largest first.
        return sorted(
            candidates,
            key=lambda u: (0, u.value - target) if u.value >= target else (1, -u.value),
        )
    if strategy == STRATEGY_OLDEST:
        return sorted(candidates, key=lambda u: (u.txid, u.vout))
    raise InscriptionError(
        ErrorCode.INVALID_INPUT,
        f"Unknown selection strategy '{strategy}'; expected one of {', '.join(STRATEGIES)}",
    )


def filter_eligible(candidates: Iterable[UTXO], options: SelectionOptions) -> List[UTXO]:
    """Drop avoided, empty and (unless allowed) resource-bearing UTXOs.

    Raises:
        AllUtxosContainResourcesError: If resource protection alone empties the set
        NoEligibleUtxosError: If nothing is left for any other reason
    """

    pool = list(candidates)
    avoid = set(options.avoid_utxo_ids)
    usable = [u for u in pool if u.outpoint not in avoid and u.value > 0]
    eligible = [u for u in usable if options.allow_resource_utxos or not u.has_resource]
    skipped = len(usable) - len(eligible)
    if skipped:
        logger.debug("Skipped %d resource-bearing UTXOs", skipped)
    if not eligible:
        if usable:
            logger.warning("All %d candidate UTXOs carry inscriptions; refusing to spend them", len(usable))
            raise AllUtxosContainResourcesError(len(usable))
        raise NoEligibleUtxosError(len(pool))
    return eligible


def select_utxos(
    candidates: Iterable[UTXO],
    required_amount: int,
    fee_rate: float,
    options: SelectionOptions | None = None,
    *,
    size_estimator: SizeEstimator = estimate_size,
) -> SelectionResult:
    """Choose funding inputs covering ``required_amount`` plus the fee they imply.

    A single covering UTXO is preferred. Otherwise candidates are accumulated
    in strategy order and the fee is recomputed from the exact input count
    after every addition. Change below the dust limit is added to the fee.
    """

    opts = options or SelectionOptions()
    rate = validate_fee_rate(fee_rate)
    if required_amount <= 0:
        raise InscriptionError(
            ErrorCode.INVALID_INPUT, f"Required amount must be positive, got {required_amount}"
        )

    eligible = filter_eligible(candidates, opts)

    def fee_for(count: int) -> tuple[int, int]:
        vbytes = size_estimator(count, opts.output_count)
        return vbytes, calculate_fee(vbytes, rate)

    single_vbytes, single_fee = fee_for(1)
    ordered = _order(eligible, opts.strategy, required_amount + single_fee)

    selected: List[UTXO] = []
    vbytes, fee = single_vbytes, single_fee
    for utxo in ordered:
        if utxo.value >= required_amount + single_fee:
            selected = [utxo]
            break

    if not selected:
        total = 0
        for utxo in ordered:
            selected.append(utxo)
            total += utxo.value
            vbytes, fee = fee_for(len(selected))
            if total >= required_amount + fee:
                break
        else:
            available = sum(u.value for u in eligible)
            logger.warning(
                "Insufficient funds for selection: needed=%d, available=%d",
                required_amount + fee,
                available,
            )
            raise InsufficientFundsError(required_amount + fee, available)

    total_value = sum(u.value for u in selected)
    change = total_value - required_amount - fee
    result = SelectionResult(
        selected_utxos=selected,
        total_value=total_value,
        fee=fee,
        change_amount=change,
        vbytes=vbytes,
    )
    if 0 < change < DUST_LIMIT:
        logger.info("Folding %d sats of dust change into the fee", change)
        result.fee += change
        result.change_amount = 0
        result.warnings.append(f"Change of {change} sats is below dust and was added to the fee")
    logger.debug(
        "Selected %d UTXOs totalling %d sats (fee=%d, change=%d)",
        len(selected),
        total_value,
        result.fee,
        result.change_amount,
    )
    return result
