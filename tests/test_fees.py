from __future__ import annotations

import math

import pytest

from ordinalsplus.errors import ErrorCode, InscriptionError
from ordinalsplus.fees import (
    ENV_MIN_FEE_RATE_FLOOR,
    apply_fee_rate_floor,
    calculate_fee,
    estimate_commit_size,
    estimate_fee,
    estimate_reveal_size,
    estimate_size,
    validate_fee_rate,
)


def test_calculate_fee_is_ceiling_of_product() -> None:
    assert calculate_fee(100, 1.1) == 110
    assert calculate_fee(141, 10) == 1410
    assert calculate_fee(10, 0.15) == 2
    assert calculate_fee(1, 0.01) == 1


def test_calculate_fee_matches_ceil_and_is_monotonic() -> None:
    rates = [0.5, 1, 1.25, 2, 7.3, 10, 55.5]
    sizes = [1, 57, 110, 141, 250, 1000]
    for size in sizes:
        previous = 0
        for rate in rates:
            fee = calculate_fee(size, rate)
            assert fee == math.ceil(size * rate - 1e-9)
            assert fee >= previous
            previous = fee
    for rate in rates:
        fees = [calculate_fee(size, rate) for size in sizes]
        assert fees == sorted(fees)


def test_size_estimates() -> None:
    assert estimate_size(1, 2) == 141
    assert estimate_size(2, 2) == 209
    assert estimate_commit_size(1, 1) == 122
    assert estimate_commit_size(1, 2) == 153
    # Two Taproot commit outputs plus P2WPKH change.
    assert estimate_commit_size(1, 3, commit_outputs=2) == 196
    # Taproot change is priced as a 43 vB output.
    assert estimate_commit_size(1, 2, change_script_length=34) == 165
    # 72-byte envelope leaf, 33-byte control block, one Taproot output.
    assert estimate_reveal_size(72, 33) == 138
    assert estimate_reveal_size(72, 33, [34, 22]) == 169


def test_estimate_fee_container() -> None:
    estimate = estimate_fee(138, 10)
    assert estimate.vbytes == 138
    assert estimate.fee_sats == 1380


@pytest.mark.parametrize("rate", [0, -1, None, float("nan"), "abc"])
def test_invalid_fee_rates(rate) -> None:
    with pytest.raises(InscriptionError) as excinfo:
        validate_fee_rate(rate)
    assert excinfo.value.code is ErrorCode.INVALID_FEE_RATE


def test_fee_rate_floor_from_environment() -> None:
    assert apply_fee_rate_floor(2.0, env={ENV_MIN_FEE_RATE_FLOOR: "5"}) == 5.0
    assert apply_fee_rate_floor(8.0, env={ENV_MIN_FEE_RATE_FLOOR: "5"}) == 8.0
    assert apply_fee_rate_floor(2.0, env={ENV_MIN_FEE_RATE_FLOOR: "oops"}) == 2.0
    assert apply_fee_rate_floor(2.0, env={}) == 2.0


def test_commit_size_rejects_impossible_shapes() -> None:
    with pytest.raises(ValueError):
        estimate_commit_size(1, 1, commit_outputs=2)
    with pytest.raises(ValueError):
        estimate_commit_size(1, 1, commit_outputs=0)
    with pytest.raises(ValueError):
        estimate_commit_size(-1, 2)
