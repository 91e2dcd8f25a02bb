"""Pure constant-product math — no state, no transfers."""
from __future__ import annotations

import math

from ..errors import InsufficientLiquidity
from ..fixed_point import BPS, WAD, mul_div_down, mul_div_up

MINIMUM_LIQUIDITY = 1000


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """Output for an exact input, fee taken on the input.

    amount_out = reserve_out × in × (1 − fee) / (reserve_in + in × (1 − fee)),
    with the whole numerator multiplied out before the single division.
    """
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity("Pool has no liquidity")
    if amount_in <= 0:
        return 0
    amount_in_with_fee = amount_in * (BPS - fee_bps)
    numerator = reserve_out * amount_in_with_fee
    denominator = reserve_in * BPS + amount_in_with_fee
    return numerator // denominator


def get_amount_in(amount_out: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """Smallest input that buys ``amount_out``, rounded up for the pool."""
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity("Pool has no liquidity")
    if amount_out >= reserve_out:
        raise InsufficientLiquidity(
            f"Requested {amount_out} but pool holds {reserve_out}"
        )
    if amount_out <= 0:
        return 0
    numerator = reserve_in * amount_out * BPS
    denominator = (reserve_out - amount_out) * (BPS - fee_bps)
    return numerator // denominator + 1


def initial_shares(amount_a: int, amount_b: int) -> int:
    """LP shares minted to the first provider, net of the locked minimum."""
    return math.isqrt(amount_a * amount_b) - MINIMUM_LIQUIDITY


def optimal_amounts(
    desired_a: int, desired_b: int, reserve_a: int, reserve_b: int
) -> tuple[int, int]:
    """Largest pair within the desired amounts that matches the pool ratio.

    The counterpart is rounded up so the pool never receives less than the
    proportional share it mints for.
    """
    required_b = mul_div_up(desired_a, reserve_b, reserve_a)
    if required_b <= desired_b:
        return desired_a, required_b
    required_a = mul_div_up(desired_b, reserve_a, reserve_b)
    return required_a, desired_b


def proportional_shares(
    amount_a: int, amount_b: int, reserve_a: int, reserve_b: int, total_shares: int
) -> int:
    return min(
        mul_div_down(amount_a, total_shares, reserve_a),
        mul_div_down(amount_b, total_shares, reserve_b),
    )


def spot_price(
    reserve_base: int, reserve_quote: int, base_decimals: int, quote_decimals: int
) -> int:
    """WAD price of one whole base token in whole quote tokens."""
    if reserve_base <= 0:
        raise InsufficientLiquidity("Pool has no liquidity")
    return mul_div_down(
        reserve_quote * 10**base_decimals, WAD, reserve_base * 10**quote_decimals
    )
