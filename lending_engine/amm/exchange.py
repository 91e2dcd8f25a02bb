"""Constant-product pools keyed by pool id."""
from __future__ import annotations

import logging

from ..config import PoolConfig
from ..errors import (
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientShares,
    InvariantViolation,
    SlippageExceeded,
    UnknownAsset,
)
from ..executor import CheckpointMixin, ReentrancyGuard
from ..fixed_point import mul_div_down
from ..ledger import TokenLedger
from ..models import ExecutionContext
from ..state import PoolState
from . import curve

logger = logging.getLogger(__name__)

LOCKED_LIQUIDITY_HOLDER = "amm:locked"


def pool_account(pool_id: str) -> str:
    return f"amm:{pool_id}"


class AmmExchange(CheckpointMixin):
    """Owns every pool's reserves; they move only through swaps and liquidity calls.

    Reserves are tracked internally, so tokens sent straight to a pool's
    custody account change nothing. Each pool has its own reentrancy guard:
    a transfer hook fired mid-swap cannot call back into the same pool.
    """

    _checkpoint_fields = ("_pools", "_lp_balances")

    def __init__(self, pools: dict[str, PoolConfig], ledger: TokenLedger) -> None:
        self._configs = dict(pools)
        self._ledger = ledger
        self._pools: dict[str, PoolState] = {
            pool_id: PoolState(pool_id=pool_id, asset_a=cfg.asset_a, asset_b=cfg.asset_b)
            for pool_id, cfg in pools.items()
        }
        self._lp_balances: dict[str, dict[str, int]] = {pool_id: {} for pool_id in pools}
        self._guards = {pool_id: ReentrancyGuard(f"pool {pool_id}") for pool_id in pools}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _pool(self, pool_id: str) -> PoolState:
        try:
            return self._pools[pool_id]
        except KeyError:
            raise UnknownAsset(f"Unknown pool '{pool_id}'") from None

    @staticmethod
    def _sides(pool: PoolState, asset_in: str) -> tuple[str, int, int]:
        """(asset_out, reserve_in, reserve_out) for a swap paying ``asset_in``."""
        if asset_in == pool.asset_a:
            return pool.asset_b, pool.reserve_a, pool.reserve_b
        if asset_in == pool.asset_b:
            return pool.asset_a, pool.reserve_b, pool.reserve_a
        raise UnknownAsset(f"Pool '{pool.pool_id}' does not trade '{asset_in}'")

    def pool_state(self, pool_id: str) -> PoolState:
        return PoolState(**vars(self._pool(pool_id)))

    def reserves(self, pool_id: str) -> tuple[int, int]:
        pool = self._pool(pool_id)
        return pool.reserve_a, pool.reserve_b

    def lp_balance(self, pool_id: str, account: str) -> int:
        self._pool(pool_id)
        return self._lp_balances[pool_id].get(account, 0)

    def get_amount_out(self, pool_id: str, asset_in: str, amount_in: int) -> int:
        pool = self._pool(pool_id)
        _, reserve_in, reserve_out = self._sides(pool, asset_in)
        return curve.get_amount_out(
            amount_in, reserve_in, reserve_out, self._configs[pool_id].fee_bps
        )

    def get_amount_in(self, pool_id: str, asset_in: str, amount_out: int) -> int:
        pool = self._pool(pool_id)
        _, reserve_in, reserve_out = self._sides(pool, asset_in)
        return curve.get_amount_in(
            amount_out, reserve_in, reserve_out, self._configs[pool_id].fee_bps
        )

    def spot_price(self, pool_id: str, base_asset: str) -> int:
        """WAD price of one whole ``base_asset`` in whole units of the other asset."""
        pool = self._pool(pool_id)
        quote_asset, reserve_base, reserve_quote = self._sides(pool, base_asset)
        return curve.spot_price(
            reserve_base,
            reserve_quote,
            self._ledger.decimals(base_asset),
            self._ledger.decimals(quote_asset),
        )

    def cumulative_price(self, pool_id: str, base_asset: str, now: int) -> int:
        """Accumulated WAD price × seconds of ``base_asset`` up to ``now``."""
        pool = self._pool(pool_id)
        self._sides(pool, base_asset)
        cumulative = (
            pool.price_a_cumulative if base_asset == pool.asset_a else pool.price_b_cumulative
        )
        elapsed = now - pool.last_update
        if elapsed > 0 and pool.reserve_a and pool.reserve_b:
            cumulative += self.spot_price(pool_id, base_asset) * elapsed
        return cumulative

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------

    def swap_exact_in(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        asset_in: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str | None = None,
    ) -> int:
        """Sell exactly ``amount_in``; returns the output the recipient received."""
        pool = self._pool(pool_id)
        fee_bps = self._configs[pool_id].fee_bps
        recipient = recipient or ctx.caller_id

        with self._guards[pool_id]:
            asset_out, reserve_in, reserve_out = self._sides(pool, asset_in)
            quoted = curve.get_amount_out(amount_in, reserve_in, reserve_out, fee_bps)
            if quoted < min_amount_out:
                raise SlippageExceeded(
                    f"Quoted output {quoted} below minimum {min_amount_out}"
                )

            self._accumulate(pool, ctx.timestamp)
            account = pool_account(pool_id)
            received = self._ledger.transfer_measured(
                asset_in, ctx.caller_id, account, amount_in
            )
            amount_out = curve.get_amount_out(received, reserve_in, reserve_out, fee_bps)
            if amount_out <= 0:
                raise InsufficientLiquidity("Swap output rounds to zero")
            if amount_out < min_amount_out:
                raise SlippageExceeded(
                    f"Output {amount_out} below minimum {min_amount_out}"
                )

            self._apply_swap(pool, asset_in, received, amount_out)
            delivered = self._ledger.transfer_measured(
                asset_out, account, recipient, amount_out
            )

        logger.info(
            "Swap on %s: %d %s -> %d %s", pool_id, received, asset_in, amount_out, asset_out
        )
        return delivered

    def swap_exact_out(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        asset_in: str,
        amount_out: int,
        max_amount_in: int,
        recipient: str | None = None,
    ) -> int:
        """Buy exactly ``amount_out`` of the other asset; returns the input paid."""
        pool = self._pool(pool_id)
        fee_bps = self._configs[pool_id].fee_bps
        recipient = recipient or ctx.caller_id

        with self._guards[pool_id]:
            asset_out, reserve_in, reserve_out = self._sides(pool, asset_in)
            amount_in = curve.get_amount_in(amount_out, reserve_in, reserve_out, fee_bps)
            if amount_in > max_amount_in:
                raise SlippageExceeded(
                    f"Required input {amount_in} above maximum {max_amount_in}"
                )

            self._accumulate(pool, ctx.timestamp)
            account = pool_account(pool_id)
            received = self._ledger.transfer_measured(
                asset_in, ctx.caller_id, account, amount_in
            )
            if received < amount_in:
                raise InsufficientInputAmount(
                    f"Pool received {received} {asset_in}, needs {amount_in}"
                )

            self._apply_swap(pool, asset_in, received, amount_out)
            self._ledger.transfer(asset_out, account, recipient, amount_out)

        logger.info(
            "Swap on %s: %d %s -> %d %s", pool_id, amount_in, asset_in, amount_out, asset_out
        )
        return amount_in

    def _apply_swap(self, pool: PoolState, asset_in: str, amount_in: int, amount_out: int) -> None:
        old_k = pool.k
        if asset_in == pool.asset_a:
            pool.reserve_a += amount_in
            pool.reserve_b -= amount_out
        else:
            pool.reserve_b += amount_in
            pool.reserve_a -= amount_out
        if pool.reserve_a <= 0 or pool.reserve_b <= 0:
            raise InvariantViolation(f"Pool {pool.pool_id} reserve drained")
        if pool.k < old_k:
            raise InvariantViolation(
                f"Pool {pool.pool_id} invariant decreased: {old_k} -> {pool.k}"
            )

    def _accumulate(self, pool: PoolState, now: int) -> None:
        elapsed = now - pool.last_update
        if elapsed < 0:
            raise InvariantViolation(f"Pool {pool.pool_id} clock went backwards")
        if elapsed > 0 and pool.reserve_a and pool.reserve_b:
            pool.price_a_cumulative += self.spot_price(pool.pool_id, pool.asset_a) * elapsed
            pool.price_b_cumulative += self.spot_price(pool.pool_id, pool.asset_b) * elapsed
        pool.last_update = now

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    def add_liquidity(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        amount_a: int,
        amount_b: int,
        min_shares: int = 0,
    ) -> int:
        """Deposit both assets at the pool ratio; returns LP shares minted."""
        pool = self._pool(pool_id)
        with self._guards[pool_id]:
            if pool.total_shares:
                amount_a, amount_b = curve.optimal_amounts(
                    amount_a, amount_b, pool.reserve_a, pool.reserve_b
                )

            self._accumulate(pool, ctx.timestamp)
            account = pool_account(pool_id)
            received_a = self._ledger.transfer_measured(
                pool.asset_a, ctx.caller_id, account, amount_a
            )
            received_b = self._ledger.transfer_measured(
                pool.asset_b, ctx.caller_id, account, amount_b
            )

            balances = self._lp_balances[pool_id]
            if pool.total_shares == 0:
                shares = curve.initial_shares(received_a, received_b)
                if shares <= 0:
                    raise InsufficientLiquidity("Initial liquidity too small")
                balances[LOCKED_LIQUIDITY_HOLDER] = curve.MINIMUM_LIQUIDITY
                pool.total_shares = curve.MINIMUM_LIQUIDITY
            else:
                shares = curve.proportional_shares(
                    received_a, received_b, pool.reserve_a, pool.reserve_b, pool.total_shares
                )
            if shares <= 0 or shares < min_shares:
                raise SlippageExceeded(f"Minted {shares} shares, minimum {min_shares}")

            balances[ctx.caller_id] = balances.get(ctx.caller_id, 0) + shares
            pool.total_shares += shares
            pool.reserve_a += received_a
            pool.reserve_b += received_b

        logger.info(
            "Liquidity added to %s: %d %s + %d %s for %d shares",
            pool_id, received_a, pool.asset_a, received_b, pool.asset_b, shares,
        )
        return shares

    def remove_liquidity(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        shares: int,
        min_amount_a: int = 0,
        min_amount_b: int = 0,
    ) -> tuple[int, int]:
        """Burn LP shares for a pro-rata slice of both reserves, rounded down."""
        pool = self._pool(pool_id)
        with self._guards[pool_id]:
            balances = self._lp_balances[pool_id]
            held = balances.get(ctx.caller_id, 0)
            if shares <= 0 or shares > held:
                raise InsufficientShares(f"{ctx.caller_id} holds {held} LP shares")

            amount_a = mul_div_down(shares, pool.reserve_a, pool.total_shares)
            amount_b = mul_div_down(shares, pool.reserve_b, pool.total_shares)
            if amount_a < min_amount_a or amount_b < min_amount_b:
                raise SlippageExceeded(
                    f"Withdrawal {amount_a}/{amount_b} below minimum "
                    f"{min_amount_a}/{min_amount_b}"
                )

            self._accumulate(pool, ctx.timestamp)
            balances[ctx.caller_id] = held - shares
            pool.total_shares -= shares
            pool.reserve_a -= amount_a
            pool.reserve_b -= amount_b

            account = pool_account(pool_id)
            self._ledger.transfer(pool.asset_a, account, ctx.caller_id, amount_a)
            self._ledger.transfer(pool.asset_b, account, ctx.caller_id, amount_b)

        logger.info("Liquidity removed from %s: %d shares", pool_id, shares)
        return amount_a, amount_b
