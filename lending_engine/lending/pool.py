"""Lending pool — reserves, positions, interest indexes and health checks."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from ..config import LendingConfig, ReserveConfig
from ..errors import (
    DebtCeilingExceeded,
    HealthFactorTooLow,
    InsufficientCollateral,
    InsufficientPoolLiquidity,
    InvariantViolation,
    LendingError,
    MinimumDebtViolation,
    PositionInLiquidation,
    Unauthorized,
    UnknownAsset,
)
from ..executor import CheckpointMixin, ReentrancyGuard, nonreentrant
from ..fixed_point import (
    BPS,
    RAY,
    WAD,
    checked_sub,
    mul_div_down,
    mul_div_up,
    to_base_value,
    wad_to_decimal,
)
from ..ledger import TokenLedger
from ..models import AuctionStatus, ExecutionContext, PositionView, SeizedCollateral
from ..oracles.price_oracle import PriceOracle
from ..state import InterestIndex, Position, ReserveState
from ..vaults.accounting import VaultAccounting
from .interest import build_rate_model, compound_index

if TYPE_CHECKING:
    from ..liquidation.engine import LiquidationEngine

logger = logging.getLogger(__name__)

INFINITE_HEALTH = Decimal("Infinity")


class LendingPool(CheckpointMixin):
    """Collateral positions keyed by ``(owner, asset)`` borrowing one debt asset.

    Each collateral reserve carries its own risk parameters, interest index
    and debt ceiling. Liquidity of the debt asset is supplied by lenders for
    pool shares; interest and flash-loan fees accrue to the pool.
    """

    _checkpoint_fields = (
        "_reserves",
        "_indexes",
        "_reserve_states",
        "_positions",
        "_cash",
        "_flash_outstanding",
        "_protocol_reserve",
        "_liquidity_shares",
        "_total_liquidity_shares",
    )

    def __init__(
        self,
        config: LendingConfig,
        reserves: dict[str, ReserveConfig],
        ledger: TokenLedger,
        oracle: PriceOracle,
        admins: tuple[str, ...],
        vaults: VaultAccounting | None = None,
    ) -> None:
        self._config = config
        self.debt_asset = config.debt_asset
        self.account = config.account
        self._ledger = ledger
        self._oracle = oracle
        self._vaults = vaults
        self._admins = frozenset(admins)
        self._liquidation: LiquidationEngine | None = None
        self._guard = ReentrancyGuard("lending pool")

        self._reserves: dict[str, ReserveConfig] = dict(reserves)
        self._indexes: dict[str, InterestIndex] = {a: InterestIndex() for a in reserves}
        self._reserve_states: dict[str, ReserveState] = {a: ReserveState() for a in reserves}
        self._positions: dict[tuple[str, str], Position] = {}
        self._cash = 0
        self._flash_outstanding = 0
        self._protocol_reserve = 0
        self._liquidity_shares: dict[str, int] = {}
        self._total_liquidity_shares = 0

    def attach_liquidation_engine(self, engine: LiquidationEngine) -> None:
        self._liquidation = engine

    # ------------------------------------------------------------------
    # Reserve configuration and interest
    # ------------------------------------------------------------------

    def reserve_config(self, asset: str) -> ReserveConfig:
        try:
            return self._reserves[asset]
        except KeyError:
            raise UnknownAsset(f"No reserve configured for '{asset}'") from None

    def reserve_state(self, asset: str) -> ReserveState:
        self.reserve_config(asset)
        return ReserveState(**vars(self._reserve_states[asset]))

    @nonreentrant
    def configure_reserve(self, ctx: ExecutionContext, asset: str, cfg: ReserveConfig) -> None:
        if ctx.caller_id not in self._admins:
            raise Unauthorized(f"{ctx.caller_id} may not configure reserves")
        if asset == self.debt_asset:
            raise LendingError(f"Debt asset '{asset}' cannot be a collateral reserve")
        self._ledger.decimals(asset)
        cfg.validate(asset)
        if asset in self._reserves:
            self._accrue(ctx, asset)
        else:
            self._indexes[asset] = InterestIndex(last_update=ctx.timestamp)
            self._reserve_states[asset] = ReserveState()
        self._reserves[asset] = cfg
        logger.info("Reserve %s configured: %s", asset, cfg)

    def interest_index(self, asset: str) -> InterestIndex:
        self.reserve_config(asset)
        idx = self._indexes[asset]
        return InterestIndex(value=idx.value, last_update=idx.last_update)

    def current_index(self, asset: str, now: int) -> int:
        """Index as it would be after accruing to ``now``, without mutating."""
        cfg = self.reserve_config(asset)
        idx = self._indexes[asset]
        if idx.last_update == 0 or now <= idx.last_update:
            return idx.value
        rate = build_rate_model(cfg).annual_rate_bps(self.utilization_wad())
        return compound_index(idx.value, rate, now - idx.last_update)

    @nonreentrant
    def accrue_interest(self, ctx: ExecutionContext, asset: str) -> int:
        """Advance the reserve's index to ``ctx.timestamp``; returns the index."""
        return self._accrue(ctx, asset)

    def _accrue(self, ctx: ExecutionContext, asset: str) -> int:
        cfg = self.reserve_config(asset)
        idx = self._indexes[asset]
        if idx.last_update == 0:
            idx.last_update = ctx.timestamp
            return idx.value
        if ctx.timestamp < idx.last_update:
            raise InvariantViolation(
                f"Accrual for {asset} at {ctx.timestamp} precedes {idx.last_update}"
            )
        elapsed = ctx.timestamp - idx.last_update
        if elapsed:
            rate = build_rate_model(cfg).annual_rate_bps(self.utilization_wad())
            idx.value = compound_index(idx.value, rate, elapsed)
            idx.last_update = ctx.timestamp
            logger.debug("Accrued %s over %ds at %d bps: index %d", asset, elapsed, rate, idx.value)
        return idx.value

    def _accrue_all(self, ctx: ExecutionContext) -> None:
        for asset in self._reserves:
            self._accrue(ctx, asset)

    # ------------------------------------------------------------------
    # Pool liquidity
    # ------------------------------------------------------------------

    @property
    def cash(self) -> int:
        return self._cash

    @property
    def protocol_reserve(self) -> int:
        return self._protocol_reserve

    def total_debt(self, now: int | None = None) -> int:
        total = 0
        for asset, state in self._reserve_states.items():
            index = self._indexes[asset].value if now is None else self.current_index(asset, now)
            total += mul_div_up(state.total_normalized_debt, index, RAY) + state.debt_in_auction
        return total

    def total_liquidity(self, now: int | None = None) -> int:
        """Lender-owned assets: cash, open flash loans and outstanding debt,
        less protocol fees."""
        return self._cash + self._flash_outstanding + self.total_debt(now) - self._protocol_reserve

    def utilization_wad(self) -> int:
        debt = self.total_debt()
        if debt == 0:
            return 0
        return mul_div_down(debt, WAD, self._cash + self._flash_outstanding + debt)

    def liquidity_shares_of(self, account: str) -> int:
        return self._liquidity_shares.get(account, 0)

    @nonreentrant
    def deposit_liquidity(self, ctx: ExecutionContext, amount: int) -> int:
        """Lend the debt asset to the pool; returns pool shares minted (rounded down)."""
        self._accrue_all(ctx)
        total = self.total_liquidity()
        received = self._ledger.transfer_measured(
            self.debt_asset, ctx.caller_id, self.account, amount
        )
        if self._total_liquidity_shares == 0:
            shares = received
        else:
            shares = mul_div_down(received, self._total_liquidity_shares, total)
        if shares == 0:
            raise LendingError(f"Liquidity deposit of {received} mints zero shares")

        self._cash += received
        self._liquidity_shares[ctx.caller_id] = self.liquidity_shares_of(ctx.caller_id) + shares
        self._total_liquidity_shares += shares
        logger.info("Liquidity deposit by %s: %d -> %d shares", ctx.caller_id, received, shares)
        return shares

    @nonreentrant
    def withdraw_liquidity(self, ctx: ExecutionContext, shares: int) -> int:
        """Burn pool shares for the debt asset (rounded down)."""
        held = self.liquidity_shares_of(ctx.caller_id)
        if shares <= 0 or shares > held:
            raise LendingError(f"{ctx.caller_id} holds {held} pool shares")
        self._accrue_all(ctx)
        amount = mul_div_down(shares, self.total_liquidity(), self._total_liquidity_shares)
        if amount > self._cash - self._protocol_reserve:
            raise InsufficientPoolLiquidity(
                f"Pool holds {self._cash - self._protocol_reserve} withdrawable, needs {amount}"
            )

        self._liquidity_shares[ctx.caller_id] = held - shares
        self._total_liquidity_shares -= shares
        self._cash -= amount
        self._ledger.transfer(self.debt_asset, self.account, ctx.caller_id, amount)
        logger.info("Liquidity withdrawal by %s: %d shares -> %d", ctx.caller_id, shares, amount)
        return amount

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def collateral_value(self, ctx: ExecutionContext, asset: str, amount: int) -> int:
        """WAD value of ``amount`` collateral. Vault shares are valued at the
        vault's conservative share rate times the underlying price."""
        cfg = self.reserve_config(asset)
        if cfg.vault_id:
            if self._vaults is None:
                raise UnknownAsset(f"Reserve '{asset}' needs vault '{cfg.vault_id}'")
            underlying = self._vaults.underlying(cfg.vault_id)
            rate = self._vaults.conservative_share_rate(cfg.vault_id)
            underlying_amount = mul_div_down(amount, rate, WAD)
            reading = self._oracle.get_price_with_fallback(ctx, underlying)
            return to_base_value(
                underlying_amount, self._ledger.decimals(underlying), reading.price, reading.decimals
            )
        reading = self._oracle.get_price_with_fallback(ctx, asset)
        return to_base_value(amount, cfg.decimals, reading.price, reading.decimals)

    def debt_value(self, ctx: ExecutionContext, amount: int) -> int:
        reading = self._oracle.get_price_with_fallback(ctx, self.debt_asset)
        return to_base_value(
            amount, self._ledger.decimals(self.debt_asset), reading.price, reading.decimals
        )

    def collateral_price(self, ctx: ExecutionContext, asset: str) -> int:
        """WAD price of one whole collateral token in whole debt-asset units."""
        cfg = self.reserve_config(asset)
        collateral = self.collateral_value(ctx, asset, 10**cfg.decimals)
        debt_unit = self.debt_value(ctx, 10 ** self._ledger.decimals(self.debt_asset))
        return mul_div_down(collateral, WAD, debt_unit)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def position(self, ctx: ExecutionContext, owner: str, asset: str) -> PositionView:
        self.reserve_config(asset)
        pos = self._positions.get((owner, asset)) or Position(owner_id=owner, asset=asset)
        index = self.current_index(asset, ctx.timestamp)
        return PositionView(
            owner_id=owner,
            asset=asset,
            collateral_amount=pos.collateral_amount,
            normalized_debt=pos.normalized_debt,
            debt=mul_div_up(pos.normalized_debt, index, RAY),
            in_liquidation=pos.in_liquidation,
        )

    def health_factor(self, ctx: ExecutionContext, owner: str, asset: str) -> Decimal:
        """collateral_value × liquidation threshold / debt_value."""
        view = self.position(ctx, owner, asset)
        if view.debt == 0:
            return INFINITE_HEALTH
        cfg = self.reserve_config(asset)
        collateral_value = self.collateral_value(ctx, asset, view.collateral_amount)
        debt_value = self.debt_value(ctx, view.debt)
        if debt_value == 0:
            return INFINITE_HEALTH
        hf_wad = mul_div_down(
            collateral_value * cfg.liquidation_threshold_bps, WAD, debt_value * BPS
        )
        return wad_to_decimal(hf_wad)

    def _check_health(
        self,
        ctx: ExecutionContext,
        asset: str,
        collateral: int,
        debt: int,
        check_ltv: bool,
    ) -> None:
        cfg = self.reserve_config(asset)
        collateral_value = self.collateral_value(ctx, asset, collateral)
        debt_value = self.debt_value(ctx, debt)
        if collateral_value * cfg.liquidation_threshold_bps < debt_value * BPS:
            raise HealthFactorTooLow(
                f"Collateral value {collateral_value} × {cfg.liquidation_threshold_bps} bps "
                f"below debt value {debt_value}"
            )
        if check_ltv and collateral_value * cfg.max_ltv_bps < debt_value * BPS:
            raise InsufficientCollateral(
                f"Debt value {debt_value} exceeds {cfg.max_ltv_bps} bps of collateral "
                f"value {collateral_value}"
            )

    @nonreentrant
    def modify_position(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        collateral_delta: int,
        debt_delta: int,
    ) -> PositionView:
        """Apply collateral and debt deltas atomically.

        Positive collateral is pulled from the caller, negative is sent to
        them; positive debt is borrowed to the caller, negative is repaid by
        them. Removing collateral or adding debt re-checks the health factor.
        """
        cfg = self.reserve_config(asset)
        if (collateral_delta < 0 or debt_delta > 0) and ctx.caller_id != owner:
            raise Unauthorized(f"{ctx.caller_id} cannot withdraw or borrow for {owner}")

        index = self._accrue(ctx, asset)
        key = (owner, asset)
        pos = self._positions.get(key) or Position(owner_id=owner, asset=asset)
        if pos.in_liquidation:
            raise PositionInLiquidation(f"Position {owner}/{asset} is being liquidated")

        collateral_after = pos.collateral_amount
        if collateral_delta > 0:
            collateral_after += self._ledger.transfer_measured(
                asset, ctx.caller_id, self.account, collateral_delta
            )
        elif collateral_delta < 0:
            if -collateral_delta > pos.collateral_amount:
                raise InsufficientCollateral(
                    f"Position holds {pos.collateral_amount}, cannot withdraw {-collateral_delta}"
                )
            collateral_after += collateral_delta

        current_debt = mul_div_up(pos.normalized_debt, index, RAY)
        normalized_after = pos.normalized_debt
        repaid = 0
        if debt_delta < 0:
            repay_amount = min(-debt_delta, current_debt)
            if repay_amount:
                repaid = self._ledger.transfer_measured(
                    self.debt_asset, ctx.caller_id, self.account, repay_amount
                )
            if repaid >= current_debt:
                normalized_after = 0
            else:
                normalized_after -= mul_div_down(repaid, RAY, index)
        elif debt_delta > 0:
            normalized_after += mul_div_up(debt_delta, RAY, index)
        debt_after = mul_div_up(normalized_after, index, RAY)

        state = self._reserve_states[asset]
        if debt_delta != 0 and 0 < debt_after < cfg.min_debt:
            raise MinimumDebtViolation(
                f"Debt {debt_after} is below the minimum of {cfg.min_debt}"
            )
        if debt_delta > 0:
            reserve_normalized = state.total_normalized_debt - pos.normalized_debt + normalized_after
            reserve_debt = mul_div_up(reserve_normalized, index, RAY) + state.debt_in_auction
            if cfg.debt_ceiling and reserve_debt > cfg.debt_ceiling:
                raise DebtCeilingExceeded(
                    f"Reserve {asset} debt {reserve_debt} exceeds ceiling {cfg.debt_ceiling}"
                )
            available = self._cash + repaid - self._protocol_reserve
            if debt_delta > available:
                raise InsufficientPoolLiquidity(
                    f"Pool holds {available} {self.debt_asset}, cannot lend {debt_delta}"
                )
        if (debt_delta > 0 or collateral_delta < 0) and debt_after > 0:
            self._check_health(ctx, asset, collateral_after, debt_after, check_ltv=debt_delta > 0)

        state.total_normalized_debt = checked_sub(
            state.total_normalized_debt + normalized_after, pos.normalized_debt
        )
        state.total_collateral = checked_sub(
            state.total_collateral + collateral_after, pos.collateral_amount
        )
        pos.collateral_amount = collateral_after
        pos.normalized_debt = normalized_after
        self._cash += repaid
        if pos.is_empty:
            self._positions.pop(key, None)
        else:
            self._positions[key] = pos

        if collateral_delta < 0:
            self._ledger.transfer(asset, self.account, ctx.caller_id, -collateral_delta)
        if debt_delta > 0:
            self._cash -= debt_delta
            self._ledger.transfer(self.debt_asset, self.account, ctx.caller_id, debt_delta)

        logger.info(
            "Position %s/%s modified by %s: collateral %+d -> %d, debt -> %d",
            owner, asset, ctx.caller_id, collateral_delta, collateral_after, debt_after,
        )
        return PositionView(
            owner_id=owner,
            asset=asset,
            collateral_amount=collateral_after,
            normalized_debt=normalized_after,
            debt=debt_after,
        )

    def supply(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self.modify_position(ctx, owner, asset, amount, 0)

    def withdraw(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self.modify_position(ctx, owner, asset, -amount, 0)

    def borrow(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self.modify_position(ctx, owner, asset, 0, amount)

    def repay(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self.modify_position(ctx, owner, asset, 0, -amount)

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    def liquidate(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        debt_to_cover: int,
        swap_pool_id: str | None = None,
        min_swap_out: int = 0,
        max_price: int | None = None,
    ) -> SeizedCollateral:
        """Start an auction if none is running, then take ``debt_to_cover`` of it."""
        if self._liquidation is None:
            raise LendingError("No liquidation engine attached")
        status = self._liquidation.status(ctx, owner, asset)
        if status in (AuctionStatus.NOT_STARTED, AuctionStatus.SETTLED):
            self._liquidation.start_auction(ctx, owner, asset)
        return self._liquidation.take_debt(
            ctx,
            owner,
            asset,
            debt_to_cover,
            max_price=max_price,
            swap_pool_id=swap_pool_id,
            min_swap_out=min_swap_out,
        )

    @nonreentrant
    def seize_for_auction(self, ctx: ExecutionContext, owner: str, asset: str) -> tuple[int, int]:
        """Move a position's collateral and debt into auction custody.

        Returns ``(collateral, debt)``. The position stays frozen until the
        auction finishes.
        """
        index = self._accrue(ctx, asset)
        pos = self._positions.get((owner, asset))
        if pos is None or pos.normalized_debt == 0:
            raise LendingError(f"Position {owner}/{asset} has no debt to liquidate")
        if pos.in_liquidation:
            raise PositionInLiquidation(f"Position {owner}/{asset} is already in auction")

        debt = mul_div_up(pos.normalized_debt, index, RAY)
        collateral = pos.collateral_amount
        state = self._reserve_states[asset]
        state.total_normalized_debt = checked_sub(state.total_normalized_debt, pos.normalized_debt)
        state.total_collateral = checked_sub(state.total_collateral, collateral)
        state.debt_in_auction += debt
        state.collateral_in_auction += collateral
        pos.collateral_amount = 0
        pos.normalized_debt = 0
        pos.in_liquidation = True
        logger.warning(
            "Position %s/%s seized for auction: %d collateral, %d debt",
            owner, asset, collateral, debt,
        )
        return collateral, debt

    @nonreentrant
    def release_auction_collateral(
        self, ctx: ExecutionContext, asset: str, amount: int, receiver: str
    ) -> int:
        """Send sold collateral to the taker; returns what the taker received."""
        state = self._reserve_states[asset]
        state.collateral_in_auction = checked_sub(state.collateral_in_auction, amount)
        return self._ledger.transfer_measured(asset, self.account, receiver, amount)

    @nonreentrant
    def receive_auction_payment(
        self, ctx: ExecutionContext, asset: str, amount: int, payer: str
    ) -> int:
        """Pull the debt asset from ``payer``; returns the measured amount."""
        received = self._ledger.transfer_measured(self.debt_asset, payer, self.account, amount)
        state = self._reserve_states[asset]
        state.debt_in_auction = checked_sub(state.debt_in_auction, received)
        self._cash += received
        return received

    @nonreentrant
    def finish_auction(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        leftover_collateral: int,
        bad_debt: int,
    ) -> None:
        """Return unsold collateral to the position and write off unpaid debt."""
        key = (owner, asset)
        pos = self._positions.get(key)
        if pos is None or not pos.in_liquidation:
            raise InvariantViolation(f"Position {owner}/{asset} is not in auction")
        state = self._reserve_states[asset]
        state.collateral_in_auction = checked_sub(state.collateral_in_auction, leftover_collateral)
        state.debt_in_auction = checked_sub(state.debt_in_auction, bad_debt)
        state.total_collateral += leftover_collateral
        state.bad_debt += bad_debt
        pos.collateral_amount += leftover_collateral
        pos.in_liquidation = False
        if pos.is_empty:
            del self._positions[key]
        if bad_debt:
            logger.warning("Bad debt of %d written off for %s/%s", bad_debt, owner, asset)

    # ------------------------------------------------------------------
    # Flash loans
    # ------------------------------------------------------------------

    def _require_flash_asset(self, asset: str) -> None:
        if asset != self.debt_asset:
            raise UnknownAsset(f"Flash loans are only offered in {self.debt_asset}")

    def unaccounted_balance(self, asset: str) -> int:
        """Custody balance of the debt asset not booked as pool cash.

        Repayments of a flash loan show up here; auction payments and
        ordinary repayments are booked as cash and do not.
        """
        self._require_flash_asset(asset)
        return self._ledger.balance_of(asset, self.account) - self._cash

    @nonreentrant
    def flash_lend(self, ctx: ExecutionContext, asset: str, amount: int, receiver: str) -> None:
        self._require_flash_asset(asset)
        available = self._cash - self._protocol_reserve
        if amount <= 0 or amount > available:
            raise InsufficientPoolLiquidity(f"Pool can flash lend {available}, asked {amount}")
        self._cash -= amount
        self._flash_outstanding += amount
        self._ledger.transfer(asset, self.account, receiver, amount)
        logger.info("Flash loan of %d %s to %s", amount, asset, receiver)

    @nonreentrant
    def commit_flash_loan(self, ctx: ExecutionContext, asset: str, amount: int, fee: int) -> None:
        """Book a repaid flash loan: principal back to cash, fee to the protocol reserve."""
        self._require_flash_asset(asset)
        self._flash_outstanding = checked_sub(self._flash_outstanding, amount)
        self._cash += amount + fee
        self._protocol_reserve += fee
        logger.info("Flash loan of %d %s repaid with fee %d", amount, asset, fee)
