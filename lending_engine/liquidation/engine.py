"""Dutch-auction liquidation of unhealthy positions.

An auction takes over all collateral and debt of the position when it
starts. Takers buy collateral at the decaying auction price plus the
reserve's liquidation bonus, paying the debt asset into the pool. When the
debt is covered the leftover collateral goes back to the position; when
the collateral runs out first the remaining debt is written off as bad debt.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from ..amm.exchange import AmmExchange
from ..config import LiquidationConfig
from ..errors import (
    AuctionActive,
    AuctionExpired,
    AuctionNotStarted,
    AuctionPriceTooHigh,
    LiquidationError,
    PositionHealthy,
    UnknownAsset,
)
from ..executor import CheckpointMixin, ReentrancyGuard, nonreentrant
from ..fixed_point import BPS, WAD, checked_sub, mul_div_down, mul_div_up
from ..ledger import TokenLedger
from ..lending.pool import LendingPool
from ..models import AuctionStatus, ExecutionContext, SeizedCollateral
from ..state import LiquidationAuction
from .decay import build_decay

logger = logging.getLogger(__name__)


class LiquidationEngine(CheckpointMixin):
    _checkpoint_fields = ("_auctions",)

    def __init__(
        self,
        config: LiquidationConfig,
        pool: LendingPool,
        ledger: TokenLedger,
        amm: AmmExchange | None = None,
    ) -> None:
        self._config = config
        self._decay = build_decay(config.decay)
        self._pool = pool
        self._ledger = ledger
        self._amm = amm
        self._auctions: dict[tuple[str, str], LiquidationAuction] = {}
        self._guard = ReentrancyGuard("liquidation engine")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def auction(self, owner: str, asset: str) -> LiquidationAuction | None:
        auction = self._auctions.get((owner, asset))
        if auction is None:
            return None
        return LiquidationAuction(**vars(auction))

    def status(self, ctx: ExecutionContext, owner: str, asset: str) -> AuctionStatus:
        auction = self._auctions.get((owner, asset))
        if auction is None:
            return AuctionStatus.NOT_STARTED
        if auction.status is AuctionStatus.ACTIVE and self._is_expired(auction, ctx.timestamp):
            return AuctionStatus.EXPIRED
        return auction.status

    def price_at(self, auction: LiquidationAuction, now: int) -> int:
        """Auction price in WAD debt units per whole collateral token."""
        return self._decay.price(auction.start_price, now - auction.start_time)

    def current_price(self, ctx: ExecutionContext, owner: str, asset: str) -> int:
        auction = self._active(ctx, owner, asset)
        return self.price_at(auction, ctx.timestamp)

    def _is_expired(self, auction: LiquidationAuction, now: int) -> bool:
        if now - auction.start_time > self._config.max_duration:
            return True
        price = self.price_at(auction, now)
        return price * BPS < self._config.floor_bps * auction.start_price

    def _active(self, ctx: ExecutionContext, owner: str, asset: str) -> LiquidationAuction:
        auction = self._auctions.get((owner, asset))
        if auction is None or auction.status is not AuctionStatus.ACTIVE:
            raise AuctionNotStarted(f"No active auction for {owner}/{asset}")
        if self._is_expired(auction, ctx.timestamp):
            logger.warning(
                "Auction for %s/%s expired at %d (started %d, price %d of %d)",
                owner, asset, ctx.timestamp, auction.start_time,
                self.price_at(auction, ctx.timestamp), auction.start_price,
            )
            raise AuctionExpired(f"Auction for {owner}/{asset} needs a reset")
        return auction

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _start_price(self, ctx: ExecutionContext, asset: str) -> int:
        oracle_price = self._pool.collateral_price(ctx, asset)
        return mul_div_down(oracle_price, self._config.buffer_bps, BPS)

    @nonreentrant
    def start_auction(self, ctx: ExecutionContext, owner: str, asset: str) -> LiquidationAuction:
        """Seize an unhealthy position and open its auction. Anyone may call."""
        status = self.status(ctx, owner, asset)
        if status in (AuctionStatus.ACTIVE, AuctionStatus.EXPIRED):
            raise AuctionActive(f"Auction for {owner}/{asset} is already {status.value}")

        health = self._pool.health_factor(ctx, owner, asset)
        if health >= Decimal(1):
            logger.warning("Refusing to liquidate %s/%s at health factor %s", owner, asset, health)
            raise PositionHealthy(f"Position {owner}/{asset} has health factor {health}")

        start_price = self._start_price(ctx, asset)
        collateral, debt = self._pool.seize_for_auction(ctx, owner, asset)
        auction = LiquidationAuction(
            owner_id=owner,
            asset=asset,
            start_price=start_price,
            start_time=ctx.timestamp,
            remaining_collateral=collateral,
            remaining_debt=debt,
        )
        self._auctions[(owner, asset)] = auction
        logger.info(
            "Auction started for %s/%s by %s: %d collateral, %d debt, start price %d (HF %s)",
            owner, asset, ctx.caller_id, collateral, debt, start_price, health,
        )
        return LiquidationAuction(**vars(auction))

    @nonreentrant
    def reset_auction(self, ctx: ExecutionContext, owner: str, asset: str) -> LiquidationAuction:
        """Re-price an expired auction from the current oracle price."""
        status = self.status(ctx, owner, asset)
        if status is AuctionStatus.ACTIVE:
            raise AuctionActive(f"Auction for {owner}/{asset} has not expired")
        if status is not AuctionStatus.EXPIRED:
            raise AuctionNotStarted(f"No auction to reset for {owner}/{asset}")

        auction = self._auctions[(owner, asset)]
        auction.start_price = self._start_price(ctx, asset)
        auction.start_time = ctx.timestamp
        auction.resets += 1
        logger.info(
            "Auction for %s/%s reset (#%d) at price %d",
            owner, asset, auction.resets, auction.start_price,
        )
        return LiquidationAuction(**vars(auction))

    # ------------------------------------------------------------------
    # Takes
    # ------------------------------------------------------------------

    def _decimals(self, asset: str) -> tuple[int, int]:
        return (
            self._pool.reserve_config(asset).decimals,
            self._ledger.decimals(self._pool.debt_asset),
        )

    def collateral_for_debt(self, asset: str, debt: int, price: int) -> int:
        """Collateral bought by paying ``debt`` at ``price``, bonus included (rounded down)."""
        coll_dec, debt_dec = self._decimals(asset)
        bonus = self._pool.reserve_config(asset).liquidation_bonus_bps
        return mul_div_down(
            debt * 10**coll_dec * (BPS + bonus), WAD, price * 10**debt_dec * BPS
        )

    def debt_for_collateral(self, asset: str, collateral: int, price: int) -> int:
        """Debt owed for ``collateral`` at ``price``, bonus included (rounded up)."""
        coll_dec, debt_dec = self._decimals(asset)
        bonus = self._pool.reserve_config(asset).liquidation_bonus_bps
        return mul_div_up(
            collateral * price * 10**debt_dec, BPS, 10**coll_dec * WAD * (BPS + bonus)
        )

    @nonreentrant
    def take(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        collateral_amount: int,
        max_price: int | None = None,
        receiver: str | None = None,
        swap_pool_id: str | None = None,
        min_swap_out: int = 0,
    ) -> SeizedCollateral:
        """Buy up to ``collateral_amount`` of the auctioned collateral.

        With ``swap_pool_id`` the collateral is sold to the caller's account
        through the AMM, so ``receiver`` must be omitted.
        """
        auction, price = self._prepare_take(ctx, owner, asset, max_price)
        collateral = min(collateral_amount, auction.remaining_collateral)
        owe = self.debt_for_collateral(asset, collateral, price)
        if owe > auction.remaining_debt:
            owe = auction.remaining_debt
            collateral = min(
                self.collateral_for_debt(asset, owe, price), auction.remaining_collateral
            )
        return self._settle_take(
            ctx, auction, collateral, owe, price, receiver, swap_pool_id, min_swap_out
        )

    @nonreentrant
    def take_debt(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        debt_to_cover: int,
        max_price: int | None = None,
        receiver: str | None = None,
        swap_pool_id: str | None = None,
        min_swap_out: int = 0,
    ) -> SeizedCollateral:
        """Pay up to ``debt_to_cover`` of the auctioned debt for collateral."""
        auction, price = self._prepare_take(ctx, owner, asset, max_price)
        owe = min(debt_to_cover, auction.remaining_debt)
        collateral = self.collateral_for_debt(asset, owe, price)
        if collateral >= auction.remaining_collateral:
            collateral = auction.remaining_collateral
            owe = min(self.debt_for_collateral(asset, collateral, price), auction.remaining_debt)
        return self._settle_take(
            ctx, auction, collateral, owe, price, receiver, swap_pool_id, min_swap_out
        )

    def _prepare_take(
        self, ctx: ExecutionContext, owner: str, asset: str, max_price: int | None
    ) -> tuple[LiquidationAuction, int]:
        auction = self._active(ctx, owner, asset)
        price = self.price_at(auction, ctx.timestamp)
        if max_price is not None and price > max_price:
            raise AuctionPriceTooHigh(f"Auction price {price} above limit {max_price}")
        return auction, price

    def _settle_take(
        self,
        ctx: ExecutionContext,
        auction: LiquidationAuction,
        collateral: int,
        owe: int,
        price: int,
        receiver: str | None,
        swap_pool_id: str | None,
        min_swap_out: int,
    ) -> SeizedCollateral:
        if collateral <= 0 or owe <= 0:
            raise LiquidationError(
                f"Take of {collateral} collateral for {owe} debt is too small"
            )
        asset = auction.asset

        if swap_pool_id is None:
            repaid = self._pool.receive_auction_payment(ctx, asset, owe, ctx.caller_id)
            self._pool.release_auction_collateral(
                ctx, asset, collateral, receiver or ctx.caller_id
            )
        else:
            # Sell the collateral first and pay the debt from the proceeds.
            if receiver is not None and receiver != ctx.caller_id:
                raise LiquidationError(
                    "A swap-settled take delivers proceeds to the caller; receiver is not allowed"
                )
            if self._amm is None:
                raise UnknownAsset(f"No AMM available for pool '{swap_pool_id}'")
            pool = self._amm.pool_state(swap_pool_id)
            if {pool.asset_a, pool.asset_b} != {asset, self._pool.debt_asset}:
                raise UnknownAsset(
                    f"Pool '{swap_pool_id}' does not trade {asset} for {self._pool.debt_asset}"
                )
            delivered = self._pool.release_auction_collateral(ctx, asset, collateral, ctx.caller_id)
            self._amm.swap_exact_in(ctx, swap_pool_id, asset, delivered, min_swap_out)
            repaid = self._pool.receive_auction_payment(ctx, asset, owe, ctx.caller_id)

        auction.remaining_collateral = checked_sub(auction.remaining_collateral, collateral)
        auction.remaining_debt = checked_sub(auction.remaining_debt, repaid)
        logger.info(
            "Auction take on %s/%s by %s: %d collateral for %d debt at price %d",
            auction.owner_id, asset, ctx.caller_id, collateral, repaid, price,
        )

        bad_debt = 0
        if auction.remaining_debt == 0:
            self._finish(ctx, auction, leftover=auction.remaining_collateral, bad_debt=0)
        elif auction.remaining_collateral == 0:
            bad_debt = auction.remaining_debt
            self._finish(ctx, auction, leftover=0, bad_debt=bad_debt)

        return SeizedCollateral(
            owner_id=auction.owner_id,
            asset=asset,
            collateral_amount=collateral,
            debt_repaid=repaid,
            price=price,
            bad_debt=bad_debt,
        )

    def _finish(
        self, ctx: ExecutionContext, auction: LiquidationAuction, leftover: int, bad_debt: int
    ) -> None:
        self._pool.finish_auction(ctx, auction.owner_id, auction.asset, leftover, bad_debt)
        auction.remaining_collateral = 0
        auction.remaining_debt = 0
        auction.status = AuctionStatus.SETTLED
        logger.info(
            "Auction for %s/%s settled: %d collateral returned, %d bad debt",
            auction.owner_id, auction.asset, leftover, bad_debt,
        )
