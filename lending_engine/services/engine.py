"""Engine facade — wires every component and runs each operation as a transaction."""
from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..amm.exchange import AmmExchange
from ..config import AppConfig, ReserveConfig, load_config
from ..errors import EngineError, Unauthorized
from ..executor import Executor
from ..flash.coordinator import FlashLoanCoordinator
from ..flash.strategies import FlashLiquidationStrategy
from ..interfaces.price_source import PriceSource
from ..interfaces.strategy import FlashLoanStrategy
from ..ledger import TokenLedger
from ..logging_setup import configure_logging
from ..lending.pool import LendingPool
from ..liquidation.engine import LiquidationEngine
from ..models import (
    AuctionStatus,
    ExecutionContext,
    FlashLoan,
    PositionView,
    PriceReading,
    SeizedCollateral,
)
from ..oracles.price_oracle import PriceOracle
from ..oracles.pyth import PythPriceSource
from ..oracles.sequencer import SequencerUptimeFeed
from ..oracles.twap import AmmTwapSource
from ..state import LiquidationAuction
from ..vaults.accounting import VaultAccounting

logger = logging.getLogger(__name__)

FLASH_LIQUIDATION = "liquidation"


class Engine:
    """Builds the component graph from an ``AppConfig``.

    Mutating calls are admitted one at a time through the executor and are
    all-or-nothing across every component. Reads go straight to the
    component and never change state.

    Secondary price sources may be injected per asset; they replace the AMM
    TWAP configured for that asset.
    """

    def __init__(
        self,
        config: AppConfig,
        price_sources: dict[str, PriceSource] | None = None,
    ) -> None:
        self._config = config
        self._admins = frozenset(config.admins)

        self.ledger = TokenLedger(config.assets)
        self.amm = AmmExchange(config.pools, self.ledger)

        self.sequencer: SequencerUptimeFeed | None = None
        if config.oracle.sequencer.enabled:
            self.sequencer = SequencerUptimeFeed(
                config.admins, config.oracle.sequencer.grace_period
            )

        twap_sources = {
            asset: feed.secondary
            for asset, feed in config.oracle.feeds.items()
            if feed.secondary is not None
        }
        self.twap = AmmTwapSource(self.amm, twap_sources)
        secondary: dict[str, PriceSource] = {asset: self.twap for asset in twap_sources}
        secondary.update(price_sources or {})
        self.oracle = PriceOracle(
            config.oracle.feeds,
            config.admins,
            sequencer=self.sequencer,
            secondary_sources=secondary,
        )
        self.pyth = PythPriceSource(config.oracle.pyth)

        self.vaults = VaultAccounting(config.vaults, self.ledger, config.admins)
        self.pool = LendingPool(
            config.lending,
            config.reserves,
            self.ledger,
            self.oracle,
            config.admins,
            vaults=self.vaults,
        )
        self.liquidation = LiquidationEngine(
            config.liquidation, self.pool, self.ledger, amm=self.amm
        )
        self.pool.attach_liquidation_engine(self.liquidation)

        self.executor = Executor()
        self.executor.register("ledger", self.ledger)
        self.executor.register("oracle", self.oracle)
        if self.sequencer is not None:
            self.executor.register("sequencer", self.sequencer)
        self.executor.register("amm", self.amm)
        self.executor.register("twap", self.twap)
        self.executor.register("vaults", self.vaults)
        self.executor.register("lending_pool", self.pool)
        self.executor.register("liquidation", self.liquidation)

        self.flash = FlashLoanCoordinator(
            self.pool, self.executor, config.lending.flash_fee_bps
        )
        self.flash.register_strategy(
            FLASH_LIQUIDATION, FlashLiquidationStrategy(self.pool, self.amm, self.ledger)
        )
        logger.info(
            "Engine ready: %d assets, %d reserves, %d pools, %d vaults",
            len(config.assets), len(config.reserves), len(config.pools), len(config.vaults),
        )

    @classmethod
    def from_config_file(
        cls, config_path: str | Path | None = None, log_level: str | None = None
    ) -> "Engine":
        """Build an engine from YAML, configuring root logging first when
        ``log_level`` is given."""
        if log_level is not None:
            configure_logging(log_level)
        return cls(load_config(config_path))

    @property
    def config(self) -> AppConfig:
        return self._config

    def _run(self, ctx: ExecutionContext, fn: Any, *args: Any, **kwargs: Any) -> Any:
        return self.executor.run(ctx, fn, *args, **kwargs)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def fund(self, ctx: ExecutionContext, asset: str, account: str, amount: int) -> None:
        """Mint ``amount`` of ``asset`` to ``account`` (admin only)."""
        with self.executor.transaction(ctx):
            if ctx.caller_id not in self._admins:
                raise Unauthorized(f"{ctx.caller_id} may not mint {asset}")
            self.ledger.mint(asset, account, amount)
            logger.info("Minted %d %s to %s", amount, asset, account)

    def report_price(
        self,
        ctx: ExecutionContext,
        asset: str,
        price: int,
        updated_at: int | None = None,
        decimals: int | None = None,
        answered_in_round: int | None = None,
    ) -> bool:
        return self._run(
            ctx,
            self.oracle.report_price,
            asset,
            price,
            updated_at=updated_at,
            decimals=decimals,
            answered_in_round=answered_in_round,
        )

    def set_sequencer_status(self, ctx: ExecutionContext, is_up: bool) -> None:
        if self.sequencer is None:
            raise EngineError("No sequencer feed is configured")
        self._run(ctx, self.sequencer.set_status, is_up)

    def record_twap(self, ctx: ExecutionContext, asset: str) -> None:
        self._run(ctx, self.twap.record, asset)

    def configure_reserve(self, ctx: ExecutionContext, asset: str, cfg: ReserveConfig) -> None:
        self._run(ctx, self.pool.configure_reserve, asset, cfg)

    async def refresh_prices(self, ctx: ExecutionContext, symbols: list[str] | None = None) -> int:
        """Fetch Pyth observations and report them in one transaction.

        Observations for unknown feeds or dated after ``ctx.timestamp`` are
        skipped. Returns the number of prices recorded.
        """
        observations = await self.pyth.fetch_observations(symbols)
        recorded = 0
        with self.executor.transaction(ctx):
            for obs in observations:
                if not self.oracle.has_feed(obs.asset):
                    logger.debug("No oracle feed for Pyth asset %s", obs.asset)
                    continue
                if obs.published_at > ctx.timestamp:
                    logger.warning(
                        "Skipping %s observation published at %d, after %d",
                        obs.asset, obs.published_at, ctx.timestamp,
                    )
                    continue
                if self.oracle.report_price(
                    ctx, obs.asset, obs.price, updated_at=obs.published_at, decimals=obs.decimals
                ):
                    recorded += 1
        logger.info("Recorded %d of %d Pyth observations", recorded, len(observations))
        return recorded

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def get_price(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        return self.oracle.get_price(ctx, asset)

    def get_price_with_fallback(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        return self.oracle.get_price_with_fallback(ctx, asset)

    # ------------------------------------------------------------------
    # Lending
    # ------------------------------------------------------------------

    def modify_position(
        self,
        ctx: ExecutionContext,
        owner: str,
        asset: str,
        collateral_delta: int,
        debt_delta: int,
    ) -> PositionView:
        return self._run(ctx, self.pool.modify_position, owner, asset, collateral_delta, debt_delta)

    def supply(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self._run(ctx, self.pool.supply, owner, asset, amount)

    def withdraw(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self._run(ctx, self.pool.withdraw, owner, asset, amount)

    def borrow(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self._run(ctx, self.pool.borrow, owner, asset, amount)

    def repay(self, ctx: ExecutionContext, owner: str, asset: str, amount: int) -> PositionView:
        return self._run(ctx, self.pool.repay, owner, asset, amount)

    def accrue_interest(self, ctx: ExecutionContext, asset: str) -> int:
        return self._run(ctx, self.pool.accrue_interest, asset)

    def deposit_liquidity(self, ctx: ExecutionContext, amount: int) -> int:
        return self._run(ctx, self.pool.deposit_liquidity, amount)

    def withdraw_liquidity(self, ctx: ExecutionContext, shares: int) -> int:
        return self._run(ctx, self.pool.withdraw_liquidity, shares)

    def position(self, ctx: ExecutionContext, owner: str, asset: str) -> PositionView:
        return self.pool.position(ctx, owner, asset)

    def health_factor(self, ctx: ExecutionContext, owner: str, asset: str) -> Decimal:
        return self.pool.health_factor(ctx, owner, asset)

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
        return self._run(
            ctx,
            self.pool.liquidate,
            owner,
            asset,
            debt_to_cover,
            swap_pool_id=swap_pool_id,
            min_swap_out=min_swap_out,
            max_price=max_price,
        )

    def start_auction(self, ctx: ExecutionContext, owner: str, asset: str) -> LiquidationAuction:
        return self._run(ctx, self.liquidation.start_auction, owner, asset)

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
        return self._run(
            ctx,
            self.liquidation.take,
            owner,
            asset,
            collateral_amount,
            max_price=max_price,
            receiver=receiver,
            swap_pool_id=swap_pool_id,
            min_swap_out=min_swap_out,
        )

    def reset_auction(self, ctx: ExecutionContext, owner: str, asset: str) -> LiquidationAuction:
        return self._run(ctx, self.liquidation.reset_auction, owner, asset)

    def auction_status(self, ctx: ExecutionContext, owner: str, asset: str) -> AuctionStatus:
        return self.liquidation.status(ctx, owner, asset)

    def auction_price(self, ctx: ExecutionContext, owner: str, asset: str) -> int:
        return self.liquidation.current_price(ctx, owner, asset)

    # ------------------------------------------------------------------
    # AMM
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
        return self._run(
            ctx, self.amm.swap_exact_in, pool_id, asset_in, amount_in, min_amount_out,
            recipient=recipient,
        )

    def swap_exact_out(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        asset_in: str,
        amount_out: int,
        max_amount_in: int,
        recipient: str | None = None,
    ) -> int:
        return self._run(
            ctx, self.amm.swap_exact_out, pool_id, asset_in, amount_out, max_amount_in,
            recipient=recipient,
        )

    def add_liquidity(
        self, ctx: ExecutionContext, pool_id: str, amount_a: int, amount_b: int, min_shares: int = 0
    ) -> int:
        return self._run(ctx, self.amm.add_liquidity, pool_id, amount_a, amount_b, min_shares)

    def remove_liquidity(
        self,
        ctx: ExecutionContext,
        pool_id: str,
        shares: int,
        min_amount_a: int = 0,
        min_amount_b: int = 0,
    ) -> tuple[int, int]:
        return self._run(
            ctx, self.amm.remove_liquidity, pool_id, shares, min_amount_a, min_amount_b
        )

    # ------------------------------------------------------------------
    # Vaults
    # ------------------------------------------------------------------

    def vault_deposit(
        self, ctx: ExecutionContext, vault_id: str, assets: int, receiver: str | None = None
    ) -> int:
        return self._run(ctx, self.vaults.deposit, vault_id, assets, receiver)

    def vault_mint(
        self, ctx: ExecutionContext, vault_id: str, shares: int, receiver: str | None = None
    ) -> int:
        return self._run(ctx, self.vaults.mint, vault_id, shares, receiver)

    def vault_withdraw(
        self, ctx: ExecutionContext, vault_id: str, assets: int, receiver: str | None = None
    ) -> int:
        return self._run(ctx, self.vaults.withdraw, vault_id, assets, receiver)

    def vault_redeem(
        self, ctx: ExecutionContext, vault_id: str, shares: int, receiver: str | None = None
    ) -> int:
        return self._run(ctx, self.vaults.redeem, vault_id, shares, receiver)

    def report_yield(self, ctx: ExecutionContext, vault_id: str, amount: int) -> int:
        return self._run(ctx, self.vaults.report_yield, vault_id, amount)

    def report_loss(self, ctx: ExecutionContext, vault_id: str, amount: int) -> int:
        return self._run(ctx, self.vaults.report_loss, vault_id, amount)

    def convert_to_shares(self, vault_id: str, assets: int) -> int:
        return self.vaults.convert_to_shares(vault_id, assets)

    def convert_to_assets(self, vault_id: str, shares: int) -> int:
        return self.vaults.convert_to_assets(vault_id, shares)

    # ------------------------------------------------------------------
    # Flash loans
    # ------------------------------------------------------------------

    def register_strategy(self, strategy_id: str, strategy: FlashLoanStrategy) -> None:
        self.flash.register_strategy(strategy_id, strategy)

    def flash_loan(
        self,
        ctx: ExecutionContext,
        asset: str,
        amount: int,
        strategy_id: str,
        params: dict[str, Any] | None = None,
    ) -> FlashLoan:
        return self._run(ctx, self.flash.execute, asset, amount, strategy_id, params)
