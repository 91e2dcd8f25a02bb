"""Share/asset accounting for yield-bearing vaults.

total_assets is an internal ledger moved only by deposit, withdrawal and
explicit yield/loss reports. The custody balance is never read as total
assets, so an unsolicited transfer into the vault changes no share price.

Conversions use a virtual-share offset V:

    shares = assets × (total_shares + V) / (total_assets + 1)
    assets = shares × (total_assets + 1) / (total_shares + V)

Every operation rounds against the caller and in favour of the vault.
"""
from __future__ import annotations

import logging

from ..config import VaultConfig
from ..errors import (
    InflationGuardTriggered,
    InsufficientShares,
    Unauthorized,
    UnknownAsset,
    VaultError,
)
from ..executor import CheckpointMixin, ReentrancyGuard, nonreentrant
from ..fixed_point import BPS, WAD, mul_div_down, mul_div_up
from ..ledger import TokenLedger
from ..models import ExecutionContext
from ..state import VaultLedger

logger = logging.getLogger(__name__)


def vault_account(vault_id: str) -> str:
    return f"vault:{vault_id}"


class VaultAccounting(CheckpointMixin):
    _checkpoint_fields = ("_ledgers",)

    def __init__(
        self,
        vaults: dict[str, VaultConfig],
        ledger: TokenLedger,
        admins: tuple[str, ...],
    ) -> None:
        self._configs = dict(vaults)
        self._ledger = ledger
        self._admins = frozenset(admins)
        self._ledgers: dict[str, VaultLedger] = {
            vault_id: VaultLedger(
                vault_id=vault_id, underlying=cfg.underlying, share_asset=cfg.share_asset
            )
            for vault_id, cfg in vaults.items()
        }
        self._guard = ReentrancyGuard("vaults")

    def _vault(self, vault_id: str) -> VaultLedger:
        try:
            return self._ledgers[vault_id]
        except KeyError:
            raise UnknownAsset(f"Unknown vault '{vault_id}'") from None

    def ledger(self, vault_id: str) -> VaultLedger:
        return VaultLedger(**vars(self._vault(vault_id)))

    def total_assets(self, vault_id: str) -> int:
        return self._vault(vault_id).total_assets

    def total_shares(self, vault_id: str) -> int:
        return self._vault(vault_id).total_shares

    def shares_of(self, vault_id: str, account: str) -> int:
        return self._ledger.balance_of(self._vault(vault_id).share_asset, account)

    def underlying(self, vault_id: str) -> str:
        return self._vault(vault_id).underlying

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def _offset(self, vault_id: str) -> int:
        return self._configs[vault_id].virtual_shares

    def convert_to_shares(self, vault_id: str, assets: int) -> int:
        v = self._vault(vault_id)
        return mul_div_down(assets, v.total_shares + self._offset(vault_id), v.total_assets + 1)

    def convert_to_assets(self, vault_id: str, shares: int) -> int:
        v = self._vault(vault_id)
        return mul_div_down(shares, v.total_assets + 1, v.total_shares + self._offset(vault_id))

    def preview_deposit(self, vault_id: str, assets: int) -> int:
        return self.convert_to_shares(vault_id, assets)

    def preview_mint(self, vault_id: str, shares: int) -> int:
        v = self._vault(vault_id)
        return mul_div_up(shares, v.total_assets + 1, v.total_shares + self._offset(vault_id))

    def preview_withdraw(self, vault_id: str, assets: int) -> int:
        v = self._vault(vault_id)
        return mul_div_up(assets, v.total_shares + self._offset(vault_id), v.total_assets + 1)

    def preview_redeem(self, vault_id: str, shares: int) -> int:
        return self.convert_to_assets(vault_id, shares)

    def max_redeem(self, vault_id: str, owner: str) -> int:
        return self.shares_of(vault_id, owner)

    def max_withdraw(self, vault_id: str, owner: str) -> int:
        return self.convert_to_assets(vault_id, self.shares_of(vault_id, owner))

    def share_rate(self, vault_id: str) -> int:
        """Underlying units per share unit, WAD-scaled, rounded down."""
        v = self._vault(vault_id)
        return mul_div_down(WAD, v.total_assets + 1, v.total_shares + self._offset(vault_id))

    def conservative_share_rate(self, vault_id: str) -> int:
        """Lower of the spot rate and the rate checkpointed at least ``rate_delay`` ago.

        Used to value shares pledged as collateral: a same-transaction jump in
        the rate cannot raise a borrower's collateral value.
        """
        v = self._vault(vault_id)
        spot = self.share_rate(vault_id)
        if v.checkpoint_rate == 0:
            return spot
        return min(spot, v.checkpoint_rate)

    # ------------------------------------------------------------------
    # Deposits and withdrawals
    # ------------------------------------------------------------------

    @nonreentrant
    def deposit(
        self, ctx: ExecutionContext, vault_id: str, assets: int, receiver: str | None = None
    ) -> int:
        """Deposit underlying; returns shares minted (rounded down)."""
        v = self._vault(vault_id)
        receiver = receiver or ctx.caller_id
        self._checkpoint_rate(v, ctx.timestamp)
        self._check_donation(v)

        received = self._ledger.transfer_measured(
            v.underlying, ctx.caller_id, vault_account(vault_id), assets
        )
        shares = self.convert_to_shares(vault_id, received)
        if shares == 0:
            raise VaultError(f"Deposit of {received} would mint zero shares")

        v.total_assets += received
        v.total_shares += shares
        self._ledger.mint(v.share_asset, receiver, shares)
        logger.info("Vault %s deposit: %d assets -> %d shares for %s", vault_id, received, shares, receiver)
        return shares

    @nonreentrant
    def mint(
        self, ctx: ExecutionContext, vault_id: str, shares: int, receiver: str | None = None
    ) -> int:
        """Mint exactly ``shares``; returns assets pulled (rounded up)."""
        v = self._vault(vault_id)
        receiver = receiver or ctx.caller_id
        self._checkpoint_rate(v, ctx.timestamp)
        self._check_donation(v)

        assets = self.preview_mint(vault_id, shares)
        received = self._ledger.transfer_measured(
            v.underlying, ctx.caller_id, vault_account(vault_id), assets
        )
        if received < assets:
            raise VaultError(f"Vault received {received} of {assets} required assets")

        v.total_assets += received
        v.total_shares += shares
        self._ledger.mint(v.share_asset, receiver, shares)
        logger.info("Vault %s mint: %d shares for %d assets to %s", vault_id, shares, received, receiver)
        return assets

    @nonreentrant
    def withdraw(
        self,
        ctx: ExecutionContext,
        vault_id: str,
        assets: int,
        receiver: str | None = None,
        owner: str | None = None,
    ) -> int:
        """Withdraw exactly ``assets``; returns shares burned (rounded up)."""
        v = self._vault(vault_id)
        receiver = receiver or ctx.caller_id
        owner = self._check_owner(ctx, owner)
        self._checkpoint_rate(v, ctx.timestamp)

        available = self.max_withdraw(vault_id, owner)
        if assets > available:
            raise InsufficientShares(f"{owner} can withdraw {available}, asked {assets}")
        shares = self.preview_withdraw(vault_id, assets)

        self._burn_and_pay(v, owner, receiver, shares, assets)
        return shares

    @nonreentrant
    def redeem(
        self,
        ctx: ExecutionContext,
        vault_id: str,
        shares: int,
        receiver: str | None = None,
        owner: str | None = None,
    ) -> int:
        """Burn ``shares``; returns assets paid (rounded down).

        Losses lower the payout but never make a redemption fail.
        """
        v = self._vault(vault_id)
        receiver = receiver or ctx.caller_id
        owner = self._check_owner(ctx, owner)
        self._checkpoint_rate(v, ctx.timestamp)

        held = self.max_redeem(vault_id, owner)
        if shares > held:
            raise InsufficientShares(f"{owner} holds {held} shares, redeeming {shares}")

        assets = self.convert_to_assets(vault_id, shares)
        self._burn_and_pay(v, owner, receiver, shares, assets)
        return assets

    def _burn_and_pay(
        self, v: VaultLedger, owner: str, receiver: str, shares: int, assets: int
    ) -> None:
        assets = min(assets, v.total_assets)
        self._ledger.burn(v.share_asset, owner, shares)
        v.total_shares -= shares
        v.total_assets -= assets
        self._ledger.transfer(v.underlying, vault_account(v.vault_id), receiver, assets)
        logger.info(
            "Vault %s exit: %d shares of %s -> %d assets to %s",
            v.vault_id, shares, owner, assets, receiver,
        )

    # ------------------------------------------------------------------
    # Strategy reports
    # ------------------------------------------------------------------

    @nonreentrant
    def report_yield(self, ctx: ExecutionContext, vault_id: str, amount: int) -> int:
        """Pull realised gains from the reporter; returns the measured gain."""
        v = self._vault(vault_id)
        self._check_reporter(ctx, vault_id)
        self._checkpoint_rate(v, ctx.timestamp)
        received = self._ledger.transfer_measured(
            v.underlying, ctx.caller_id, vault_account(vault_id), amount
        )
        v.total_assets += received
        logger.info("Vault %s reported yield of %d", vault_id, received)
        return received

    @nonreentrant
    def report_loss(self, ctx: ExecutionContext, vault_id: str, amount: int) -> int:
        """Write down total assets without burning shares; returns the loss booked."""
        v = self._vault(vault_id)
        self._check_reporter(ctx, vault_id)
        self._checkpoint_rate(v, ctx.timestamp)
        loss = min(amount, v.total_assets)
        v.total_assets -= loss
        self._ledger.burn(v.underlying, vault_account(vault_id), loss)
        logger.warning("Vault %s reported loss of %d", vault_id, loss)
        return loss

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint_rate(self, v: VaultLedger, now: int) -> None:
        delay = self._configs[v.vault_id].rate_delay
        if v.checkpoint_rate == 0 or now - v.checkpoint_time >= delay:
            v.checkpoint_rate = self.share_rate(v.vault_id)
            v.checkpoint_time = now

    def _check_donation(self, v: VaultLedger) -> None:
        guard_bps = self._configs[v.vault_id].donation_guard_bps
        if not guard_bps:
            return
        custody = self._ledger.balance_of(v.underlying, vault_account(v.vault_id))
        unaccounted = custody - v.total_assets
        if unaccounted > 0 and unaccounted * BPS > guard_bps * v.total_assets:
            raise InflationGuardTriggered(
                f"Vault {v.vault_id} holds {unaccounted} unaccounted assets "
                f"against {v.total_assets} tracked"
            )

    @staticmethod
    def _check_owner(ctx: ExecutionContext, owner: str | None) -> str:
        owner = owner or ctx.caller_id
        if owner != ctx.caller_id:
            raise Unauthorized(f"{ctx.caller_id} cannot spend shares of {owner}")
        return owner

    def _check_reporter(self, ctx: ExecutionContext, vault_id: str) -> None:
        strategist = self._configs[vault_id].strategist
        if ctx.caller_id not in self._admins and ctx.caller_id != strategist:
            raise Unauthorized(f"{ctx.caller_id} may not report for vault {vault_id}")
