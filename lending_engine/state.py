"""Mutable state records owned by exactly one component each."""
from __future__ import annotations

from dataclasses import dataclass

from .fixed_point import RAY
from .models import AuctionStatus


@dataclass
class Position:
    """One borrower's exposure in one collateral type."""

    owner_id: str
    asset: str
    collateral_amount: int = 0
    normalized_debt: int = 0
    in_liquidation: bool = False

    @property
    def is_empty(self) -> bool:
        return self.collateral_amount == 0 and self.normalized_debt == 0


@dataclass
class InterestIndex:
    """Per-reserve accrual accumulator; actual debt = normalized × index / RAY."""

    value: int = RAY
    last_update: int = 0


@dataclass
class ReserveState:
    """Running totals for one collateral reserve."""

    total_normalized_debt: int = 0
    total_collateral: int = 0
    collateral_in_auction: int = 0
    debt_in_auction: int = 0
    bad_debt: int = 0


@dataclass
class OracleFeed:
    """Latest observation for an asset."""

    asset: str
    price: int = 0
    updated_at: int = 0
    decimals: int = 8
    round_id: int = 0
    answered_in_round: int = 0


@dataclass
class PoolState:
    """Two-asset constant-product market."""

    pool_id: str
    asset_a: str
    asset_b: str
    reserve_a: int = 0
    reserve_b: int = 0
    total_shares: int = 0
    price_a_cumulative: int = 0
    price_b_cumulative: int = 0
    last_update: int = 0

    @property
    def k(self) -> int:
        return self.reserve_a * self.reserve_b


@dataclass
class LiquidationAuction:
    """Dutch sale of the seized collateral of one position."""

    owner_id: str
    asset: str
    start_price: int
    start_time: int
    remaining_collateral: int
    remaining_debt: int
    status: AuctionStatus = AuctionStatus.ACTIVE
    resets: int = 0


@dataclass
class VaultLedger:
    """Shares/assets accounting for one yield-bearing vault."""

    vault_id: str
    underlying: str
    share_asset: str
    total_assets: int = 0
    total_shares: int = 0
    checkpoint_rate: int = 0
    checkpoint_time: int = 0
