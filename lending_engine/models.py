"""Value objects passed between components — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class ExecutionContext:
    """Caller and timestamp of the transaction currently executing.

    Every operation receives one explicitly; nothing reads wall-clock time.
    """

    caller_id: str
    timestamp: int


@dataclass(frozen=True)
class PriceReading:
    """A validated price: ``price / 10^decimals`` quote units per whole token."""

    asset: str
    price: int
    updated_at: int
    decimals: int
    source: str = "primary"


@dataclass(frozen=True)
class PriceObservation:
    """A raw price observation from an external feed, before validation."""

    asset: str
    price: int
    decimals: int
    published_at: int


@dataclass(frozen=True)
class SeizedCollateral:
    """Result of a liquidation take."""

    owner_id: str
    asset: str
    collateral_amount: int
    debt_repaid: int
    price: int
    bad_debt: int = 0


@dataclass(frozen=True)
class FlashLoan:
    """Terms handed to a flash-loan strategy callback."""

    asset: str
    amount: int
    fee: int
    initiator: str
    receiver: str
    repay_to: str


@dataclass(frozen=True)
class PositionView:
    """Read-only snapshot of a position with its accrued debt."""

    owner_id: str
    asset: str
    collateral_amount: int
    normalized_debt: int
    debt: int
    in_liquidation: bool = False


class AuctionStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    SETTLED = "settled"
    EXPIRED = "expired"
