"""Engine errors — one hierarchy, one subclass per failure mode."""
from __future__ import annotations


class EngineError(Exception):
    """Base error for every rejected engine operation."""


class InvariantViolation(EngineError):
    """A fatal accounting invariant was broken (logic bug, never retried)."""


class Unauthorized(EngineError):
    """Caller is not allowed to perform a privileged operation."""


class UnknownAsset(EngineError):
    """Asset, pool or vault id is not configured."""


class ReentrancyError(EngineError):
    """A component was re-entered while mutating its own state."""


class TransactionOrderError(EngineError):
    """A transaction was admitted with a timestamp older than its predecessor."""


class InsufficientBalance(EngineError):
    """Account holds less of an asset than it tries to move."""


# ---------------------------------------------------------------------------
# Oracle layer
# ---------------------------------------------------------------------------


class OracleError(EngineError):
    """Base error for price reads."""


class OracleNoData(OracleError):
    """No reading exists, or the round is incomplete."""


class OracleInvalidPrice(OracleError):
    """Reported price is zero or negative."""


class OracleStale(OracleError):
    """Reading is older than heartbeat + staleness buffer."""


class ExecutionHalted(OracleError):
    """Sequencer is down or still inside its recovery grace period."""


class OracleMismatch(OracleError):
    """Primary and secondary sources disagree beyond the allowed deviation."""


# ---------------------------------------------------------------------------
# Lending layer
# ---------------------------------------------------------------------------


class LendingError(EngineError):
    """Base error for lending pool operations."""


class InsufficientCollateral(LendingError):
    """Not enough collateral for the requested withdrawal or borrow."""


class HealthFactorTooLow(LendingError):
    """Post-state would leave collateral_value × threshold < debt_value."""


class DebtCeilingExceeded(LendingError):
    """Total debt of the reserve would exceed its ceiling."""


class MinimumDebtViolation(LendingError):
    """Remaining debt would be non-zero but below the dust floor."""


class PositionHealthy(LendingError):
    """Liquidation requested on a position with health factor ≥ 1."""


class InsufficientPoolLiquidity(LendingError):
    """The pool does not hold enough of the debt asset."""


class PositionInLiquidation(LendingError):
    """Position is frozen while its collateral is being auctioned."""


# ---------------------------------------------------------------------------
# AMM layer
# ---------------------------------------------------------------------------


class AmmError(EngineError):
    """Base error for swaps and liquidity operations."""


class SlippageExceeded(AmmError):
    """Output below the caller's minimum (or input above the maximum)."""


class InsufficientLiquidity(AmmError):
    """Pool reserves cannot serve the request."""


class InsufficientInputAmount(AmmError):
    """Measured input received by the pool is below what the swap needs."""


# ---------------------------------------------------------------------------
# Liquidation layer
# ---------------------------------------------------------------------------


class LiquidationError(EngineError):
    """Base error for auctions."""


class AuctionNotStarted(LiquidationError):
    """No active auction exists for the position."""


class AuctionExpired(LiquidationError):
    """Auction ran past max duration or fell below its price floor."""


class AuctionActive(LiquidationError):
    """An auction is already running and cannot be restarted or reset."""


class AuctionPriceTooHigh(LiquidationError):
    """Current auction price is above the taker's limit."""


# ---------------------------------------------------------------------------
# Flash-loan layer
# ---------------------------------------------------------------------------


class FlashLoanError(EngineError):
    """Base error for flash loans."""


class RepaymentInsufficient(FlashLoanError):
    """Strategy did not return principal plus fee."""


class UnknownStrategy(FlashLoanError):
    """No strategy is registered under the requested id."""


# ---------------------------------------------------------------------------
# Vault layer
# ---------------------------------------------------------------------------


class VaultError(EngineError):
    """Base error for vault operations."""


class InsufficientShares(VaultError):
    """Owner holds fewer shares than the operation burns."""


class InflationGuardTriggered(VaultError):
    """Unaccounted custody balance suggests a donation attack."""
