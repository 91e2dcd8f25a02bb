"""Flash-loan coordinator — borrow, run a strategy, verify repayment, or roll back."""
from __future__ import annotations

import logging
from typing import Any

from ..errors import RepaymentInsufficient, UnknownStrategy
from ..executor import Executor
from ..fixed_point import BPS, mul_div_up
from ..interfaces.strategy import FlashLoanStrategy
from ..lending.pool import LendingPool
from ..models import ExecutionContext, FlashLoan

logger = logging.getLogger(__name__)


class FlashLoanCoordinator:
    """Lends the pool's debt asset for the length of one strategy callback.

    Every registered component is checkpointed before the loan goes out.
    If the strategy raises, or the pool's unbooked balance has not grown by
    principal plus fee when it returns, the whole checkpoint is restored.
    """

    def __init__(self, pool: LendingPool, executor: Executor, fee_bps: int) -> None:
        self._pool = pool
        self._executor = executor
        self.fee_bps = fee_bps
        self._strategies: dict[str, FlashLoanStrategy] = {}

    def register_strategy(self, strategy_id: str, strategy: FlashLoanStrategy) -> None:
        self._strategies[strategy_id] = strategy
        logger.info("Flash-loan strategy registered: %s", strategy_id)

    def strategy(self, strategy_id: str) -> FlashLoanStrategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise UnknownStrategy(f"No flash-loan strategy '{strategy_id}'") from None

    def flash_fee(self, amount: int) -> int:
        return mul_div_up(amount, self.fee_bps, BPS)

    def execute(
        self,
        ctx: ExecutionContext,
        asset: str,
        amount: int,
        strategy_id: str,
        params: dict[str, Any] | None = None,
    ) -> FlashLoan:
        strategy = self.strategy(strategy_id)
        checkpoint = self._executor.checkpoint()

        fee = self.flash_fee(amount)
        loan = FlashLoan(
            asset=asset,
            amount=amount,
            fee=fee,
            initiator=ctx.caller_id,
            receiver=ctx.caller_id,
            repay_to=self._pool.account,
        )
        try:
            before = self._pool.unaccounted_balance(asset)
            self._pool.flash_lend(ctx, asset, amount, loan.receiver)
            strategy.on_flash_loan(ctx, loan, dict(params or {}))

            after = self._pool.unaccounted_balance(asset)
            if after < before + amount + fee:
                raise RepaymentInsufficient(
                    f"Flash loan of {amount} {asset} needs {amount + fee} back, "
                    f"received {after - before}"
                )
        except BaseException as e:
            self._executor.restore(checkpoint)
            logger.warning(
                "Flash loan of %d %s by %s via %s reverted: %s",
                amount, asset, ctx.caller_id, strategy_id, e,
            )
            raise

        self._pool.commit_flash_loan(ctx, asset, amount, fee)
        logger.info(
            "Flash loan of %d %s by %s via %s repaid, fee %d",
            amount, asset, ctx.caller_id, strategy_id, fee,
        )
        return loan
