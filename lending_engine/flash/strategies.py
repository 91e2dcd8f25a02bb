"""Built-in flash-loan strategies."""
from __future__ import annotations

import logging
from typing import Any

from ..amm.exchange import AmmExchange
from ..ledger import TokenLedger
from ..lending.pool import LendingPool
from ..models import ExecutionContext, FlashLoan

logger = logging.getLogger(__name__)


class FlashLiquidationStrategy:
    """Zero-capital liquidation: pay the auction with the loan, sell the
    collateral on an AMM, repay principal plus fee and keep the rest.

    Params:
        owner, asset: position to liquidate.
        swap_pool_id: AMM pool trading the collateral for the debt asset.
        min_swap_out: minimum debt asset from the collateral sale.
        debt_to_cover: optional; defaults to the loan amount.
    """

    def __init__(self, pool: LendingPool, amm: AmmExchange, ledger: TokenLedger) -> None:
        self._pool = pool
        self._amm = amm
        self._ledger = ledger

    def on_flash_loan(
        self, ctx: ExecutionContext, loan: FlashLoan, params: dict[str, Any]
    ) -> None:
        owner = params["owner"]
        asset = params["asset"]
        debt_to_cover = int(params.get("debt_to_cover", loan.amount))

        held_before = self._ledger.balance_of(asset, ctx.caller_id)
        seized = self._pool.liquidate(ctx, owner, asset, debt_to_cover)
        received = self._ledger.balance_of(asset, ctx.caller_id) - held_before

        proceeds = self._amm.swap_exact_in(
            ctx, params["swap_pool_id"], asset, received, int(params.get("min_swap_out", 0))
        )
        self._ledger.transfer(loan.asset, ctx.caller_id, loan.repay_to, loan.amount + loan.fee)
        logger.info(
            "Flash liquidation of %s/%s: repaid %d debt, sold %d %s for %d",
            owner, asset, seized.debt_repaid, received, asset, proceeds,
        )
