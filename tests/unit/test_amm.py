"""Unit tests for the constant-product AMM."""
from __future__ import annotations

import math

import pytest

from lending_engine.amm import AmmExchange, pool_account
from lending_engine.amm import curve
from lending_engine.amm.exchange import LOCKED_LIQUIDITY_HOLDER
from lending_engine.config import AssetConfig, PoolConfig
from lending_engine.errors import (
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientShares,
    ReentrancyError,
    SlippageExceeded,
    UnknownAsset,
)
from lending_engine.ledger import TokenLedger
from lending_engine.models import ExecutionContext

T0 = 1_700_000_000
WETH = 10**18
USDC = 10**6


def _seed(ledger: TokenLedger, weth: int, usdc: int) -> AmmExchange:
    amm = AmmExchange({"WETH-USDC": PoolConfig("WETH", "USDC", 30)}, ledger)
    ledger.mint("WETH", "lp", weth)
    ledger.mint("USDC", "lp", usdc)
    amm.add_liquidity(ExecutionContext("lp", T0), "WETH-USDC", weth, usdc)
    return amm


@pytest.fixture()
def amm(ledger: TokenLedger) -> AmmExchange:
    return _seed(ledger, 500 * WETH, 1_350_000 * USDC)


class TestCurve:
    def test_reference_swap_quote(self) -> None:
        out = curve.get_amount_out(1_944 * WETH // 1000, 500 * WETH, 1_350_000 * USDC, 30)
        expected = (
            1_350_000 * USDC * (1_944 * WETH // 1000) * 9970
            // (500 * WETH * 10_000 + (1_944 * WETH // 1000) * 9970)
        )
        assert out == expected
        assert abs(out - 5228 * USDC) < 5228 * USDC * 5 // 1000

    def test_fee_free_quote_matches_constant_product(self) -> None:
        out = curve.get_amount_out(1_944 * WETH // 1000, 500 * WETH, 1_350_000 * USDC, 0)
        assert out // USDC == 5228

    def test_amount_in_round_trip_favours_pool(self) -> None:
        amount_in = curve.get_amount_in(5_000 * USDC, 500 * WETH, 1_350_000 * USDC, 30)
        assert curve.get_amount_out(amount_in, 500 * WETH, 1_350_000 * USDC, 30) >= 5_000 * USDC

    def test_amount_in_cannot_drain(self) -> None:
        with pytest.raises(InsufficientLiquidity):
            curve.get_amount_in(100, 1_000, 100, 30)

    def test_initial_shares_lock_minimum(self) -> None:
        assert curve.initial_shares(4 * 10**6, 10**6) == 2 * 10**6 - curve.MINIMUM_LIQUIDITY


class TestSwaps:
    def test_swap_exact_in_keeps_k(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("WETH", "trader", 1_944 * WETH // 1000)
        k_before = amm.pool_state("WETH-USDC").k
        quoted = amm.get_amount_out("WETH-USDC", "WETH", 1_944 * WETH // 1000)

        out = amm.swap_exact_in(
            ExecutionContext("trader", T0 + 1), "WETH-USDC", "WETH", 1_944 * WETH // 1000, 5_200 * USDC
        )

        assert out == quoted
        assert ledger.balance_of("USDC", "trader") == out
        assert amm.pool_state("WETH-USDC").k >= k_before

    def test_slippage(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("WETH", "trader", WETH)
        with pytest.raises(SlippageExceeded):
            amm.swap_exact_in(ExecutionContext("trader", T0), "WETH-USDC", "WETH", WETH, 2_700 * USDC)

    def test_swap_exact_out(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("USDC", "trader", 10_000 * USDC)
        paid = amm.swap_exact_out(
            ExecutionContext("trader", T0), "WETH-USDC", "USDC", WETH, 3_000 * USDC
        )
        assert ledger.balance_of("WETH", "trader") == WETH
        assert ledger.balance_of("USDC", "trader") == 10_000 * USDC - paid
        with pytest.raises(SlippageExceeded):
            amm.swap_exact_out(ExecutionContext("trader", T0), "WETH-USDC", "USDC", WETH, USDC)

    def test_unknown_pool_and_asset(self, amm: AmmExchange) -> None:
        with pytest.raises(UnknownAsset):
            amm.get_amount_out("nope", "WETH", 1)
        with pytest.raises(UnknownAsset):
            amm.get_amount_out("WETH-USDC", "yvWETH", 1)

    def test_donation_does_not_move_price(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        before = amm.spot_price("WETH-USDC", "WETH")
        ledger.mint("USDC", pool_account("WETH-USDC"), 1_000_000 * USDC)
        assert amm.spot_price("WETH-USDC", "WETH") == before
        assert before == 2_700 * 10**18

    def test_reentrant_swap_rejected(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("USDC", "attacker", 20_000 * USDC)

        def hook(asset: str, sender: str, receiver: str, amount: int) -> None:
            if receiver == pool_account("WETH-USDC"):
                amm.swap_exact_in(ExecutionContext("attacker", T0), "WETH-USDC", "USDC", USDC, 0)

        ledger.set_transfer_hook("USDC", hook)
        with pytest.raises(ReentrancyError):
            amm.swap_exact_in(ExecutionContext("attacker", T0), "WETH-USDC", "USDC", 10_000 * USDC, 0)


class TestFeeOnTransfer:
    def test_exact_in_uses_measured_input(self) -> None:
        ledger = TokenLedger(
            {"FEE": AssetConfig(decimals=18, transfer_fee_bps=100), "USDC": AssetConfig(decimals=6)}
        )
        amm = AmmExchange({"p": PoolConfig("FEE", "USDC", 30)}, ledger)
        ledger.mint("FEE", "lp", 1_000 * WETH)
        ledger.mint("USDC", "lp", 1_000_000 * USDC)
        amm.add_liquidity(ExecutionContext("lp", T0), "p", 1_000 * WETH, 1_000_000 * USDC)
        reserve_fee, reserve_usdc = amm.reserves("p")
        assert reserve_fee == 990 * WETH

        ledger.mint("FEE", "trader", WETH)
        out = amm.swap_exact_in(ExecutionContext("trader", T0), "p", "FEE", WETH, 0)
        assert out == curve.get_amount_out(99 * WETH // 100, reserve_fee, reserve_usdc, 30)

    def test_exact_out_rejects_short_input(self) -> None:
        ledger = TokenLedger(
            {"FEE": AssetConfig(decimals=18, transfer_fee_bps=100), "USDC": AssetConfig(decimals=6)}
        )
        amm = AmmExchange({"p": PoolConfig("FEE", "USDC", 30)}, ledger)
        ledger.mint("FEE", "lp", 1_000 * WETH)
        ledger.mint("USDC", "lp", 1_000_000 * USDC)
        amm.add_liquidity(ExecutionContext("lp", T0), "p", 1_000 * WETH, 1_000_000 * USDC)
        ledger.mint("FEE", "trader", 10 * WETH)
        with pytest.raises(InsufficientInputAmount):
            amm.swap_exact_out(ExecutionContext("trader", T0), "p", "FEE", 1_000 * USDC, 10 * WETH)


class TestLiquidity:
    def test_first_provider_shares(self, amm: AmmExchange) -> None:
        expected = math.isqrt(500 * WETH * 1_350_000 * USDC) - curve.MINIMUM_LIQUIDITY
        assert amm.lp_balance("WETH-USDC", "lp") == expected
        assert amm.lp_balance("WETH-USDC", LOCKED_LIQUIDITY_HOLDER) == curve.MINIMUM_LIQUIDITY

    def test_proportional_add_and_remove(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("WETH", "lp2", 10 * WETH)
        ledger.mint("USDC", "lp2", 100_000 * USDC)
        ctx = ExecutionContext("lp2", T0 + 5)
        shares = amm.add_liquidity(ctx, "WETH-USDC", 10 * WETH, 100_000 * USDC)

        assert ledger.balance_of("WETH", "lp2") == 0
        assert ledger.balance_of("USDC", "lp2") == 100_000 * USDC - 27_000 * USDC

        amount_a, amount_b = amm.remove_liquidity(ctx, "WETH-USDC", shares)
        assert amount_a <= 10 * WETH
        assert amount_b <= 27_000 * USDC
        assert 10 * WETH - amount_a < 10**6

    def test_remove_more_than_held(self, amm: AmmExchange) -> None:
        with pytest.raises(InsufficientShares):
            amm.remove_liquidity(ExecutionContext("stranger", T0), "WETH-USDC", 1)

    def test_min_shares(self, amm: AmmExchange, ledger: TokenLedger) -> None:
        ledger.mint("WETH", "lp2", WETH)
        ledger.mint("USDC", "lp2", 2_700 * USDC)
        with pytest.raises(SlippageExceeded):
            amm.add_liquidity(
                ExecutionContext("lp2", T0), "WETH-USDC", WETH, 2_700 * USDC, min_shares=10**30
            )
