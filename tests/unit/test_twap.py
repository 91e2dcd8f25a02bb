"""Unit tests for the AMM time-weighted price source."""
from __future__ import annotations

import pytest

from lending_engine.amm import AmmExchange
from lending_engine.config import OracleFeedConfig, PoolConfig, SecondarySourceConfig
from lending_engine.errors import OracleNoData, OracleStale
from lending_engine.ledger import TokenLedger
from lending_engine.models import ExecutionContext
from lending_engine.oracles import AmmTwapSource, PriceOracle

T0 = 1_700_000_000
WETH = 10**18
USDC = 10**6


@pytest.fixture()
def amm(ledger: TokenLedger) -> AmmExchange:
    exchange = AmmExchange({"WETH-USDC": PoolConfig("WETH", "USDC", 30)}, ledger)
    ledger.mint("WETH", "lp", 100 * WETH)
    ledger.mint("USDC", "lp", 300_000 * USDC)
    exchange.add_liquidity(ExecutionContext("lp", T0), "WETH-USDC", 100 * WETH, 300_000 * USDC)
    return exchange


@pytest.fixture()
def twap(amm: AmmExchange) -> AmmTwapSource:
    return AmmTwapSource(amm, {"WETH": SecondarySourceConfig(pool_id="WETH-USDC", window=1800)})


class TestAmmTwapSource:
    def test_needs_history_older_than_window(self, twap: AmmTwapSource) -> None:
        twap.record(ExecutionContext("keeper", T0), "WETH")
        with pytest.raises(OracleNoData):
            twap.get_price(ExecutionContext("keeper", T0 + 1799), "WETH")

    def test_constant_pool_price(self, twap: AmmTwapSource) -> None:
        twap.record(ExecutionContext("keeper", T0), "WETH")
        reading = twap.get_price(ExecutionContext("keeper", T0 + 1800), "WETH")
        assert reading.price == 3000 * 10**18
        assert reading.decimals == 18
        assert reading.source == "twap"

    def test_short_spike_is_averaged(
        self, twap: AmmTwapSource, amm: AmmExchange, ledger: TokenLedger
    ) -> None:
        twap.record(ExecutionContext("keeper", T0), "WETH")
        ledger.mint("USDC", "whale", 300_000 * USDC)
        amm.swap_exact_in(ExecutionContext("whale", T0 + 1790), "WETH-USDC", "USDC", 300_000 * USDC, 0)
        spot = amm.spot_price("WETH-USDC", "WETH")
        reading = twap.get_price(ExecutionContext("keeper", T0 + 1800), "WETH")
        assert spot > 11_000 * 10**18
        assert reading.price < 3100 * 10**18

    def test_unconfigured_asset(self, twap: AmmTwapSource) -> None:
        with pytest.raises(OracleNoData):
            twap.get_price(ExecutionContext("keeper", T0), "USDC")

    def test_serves_as_oracle_fallback(self, twap: AmmTwapSource) -> None:
        oracle = PriceOracle(
            {"WETH": OracleFeedConfig(heartbeat=60)}, ("admin",), secondary_sources={"WETH": twap}
        )
        oracle.report_price(ExecutionContext("admin", T0), "WETH", 3000 * 10**8)
        twap.record(ExecutionContext("keeper", T0), "WETH")
        late = ExecutionContext("keeper", T0 + 3600)
        with pytest.raises(OracleStale):
            oracle.get_price(late, "WETH")
        assert oracle.get_price_with_fallback(late, "WETH").source == "twap"
