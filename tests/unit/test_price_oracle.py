"""Unit tests for the price oracle — validation order, fallback and sequencer gate."""
from __future__ import annotations

import pytest

from lending_engine.config import OracleFeedConfig
from lending_engine.errors import (
    ExecutionHalted,
    OracleInvalidPrice,
    OracleMismatch,
    OracleNoData,
    OracleStale,
    Unauthorized,
)
from lending_engine.models import ExecutionContext, PriceReading
from lending_engine.oracles import PriceOracle, SequencerUptimeFeed, normalize_price

T0 = 1_700_000_000
ADMINS = ("admin",)


class StubSource:
    """Secondary source returning a fixed 18-decimal price."""

    def __init__(self, price: int | None) -> None:
        self.price = price

    def get_price(self, ctx: ExecutionContext, asset: str) -> PriceReading:
        if self.price is None:
            raise OracleNoData("stub has no data")
        return PriceReading(asset, self.price, ctx.timestamp, 18, source="stub")


@pytest.fixture()
def oracle() -> PriceOracle:
    return PriceOracle(
        {"WETH": OracleFeedConfig(decimals=8, heartbeat=3600, max_staleness_buffer=60)},
        ADMINS,
    )


def _admin(ts: int = T0) -> ExecutionContext:
    return ExecutionContext("admin", ts)


class TestReportPrice:
    def test_admin_only(self, oracle: PriceOracle) -> None:
        with pytest.raises(Unauthorized):
            oracle.report_price(ExecutionContext("mallory", T0), "WETH", 1)

    def test_rounds_advance(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        oracle.report_price(_admin(T0 + 1), "WETH", 3001 * 10**8)
        feed = oracle.latest_round("WETH")
        assert feed.round_id == 2
        assert feed.price == 3001 * 10**8

    def test_out_of_order_observation_ignored(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(T0 + 10), "WETH", 3000 * 10**8)
        assert oracle.report_price(_admin(T0 + 10), "WETH", 1, updated_at=T0) is False
        assert oracle.latest_round("WETH").price == 3000 * 10**8

    def test_future_observation_rejected(self, oracle: PriceOracle) -> None:
        with pytest.raises(OracleInvalidPrice):
            oracle.report_price(_admin(), "WETH", 1, updated_at=T0 + 1)


class TestGetPrice:
    def test_no_data(self, oracle: PriceOracle) -> None:
        with pytest.raises(OracleNoData):
            oracle.get_price(_admin(), "WETH")

    def test_incomplete_round(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", 3000 * 10**8, answered_in_round=0)
        with pytest.raises(OracleNoData, match="incomplete"):
            oracle.get_price(_admin(), "WETH")

    def test_non_positive_price(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", 0)
        with pytest.raises(OracleInvalidPrice):
            oracle.get_price(_admin(), "WETH")

    def test_invalid_checked_before_stale(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", -5)
        with pytest.raises(OracleInvalidPrice):
            oracle.get_price(_admin(T0 + 100_000), "WETH")

    def test_fresh_read(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        reading = oracle.get_price(_admin(T0 + 3659), "WETH")
        assert reading.price == 3000 * 10**8
        assert reading.decimals == 8
        assert reading.source == "primary"

    def test_stale_at_heartbeat_plus_buffer(self, oracle: PriceOracle) -> None:
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        with pytest.raises(OracleStale):
            oracle.get_price(_admin(T0 + 3660), "WETH")

    def test_unknown_feed(self, oracle: PriceOracle) -> None:
        with pytest.raises(OracleNoData):
            oracle.get_price(_admin(), "DOGE")

    def test_normalize_price(self) -> None:
        assert normalize_price(3000 * 10**8, 8) == 3000 * 10**18


class TestSequencerGate:
    def test_halted_while_down_and_during_grace(self) -> None:
        sequencer = SequencerUptimeFeed(ADMINS, grace_period=600)
        oracle = PriceOracle({"WETH": OracleFeedConfig()}, ADMINS, sequencer=sequencer)
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        assert oracle.get_price(_admin(), "WETH").price == 3000 * 10**8

        sequencer.set_status(_admin(T0 + 10), False)
        with pytest.raises(ExecutionHalted):
            oracle.get_price(_admin(T0 + 10), "WETH")

        sequencer.set_status(_admin(T0 + 20), True)
        with pytest.raises(ExecutionHalted):
            oracle.get_price(_admin(T0 + 620), "WETH")
        assert oracle.get_price(_admin(T0 + 621), "WETH").price == 3000 * 10**8

    def test_stale_checked_before_sequencer(self) -> None:
        sequencer = SequencerUptimeFeed(ADMINS, grace_period=600)
        oracle = PriceOracle({"WETH": OracleFeedConfig(heartbeat=60)}, ADMINS, sequencer=sequencer)
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        sequencer.set_status(_admin(T0 + 100), False)
        with pytest.raises(OracleStale):
            oracle.get_price(_admin(T0 + 100), "WETH")

    def test_status_is_privileged(self) -> None:
        sequencer = SequencerUptimeFeed(ADMINS, grace_period=600)
        with pytest.raises(Unauthorized):
            sequencer.set_status(ExecutionContext("mallory", T0), False)


class TestFallback:
    def test_uses_secondary_when_primary_stale(self, oracle: PriceOracle) -> None:
        oracle.set_secondary_source("WETH", StubSource(2990 * 10**18))
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        reading = oracle.get_price_with_fallback(_admin(T0 + 7200), "WETH")
        assert reading.source == "stub"
        assert reading.price == 2990 * 10**18

    def test_raises_primary_error_when_both_fail(self, oracle: PriceOracle) -> None:
        oracle.set_secondary_source("WETH", StubSource(None))
        with pytest.raises(OracleNoData, match="No price reported"):
            oracle.get_price_with_fallback(_admin(), "WETH")

    def test_agreeing_sources_return_primary(self, oracle: PriceOracle) -> None:
        oracle.set_secondary_source("WETH", StubSource(3050 * 10**18))
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        assert oracle.get_price_with_fallback(_admin(), "WETH").source == "primary"

    def test_mismatch_beyond_threshold(self, oracle: PriceOracle) -> None:
        oracle.set_secondary_source("WETH", StubSource(3100 * 10**18))
        oracle.report_price(_admin(), "WETH", 3000 * 10**8)
        with pytest.raises(OracleMismatch):
            oracle.get_price_with_fallback(_admin(), "WETH")

    def test_secondary_cannot_bypass_sequencer(self) -> None:
        sequencer = SequencerUptimeFeed(ADMINS, grace_period=600)
        oracle = PriceOracle(
            {"WETH": OracleFeedConfig()},
            ADMINS,
            sequencer=sequencer,
            secondary_sources={"WETH": StubSource(3000 * 10**18)},
        )
        sequencer.set_status(_admin(), False)
        with pytest.raises(ExecutionHalted):
            oracle.get_price_with_fallback(_admin(), "WETH")
