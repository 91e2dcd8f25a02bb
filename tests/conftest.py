"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from lending_engine.config import AppConfig, AssetConfig, build_config
from lending_engine.ledger import TokenLedger
from lending_engine.models import ExecutionContext
from lending_engine.services import Engine

T0 = 1_700_000_000

USDC = 10**6
WETH = 10**18
PRICE_DECIMALS = 10**8


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    admins: [admin]
    assets:
      USDC: {decimals: 6}
      WETH: {decimals: 18}
      yvWETH: {decimals: 21}
    lending:
      debt_asset: USDC
      flash_fee_bps: 9
    reserves:
      WETH:
        max_ltv_bps: 7500
        liquidation_threshold_bps: 8250
        liquidation_bonus_bps: 500
        debt_ceiling: 10000000000000
        min_debt: 100000000
      yvWETH:
        max_ltv_bps: 6500
        liquidation_threshold_bps: 7500
        liquidation_bonus_bps: 800
        vault_id: yvWETH
    oracle:
      feeds:
        USDC: {decimals: 8, heartbeat: 86400}
        WETH: {decimals: 8, heartbeat: 3600, max_staleness_buffer: 60}
      sequencer:
        enabled: false
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {WETH: "aaa111", USDC: "ccc333"}
    pools:
      WETH-USDC: {asset_a: WETH, asset_b: USDC, fee_bps: 30}
    vaults:
      yvWETH:
        underlying: WETH
        share_asset: yvWETH
        virtual_shares: 1000
        rate_delay: 3600
        strategist: strategist
    liquidation:
      buffer_bps: 12000
      max_duration: 7200
      floor_bps: 4000
      decay: {kind: stairstep, step_duration: 90, cut_bps: 9900}
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "engine.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


@pytest.fixture()
def app_config() -> AppConfig:
    return build_config(yaml.safe_load(SAMPLE_YAML))


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def ledger() -> TokenLedger:
    return TokenLedger(
        {
            "USDC": AssetConfig(decimals=6),
            "WETH": AssetConfig(decimals=18),
            "yvWETH": AssetConfig(decimals=21),
        }
    )


@pytest.fixture()
def admin_ctx() -> ExecutionContext:
    return ExecutionContext(caller_id="admin", timestamp=T0)


@pytest.fixture()
def engine(app_config: AppConfig, admin_ctx: ExecutionContext) -> Engine:
    """Engine with fresh prices (USDC $1, WETH $3000), 1M USDC of pool
    liquidity and 10 WETH in alice's wallet."""
    eng = Engine(app_config)
    eng.report_price(admin_ctx, "USDC", 1 * PRICE_DECIMALS)
    eng.report_price(admin_ctx, "WETH", 3000 * PRICE_DECIMALS)
    eng.fund(admin_ctx, "USDC", "lender", 1_000_000 * USDC)
    eng.fund(admin_ctx, "WETH", "alice", 10 * WETH)
    eng.deposit_liquidity(ExecutionContext("lender", T0), 1_000_000 * USDC)
    return eng


@pytest.fixture()
def borrowed_engine(engine: Engine) -> Engine:
    """Alice holds 2 WETH of collateral against 3000 USDC of debt (HF 1.65)."""
    alice = ExecutionContext("alice", T0)
    engine.supply(alice, "alice", "WETH", 2 * WETH)
    engine.borrow(alice, "alice", "WETH", 3000 * USDC)
    return engine
