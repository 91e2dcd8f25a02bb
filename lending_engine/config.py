"""Configuration loader — reads engine.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .fixed_point import BPS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetConfig:
    decimals: int = 18
    transfer_fee_bps: int = 0


@dataclass(frozen=True)
class ReserveConfig:
    """Per-collateral risk parameters. Amounts are raw debt-asset units."""

    decimals: int = 18
    max_ltv_bps: int = 8000
    liquidation_threshold_bps: int = 8500
    liquidation_bonus_bps: int = 500
    debt_ceiling: int = 0
    min_debt: int = 0
    rate_model: str = "fixed"
    base_rate_bps: int = 0
    slope1_bps: int = 0
    slope2_bps: int = 0
    optimal_utilization_bps: int = 8000
    vault_id: str = ""

    def validate(self, asset: str) -> None:
        """Raise ValueError if the parameters could make the reserve insolvent."""
        if not 0 < self.max_ltv_bps < self.liquidation_threshold_bps <= BPS:
            raise ValueError(
                f"Reserve '{asset}': need 0 < max_ltv < liquidation_threshold <= 100%"
            )
        # (1 + bonus) × threshold must stay ≤ 1, i.e. bonus ≤ 1/threshold − 1
        if (BPS + self.liquidation_bonus_bps) * self.liquidation_threshold_bps > BPS * BPS:
            raise ValueError(
                f"Reserve '{asset}': liquidation bonus exceeds 1/threshold - 1"
            )
        if self.liquidation_bonus_bps < 0 or self.debt_ceiling < 0 or self.min_debt < 0:
            raise ValueError(f"Reserve '{asset}': negative parameter")
        if self.rate_model not in ("fixed", "kinked"):
            raise ValueError(f"Reserve '{asset}': unknown rate model '{self.rate_model}'")
        if self.rate_model == "kinked" and not 0 < self.optimal_utilization_bps < BPS:
            raise ValueError(f"Reserve '{asset}': optimal utilization must be in (0, 100%)")


@dataclass(frozen=True)
class LendingConfig:
    debt_asset: str = ""
    account: str = "lending_pool"
    flash_fee_bps: int = 9


@dataclass(frozen=True)
class SecondarySourceConfig:
    pool_id: str = ""
    window: int = 1800


@dataclass(frozen=True)
class OracleFeedConfig:
    decimals: int = 8
    heartbeat: int = 3600
    max_staleness_buffer: int = 0
    deviation_threshold_bps: int = 200
    secondary: SecondarySourceConfig | None = None


@dataclass(frozen=True)
class SequencerConfig:
    enabled: bool = False
    grace_period: int = 3600


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OracleConfig:
    feeds: dict[str, OracleFeedConfig] = field(default_factory=dict)
    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class PoolConfig:
    asset_a: str = ""
    asset_b: str = ""
    fee_bps: int = 30


@dataclass(frozen=True)
class VaultConfig:
    underlying: str = ""
    share_asset: str = ""
    virtual_shares: int = 1000
    rate_delay: int = 3600
    donation_guard_bps: int = 0
    strategist: str = ""


@dataclass(frozen=True)
class DecayConfig:
    kind: str = "stairstep"
    step_duration: int = 90
    cut_bps: int = 9900
    duration: int = 3600


@dataclass(frozen=True)
class LiquidationConfig:
    buffer_bps: int = 12000
    decay: DecayConfig = field(default_factory=DecayConfig)
    max_duration: int = 7200
    floor_bps: int = 4000


@dataclass(frozen=True)
class AppConfig:
    admins: tuple[str, ...] = ()
    assets: dict[str, AssetConfig] = field(default_factory=dict)
    lending: LendingConfig = field(default_factory=LendingConfig)
    reserves: dict[str, ReserveConfig] = field(default_factory=dict)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    pools: dict[str, PoolConfig] = field(default_factory=dict)
    vaults: dict[str, VaultConfig] = field(default_factory=dict)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_assets(raw: dict[str, Any]) -> dict[str, AssetConfig]:
    assets: dict[str, AssetConfig] = {}
    for name, cfg in raw.items():
        cfg = cfg or {}
        assets[name] = AssetConfig(
            decimals=int(cfg.get("decimals", 18)),
            transfer_fee_bps=int(cfg.get("transfer_fee_bps", 0)),
        )
    return assets


def _build_lending(raw: dict[str, Any]) -> LendingConfig:
    return LendingConfig(
        debt_asset=raw.get("debt_asset", ""),
        account=raw.get("account", "lending_pool"),
        flash_fee_bps=int(raw.get("flash_fee_bps", 9)),
    )


def _build_reserves(
    raw: dict[str, Any], assets: dict[str, AssetConfig]
) -> dict[str, ReserveConfig]:
    reserves: dict[str, ReserveConfig] = {}
    for name, cfg in raw.items():
        default_decimals = assets[name].decimals if name in assets else 18
        reserves[name] = ReserveConfig(
            decimals=int(cfg.get("decimals", default_decimals)),
            max_ltv_bps=int(cfg.get("max_ltv_bps", 8000)),
            liquidation_threshold_bps=int(cfg.get("liquidation_threshold_bps", 8500)),
            liquidation_bonus_bps=int(cfg.get("liquidation_bonus_bps", 500)),
            debt_ceiling=int(cfg.get("debt_ceiling", 0)),
            min_debt=int(cfg.get("min_debt", 0)),
            rate_model=cfg.get("rate_model", "fixed"),
            base_rate_bps=int(cfg.get("base_rate_bps", 0)),
            slope1_bps=int(cfg.get("slope1_bps", 0)),
            slope2_bps=int(cfg.get("slope2_bps", 0)),
            optimal_utilization_bps=int(cfg.get("optimal_utilization_bps", 8000)),
            vault_id=cfg.get("vault_id", "") or "",
        )
    return reserves


def _build_oracle(raw: dict[str, Any]) -> OracleConfig:
    feeds: dict[str, OracleFeedConfig] = {}
    for name, cfg in raw.get("feeds", {}).items():
        secondary_raw = cfg.get("secondary")
        secondary = None
        if secondary_raw:
            secondary = SecondarySourceConfig(
                pool_id=secondary_raw.get("pool_id", ""),
                window=int(secondary_raw.get("window", 1800)),
            )
        feeds[name] = OracleFeedConfig(
            decimals=int(cfg.get("decimals", 8)),
            heartbeat=int(cfg.get("heartbeat", 3600)),
            max_staleness_buffer=int(cfg.get("max_staleness_buffer", 0)),
            deviation_threshold_bps=int(cfg.get("deviation_threshold_bps", 200)),
            secondary=secondary,
        )
    seq_raw = raw.get("sequencer", {})
    pyth_raw = raw.get("pyth", {})
    return OracleConfig(
        feeds=feeds,
        sequencer=SequencerConfig(
            enabled=bool(seq_raw.get("enabled", False)),
            grace_period=int(seq_raw.get("grace_period", 3600)),
        ),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_pools(raw: dict[str, Any]) -> dict[str, PoolConfig]:
    pools: dict[str, PoolConfig] = {}
    for pool_id, cfg in raw.items():
        pools[pool_id] = PoolConfig(
            asset_a=cfg.get("asset_a", ""),
            asset_b=cfg.get("asset_b", ""),
            fee_bps=int(cfg.get("fee_bps", 30)),
        )
    return pools


def _build_vaults(raw: dict[str, Any]) -> dict[str, VaultConfig]:
    vaults: dict[str, VaultConfig] = {}
    for vault_id, cfg in raw.items():
        vaults[vault_id] = VaultConfig(
            underlying=cfg.get("underlying", ""),
            share_asset=cfg.get("share_asset", vault_id),
            virtual_shares=int(cfg.get("virtual_shares", 1000)),
            rate_delay=int(cfg.get("rate_delay", 3600)),
            donation_guard_bps=int(cfg.get("donation_guard_bps", 0)),
            strategist=cfg.get("strategist", ""),
        )
    return vaults


def _build_liquidation(raw: dict[str, Any]) -> LiquidationConfig:
    decay_raw = raw.get("decay", {})
    return LiquidationConfig(
        buffer_bps=int(raw.get("buffer_bps", 12000)),
        decay=DecayConfig(
            kind=decay_raw.get("kind", "stairstep"),
            step_duration=int(decay_raw.get("step_duration", 90)),
            cut_bps=int(decay_raw.get("cut_bps", 9900)),
            duration=int(decay_raw.get("duration", 3600)),
        ),
        max_duration=int(raw.get("max_duration", 7200)),
        floor_bps=int(raw.get("floor_bps", 4000)),
    )


def build_config(raw: dict[str, Any]) -> AppConfig:
    """Build and validate an AppConfig from an already-parsed mapping."""
    raw = _interpolate_env(raw or {})
    assets = _build_assets(raw.get("assets", {}))
    cfg = AppConfig(
        admins=tuple(a for a in raw.get("admins", []) if a),
        assets=assets,
        lending=_build_lending(raw.get("lending", {})),
        reserves=_build_reserves(raw.get("reserves", {}), assets),
        oracle=_build_oracle(raw.get("oracle", {})),
        pools=_build_pools(raw.get("pools", {})),
        vaults=_build_vaults(raw.get("vaults", {})),
        liquidation=_build_liquidation(raw.get("liquidation", {})),
    )
    _validate(cfg)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate engine configuration from YAML + .env.

    Args:
        config_path: Path to engine.yaml. Defaults to ``engine.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "engine.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    cfg = build_config(raw)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    debt_asset = cfg.lending.debt_asset
    if not debt_asset:
        raise ValueError("lending.debt_asset must be set")
    if debt_asset not in cfg.assets:
        raise ValueError(f"Debt asset '{debt_asset}' is not a declared asset")
    if debt_asset not in cfg.oracle.feeds:
        raise ValueError(f"Debt asset '{debt_asset}' has no oracle feed")

    for name, asset in cfg.assets.items():
        if asset.decimals < 0 or not 0 <= asset.transfer_fee_bps < BPS:
            raise ValueError(f"Asset '{name}' has invalid decimals or transfer fee")

    for name, reserve in cfg.reserves.items():
        if name not in cfg.assets:
            raise ValueError(f"Reserve '{name}' references unknown asset")
        if name == debt_asset:
            raise ValueError(f"Debt asset '{name}' cannot also be a collateral reserve")
        reserve.validate(name)
        if reserve.vault_id:
            vault = cfg.vaults.get(reserve.vault_id)
            if vault is None:
                raise ValueError(
                    f"Reserve '{name}' references unknown vault '{reserve.vault_id}'"
                )
            if vault.share_asset != name:
                raise ValueError(
                    f"Reserve '{name}' must be the share asset of vault '{reserve.vault_id}'"
                )
            if vault.underlying not in cfg.oracle.feeds:
                raise ValueError(f"Vault underlying '{vault.underlying}' has no oracle feed")
        elif name not in cfg.oracle.feeds:
            raise ValueError(f"Reserve '{name}' has no oracle feed")

    for name, feed in cfg.oracle.feeds.items():
        if name not in cfg.assets:
            raise ValueError(f"Oracle feed '{name}' references unknown asset")
        if feed.heartbeat <= 0 or feed.max_staleness_buffer < 0:
            raise ValueError(f"Oracle feed '{name}' has invalid staleness settings")
        if feed.secondary is not None:
            pool = cfg.pools.get(feed.secondary.pool_id)
            if pool is None:
                raise ValueError(
                    f"Oracle feed '{name}' references unknown pool '{feed.secondary.pool_id}'"
                )
            if name not in (pool.asset_a, pool.asset_b):
                raise ValueError(f"Pool '{feed.secondary.pool_id}' does not trade '{name}'")

    for pool_id, pool in cfg.pools.items():
        for asset in (pool.asset_a, pool.asset_b):
            if asset not in cfg.assets:
                raise ValueError(f"Pool '{pool_id}' references unknown asset '{asset}'")
        if pool.asset_a == pool.asset_b:
            raise ValueError(f"Pool '{pool_id}' must trade two distinct assets")
        if not 0 <= pool.fee_bps < BPS:
            raise ValueError(f"Pool '{pool_id}' fee must be in [0, 100%)")

    for vault_id, vault in cfg.vaults.items():
        if vault.underlying not in cfg.assets:
            raise ValueError(f"Vault '{vault_id}' references unknown underlying")
        if vault.share_asset not in cfg.assets:
            raise ValueError(f"Vault '{vault_id}' share asset must be declared")
        if vault.virtual_shares < 0:
            raise ValueError(f"Vault '{vault_id}' virtual shares must be >= 0")

    liq = cfg.liquidation
    if liq.buffer_bps <= BPS:
        raise ValueError("Liquidation buffer must be greater than 100%")
    if not 0 < liq.floor_bps < BPS:
        raise ValueError("Liquidation floor must be in (0, 100%)")
    if liq.max_duration <= 0:
        raise ValueError("Liquidation max_duration must be positive")
    if liq.decay.kind not in ("linear", "stairstep"):
        raise ValueError(f"Unknown decay kind '{liq.decay.kind}'")
    if liq.decay.kind == "stairstep" and not (
        liq.decay.step_duration > 0 and 0 < liq.decay.cut_bps < BPS
    ):
        raise ValueError("Stairstep decay needs step_duration > 0 and cut in (0, 100%)")
    if liq.decay.kind == "linear" and liq.decay.duration <= 0:
        raise ValueError("Linear decay needs a positive duration")
