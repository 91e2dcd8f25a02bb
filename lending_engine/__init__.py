"""Collateralized lending engine with oracle-checked pricing, Dutch-auction
liquidation, constant-product AMM, flash loans and vault share accounting."""
from .config import AppConfig, build_config, load_config
from .errors import EngineError
from .logging_setup import configure_logging
from .models import ExecutionContext
from .services import Engine

__all__ = [
    "AppConfig",
    "Engine",
    "EngineError",
    "ExecutionContext",
    "build_config",
    "configure_logging",
    "load_config",
]

__version__ = "0.1.0"
