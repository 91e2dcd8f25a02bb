from .engine import FLASH_LIQUIDATION, Engine

__all__ = ["Engine", "FLASH_LIQUIDATION"]
