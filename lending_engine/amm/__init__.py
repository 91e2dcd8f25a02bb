"""Constant-product AMM."""
from .exchange import AmmExchange, pool_account

__all__ = ["AmmExchange", "pool_account"]
