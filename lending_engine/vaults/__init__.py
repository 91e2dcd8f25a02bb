"""Yield-bearing vault share accounting."""
from .accounting import VaultAccounting, vault_account

__all__ = ["VaultAccounting", "vault_account"]
