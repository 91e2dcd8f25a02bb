"""Unit tests for the token ledger — fees, hooks and measured transfers."""
from __future__ import annotations

import pytest

from lending_engine.config import AssetConfig
from lending_engine.errors import InsufficientBalance, UnknownAsset
from lending_engine.ledger import TokenLedger


@pytest.fixture()
def fee_ledger() -> TokenLedger:
    return TokenLedger(
        {"FEE": AssetConfig(decimals=18, transfer_fee_bps=100), "USDC": AssetConfig(decimals=6)}
    )


class TestTokenLedger:
    def test_mint_and_transfer(self, ledger: TokenLedger) -> None:
        ledger.mint("USDC", "alice", 100)
        ledger.transfer("USDC", "alice", "bob", 40)
        assert ledger.balance_of("USDC", "alice") == 60
        assert ledger.balance_of("USDC", "bob") == 40
        assert ledger.total_supply("USDC") == 100

    def test_overdraft_rejected(self, ledger: TokenLedger) -> None:
        ledger.mint("USDC", "alice", 10)
        with pytest.raises(InsufficientBalance):
            ledger.transfer("USDC", "alice", "bob", 11)

    def test_unknown_asset(self, ledger: TokenLedger) -> None:
        with pytest.raises(UnknownAsset):
            ledger.balance_of("DOGE", "alice")

    def test_fee_on_transfer_is_burned(self, fee_ledger: TokenLedger) -> None:
        fee_ledger.mint("FEE", "alice", 10_000)
        received = fee_ledger.transfer_measured("FEE", "alice", "bob", 10_000)
        assert received == 9_900
        assert fee_ledger.total_supply("FEE") == 9_900

    def test_hook_runs_after_balances_move(self, ledger: TokenLedger) -> None:
        seen: list[tuple[str, str, str, int, int]] = []

        def hook(asset: str, sender: str, receiver: str, amount: int) -> None:
            seen.append((asset, sender, receiver, amount, ledger.balance_of(asset, receiver)))

        ledger.mint("USDC", "alice", 50)
        ledger.set_transfer_hook("USDC", hook)
        ledger.transfer("USDC", "alice", "bob", 20)
        assert seen == [("USDC", "alice", "bob", 20, 20)]

        ledger.set_transfer_hook("USDC", None)
        ledger.transfer("USDC", "alice", "bob", 1)
        assert len(seen) == 1

    def test_snapshot_restore(self, ledger: TokenLedger) -> None:
        ledger.mint("USDC", "alice", 5)
        snap = ledger.snapshot()
        ledger.transfer("USDC", "alice", "bob", 5)
        ledger.restore(snap)
        assert ledger.balance_of("USDC", "alice") == 5
        assert ledger.balance_of("USDC", "bob") == 0
        assert ledger.snapshot() == snap
