"""Unit tests for the executor — ordering, rollback and reentrancy."""
from __future__ import annotations

import pytest

from lending_engine.errors import (
    InsufficientBalance,
    ReentrancyError,
    TransactionOrderError,
)
from lending_engine.executor import Executor, ReentrancyGuard, nonreentrant
from lending_engine.ledger import TokenLedger
from lending_engine.models import ExecutionContext

T0 = 1_700_000_000


@pytest.fixture()
def executor(ledger: TokenLedger) -> Executor:
    ex = Executor()
    ex.register("ledger", ledger)
    return ex


class TestTransactions:
    def test_commit(self, executor: Executor, ledger: TokenLedger) -> None:
        with executor.transaction(ExecutionContext("admin", T0)):
            ledger.mint("USDC", "alice", 10)
        assert ledger.balance_of("USDC", "alice") == 10
        assert executor.committed == 1
        assert executor.last_timestamp == T0

    def test_rollback_restores_every_component(
        self, executor: Executor, ledger: TokenLedger
    ) -> None:
        ledger.mint("USDC", "alice", 10)
        before = executor.checkpoint()

        with pytest.raises(InsufficientBalance):
            with executor.transaction(ExecutionContext("alice", T0)):
                ledger.transfer("USDC", "alice", "bob", 5)
                ledger.transfer("USDC", "alice", "bob", 50)

        assert executor.checkpoint() == before
        assert executor.rolled_back == 1

    def test_timestamps_must_not_go_backwards(self, executor: Executor) -> None:
        executor.run(ExecutionContext("admin", T0 + 10), lambda ctx: None)
        executor.run(ExecutionContext("admin", T0 + 10), lambda ctx: None)
        with pytest.raises(TransactionOrderError):
            executor.run(ExecutionContext("admin", T0), lambda ctx: None)

    def test_nested_transaction_rejected(self, executor: Executor) -> None:
        ctx = ExecutionContext("admin", T0)

        def nested(inner_ctx: ExecutionContext) -> None:
            executor.run(inner_ctx, lambda c: None)

        with pytest.raises(ReentrancyError):
            executor.run(ctx, nested)
        executor.run(ctx, lambda c: None)

    def test_run_passes_arguments(self, executor: Executor, ledger: TokenLedger) -> None:
        ctx = ExecutionContext("admin", T0)
        executor.run(ctx, lambda c, account, amount: ledger.mint("USDC", account, amount), "bob", 3)
        assert ledger.balance_of("USDC", "bob") == 3


class _Counter:
    def __init__(self) -> None:
        self._guard = ReentrancyGuard("counter")
        self.value = 0

    @nonreentrant
    def bump(self, again: bool = False) -> None:
        self.value += 1
        if again:
            self.bump()


class TestReentrancyGuard:
    def test_blocks_reentry(self) -> None:
        counter = _Counter()
        with pytest.raises(ReentrancyError):
            counter.bump(again=True)

    def test_released_after_error(self) -> None:
        counter = _Counter()
        with pytest.raises(ReentrancyError):
            counter.bump(again=True)
        counter.bump()
        assert counter.value == 2
