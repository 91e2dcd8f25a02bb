"""Atomic operation executor — global lock, checkpoints, reentrancy guards."""
from __future__ import annotations

import copy
import functools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from .errors import ReentrancyError, TransactionOrderError
from .interfaces.checkpoint import Checkpointable
from .models import ExecutionContext

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class CheckpointMixin:
    """Snapshot/restore of the attributes named in ``_checkpoint_fields``."""

    _checkpoint_fields: tuple[str, ...] = ()

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(
            {name: getattr(self, name) for name in self._checkpoint_fields}
        )

    def restore(self, state: dict[str, Any]) -> None:
        for name, value in copy.deepcopy(state).items():
            setattr(self, name, value)


class ReentrancyGuard:
    """Refuses entry while the owning component is mid-mutation."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._entered = False

    @property
    def entered(self) -> bool:
        return self._entered

    def __enter__(self) -> "ReentrancyGuard":
        if self._entered:
            raise ReentrancyError(f"{self.name} re-entered during a state update")
        self._entered = True
        return self

    def __exit__(self, *exc: object) -> None:
        self._entered = False


def nonreentrant(method: F) -> F:
    """Run the method under its component's ``_guard``."""

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._guard:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class Executor:
    """Runs one transaction at a time, all-or-nothing across every component.

    Transactions are admitted in timestamp order. Before the body runs, every
    registered component is checkpointed; any exception restores all of
    them and propagates unchanged.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owner: int | None = None
        self._components: dict[str, Checkpointable] = {}
        self._last_timestamp = 0
        self.committed = 0
        self.rolled_back = 0

    def register(self, name: str, component: Checkpointable) -> None:
        self._components[name] = component

    @property
    def last_timestamp(self) -> int:
        return self._last_timestamp

    def checkpoint(self) -> dict[str, Any]:
        return {name: c.snapshot() for name, c in self._components.items()}

    def restore(self, checkpoint: dict[str, Any]) -> None:
        for name, state in checkpoint.items():
            self._components[name].restore(state)

    @contextmanager
    def transaction(self, ctx: ExecutionContext) -> Iterator[ExecutionContext]:
        if self._owner == threading.get_ident():
            raise ReentrancyError("A transaction is already executing on this thread")

        with self._lock:
            self._owner = threading.get_ident()
            try:
                if ctx.timestamp < self._last_timestamp:
                    raise TransactionOrderError(
                        f"Timestamp {ctx.timestamp} precedes last admitted "
                        f"transaction at {self._last_timestamp}"
                    )
                self._last_timestamp = ctx.timestamp

                checkpoint = self.checkpoint()
                try:
                    yield ctx
                except BaseException as e:
                    self.restore(checkpoint)
                    self.rolled_back += 1
                    logger.warning(
                        "Transaction by %s at %d rolled back: %s: %s",
                        ctx.caller_id, ctx.timestamp, type(e).__name__, e,
                    )
                    raise
                self.committed += 1
            finally:
                self._owner = None

    def run(self, ctx: ExecutionContext, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute ``fn(ctx, *args, **kwargs)`` as one transaction."""
        with self.transaction(ctx):
            return fn(ctx, *args, **kwargs)
