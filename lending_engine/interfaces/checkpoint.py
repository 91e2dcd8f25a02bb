"""Checkpointable protocol — components that take part in rollback."""
from typing import Any, Protocol


class Checkpointable(Protocol):
    """State that can be captured before a transaction and restored on abort."""

    def snapshot(self) -> Any: ...

    def restore(self, state: Any) -> None: ...
