"""Flash-loan strategy protocol — composed operations run inside a loan."""
from typing import Any, Protocol

from ..models import ExecutionContext, FlashLoan


class FlashLoanStrategy(Protocol):
    """Callback invoked with borrowed funds; must return principal plus fee."""

    def on_flash_loan(
        self, ctx: ExecutionContext, loan: FlashLoan, params: dict[str, Any]
    ) -> None: ...
