"""Sequencer uptime feed — gates price reads on chains that can halt."""
from __future__ import annotations

import logging

from ..errors import Unauthorized
from ..executor import CheckpointMixin
from ..models import ExecutionContext

logger = logging.getLogger(__name__)


class SequencerUptimeFeed(CheckpointMixin):
    """Tracks whether the execution layer is live and since when."""

    _checkpoint_fields = ("_is_up", "_started_at")

    def __init__(self, admins: tuple[str, ...], grace_period: int) -> None:
        self._admins = frozenset(admins)
        self.grace_period = grace_period
        self._is_up = True
        self._started_at = 0

    @property
    def is_up(self) -> bool:
        return self._is_up

    @property
    def started_at(self) -> int:
        return self._started_at

    def set_status(self, ctx: ExecutionContext, is_up: bool) -> None:
        if ctx.caller_id not in self._admins:
            raise Unauthorized(f"{ctx.caller_id} may not report sequencer status")
        if is_up != self._is_up:
            logger.info(
                "Sequencer %s at %d", "recovered" if is_up else "halted", ctx.timestamp
            )
            self._started_at = ctx.timestamp
        self._is_up = is_up

    def is_execution_live(self, ctx: ExecutionContext) -> bool:
        """Live only when up and past the grace period since the last change."""
        if not self._is_up:
            return False
        return ctx.timestamp - self._started_at > self.grace_period
