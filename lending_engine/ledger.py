"""Token custody ledger — every asset movement in the engine goes through here."""
from __future__ import annotations

import logging
from typing import Callable

from .config import AssetConfig
from .errors import InsufficientBalance, InvariantViolation, UnknownAsset
from .executor import CheckpointMixin
from .fixed_point import bps_of

logger = logging.getLogger(__name__)

# hook(asset, sender, receiver, amount_received)
TransferHook = Callable[[str, str, str, int], None]


class TokenLedger(CheckpointMixin):
    """Balances keyed by asset then account.

    Assets may charge a fee on transfer (burned) and may carry a transfer
    hook that calls back into arbitrary code after the balances move, so a
    declared amount is never a reliable measure of what arrived. Callers
    use ``transfer_measured`` and work with the receiver's balance delta.
    """

    _checkpoint_fields = ("_balances", "_supply")

    def __init__(self, assets: dict[str, AssetConfig]) -> None:
        self._assets = dict(assets)
        self._balances: dict[str, dict[str, int]] = {name: {} for name in assets}
        self._supply: dict[str, int] = {name: 0 for name in assets}
        self._hooks: dict[str, TransferHook] = {}

    def _require(self, asset: str) -> dict[str, int]:
        try:
            return self._balances[asset]
        except KeyError:
            raise UnknownAsset(f"Unknown asset '{asset}'") from None

    def decimals(self, asset: str) -> int:
        if asset not in self._assets:
            raise UnknownAsset(f"Unknown asset '{asset}'")
        return self._assets[asset].decimals

    def set_transfer_hook(self, asset: str, hook: TransferHook | None) -> None:
        self._require(asset)
        if hook is None:
            self._hooks.pop(asset, None)
        else:
            self._hooks[asset] = hook

    def balance_of(self, asset: str, account: str) -> int:
        return self._require(asset).get(account, 0)

    def total_supply(self, asset: str) -> int:
        self._require(asset)
        return self._supply[asset]

    def mint(self, asset: str, account: str, amount: int) -> None:
        if amount < 0:
            raise InvariantViolation(f"Negative mint: {amount}")
        balances = self._require(asset)
        balances[account] = balances.get(account, 0) + amount
        self._supply[asset] += amount

    def burn(self, asset: str, account: str, amount: int) -> None:
        if amount < 0:
            raise InvariantViolation(f"Negative burn: {amount}")
        balances = self._require(asset)
        held = balances.get(account, 0)
        if held < amount:
            raise InsufficientBalance(
                f"{account} holds {held} {asset}, cannot burn {amount}"
            )
        balances[account] = held - amount
        self._supply[asset] -= amount

    def transfer(self, asset: str, sender: str, receiver: str, amount: int) -> None:
        """Move ``amount`` from sender; the receiver gets it minus any transfer fee."""
        if amount < 0:
            raise InvariantViolation(f"Negative transfer: {amount}")
        balances = self._require(asset)
        held = balances.get(sender, 0)
        if held < amount:
            raise InsufficientBalance(
                f"{sender} holds {held} {asset}, cannot transfer {amount}"
            )
        fee = bps_of(amount, self._assets[asset].transfer_fee_bps)
        received = amount - fee
        balances[sender] = held - amount
        balances[receiver] = balances.get(receiver, 0) + received
        self._supply[asset] -= fee

        hook = self._hooks.get(asset)
        if hook is not None and amount:
            hook(asset, sender, receiver, received)

    def transfer_measured(
        self, asset: str, sender: str, receiver: str, amount: int
    ) -> int:
        """Transfer and return the receiver's actual balance increase."""
        before = self.balance_of(asset, receiver)
        self.transfer(asset, sender, receiver, amount)
        received = self.balance_of(asset, receiver) - before
        if received < 0:
            raise InvariantViolation(f"{receiver} balance of {asset} fell during a transfer in")
        if received != amount:
            logger.debug(
                "Transfer of %d %s to %s measured as %d", amount, asset, receiver, received
            )
        return received
