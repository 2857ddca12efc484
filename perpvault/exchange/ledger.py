"""
PerpVault Asset Ledger

The venue never holds balances itself; collateral, the staking token and
incentive tokens live on an external fungible-balance ledger. This module
defines the interface the venue needs from that ledger, an in-memory
implementation used by tests and local runs, and the transfer queue that
defers every value movement until internal accounting is complete.

Settlement order:
  1. Pulls (user -> venue) in the order they were queued
  2. Pushes (venue -> user) in the order they were queued
  A failing transfer unwinds the transfers already applied and re-raises,
  so the operation that queued them is rejected as a whole.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Protocol, Tuple, runtime_checkable

from ..exceptions import InsufficientBalanceError, InvalidAmountError

logger = logging.getLogger(__name__)


@runtime_checkable
class AssetLedger(Protocol):
    """Fungible balances keyed by (asset, account)."""

    def balance_of(self, asset: str, account: str) -> int:
        ...

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        ...


class InMemoryLedger:
    """Dictionary-backed AssetLedger."""

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], int] = {}

    def balance_of(self, asset: str, account: str) -> int:
        return self._balances.get((asset, account), 0)

    def mint(self, asset: str, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmountError("Mint amount must be positive")
        self._balances[(asset, account)] = self.balance_of(asset, account) + amount

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmountError("Transfer amount must be non-negative")
        balance = self.balance_of(asset, sender)
        if balance < amount:
            raise InsufficientBalanceError(
                f"{sender} holds {balance} {asset}, needs {amount}"
            )
        self._balances[(asset, sender)] = balance - amount
        self._balances[(asset, recipient)] = self.balance_of(asset, recipient) + amount

    def total_supply(self, asset: str) -> int:
        return sum(v for (a, _), v in self._balances.items() if a == asset)


# ---------------------------------------------------------------------------
# Deferred transfers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transfer:
    asset: str
    sender: str
    recipient: str
    amount: int


class TransferQueue:
    """Value movements collected during an operation, settled after commit."""

    def __init__(self, venue_account: str) -> None:
        self.venue_account = venue_account
        self._pulls: List[Transfer] = []
        self._pushes: List[Transfer] = []

    def pull(self, asset: str, account: str, amount: int) -> None:
        """Queue *amount* of *asset* from *account* into the venue."""
        if amount > 0:
            self._pulls.append(Transfer(asset, account, self.venue_account, amount))

    def push(self, asset: str, account: str, amount: int) -> None:
        """Queue *amount* of *asset* from the venue to *account*."""
        if amount > 0:
            self._pushes.append(Transfer(asset, self.venue_account, account, amount))

    @property
    def pending(self) -> List[Transfer]:
        return self._pulls + self._pushes

    def settle(self, ledger: AssetLedger) -> None:
        applied: List[Transfer] = []
        try:
            for t in self.pending:
                ledger.transfer(t.asset, t.sender, t.recipient, t.amount)
                applied.append(t)
        except Exception:
            logger.warning("Settlement failed after %d transfer(s), unwinding", len(applied))
            for t in reversed(applied):
                ledger.transfer(t.asset, t.recipient, t.sender, t.amount)
            raise
        self._pulls.clear()
        self._pushes.clear()
