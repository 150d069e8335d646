"""
In-memory fungible settlement asset.

Stands in for the token contract that holds custody of deposited collateral.
Transfers move units between holders; they never create or destroy them.
Only mint() changes total supply.

When bound to a TransactionManager, every mint and transfer joins the
current transaction (or runs as its own), so a rejected call rolls back
the balances it moved.
"""

import threading
from contextlib import nullcontext
from typing import ContextManager, Dict, Optional

from batchsettle.core.exceptions import BalanceError, Reason, ValidationError
from batchsettle.core.transactions import TransactionManager
from batchsettle.core.units import DECIMALS, require_amount


class InMemoryAsset:

    def __init__(
        self,
        symbol: str = "USDC",
        decimals: int = DECIMALS,
        tx: Optional[TransactionManager] = None,
    ) -> None:
        self.symbol   = symbol
        self.decimals = decimals
        self.tx       = tx
        self._balances: Dict[str, int] = {}
        self._supply = 0
        self._lock = threading.Lock()

    def mint(self, to: str, amount: int) -> None:
        if not to:
            raise ValidationError(Reason.INVALID_ADDRESS, "cannot mint to the null identity")
        require_amount(amount)
        with self._joined(), self._lock:
            if self.tx is not None:
                self.tx.remember(self._balances, to)
                self.tx.remember_attr(self, "_supply")
            self._balances[to] = self._balances.get(to, 0) + amount
            self._supply += amount

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(holder, 0)

    @property
    def total_supply(self) -> int:
        return self._supply

    def transfer(self, src: str, dst: str, amount: int) -> None:
        if not dst:
            raise ValidationError(Reason.INVALID_ADDRESS, "cannot transfer to the null identity")
        require_amount(amount)
        with self._joined(), self._lock:
            balance = self._balances.get(src, 0)
            if balance < amount:
                raise BalanceError(
                    Reason.INSUFFICIENT_ASSET_BALANCE,
                    f"{src} holds {balance} {self.symbol}, needs {amount}",
                    {"holder": src, "balance": balance, "amount": amount},
                )
            if self.tx is not None:
                self.tx.remember(self._balances, src)
                self.tx.remember(self._balances, dst)
            self._balances[src] = balance - amount
            self._balances[dst] = self._balances.get(dst, 0) + amount

    def _joined(self) -> ContextManager:
        return self.tx.atomic() if self.tx is not None else nullcontext()

    def __repr__(self) -> str:
        return f"InMemoryAsset(symbol={self.symbol!r}, supply={self._supply})"
