from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from execution.models import Direction, OrderReport


class Portfolio:
    """Cash balance and per-symbol share positions, changed only by reconciling closed orders.

    Balance and prices are integer cents. Positions may go negative (short).
    Each fill is funded at its own execution price, not the order's limit.
    """

    def __init__(self, balance: int = 0, positions: Optional[Dict[str, int]] = None):
        self.logger = logging.getLogger("portfolio")
        self._lock = threading.Lock()
        self._balance = int(balance)
        self._positions: Dict[str, int] = {s: int(q) for s, q in (positions or {}).items()}
        self._income = 0
        self._expenses = 0

    @property
    def balance(self) -> int:
        with self._lock:
            return self._balance

    @property
    def net_profit(self) -> int:
        """Income minus expenses since this portfolio was created (restored balance excluded)."""
        with self._lock:
            return self._income - self._expenses

    def position(self, symbol: str) -> int:
        with self._lock:
            return self._positions.get(symbol, 0)

    def positions_snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._positions)

    def apply_closed_order(self, report: OrderReport) -> int:
        """Fold the fills of a closed order into cash and position. Returns the shares filled."""
        remaining = report.original_qty
        filled = 0
        notional = 0
        for fill in report.fills:
            qty = min(fill.qty, remaining)
            if qty < fill.qty:
                self.logger.warning(
                    "overfill order_id=%s symbol=%s original_qty=%s fill_qty=%s clipped_to=%s",
                    report.id, report.symbol, report.original_qty, fill.qty, qty,
                )
            if qty <= 0:
                continue
            remaining -= qty
            filled += qty
            notional += qty * fill.price

        with self._lock:
            position = self._positions.get(report.symbol, 0)
            if report.direction == Direction.BUY:
                # spent the money, have more of the stock
                self._balance -= notional
                self._expenses += notional
                self._positions[report.symbol] = position + filled
            else:
                self._balance += notional
                self._income += notional
                self._positions[report.symbol] = position - filled
        return filled

    def net_asset_value(self, last_price: Callable[[str], Optional[int]]) -> Optional[int]:
        """Cash plus held shares marked at their last trade; None if any held symbol can't be priced."""
        with self._lock:
            nav = self._balance
            held = {s: q for s, q in self._positions.items() if q != 0}
        for symbol, qty in held.items():
            price = last_price(symbol)
            if price is None:
                return None
            nav += qty * price
        return nav
