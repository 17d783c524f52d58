from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Deque, Dict, Iterator, List, Optional, Set

from execution.models import Direction, OrderReport


class OrderState(str, Enum):
    PENDING = "PENDING"  # sent to the venue, no id yet
    OPEN = "OPEN"
    CANCELLING = "CANCELLING"


class UntrackedOrderError(RuntimeError):
    """An order id this engine never placed was handed back to it."""


@dataclass(frozen=True)
class OutstandingOrder:
    pending_id: int
    symbol: str
    price: int
    qty: int
    direction: Direction
    state: OrderState = OrderState.PENDING
    id: Optional[int] = None

    @property
    def is_buy(self) -> bool:
        return self.direction == Direction.BUY


class OrderTracker:
    """
    Pending, open and cancelling orders for one engine.

    Pending orders are keyed by a local id, the others by the venue id; a
    venue id lives in at most one of the open/cancelling maps. Ids that have
    been reconciled are remembered so a second closing report for the same
    order is recognised as a duplicate; only the most recent
    ``closed_id_limit`` of them are kept. Not thread safe; the engine lock
    guards every call.
    """

    CLOSED_ID_LIMIT = 10_000

    def __init__(self, closed_id_limit: int = CLOSED_ID_LIMIT):
        self._pending_ids = itertools.count(1)
        self._pending: Dict[int, OutstandingOrder] = {}
        self._open: Dict[int, OutstandingOrder] = {}
        self._cancelling: Dict[int, OutstandingOrder] = {}
        self._closed: Set[int] = set()
        self._closed_order: Deque[int] = deque()
        self._closed_id_limit = closed_id_limit
        # closing reports that raced ahead of their place-order response
        self._early: Dict[str, Dict[int, OrderReport]] = {}

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def add_pending(self, symbol: str, price: int, qty: int, direction: Direction) -> OutstandingOrder:
        order = OutstandingOrder(
            pending_id=next(self._pending_ids),
            symbol=symbol,
            price=price,
            qty=qty,
            direction=Direction(direction),
        )
        self._pending[order.pending_id] = order
        return order

    def drop_pending(self, pending_id: int) -> Optional[OutstandingOrder]:
        order = self._pending.pop(pending_id, None)
        if order is not None and not self.has_pending(order.symbol):
            self._early.pop(order.symbol, None)
        return order

    def promote(self, pending_id: int, report: OrderReport) -> OutstandingOrder:
        """Replace a pending record with the open order the venue accepted."""
        pending = self._pending.get(pending_id)
        if pending is None:
            raise UntrackedOrderError(f"no pending order {pending_id}")
        order = replace(
            pending,
            id=report.id,
            price=report.price,
            qty=report.original_qty,
            state=OrderState.OPEN,
        )
        self._open[report.id] = order
        return order

    def take_early_report(self, symbol: str, order_id: int) -> Optional[OrderReport]:
        held = self._early.get(symbol)
        return held.pop(order_id, None) if held else None

    def hold_early_report(self, report: OrderReport) -> bool:
        """Keep a closing report for an id we may be about to learn. False if nothing is pending."""
        if report.open or not self.has_pending(report.symbol) or report.id in self._closed:
            return False
        self._early.setdefault(report.symbol, {})[report.id] = report
        return True

    def begin_cancel(self, order_id: int) -> Optional[OutstandingOrder]:
        order = self._open.pop(order_id, None)
        if order is None:
            return None
        order = replace(order, state=OrderState.CANCELLING)
        self._cancelling[order_id] = order
        return order

    def abort_cancel(self, order_id: int) -> Optional[OutstandingOrder]:
        """Cancel didn't go through; the order is open again unless it closed meanwhile."""
        order = self._cancelling.pop(order_id, None)
        if order is None:
            return None
        order = replace(order, state=OrderState.OPEN)
        self._open[order_id] = order
        return order

    def close(self, order_id: int) -> None:
        self._open.pop(order_id, None)
        self._cancelling.pop(order_id, None)
        if order_id in self._closed:
            return
        self._closed.add(order_id)
        self._closed_order.append(order_id)
        if len(self._closed_order) > self._closed_id_limit:
            self._closed.discard(self._closed_order.popleft())

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def get(self, order_id: int) -> Optional[OutstandingOrder]:
        return self._open.get(order_id) or self._cancelling.get(order_id)

    def is_open(self, order_id: int) -> bool:
        return order_id in self._open

    def is_closed(self, order_id: int) -> bool:
        return order_id in self._closed

    def is_known(self, order_id: int) -> bool:
        return order_id in self._open or order_id in self._cancelling or order_id in self._closed

    def has_pending(self, symbol: str) -> bool:
        return any(o.symbol == symbol for o in self._pending.values())

    def open_orders(self) -> List[OutstandingOrder]:
        return list(self._open.values())

    def outstanding(self, symbol: Optional[str] = None, include_pending: bool = True) -> List[OutstandingOrder]:
        return [o for o in self._iter_all(include_pending) if symbol is None or o.symbol == symbol]

    def _iter_all(self, include_pending: bool) -> Iterator[OutstandingOrder]:
        if include_pending:
            yield from self._pending.values()
        yield from self._open.values()
        yield from self._cancelling.values()
