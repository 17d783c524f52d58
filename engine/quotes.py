from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, List, Optional, TypeVar

from execution.models import Quote

T = TypeVar("T")

DEFAULT_BUFFER_SIZE = 20


class QuoteHistory:
    """The last ``buffer_size`` quotes per symbol, oldest evicted first."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.buffer_size = buffer_size
        self._quotes: Dict[str, Deque[Quote]] = {}
        self._last_trade: Dict[str, int] = {}

    def append(self, quote: Quote) -> None:
        history = self._quotes.get(quote.symbol)
        if history is None:
            history = self._quotes[quote.symbol] = deque(maxlen=self.buffer_size)
        history.append(quote)
        if quote.last_trade_price is not None:
            self._last_trade[quote.symbol] = quote.last_trade_price

    def history(self, symbol: str) -> List[Quote]:
        return list(self._quotes.get(symbol, ()))

    def last(self, symbol: str) -> Optional[Quote]:
        history = self._quotes.get(symbol)
        return history[-1] if history else None

    def last_trade_price(self, symbol: str) -> Optional[int]:
        return self._last_trade.get(symbol)

    def map_reduce_last(
        self,
        symbol: str,
        count: int,
        map_fn: Callable[[Quote], Optional[T]],
        reduce_fn: Callable[[List[T]], T],
    ) -> Optional[T]:
        """
        Walk newest to oldest, keep the first ``count`` non-None ``map_fn``
        results and reduce them (newest first). Returns None when fewer than
        ``count`` quotes produced a value: not enough data is not zero.
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        selected: List[T] = []
        for quote in reversed(self.history(symbol)):
            if len(selected) >= count:
                break
            value = map_fn(quote)
            if value is not None:
                selected.append(value)
        if len(selected) < count:
            return None
        return reduce_fn(selected)
