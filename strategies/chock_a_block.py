from __future__ import annotations

from typing import Optional

from engine.trading_engine import TradingEngine
from execution.models import OrderReport, Quote
from strategies.base import Strategy


class ChockABlock(Strategy):
    """
    Accumulate ``target_qty`` shares by lifting the best ask in blocks.

    One order at a time: quote, bid at the best ask (capped at
    ``max_price``) for up to ``max_block`` shares, wait for it to close or
    time out, repeat until the target is held.
    """

    name = "chock_a_block"

    def __init__(
        self,
        symbol: str,
        target_qty: int = 100_000,
        max_price: int = 99_999,
        max_block: int = 1000,
        order_timeout: Optional[float] = 5.0,
    ):
        super().__init__(symbol)
        self.target_qty = target_qty
        self.max_price = max_price
        self.max_block = max_block
        self.order_timeout = order_timeout
        self._start_position = 0

    def attach(self, engine: TradingEngine) -> None:
        self._start_position = engine.position(self.symbol)
        super().attach(engine)

    @property
    def remaining(self) -> int:
        bought = self.engine.position(self.symbol) - self._start_position
        return max(self.target_qty - bought, 0)

    @property
    def done(self) -> bool:
        return self.remaining == 0

    def on_order(self, report: OrderReport) -> None:
        if report.open:
            return
        self.logger.info(
            "block_closed order_id=%s filled=%s fills=%s remaining=%s",
            report.id, report.filled_qty, len(report.fills), self.remaining,
        )

    def on_quote(self, quote: Quote) -> None:
        if quote.ask is None or quote.ask_depth <= 0:
            return
        remaining = self.remaining
        if remaining == 0:
            return
        if self.engine.outstanding_orders(self.symbol):
            return

        qty = min(quote.ask_depth, self.max_block, remaining)
        price = min(quote.ask, self.max_price)
        self.logger.info("buying_block remaining=%s qty=%s price=%s", remaining, qty, price)
        self.engine.buy(self.symbol, price, qty, timeout=self.order_timeout)
