from __future__ import annotations

from engine.trading_engine import TradingEngine
from strategies.base import Strategy


class FirstSteps(Strategy):
    """Buy one block of shares at a fixed limit, once."""

    name = "first_steps"
    wants_quotes = False

    def __init__(self, symbol: str, price: int = 10000, qty: int = 100):
        super().__init__(symbol)
        self.price = price
        self.qty = qty
        self.report = None

    def attach(self, engine: TradingEngine) -> None:
        super().attach(engine)
        self.logger.info("placing_order symbol=%s qty=%s price=%s", self.symbol, self.qty, self.price)
        self.report = engine.buy(self.symbol, self.price, self.qty)
        self.logger.info(
            "order_response order_id=%s open=%s filled=%s",
            self.report.id, self.report.open, self.report.filled_qty,
        )
