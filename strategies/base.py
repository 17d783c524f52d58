from __future__ import annotations

import logging
from typing import Optional

from engine.trading_engine import TradingEngine
from execution.errors import ApiError
from execution.models import OrderReport, Quote


class Strategy:
    """A decision loop driven by the engine's quote and order callbacks.

    Subclasses keep their own state on the instance and react in
    ``on_quote`` / ``on_order``; ``attach`` wires both into an engine.
    """

    name = "strategy"
    wants_quotes = True

    def __init__(self, symbol: str):
        self.symbol = symbol
        self.engine: Optional[TradingEngine] = None
        self.logger = logging.getLogger(f"strategy.{self.name}")

    def attach(self, engine: TradingEngine) -> None:
        self.engine = engine
        engine.track_orders(self.symbol, self.on_order)
        if self.wants_quotes:
            engine.track_quotes(self.symbol, self._on_quote_safely)
        self.logger.info("strategy_attached name=%s symbol=%s venue=%s", self.name, self.symbol, engine.venue.name)

    def on_order(self, report: OrderReport) -> None:
        if report.open:
            return
        self.logger.info(
            "completed direction=%s order_id=%s filled=%s position=%s profit=%s",
            report.direction.value,
            report.id,
            report.filled_qty,
            self.engine.position(self.symbol),
            self.engine.net_profit,
        )

    def on_quote(self, quote: Quote) -> None:
        pass

    def _on_quote_safely(self, quote: Quote) -> None:
        try:
            self.on_quote(quote)
        except (ApiError, ValueError) as exc:
            self.logger.error("trading_error strategy=%s symbol=%s error=%s", self.name, self.symbol, exc)
