from __future__ import annotations

from typing import Optional, Tuple

from execution.models import Quote
from strategies.base import Strategy
from strategies.indicators import highest, lowest


class MarketMaker(Strategy):
    """Shared market profiling for the two-sided strategies."""

    profile_window = 7
    min_spread = 50

    def profile(self) -> Optional[Tuple[int, int]]:
        """Lowest bid and highest ask over the last ``profile_window`` quotes, or None while warming up."""
        bid = self.engine.map_reduce_last_quotes(self.symbol, self.profile_window, lambda q: q.bid, lowest)
        ask = self.engine.map_reduce_last_quotes(self.symbol, self.profile_window, lambda q: q.ask, highest)
        if bid is None or ask is None:
            return None
        return bid, ask


class SellSide(MarketMaker):
    """
    Buy at the recent low bid and sell at the recent high ask.

    Orders priced worse than the current profile are pulled; new ones are
    only placed when the spread is wide enough to be worth it, one per side,
    and never selling shares we don't hold.
    """

    name = "sell_side"

    def __init__(
        self,
        symbol: str,
        margin: int = 0,
        block_size: int = 250,
        max_position: int = 700,
        order_timeout: float = 30.0,
    ):
        super().__init__(symbol)
        self.margin = margin
        self.block_size = block_size
        self.max_position = max_position
        self.order_timeout = order_timeout

    def on_quote(self, quote: Quote) -> None:
        profile = self.profile()
        if profile is None:
            return
        bid, ask = profile

        buy_price = bid + self.margin
        self.engine.cancel_orders_for_stock(self.symbol, lambda o: o.is_buy and o.price < buy_price)
        sell_price = ask - self.margin
        self.engine.cancel_orders_for_stock(self.symbol, lambda o: not o.is_buy and o.price > sell_price)

        if ask - bid < self.min_spread:
            return

        position = self.engine.position(self.symbol)
        if self.engine.outstanding_buy_count(self.symbol) == 0 and position < self.max_position:
            self.logger.info("placing_bid price=%s qty=%s position=%s", buy_price, self.block_size, position)
            self.engine.buy(self.symbol, buy_price, self.block_size, timeout=self.order_timeout)

        position = self.engine.position(self.symbol)
        if self.engine.outstanding_sell_count(self.symbol) == 0 and position > 0:
            self.logger.info("placing_ask price=%s qty=%s position=%s", sell_price, self.block_size, position)
            self.engine.sell(self.symbol, sell_price, self.block_size, timeout=self.order_timeout)
