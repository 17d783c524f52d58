from __future__ import annotations

from execution.models import Quote
from strategies.sell_side import MarketMaker


def slewed_qty(block_size: int, position: int, buffer: int, direction: int, minimum: int = 5) -> int:
    """
    Order size shrunk in proportion to how far ``position`` already leans
    the same way as the order (``direction`` +1 buy, -1 sell).
    """
    lean = position / buffer
    if lean * direction <= 0:
        return block_size
    return int(max(minimum, block_size * (1 - abs(lean))))


class DuelingBulldozers(MarketMaker):
    """
    Quote just inside the recent spread in small, short-lived blocks.

    Bids ``margin`` above the low bid and asks ``margin`` below the high
    ask, cancelling anything priced more aggressively than that, and shrinks
    the order size as the position approaches ``+/-buffer``.
    """

    name = "dueling_bulldozers"

    def __init__(
        self,
        symbol: str,
        margin: int = 50,
        block_size: int = 50,
        buffer: int = 500,
        order_timeout: float = 6.0,
    ):
        super().__init__(symbol)
        self.margin = margin
        self.block_size = block_size
        self.buffer = buffer
        self.order_timeout = order_timeout

    def on_quote(self, quote: Quote) -> None:
        profile = self.profile()
        if profile is None:
            return
        bid, ask = profile
        if ask - bid < self.min_spread:
            return

        buy_price = bid + self.margin
        self.engine.cancel_orders_for_stock(self.symbol, lambda o: o.is_buy and o.price > buy_price)
        sell_price = ask - self.margin
        self.engine.cancel_orders_for_stock(self.symbol, lambda o: not o.is_buy and o.price < sell_price)

        buys = self.engine.outstanding_buy_count(self.symbol)
        sells = self.engine.outstanding_sell_count(self.symbol)
        position = self.engine.position(self.symbol)

        if buys == 0 and position < self.buffer:
            qty = slewed_qty(self.block_size, position, self.buffer, +1)
            self.logger.info("placing_bid price=%s qty=%s position=%s", buy_price, qty, position)
            self.engine.buy(self.symbol, buy_price, qty, timeout=self.order_timeout)

        if sells == 0 and position > -self.buffer:
            qty = slewed_qty(self.block_size, position, self.buffer, -1)
            self.logger.info("placing_ask price=%s qty=%s position=%s", sell_price, qty, position)
            self.engine.sell(self.symbol, sell_price, qty, timeout=self.order_timeout)
