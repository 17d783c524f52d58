import json
import tempfile
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

from engine.orders import OrderState, OrderTracker, OutstandingOrder, UntrackedOrderError
from engine.state_store import EngineStateStore
from engine.trading_engine import TradingEngine
from execution.errors import UnexpectedStatusError
from execution.models import Direction, Fill, OrderReport, OrderType, Quote
from strategies.chock_a_block import ChockABlock
from strategies.dueling_bulldozers import DuelingBulldozers, slewed_qty
from strategies.first_steps import FirstSteps
from strategies.indicators import average, highest, lowest
from strategies.sell_side import SellSide

NOW = datetime(2016, 2, 13, 9, 30, tzinfo=timezone.utc)
SYMBOL = "FOOBAR"


def make_report(order_id, direction=Direction.BUY, price=50, qty=100, fills=(), open=True, symbol=SYMBOL):
    fills = [Fill(price=p, qty=q, timestamp=NOW) for p, q in fills]
    filled = sum(f.qty for f in fills)
    return OrderReport(
        venue="TESTEX",
        symbol=symbol,
        direction=direction,
        original_qty=qty,
        outstanding_qty=0 if not open else qty - filled,
        price=price,
        order_type=OrderType.LIMIT,
        id=order_id,
        account="EXB123456",
        timestamp=NOW,
        fills=fills,
        total_filled=filled,
        open=open,
    )


def make_quote(bid=None, ask=None, ask_depth=0, last=None, symbol=SYMBOL):
    return Quote(
        venue="TESTEX",
        symbol=symbol,
        bid=bid,
        ask=ask,
        bid_size=0,
        ask_size=0,
        bid_depth=0,
        ask_depth=ask_depth,
        last_trade_price=last,
        last_trade_size=None,
        last_trade_time=None,
        quote_time=NOW,
    )


class FakeFeed:
    def __init__(self, callback):
        self.callback = callback
        self.stopped = False

    def push(self, item):
        self.callback(item)

    def stop(self):
        self.stopped = True


class FakeVenue:
    name = "TESTEX"
    account = "EXB123456"

    def __init__(self):
        self.next_id = 100
        self.placed = []
        self.cancelled = []
        self.executions = {}
        self.tapes = {}
        self.on_place = None
        self.place_error = None
        self.cancel_fills = {}
        self.cancel_leaves_open = False
        self.on_cancel = None

    def place_order_for_stock(self, symbol, price, qty, direction, order_type=OrderType.LIMIT):
        if self.place_error is not None:
            raise self.place_error
        self.next_id += 1
        self.placed.append((Direction(direction), symbol, price, qty))
        report = make_report(self.next_id, Direction(direction), price, qty)
        if self.on_place is not None:
            report = self.on_place(report) or report
        return report

    def cancel_order_for_stock(self, symbol, order_id):
        self.cancelled.append(order_id)
        if self.on_cancel is not None:
            self.on_cancel(order_id)
        direction, _, price, qty = self.placed[order_id - 101]
        return make_report(
            order_id, direction, price, qty,
            fills=self.cancel_fills.get(order_id, ()),
            open=self.cancel_leaves_open,
        )

    def executions_for_stock(self, symbol, callback):
        feed = self.executions[symbol] = FakeFeed(callback)
        return feed

    def ticker_tape_for_stock(self, symbol, callback):
        feed = self.tapes[symbol] = FakeFeed(callback)
        return feed


class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.venue = FakeVenue()
        self.timers = []
        self.engine = self.make_engine()
        self.reports = []
        self.quotes = []

    def tearDown(self):
        self.engine.close()

    def make_engine(self, **kwargs):
        def timer_factory(interval, function, args=()):
            timer = FakeTimer(interval, function, args)
            self.timers.append(timer)
            return timer

        return TradingEngine(self.venue, timer_factory=timer_factory, **kwargs)

    def track(self):
        self.engine.track_orders(SYMBOL, self.reports.append)
        self.engine.track_quotes(SYMBOL, self.quotes.append)

    def push_execution(self, report):
        self.venue.executions[SYMBOL].push(report)
        self.engine.flush()

    def push_quotes(self, *quotes):
        for quote in quotes:
            self.venue.tapes[SYMBOL].push(quote)
        self.engine.flush()


class TestReconciliation(EngineTestCase):
    def test_fill_reconciled_at_fill_price(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100)
        self.assertEqual(len(self.engine.outstanding_orders(SYMBOL)), 1)

        self.push_execution(make_report(placed.id, price=50, fills=[(49, 100)], open=False))

        self.assertEqual(self.engine.balance, -4900)
        self.assertEqual(self.engine.position(SYMBOL), 100)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])
        self.assertEqual([r.id for r in self.reports], [placed.id])

    def test_sell_credits_balance_and_goes_short(self):
        self.track()
        placed = self.engine.sell(SYMBOL, 60, 10)
        self.push_execution(make_report(placed.id, Direction.SELL, 60, 10, fills=[(61, 4), (60, 6)], open=False))
        self.assertEqual(self.engine.balance, 61 * 4 + 60 * 6)
        self.assertEqual(self.engine.position(SYMBOL), -10)
        self.assertEqual(self.engine.net_profit, 604)

    def test_duplicate_close_applied_once(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100)
        closing = make_report(placed.id, fills=[(50, 100)], open=False)
        self.push_execution(closing)
        self.push_execution(closing)
        self.assertEqual(self.engine.balance, -5000)
        self.assertEqual(self.engine.position(SYMBOL), 100)
        self.assertEqual(len(self.reports), 2)

    def test_immediately_filled_order_never_outstanding(self):
        self.track()
        self.venue.on_place = lambda r: make_report(r.id, fills=[(48, 100)], open=False)
        self.engine.buy(SYMBOL, 50, 100, timeout=5)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])
        self.assertEqual(self.engine.balance, -4800)
        self.assertEqual(self.timers, [])

    def test_partial_fill_keeps_order_outstanding(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100)
        self.push_execution(make_report(placed.id, fills=[(50, 40)], open=True))
        self.assertEqual(self.engine.position(SYMBOL), 0)
        self.assertEqual(len(self.engine.outstanding_orders(SYMBOL)), 1)

    def test_overfill_clipped_to_order_size(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 10)
        self.push_execution(make_report(placed.id, qty=10, fills=[(50, 8), (50, 8)], open=False))
        self.assertEqual(self.engine.position(SYMBOL), 10)
        self.assertEqual(self.engine.balance, -500)

    def test_foreign_order_ignored(self):
        self.track()
        self.push_execution(make_report(9999, fills=[(50, 100)], open=False))
        self.assertEqual(self.engine.balance, 0)
        self.assertEqual(len(self.reports), 1)

    def test_callback_sees_reconciled_state(self):
        seen = []
        self.engine.track_orders(SYMBOL, lambda r: seen.append((self.engine.position(SYMBOL), r.open)))
        placed = self.engine.buy(SYMBOL, 50, 100)
        self.push_execution(make_report(placed.id, fills=[(50, 100)], open=False))
        self.assertEqual(seen, [(100, False)])

    def test_early_close_before_place_response(self):
        self.track()

        def race(report):
            self.venue.executions[SYMBOL].push(make_report(report.id, fills=[(50, 100)], open=False))
            self.engine.flush()

        self.venue.on_place = race
        self.engine.buy(SYMBOL, 50, 100, timeout=5)

        self.assertEqual(self.engine.position(SYMBOL), 100)
        self.assertEqual(self.engine.balance, -5000)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])
        self.assertEqual(self.timers, [])

    def test_gateway_failure_leaves_nothing_pending(self):
        self.venue.place_error = UnexpectedStatusError(400, "POST", "venues/TESTEX/stocks/FOOBAR/orders", "bad")
        with self.assertRaises(UnexpectedStatusError):
            self.engine.buy(SYMBOL, 50, 100)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])

    def test_invalid_quantity_rejected(self):
        with self.assertRaises(ValueError):
            self.engine.buy(SYMBOL, 50, 0)
        self.assertEqual(self.venue.placed, [])

    def test_pending_order_visible_while_in_flight(self):
        seen = []
        self.venue.on_place = lambda r: seen.append(self.engine.outstanding_orders(SYMBOL))
        self.engine.buy(SYMBOL, 50, 100)
        self.assertEqual(len(seen[0]), 1)
        self.assertEqual(seen[0][0].state, OrderState.PENDING)
        self.assertIsNone(seen[0][0].id)
        self.assertEqual(self.engine.outstanding_buy_count(SYMBOL), 1)
        self.assertEqual(self.engine.outstanding_sell_count(SYMBOL), 0)


class TestCancellation(EngineTestCase):
    def test_timeout_cancel_then_duplicate_close_applied_once(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100, timeout=5)
        self.assertEqual(len(self.timers), 1)
        self.assertTrue(self.timers[0].started)
        self.assertEqual(self.timers[0].interval, 5)

        self.timers[0].fire()
        self.assertEqual(self.venue.cancelled, [placed.id])
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])

        self.push_execution(make_report(placed.id, open=False))
        self.assertEqual(self.engine.balance, 0)
        self.assertEqual(self.engine.position(SYMBOL), 0)

    def test_timeout_after_fill_does_nothing(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100, timeout=5)
        self.push_execution(make_report(placed.id, fills=[(50, 100)], open=False))
        self.assertTrue(self.timers[0].cancelled)
        self.timers[0].fire()
        self.assertEqual(self.venue.cancelled, [])

    def test_cancel_after_partial_fill_credits_fills(self):
        placed = self.engine.buy(SYMBOL, 50, 100)
        self.venue.cancel_fills[placed.id] = [(50, 30)]
        order = self.engine.outstanding_orders(SYMBOL)[0]
        report = self.engine.cancel_order(order)
        self.assertEqual(report.filled_qty, 30)
        self.assertEqual(self.engine.position(SYMBOL), 30)
        self.assertEqual(self.engine.balance, -1500)
        self.assertIsNone(self.engine.cancel_order(order))

    def test_feed_close_during_cancel_reconciled_once(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100, timeout=5)
        self.venue.cancel_fills[placed.id] = [(50, 100)]

        def race(order_id):
            self.venue.executions[SYMBOL].push(make_report(order_id, fills=[(50, 100)], open=False))
            self.engine.flush()

        self.venue.on_cancel = race
        self.timers[0].fire()

        self.assertEqual(self.engine.position(SYMBOL), 100)
        self.assertEqual(self.engine.balance, -5000)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])

    def test_cancel_still_open_reverts(self):
        self.engine.buy(SYMBOL, 50, 100)
        self.venue.cancel_leaves_open = True
        order = self.engine.outstanding_orders(SYMBOL)[0]
        self.engine.cancel_order(order)
        remaining = self.engine.outstanding_orders(SYMBOL)
        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0].state, OrderState.OPEN)

    def test_cancel_untracked_order(self):
        stranger = OutstandingOrder(pending_id=0, symbol=SYMBOL, price=1, qty=1, direction=Direction.BUY,
                                    state=OrderState.OPEN, id=4242)
        with self.assertRaises(UntrackedOrderError):
            self.engine.cancel_order(stranger)

    def test_cancel_pending_is_noop(self):
        pending = OutstandingOrder(pending_id=1, symbol=SYMBOL, price=1, qty=1, direction=Direction.BUY)
        self.assertIsNone(self.engine.cancel_order(pending))
        self.assertEqual(self.venue.cancelled, [])

    def test_cancel_orders_for_stock_with_predicate(self):
        cheap = self.engine.buy(SYMBOL, 40, 10)
        self.engine.buy(SYMBOL, 60, 10)
        self.engine.sell(SYMBOL, 70, 10)
        cancelled = self.engine.cancel_orders_for_stock(SYMBOL, lambda o: o.is_buy and o.price < 50)
        self.assertEqual([o.id for o in cancelled], [cheap.id])
        self.assertEqual(self.venue.cancelled, [cheap.id])
        self.assertEqual(len(self.engine.outstanding_orders(SYMBOL)), 2)


class TestQuotes(EngineTestCase):
    def test_history_is_bounded_fifo(self):
        self.engine.close()
        self.engine = self.make_engine(quote_buffer_size=3)
        self.track()
        self.push_quotes(*[make_quote(bid=p) for p in range(1, 6)])
        self.assertEqual([q.bid for q in self.engine.quote_history(SYMBOL)], [3, 4, 5])
        self.assertEqual(self.engine.last_quote(SYMBOL).bid, 5)
        self.assertEqual(len(self.quotes), 5)

    def test_map_reduce_skips_missing_values(self):
        self.track()
        self.push_quotes(make_quote(ask=None), make_quote(ask=5), make_quote(ask=6))
        asks = lambda q: q.ask
        self.assertIsNone(self.engine.map_reduce_last_quotes(SYMBOL, 3, asks, highest))
        self.assertEqual(self.engine.map_reduce_last_quotes(SYMBOL, 2, asks, highest), 6)
        self.assertEqual(self.engine.map_reduce_last_quotes(SYMBOL, 2, asks, lowest), 5)
        with self.assertRaises(ValueError):
            self.engine.map_reduce_last_quotes(SYMBOL, 0, asks, highest)

    def test_unknown_symbol_has_no_history(self):
        self.assertEqual(self.engine.quote_history("NOPE"), [])
        self.assertIsNone(self.engine.last_quote("NOPE"))

    def test_net_asset_value_marks_to_last_trade(self):
        self.track()
        placed = self.engine.buy(SYMBOL, 50, 100)
        self.push_execution(make_report(placed.id, fills=[(49, 100)], open=False))
        self.assertIsNone(self.engine.net_asset_value())

        self.push_quotes(make_quote(bid=54, ask=56, last=55), make_quote(bid=54, ask=56))
        self.assertEqual(self.engine.net_asset_value(), -4900 + 100 * 55)

    def test_duplicate_subscription_rejected(self):
        self.track()
        with self.assertRaises(RuntimeError):
            self.engine.track_orders(SYMBOL)
        with self.assertRaises(RuntimeError):
            self.engine.track_quotes(SYMBOL, self.quotes.append)


class TestShutdown(EngineTestCase):
    def test_close_cancels_open_orders_and_stops_feeds(self):
        self.track()
        first = self.engine.buy(SYMBOL, 50, 10, timeout=30)
        second = self.engine.sell(SYMBOL, 60, 10)
        self.engine.close()

        self.assertEqual(sorted(self.venue.cancelled), sorted([first.id, second.id]))
        self.assertTrue(self.timers[0].cancelled)
        self.assertTrue(self.venue.executions[SYMBOL].stopped)
        self.assertTrue(self.venue.tapes[SYMBOL].stopped)
        self.assertFalse(self.engine.status()["running"])

        self.engine.close()
        with self.assertRaises(RuntimeError):
            self.engine.buy(SYMBOL, 50, 10)

    def test_state_persisted_and_restored(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            self.engine.close()
            self.engine = self.make_engine(state_store=EngineStateStore(path))
            self.track()
            placed = self.engine.buy(SYMBOL, 50, 100)
            self.push_execution(make_report(placed.id, fills=[(49, 100)], open=False))
            self.engine.close()

            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["balance"], -4900)
            self.assertEqual(saved["positions"]["TESTEX"], {SYMBOL: 100})

            self.engine = self.make_engine(state_store=EngineStateStore(path))
            self.assertEqual(self.engine.balance, -4900)
            self.assertEqual(self.engine.position(SYMBOL), 100)
            self.assertEqual(self.engine.net_profit, 0)
            self.engine.close()

    def test_close_during_place_persists_orphan_fills(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state.json"
            self.engine.close()
            self.engine = self.make_engine(state_store=EngineStateStore(path))
            self.venue.cancel_fills[101] = [(50, 100)]
            closer = threading.Thread(target=self.engine.close)

            def close_mid_flight(report):
                closer.start()
                deadline = time.monotonic() + 2
                while self.engine.status()["running"] and time.monotonic() < deadline:
                    time.sleep(0.01)

            self.venue.on_place = close_mid_flight
            self.engine.buy(SYMBOL, 50, 100)
            closer.join(timeout=5)

            self.assertFalse(closer.is_alive())
            self.assertEqual(self.venue.cancelled, [101])
            self.assertEqual(self.engine.balance, -5000)
            saved = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(saved["balance"], -5000)
            self.assertEqual(saved["positions"]["TESTEX"], {SYMBOL: 100})

    def test_busy_callback_at_close_still_stops_dispatcher(self):
        entered, release = threading.Event(), threading.Event()

        def slow(quote):
            entered.set()
            release.wait(5)

        self.engine.track_quotes(SYMBOL, slow)
        self.venue.tapes[SYMBOL].push(make_quote(bid=1))
        self.assertTrue(entered.wait(2))

        self.engine.SHUTDOWN_TIMEOUT = 0.05
        self.engine.close()
        release.set()
        self.engine._dispatcher.join(timeout=2)
        self.assertFalse(self.engine._dispatcher.is_alive())

    def test_context_manager_closes(self):
        with self.make_engine() as engine:
            engine.buy(SYMBOL, 50, 10)
        self.assertEqual(len(self.venue.cancelled), 1)


class TestOrderTracker(unittest.TestCase):
    def test_closed_ids_are_bounded(self):
        tracker = OrderTracker(closed_id_limit=2)
        for order_id in (1, 2, 3):
            tracker.close(order_id)
        tracker.close(3)
        self.assertFalse(tracker.is_closed(1))
        self.assertTrue(tracker.is_closed(2))
        self.assertTrue(tracker.is_closed(3))

    def test_closed_order_is_not_outstanding(self):
        tracker = OrderTracker()
        pending = tracker.add_pending(SYMBOL, 50, 10, Direction.BUY)
        tracker.promote(pending.pending_id, make_report(7, qty=10))
        tracker.drop_pending(pending.pending_id)
        self.assertTrue(tracker.is_open(7))
        tracker.close(7)
        self.assertEqual(tracker.outstanding(SYMBOL), [])
        self.assertTrue(tracker.is_known(7))


class TestIndicators(unittest.TestCase):
    def test_reducers(self):
        self.assertEqual(lowest([5, 3, 9]), 3)
        self.assertEqual(highest([5, 3, 9]), 9)
        self.assertEqual(average([5, 3, 9]), 5)
        self.assertEqual(average([1, 2]), 1)

    def test_slewed_qty(self):
        self.assertEqual(slewed_qty(50, 0, 500, +1), 50)
        self.assertEqual(slewed_qty(50, 250, 500, +1), 25)
        self.assertEqual(slewed_qty(50, 490, 500, +1), 5)
        self.assertEqual(slewed_qty(50, 250, 500, -1), 50)
        self.assertEqual(slewed_qty(50, -250, 500, -1), 25)


class TestStrategies(EngineTestCase):
    def test_first_steps_buys_once(self):
        FirstSteps(SYMBOL).attach(self.engine)
        self.assertEqual(self.venue.placed, [(Direction.BUY, SYMBOL, 10000, 100)])
        self.assertNotIn(SYMBOL, self.venue.tapes)

    def test_chock_a_block_one_block_at_a_time(self):
        strategy = ChockABlock(SYMBOL, target_qty=500, max_price=5150)
        strategy.attach(self.engine)
        self.push_quotes(make_quote(ask=5100, ask_depth=300), make_quote(ask=5100, ask_depth=300))
        self.assertEqual(self.venue.placed, [(Direction.BUY, SYMBOL, 5100, 300)])

        self.push_execution(make_report(101, price=5100, qty=300, fills=[(5100, 300)], open=False))
        self.assertEqual(strategy.remaining, 200)

        self.push_quotes(make_quote(ask=5200, ask_depth=5000))
        self.assertEqual(self.venue.placed[-1], (Direction.BUY, SYMBOL, 5150, 200))

    def test_sell_side_waits_for_profile_then_bids(self):
        SellSide(SYMBOL).attach(self.engine)
        self.push_quotes(*[make_quote(bid=5000, ask=5200) for _ in range(6)])
        self.assertEqual(self.venue.placed, [])
        self.push_quotes(make_quote(bid=5000, ask=5200))
        # nothing held yet, so only the bid side trades
        self.assertEqual(self.venue.placed, [(Direction.BUY, SYMBOL, 5000, 250)])
        self.assertEqual(self.timers[0].interval, 30.0)

    def test_dueling_bulldozers_quotes_inside_spread(self):
        DuelingBulldozers(SYMBOL).attach(self.engine)
        self.push_quotes(*[make_quote(bid=5000, ask=5200) for _ in range(7)])
        self.assertEqual(
            self.venue.placed,
            [(Direction.BUY, SYMBOL, 5050, 50), (Direction.SELL, SYMBOL, 5150, 50)],
        )
        self.assertEqual([t.interval for t in self.timers], [6.0, 6.0])

    def test_narrow_spread_does_not_trade(self):
        DuelingBulldozers(SYMBOL).attach(self.engine)
        self.push_quotes(*[make_quote(bid=5000, ask=5040) for _ in range(7)])
        self.assertEqual(self.venue.placed, [])

    def test_strategy_survives_gateway_errors(self):
        self.venue.place_error = UnexpectedStatusError(500, "POST", "orders", "boom")
        DuelingBulldozers(SYMBOL).attach(self.engine)
        self.push_quotes(*[make_quote(bid=5000, ask=5200) for _ in range(8)])
        self.assertEqual(len(self.engine.quote_history(SYMBOL)), 8)
        self.assertEqual(self.engine.outstanding_orders(SYMBOL), [])


if __name__ == "__main__":
    unittest.main()
