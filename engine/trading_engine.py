from __future__ import annotations

import logging
import threading
from queue import Empty
from typing import Any, Callable, Dict, List, Optional, TypeVar

from engine.event_bus import EventBus
from engine.orders import OrderTracker, OutstandingOrder, UntrackedOrderError
from engine.portfolio import Portfolio
from engine.quotes import DEFAULT_BUFFER_SIZE, QuoteHistory
from engine.state_store import EngineState, EngineStateStore
from execution.models import Direction, OrderReport, OrderType, Quote

OrderCallback = Callable[[OrderReport], None]
QuoteCallback = Callable[[Quote], None]

_ORDER_EVENT = "order"
_QUOTE_EVENT = "quote"
_STOP = object()

T = TypeVar("T")


class TradingEngine:
    """
    Owns all trading state for one account on one venue.

    Feed events from both sockets are queued on an EventBus and handled one
    at a time by a single dispatcher thread, which folds them into state and
    then calls the strategy's callback. Every read or write of engine state
    happens under ``_lock``; venue round trips (place/cancel) run with the
    lock released and re-take it only to apply the resulting transition.

    Orders go PENDING -> OPEN -> (CANCELLING ->) closed. Closed orders are
    forgotten except for their id, so a second closing report for the same
    order never moves cash or position twice.
    """

    HISTORICAL_QUOTE_BUFFER_SIZE = DEFAULT_BUFFER_SIZE
    SHUTDOWN_TIMEOUT = 5.0

    def __init__(
        self,
        venue,
        *,
        state_store: Optional[EngineStateStore] = None,
        quote_buffer_size: int = HISTORICAL_QUOTE_BUFFER_SIZE,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.logger = logging.getLogger("trading_engine")
        self.venue = venue
        self.state_store = state_store
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        # signalled whenever a place round trip finishes
        self._submits_done = threading.Condition(self._lock)
        self._in_flight: Dict[int, int] = {}
        self._orders = OrderTracker()
        self._quotes = QuoteHistory(quote_buffer_size)
        restored = state_store.load(venue.name) if state_store else EngineState()
        self._portfolio = Portfolio(restored.balance, restored.positions)

        self._execution_feeds: Dict[str, Any] = {}
        self._tape_feeds: Dict[str, Any] = {}
        self._order_callbacks: Dict[str, Optional[OrderCallback]] = {}
        self._quote_callbacks: Dict[str, QuoteCallback] = {}
        self._timers: Dict[int, Any] = {}
        self._closed = False
        self._stopped = False

        self._bus = EventBus()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            name=f"trading-engine-{venue.name}",
            daemon=True,
        )
        self._dispatcher.start()
        self.logger.info(
            "engine_started venue=%s account=%s balance=%s positions=%s",
            venue.name, venue.account, restored.balance, restored.positions,
        )

    def __enter__(self) -> "TradingEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    def track_orders(self, symbol: str, callback: Optional[OrderCallback] = None) -> None:
        """Subscribe to executions for ``symbol``.

        Closed orders are removed from the outstanding set and reconciled into
        balance and position before ``callback`` sees the report. Only one
        subscription per symbol is supported.
        """
        with self._lock:
            self._ensure_running()
            if symbol in self._execution_feeds:
                raise RuntimeError(f"already tracking orders for {symbol}")
            self._order_callbacks[symbol] = callback
            self._execution_feeds[symbol] = self.venue.executions_for_stock(
                symbol, lambda report: self._post(_ORDER_EVENT, report)
            )

    def track_quotes(self, symbol: str, callback: QuoteCallback) -> None:
        """Subscribe to the ticker tape for ``symbol``; every quote lands in the history first."""
        with self._lock:
            self._ensure_running()
            if symbol in self._tape_feeds:
                raise RuntimeError(f"already tracking the ticker tape for {symbol}")
            self._quote_callbacks[symbol] = callback
            self._tape_feeds[symbol] = self.venue.ticker_tape_for_stock(
                symbol, lambda quote: self._post(_QUOTE_EVENT, quote)
            )

    def flush(self) -> None:
        """Block until every feed event received so far has been handled. Never call from a callback."""
        if threading.current_thread() is self._dispatcher:
            raise RuntimeError("flush() would deadlock on the dispatcher thread")
        if self._dispatcher.is_alive():
            self._bus.join()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def balance(self) -> int:
        with self._lock:
            return self._portfolio.balance

    @property
    def net_profit(self) -> int:
        with self._lock:
            return self._portfolio.net_profit

    @property
    def positions(self) -> Dict[str, int]:
        with self._lock:
            return self._portfolio.positions_snapshot()

    def position(self, symbol: str) -> int:
        """Shares held, 0 if none. Can be negative."""
        with self._lock:
            return self._portfolio.position(symbol)

    def outstanding_orders(self, symbol: str, include_pending: bool = True) -> List[OutstandingOrder]:
        with self._lock:
            return self._orders.outstanding(symbol, include_pending=include_pending)

    def outstanding_buy_count(self, symbol: str) -> int:
        return sum(1 for o in self.outstanding_orders(symbol) if o.direction == Direction.BUY)

    def outstanding_sell_count(self, symbol: str) -> int:
        return sum(1 for o in self.outstanding_orders(symbol) if o.direction == Direction.SELL)

    def quote_history(self, symbol: str) -> List[Quote]:
        with self._lock:
            return self._quotes.history(symbol)

    def last_quote(self, symbol: str) -> Optional[Quote]:
        with self._lock:
            return self._quotes.last(symbol)

    def map_reduce_last_quotes(
        self,
        symbol: str,
        count: int,
        map_fn: Callable[[Quote], Optional[T]],
        reduce_fn: Callable[[List[T]], T],
    ) -> Optional[T]:
        """None unless ``count`` of the remembered quotes produce a value."""
        with self._lock:
            return self._quotes.map_reduce_last(symbol, count, map_fn, reduce_fn)

    def net_asset_value(self) -> Optional[int]:
        with self._lock:
            return self._portfolio.net_asset_value(self._quotes.last_trade_price)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "venue": self.venue.name,
                "account": self.venue.account,
                "running": not self._closed,
                "balance": self._portfolio.balance,
                "net_profit": self._portfolio.net_profit,
                "net_asset_value": self._portfolio.net_asset_value(self._quotes.last_trade_price),
                "positions": self._portfolio.positions_snapshot(),
                "outstanding_orders": len(self._orders.outstanding()),
                "tracked_symbols": sorted(set(self._execution_feeds) | set(self._tape_feeds)),
            }

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------
    def buy(
        self,
        symbol: str,
        price: int,
        qty: int,
        timeout: Optional[float] = None,
        order_type: OrderType = OrderType.LIMIT,
    ) -> OrderReport:
        """Place a buy; with ``timeout`` (seconds) it is cancelled if still open by then."""
        return self._submit(Direction.BUY, symbol, price, qty, timeout, order_type)

    def sell(
        self,
        symbol: str,
        price: int,
        qty: int,
        timeout: Optional[float] = None,
        order_type: OrderType = OrderType.LIMIT,
    ) -> OrderReport:
        return self._submit(Direction.SELL, symbol, price, qty, timeout, order_type)

    def cancel_order(self, order: OutstandingOrder) -> Optional[OrderReport]:
        """
        Cancel an open order and reconcile whatever the venue reports back;
        fills that beat the cancel are credited. Returns None when there was
        nothing to cancel (still pending, already cancelling, already closed).
        """
        if order.id is None:
            self.logger.info("cancel_skipped reason=pending symbol=%s pending_id=%s", order.symbol, order.pending_id)
            return None

        with self._lock:
            if not self._orders.is_known(order.id):
                raise UntrackedOrderError(f"order {order.id} was never placed by this engine")
            tracked = self._orders.begin_cancel(order.id)
            if tracked is None:
                return None
            self._cancel_timer(order.id)

        try:
            report = self.venue.cancel_order_for_stock(tracked.symbol, tracked.id)
        except Exception:
            with self._lock:
                self._orders.abort_cancel(tracked.id)
            self.logger.error("cancel_failed order_id=%s symbol=%s", tracked.id, tracked.symbol)
            raise

        with self._lock:
            if report.open:
                self._orders.abort_cancel(tracked.id)
                self.logger.warning("cancel_not_applied order_id=%s symbol=%s still_open=True", tracked.id, tracked.symbol)
                return report
            self._reconcile(report)

        if report.fills:
            self.logger.info(
                "cancel_after_fill order_id=%s symbol=%s filled=%s price=%s",
                report.id, report.symbol, report.filled_qty, report.price,
            )
        else:
            self.logger.info("order_cancelled order_id=%s symbol=%s price=%s", report.id, report.symbol, tracked.price)
        return report

    def cancel_orders(self, orders: List[OutstandingOrder]) -> List[OutstandingOrder]:
        for order in orders:
            self.cancel_order(order)
        return orders

    def cancel_orders_for_stock(
        self,
        symbol: str,
        predicate: Callable[[OutstandingOrder], bool] = lambda order: True,
    ) -> List[OutstandingOrder]:
        candidates = [o for o in self.outstanding_orders(symbol, include_pending=False) if predicate(o)]
        return self.cancel_orders(candidates)

    def close(self) -> None:
        """
        Shut down: cancel every open order (best effort, failures only
        logged), close the sockets, stop the dispatcher and save state.
        Safe to call more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
            open_orders = self._orders.open_orders()
            feeds = list(self._execution_feeds.items()) + list(self._tape_feeds.items())
            self._execution_feeds.clear()
            self._tape_feeds.clear()

        for timer in timers:
            timer.cancel()

        for order in open_orders:
            try:
                self.cancel_order(order)
            except Exception as exc:
                self.logger.error("shutdown_cancel_failed order_id=%s symbol=%s error=%s", order.id, order.symbol, exc)

        for symbol, feed in feeds:
            try:
                feed.stop()
            except Exception:
                self.logger.exception("feed_stop_failed symbol=%s", symbol)

        self._bus.put(_STOP)
        if threading.current_thread() is not self._dispatcher:
            self._dispatcher.join(timeout=self.SHUTDOWN_TIMEOUT)
            if self._dispatcher.is_alive():
                self.logger.warning("dispatcher_still_busy timeout=%s", self.SHUTDOWN_TIMEOUT)
                self._stopped = True
            else:
                self._drain()
        self._wait_for_submits()
        self._persist()
        self.logger.info("engine_closed venue=%s balance=%s positions=%s", self.venue.name, self.balance, self.positions)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _ensure_running(self) -> None:
        if self._closed:
            raise RuntimeError("trading engine is closed")

    def _submit(
        self,
        direction: Direction,
        symbol: str,
        price: int,
        qty: int,
        timeout: Optional[float],
        order_type: OrderType,
    ) -> OrderReport:
        if qty <= 0:
            raise ValueError(f"qty must be positive, got {qty}")
        if price < 0:
            raise ValueError(f"price must not be negative, got {price}")

        with self._lock:
            self._ensure_running()
            pending = self._orders.add_pending(symbol, price, qty, direction)
            thread_id = threading.get_ident()
            self._in_flight[thread_id] = self._in_flight.get(thread_id, 0) + 1
        try:
            return self._place(pending, timeout, order_type)
        finally:
            with self._lock:
                self._in_flight[thread_id] -= 1
                if not self._in_flight[thread_id]:
                    del self._in_flight[thread_id]
                self._submits_done.notify_all()

    def _place(self, pending: OutstandingOrder, timeout: Optional[float], order_type: OrderType) -> OrderReport:
        symbol, price, qty, direction = pending.symbol, pending.price, pending.qty, pending.direction
        try:
            report = self.venue.place_order_for_stock(symbol, price, qty, direction, order_type)
        except Exception as exc:
            with self._lock:
                self._orders.drop_pending(pending.pending_id)
            self.logger.error(
                "order_rejected direction=%s symbol=%s qty=%s price=%s error=%s",
                direction.value, symbol, qty, price, exc,
            )
            raise

        with self._lock:
            order = self._orders.promote(pending.pending_id, report)
            early = self._orders.take_early_report(symbol, report.id)
            self._orders.drop_pending(pending.pending_id)
            closing = [r for r in (report, early) if r is not None and not r.open]
            if closing:
                self._reconcile(max(closing, key=lambda r: r.filled_qty))
            elif timeout is not None and not self._closed:
                self._schedule_timeout(order, timeout)
            orphaned = self._closed and self._orders.is_open(report.id)

        self.logger.info(
            "order_placed direction=%s symbol=%s qty=%s price=%s order_id=%s open=%s timeout=%s",
            direction.value, symbol, qty, price, report.id, report.open, timeout,
        )
        if orphaned:
            # close() ran while this order was in flight
            try:
                self.cancel_order(order)
            except Exception as exc:
                self.logger.error("shutdown_cancel_failed order_id=%s symbol=%s error=%s", order.id, symbol, exc)
        return report

    def _wait_for_submits(self) -> None:
        """Block until place round trips started on other threads have finished, orphan cancels included."""
        me = threading.get_ident()
        with self._submits_done:
            finished = self._submits_done.wait_for(
                lambda: not any(n for t, n in self._in_flight.items() if t != me),
                timeout=self.SHUTDOWN_TIMEOUT,
            )
        if not finished:
            self.logger.warning("submits_still_in_flight timeout=%s", self.SHUTDOWN_TIMEOUT)

    def _reconcile(self, report: OrderReport) -> bool:
        """Apply a closing report exactly once. Caller holds the lock."""
        if self._orders.is_closed(report.id):
            self.logger.info("duplicate_close_ignored order_id=%s symbol=%s", report.id, report.symbol)
            return False
        filled = self._portfolio.apply_closed_order(report)
        self._orders.close(report.id)
        self._cancel_timer(report.id)
        self.logger.info(
            "order_completed order_id=%s direction=%s symbol=%s filled=%s position=%s balance=%s",
            report.id, report.direction.value, report.symbol, filled,
            self._portfolio.position(report.symbol), self._portfolio.balance,
        )
        return True

    def _schedule_timeout(self, order: OutstandingOrder, timeout: float) -> None:
        timer = self._timer_factory(timeout, self._on_timeout, args=(order.id,))
        timer.daemon = True
        self._timers[order.id] = timer
        timer.start()

    def _cancel_timer(self, order_id: int) -> None:
        timer = self._timers.pop(order_id, None)
        if timer is not None:
            timer.cancel()

    def _on_timeout(self, order_id: int) -> None:
        with self._lock:
            self._timers.pop(order_id, None)
            order = self._orders.get(order_id) if self._orders.is_open(order_id) else None
        if order is None:
            return
        self.logger.info("order_timed_out order_id=%s symbol=%s", order_id, order.symbol)
        try:
            self.cancel_order(order)
        except Exception as exc:
            self.logger.error("timeout_cancel_failed order_id=%s error=%s", order_id, exc)

    def _post(self, kind: str, payload: Any) -> None:
        if self._stopped:
            return
        self._bus.put((kind, payload))

    def _dispatch_loop(self) -> None:
        while True:
            event = self._bus.get()
            try:
                if event is _STOP:
                    self._stopped = True
                    return
                kind, payload = event
                if kind == _ORDER_EVENT:
                    self._handle_order_report(payload)
                elif kind == _QUOTE_EVENT:
                    self._handle_quote(payload)
            except Exception:
                self.logger.exception("dispatch_error event=%r", event)
            finally:
                self._bus.task_done()

    def _drain(self) -> None:
        self._stopped = True
        while True:
            try:
                self._bus.get(timeout=0)
            except Empty:
                return
            self._bus.task_done()

    def _handle_order_report(self, report: OrderReport) -> None:
        with self._lock:
            callback = self._order_callbacks.get(report.symbol)
            if self._orders.get(report.id) is None:
                # someone else's order, one already closed, or one still pending
                if self._orders.hold_early_report(report):
                    self.logger.debug("early_report_held order_id=%s symbol=%s", report.id, report.symbol)
            elif not report.open:
                self._reconcile(report)
        if callback is not None:
            callback(report)

    def _handle_quote(self, quote: Quote) -> None:
        with self._lock:
            self._quotes.append(quote)
            callback = self._quote_callbacks.get(quote.symbol)
        if callback is not None:
            callback(quote)

    def _persist(self) -> None:
        if self.state_store is None:
            return
        state = EngineState(balance=self._portfolio.balance, positions=self._portfolio.positions_snapshot())
        try:
            self.state_store.save(self.venue.name, state)
        except OSError:
            self.logger.exception("state_save_failed venue=%s", self.venue.name)
