from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from bot.utils import StockfighterConfig, compute_backoff
from execution.errors import ApiError, ProtocolError, TransportError, UnexpectedStatusError
from execution.feeds import StreamClient, with_api_key
from execution.models import (
    ApiHeartbeat,
    Direction,
    OrderBook,
    OrderReport,
    OrderType,
    Quote,
    Stock,
    VenueHeartbeat,
    parse_stocks,
)

AUTH_HEADER = "X-Starfighter-Authorization"
RETRYABLE_STATUS = (429, 500, 502, 503, 504)

__all__ = [
    "ApiError",
    "ProtocolError",
    "StockfighterClient",
    "TransportError",
    "UnexpectedStatusError",
    "Venue",
]


class StockfighterClient:
    """
    Stockfighter order book API client:
    - API key header on every request, one shared session
    - Reads retried with backoff on 429/5xx and network errors
    - Order placement and cancellation are sent exactly once
    """

    def __init__(self, config: StockfighterConfig, session: Optional[requests.Session] = None):
        self.logger = logging.getLogger("stockfighter_adapter")
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({AUTH_HEADER: config.api_key})

    # ============================================================
    # HTTP
    # ============================================================

    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.config.base_url}/{path}"
        # POST/DELETE move money; never repeat them behind the caller's back
        attempts = self.config.max_retries + 1 if method == "GET" else 1

        for attempt in range(1, attempts + 1):
            try:
                resp = self.session.request(method, url, json=json, timeout=self.config.timeout_seconds)
            except requests.RequestException as exc:
                if attempt >= attempts:
                    raise TransportError(f"{method} {path} failed: {exc}") from exc
                backoff = compute_backoff(self.config.backoff_base, attempt)
                self.logger.warning(
                    "request_error method=%s path=%s attempt=%s backoff=%.2f error=%r",
                    method, path, attempt, backoff, exc,
                )
                time.sleep(backoff)
                continue

            if resp.status_code in RETRYABLE_STATUS and attempt < attempts:
                backoff = compute_backoff(self.config.backoff_base, attempt)
                self.logger.warning(
                    "retryable_status method=%s path=%s status=%s attempt=%s backoff=%.2f",
                    method, path, resp.status_code, attempt, backoff,
                )
                time.sleep(backoff)
                continue

            if resp.status_code != 200:
                raise UnexpectedStatusError(resp.status_code, method, path, resp.text or "")

            return self._decode(resp, method, path)

        raise RuntimeError(f"Unhandled request failure for {method} {path}")

    @staticmethod
    def _decode(resp: requests.Response, method: str, path: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"{method} {path}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"{method} {path}: expected a JSON object")
        if data.get("ok") is not True:
            raise ProtocolError(f"{method} {path}: ok=false error={data.get('error')!r}")
        return data

    # ============================================================
    # API
    # ============================================================

    def heartbeat(self) -> ApiHeartbeat:
        try:
            d = self._request("GET", "heartbeat")
            return ApiHeartbeat(ok=True, error=str(d.get("error") or ""))
        except ApiError as exc:
            return ApiHeartbeat(ok=False, error=str(exc))

    def venue(self, account: str, name: str) -> "Venue":
        return Venue(self, account=account, name=name)


class Venue:
    """Everything scoped to one exchange and one trading account."""

    def __init__(self, client: StockfighterClient, account: str, name: str):
        self.client = client
        self.account = account
        self.name = name
        self.logger = logging.getLogger("stockfighter_adapter")

    def heartbeat(self) -> VenueHeartbeat:
        return VenueHeartbeat.from_dict(self.client._request("GET", f"venues/{self.name}/heartbeat"))

    def stocks(self) -> List[Stock]:
        return parse_stocks(self.client._request("GET", f"venues/{self.name}/stocks"))

    def order_book_for_stock(self, symbol: str) -> OrderBook:
        return OrderBook.from_dict(self.client._request("GET", f"venues/{self.name}/stocks/{symbol}"))

    def quote_for_stock(self, symbol: str) -> Quote:
        return Quote.from_dict(self.client._request("GET", f"venues/{self.name}/stocks/{symbol}/quote"))

    def place_order_for_stock(
        self,
        symbol: str,
        price: int,
        qty: int,
        direction: Direction,
        order_type: OrderType = OrderType.LIMIT,
    ) -> OrderReport:
        body = {
            "account": self.account,
            "venue": self.name,
            "stock": symbol,
            "price": int(price),
            "qty": int(qty),
            "direction": Direction(direction).value,
            "orderType": OrderType(order_type).value,
        }
        d = self.client._request("POST", f"venues/{self.name}/stocks/{symbol}/orders", json=body)
        return OrderReport.from_dict(d)

    def cancel_order_for_stock(self, symbol: str, order_id: int) -> OrderReport:
        """Cancel an order; the returned snapshot may carry fills that beat the cancel."""
        d = self.client._request("DELETE", f"venues/{self.name}/stocks/{symbol}/orders/{order_id}")
        return OrderReport.from_dict(d)

    # ============================================================
    # FEEDS (caller owns the returned client and must stop it)
    # ============================================================

    def _ws_url(self, suffix: str) -> str:
        base = f"{self.client.config.ws_url}/{self.account}/venues/{self.name}/{suffix}"
        return with_api_key(base, self.client.config.api_key)

    def _open_stream(self, suffix: str, handler: Callable[[Any], None]) -> StreamClient:
        stream = StreamClient(
            url=self._ws_url(suffix),
            on_message=handler,
            name=f"ws:{self.name}:{suffix}",
            headers={AUTH_HEADER: self.client.config.api_key},
        )
        stream.start()
        return stream

    def ticker_tape(self, callback: Callable[[Quote], None]) -> StreamClient:
        return self._open_stream("tickertape", lambda obj: self._process_ticker_tape(obj, callback))

    def ticker_tape_for_stock(self, symbol: str, callback: Callable[[Quote], None]) -> StreamClient:
        return self._open_stream(f"tickertape/stocks/{symbol}", lambda obj: self._process_ticker_tape(obj, callback))

    def executions(self, callback: Callable[[OrderReport], None]) -> StreamClient:
        return self._open_stream("executions", lambda obj: self._process_executions(obj, callback))

    def executions_for_stock(self, symbol: str, callback: Callable[[OrderReport], None]) -> StreamClient:
        return self._open_stream(f"executions/stocks/{symbol}", lambda obj: self._process_executions(obj, callback))

    def _process_ticker_tape(self, obj: Any, callback: Callable[[Quote], None]) -> None:
        payload = self._unwrap(obj, "quote")
        if payload is None:
            return
        try:
            quote = Quote.from_dict(payload)
        except ProtocolError as exc:
            self.logger.warning("dropping tickertape envelope venue=%s error=%s", self.name, exc)
            return
        callback(quote)

    def _process_executions(self, obj: Any, callback: Callable[[OrderReport], None]) -> None:
        payload = self._unwrap(obj, "order")
        if payload is None:
            return
        try:
            report = OrderReport.from_dict(payload)
        except ProtocolError as exc:
            self.logger.warning("dropping executions envelope venue=%s error=%s", self.name, exc)
            return
        callback(report)

    def _unwrap(self, obj: Any, key: str) -> Optional[Dict[str, Any]]:
        if not isinstance(obj, dict):
            self.logger.warning("dropping envelope venue=%s reason=not_an_object", self.name)
            return None
        if obj.get("ok") is not True:
            self.logger.warning("dropping envelope venue=%s reason=missing_ok error=%s", self.name, obj.get("error"))
            return None
        payload = obj.get(key)
        if not isinstance(payload, dict):
            self.logger.warning("dropping envelope venue=%s reason=no_%s", self.name, key)
            return None
        return payload
