from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from engine.trading_engine import TradingEngine


class OrderView(BaseModel):
    id: Optional[int]
    symbol: str
    direction: str
    price: int
    qty: int
    state: str


class QuoteView(BaseModel):
    symbol: str
    bid: Optional[int]
    ask: Optional[int]
    bid_depth: int
    ask_depth: int
    last_trade_price: Optional[int]
    quote_time: datetime


class StatusView(BaseModel):
    venue: str
    account: str
    running: bool
    balance: int
    net_profit: int
    net_asset_value: Optional[int]
    positions: Dict[str, int]
    outstanding_orders: int
    tracked_symbols: List[str]


def get_engine(request: Request) -> TradingEngine:
    engine: Optional[TradingEngine] = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine unavailable")
    return engine


def create_app(engine: Optional[TradingEngine] = None) -> FastAPI:
    """Read-only view over a running engine. Nothing here places or cancels orders."""
    app = FastAPI(title="Stockfighter Trading Bot")
    app.state.engine = engine

    @app.get("/health")
    def health(request: Request):
        status = get_engine(request).status()
        return {"status": "ok" if status["running"] else "stopped", "venue": status["venue"]}

    @app.get("/status", response_model=StatusView)
    def status(request: Request):
        return get_engine(request).status()

    @app.get("/orders", response_model=List[OrderView])
    def orders(request: Request, symbol: Optional[str] = None):
        engine = get_engine(request)
        symbols = [symbol] if symbol else engine.status()["tracked_symbols"]
        return [
            OrderView(
                id=o.id,
                symbol=o.symbol,
                direction=o.direction.value,
                price=o.price,
                qty=o.qty,
                state=o.state.value,
            )
            for s in symbols
            for o in engine.outstanding_orders(s)
        ]

    @app.get("/quotes/{symbol}", response_model=List[QuoteView])
    def quotes(symbol: str, request: Request):
        history = get_engine(request).quote_history(symbol)
        if not history:
            raise HTTPException(status_code=404, detail=f"No quotes for {symbol}")
        return [
            QuoteView(
                symbol=q.symbol,
                bid=q.bid,
                ask=q.ask,
                bid_depth=q.bid_depth,
                ask_depth=q.ask_depth,
                last_trade_price=q.last_trade_price,
                quote_time=q.quote_time,
            )
            for q in history
        ]

    return app
