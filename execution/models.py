from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from execution.errors import ProtocolError


class Direction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    FILL_OR_KILL = "fill-or-kill"
    IMMEDIATE_OR_CANCEL = "immediate-or-cancel"


# 2015-12-04T09:02:16.680986205Z, 2015-12-04T09:02:16.680Z, 2015-12-04T09:02:16+00:00
_TS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$")


def _to_datetime(value: Any) -> datetime:
    """Venue timestamps carry nanoseconds; keep microseconds, default to UTC."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected timestamp string, got {value!r}")
    match = _TS_RE.match(value.strip())
    if not match:
        raise ValueError(f"Can't parse timestamp {value!r}")
    base, fraction, offset = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if offset == "Z" or offset is None:
        text += "+00:00"
    elif ":" not in offset:
        text += f"{offset[:3]}:{offset[3:]}"
    else:
        text += offset
    return datetime.fromisoformat(text)


def parse_timestamp(value: Any) -> datetime:
    try:
        return _to_datetime(value)
    except ValueError as exc:
        raise ProtocolError(str(exc)) from exc


Timestamp = Annotated[datetime, BeforeValidator(_to_datetime)]


class WireModel(BaseModel):
    """Immutable record parsed from exchange JSON; accepts wire names or field names."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @classmethod
    def from_dict(cls, payload: Any):
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            where = ".".join(str(p) for p in first["loc"]) or "root"
            raise ProtocolError(f"Unexpected JSON for {cls.__name__}: {where}: {first['msg']}") from exc


class ApiHeartbeat(WireModel):
    ok: bool
    error: str = ""


class VenueHeartbeat(WireModel):
    ok: StrictBool
    venue: StrictStr


class Stock(WireModel):
    name: StrictStr
    symbol: StrictStr


class _StockList(WireModel):
    symbols: List[Stock]


def parse_stocks(payload: Any) -> List[Stock]:
    return _StockList.from_dict(payload).symbols


class OrderBookEntry(WireModel):
    price: StrictInt
    qty: StrictInt
    is_buy: StrictBool = Field(alias="isBuy")


class OrderBook(WireModel):
    venue: StrictStr
    symbol: StrictStr
    bids: List[OrderBookEntry] = Field(default_factory=list)
    asks: List[OrderBookEntry] = Field(default_factory=list)
    timestamp: Timestamp = Field(alias="ts")

    @field_validator("bids", "asks", mode="before")
    @classmethod
    def null_side_is_empty(cls, value: Any) -> Any:
        # the venue sends null rather than [] for an empty side
        return [] if value is None else value


class Fill(WireModel):
    price: StrictInt
    qty: StrictInt
    timestamp: Timestamp = Field(alias="ts")


class OrderReport(WireModel):
    """Order snapshot as returned by place/cancel and pushed on the executions feed.

    ``price`` is the limit price on the order and may not match the fills.
    ``outstanding_qty`` is what is *left* to fill (``qty`` on the wire).
    """

    venue: StrictStr
    symbol: StrictStr
    direction: Direction
    original_qty: StrictInt = Field(alias="originalQty")
    outstanding_qty: StrictInt = Field(alias="qty")
    price: StrictInt
    # documented as "type", sent as "orderType"
    order_type: OrderType = Field(validation_alias=AliasChoices("order_type", "orderType", "type"))
    id: StrictInt
    account: StrictStr
    timestamp: Timestamp = Field(alias="ts")
    fills: List[Fill] = Field(default_factory=list)
    total_filled: StrictInt = Field(alias="totalFilled")
    open: StrictBool
    # ok lives on the outer envelope when the order arrives over the feed
    ok: bool = True

    @field_validator("fills", mode="before")
    @classmethod
    def null_fills_are_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def filled_qty(self) -> int:
        return sum(f.qty for f in self.fills)


class Quote(WireModel):
    venue: StrictStr
    symbol: StrictStr
    bid: Optional[StrictInt] = None  # best bid, absent when nobody is bidding
    ask: Optional[StrictInt] = None  # best ask, absent when nobody is offering
    bid_size: StrictInt = Field(0, alias="bidSize")  # aggregate size at the best bid
    ask_size: StrictInt = Field(0, alias="askSize")
    bid_depth: StrictInt = Field(0, alias="bidDepth")  # aggregate size of all bids
    ask_depth: StrictInt = Field(0, alias="askDepth")
    last_trade_price: Optional[StrictInt] = Field(None, alias="last")
    last_trade_size: Optional[StrictInt] = Field(None, alias="lastSize")
    last_trade_time: Optional[Timestamp] = Field(None, alias="lastTrade")
    quote_time: Timestamp = Field(alias="quoteTime")
    ok: bool = True

    @field_validator("bid_size", "ask_size", "bid_depth", "ask_depth", mode="before")
    @classmethod
    def null_size_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value
