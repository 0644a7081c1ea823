"""
Market Data Types

Core market data types consumed and produced by the bar consolidator.
Ticks come out of the data sources, bars come out of the aggregators and
are written by the persistence sinks and published over NATS.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional, Union
import json


class TickType(str, Enum):
    """Kind of market event"""
    TRADE = "trade"
    QUOTE = "quote"


class Resolution(str, Enum):
    """Bucket length of a consolidated bar"""
    TICK = "tick"  # native: one bar per event
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAILY = "daily"

    @property
    def period(self) -> timedelta:
        return RESOLUTION_PERIODS[self]

    @property
    def is_native(self) -> bool:
        return self is Resolution.TICK


RESOLUTION_PERIODS = {
    Resolution.TICK: timedelta(0),
    Resolution.SECOND: timedelta(seconds=1),
    Resolution.MINUTE: timedelta(minutes=1),
    Resolution.HOUR: timedelta(hours=1),
    Resolution.DAILY: timedelta(days=1),
}


def _parse_time(value) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def _optional_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class TradeTick:
    """Executed trade from the market feed"""
    symbol: str
    time: datetime  # exchange time
    price: Decimal
    size: Decimal
    received_time: Optional[datetime] = None

    tick_type: ClassVar[TickType] = TickType.TRADE

    def __post_init__(self):
        if self.price <= 0:
            raise ValueError(f"Trade price must be positive, got {self.price}")
        if self.size < 0:
            raise ValueError(f"Trade size must not be negative, got {self.size}")


@dataclass(frozen=True)
class QuoteTick:
    """
    Top of book bid/ask update.

    A price of exactly 0 means that side of the book is not set; it is
    never treated as a quote at zero.
    """
    symbol: str
    time: datetime  # exchange time
    bid_price: Decimal
    bid_size: Decimal
    ask_price: Decimal
    ask_size: Decimal
    received_time: Optional[datetime] = None

    tick_type: ClassVar[TickType] = TickType.QUOTE

    def __post_init__(self):
        for name in ("bid_price", "bid_size", "ask_price", "ask_size"):
            if getattr(self, name) < 0:
                raise ValueError(f"Quote {name} must not be negative, got {getattr(self, name)}")

    @property
    def has_bid(self) -> bool:
        return self.bid_price != 0

    @property
    def has_ask(self) -> bool:
        return self.ask_price != 0


@dataclass(frozen=True)
class Ohlc:
    """Open/high/low/close of one price series"""
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal

    def __post_init__(self):
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError(
                f"Inconsistent OHLC: O={self.open} H={self.high} L={self.low} C={self.close}"
            )

    def to_dict(self) -> dict:
        return {
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Ohlc"]:
        if data is None:
            return None
        return cls(
            open=Decimal(str(data["open"])),
            high=Decimal(str(data["high"])),
            low=Decimal(str(data["low"])),
            close=Decimal(str(data["close"])),
        )


@dataclass(frozen=True)
class TradeBar:
    """OHLCV bar over [time, time + period)"""
    symbol: str
    time: datetime  # period start
    period: timedelta
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal(0)
    tick_count: int = 0

    tick_type: ClassVar[TickType] = TickType.TRADE

    def __post_init__(self):
        # Reuse the OHLC consistency check
        Ohlc(self.open, self.high, self.low, self.close)

    @property
    def end_time(self) -> datetime:
        return self.time + self.period

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "timestamp": self.time.isoformat(),
            "period": self.period.total_seconds(),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "tick_count": self.tick_count,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "TradeBar":
        """Create TradeBar from dictionary"""
        return cls(
            symbol=data["symbol"],
            time=_parse_time(data["timestamp"]),
            period=timedelta(seconds=data["period"]),
            open=Decimal(str(data["open"])),
            high=Decimal(str(data["high"])),
            low=Decimal(str(data["low"])),
            close=Decimal(str(data["close"])),
            volume=Decimal(str(data.get("volume", 0))),
            tick_count=data.get("tick_count", 0),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "TradeBar":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass(frozen=True)
class QuoteBar:
    """
    Bid/ask OHLC bar over [time, time + period).

    A side is None when no quote in the bucket carried a price for it.
    """
    symbol: str
    time: datetime  # period start
    period: timedelta
    bid: Optional[Ohlc]
    ask: Optional[Ohlc]
    last_bid_size: Optional[Decimal] = None
    last_ask_size: Optional[Decimal] = None
    tick_count: int = 0

    tick_type: ClassVar[TickType] = TickType.QUOTE

    @property
    def end_time(self) -> datetime:
        return self.time + self.period

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "symbol": self.symbol,
            "timestamp": self.time.isoformat(),
            "period": self.period.total_seconds(),
            "bid": self.bid.to_dict() if self.bid else None,
            "ask": self.ask.to_dict() if self.ask else None,
            "last_bid_size": _optional_str(self.last_bid_size),
            "last_ask_size": _optional_str(self.last_ask_size),
            "tick_count": self.tick_count,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "QuoteBar":
        """Create QuoteBar from dictionary"""
        return cls(
            symbol=data["symbol"],
            time=_parse_time(data["timestamp"]),
            period=timedelta(seconds=data["period"]),
            bid=Ohlc.from_dict(data.get("bid")),
            ask=Ohlc.from_dict(data.get("ask")),
            last_bid_size=_optional_decimal(data.get("last_bid_size")),
            last_ask_size=_optional_decimal(data.get("last_ask_size")),
            tick_count=data.get("tick_count", 0),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "QuoteBar":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


Tick = Union[TradeTick, QuoteTick]
Bar = Union[TradeBar, QuoteBar]
DataPoint = Union[TradeTick, QuoteTick, TradeBar, QuoteBar]
