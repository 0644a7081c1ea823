"""
Bar Consolidator - Typed Message Catalog

Market data types shared by the sources, aggregators and sinks.
"""

from schemas.market_data import (
    Bar,
    DataPoint,
    Ohlc,
    QuoteBar,
    QuoteTick,
    Resolution,
    Tick,
    TickType,
    TradeBar,
    TradeTick,
)

__all__ = [
    "Bar",
    "DataPoint",
    "Ohlc",
    "QuoteBar",
    "QuoteTick",
    "Resolution",
    "Tick",
    "TickType",
    "TradeBar",
    "TradeTick",
]
