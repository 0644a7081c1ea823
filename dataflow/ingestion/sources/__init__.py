"""
Data Sources

Historical tick and bar sources for the ingest loop:
- coinapi: CoinAPI REST trade/quote history
- csv_bars: local CoinAPI OHLCV exports
"""

from dataflow.ingestion.sources.base import DataSourceError, ResumeBoundary, TickSource
from dataflow.ingestion.sources.coinapi import CoinApiSource, symbol_id
from dataflow.ingestion.sources.csv_bars import CsvBarSource, CsvFormatError

__all__ = [
    "CoinApiSource",
    "CsvBarSource",
    "CsvFormatError",
    "DataSourceError",
    "ResumeBoundary",
    "TickSource",
    "symbol_id",
]
