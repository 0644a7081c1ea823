"""
CSV Bar Source

Reads a CoinAPI OHLCV export (one pre-aggregated bar per row) from disk.

Expected format (';' delimited, header row, any column order):
    time_period_start;time_period_end;time_open;time_close;price_open;price_high;price_low;price_close;volume_traded;trades_count
    2019-01-01T00:00:00.0000000Z;2019-01-01T00:01:00.0000000Z;...;131.450000000;131.540000000;131.420000000;131.450000000;240.203530000;87

Each row becomes a TradeBar, and a QuoteBar whose bid and ask sides both
carry the trade prices.
"""

import csv
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from schemas.market_data import DataPoint, Ohlc, QuoteBar, TickType, TradeBar

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f0Z"

REQUIRED_COLUMNS = (
    "time_period_start",
    "price_open",
    "price_high",
    "price_low",
    "price_close",
    "volume_traded",
)


class CsvFormatError(ValueError):
    """The bar file is malformed; the whole import is aborted"""


def quote_bar_from_trade_bar(bar: TradeBar) -> QuoteBar:
    """Quote bar with both sides equal to the trade prices; sizes are unknown"""
    side = Ohlc(bar.open, bar.high, bar.low, bar.close)
    return QuoteBar(
        symbol=bar.symbol,
        time=bar.time,
        period=bar.period,
        bid=side,
        ask=side,
        tick_count=bar.tick_count,
    )


class CsvBarSource:
    """
    Serves the bars of one CSV file as a data source.

    The file is parsed once, on the first fetch. Rows are served in file
    order: a fetch that resumes at the latest returned timestamp continues
    at the stored row offset.
    """

    def __init__(
        self,
        path: Path,
        symbol: str,
        period: timedelta = timedelta(minutes=1),
        delimiter: str = ";",
    ):
        self.path = Path(path)
        self.symbol = symbol
        self.period = period
        self.delimiter = delimiter

        self._items: Optional[Dict[TickType, List[DataPoint]]] = None
        # tick type -> (latest returned time, next row index)
        self._offsets: Dict[TickType, Tuple[datetime, int]] = {}

    def read_bars(self) -> List[TradeBar]:
        """
        Parse every row of the file.

        Raises:
            FileNotFoundError: If the file does not exist
            CsvFormatError: On a missing column, wrong column count or bad value
        """
        logger.info(f"Start reading from {self.path}")

        bars = []
        with open(self.path, newline="") as f:
            reader = csv.reader(f, delimiter=self.delimiter)

            header = next(reader, None)
            if not header:
                raise CsvFormatError(f"{self.path}: missing header row")
            header_map = {name.strip(): index for index, name in enumerate(header)}

            missing = [c for c in REQUIRED_COLUMNS if c not in header_map]
            if missing:
                raise CsvFormatError(f"{self.path}: missing columns {missing}")

            for line_no, row in enumerate(reader, start=2):
                if not row:
                    continue
                if len(row) != len(header):
                    raise CsvFormatError(
                        f"{self.path}:{line_no}: expected {len(header)} columns, got {len(row)}"
                    )
                bars.append(self._parse_row(row, header_map, line_no))

        logger.info(f"Read {len(bars)} bars from {self.path}")
        return bars

    def _parse_row(self, row: List[str], header_map: Dict[str, int], line_no: int) -> TradeBar:
        def field(name: str) -> str:
            return row[header_map[name]].strip()

        try:
            time = datetime.strptime(field("time_period_start"), TIME_FORMAT).replace(tzinfo=timezone.utc)
            return TradeBar(
                symbol=self.symbol,
                time=time,
                period=self.period,
                open=Decimal(field("price_open")),
                high=Decimal(field("price_high")),
                low=Decimal(field("price_low")),
                close=Decimal(field("price_close")),
                volume=Decimal(field("volume_traded")),
                tick_count=int(field("trades_count")) if "trades_count" in header_map else 0,
            )
        except (ValueError, InvalidOperation) as e:
            raise CsvFormatError(f"{self.path}:{line_no}: {e}") from e

    def _load(self) -> Dict[TickType, List[DataPoint]]:
        if self._items is None:
            trades = self.read_bars()
            self._items = {
                TickType.TRADE: trades,
                TickType.QUOTE: [quote_bar_from_trade_bar(bar) for bar in trades],
            }
        return self._items

    async def fetch(
        self,
        tick_type: TickType,
        start: datetime,
        max_count: int,
        end: Optional[datetime] = None,
    ) -> List[DataPoint]:
        items = self._load()[tick_type]

        offset = self._offsets.get(tick_type)
        if offset is not None and offset[0] == start:
            index = offset[1]
        else:
            index = next((i for i, item in enumerate(items) if item.time >= start), len(items))

        rows = items[index:index + max_count]
        page = rows if end is None else [item for item in rows if item.time < end]

        if page:
            # Callers resume at the latest time seen, which a late row does not move
            latest = max(start, max(item.time for item in page))
            self._offsets[tick_type] = (latest, index + len(rows))
        return page
