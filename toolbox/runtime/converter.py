"""
Converter - Main Entry Point

Imports a CoinAPI OHLCV CSV export ({source_dir}/{data_key}.csv) and
consolidates its one-minute bars into minute/hour/daily trade and quote bars.

Example:
    bar-converter --source-dir ./Data --data-key BINANCE_SPOT_ETH_USDT --symbol ETHUSD
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dataflow.consolidation.aggregator_set import AggregatorSet
from dataflow.ingestion.loop import IngestLoop, IngestResult
from dataflow.ingestion.sources.csv_bars import CsvBarSource, CsvFormatError
from dataflow.persistence.sink import BarSink, PersistenceError, TimescaleBarSink
from schemas.market_data import Resolution, TickType
from toolbox.config.loader import ConfigError, ConfigLoader, DownloaderConfig
from toolbox.runtime.main import configure_logging

logger = logging.getLogger(__name__)

CONVERTER_RESOLUTIONS = (Resolution.MINUTE, Resolution.HOUR, Resolution.DAILY)

EARLIEST = datetime(1970, 1, 1, tzinfo=timezone.utc)


async def convert(source: CsvBarSource, sink: BarSink, config: DownloaderConfig) -> List[IngestResult]:
    """Consolidate the trade and quote bars of one file concurrently"""
    loops = [
        IngestLoop(
            source=source,
            sink=sink,
            aggregators=AggregatorSet(tick_type, CONVERTER_RESOLUTIONS),
            symbol=source.symbol,
            start=EARLIEST,
            settings=config.ingest_settings(),
        )
        for tick_type in TickType
    ]
    return list(await asyncio.gather(*(loop.run() for loop in loops)))


async def run_converter(csv_path: Path, symbol: str, config: DownloaderConfig) -> List[IngestResult]:
    sink = TimescaleBarSink(config.database_url)
    await sink.connect()
    try:
        return await convert(CsvBarSource(csv_path, symbol), sink, config)
    finally:
        await sink.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Consolidate a CoinAPI OHLCV CSV export into bars")
    parser.add_argument("--source-dir", type=Path, help="Directory of the CSV export (default: data_directory)")
    parser.add_argument("--data-key", default="BINANCE_SPOT_ETH_USDT")
    parser.add_argument("--symbol", default="ETHUSD")
    parser.add_argument("--config", type=Path, help="YAML config file")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        config = ConfigLoader(args.config).load()
    except ConfigError as e:
        logger.error(f"Converter configuration error: {e}")
        return 1

    source_dir = args.source_dir or config.data_directory
    csv_path = source_dir / f"{args.data_key}.csv"
    try:
        results = asyncio.run(run_converter(csv_path, args.symbol, config))
    except (CsvFormatError, FileNotFoundError) as e:
        logger.error(f"Cannot import {csv_path}: {e}")
        return 1
    except PersistenceError as e:
        logger.error(f"Failed to persist bars from {csv_path}: {e}")
        return 2

    for result in results:
        logger.info(
            f"{result.symbol} {result.tick_type.value}: {result.events} input bars, "
            f"{result.total_bars} bars written"
        )
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
