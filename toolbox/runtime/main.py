"""
Downloader - Main Entry Point

Downloads CoinAPI trade and quote history day by day, consolidates it into
tick/second/minute/hour/daily bars and persists them to TimescaleDB.

Example:
    bar-downloader --tickers=ETH_USDT --exchange=BINANCE \
        --from-date=20190101-00:00:00 --to-date=20190107-00:00:00

Environment Variables:
    COINAPI_API_KEY: CoinAPI key
    DATABASE_URL: PostgreSQL/TimescaleDB URL
    NATS_SERVERS: NATS server URLs (used with --publish)
"""

import argparse
import asyncio
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

import httpx

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.ingestion.sources.coinapi import CoinApiSource, symbol_id
from dataflow.persistence.publishing import PublishingBarSink
from dataflow.persistence.sink import PersistenceError, TimescaleBarSink
from toolbox.config.loader import ConfigError, ConfigLoader, DownloaderConfig
from toolbox.runtime.coordinator import DownloadCoordinator, UnitOutcome

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_UNITS_FAILED = 2

DATE_FORMATS = ("%Y%m%d-%H:%M:%S", "%Y%m%d", "%Y-%m-%d")


def parse_date(value: str) -> date:
    """Accept 20190101-00:00:00, 20190101 or 2019-01-01"""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise argparse.ArgumentTypeError(f"Invalid date: {value!r}")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Download CoinAPI history and consolidate it into bars")
    parser.add_argument("--config", type=Path, help="YAML config file")
    parser.add_argument("--tickers", help="Comma separated BASE_QUOTE tickers, e.g. ETH_USDT,BTC_USDT")
    parser.add_argument("--exchange", help="Exchange id, e.g. BINANCE")
    parser.add_argument("--from-date", dest="start_date", type=parse_date)
    parser.add_argument("--to-date", dest="end_date", type=parse_date)
    parser.add_argument("--publish", dest="publish_bars", action="store_true", default=None,
                        help="Publish persisted bars on NATS")
    parser.add_argument("--log-level", default="INFO")
    return parser


async def run_downloader(config: DownloaderConfig) -> List[UnitOutcome]:
    """Wire the CoinAPI source, TimescaleDB sink and coordinator together"""
    db_sink = TimescaleBarSink(config.database_url)
    nats_client: Optional[NatsClient] = None

    await db_sink.connect()
    try:
        sink = db_sink
        if config.publish_bars:
            nats_client = NatsClient(NatsConfig.from_env())
            await nats_client.connect()
            sink = PublishingBarSink(db_sink, nats_client)

        async with httpx.AsyncClient(timeout=30.0) as client:
            def source_factory(ticker: str) -> CoinApiSource:
                return CoinApiSource(
                    api_key=config.api_key,
                    symbol_id=symbol_id(config.exchange, ticker),
                    symbol=ticker.replace("_", "").upper(),
                    client=client,
                    base_url=config.coinapi_url,
                )

            coordinator = DownloadCoordinator(
                config=config,
                source_factory=source_factory,
                sink=sink,
                checkpoints=db_sink,
            )
            return await coordinator.run()
    finally:
        if nats_client:
            await nats_client.close()
        await db_sink.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = ConfigLoader(args.config).load({
            "tickers": args.tickers,
            "exchange": args.exchange,
            "start_date": args.start_date,
            "end_date": args.end_date,
            "publish_bars": args.publish_bars,
        })
        config.require_download_settings()
    except ConfigError as e:
        logger.error(f"Downloader configuration error: {e}")
        return EXIT_CONFIG_ERROR

    logger.info("=" * 60)
    logger.info("Bar Downloader Starting")
    logger.info("=" * 60)
    logger.info(f"Tickers: {config.tickers} on {config.exchange}")
    logger.info(f"Dates: {config.start_date} to {config.end_date}")
    logger.info(f"Resolutions: {[r.value for r in config.resolutions]}")

    try:
        outcomes = asyncio.run(run_downloader(config))
    except PersistenceError as e:
        logger.error(f"Cannot reach the database: {e}")
        return EXIT_UNITS_FAILED

    failed = [o for o in outcomes if not o.succeeded]
    for outcome in failed:
        logger.error(f"Failed: {outcome.unit} ({outcome.error})")
    return EXIT_UNITS_FAILED if failed else EXIT_OK


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
