"""
Dataflow Layer

Event I/O and consolidation for the bar consolidator. Contains:
- consolidation: Tick to bar aggregation (tick, 1s, 1m, 1h, 1d)
- ingestion: Ingest loop and historical data sources (CoinAPI, CSV)
- persistence: TimescaleDB sink and NATS publishing
- adapters: NATS client adapters
- query: HTTP API over persisted bars
"""
