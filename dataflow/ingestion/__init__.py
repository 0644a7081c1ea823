"""
Ingestion

Batched, resumable ingest of historical ticks and bars into the aggregators.
"""

from dataflow.ingestion.loop import Cursor, IngestLoop, IngestResult, IngestSettings, IngestState

__all__ = [
    "Cursor",
    "IngestLoop",
    "IngestResult",
    "IngestSettings",
    "IngestState",
]
