"""
Persistence

Durable bar storage and the contracts the ingest loop writes through.
"""

from dataflow.persistence.sink import (
    BarSink,
    Checkpoint,
    CheckpointStore,
    PersistenceError,
    TimescaleBarSink,
)

__all__ = [
    "BarSink",
    "Checkpoint",
    "CheckpointStore",
    "PersistenceError",
    "TimescaleBarSink",
]
