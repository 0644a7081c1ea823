"""
Bar Consolidation

Folds ticks into bars at several resolutions: tick, 1s, 1m, 1h, 1d.
"""

from dataflow.consolidation.aggregator import BarAggregator
from dataflow.consolidation.aggregator_set import AggregatorSet, DEFAULT_RESOLUTIONS
from dataflow.consolidation.bucketing import bucket_end, bucket_start

__all__ = [
    "AggregatorSet",
    "BarAggregator",
    "DEFAULT_RESOLUTIONS",
    "bucket_end",
    "bucket_start",
]
