"""
NATS Adapters

Provides the NATS client wrapper for publishing bars.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics

__all__ = ["NatsClient", "NatsConfig", "Topics"]
