"""
Endpoint factory and helpers for moving datasets in and out of BigQuery.

The orchestrator relies on these endpoint abstractions so that transfers can
remain agnostic of whether rows arrive through snapshot exports, load jobs or
streaming inserts.
"""

from .base import (
    EndpointCapabilities,
    SinkEndpoint,
    SinkWriteResult,
    SourceEndpoint,
    SourceReadResult,
)
from .bigquery import BigQuerySinkEndpoint, BigQuerySourceEndpoint
from .factory import EndpointFactory

__all__ = [
    "BigQuerySinkEndpoint",
    "BigQuerySourceEndpoint",
    "EndpointCapabilities",
    "EndpointFactory",
    "SinkEndpoint",
    "SinkWriteResult",
    "SourceEndpoint",
    "SourceReadResult",
]
