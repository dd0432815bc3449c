"""Execution backends. ``SparkTool`` lives in ``salam_bq.tools.spark`` so importing this package does not start the JVM bridge."""

from .base import ExecutionTool, QueryRequest, WriteRequest
from .local import LocalTool

__all__ = ["ExecutionTool", "LocalTool", "QueryRequest", "WriteRequest"]
