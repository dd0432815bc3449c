"""
Bulk transfer between Spark datasets and BigQuery.

Reads export a table or query snapshot to temporary storage and read it back
in parallel; writes either stage newline-delimited JSON files and commit them
with load and copy jobs, or stream rows with per-row ids so retried inserts
are de-duplicated by the warehouse.
"""

from .common import RUN_ID, PrintLogger, next_event_seq
from .orchestrator import main, run_cli
from .orchestrator_helpers import validate_config
from .references import TableReference, parse_table_spec, to_table_spec

__all__ = [
    "RUN_ID",
    "PrintLogger",
    "TableReference",
    "main",
    "next_event_seq",
    "parse_table_spec",
    "run_cli",
    "to_table_spec",
    "validate_config",
]
