from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..references import JobReference, TableReference


@dataclass
class Job:
    """Snapshot of a warehouse job as returned by a poll."""

    job_ref: JobReference
    state: str = "DONE"
    error_result: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)

    def to_pretty_string(self) -> str:
        return json.dumps(
            {
                "jobReference": {"projectId": self.job_ref.project_id, "jobId": self.job_ref.job_id},
                "status": {"state": self.state, "errorResult": self.error_result, "errors": self.errors},
                "statistics": self.statistics,
            },
            indent=2,
            sort_keys=True,
            default=str,
        )


@dataclass
class TableInfo:
    reference: TableReference
    schema: List[Dict[str, Any]] = field(default_factory=list)
    num_bytes: Optional[int] = None
    num_rows: Optional[int] = None
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass
class DatasetInfo:
    project_id: str
    dataset_id: str
    location: Optional[str] = None


@dataclass
class LoadJobSpec:
    destination: TableReference
    source_uris: Sequence[str]
    schema: Optional[List[Dict[str, Any]]]
    write_disposition: str
    create_disposition: str
    source_format: str = "NEWLINE_DELIMITED_JSON"


@dataclass
class CopyJobSpec:
    sources: Sequence[TableReference]
    destination: TableReference
    write_disposition: str
    create_disposition: str


@dataclass
class ExtractJobSpec:
    source: TableReference
    destination_uris: Sequence[str]
    destination_format: str = "PARQUET"


@dataclass
class QueryJobSpec:
    query: str
    use_legacy_sql: bool = True
    flatten_results: bool = True
    destination: Optional[TableReference] = None
    priority: str = "BATCH"
    allow_large_results: bool = True
    write_disposition: str = "WRITE_EMPTY"
    create_disposition: str = "CREATE_IF_NEEDED"


@dataclass
class QueryDryRun:
    total_bytes_processed: int
    referenced_tables: List[TableReference] = field(default_factory=list)


@runtime_checkable
class JobClient(Protocol):
    """Submits, polls and inspects warehouse jobs."""

    def submit_load(self, job_ref: JobReference, spec: LoadJobSpec) -> None: ...

    def submit_copy(self, job_ref: JobReference, spec: CopyJobSpec) -> None: ...

    def submit_extract(self, job_ref: JobReference, spec: ExtractJobSpec) -> None: ...

    def submit_query(self, job_ref: JobReference, spec: QueryJobSpec) -> None: ...

    def poll_job(
        self,
        job_ref: JobReference,
        max_retries: Optional[int] = None,
        interrupt: Optional[threading.Event] = None,
    ) -> Optional[Job]: ...

    def get_job(self, job_ref: JobReference) -> Optional[Job]: ...

    def dry_run_query(self, project_id: str, spec: QueryJobSpec) -> QueryDryRun: ...


@runtime_checkable
class TableClient(Protocol):
    """Table and dataset metadata plus streaming inserts."""

    def get_table(self, ref: TableReference) -> Optional[TableInfo]: ...

    def get_dataset(self, project_id: str, dataset_id: str) -> DatasetInfo: ...

    def create_table(
        self, ref: TableReference, schema: List[Dict[str, Any]], description: Optional[str] = None
    ) -> TableInfo: ...

    def delete_table(self, ref: TableReference) -> None: ...

    def create_dataset(
        self, project_id: str, dataset_id: str, location: Optional[str] = None, description: Optional[str] = None
    ) -> DatasetInfo: ...

    def delete_dataset(self, project_id: str, dataset_id: str) -> None: ...

    def is_table_empty(self, ref: TableReference) -> bool: ...

    def insert_all(self, ref: TableReference, rows: List[Dict[str, Any]], unique_ids: List[str]) -> int: ...

    def patch_table_description(self, ref: TableReference, description: Optional[str]) -> None: ...


class Services(Protocol):
    """Factory handing out clients; must be picklable so executors can rebuild it."""

    project: Optional[str]

    def job_client(self) -> JobClient: ...

    def table_client(self) -> TableClient: ...
