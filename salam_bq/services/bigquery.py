"""Job and table clients backed by ``google-cloud-bigquery``."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from google.api_core import exceptions as api_exceptions
from google.api_core import retry
from google.cloud import bigquery

from ..common import DEFAULT_LOGGER, PrintLogger
from ..errors import InsertError, JobInterruptedError, ResourceNotFoundError
from ..references import JobReference, TableReference
from .base import (
    CopyJobSpec,
    DatasetInfo,
    ExtractJobSpec,
    Job,
    LoadJobSpec,
    QueryDryRun,
    QueryJobSpec,
    TableInfo,
)

INITIAL_POLL_BACKOFF_SECONDS = 1.0
MAX_POLL_BACKOFF_SECONDS = 60.0
RETRY_TIMEOUT_SECONDS = 600.0
MAX_NOT_FOUND_POLLS = 10
MAX_INSERT_ROWS_PER_REQUEST = 500
MAX_INSERT_ATTEMPTS = 5
NON_RETRYABLE_INSERT_REASONS = {"invalid", "invalidQuery", "notImplemented"}

TRANSIENT_RETRY = retry.Retry(
    predicate=retry.if_transient_error,
    initial=INITIAL_POLL_BACKOFF_SECONDS,
    maximum=MAX_POLL_BACKOFF_SECONDS,
    timeout=RETRY_TIMEOUT_SECONDS,
)

_CLIENTS: Dict[Tuple[Optional[str], Optional[str]], bigquery.Client] = {}
_CLIENTS_LOCK = threading.Lock()


def _shared_client(project: Optional[str], location: Optional[str]) -> bigquery.Client:
    key = (project, location)
    with _CLIENTS_LOCK:
        client = _CLIENTS.get(key)
        if client is None:
            client = bigquery.Client(project=project, location=location)
            _CLIENTS[key] = client
        return client


def _table_ref(ref: TableReference, default_project: Optional[str]) -> bigquery.TableReference:
    project = ref.project_id or default_project
    return bigquery.TableReference(bigquery.DatasetReference(project, ref.dataset_id), ref.table_id)


def _schema_fields(schema: Optional[List[Dict[str, Any]]]) -> Optional[List[bigquery.SchemaField]]:
    if schema is None:
        return None
    return [bigquery.SchemaField.from_api_repr(field) for field in schema]


def _job_record(job: Any) -> Job:
    statistics: Dict[str, Any] = {}
    if isinstance(job, bigquery.ExtractJob):
        statistics["extract"] = {"destination_uri_file_counts": list(job.destination_uri_file_counts or [])}
    elif isinstance(job, bigquery.LoadJob):
        statistics["load"] = {"output_rows": job.output_rows, "output_bytes": job.output_bytes}
    elif isinstance(job, bigquery.QueryJob):
        statistics["query"] = {"total_bytes_processed": job.total_bytes_processed}
    return Job(
        job_ref=JobReference(job.project, job.job_id),
        state=job.state or "PENDING",
        error_result=job.error_result,
        errors=list(job.errors or []),
        statistics=statistics,
    )


class BigQueryJobClient:
    def __init__(
        self, client: bigquery.Client, logger: PrintLogger = DEFAULT_LOGGER, retry_policy: retry.Retry = TRANSIENT_RETRY
    ) -> None:
        self.client = client
        self.logger = logger
        self.retry = retry_policy

    def _submit(self, job_ref: JobReference, start) -> None:
        try:
            start()
        except api_exceptions.Conflict:
            # A job with this id already exists; polling picks up its result.
            self.logger.warn("job_already_exists", job_id=job_ref.job_id, project=job_ref.project_id)

    def submit_load(self, job_ref: JobReference, spec: LoadJobSpec) -> None:
        config = bigquery.LoadJobConfig()
        config.source_format = spec.source_format
        config.write_disposition = spec.write_disposition
        config.create_disposition = spec.create_disposition
        if spec.schema is not None:
            config.schema = _schema_fields(spec.schema)
        self._submit(
            job_ref,
            lambda: self.client.load_table_from_uri(
                list(spec.source_uris),
                _table_ref(spec.destination, job_ref.project_id),
                job_id=job_ref.job_id,
                project=job_ref.project_id,
                job_config=config,
            ),
        )

    def submit_copy(self, job_ref: JobReference, spec: CopyJobSpec) -> None:
        config = bigquery.CopyJobConfig()
        config.write_disposition = spec.write_disposition
        config.create_disposition = spec.create_disposition
        self._submit(
            job_ref,
            lambda: self.client.copy_table(
                [_table_ref(src, job_ref.project_id) for src in spec.sources],
                _table_ref(spec.destination, job_ref.project_id),
                job_id=job_ref.job_id,
                project=job_ref.project_id,
                job_config=config,
            ),
        )

    def submit_extract(self, job_ref: JobReference, spec: ExtractJobSpec) -> None:
        config = bigquery.ExtractJobConfig()
        config.destination_format = spec.destination_format
        self._submit(
            job_ref,
            lambda: self.client.extract_table(
                _table_ref(spec.source, job_ref.project_id),
                list(spec.destination_uris),
                job_id=job_ref.job_id,
                project=job_ref.project_id,
                job_config=config,
            ),
        )

    def _query_config(self, spec: QueryJobSpec, project_id: str, dry_run: bool = False) -> bigquery.QueryJobConfig:
        config = bigquery.QueryJobConfig()
        config.use_legacy_sql = spec.use_legacy_sql
        config.priority = spec.priority
        if spec.use_legacy_sql:
            config.flatten_results = spec.flatten_results
            config.allow_large_results = spec.allow_large_results
        if dry_run:
            config.dry_run = True
            config.use_query_cache = False
            return config
        if spec.destination is not None:
            config.destination = _table_ref(spec.destination, project_id)
            config.write_disposition = spec.write_disposition
            config.create_disposition = spec.create_disposition
        return config

    def submit_query(self, job_ref: JobReference, spec: QueryJobSpec) -> None:
        config = self._query_config(spec, job_ref.project_id)
        self._submit(
            job_ref,
            lambda: self.client.query(
                spec.query,
                job_config=config,
                job_id=job_ref.job_id,
                project=job_ref.project_id,
            ),
        )

    def poll_job(
        self,
        job_ref: JobReference,
        max_retries: Optional[int] = None,
        interrupt: Optional[threading.Event] = None,
    ) -> Optional[Job]:
        """Wait for a job to reach DONE; ``None`` once the retry budget is spent.

        Transient errors of a single lookup are retried by ``TRANSIENT_RETRY``;
        a lookup that exhausts it counts against ``max_retries``.
        """
        failures = 0
        not_found = 0
        delays = retry.exponential_sleep_generator(INITIAL_POLL_BACKOFF_SECONDS, MAX_POLL_BACKOFF_SECONDS)
        for delay in delays:
            try:
                job = self.client.get_job(job_ref.job_id, project=job_ref.project_id, retry=self.retry)
                if job.state == "DONE":
                    return _job_record(job)
            except api_exceptions.NotFound:
                not_found += 1
                if not_found >= MAX_NOT_FOUND_POLLS:
                    self.logger.warn("job_not_found", job_id=job_ref.job_id, polls=not_found)
                    return None
            except api_exceptions.RetryError as exc:
                failures += 1
                self.logger.warn("job_poll_failed", job_id=job_ref.job_id, attempt=failures, error=str(exc))
                if max_retries is not None and failures > max_retries:
                    return None
            if interrupt is not None:
                if interrupt.wait(delay):
                    raise JobInterruptedError(
                        f"Interrupted while polling job {job_ref.job_id}", job_id_prefix=job_ref.job_id
                    )
            else:
                time.sleep(delay)
        return None

    def get_job(self, job_ref: JobReference) -> Optional[Job]:
        try:
            return _job_record(self.client.get_job(job_ref.job_id, project=job_ref.project_id, retry=self.retry))
        except api_exceptions.NotFound:
            return None

    def dry_run_query(self, project_id: str, spec: QueryJobSpec) -> QueryDryRun:
        job = self.client.query(spec.query, job_config=self._query_config(spec, project_id, dry_run=True), project=project_id)
        referenced = [
            TableReference(dataset_id=ref.dataset_id, table_id=ref.table_id, project_id=ref.project)
            for ref in (job.referenced_tables or [])
        ]
        return QueryDryRun(total_bytes_processed=int(job.total_bytes_processed or 0), referenced_tables=referenced)


class BigQueryTableClient:
    def __init__(
        self, client: bigquery.Client, logger: PrintLogger = DEFAULT_LOGGER, retry_policy: retry.Retry = TRANSIENT_RETRY
    ) -> None:
        self.client = client
        self.logger = logger
        self.retry = retry_policy

    def _ref(self, ref: TableReference) -> bigquery.TableReference:
        return _table_ref(ref, self.client.project)

    def get_table(self, ref: TableReference) -> Optional[TableInfo]:
        try:
            table = self.client.get_table(self._ref(ref))
        except api_exceptions.NotFound:
            return None
        return TableInfo(
            reference=ref,
            schema=[field.to_api_repr() for field in table.schema],
            num_bytes=table.num_bytes,
            num_rows=table.num_rows,
            location=table.location,
            description=table.description,
        )

    def get_dataset(self, project_id: str, dataset_id: str) -> DatasetInfo:
        try:
            dataset = self.client.get_dataset(bigquery.DatasetReference(project_id, dataset_id))
        except api_exceptions.NotFound as exc:
            raise ResourceNotFoundError(f"Dataset {project_id}:{dataset_id} not found") from exc
        return DatasetInfo(project_id=project_id, dataset_id=dataset_id, location=dataset.location)

    def create_table(
        self, ref: TableReference, schema: List[Dict[str, Any]], description: Optional[str] = None
    ) -> TableInfo:
        table = bigquery.Table(self._ref(ref), schema=_schema_fields(schema))
        if description is not None:
            table.description = description
        created = self.client.create_table(table, exists_ok=True)
        self.logger.info("table_created", table=ref.to_spec())
        return TableInfo(reference=ref, schema=list(schema), location=created.location, description=description)

    def delete_table(self, ref: TableReference) -> None:
        self.client.delete_table(self._ref(ref), not_found_ok=True)

    def create_dataset(
        self, project_id: str, dataset_id: str, location: Optional[str] = None, description: Optional[str] = None
    ) -> DatasetInfo:
        dataset = bigquery.Dataset(bigquery.DatasetReference(project_id, dataset_id))
        if location:
            dataset.location = location
        if description:
            dataset.description = description
        created = self.client.create_dataset(dataset, exists_ok=True)
        return DatasetInfo(project_id=project_id, dataset_id=dataset_id, location=created.location)

    def delete_dataset(self, project_id: str, dataset_id: str) -> None:
        self.client.delete_dataset(
            bigquery.DatasetReference(project_id, dataset_id), delete_contents=True, not_found_ok=True
        )

    def is_table_empty(self, ref: TableReference) -> bool:
        rows = self.client.list_rows(self._ref(ref), max_results=1)
        return next(iter(rows), None) is None

    def insert_all(self, ref: TableReference, rows: List[Dict[str, Any]], unique_ids: List[str]) -> int:
        """Stream rows with their dedup ids; returns the serialized byte size sent."""
        if len(rows) != len(unique_ids):
            raise ValueError("rows and unique_ids must have the same length")
        table = self._ref(ref)
        total_bytes = 0
        for start in range(0, len(rows), MAX_INSERT_ROWS_PER_REQUEST):
            batch = rows[start : start + MAX_INSERT_ROWS_PER_REQUEST]
            ids = unique_ids[start : start + MAX_INSERT_ROWS_PER_REQUEST]
            self._insert_batch(table, batch, ids)
            total_bytes += sum(len(json.dumps(row, separators=(",", ":"), default=str)) for row in batch)
        return total_bytes

    def _insert_batch(self, table: bigquery.TableReference, rows: List[Dict[str, Any]], ids: List[str]) -> None:
        delays = retry.exponential_sleep_generator(INITIAL_POLL_BACKOFF_SECONDS, MAX_POLL_BACKOFF_SECONDS)
        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            errors = self.client.insert_rows_json(table, rows, row_ids=ids, retry=self.retry)
            if not errors:
                return
            reasons = {err.get("reason") for entry in errors for err in entry.get("errors", [])}
            if reasons & NON_RETRYABLE_INSERT_REASONS or attempt == MAX_INSERT_ATTEMPTS:
                raise InsertError(f"Insert into {table} failed after {attempt} attempt(s): {errors}", errors)
            failed = sorted({entry["index"] for entry in errors})
            self.logger.warn("insert_retry", table=str(table), attempt=attempt, failed_rows=len(failed))
            rows = [rows[i] for i in failed]
            ids = [ids[i] for i in failed]
            time.sleep(next(delays))

    def patch_table_description(self, ref: TableReference, description: Optional[str]) -> None:
        table = self.client.get_table(self._ref(ref))
        table.description = description
        self.client.update_table(table, ["description"])


@dataclass
class BigQueryServices:
    """Picklable factory; each process builds its own shared ``bigquery.Client``."""

    project: Optional[str] = None
    location: Optional[str] = None

    def job_client(self) -> BigQueryJobClient:
        return BigQueryJobClient(_shared_client(self.project, self.location))

    def table_client(self) -> BigQueryTableClient:
        return BigQueryTableClient(_shared_client(self.project, self.location))
