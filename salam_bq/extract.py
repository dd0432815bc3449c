"""Snapshot reads: export a table (or a query result) to files, then read the files.

``split()`` runs the export once and hands back one independently readable
source per exported file. The files stay on storage until every row has been
read and written out, then ``ExtractCleanup`` removes them.
"""

from __future__ import annotations

import threading
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pyarrow.parquet as pq
from google.api_core.exceptions import GoogleAPICallError

from .common import DEFAULT_LOGGER, PrintLogger, job_id_token, job_uuid
from .config import BigQueryOptions
from .errors import ExtractResultError
from .events import EventCategory, EventType
from .io.filesystem import Filesystem
from .io.paths import Paths
from .jobs import JobRunner
from .references import JobReference, TableReference
from .rows import convert_record
from .services.base import ExtractJobSpec, Job, JobClient, QueryDryRun, QueryJobSpec, TableClient


def extract_file_paths(extract_dir: str, job: Job) -> List[str]:
    counts = (job.statistics.get("extract") or {}).get("destination_uri_file_counts") or []
    if not counts:
        raise ExtractResultError("No destination uri file count received.")
    if len(counts) > 1:
        raise ExtractResultError(
            f"More than one destination uri file count received. First two are {counts[0]}, {counts[1]}"
        )
    return Paths.extract_file_paths(extract_dir, int(counts[0]))


class ParquetReader:
    """Iterates the rows of a row-group range and reports how far it got."""

    def __init__(self, source: "ParquetFileSource") -> None:
        self.source = source
        self.rows_read = 0
        self.total_rows: Optional[int] = None

    def fraction_consumed(self) -> float:
        if not self.total_rows:
            return 0.0 if self.total_rows is None else 1.0
        return min(1.0, self.rows_read / self.total_rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        fs = self.source.filesystem()
        with fs.open(self.source.path, "rb") as handle:
            parquet = pq.ParquetFile(handle)
            start, end = self.source.row_group_range(parquet.metadata.num_row_groups)
            self.total_rows = sum(parquet.metadata.row_group(i).num_rows for i in range(start, end))
            for index in range(start, end):
                for record in parquet.read_row_group(index).to_pylist():
                    self.rows_read += 1
                    yield record


class ParquetFileSource:
    """One exported file, optionally restricted to ``[start, end)`` row groups."""

    def __init__(
        self,
        path: str,
        storage_options: Optional[Dict[str, Any]] = None,
        row_groups: Optional[Tuple[int, int]] = None,
    ) -> None:
        self.path = path
        self.storage_options = dict(storage_options or {})
        self.row_groups = row_groups

    def filesystem(self) -> Filesystem:
        return Filesystem.for_path(self.path, self.storage_options)

    def row_group_range(self, num_row_groups: int) -> Tuple[int, int]:
        if self.row_groups is None:
            return 0, num_row_groups
        start, end = self.row_groups
        return start, min(end, num_row_groups)

    def _metadata(self):
        with self.filesystem().open(self.path, "rb") as handle:
            return pq.ParquetFile(handle).metadata

    def estimated_size_bytes(self) -> int:
        if self.row_groups is None:
            return self.filesystem().size(self.path)
        metadata = self._metadata()
        start, end = self.row_group_range(metadata.num_row_groups)
        return sum(metadata.row_group(i).total_byte_size for i in range(start, end))

    def split(self, desired_bundle_size_bytes: int) -> List["ParquetFileSource"]:
        metadata = self._metadata()
        start, end = self.row_group_range(metadata.num_row_groups)
        if end - start <= 1:
            return [self]
        bundles: List[ParquetFileSource] = []
        bundle_start, bundle_bytes = start, 0
        for index in range(start, end):
            bundle_bytes += metadata.row_group(index).total_byte_size
            if bundle_bytes >= desired_bundle_size_bytes:
                bundles.append(ParquetFileSource(self.path, self.storage_options, (bundle_start, index + 1)))
                bundle_start, bundle_bytes = index + 1, 0
        if bundle_start < end:
            bundles.append(ParquetFileSource(self.path, self.storage_options, (bundle_start, end)))
        return bundles

    def create_reader(self) -> ParquetReader:
        return ParquetReader(self)

    def read(self) -> Iterator[Dict[str, Any]]:
        return iter(self.create_reader())

    def __repr__(self) -> str:
        return f"ParquetFileSource({self.path!r}, row_groups={self.row_groups})"


class TransformingSource:
    """Applies a per-record function on top of another source."""

    def __init__(self, inner: ParquetFileSource, fn: Callable[[Dict[str, Any]], Any]) -> None:
        self.inner = inner
        self.fn = fn

    def estimated_size_bytes(self) -> int:
        return self.inner.estimated_size_bytes()

    def split(self, desired_bundle_size_bytes: int) -> List["TransformingSource"]:
        return [TransformingSource(part, self.fn) for part in self.inner.split(desired_bundle_size_bytes)]

    def read(self) -> Iterator[Any]:
        for record in self.inner.read():
            yield self.fn(record)


class ExtractCleanup:
    """Removes exported snapshot files once they have been fully read."""

    def __init__(
        self,
        job_client: JobClient,
        extract_job: Optional[JobReference],
        extract_dir: str,
        storage_options: Optional[Dict[str, Any]] = None,
        logger: PrintLogger = DEFAULT_LOGGER,
    ) -> None:
        self.job_client = job_client
        self.extract_job = extract_job
        self.extract_dir = extract_dir
        self.storage_options = dict(storage_options or {})
        self.logger = logger

    def files_to_delete(self, fs: Filesystem) -> List[str]:
        job = self.job_client.get_job(self.extract_job) if self.extract_job is not None else None
        if job is not None:
            return extract_file_paths(self.extract_dir, job)
        return fs.glob(fs.join(self.extract_dir, "*"))

    def run(self) -> int:
        """Delete the snapshot files; failures are logged and never raised."""
        fs = Filesystem.for_root(self.extract_dir, self.storage_options)
        try:
            paths = self.files_to_delete(fs)
        except (OSError, GoogleAPICallError, ExtractResultError) as exc:
            self.logger.warn("extract_files_list_failed", extract_dir=self.extract_dir, error=str(exc))
            return 0
        deleted = 0
        for path in paths:
            try:
                if fs.delete(path):
                    deleted += 1
            except (OSError, GoogleAPICallError) as exc:
                self.logger.warn("extract_file_delete_failed", path=path, error=str(exc))
        self.logger.info("extract_files_deleted", extract_dir=self.extract_dir, files=len(paths), deleted=deleted)
        return deleted

    __call__ = run


class SnapshotSourceBase:
    """Shared export-then-read logic for table and query snapshots."""

    def __init__(
        self,
        options: BigQueryOptions,
        job_client: JobClient,
        table_client: TableClient,
        *,
        step_uuid: str,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        runner: Optional[JobRunner] = None,
    ) -> None:
        self.options = options
        self.job_client = job_client
        self.table_client = table_client
        self.step_uuid = step_uuid
        self.logger = logger
        self.emitter = emitter
        self.job_uuid = job_uuid(step_uuid, options.job_name)
        self.token = job_id_token(step_uuid, options.job_name)
        self.extract_dir = Paths.extract_dir(options.temp_location, step_uuid)
        self.runner = runner or JobRunner(
            job_client,
            logger=logger,
            emitter=emitter,
            max_attempts=options.max_retry_jobs,
            poll_max_retries=options.poll_max_retries,
        )
        self.schema: Optional[List[Dict[str, Any]]] = None
        self.extract_job: Optional[JobReference] = None
        self._split_lock = threading.Lock()
        self._sources: Optional[List[TransformingSource]] = None

    def get_table_to_extract(self) -> TableReference:
        raise NotImplementedError

    def cleanup_temp_resource(self) -> None:
        """Drop intermediate warehouse resources once the export finished."""

    def _cleanup_failed(self, msg: str, resource: str, exc: Exception) -> None:
        self.logger.warn(msg, resource=resource, error=str(exc))
        if self.emitter is not None:
            self.emitter.emit_event(EventCategory.CLEANUP, EventType.CLEANUP_FAILED, resource=resource, error=str(exc))

    def estimated_size_bytes(self) -> int:
        raise NotImplementedError

    def _run_extract(self, table: TableReference) -> Job:
        spec = ExtractJobSpec(
            source=table,
            destination_uris=[Paths.extract_destination_uri(self.extract_dir)],
            destination_format="PARQUET",
        )

        def submit(job_ref: JobReference) -> None:
            self.job_client.submit_extract(job_ref, spec)

        return self.runner.run_job(f"{self.token}-extract", self.options.executing_project(), submit, kind="extract")

    def split(self) -> List[TransformingSource]:
        with self._split_lock:
            if self._sources is None:
                self._sources = self._split()
            return list(self._sources)

    def _split(self) -> List[TransformingSource]:
        table = self.get_table_to_extract()
        job = self._run_extract(table)
        self.extract_job = job.job_ref
        files = extract_file_paths(self.extract_dir, job)
        info = self.table_client.get_table(table)
        if info is None:
            raise ExtractResultError(f"Exported table {table.to_spec()} disappeared before its schema was read")
        self.schema = list(info.schema)
        self.cleanup_temp_resource()
        self.logger.info("extract_split", table=table.to_spec(), files=len(files), extract_dir=self.extract_dir)
        if self.emitter is not None:
            self.emitter.emit_event(
                EventCategory.EXTRACT, EventType.EXTRACT_SPLIT, table=table.to_spec(), files=len(files)
            )
        decode = partial(convert_record, schema=self.schema)
        return [TransformingSource(ParquetFileSource(path, self.options.storage_options), decode) for path in files]

    def bundles(self, desired_bundle_size_bytes: Optional[int] = None) -> List[TransformingSource]:
        """Split every exported file further by row groups."""
        size = desired_bundle_size_bytes or self.options.desired_bundle_size_bytes
        return [bundle for source in self.split() for bundle in source.split(size)]

    def cleanup(self) -> ExtractCleanup:
        return ExtractCleanup(
            self.job_client, self.extract_job, self.extract_dir, self.options.storage_options, self.logger
        )


class TableSnapshotSource(SnapshotSourceBase):
    def __init__(self, table: TableReference, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.table = table
        self._size: Optional[int] = None

    def get_table_to_extract(self) -> TableReference:
        return self.table

    def estimated_size_bytes(self) -> int:
        if self._size is None:
            info = self.table_client.get_table(self.table)
            self._size = int(info.num_bytes or 0) if info is not None else 0
        return self._size


class QuerySnapshotSource(SnapshotSourceBase):
    """Runs the query into a temporary table and exports that table."""

    def __init__(self, query: str, use_legacy_sql: bool, flatten_results: bool, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.query = query
        self.use_legacy_sql = use_legacy_sql
        self.flatten_results = flatten_results
        project = self.options.executing_project()
        self.temp_dataset = f"temp_dataset_{self.job_uuid}"
        self.temp_table = TableReference(
            dataset_id=self.temp_dataset, table_id=f"temp_table_{self.job_uuid}", project_id=project
        )
        self._dry_run: Optional[QueryDryRun] = None
        self._dry_run_lock = threading.Lock()

    def _spec(self, destination: Optional[TableReference] = None) -> QueryJobSpec:
        return QueryJobSpec(
            query=self.query,
            use_legacy_sql=self.use_legacy_sql,
            flatten_results=self.flatten_results,
            destination=destination,
            priority="BATCH",
            allow_large_results=True,
            write_disposition="WRITE_EMPTY",
            create_disposition="CREATE_IF_NEEDED",
        )

    def dry_run(self) -> QueryDryRun:
        with self._dry_run_lock:
            if self._dry_run is None:
                self._dry_run = self.job_client.dry_run_query(self.options.executing_project(), self._spec())
            return self._dry_run

    def estimated_size_bytes(self) -> int:
        return int(self.dry_run().total_bytes_processed)

    def _query_location(self) -> Optional[str]:
        referenced: Sequence[TableReference] = self.dry_run().referenced_tables
        if not referenced:
            return self.options.location
        info = self.table_client.get_table(referenced[0])
        return info.location if info is not None else self.options.location

    def get_table_to_extract(self) -> TableReference:
        project = self.options.executing_project()
        self.table_client.create_dataset(
            project,
            self.temp_dataset,
            location=self._query_location(),
            description=f"Temporary tables for query results of job {self.job_uuid}",
        )
        spec = self._spec(self.temp_table)

        def submit(job_ref: JobReference) -> None:
            self.job_client.submit_query(job_ref, spec)

        self.runner.run_job(f"{self.token}-query", project, submit, kind="query")
        return self.temp_table

    def cleanup_temp_resource(self) -> None:
        table_spec = self.temp_table.to_spec()
        try:
            self.table_client.delete_table(self.temp_table)
        except Exception as exc:
            self._cleanup_failed("temp_table_delete_failed", table_spec, exc)
        dataset_spec = f"{self.temp_table.project_id}:{self.temp_dataset}"
        try:
            self.table_client.delete_dataset(self.temp_table.project_id, self.temp_dataset)
        except Exception as exc:
            self._cleanup_failed("temp_dataset_delete_failed", dataset_spec, exc)
