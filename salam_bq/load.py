"""Bulk load commit protocol: partition, load, commit, clean up.

A plan with one partition loads straight into the destination. A plan with
several partitions loads each into its own temporary table in the
destination dataset and then commits all of them with a single copy job, so
readers never observe a partially loaded destination.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

from .common import DEFAULT_LOGGER, PrintLogger, job_id_token
from .config import BigQueryOptions, CreateDisposition, WriteConfig, WriteDisposition
from .events import EventCategory, EventType
from .io.filesystem import Filesystem
from .jobs import JobRunner
from .partitioning import DirectWrite, Partition, WritePlan, partition_files
from .references import JobReference, TableReference
from .services.base import CopyJobSpec, Job, JobClient, LoadJobSpec, TableClient
from .staging import StagedFile, create_empty_file, remove_staged_files


@dataclass
class LoadResult:
    destination: TableReference
    plan: str
    partitions: int
    temp_tables: List[TableReference] = field(default_factory=list)
    jobs: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination.to_spec(),
            "plan": self.plan,
            "partitions": self.partitions,
            "temp_tables": [t.to_spec() for t in self.temp_tables],
            "jobs": list(self.jobs),
        }


def temp_table_for(destination: TableReference, job_id_prefix: str) -> TableReference:
    return TableReference(dataset_id=destination.dataset_id, table_id=job_id_prefix, project_id=destination.project_id)


class BulkLoadWriter:
    def __init__(
        self,
        options: BigQueryOptions,
        write: WriteConfig,
        destination: TableReference,
        job_client: JobClient,
        table_client: TableClient,
        *,
        step_uuid: str,
        temp_prefix: str,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        runner: Optional[JobRunner] = None,
    ) -> None:
        self.options = options
        self.write_cfg = write
        self.destination = destination
        self.job_client = job_client
        self.table_client = table_client
        self.temp_prefix = temp_prefix
        self.logger = logger
        self.emitter = emitter
        self.token = job_id_token(step_uuid, options.job_name)
        self.runner = runner or JobRunner(
            job_client,
            logger=logger,
            emitter=emitter,
            max_attempts=options.max_retry_jobs,
            poll_max_retries=options.poll_max_retries,
        )

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        if self.emitter is not None:
            self.emitter.emit_event(EventCategory.LOAD, event_type, **payload)

    def _filesystem(self) -> Filesystem:
        return Filesystem.for_root(self.temp_prefix, self.options.storage_options)

    def plan(self, staged_files: Sequence[StagedFile]) -> WritePlan:
        filesystem = self._filesystem()
        plan = partition_files(
            staged_files,
            max_num_files=self.options.max_num_files,
            max_size_bytes=self.options.max_size_bytes,
            empty_file_factory=partial(create_empty_file, self.temp_prefix, filesystem),
        )
        self._emit(
            EventType.LOAD_PARTITIONED,
            destination=self.destination.to_spec(),
            files=len(staged_files),
            bytes=sum(f.byte_count for f in staged_files),
            partitions=len(plan.partitions),
            direct=isinstance(plan, DirectWrite),
        )
        return plan

    def write(self, staged_files: Sequence[StagedFile]) -> LoadResult:
        plan = self.plan(staged_files)
        if isinstance(plan, DirectWrite):
            job = self._load_partition(
                plan.partition,
                self.destination,
                job_id_prefix=self._partition_prefix(plan.partition),
                write_disposition=self.write_cfg.write_disposition,
                create_disposition=self.write_cfg.create_disposition,
            )
            self._patch_description(self.destination)
            self._emit(EventType.LOAD_COMMITTED, destination=self.destination.to_spec(), partitions=1, copy=False)
            return LoadResult(self.destination, "direct", 1, jobs=[job.job_ref.job_id])

        temp_tables, load_jobs = self._load_temp_tables(plan.partitions)
        copy_job = self._copy(temp_tables)
        self._patch_description(self.destination)
        self._emit(
            EventType.LOAD_COMMITTED,
            destination=self.destination.to_spec(),
            partitions=len(temp_tables),
            copy=True,
        )
        self._delete_temp_tables(temp_tables)
        return LoadResult(
            self.destination,
            "staged",
            len(temp_tables),
            temp_tables=temp_tables,
            jobs=load_jobs + [copy_job.job_ref.job_id],
        )

    def _partition_prefix(self, partition: Partition) -> str:
        return f"{self.token}_{partition.partition_id:05d}"

    def _load_temp_tables(self, partitions: Sequence[Partition]):
        results: Dict[int, Job] = {}
        temp_tables: Dict[int, TableReference] = {}
        workers = max(1, min(self.options.max_parallel_loads, len(partitions)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futmap = {}
            for partition in partitions:
                prefix = self._partition_prefix(partition)
                temp_table = temp_table_for(self.destination, prefix)
                temp_tables[partition.partition_id] = temp_table
                fut = executor.submit(
                    self._load_partition,
                    partition,
                    temp_table,
                    job_id_prefix=prefix,
                    write_disposition=WriteDisposition.WRITE_EMPTY,
                    create_disposition=CreateDisposition.CREATE_IF_NEEDED,
                )
                futmap[fut] = partition.partition_id
            for fut in as_completed(futmap):
                results[futmap[fut]] = fut.result()
        ordered = sorted(results)
        return [temp_tables[pid] for pid in ordered], [results[pid].job_ref.job_id for pid in ordered]

    def _load_partition(
        self,
        partition: Partition,
        table: TableReference,
        *,
        job_id_prefix: str,
        write_disposition: WriteDisposition,
        create_disposition: CreateDisposition,
    ) -> Job:
        spec = LoadJobSpec(
            destination=table,
            source_uris=list(partition.files),
            schema=self.write_cfg.schema,
            write_disposition=write_disposition.value,
            create_disposition=create_disposition.value,
        )

        def submit(job_ref: JobReference) -> None:
            self.job_client.submit_load(job_ref, spec)

        self.logger.info(
            "load_partition_start",
            partition=partition.partition_id,
            files=len(partition.files),
            table=table.to_spec(),
            job_id_prefix=job_id_prefix,
        )
        try:
            return self.runner.run_job(job_id_prefix, self.options.executing_project(), submit, kind="load")
        finally:
            remove_staged_files(partition.files, logger=self.logger, filesystem=self._filesystem())

    def _copy(self, temp_tables: List[TableReference]) -> Job:
        spec = CopyJobSpec(
            sources=list(temp_tables),
            destination=self.destination,
            write_disposition=self.write_cfg.write_disposition.value,
            create_disposition=self.write_cfg.create_disposition.value,
        )

        def submit(job_ref: JobReference) -> None:
            self.job_client.submit_copy(job_ref, spec)

        return self.runner.run_job(self.token, self.options.executing_project(), submit, kind="copy")

    def _patch_description(self, table: TableReference) -> None:
        if self.write_cfg.table_description is not None:
            self.table_client.patch_table_description(table, self.write_cfg.table_description)

    def _delete_temp_tables(self, temp_tables: Sequence[TableReference]) -> None:
        for table in temp_tables:
            try:
                self.table_client.delete_table(table)
            except Exception as exc:
                self.logger.warn("temp_table_delete_failed", table=table.to_spec(), error=str(exc))
                if self.emitter is not None:
                    self.emitter.emit_event(
                        EventCategory.CLEANUP, EventType.CLEANUP_FAILED, resource=table.to_spec(), error=str(exc)
                    )
