from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from ..common import DEFAULT_LOGGER, PrintLogger, random_uuid
from ..config import BigQueryOptions, ReadConfig, WriteConfig
from ..events import EventCategory, EventType
from ..extract import QuerySnapshotSource, SnapshotSourceBase, TableSnapshotSource
from ..io.paths import Paths
from ..jobs import JobRunner
from ..load import BulkLoadWriter
from ..references import TableReference
from ..services.base import Services
from ..streaming import StreamingInsertPipeline, StreamingWriteFn, TagWithUniqueIds
from ..validation import check_read_config, check_write_config, validate_read, validate_write
from .base import EndpointCapabilities, SinkEndpoint, SinkWriteResult, SourceEndpoint, SourceReadResult


def _job_runner(options: BigQueryOptions, job_client, logger: PrintLogger, emitter, cancel_event) -> JobRunner:
    return JobRunner(
        job_client,
        logger=logger,
        emitter=emitter,
        cancel_event=cancel_event,
        max_attempts=options.max_retry_jobs,
        poll_max_retries=options.poll_max_retries,
    )


class BigQuerySourceEndpoint(SourceEndpoint):
    """Reads a table or query result through an exported snapshot."""

    def __init__(
        self,
        tool,
        options: BigQueryOptions,
        read_cfg: ReadConfig,
        services: Services,
        *,
        step_uuid: Optional[str] = None,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.tool = tool
        self.options = options
        self.read_cfg = check_read_config(options, read_cfg)
        self.services = services
        self.step_uuid = step_uuid or random_uuid()
        self.logger = logger
        self.emitter = emitter
        self.job_client = services.job_client()
        self.table_client = services.table_client()
        self.runner = _job_runner(options, self.job_client, logger, emitter, cancel_event)
        self.source = self._build_source()
        self._caps = EndpointCapabilities(supports_read=True, supports_query=True)

    def _build_source(self) -> SnapshotSourceBase:
        common = dict(step_uuid=self.step_uuid, logger=self.logger, emitter=self.emitter, runner=self.runner)
        table = self.read_cfg.table_ref(self.options.project)
        if table is not None:
            return TableSnapshotSource(table, self.options, self.job_client, self.table_client, **common)
        return QuerySnapshotSource(
            self.read_cfg.query,
            bool(self.read_cfg.use_legacy_sql),
            bool(self.read_cfg.flatten_results),
            self.options,
            self.job_client,
            self.table_client,
            **common,
        )

    def capabilities(self) -> EndpointCapabilities:
        return self._caps

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.read_cfg.name,
            "table": str(self.read_cfg.table_ref(self.options.project)) if self.read_cfg.table else None,
            "query": self.read_cfg.query,
            "step_uuid": self.step_uuid,
            "extract_dir": self.source.extract_dir,
        }

    def validate(self) -> None:
        validate_read(self.options, self.read_cfg, self.job_client, self.table_client)

    def estimated_size_bytes(self) -> int:
        return self.source.estimated_size_bytes()

    def read_full(self) -> SourceReadResult:
        """Snapshot the source; the caller runs ``cleanup`` once the dataset is written out."""
        if self.read_cfg.validate:
            self.validate()
        bundles = self.source.bundles()
        dataset = self.tool.read_sources(bundles, self.source.schema or [])
        rows = self.tool.count(dataset)
        return SourceReadResult(
            dataset=dataset,
            rows=rows,
            sources=len(bundles),
            event_payload={"extract_job": self.source.extract_job.job_id if self.source.extract_job else None},
            cleanup=self.source.cleanup(),
        )


class BigQuerySinkEndpoint(SinkEndpoint):
    """Writes a dataset with load jobs or with de-duplicated streaming inserts."""

    def __init__(
        self,
        tool,
        options: BigQueryOptions,
        write_cfg: WriteConfig,
        services: Services,
        *,
        step_uuid: Optional[str] = None,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        requires_gcs: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.tool = tool
        self.options = options
        self.write_cfg = write_cfg
        self.services = services
        self.step_uuid = step_uuid or random_uuid()
        self.logger = logger
        self.emitter = emitter
        self.requires_gcs = requires_gcs
        self.cancel_event = cancel_event
        check_write_config(options, write_cfg, requires_gcs=requires_gcs)
        self.table_client = services.table_client()
        self._destination: Optional[TableReference] = None
        self._validated = False
        self._caps = EndpointCapabilities(
            supports_bulk_load=True, supports_streaming=True, supports_table_function=True
        )

    def capabilities(self) -> EndpointCapabilities:
        return self._caps

    def describe(self) -> Dict[str, Any]:
        table = self.write_cfg.table_ref(self.options.project)
        return {
            "name": self.write_cfg.name,
            "table": table.to_spec() if table is not None else "<table_fn>",
            "method": "streaming" if self.write_cfg.is_streaming else "load",
            "create_disposition": self.write_cfg.create_disposition.value,
            "write_disposition": self.write_cfg.write_disposition.value,
            "step_uuid": self.step_uuid,
        }

    @property
    def temp_prefix(self) -> str:
        return Paths.write_temp_prefix(self.options.temp_location, self.step_uuid)

    def validate(self) -> None:
        self._destination = validate_write(
            self.options, self.write_cfg, self.table_client, requires_gcs=self.requires_gcs
        )
        self._validated = True

    def write(self, dataset: Any) -> SinkWriteResult:
        if not self._validated:
            self.validate()
        if self.write_cfg.is_streaming:
            return self._write_streaming(dataset)
        return self._write_load(dataset)

    def _write_load(self, dataset: Any) -> SinkWriteResult:
        staged = self.tool.stage_rows(dataset, self.temp_prefix, self.options.storage_options)
        rows = sum(f.row_count for f in staged)
        if self.emitter is not None:
            self.emitter.emit_event(
                EventCategory.LOAD,
                EventType.LOAD_STAGED,
                table=self._destination.to_spec(),
                files=len(staged),
                rows=rows,
                bytes=sum(f.byte_count for f in staged),
            )
        job_client = self.services.job_client()
        writer = BulkLoadWriter(
            self.options,
            self.write_cfg,
            self._destination,
            job_client,
            self.table_client,
            step_uuid=self.step_uuid,
            temp_prefix=self.temp_prefix,
            logger=self.logger,
            emitter=self.emitter,
            runner=_job_runner(self.options, job_client, self.logger, self.emitter, self.cancel_event),
        )
        result = writer.write(staged)
        return SinkWriteResult(rows=rows, table=self._destination.to_spec(), method="load", event_payload=result.as_dict())

    def _write_streaming(self, dataset: Any) -> SinkWriteResult:
        tagger = TagWithUniqueIds(
            self._destination,
            table_fn=self.write_cfg.table_fn if self._destination is None else None,
            default_project=self.options.project,
            num_shards=self.options.num_shards,
            window_fn=self.write_cfg.window_fn,
        )
        writer = StreamingWriteFn(
            self.services,
            self.write_cfg.schema,
            self.write_cfg.create_disposition,
            self.write_cfg.table_description,
            logger=self.logger,
            emitter=self.emitter,
        )
        inserted = StreamingInsertPipeline(self.tool, tagger, writer, self.logger).run(dataset)
        table = self._destination.to_spec() if self._destination is not None else "<table_fn>"
        return SinkWriteResult(
            rows=self.tool.count(dataset),
            table=table,
            method="streaming",
            event_payload={"bytes": inserted},
        )
