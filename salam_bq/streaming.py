"""Streaming inserts with warehouse-side de-duplication.

Rows are tagged with a unique id *before* the shuffle barrier. Once the
barrier has persisted the tagged rows, a re-executed insert resends the same
ids and the warehouse drops the duplicates.
"""

from __future__ import annotations

import random
import threading
import uuid
import zlib
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .common import DEFAULT_LOGGER, PrintLogger
from .config import CreateDisposition, DEFAULT_NUM_SHARDS
from .events import EventCategory, EventType
from .references import GLOBAL_WINDOW, TableFunction, TableReference, resolve_table, table_for_window
from .rows import as_table_row
from .services.base import Services


@dataclass(frozen=True)
class ShardedKey:
    table_spec: str
    shard_number: int


@dataclass(frozen=True)
class RowDedupRecord:
    row: Dict[str, Any]
    unique_id: str


def shard_partition(key: ShardedKey) -> int:
    """Deterministic partitioner for tagged rows, stable across worker processes."""
    return zlib.crc32(key.table_spec.encode("utf-8")) * 31 + key.shard_number


class CreatedTableCache:
    """Process-wide record of tables this process already created or verified."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._tables: Set[str] = set()

    def __contains__(self, table_spec: str) -> bool:
        return table_spec in self._tables

    def add(self, table_spec: str) -> None:
        self._tables.add(table_spec)

    def clear(self) -> None:
        with self.lock:
            self._tables.clear()


CREATED_TABLES = CreatedTableCache()


def clear_created_tables() -> None:
    CREATED_TABLES.clear()


class TagWithUniqueIds:
    """Assigns table, shard and a unique id to every row of a bundle."""

    def __init__(
        self,
        table: Optional[Union[str, TableReference]] = None,
        *,
        table_fn: Optional[TableFunction] = None,
        default_project: Optional[str] = None,
        num_shards: int = DEFAULT_NUM_SHARDS,
        window_fn: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        if (table is None) == (table_fn is None):
            raise ValueError("Exactly one of table or table_fn is required")
        if num_shards < 1:
            raise ValueError("num_shards must be positive")
        self.table_spec = resolve_table(table, default_project).to_spec() if table is not None else None
        self.table_fn = table_fn
        self.default_project = default_project
        self.num_shards = num_shards
        self.window_fn = window_fn
        self.session_token: Optional[str] = None
        self.sequence = 0

    def start_bundle(self) -> None:
        self.session_token = uuid.uuid4().hex
        self.sequence = 0

    def _table_spec(self, row: Dict[str, Any]) -> str:
        if self.table_spec is not None:
            return self.table_spec
        window = self.window_fn(row) if self.window_fn is not None else GLOBAL_WINDOW
        return table_for_window(self.table_fn, window, self.default_project).to_spec()

    def process(self, row: Any) -> Tuple[ShardedKey, RowDedupRecord]:
        if self.session_token is None:
            self.start_bundle()
        row = as_table_row(row)
        unique_id = f"{self.session_token}{self.sequence}"
        self.sequence += 1
        key = ShardedKey(self._table_spec(row), random.randrange(self.num_shards))
        return key, RowDedupRecord(row, unique_id)

    def tag_partition(self, rows: Iterable[Any]) -> Iterator[Tuple[ShardedKey, RowDedupRecord]]:
        self.start_bundle()
        for row in rows:
            yield self.process(row)


class StreamingWriteFn:
    """Buffers tagged rows per table within a bundle and inserts them on finish."""

    def __init__(
        self,
        services: Services,
        schema: Optional[List[Dict[str, Any]]],
        create_disposition: CreateDisposition = CreateDisposition.CREATE_IF_NEEDED,
        table_description: Optional[str] = None,
        *,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        cache: Optional[CreatedTableCache] = None,
    ) -> None:
        self.services = services
        self.schema = schema
        self.create_disposition = CreateDisposition(create_disposition)
        self.table_description = table_description
        self.logger = logger
        self.emitter = emitter
        self.cache = cache
        self.bytes_written = 0
        self._rows: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._ids: Dict[str, List[str]] = defaultdict(list)
        self._table_client = None

    def __getstate__(self) -> Dict[str, Any]:
        state = dict(self.__dict__)
        state["_table_client"] = None
        state["logger"] = None
        state["emitter"] = None
        state["cache"] = None
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(state)
        self.logger = self.logger or DEFAULT_LOGGER

    @property
    def table_client(self):
        if self._table_client is None:
            self._table_client = self.services.table_client()
        return self._table_client

    def _created_tables(self) -> CreatedTableCache:
        return self.cache if self.cache is not None else CREATED_TABLES

    def start_bundle(self) -> None:
        self._rows = defaultdict(list)
        self._ids = defaultdict(list)

    def process(self, key: ShardedKey, record: RowDedupRecord) -> None:
        self._rows[key.table_spec].append(record.row)
        self._ids[key.table_spec].append(record.unique_id)

    def get_or_create_table(self, table_spec: str) -> TableReference:
        ref = resolve_table(table_spec)
        if self.create_disposition == CreateDisposition.CREATE_NEVER:
            return ref
        cache = self._created_tables()
        if table_spec in cache:
            return ref
        with cache.lock:
            if table_spec not in cache:
                if self.table_client.get_table(ref) is None:
                    self.table_client.create_table(ref, self.schema or [], self.table_description)
                    self.logger.info("streaming_table_created", table=table_spec)
                cache.add(table_spec)
        return ref

    def finish_bundle(self) -> int:
        flushed = 0
        for table_spec, rows in self._rows.items():
            ref = self.get_or_create_table(table_spec)
            inserted = self.table_client.insert_all(ref, rows, self._ids[table_spec])
            flushed += inserted
            self.logger.debug("stream_flush", table=table_spec, rows=len(rows), bytes=inserted)
            if self.emitter is not None:
                self.emitter.emit_event(
                    EventCategory.STREAM, EventType.STREAM_FLUSH, table=table_spec, rows=len(rows), bytes=inserted
                )
        self._rows = defaultdict(list)
        self._ids = defaultdict(list)
        self.bytes_written += flushed
        return flushed

    def write_partition(self, items: Iterable[Tuple[ShardedKey, RowDedupRecord]]) -> int:
        """Run one bundle end to end; returns the bytes inserted."""
        self.start_bundle()
        for key, record in items:
            self.process(key, record)
        return self.finish_bundle()


class StreamingInsertPipeline:
    """Tag, shuffle and insert a dataset on an execution tool."""

    def __init__(self, tool, tagger: TagWithUniqueIds, writer: StreamingWriteFn, logger: PrintLogger = DEFAULT_LOGGER) -> None:
        self.tool = tool
        self.tagger = tagger
        self.writer = writer
        self.logger = logger

    def run(self, dataset: Any) -> int:
        total = self.tool.stream_rows(dataset, self.tagger, self.writer)
        self.logger.info("streaming_insert_done", bytes=total, shards=self.tagger.num_shards)
        return total
