"""In-process execution tool over plain lists of dict rows."""

from __future__ import annotations

import glob
import json
import os
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from itertools import chain
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pyarrow as pa
import pyarrow.parquet as pq

from ..common import DEFAULT_LOGGER, PrintLogger
from ..rows import as_table_row, encode_json_value
from ..staging import StagedFile, write_bundle
from ..streaming import RowDedupRecord, ShardedKey
from .base import ExecutionTool, QueryRequest, WriteRequest


def _bundles(rows: Sequence[Any], parallelism: int) -> List[List[Any]]:
    rows = list(rows)
    if not rows:
        return []
    size = -(-len(rows) // parallelism)
    return [rows[i : i + size] for i in range(0, len(rows), size)]


def _input_files(path: str, suffix: str) -> List[str]:
    if os.path.isdir(path):
        return sorted(glob.glob(os.path.join(path, f"*{suffix}")))
    return [path]


class LocalTool(ExecutionTool):
    """Runs every stage on a thread pool in this process; datasets are lists of rows."""

    def __init__(self, parallelism: int = 4, logger: PrintLogger = DEFAULT_LOGGER) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be positive")
        self.parallelism = parallelism
        self.logger = logger
        self.job_context: Dict[str, Optional[str]] = {}

    def query(self, request: QueryRequest) -> List[Dict[str, Any]]:
        path = request.options["path"]
        fmt = request.format.lower()
        if fmt == "json":
            rows: List[Dict[str, Any]] = []
            for name in _input_files(path, ".json"):
                with open(name, "r", encoding="utf-8") as handle:
                    rows.extend(json.loads(line) for line in handle if line.strip())
            return rows
        if fmt == "parquet":
            return list(chain.from_iterable(pq.read_table(name).to_pylist() for name in _input_files(path, ".parquet")))
        raise ValueError(f"Unsupported local format: {request.format}")

    def write_dataset(self, request: WriteRequest) -> None:
        fmt = request.format.lower()
        if request.mode not in {"append", "overwrite"}:
            raise ValueError(f"Unsupported write mode: {request.mode}")
        rows = [as_table_row(row) for row in request.dataset]
        os.makedirs(request.path, exist_ok=True)
        if request.mode == "overwrite":
            for name in os.listdir(request.path):
                os.remove(os.path.join(request.path, name))
        existing = len(os.listdir(request.path))
        target = os.path.join(request.path, f"part-{existing:05d}.{fmt}")
        if fmt == "json":
            with open(target, "w", encoding="utf-8") as handle:
                for row in rows:
                    handle.write(json.dumps(row, default=encode_json_value) + "\n")
        elif fmt == "parquet":
            pq.write_table(pa.Table.from_pylist(rows), target)
        else:
            raise ValueError(f"Unsupported local format: {request.format}")

    def count(self, dataset: Any) -> int:
        return len(dataset)

    def stage_rows(
        self, dataset: Any, temp_prefix: str, storage_options: Optional[Dict[str, Any]] = None
    ) -> List[StagedFile]:
        stage = partial(write_bundle, temp_prefix=temp_prefix, logger=self.logger, storage_options=storage_options)
        with ThreadPoolExecutor(max_workers=self.parallelism) as executor:
            staged = executor.map(lambda bundle: list(stage(bundle)), _bundles(dataset, self.parallelism))
            return [item for files in staged for item in files]

    def read_sources(self, sources: Sequence[Any], schema: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        with ThreadPoolExecutor(max_workers=self.parallelism) as executor:
            parts = list(executor.map(lambda source: list(source.read()), sources))
        return list(chain.from_iterable(parts))

    def stream_rows(self, dataset: Any, tagger: Any, writer: Any) -> int:
        groups: Dict[ShardedKey, List[Tuple[ShardedKey, RowDedupRecord]]] = defaultdict(list)
        for bundle in _bundles(dataset, self.parallelism):
            for key, record in tagger.tag_partition(bundle):
                groups[key].append((key, record))
        # Tagged rows are fully materialized here, so a retried insert resends identical ids.
        return sum(writer.write_partition(items) for items in groups.values())

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "LocalTool":
        runtime = cfg.get("runtime", {})
        return cls(parallelism=int(runtime.get("local_parallelism", 4)))

    def stop(self) -> None:
        return None

    def set_job_context(self, *, pool: Optional[str], group_id: Optional[str], description: Optional[str]) -> None:
        self.job_context = {"pool": pool, "group_id": group_id, "description": description}

    def clear_job_context(self) -> None:
        self.job_context = {}
