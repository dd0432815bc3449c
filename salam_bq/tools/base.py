from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..staging import StagedFile


@dataclass
class QueryRequest:
    format: str
    options: Dict[str, Any]
    partition_options: Optional[Dict[str, Any]] = None


@dataclass
class WriteRequest:
    dataset: Any
    path: str
    format: str
    mode: str
    options: Optional[Dict[str, Any]] = None


class ExecutionTool(Protocol):
    """Execution backend interface (Spark, in-process)."""

    def query(self, request: QueryRequest) -> Any: ...

    def write_dataset(self, request: WriteRequest) -> None: ...

    def count(self, dataset: Any) -> int: ...

    def stage_rows(
        self, dataset: Any, temp_prefix: str, storage_options: Optional[Dict[str, Any]] = None
    ) -> List[StagedFile]: ...

    def read_sources(self, sources: Sequence[Any], schema: List[Dict[str, Any]]) -> Any: ...

    def stream_rows(self, dataset: Any, tagger: Any, writer: Any) -> int: ...

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]):  # pragma: no cover - interface
        ...

    def stop(self) -> None: ...

    def set_job_context(self, *, pool: Optional[str], group_id: Optional[str], description: Optional[str]) -> None: ...

    def clear_job_context(self) -> None: ...
