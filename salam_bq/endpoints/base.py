from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, TYPE_CHECKING, runtime_checkable

if TYPE_CHECKING:
    from ..tools.base import ExecutionTool


@dataclass
class EndpointCapabilities:
    supports_read: bool = False
    supports_query: bool = False
    supports_bulk_load: bool = False
    supports_streaming: bool = False
    supports_table_function: bool = False


@runtime_checkable
class BaseEndpoint(Protocol):
    """Common methods for both source and sink endpoints."""

    tool: "ExecutionTool"

    def capabilities(self) -> EndpointCapabilities: ...

    def describe(self) -> Dict[str, Any]: ...

    def validate(self) -> None: ...


@dataclass
class SourceReadResult:
    dataset: Any
    rows: int
    sources: int
    event_payload: Dict[str, Any] = field(default_factory=dict)
    cleanup: Optional[Callable[[], Any]] = None


@runtime_checkable
class SourceEndpoint(BaseEndpoint, Protocol):
    """Contract for any endpoint that can provide data."""

    def estimated_size_bytes(self) -> int: ...

    def read_full(self) -> SourceReadResult: ...


@dataclass
class SinkWriteResult:
    rows: int
    table: str
    method: str
    event_payload: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SinkEndpoint(BaseEndpoint, Protocol):
    """Contract for landing a dataset in the warehouse."""

    def write(self, dataset: Any) -> SinkWriteResult: ...


class EndpointRegistry:
    """Simple registry for named endpoint factories."""

    def __init__(self) -> None:
        self._sources: Dict[str, Any] = {}
        self._sinks: Dict[str, Any] = {}

    def register_source(self, key: str, factory: Any) -> None:
        self._sources[key.lower()] = factory

    def register_sink(self, key: str, factory: Any) -> None:
        self._sinks[key.lower()] = factory

    def source(self, key: str):
        return self._sources.get(key.lower())

    def sink(self, key: str):
        return self._sinks.get(key.lower())


# global registry instance for convenience
REGISTRY = EndpointRegistry()
