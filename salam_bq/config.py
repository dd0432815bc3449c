from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import ConfigurationError
from .partitioning import MAX_NUM_FILES, MAX_SIZE_BYTES
from .references import TableFunction, TableReference, resolve_table

DEFAULT_NUM_SHARDS = 50
DEFAULT_BUNDLE_SIZE_BYTES = 64 * 1024 * 1024


class CreateDisposition(str, Enum):
    CREATE_IF_NEEDED = "CREATE_IF_NEEDED"
    CREATE_NEVER = "CREATE_NEVER"


class WriteDisposition(str, Enum):
    WRITE_TRUNCATE = "WRITE_TRUNCATE"
    WRITE_APPEND = "WRITE_APPEND"
    WRITE_EMPTY = "WRITE_EMPTY"


class WriteMethod(str, Enum):
    LOAD = "load"
    STREAMING = "streaming"


def _enum(enum_cls, value, key: str):
    try:
        return value if isinstance(value, enum_cls) else enum_cls(str(value).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {key}: {value!r} (expected one of {allowed})") from exc


@dataclass(frozen=True)
class BigQueryOptions:
    """Run-wide settings shared by every transfer."""

    project: Optional[str] = None
    temp_location: Optional[str] = None
    job_name: str = "salam_bq"
    location: Optional[str] = None
    max_parallel_loads: int = 4
    max_parallel_transfers: int = 2
    desired_bundle_size_bytes: int = DEFAULT_BUNDLE_SIZE_BYTES
    max_num_files: int = MAX_NUM_FILES
    max_size_bytes: int = MAX_SIZE_BYTES
    num_shards: int = DEFAULT_NUM_SHARDS
    max_retry_jobs: int = 3
    poll_max_retries: Optional[int] = None
    storage_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BigQueryOptions":
        runtime = cfg.get("runtime", {})
        limits = runtime.get("limits", {})
        poll_max = limits.get("poll_max_retries")
        return cls(
            project=runtime.get("project"),
            temp_location=runtime.get("temp_location"),
            job_name=runtime.get("job_name", "salam_bq"),
            location=runtime.get("location"),
            max_parallel_loads=int(runtime.get("max_parallel_loads", 4)),
            max_parallel_transfers=int(runtime.get("max_parallel_transfers", 2)),
            desired_bundle_size_bytes=int(runtime.get("desired_bundle_size_bytes", DEFAULT_BUNDLE_SIZE_BYTES)),
            max_num_files=int(limits.get("max_num_files", MAX_NUM_FILES)),
            max_size_bytes=int(limits.get("max_size_bytes", MAX_SIZE_BYTES)),
            num_shards=int(limits.get("num_shards", DEFAULT_NUM_SHARDS)),
            max_retry_jobs=int(limits.get("max_retry_jobs", 3)),
            poll_max_retries=int(poll_max) if poll_max is not None else None,
            storage_options=dict(runtime.get("storage_options", {})),
        )

    def executing_project(self) -> str:
        if not self.project:
            raise ConfigurationError("runtime.project is required to run warehouse jobs")
        return self.project


@dataclass(frozen=True)
class ReadConfig:
    """A snapshot read of either a table or a query result."""

    name: str = "read"
    table: Optional[Union[str, TableReference]] = None
    query: Optional[str] = None
    use_legacy_sql: Optional[bool] = None
    flatten_results: Optional[bool] = None
    validate: bool = True
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadConfig":
        return cls(
            name=data.get("name", "read"),
            table=data.get("table"),
            query=data.get("query"),
            use_legacy_sql=data.get("use_legacy_sql"),
            flatten_results=data.get("flatten_results"),
            validate=bool(data.get("validate", True)),
            output=dict(data.get("output", {})),
        )

    def with_defaults(self) -> "ReadConfig":
        if self.query is None:
            return self
        return replace(
            self,
            use_legacy_sql=True if self.use_legacy_sql is None else self.use_legacy_sql,
            flatten_results=True if self.flatten_results is None else self.flatten_results,
        )

    def table_ref(self, default_project: Optional[str]) -> Optional[TableReference]:
        if self.table is None:
            return None
        return resolve_table(self.table, default_project)


@dataclass(frozen=True)
class WriteConfig:
    """A write of pipeline rows into one table or a per-window table function."""

    name: str = "write"
    table: Optional[Union[str, TableReference]] = None
    table_fn: Optional[TableFunction] = None
    schema: Optional[List[Dict[str, Any]]] = None
    create_disposition: CreateDisposition = CreateDisposition.CREATE_IF_NEEDED
    write_disposition: WriteDisposition = WriteDisposition.WRITE_EMPTY
    method: WriteMethod = WriteMethod.LOAD
    table_description: Optional[str] = None
    validate: bool = True
    window_fn: Optional[Callable[[Any], Any]] = None
    input: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WriteConfig":
        return cls(
            name=data.get("name", "write"),
            table=data.get("table"),
            schema=data.get("schema"),
            create_disposition=_enum(
                CreateDisposition, data.get("create_disposition", "CREATE_IF_NEEDED"), "create_disposition"
            ),
            write_disposition=_enum(WriteDisposition, data.get("write_disposition", "WRITE_EMPTY"), "write_disposition"),
            method=_enum(WriteMethod, data.get("method", "load"), "method"),
            table_description=data.get("table_description"),
            validate=bool(data.get("validate", True)),
            input=dict(data.get("input", {})),
        )

    @property
    def is_streaming(self) -> bool:
        return self.method == WriteMethod.STREAMING or self.table_fn is not None

    def table_ref(self, default_project: Optional[str]) -> Optional[TableReference]:
        if self.table is None:
            return None
        return resolve_table(self.table, default_project)
