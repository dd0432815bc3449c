"""Table and job references plus the ``[project:]dataset.table`` spec format."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from .errors import ConfigurationError

PROJECT_ID_REGEXP = r"[a-z][-a-z0-9:.]{4,61}[a-z0-9]"
DATASET_REGEXP = r"[-\w.]{1,1024}"
TABLE_REGEXP = r"[-\w$@]{1,1024}"

TABLE_SPEC = re.compile(
    rf"((?P<PROJECT>{PROJECT_ID_REGEXP}):)?(?P<DATASET>{DATASET_REGEXP})\.(?P<TABLE>{TABLE_REGEXP})",
    re.ASCII,
)


@dataclass(frozen=True)
class TableReference:
    dataset_id: str
    table_id: str
    project_id: Optional[str] = None

    def with_default_project(self, project_id: Optional[str]) -> "TableReference":
        if self.project_id or not project_id:
            return self
        return TableReference(self.dataset_id, self.table_id, project_id)

    def to_spec(self) -> str:
        return to_table_spec(self)

    def to_api_repr(self) -> Dict[str, Any]:
        return {"projectId": self.project_id, "datasetId": self.dataset_id, "tableId": self.table_id}

    def __str__(self) -> str:
        return self.to_spec()


@dataclass(frozen=True)
class JobReference:
    project_id: str
    job_id: str


def parse_table_spec(spec: str) -> TableReference:
    """Parse ``[project_id]:[dataset_id].[table_id]`` into a TableReference."""
    match = TABLE_SPEC.fullmatch(spec or "")
    if match is None:
        raise ConfigurationError(
            f"Table reference is not in [project_id]:[dataset_id].[table_id] format: {spec}"
        )
    return TableReference(
        dataset_id=match.group("DATASET"),
        table_id=match.group("TABLE"),
        project_id=match.group("PROJECT"),
    )


def to_table_spec(ref: TableReference) -> str:
    prefix = f"{ref.project_id}:" if ref.project_id is not None else ""
    return f"{prefix}{ref.dataset_id}.{ref.table_id}"


def resolve_table(value: Union[str, TableReference], default_project: Optional[str] = None) -> TableReference:
    ref = parse_table_spec(value) if isinstance(value, str) else value
    return ref.with_default_project(default_project)


class GlobalWindow:
    """The single window rows belong to unless a window function assigns one."""

    _instance: Optional["GlobalWindow"] = None

    def __new__(cls) -> "GlobalWindow":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __reduce__(self):
        return (GlobalWindow, ())

    def __repr__(self) -> str:
        return "GlobalWindow"


GLOBAL_WINDOW = GlobalWindow()

TableFunction = Callable[[Any], Union[str, TableReference]]


def table_for_window(
    table_fn: TableFunction, window: Any, default_project: Optional[str] = None
) -> TableReference:
    """Evaluate a per-window destination and fill in the default project."""
    return resolve_table(table_fn(window), default_project)
