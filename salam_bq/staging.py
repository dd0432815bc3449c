import json
from dataclasses import dataclass
from typing import IO, Any, Dict, Iterable, Iterator, List, Optional

from .common import DEFAULT_LOGGER, PrintLogger, random_uuid
from .io.filesystem import Filesystem
from .io.paths import Paths
from .rows import as_table_row, encode_json_value

NEWLINE = b"\n"


@dataclass(frozen=True)
class StagedFile:
    path: str
    byte_count: int
    row_count: int = 0


def encode_row(row: Any) -> bytes:
    return json.dumps(
        as_table_row(row), separators=(",", ":"), ensure_ascii=False, default=encode_json_value
    ).encode("utf-8")


class TableRowWriter:
    """Writes rows as newline-delimited JSON to one staged file and counts its bytes."""

    def __init__(
        self,
        temp_prefix: str,
        filesystem: Optional[Filesystem] = None,
        storage_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.temp_prefix = temp_prefix
        self.filesystem = filesystem or Filesystem.for_root(temp_prefix, storage_options)
        self.path: Optional[str] = None
        self.byte_count = 0
        self.row_count = 0
        self._out: Optional[IO] = None
        self._staged: Optional[StagedFile] = None

    def open(self, uid: Optional[str] = None) -> "TableRowWriter":
        self.path = Paths.staged_file(self.temp_prefix, uid or random_uuid())
        self._out = self.filesystem.open(self.path, "wb")
        self._staged = None
        self.byte_count = 0
        self.row_count = 0
        return self

    def write(self, row: Any) -> None:
        if self._out is None:
            raise RuntimeError("TableRowWriter.write called before open")
        data = encode_row(row) + NEWLINE
        self._out.write(data)
        self.byte_count += len(data)
        self.row_count += 1

    def close(self) -> StagedFile:
        if self._staged is not None:
            return self._staged
        if self._out is None or self.path is None:
            raise RuntimeError("TableRowWriter.close called before open")
        out, self._out = self._out, None
        out.close()
        self._staged = StagedFile(self.path, self.byte_count, self.row_count)
        return self._staged


def write_bundle(
    rows: Iterable[Any],
    temp_prefix: str,
    logger: PrintLogger = DEFAULT_LOGGER,
    filesystem: Optional[Filesystem] = None,
    storage_options: Optional[Dict[str, Any]] = None,
) -> Iterator[StagedFile]:
    """Stage one bundle of rows; yields its file, or nothing for an empty bundle.

    A failing row closes the stream before the original error propagates.
    """
    writer: Optional[TableRowWriter] = None
    for row in rows:
        if writer is None:
            writer = TableRowWriter(temp_prefix, filesystem, storage_options).open()
        try:
            writer.write(row)
        except Exception:
            try:
                writer.close()
            except Exception as close_exc:
                logger.warn("staged_file_close_failed", path=writer.path, error=str(close_exc))
            raise
    if writer is not None:
        staged = writer.close()
        logger.debug("staged_file_written", path=staged.path, bytes=staged.byte_count)
        yield staged


def create_empty_file(temp_prefix: str, filesystem: Optional[Filesystem] = None) -> StagedFile:
    return TableRowWriter(temp_prefix, filesystem).open().close()


def remove_staged_files(
    paths: Iterable[str],
    logger: PrintLogger = DEFAULT_LOGGER,
    filesystem: Optional[Filesystem] = None,
) -> List[str]:
    """Delete staged files on local disk or GCS; returns the paths that failed."""
    failed: List[str] = []
    for path in paths:
        fs = filesystem or Filesystem.for_path(path)
        try:
            if not fs.delete(path):
                logger.debug("staged_file_missing", path=path)
        except OSError as exc:
            failed.append(path)
            logger.warn("staged_file_delete_failed", path=path, error=str(exc))
    return failed
