from __future__ import annotations

import os
import posixpath

WRITE_TEMP_DIR = "BigQueryWriteTemp"
EXTRACT_FILE_FORMAT = "{:012d}.parquet"


def _join(*parts: str) -> str:
    head, rest = parts[0].rstrip("/"), [p.strip("/") for p in parts[1:] if p]
    if "://" not in head:
        head = os.path.abspath(head)
    return posixpath.join(head, *rest) if rest else head


class Paths:
    """Helpers for constructing staging and snapshot locations under temp_location."""

    @staticmethod
    def write_temp_prefix(temp_location: str, step_uuid: str) -> str:
        return _join(temp_location, WRITE_TEMP_DIR, step_uuid)

    @staticmethod
    def extract_dir(temp_location: str, step_uuid: str) -> str:
        return _join(temp_location, step_uuid)

    @staticmethod
    def extract_destination_uri(extract_dir: str) -> str:
        return _join(extract_dir, "*.parquet")

    @staticmethod
    def extract_file_paths(extract_dir: str, file_count: int):
        return [_join(extract_dir, EXTRACT_FILE_FORMAT.format(i)) for i in range(file_count)]

    @staticmethod
    def staged_file(temp_prefix: str, uid: str) -> str:
        return _join(temp_prefix, uid)
