"""Grouping of staged files into load-job partitions.

A single load job accepts a bounded number of source files and bytes. Files
are packed greedily in the order they were staged; if everything fits in one
partition the load targets the destination directly, otherwise each partition
loads into its own temporary table and a copy job commits them together.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .staging import StagedFile

MAX_NUM_FILES = 10_000
MAX_SIZE_BYTES = 11 * (1 << 40)


@dataclass(frozen=True)
class Partition:
    partition_id: int
    files: Tuple[str, ...]


@dataclass(frozen=True)
class DirectWrite:
    partition: Partition

    @property
    def partitions(self) -> Tuple[Partition, ...]:
        return (self.partition,)


@dataclass(frozen=True)
class StagedWrite:
    partitions: Tuple[Partition, ...]


WritePlan = Union[DirectWrite, StagedWrite]


def partition_files(
    files: Sequence[StagedFile],
    *,
    max_num_files: int = MAX_NUM_FILES,
    max_size_bytes: int = MAX_SIZE_BYTES,
    empty_file_factory: Optional[Callable[[], StagedFile]] = None,
) -> WritePlan:
    if max_num_files < 1 or max_size_bytes < 1:
        raise ValueError("Partition limits must be positive")
    files = list(files)
    if not files:
        if empty_file_factory is None:
            raise ValueError("No staged files and no way to create an empty one")
        files = [empty_file_factory()]

    groups: List[List[str]] = []
    current: List[str] = []
    current_bytes = 0
    for staged in files:
        if current and (len(current) + 1 > max_num_files or current_bytes + staged.byte_count > max_size_bytes):
            groups.append(current)
            current, current_bytes = [], 0
        current.append(staged.path)
        current_bytes += staged.byte_count
    groups.append(current)

    partitions = tuple(Partition(partition_id=i, files=tuple(group)) for i, group in enumerate(groups, start=1))
    if len(partitions) == 1:
        return DirectWrite(partitions[0])
    return StagedWrite(partitions)
