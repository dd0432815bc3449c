"""Top-level exports for salam_bq staging I/O helpers."""

from .filesystem import Filesystem, is_remote_path
from .paths import Paths

__all__ = [
    "Filesystem",
    "Paths",
    "is_remote_path",
]
