import json
import re
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

# -------------------------
# Global run identifiers
# -------------------------
RUN_ID = datetime.now().astimezone().strftime("%Y%m%d-%H%M%S")
_RUN_COUNTER = 0
_RUN_LOCK = threading.Lock()

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}
_JOB_NAME_STRIP = re.compile(r"[^A-Za-z0-9_]")


def next_event_seq() -> int:
    """Return a monotonically increasing event sequence number for the run."""
    global _RUN_COUNTER
    with _RUN_LOCK:
        _RUN_COUNTER += 1
        return _RUN_COUNTER


def random_uuid() -> str:
    return uuid.uuid4().hex


def job_uuid(step_uuid: str, job_name: str) -> str:
    """Identifier shared by every remote resource created for one transfer step."""
    return f"{step_uuid}_{_JOB_NAME_STRIP.sub('', job_name)}"


def job_id_token(step_uuid: str, job_name: str) -> str:
    """Prefix of every warehouse job id issued for one transfer step."""
    return f"salam_job_{job_uuid(step_uuid, job_name)}"


class PrintLogger:
    """Simple JSON-line logger that writes to stdout and optional file."""

    _lock = threading.Lock()

    def __init__(self, job_name: str, file_path: Optional[str] = None, level: str = "INFO") -> None:
        self.job = job_name
        self.file_path = file_path
        self.level = level.upper()

    def enabled(self, level: str) -> bool:
        return _LEVELS.get(level.upper(), 20) >= _LEVELS.get(self.level, 20)

    def _write_line(self, line: str) -> None:
        with self._lock:
            print(line)
            if self.file_path:
                with open(self.file_path, "a", encoding="utf-8") as handle:
                    handle.write(line + "\n")

    def log(self, level: str, msg: str, **kv: Any) -> None:
        if not self.enabled(level):
            return
        rec: Dict[str, Any] = {
            "ts": datetime.now().astimezone().isoformat(timespec="milliseconds"),
            "level": level,
            "job": self.job,
            **kv,
            "msg": msg,
            "run_id": RUN_ID,
        }
        self._write_line(json.dumps(rec, separators=(",", ":"), ensure_ascii=False, default=str))

    def debug(self, msg: str, **kv: Any) -> None:
        self.log("DEBUG", msg, **kv)

    def info(self, msg: str, **kv: Any) -> None:
        self.log("INFO", msg, **kv)

    def warn(self, msg: str, **kv: Any) -> None:
        self.log("WARN", msg, **kv)

    def error(self, msg: str, **kv: Any) -> None:
        self.log("ERROR", msg, **kv)

    def event(self, event: str, level: str = "INFO", **kv: Any) -> None:
        kv = dict(kv)
        kv.setdefault("event", event)
        self.log(level, event, **kv)


DEFAULT_LOGGER = PrintLogger("salam_bq")
