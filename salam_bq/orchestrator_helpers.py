from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import CreateDisposition, WriteDisposition, WriteMethod

_DIRECTIONS = {"read", "write"}


def validate_config(cfg: Dict[str, Any]) -> None:
    for key in ["runtime", "transfers"]:
        if key not in cfg:
            raise ValueError(f"Missing config key: {key}")
    runtime = cfg["runtime"]
    for key in ["project", "temp_location"]:
        if key not in runtime:
            raise ValueError(f"Missing runtime.{key}")
    if not isinstance(cfg["transfers"], list):
        raise ValueError("transfers must be a list")
    seen = set()
    for idx, transfer in enumerate(cfg["transfers"]):
        name = transfer.get("name") or f"transfers[{idx}]"
        if name in seen:
            raise ValueError(f"Duplicate transfer name: {name}")
        seen.add(name)
        direction = transfer.get("direction")
        if direction not in _DIRECTIONS:
            raise ValueError(f"{name}: direction must be one of read, write")
        if direction == "read":
            if ("table" in transfer) == ("query" in transfer):
                raise ValueError(f"{name}: set exactly one of table or query")
            if "path" not in transfer.get("output", {}):
                raise ValueError(f"Missing {name}.output.path")
        else:
            if "table" not in transfer:
                raise ValueError(f"Missing {name}.table")
            if "path" not in transfer.get("input", {}):
                raise ValueError(f"Missing {name}.input.path")
            for key, enum_cls in (
                ("create_disposition", CreateDisposition),
                ("write_disposition", WriteDisposition),
                ("method", WriteMethod),
            ):
                value = transfer.get(key)
                if value is not None and value not in {member.value for member in enum_cls}:
                    raise ValueError(f"{name}: invalid {key} {value!r}")


def filter_transfers(transfers: Iterable[Dict[str, Any]], only: Optional[str]) -> List[Dict[str, Any]]:
    if not only:
        return list(transfers)
    allow = {s.strip().lower() for s in only.split(",") if s.strip()}
    return [t for t in transfers if str(t.get("name", "")).lower() in allow]


def transfer_key(transfer: Dict[str, Any]) -> str:
    return transfer.get("name") or transfer.get("table") or "query"


def summarize_run(results, errors: List[Tuple[str, str]], counters: Optional[Dict[str, int]] = None) -> None:
    print("\n=== SUMMARY ===")
    for res in results:
        print(res)
    if counters:
        print("\n=== COUNTERS ===")
        for name in sorted(counters):
            print(name, counters[name])
    if errors:
        print("\n=== ERRORS ===")
        for name, err in errors:
            print(name, err)
