from __future__ import annotations

import hashlib
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Tuple

from .common import PrintLogger
from .endpoints.factory import EndpointFactory
from .events import EventCategory, EventType, emit_log
from .orchestrator_helpers import transfer_key
from .services.base import Services
from .tools.base import QueryRequest, WriteRequest


class TransferContext:
    """Collaborators shared by every transfer of one run."""

    def __init__(
        self,
        tool,
        services: Services,
        emitter,
        logger: PrintLogger,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.tool = tool
        self.services = services
        self.emitter = emitter
        self.logger = logger
        self.cancel_event = cancel_event or threading.Event()

    def emit_event(self, category: EventCategory, event_type: EventType, **payload: Any) -> None:
        if self.emitter is not None:
            self.emitter.emit_event(category, event_type, **payload)


def _run_read(context: TransferContext, cfg: Dict[str, Any], transfer: Dict[str, Any]) -> Dict[str, Any]:
    source = EndpointFactory.build_source(
        context.tool,
        cfg,
        transfer,
        context.services,
        logger=context.logger,
        emitter=context.emitter,
        cancel_event=context.cancel_event,
    )
    result = source.read_full()
    output = transfer["output"]
    context.tool.write_dataset(
        WriteRequest(
            dataset=result.dataset,
            path=output["path"],
            format=output.get("format", "parquet"),
            mode=output.get("mode", "overwrite"),
            options=output.get("options"),
        )
    )
    # snapshot files stay in place when the write fails
    if result.cleanup is not None:
        result.cleanup()
    return {
        "name": transfer_key(transfer),
        "direction": "read",
        "rows": result.rows,
        "sources": result.sources,
        "output": output["path"],
        **result.event_payload,
    }


def _run_write(context: TransferContext, cfg: Dict[str, Any], transfer: Dict[str, Any]) -> Dict[str, Any]:
    sink = EndpointFactory.build_sink(
        context.tool,
        cfg,
        transfer,
        context.services,
        logger=context.logger,
        emitter=context.emitter,
        cancel_event=context.cancel_event,
    )
    source = transfer["input"]
    options = {k: v for k, v in source.get("options", {}).items()}
    options["path"] = source["path"]
    dataset = context.tool.query(QueryRequest(format=source.get("format", "parquet"), options=options))
    result = sink.write(dataset)
    return {
        "name": transfer_key(transfer),
        "direction": "write",
        "rows": result.rows,
        "table": result.table,
        "method": result.method,
        **result.event_payload,
    }


def _run_one_transfer(
    context: TransferContext,
    cfg: Dict[str, Any],
    transfer: Dict[str, Any],
    pool_name: str,
) -> Dict[str, Any]:
    name = transfer_key(transfer)
    direction = transfer["direction"]
    tool = context.tool
    tool.set_job_context(pool=pool_name, group_id=f"transfer::{name}", description=f"Transfer {name} ({direction})")
    emit_log(context.emitter, level="INFO", msg="transfer_start", name=name, direction=direction, pool=pool_name, logger=context.logger)
    context.emit_event(EventCategory.TRANSFER, EventType.TRANSFER_START, name=name, direction=direction, pool=pool_name)
    try:
        start_ts = time.time()
        runner = _run_read if direction == "read" else _run_write
        result = runner(context, cfg, transfer)
        context.emit_event(
            EventCategory.TRANSFER,
            EventType.TRANSFER_SUCCESS,
            name=name,
            direction=direction,
            rows=result.get("rows"),
            duration_sec=time.time() - start_ts,
        )
        return result
    except Exception as exc:
        stack = traceback.format_exc()
        context.emit_event(
            EventCategory.TRANSFER,
            EventType.TRANSFER_FAILURE,
            name=name,
            direction=direction,
            error_type=type(exc).__name__,
            message=str(exc),
            error_hash=hashlib.sha1(stack.encode("utf-8")).hexdigest()[:10],
        )
        raise
    finally:
        tool.clear_job_context()


def run_transfers(
    context: TransferContext,
    cfg: Dict[str, Any],
    transfers: List[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[Tuple[str, str]]]:
    max_workers = max(1, int(cfg["runtime"].get("max_parallel_transfers", 2)))
    results: List[Dict[str, Any]] = []
    errors: List[Tuple[str, str]] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futmap = {}
        for idx, transfer in enumerate(transfers):
            pool = f"pool-{(idx % max_workers) + 1}"
            fut = executor.submit(_run_one_transfer, context, cfg, transfer, pool)
            futmap[fut] = transfer_key(transfer)
        try:
            completed = list(as_completed(futmap))
        except KeyboardInterrupt:
            # running polls stop at their next wait; the remote jobs keep running
            context.cancel_event.set()
            raise
        for fut in completed:
            key = futmap[fut]
            try:
                results.append(fut.result())
                emit_log(context.emitter, level="INFO", msg="transfer_done", name=key, result="ok", logger=context.logger)
            except Exception as exc:
                errors.append((key, str(exc)))
                emit_log(
                    context.emitter,
                    level="ERROR",
                    msg="transfer_failed",
                    name=key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    stacktrace=traceback.format_exc(),
                    logger=context.logger,
                )
    return results, errors