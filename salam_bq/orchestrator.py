import argparse
import json
import threading
from typing import Any, Dict, List, Optional, Tuple

from .common import PrintLogger
from .config import BigQueryOptions
from .endpoints.factory import default_services
from .events import CounterSubscriber, Emitter, StructuredLogSubscriber, emit_log
from .orchestrator_helpers import filter_transfers, summarize_run, validate_config
from .runtime import TransferContext, run_transfers
from .services.base import Services
from .tools.base import ExecutionTool
from .tools.local import LocalTool
from .tools.spark import SparkTool


def main(
    tool: ExecutionTool,
    cfg: Dict[str, Any],
    args: Optional[argparse.Namespace] = None,
    base_logger: Optional[PrintLogger] = None,
    services: Optional[Services] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[List[Dict[str, Any]], List[Tuple[str, str]]]:
    args = args or argparse.Namespace()
    runtime = cfg["runtime"]
    logger = base_logger or PrintLogger(job_name=runtime.get("job_name", "salam_bq"))
    emitter = Emitter()
    logging_cfg = runtime.get("logging", {})
    emitter.subscribe(
        StructuredLogSubscriber(
            logger,
            job_name=runtime.get("job_name", "salam_bq"),
            emit_structured=bool(logging_cfg.get("emit_structured", True)),
        )
    )
    counters = emitter.subscribe(CounterSubscriber())
    services = services or default_services(BigQueryOptions.from_config(cfg))
    context = TransferContext(tool, services, emitter, logger, cancel_event)
    transfers = filter_transfers(cfg["transfers"], getattr(args, "only", None))
    if not transfers:
        emit_log(emitter, level="WARN", msg="no_transfers_to_run", logger=logger)
        return [], []
    emit_log(emitter, level="INFO", msg="job_start", transfers=len(transfers), logger=logger)
    results, errors = run_transfers(context, cfg, transfers)
    emit_log(emitter, level="INFO", msg="job_end", ok=len(results), err=len(errors), logger=logger)
    summarize_run(results, errors, counters.snapshot())
    return results, errors


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Move tables between Spark datasets and BigQuery")
    parser.add_argument("--config", required=True)
    parser.add_argument("--only", help="Comma-separated transfer names to run", default=None)
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run every stage in this process instead of on a Spark session",
    )
    return parser.parse_args(argv)


def build_tool(cfg: Dict[str, Any], local: bool) -> ExecutionTool:
    if local:
        return LocalTool.from_config(cfg)
    return SparkTool.from_config(cfg)


def run_cli(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    with open(args.config, "r", encoding="utf-8") as handle:
        cfg = json.load(handle)
    validate_config(cfg)
    runtime = cfg["runtime"]
    logger = PrintLogger(
        job_name=runtime.get("job_name", "salam_bq"),
        file_path=runtime.get("log_file"),
        level=runtime.get("log_level", "INFO"),
    )
    tool = build_tool(cfg, args.local)
    cancel_event = threading.Event()
    try:
        _, errors = main(tool, cfg, args=args, base_logger=logger, cancel_event=cancel_event)
    except KeyboardInterrupt:
        logger.warn("run_interrupted")
        raise
    finally:
        tool.stop()
    if errors:
        raise SystemExit(1)


__all__ = ["build_tool", "main", "parse_args", "run_cli"]
