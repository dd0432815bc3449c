from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from ..common import DEFAULT_LOGGER, PrintLogger
from ..config import BigQueryOptions, ReadConfig, WriteConfig
from ..services.base import Services
from ..services.bigquery import BigQueryServices
from .base import REGISTRY, SinkEndpoint, SourceEndpoint
from .bigquery import BigQuerySinkEndpoint, BigQuerySourceEndpoint


def default_services(options: BigQueryOptions) -> Services:
    return BigQueryServices(project=options.project, location=options.location)


class EndpointFactory:
    """Construct source/sink endpoints based on transfer configuration."""

    @staticmethod
    def build_source(
        tool,
        cfg: Dict[str, Any],
        transfer_cfg: Dict[str, Any],
        services: Optional[Services] = None,
        *,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SourceEndpoint:
        if tool is None:
            raise ValueError("Execution tool required for source endpoint")
        endpoint = transfer_cfg.get("endpoint", "bigquery")
        factory = REGISTRY.source(endpoint)
        if factory is None:
            raise ValueError(f"Unknown source endpoint: {endpoint}")
        options = BigQueryOptions.from_config(cfg)
        return factory(
            tool,
            options,
            ReadConfig.from_dict(transfer_cfg),
            services or default_services(options),
            logger=logger,
            emitter=emitter,
            cancel_event=cancel_event,
        )

    @staticmethod
    def build_sink(
        tool,
        cfg: Dict[str, Any],
        transfer_cfg: Dict[str, Any],
        services: Optional[Services] = None,
        *,
        logger: PrintLogger = DEFAULT_LOGGER,
        emitter=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SinkEndpoint:
        if tool is None:
            raise ValueError("Execution tool required for sink endpoint")
        endpoint = transfer_cfg.get("endpoint", "bigquery")
        factory = REGISTRY.sink(endpoint)
        if factory is None:
            raise ValueError(f"Unknown sink endpoint: {endpoint}")
        options = BigQueryOptions.from_config(cfg)
        services = services or default_services(options)
        return factory(
            tool,
            options,
            WriteConfig.from_dict(transfer_cfg),
            services,
            logger=logger,
            emitter=emitter,
            # load jobs read staged files from GCS only on the real service
            requires_gcs=isinstance(services, BigQueryServices),
            cancel_event=cancel_event,
        )


REGISTRY.register_source("bigquery", BigQuerySourceEndpoint)
REGISTRY.register_sink("bigquery", BigQuerySinkEndpoint)
