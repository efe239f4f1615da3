"""One-shot runner for the cluster network engine.

Loads configuration and the cluster document, authenticates with a managed
identity, runs a single reconcile or delete pass over the cluster network or
the machine interfaces and reports the values the pass allocated. Exit codes:

    0  pass completed
    1  configuration, spec or reconcile failure
    2  credential secrets found in the environment
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .clients import ClientSet, build_azure_clients
from .cluster import ClusterReconciler
from .config import Config, ConfigurationError
from .errors import NetworkReconcileError
from .network_interfaces import build_network_interface_service, machine_nic_specs
from .scope import ClusterScope
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, load_cluster

logger = logging.getLogger(__name__)

_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class Action(str, Enum):
    RECONCILE = "reconcile"
    DELETE = "delete"
    RECONCILE_MACHINES = "machines reconcile"
    DELETE_MACHINES = "machines delete"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def _run_machines(scope: ClusterScope, clients: ClientSet, action: Action) -> None:
    specs = machine_nic_specs(scope)
    if not specs:
        logger.info("No machines in cluster document", extra={"cluster": scope.name})
        return

    service = build_network_interface_service(scope, clients)
    if action == Action.RECONCILE_MACHINES:
        await service.reconcile(specs)
    else:
        await service.delete(specs)


async def run_once(config: Config, action: Action, clients: ClientSet | None = None) -> int:
    """Run one pass of ``action`` for the cluster at ``config.cluster_spec_path``.

    Args:
        config: Engine configuration.
        action: Cluster network or machine interface pass to run.
        clients: Pre-built clients. Azure clients authenticated with the
            managed identity are built when None.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        cluster = load_cluster(config.cluster_spec_path)
    except SpecLoadError as e:
        logger.error(
            "Cluster spec loading failed",
            extra={"error": str(e), "spec_path": str(config.cluster_spec_path)},
        )
        return 1

    scope = ClusterScope(config=config, cluster=cluster)

    if clients is None:
        try:
            credential = get_credential(config.managed_identity_client_id)
        except SecretlessViolationError as e:
            logger.critical(
                "Security violation: credentials detected in environment",
                extra={"error": str(e)},
            )
            return 2
        clients = build_azure_clients(config, credential, scope.subscription_id)

    logger.info(
        f"Starting {action.value} pass",
        extra={
            "cluster": scope.name,
            "subscription_id": scope.subscription_id,
            "resource_group": scope.resource_group,
            "location": scope.location,
        },
    )

    try:
        if action == Action.RECONCILE:
            await ClusterReconciler(scope, clients).reconcile()
        elif action == Action.DELETE:
            await ClusterReconciler(scope, clients).delete()
        else:
            await _run_machines(scope, clients, action)
    except NetworkReconcileError as e:
        logger.error(
            f"{action.value.capitalize()} pass failed",
            extra={"cluster": scope.name, "error": str(e), "error_type": type(e).__name__},
        )
        return 1

    if action == Action.RECONCILE:
        logger.info(
            "Allocated cluster network values",
            extra={
                "cluster": scope.name,
                "api_server_ip_name": scope.api_server_ip.name,
                "api_server_dns_name": scope.api_server_ip.dns_name,
                "failure_domains": sorted(scope.failure_domains),
            },
        )
    return 0


async def main(action: Action = Action.RECONCILE, spec_path: Path | None = None) -> int:
    """Load configuration from the environment and run one pass."""
    setup_logging()

    try:
        config = Config.from_env()
        if spec_path is not None:
            config = dataclasses.replace(config, cluster_spec_path=spec_path)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    return await run_once(config, action)


def run() -> None:
    """Entry point for a containerised one-shot reconcile."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
