"""Cluster document loading with validation.

The document is read with a size limit and parsed with ``yaml.safe_load``.
Both a bare cluster mapping and a Kubernetes-style wrapper are accepted:

    apiVersion: infrastructure.cluster.x-k8s.io/v1beta1
    kind: AzureCluster
    metadata:
      name: demo
    spec: {...}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import AzureCluster

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when the cluster document cannot be loaded or fails validation."""

    pass


def _unwrap(raw_data: dict[str, Any], path: Path) -> dict[str, Any]:
    if "apiVersion" not in raw_data or "spec" not in raw_data:
        return raw_data

    metadata = raw_data.get("metadata") or {}
    if not isinstance(metadata, dict) or not isinstance(raw_data["spec"], dict):
        raise SpecLoadError(f"metadata and spec sections must be mappings: {path}")

    cluster: dict[str, Any] = {"name": metadata.get("name"), "spec": raw_data["spec"]}
    if "status" in raw_data:
        cluster["status"] = raw_data["status"]
    return cluster


def load_cluster(path: Path) -> AzureCluster:
    """Load and validate a cluster document from YAML.

    Raises:
        SpecLoadError: If the file is missing, too large, malformed or invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Cluster spec file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat cluster spec file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Cluster spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read cluster spec file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Cluster spec file must contain a YAML mapping: {path}")

    try:
        cluster = AzureCluster.model_validate(_unwrap(raw_data, path))
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded cluster '%s' from %s", cluster.name, path)
    return cluster
