"""Configuration management with validation.

Limits are enforced at load time so a misconfigured engine fails before
it issues a single Azure API call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OPERATION_TIMEOUT_SECONDS = 300
DEFAULT_DELETE_TIMEOUT_SECONDS = 900
MIN_TIMEOUT_SECONDS = 10
MAX_TIMEOUT_SECONDS = 3600

DEFAULT_CLUSTER_SPEC_PATH = "/specs/cluster.yaml"

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max cluster spec
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_CLUSTER_NAME_LENGTH = 63

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    subscription_id: str
    location: str

    cluster_spec_path: Path = field(default_factory=lambda: Path(DEFAULT_CLUSTER_SPEC_PATH))

    # Deadlines applied to every remote call
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS

    # User-assigned managed identity; system-assigned when unset
    managed_identity_client_id: str | None = None

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        for name, value in (
            ("OPERATION_TIMEOUT", self.operation_timeout_seconds),
            ("DELETE_TIMEOUT", self.delete_timeout_seconds),
        ):
            if not (MIN_TIMEOUT_SECONDS <= value <= MAX_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between {MIN_TIMEOUT_SECONDS} "
                    f"and {MAX_TIMEOUT_SECONDS} seconds"
                )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Region the cluster network lives in
            CLUSTER_SPEC_PATH: YAML cluster document (default: /specs/cluster.yaml)
            OPERATION_TIMEOUT: Deadline for a single create/get call in seconds (default: 300)
            DELETE_TIMEOUT: Deadline for a single delete call in seconds (default: 900)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            cluster_spec_path=Path(os.environ.get("CLUSTER_SPEC_PATH", DEFAULT_CLUSTER_SPEC_PATH)),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            delete_timeout_seconds=get_int("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )
