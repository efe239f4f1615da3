"""Compute SKU lookups: VM size capabilities and region availability zones.

Both read the regional resource SKU listing fresh on every call. Nothing
is cached between passes.
"""

from __future__ import annotations

import logging
from typing import Any

from .clients import SkuClient
from .errors import SkuNotFoundError
from .specs import AvailabilityZonesSpec

logger = logging.getLogger(__name__)

VIRTUAL_MACHINES_RESOURCE_TYPE = "virtualMachines"
ACCELERATED_NETWORKING_CAPABILITY = "AcceleratedNetworkingEnabled"

RESTRICTION_TYPE_LOCATION = "Location"
RESTRICTION_TYPE_ZONE = "Zone"


def _is_vm_sku(sku: Any) -> bool:
    return (getattr(sku, "resource_type", None) or "").lower() == VIRTUAL_MACHINES_RESOURCE_TYPE.lower()


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "").lower()


def _restricted_zones(sku: Any, location: str) -> tuple[bool, set[str]]:
    """Return (whole location restricted, restricted zones) for a SKU."""
    zones: set[str] = set()
    for restriction in getattr(sku, "restrictions", None) or []:
        restriction_type = _enum_value(getattr(restriction, "type", None))
        if restriction_type == RESTRICTION_TYPE_LOCATION.lower():
            values = [v.lower() for v in getattr(restriction, "values", None) or []]
            if location.lower() in values:
                return True, zones
        elif restriction_type == RESTRICTION_TYPE_ZONE.lower():
            info = getattr(restriction, "restriction_info", None)
            zones.update(getattr(info, "zones", None) or [])
    return False, zones


class SkuCapabilityResolver:
    """Answers capability questions about a VM size in one region."""

    def __init__(self, client: SkuClient, location: str) -> None:
        self._client = client
        self._location = location

    async def has_capability(self, vm_size: str, capability: str) -> bool:
        """Check whether ``vm_size`` reports ``capability`` as "True".

        Raises:
            SkuNotFoundError: If the region does not offer the VM size.
        """
        for sku in await self._client.list_skus(self._location):
            if not _is_vm_sku(sku) or (sku.name or "").lower() != vm_size.lower():
                continue
            for cap in getattr(sku, "capabilities", None) or []:
                if cap.name == capability:
                    return str(cap.value).lower() == "true"
            return False

        raise SkuNotFoundError(
            f"VM size {vm_size!r} is not available in location {self._location!r}"
        )

    async def has_accelerated_networking(self, vm_size: str) -> bool:
        supported = await self.has_capability(vm_size, ACCELERATED_NETWORKING_CAPABILITY)
        logger.debug(
            "Resolved accelerated networking capability",
            extra={"vm_size": vm_size, "supported": supported},
        )
        return supported


class AvailabilityZoneLister:
    """Lists the availability zones usable for virtual machines in a region."""

    def __init__(self, client: SkuClient, location: str) -> None:
        self._client = client
        self._location = location

    async def list_zones(self, spec: AvailabilityZonesSpec | None = None) -> list[str]:
        vm_size = spec.vm_size if spec else None
        zones: set[str] = set()

        for sku in await self._client.list_skus(self._location):
            if not _is_vm_sku(sku):
                continue
            if vm_size and (sku.name or "").lower() != vm_size.lower():
                continue

            location_restricted, restricted = _restricted_zones(sku, self._location)
            if location_restricted:
                continue

            for info in getattr(sku, "location_info", None) or []:
                if (info.location or "").lower() != self._location.lower():
                    continue
                zones.update(z for z in info.zones or [] if z not in restricted)

        result = sorted(zones)
        logger.info(
            "Listed availability zones",
            extra={"location": self._location, "vm_size": vm_size, "zones": result},
        )
        return result
