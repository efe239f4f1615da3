"""Resource client contracts and their Azure SDK implementations.

Reconcilers depend only on the ``ResourceClient`` and ``SkuClient``
protocols. Production wiring adapts the operation groups of the Azure
management SDKs; tests substitute in-memory fakes.

Every SDK call is blocking, so it runs in the default executor and is
awaited under ``asyncio.wait_for``. The deadline comes from configuration;
cancelling the awaiting task abandons the call.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource.resources import ResourceManagementClient

from .config import Config

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    """Address of a remote resource.

    ``parent`` names the enclosing resource for child kinds: the virtual
    network of a subnet, the load balancer of an inbound NAT rule.
    """

    resource_group: str
    name: str
    parent: str | None = None

    def __str__(self) -> str:
        if self.parent:
            return f"{self.resource_group}/{self.parent}/{self.name}"
        return f"{self.resource_group}/{self.name}"


class ResourceClient(Protocol):
    """Minimal remote contract for one resource kind.

    ``get`` and ``delete`` raise ``azure.core.exceptions.ResourceNotFoundError``
    when the resource does not exist.
    """

    async def get(self, ref: ResourceRef) -> Any: ...

    async def create_or_update(self, ref: ResourceRef, parameters: Any) -> Any: ...

    async def delete(self, ref: ResourceRef) -> None: ...


class SkuClient(Protocol):
    """Read-only listing of compute resource SKUs offered in a region."""

    async def list_skus(self, location: str) -> list[Any]: ...


async def run_blocking(fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
    """Run a blocking SDK call in the default executor under a deadline."""
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(
        loop.run_in_executor(None, functools.partial(fn, *args)),
        timeout=timeout,
    )


class AzureResourceClient:
    """Adapts one Azure SDK operation group to ``ResourceClient``.

    Args:
        operations: SDK operation group (e.g. ``network_client.subnets``).
        kind: Human-readable resource kind for logs.
        timeout_seconds: Deadline for get and create-or-update.
        delete_timeout_seconds: Deadline for delete, which polls to completion.
        group_scoped: False for resource groups, addressed by name only.
        long_running_create: False when create_or_update is not a poller.
    """

    def __init__(
        self,
        operations: Any,
        kind: str,
        *,
        timeout_seconds: float,
        delete_timeout_seconds: float,
        group_scoped: bool = True,
        long_running_create: bool = True,
    ) -> None:
        self._operations = operations
        self._kind = kind
        self._timeout = timeout_seconds
        self._delete_timeout = delete_timeout_seconds
        self._group_scoped = group_scoped
        self._long_running_create = long_running_create

    def _args(self, ref: ResourceRef) -> tuple[str, ...]:
        if not self._group_scoped:
            return (ref.name,)
        if ref.parent:
            return (ref.resource_group, ref.parent, ref.name)
        return (ref.resource_group, ref.name)

    async def get(self, ref: ResourceRef) -> Any:
        return await run_blocking(self._operations.get, *self._args(ref), timeout=self._timeout)

    async def create_or_update(self, ref: ResourceRef, parameters: Any) -> Any:
        logger.debug(
            "Calling create_or_update",
            extra={"resource_kind": self._kind, "resource": str(ref)},
        )
        if not self._long_running_create:
            return await run_blocking(
                self._operations.create_or_update,
                *self._args(ref),
                parameters,
                timeout=self._timeout,
            )

        def create() -> Any:
            poller = self._operations.begin_create_or_update(*self._args(ref), parameters)
            return poller.result()

        return await run_blocking(create, timeout=self._timeout)

    async def delete(self, ref: ResourceRef) -> None:
        logger.debug("Calling delete", extra={"resource_kind": self._kind, "resource": str(ref)})

        def delete() -> None:
            poller = self._operations.begin_delete(*self._args(ref))
            poller.result()

        await run_blocking(delete, timeout=self._delete_timeout)


class AzureSkuClient:
    """``SkuClient`` backed by ``ComputeManagementClient.resource_skus``."""

    def __init__(self, compute_client: ComputeManagementClient, *, timeout_seconds: float) -> None:
        self._compute_client = compute_client
        self._timeout = timeout_seconds

    async def list_skus(self, location: str) -> list[Any]:
        def list_all() -> list[Any]:
            return list(self._compute_client.resource_skus.list(filter=f"location eq '{location}'"))

        return await run_blocking(list_all, timeout=self._timeout)


@dataclass
class ClientSet:
    """One client per resource kind the engine touches."""

    groups: ResourceClient
    virtual_networks: ResourceClient
    security_groups: ResourceClient
    route_tables: ResourceClient
    subnets: ResourceClient
    load_balancers: ResourceClient
    public_ips: ResourceClient
    network_interfaces: ResourceClient
    inbound_nat_rules: ResourceClient
    skus: SkuClient


def build_azure_clients(
    config: Config, credential: TokenCredential, subscription_id: str | None = None
) -> ClientSet:
    """Wire a ``ClientSet`` against the Azure management APIs."""
    subscription = subscription_id or config.subscription_id
    resource_client = ResourceManagementClient(credential=credential, subscription_id=subscription)
    network_client = NetworkManagementClient(credential=credential, subscription_id=subscription)
    compute_client = ComputeManagementClient(credential=credential, subscription_id=subscription)

    timeouts = {
        "timeout_seconds": config.operation_timeout_seconds,
        "delete_timeout_seconds": config.delete_timeout_seconds,
    }

    return ClientSet(
        groups=AzureResourceClient(
            resource_client.resource_groups,
            "resource group",
            group_scoped=False,
            long_running_create=False,
            **timeouts,
        ),
        virtual_networks=AzureResourceClient(
            network_client.virtual_networks, "virtual network", **timeouts
        ),
        security_groups=AzureResourceClient(
            network_client.network_security_groups, "network security group", **timeouts
        ),
        route_tables=AzureResourceClient(network_client.route_tables, "route table", **timeouts),
        subnets=AzureResourceClient(network_client.subnets, "subnet", **timeouts),
        load_balancers=AzureResourceClient(
            network_client.load_balancers, "load balancer", **timeouts
        ),
        public_ips=AzureResourceClient(
            network_client.public_ip_addresses, "public IP", **timeouts
        ),
        network_interfaces=AzureResourceClient(
            network_client.network_interfaces, "network interface", **timeouts
        ),
        inbound_nat_rules=AzureResourceClient(
            network_client.inbound_nat_rules, "inbound NAT rule", **timeouts
        ),
        skus=AzureSkuClient(compute_client, timeout_seconds=config.operation_timeout_seconds),
    )
