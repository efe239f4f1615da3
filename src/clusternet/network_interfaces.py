"""Network interface reconciliation, including per-machine SSH NAT rules.

Control plane machines are reachable over SSH through the API server's
public load balancer. Each one gets an inbound NAT rule named after the
machine, forwarding a frontend port to backend port 22. Frontend ports are
allocated from current load balancer state every time a rule is created:

    22 if free, otherwise the first free port in 2201..2219.

The allocation reads the rule list and creates the rule in two separate
calls. Callers must not run two passes for the same cluster concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Sequence
from typing import Any, TypeVar

from azure.mgmt.network.models import (
    BackendAddressPool,
    InboundNatRule,
    NetworkInterface,
    NetworkInterfaceIPConfiguration,
    PublicIPAddress,
    SubResource,
    Subnet,
)

from . import naming
from .clients import ClientSet, ResourceClient, ResourceRef
from .errors import (
    LoadBalancerConfigurationError,
    NATPortExhaustedError,
    NetworkReconcileError,
    ResourceOperationError,
    is_not_found,
)
from .models import SubnetRole
from .scope import ClusterScope
from .skus import SkuCapabilityResolver
from .specs import MachineRole, NICSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")

SSH_BACKEND_PORT = 22
SSH_DEFAULT_FRONTEND_PORT = 22
# Fallback frontend ports, scanned in ascending order
SSH_FALLBACK_PORT_RANGE = range(2201, 2220)
NAT_RULE_IDLE_TIMEOUT_MINUTES = 4

IP_CONFIGURATION_NAME = "pipConfig"


def allocate_frontend_port(used_ports: set[int]) -> int | None:
    """Pick the SSH frontend port for a new NAT rule, or None if all are taken."""
    if SSH_DEFAULT_FRONTEND_PORT not in used_ports:
        return SSH_DEFAULT_FRONTEND_PORT
    for port in SSH_FALLBACK_PORT_RANGE:
        if port not in used_ports:
            return port
    return None


def _first_backend_pool(lb: Any) -> Any:
    pools = lb.backend_address_pools or []
    if not pools:
        raise LoadBalancerConfigurationError(f"load balancer {lb.name} has no backend address pool")
    return pools[0]


class NetworkInterfaceService:
    """Creates, updates and deletes machine network interfaces."""

    kind = "network interface"

    def __init__(
        self,
        scope: ClusterScope,
        *,
        interfaces: ResourceClient,
        subnets: ResourceClient,
        load_balancers: ResourceClient,
        public_ips: ResourceClient,
        inbound_nat_rules: ResourceClient,
        capabilities: SkuCapabilityResolver,
    ) -> None:
        self._scope = scope
        self._interfaces = interfaces
        self._subnets = subnets
        self._load_balancers = load_balancers
        self._public_ips = public_ips
        self._inbound_nat_rules = inbound_nat_rules
        self._capabilities = capabilities

    async def _call(self, operation: str, kind: str, name: str, call: Awaitable[T]) -> T:
        """Await a remote call, annotating provider errors with what failed."""
        try:
            return await call
        except NetworkReconcileError:
            raise
        except Exception as e:
            raise ResourceOperationError(operation, kind, name, self._scope.name, e) from e

    async def reconcile(self, specs: Sequence[NICSpec]) -> None:
        """Reconcile every interface in order, stopping at the first failure."""
        for spec in specs:
            try:
                await self._reconcile_one(spec)
            except ResourceOperationError:
                raise
            except NetworkReconcileError as e:
                raise ResourceOperationError(
                    "reconcile", self.kind, spec.name, self._scope.name, e
                ) from e

    async def _reconcile_one(self, spec: NICSpec) -> None:
        rg = self._scope.resource_group

        subnet = await self._call(
            "get",
            "subnet",
            spec.subnet_name,
            self._subnets.get(
                ResourceRef(
                    resource_group=spec.vnet_resource_group or self._scope.vnet_resource_group,
                    name=spec.subnet_name,
                    parent=spec.vnet_name,
                )
            ),
        )

        ip_config = NetworkInterfaceIPConfiguration(
            name=IP_CONFIGURATION_NAME,
            subnet=Subnet(id=subnet.id),
            private_ip_allocation_method="Dynamic",
        )
        if spec.static_ip_address:
            ip_config.private_ip_allocation_method = "Static"
            ip_config.private_ip_address = spec.static_ip_address

        backend_pools: list[BackendAddressPool] = []
        if spec.public_lb_name:
            lb = await self._call(
                "get",
                "public load balancer",
                spec.public_lb_name,
                self._load_balancers.get(ResourceRef(resource_group=rg, name=spec.public_lb_name)),
            )
            backend_pools.append(BackendAddressPool(id=_first_backend_pool(lb).id))

            if spec.machine_role == MachineRole.CONTROL_PLANE:
                rule_name = naming.generate_nat_rule_name(spec.machine_name)
                await self.create_inbound_nat_rule(lb, rule_name)
                ip_config.load_balancer_inbound_nat_rules = [
                    InboundNatRule(id=naming.lb_child_id(lb.id, "inboundNatRules", rule_name))
                ]

        if spec.internal_lb_name:
            internal_lb = await self._call(
                "get",
                "internal load balancer",
                spec.internal_lb_name,
                self._load_balancers.get(
                    ResourceRef(resource_group=rg, name=spec.internal_lb_name)
                ),
            )
            backend_pools.append(BackendAddressPool(id=_first_backend_pool(internal_lb).id))

        ip_config.load_balancer_backend_address_pools = backend_pools

        if spec.public_ip_name:
            public_ip = await self._call(
                "get",
                "public IP",
                spec.public_ip_name,
                self._public_ips.get(ResourceRef(resource_group=rg, name=spec.public_ip_name)),
            )
            ip_config.public_ip_address = PublicIPAddress(id=public_ip.id)

        accelerated_networking = spec.accelerated_networking
        if accelerated_networking is None:
            accelerated_networking = await self._call(
                "resolve",
                "accelerated networking capability",
                spec.vm_size,
                self._capabilities.has_accelerated_networking(spec.vm_size),
            )

        nic = NetworkInterface(
            location=self._scope.location,
            ip_configurations=[ip_config],
            enable_accelerated_networking=accelerated_networking,
            tags=self._scope.owned_tags(),
        )
        await self._call(
            "create or update",
            self.kind,
            spec.name,
            self._interfaces.create_or_update(ResourceRef(resource_group=rg, name=spec.name), nic),
        )
        logger.info(
            "Successfully created network interface",
            extra={
                "cluster": self._scope.name,
                "network_interface": spec.name,
                "accelerated_networking": accelerated_networking,
            },
        )

    async def create_inbound_nat_rule(self, lb: Any, rule_name: str) -> None:
        """Create the SSH NAT rule ``rule_name`` on ``lb`` unless it already exists.

        Raises:
            LoadBalancerConfigurationError: If the load balancer exposes no
                frontend configuration or no rule list.
            NATPortExhaustedError: If 22 and 2201..2219 are all in use.
        """
        if not lb.frontend_ip_configurations or lb.inbound_nat_rules is None:
            raise LoadBalancerConfigurationError(
                f"could not get existing inbound NAT rules from load balancer {lb.name} properties"
            )

        used_ports: set[int] = set()
        for rule in lb.inbound_nat_rules:
            if rule.name == rule_name:
                logger.debug("NAT rule already exists", extra={"nat_rule": rule_name})
                return
            if rule.frontend_port is not None:
                used_ports.add(rule.frontend_port)

        frontend_port = allocate_frontend_port(used_ports)
        if frontend_port is None:
            raise NATPortExhaustedError(
                f"failed to find available SSH frontend port for NAT rule {rule_name} "
                f"in load balancer {lb.name}"
            )

        rule = InboundNatRule(
            name=rule_name,
            backend_port=SSH_BACKEND_PORT,
            enable_floating_ip=False,
            idle_timeout_in_minutes=NAT_RULE_IDLE_TIMEOUT_MINUTES,
            frontend_ip_configuration=SubResource(id=lb.frontend_ip_configurations[0].id),
            protocol="Tcp",
            frontend_port=frontend_port,
        )
        logger.info(
            "Creating NAT rule",
            extra={"nat_rule": rule_name, "load_balancer": lb.name, "port": frontend_port},
        )
        await self._call(
            "create or update",
            "inbound NAT rule",
            rule_name,
            self._inbound_nat_rules.create_or_update(
                ResourceRef(resource_group=self._scope.resource_group, name=rule_name, parent=lb.name),
                rule,
            ),
        )

    async def delete(self, specs: Sequence[NICSpec]) -> None:
        """Delete interfaces and their NAT rules, tolerating ones already gone."""
        rg = self._scope.resource_group
        for spec in specs:
            logger.info(
                "Deleting network interface",
                extra={"cluster": self._scope.name, "network_interface": spec.name},
            )
            await self._delete_tolerant(
                self.kind,
                spec.name,
                self._interfaces.delete(ResourceRef(resource_group=rg, name=spec.name)),
            )

            if not spec.public_lb_name:
                logger.info("Successfully deleted NIC", extra={"network_interface": spec.name})
                continue

            rule_name = naming.generate_nat_rule_name(spec.machine_name)
            await self._delete_tolerant(
                "inbound NAT rule",
                rule_name,
                self._inbound_nat_rules.delete(
                    ResourceRef(resource_group=rg, name=rule_name, parent=spec.public_lb_name)
                ),
            )
            logger.info(
                "Successfully deleted NIC and NAT rule",
                extra={"network_interface": spec.name, "nat_rule": rule_name},
            )

    async def _delete_tolerant(self, kind: str, name: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as e:
            if not is_not_found(e):
                raise ResourceOperationError("delete", kind, name, self._scope.name, e) from e
            logger.debug(f"{kind} already deleted", extra={"resource": name})


def machine_nic_specs(scope: ClusterScope) -> list[NICSpec]:
    """Build one ``NICSpec`` per machine listed in the cluster document."""
    api_public_lb = naming.generate_public_lb_name(naming.API_SERVER_PURPOSE)
    api_internal_lb = naming.generate_internal_lb_name(naming.API_SERVER_PURPOSE)
    egress_lb = naming.generate_public_lb_name(naming.EGRESS_PURPOSE)

    specs = []
    for machine in scope.machines:
        if machine.role == SubnetRole.CONTROL_PLANE:
            subnet = scope.control_plane_subnet
            public_lb = machine.public_lb_name or api_public_lb
            internal_lb = machine.internal_lb_name or api_internal_lb
        else:
            subnet = scope.node_subnet
            public_lb = machine.public_lb_name or (egress_lb if scope.is_ipv6_enabled() else None)
            internal_lb = machine.internal_lb_name

        specs.append(
            NICSpec(
                name=machine.nic_name or naming.generate_nic_name(machine.name),
                machine_name=machine.name,
                vnet_name=scope.vnet.name,
                vnet_resource_group=scope.vnet_resource_group,
                subnet_name=subnet.name,
                machine_role=MachineRole(machine.role.value),
                vm_size=machine.vm_size,
                static_ip_address=machine.static_ip_address,
                public_lb_name=public_lb,
                internal_lb_name=internal_lb,
                public_ip_name=machine.public_ip_name,
                accelerated_networking=machine.accelerated_networking,
            )
        )
    return specs


def build_network_interface_service(scope: ClusterScope, clients: ClientSet) -> NetworkInterfaceService:
    """Wire a ``NetworkInterfaceService`` from a client set."""
    return NetworkInterfaceService(
        scope,
        interfaces=clients.network_interfaces,
        subnets=clients.subnets,
        load_balancers=clients.load_balancers,
        public_ips=clients.public_ips,
        inbound_nat_rules=clients.inbound_nat_rules,
        capabilities=SkuCapabilityResolver(clients.skus, scope.location),
    )
