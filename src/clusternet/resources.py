"""Idempotent reconcilers for the cluster's network resources.

Each service owns one resource kind and exposes ``reconcile(spec)`` and
``delete(spec)``. Reconcile reads the current resource first and only
issues a create-or-update when it is missing or has drifted, so a second
pass over unchanged state performs no mutations.

Delete propagates every error, including not-found; the cluster
orchestrator decides which errors are tolerable.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.exceptions import HttpResponseError
from azure.mgmt.network.models import (
    AddressSpace,
    BackendAddressPool,
    FrontendIPConfiguration,
    LoadBalancer,
    LoadBalancerSku,
    LoadBalancingRule,
    NetworkSecurityGroup,
    OutboundRule,
    Probe,
    PublicIPAddress,
    PublicIPAddressDnsSettings,
    PublicIPAddressSku,
    RouteTable,
    SecurityRule,
    SubResource,
    Subnet,
    VirtualNetwork,
)
from azure.mgmt.resource.resources.models import ResourceGroup

from . import naming
from .clients import ResourceClient, ResourceRef
from .errors import UnmanagedResourceError, is_not_found
from .scope import ClusterScope
from .specs import (
    GroupSpec,
    InternalLBSpec,
    PublicIPSpec,
    PublicLBSpec,
    RouteTableSpec,
    SecurityGroupSpec,
    SecurityRuleSpec,
    SubnetSpec,
    VnetSpec,
)

logger = logging.getLogger(__name__)

API_SERVER_PORT = 6443
SSH_PORT = 22
LB_IDLE_TIMEOUT_MINUTES = 4
LB_SKU = "Standard"

# Rules every control plane security group carries
CONTROL_PLANE_DEFAULT_RULES: tuple[SecurityRuleSpec, ...] = (
    SecurityRuleSpec(
        name="allow_ssh",
        description="Allow SSH",
        destination_ports=str(SSH_PORT),
        priority=2200,
    ),
    SecurityRuleSpec(
        name="allow_apiserver",
        description="Allow K8s API Server",
        destination_ports=str(API_SERVER_PORT),
        priority=2201,
    ),
)


def _tags_match(existing: dict[str, str] | None, desired: dict[str, str]) -> bool:
    existing = existing or {}
    return all(existing.get(k) == v for k, v in desired.items())


def _same_id(a: str | None, b: str | None) -> bool:
    return (a or "").lower() == (b or "").lower()


class ResourceService:
    """Shared plumbing for the per-kind services."""

    kind = "resource"

    def __init__(self, scope: ClusterScope, client: ResourceClient) -> None:
        self._scope = scope
        self._client = client

    async def _get_existing(self, ref: ResourceRef) -> Any | None:
        """Fetch a resource, mapping not-found to None."""
        try:
            return await self._client.get(ref)
        except HttpResponseError as e:
            if is_not_found(e):
                return None
            raise

    def _log_up_to_date(self, ref: ResourceRef) -> None:
        logger.debug(
            f"{self.kind} is up to date",
            extra={"cluster": self._scope.name, "resource_kind": self.kind, "resource": str(ref)},
        )

    async def _apply(self, ref: ResourceRef, parameters: Any) -> Any:
        logger.info(
            f"Creating or updating {self.kind}",
            extra={"cluster": self._scope.name, "resource_kind": self.kind, "resource": str(ref)},
        )
        result = await self._client.create_or_update(ref, parameters)
        logger.info(
            f"Successfully reconciled {self.kind}",
            extra={"cluster": self._scope.name, "resource_kind": self.kind, "resource": str(ref)},
        )
        return result

    async def _delete(self, ref: ResourceRef) -> None:
        logger.info(
            f"Deleting {self.kind}",
            extra={"cluster": self._scope.name, "resource_kind": self.kind, "resource": str(ref)},
        )
        await self._client.delete(ref)
        logger.info(
            f"Successfully deleted {self.kind}",
            extra={"cluster": self._scope.name, "resource_kind": self.kind, "resource": str(ref)},
        )


# =============================================================================
# Resource group
# =============================================================================


class GroupsService(ResourceService):
    """Resource group holding the cluster's resources."""

    kind = "resource group"

    async def reconcile(self, spec: GroupSpec) -> None:
        ref = ResourceRef(resource_group=spec.name, name=spec.name)
        existing = await self._get_existing(ref)

        if existing is not None:
            if not self._scope.is_owned(existing.tags):
                logger.info(
                    "Resource group is not managed by this cluster, leaving it untouched",
                    extra={"cluster": self._scope.name, "resource_group": spec.name},
                )
                return
            if _tags_match(existing.tags, spec.tags):
                self._log_up_to_date(ref)
                return

        await self._apply(ref, ResourceGroup(location=spec.location, tags=dict(spec.tags)))

    async def delete(self, spec: GroupSpec) -> None:
        ref = ResourceRef(resource_group=spec.name, name=spec.name)
        existing = await self._client.get(ref)
        if not self._scope.is_owned(existing.tags):
            logger.info(
                "Skipping deletion of unmanaged resource group",
                extra={"cluster": self._scope.name, "resource_group": spec.name},
            )
            return
        await self._delete(ref)


# =============================================================================
# Virtual network
# =============================================================================


class VirtualNetworksService(ResourceService):
    """Virtual network. A pre-existing VNet without the owned tag is left alone."""

    kind = "virtual network"

    async def reconcile(self, spec: VnetSpec) -> None:
        ref = ResourceRef(resource_group=spec.resource_group, name=spec.name)
        existing = await self._get_existing(ref)
        tags = self._scope.owned_tags()
        tags.update(self._scope.vnet.tags)

        if existing is not None:
            if not self._scope.is_owned(existing.tags):
                logger.info(
                    "Using unmanaged virtual network",
                    extra={"cluster": self._scope.name, "vnet": spec.name},
                )
                return
            prefixes = existing.address_space.address_prefixes if existing.address_space else []
            if sorted(prefixes or []) == sorted(spec.cidrs) and _tags_match(existing.tags, tags):
                self._log_up_to_date(ref)
                return

        vnet = VirtualNetwork(
            location=self._scope.location,
            address_space=AddressSpace(address_prefixes=list(spec.cidrs)),
            tags=tags,
            # Omitting subnets on update would remove them
            subnets=existing.subnets if existing is not None else None,
        )
        await self._apply(ref, vnet)

    async def delete(self, spec: VnetSpec) -> None:
        ref = ResourceRef(resource_group=spec.resource_group, name=spec.name)
        existing = await self._client.get(ref)
        if not self._scope.is_owned(existing.tags):
            logger.info(
                "Skipping deletion of unmanaged virtual network",
                extra={"cluster": self._scope.name, "vnet": spec.name},
            )
            return
        await self._delete(ref)


# =============================================================================
# Network security group
# =============================================================================


def _security_rule(rule: SecurityRuleSpec) -> SecurityRule:
    return SecurityRule(
        name=rule.name,
        description=rule.description,
        protocol=rule.protocol,
        source_port_range=rule.source_ports,
        destination_port_range=rule.destination_ports,
        source_address_prefix=rule.source,
        destination_address_prefix=rule.destination,
        access="Allow",
        direction="Inbound",
        priority=rule.priority,
    )



def _enum_str(value: Any) -> str | None:
    return getattr(value, "value", value)


def _rule_matches(existing: SecurityRule, desired: SecurityRuleSpec) -> bool:
    return (
        existing.priority == desired.priority
        and (_enum_str(existing.protocol) or "").lower() == desired.protocol.lower()
        and existing.source_port_range == desired.source_ports
        and existing.destination_port_range == desired.destination_ports
        and existing.source_address_prefix == desired.source
        and existing.destination_address_prefix == desired.destination
        and _enum_str(existing.access) == "Allow"
        and _enum_str(existing.direction) == "Inbound"
    )


class SecurityGroupsService(ResourceService):
    """Network security group. Rules added out of band are preserved."""

    kind = "network security group"

    def desired_rules(self, spec: SecurityGroupSpec) -> list[SecurityRuleSpec]:
        rules = list(CONTROL_PLANE_DEFAULT_RULES) if spec.is_control_plane else []
        rules.extend(spec.ingress_rules)
        return rules

    async def reconcile(self, spec: SecurityGroupSpec) -> None:
        ref = ResourceRef(resource_group=self._scope.resource_group, name=spec.name)
        existing = await self._get_existing(ref)
        desired = self.desired_rules(spec)
        desired_names = {r.name for r in desired}

        existing_rules = list(existing.security_rules or []) if existing is not None else []
        if existing is not None:
            by_name = {r.name: r for r in existing_rules}
            if all(r.name in by_name and _rule_matches(by_name[r.name], r) for r in desired):
                self._log_up_to_date(ref)
                return

        rules = [r for r in existing_rules if r.name not in desired_names]
        rules.extend(_security_rule(r) for r in desired)
        nsg = NetworkSecurityGroup(
            location=self._scope.location,
            security_rules=rules,
            tags=self._scope.owned_tags(),
        )
        await self._apply(ref, nsg)

    async def delete(self, spec: SecurityGroupSpec) -> None:
        await self._delete(ResourceRef(resource_group=self._scope.resource_group, name=spec.name))


# =============================================================================
# Route table
# =============================================================================


class RouteTablesService(ResourceService):
    kind = "route table"

    async def reconcile(self, spec: RouteTableSpec) -> None:
        ref = ResourceRef(resource_group=self._scope.resource_group, name=spec.name)
        if await self._get_existing(ref) is not None:
            self._log_up_to_date(ref)
            return
        await self._apply(
            ref, RouteTable(location=self._scope.location, tags=self._scope.owned_tags())
        )

    async def delete(self, spec: RouteTableSpec) -> None:
        await self._delete(ResourceRef(resource_group=self._scope.resource_group, name=spec.name))


# =============================================================================
# Subnet
# =============================================================================


class SubnetsService(ResourceService):
    """Subnets of the cluster VNet.

    Subnets of an unmanaged VNet must already exist; they are used as found.
    """

    kind = "subnet"

    def __init__(
        self, scope: ClusterScope, client: ResourceClient, vnet_client: ResourceClient
    ) -> None:
        super().__init__(scope, client)
        self._vnet_client = vnet_client

    def _ref(self, spec: SubnetSpec) -> ResourceRef:
        return ResourceRef(
            resource_group=spec.vnet_resource_group or self._scope.vnet_resource_group,
            name=spec.name,
            parent=spec.vnet_name,
        )

    async def _vnet_is_managed(self, spec: SubnetSpec) -> bool:
        vnet_ref = ResourceRef(
            resource_group=spec.vnet_resource_group or self._scope.vnet_resource_group,
            name=spec.vnet_name,
        )
        try:
            vnet = await self._vnet_client.get(vnet_ref)
        except HttpResponseError as e:
            if is_not_found(e):
                return True
            raise
        return self._scope.is_owned(vnet.tags)

    async def reconcile(self, spec: SubnetSpec) -> None:
        ref = self._ref(spec)
        existing = await self._get_existing(ref)

        if not await self._vnet_is_managed(spec):
            if existing is None:
                raise UnmanagedResourceError(
                    f"subnet {spec.name} does not exist in unmanaged virtual network "
                    f"{spec.vnet_name}"
                )
            logger.info(
                "Using existing subnet of unmanaged virtual network",
                extra={"cluster": self._scope.name, "subnet": spec.name, "vnet": spec.vnet_name},
            )
            return

        sub = self._scope.subscription_id
        nsg_id = (
            naming.security_group_id(sub, self._scope.resource_group, spec.security_group_name)
            if spec.security_group_name
            else None
        )
        rt_id = (
            naming.route_table_id(sub, self._scope.resource_group, spec.route_table_name)
            if spec.route_table_name
            else None
        )

        if existing is not None:
            existing_prefixes = list(existing.address_prefixes or [])
            if existing.address_prefix:
                existing_prefixes.append(existing.address_prefix)
            existing_nsg = existing.network_security_group.id if existing.network_security_group else None
            existing_rt = existing.route_table.id if existing.route_table else None
            if (
                sorted(set(existing_prefixes)) == sorted(spec.cidrs)
                and _same_id(existing_nsg, nsg_id)
                and _same_id(existing_rt, rt_id)
            ):
                self._log_up_to_date(ref)
                return

        subnet = Subnet(
            name=spec.name,
            network_security_group=NetworkSecurityGroup(id=nsg_id) if nsg_id else None,
            route_table=RouteTable(id=rt_id) if rt_id else None,
        )
        if len(spec.cidrs) > 1:
            subnet.address_prefixes = list(spec.cidrs)
        else:
            subnet.address_prefix = spec.cidrs[0]

        logger.debug(
            "Subnet parameters",
            extra={
                "subnet": spec.name,
                "role": spec.role,
                "internal_lb_ip_address": spec.internal_lb_ip_address,
            },
        )
        await self._apply(ref, subnet)

    async def delete(self, spec: SubnetSpec) -> None:
        if not await self._vnet_is_managed(spec):
            logger.info(
                "Skipping deletion of subnet in unmanaged virtual network",
                extra={"cluster": self._scope.name, "subnet": spec.name, "vnet": spec.vnet_name},
            )
            return
        await self._delete(self._ref(spec))


# =============================================================================
# Load balancers
# =============================================================================


def _lb_has_children(existing: LoadBalancer, frontend_name: str, pool_name: str) -> bool:
    frontends = {f.name for f in existing.frontend_ip_configurations or []}
    pools = {p.name for p in existing.backend_address_pools or []}
    return frontend_name in frontends and pool_name in pools


def _frontend_public_ip_id(existing: LoadBalancer, frontend_name: str) -> str | None:
    for frontend in existing.frontend_ip_configurations or []:
        if frontend.name == frontend_name and frontend.public_ip_address is not None:
            return frontend.public_ip_address.id
    return None


class InternalLoadBalancersService(ResourceService):
    """Internal load balancer fronting the API server on the control plane subnet."""

    kind = "internal load balancer"

    async def reconcile(self, spec: InternalLBSpec) -> None:
        rg = self._scope.resource_group
        ref = ResourceRef(resource_group=rg, name=spec.name)
        existing = await self._get_existing(ref)

        lb_id = naming.load_balancer_id(self._scope.subscription_id, rg, spec.name)
        frontend_name = naming.generate_frontend_ip_config_name(spec.name)
        pool_name = naming.generate_backend_pool_name(spec.name)

        if existing is not None and _lb_has_children(existing, frontend_name, pool_name):
            current = existing.frontend_ip_configurations[0].private_ip_address
            if not spec.ip_address or current == spec.ip_address:
                self._log_up_to_date(ref)
                return

        frontend_id = naming.lb_child_id(lb_id, "frontendIPConfigurations", frontend_name)
        pool_id = naming.lb_child_id(lb_id, "backendAddressPools", pool_name)
        probe_id = naming.lb_child_id(lb_id, "probes", "TCPProbe")
        subnet_id = naming.subnet_id(
            self._scope.subscription_id,
            spec.vnet_resource_group or self._scope.vnet_resource_group,
            spec.vnet_name,
            spec.subnet_name,
        )

        lb = LoadBalancer(
            location=self._scope.location,
            sku=LoadBalancerSku(name=LB_SKU),
            tags=self._scope.owned_tags(),
            frontend_ip_configurations=[
                FrontendIPConfiguration(
                    name=frontend_name,
                    id=frontend_id,
                    private_ip_allocation_method="Static" if spec.ip_address else "Dynamic",
                    private_ip_address=spec.ip_address,
                    subnet=Subnet(id=subnet_id),
                )
            ],
            backend_address_pools=[BackendAddressPool(name=pool_name, id=pool_id)],
            probes=[
                Probe(
                    name="TCPProbe",
                    id=probe_id,
                    protocol="Tcp",
                    port=API_SERVER_PORT,
                    interval_in_seconds=15,
                    number_of_probes=4,
                )
            ],
            load_balancing_rules=[
                LoadBalancingRule(
                    name="LBRuleHTTPS",
                    protocol="Tcp",
                    frontend_port=API_SERVER_PORT,
                    backend_port=API_SERVER_PORT,
                    idle_timeout_in_minutes=LB_IDLE_TIMEOUT_MINUTES,
                    enable_floating_ip=False,
                    load_distribution="Default",
                    frontend_ip_configuration=SubResource(id=frontend_id),
                    backend_address_pool=SubResource(id=pool_id),
                    probe=SubResource(id=probe_id),
                )
            ],
            inbound_nat_rules=existing.inbound_nat_rules if existing is not None else None,
        )
        await self._apply(ref, lb)

    async def delete(self, spec: InternalLBSpec) -> None:
        await self._delete(ResourceRef(resource_group=self._scope.resource_group, name=spec.name))


class PublicIPsService(ResourceService):
    kind = "public IP"

    async def reconcile(self, spec: PublicIPSpec) -> None:
        ref = ResourceRef(resource_group=self._scope.resource_group, name=spec.name)
        existing = await self._get_existing(ref)
        version = "IPv6" if spec.is_ipv6 else "IPv4"

        if existing is not None:
            raw_version = existing.public_ip_address_version or "IPv4"
            existing_version = getattr(raw_version, "value", raw_version)
            existing_fqdn = existing.dns_settings.fqdn if existing.dns_settings else None
            if existing_version == version and (not spec.dns_name or existing_fqdn == spec.dns_name):
                self._log_up_to_date(ref)
                return

        dns_settings = None
        if spec.dns_name:
            dns_settings = PublicIPAddressDnsSettings(
                domain_name_label=spec.dns_name.split(".")[0],
                fqdn=spec.dns_name,
            )

        ip = PublicIPAddress(
            location=self._scope.location,
            sku=PublicIPAddressSku(name=LB_SKU),
            public_ip_allocation_method="Static",
            public_ip_address_version=version,
            dns_settings=dns_settings,
            tags=self._scope.owned_tags(),
        )
        await self._apply(ref, ip)

    async def delete(self, spec: PublicIPSpec) -> None:
        await self._delete(ResourceRef(resource_group=self._scope.resource_group, name=spec.name))


class PublicLoadBalancersService(ResourceService):
    """Public load balancer.

    The API server flavour adds a health probe and a 6443 rule; every flavour
    carries an outbound rule so backend machines have egress. Inbound NAT
    rules are owned by the network interface reconciler and are carried over
    untouched on update.
    """

    kind = "public load balancer"

    def __init__(
        self, scope: ClusterScope, client: ResourceClient, public_ip_client: ResourceClient
    ) -> None:
        super().__init__(scope, client)
        self._public_ip_client = public_ip_client

    async def reconcile(self, spec: PublicLBSpec) -> None:
        rg = self._scope.resource_group
        ref = ResourceRef(resource_group=rg, name=spec.name)
        existing = await self._get_existing(ref)

        frontend_name = naming.generate_frontend_ip_config_name(spec.name)
        pool_name = naming.generate_backend_pool_name(spec.name)
        public_ip = await self._public_ip_client.get(
            ResourceRef(resource_group=rg, name=spec.public_ip_name)
        )
        if existing is not None and _lb_has_children(existing, frontend_name, pool_name):
            bound = _frontend_public_ip_id(existing, frontend_name)
            if _same_id(bound, public_ip.id):
                self._log_up_to_date(ref)
                return

        lb_id = naming.load_balancer_id(self._scope.subscription_id, rg, spec.name)
        frontend_id = naming.lb_child_id(lb_id, "frontendIPConfigurations", frontend_name)
        pool_id = naming.lb_child_id(lb_id, "backendAddressPools", pool_name)

        probes: list[Probe] = []
        rules: list[LoadBalancingRule] = []
        if spec.is_api_server:
            probe_id = naming.lb_child_id(lb_id, "probes", "HTTPSProbe")
            probes.append(
                Probe(
                    name="HTTPSProbe",
                    id=probe_id,
                    protocol="Tcp",
                    port=API_SERVER_PORT,
                    interval_in_seconds=15,
                    number_of_probes=4,
                )
            )
            rules.append(
                LoadBalancingRule(
                    name="LBRuleHTTPS",
                    protocol="Tcp",
                    frontend_port=API_SERVER_PORT,
                    backend_port=API_SERVER_PORT,
                    idle_timeout_in_minutes=LB_IDLE_TIMEOUT_MINUTES,
                    enable_floating_ip=False,
                    load_distribution="Default",
                    disable_outbound_snat=True,
                    frontend_ip_configuration=SubResource(id=frontend_id),
                    backend_address_pool=SubResource(id=pool_id),
                    probe=SubResource(id=probe_id),
                )
            )

        lb = LoadBalancer(
            location=self._scope.location,
            sku=LoadBalancerSku(name=LB_SKU),
            tags=self._scope.owned_tags(),
            frontend_ip_configurations=[
                FrontendIPConfiguration(
                    name=frontend_name,
                    id=frontend_id,
                    public_ip_address=PublicIPAddress(id=public_ip.id),
                )
            ],
            backend_address_pools=[BackendAddressPool(name=pool_name, id=pool_id)],
            probes=probes,
            load_balancing_rules=rules,
            outbound_rules=[
                OutboundRule(
                    name="OutboundNATAllProtocols",
                    protocol="All",
                    idle_timeout_in_minutes=LB_IDLE_TIMEOUT_MINUTES,
                    frontend_ip_configurations=[SubResource(id=frontend_id)],
                    backend_address_pool=SubResource(id=pool_id),
                )
            ],
            inbound_nat_rules=existing.inbound_nat_rules if existing is not None else None,
        )
        await self._apply(ref, lb)

    async def delete(self, spec: PublicLBSpec) -> None:
        await self._delete(ResourceRef(resource_group=self._scope.resource_group, name=spec.name))
