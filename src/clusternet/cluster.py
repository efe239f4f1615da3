"""Cluster-level network orchestration.

``ClusterReconciler.reconcile`` converges the cluster's network in a fixed
dependency order; ``ClusterReconciler.delete`` tears it down in reverse
dependency order. Both are safe to call again after a failure: completed
steps turn into no-ops on the next pass.

RECONCILE ORDER:
    API server IP name/DNS -> failure domains -> resource group -> VNet ->
    control plane NSG -> node NSG -> node route table -> control plane
    subnet -> node subnet -> internal LB -> API server public IP ->
    API server public LB -> (IPv6 only) egress public IP -> egress LB

DELETE ORDER:
    (IPv6 only) egress LB -> egress public IP -> API server LB ->
    API server public IP -> internal LB -> subnets -> node route table ->
    node NSG -> control plane NSG -> VNet -> resource group

Delete treats not-found as success at every step. Any other error stops
the pass; the next call picks up from wherever the remote state is.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable

from . import naming
from .clients import ClientSet
from .errors import ResourceOperationError, is_not_found
from .models import FailureDomainSpec
from .resources import (
    GroupsService,
    InternalLoadBalancersService,
    PublicIPsService,
    PublicLoadBalancersService,
    RouteTablesService,
    SecurityGroupsService,
    SubnetsService,
    VirtualNetworksService,
)
from .scope import ClusterScope
from .skus import AvailabilityZoneLister
from .specs import (
    AvailabilityZonesSpec,
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


class ClusterReconciler:
    """Orchestrates the per-kind services for one cluster."""

    def __init__(self, scope: ClusterScope, clients: ClientSet) -> None:
        self._scope = scope
        self.groups_svc = GroupsService(scope, clients.groups)
        self.vnet_svc = VirtualNetworksService(scope, clients.virtual_networks)
        self.security_group_svc = SecurityGroupsService(scope, clients.security_groups)
        self.route_table_svc = RouteTablesService(scope, clients.route_tables)
        self.subnets_svc = SubnetsService(scope, clients.subnets, clients.virtual_networks)
        self.internal_lb_svc = InternalLoadBalancersService(scope, clients.load_balancers)
        self.public_ip_svc = PublicIPsService(scope, clients.public_ips)
        self.public_lb_svc = PublicLoadBalancersService(
            scope, clients.load_balancers, clients.public_ips
        )
        self.avail_zones = AvailabilityZoneLister(clients.skus, scope.location)

    @property
    def scope(self) -> ClusterScope:
        return self._scope

    # -------------------------------------------------------------------------
    # Step helpers
    # -------------------------------------------------------------------------

    async def _reconcile_step(self, kind: str, name: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as e:
            raise ResourceOperationError("reconcile", kind, name, self._scope.name, e) from e

    async def _delete_step(self, kind: str, name: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as e:
            if not is_not_found(e):
                raise ResourceOperationError("delete", kind, name, self._scope.name, e) from e
            logger.info(
                f"{kind} not found, treating as deleted",
                extra={"cluster": self._scope.name, "resource_kind": kind, "resource": name},
            )

    # -------------------------------------------------------------------------
    # Derived names
    # -------------------------------------------------------------------------

    def _api_server_ip_name(self) -> str:
        return self._scope.api_server_ip.name or naming.generate_api_server_ip_name(
            self._scope.subscription_id, self._scope.resource_group, self._scope.name
        )

    def _egress_ip_name(self) -> str:
        return naming.generate_egress_ip_name(
            self._scope.subscription_id, self._scope.resource_group, self._scope.name
        )

    def _subnet_cidrs(self, cidr: str, ipv6_cidr: str | None) -> tuple[str, ...]:
        if self._scope.is_ipv6_enabled() and ipv6_cidr:
            return (cidr, ipv6_cidr)
        return (cidr,)

    def assign_api_server_ip(self) -> None:
        """Fill in the API server public IP name and DNS name.

        The name is generated only when unset. The DNS name is derived from
        the name when unset or when its label no longer matches the name.
        """
        ip = self._scope.api_server_ip
        if not ip.name:
            self._scope.set_api_server_ip_name(self._api_server_ip_name())
        if not ip.dns_name.startswith(f"{ip.name}."):
            self._scope.set_api_server_dns_name(
                naming.generate_fqdn(ip.name, self._scope.location)
            )

    async def set_failure_domains_for_location(self) -> None:
        """Record every zone of the region as a control plane failure domain."""
        zones = await self.avail_zones.list_zones(AvailabilityZonesSpec())
        for zone in zones:
            self._scope.set_failure_domain(zone, FailureDomainSpec(control_plane=True))

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    async def reconcile(self) -> None:
        """Converge the cluster network to the desired state in the scope."""
        scope = self._scope
        logger.info(
            "Reconciling cluster network",
            extra={"cluster": scope.name, "resource_group": scope.resource_group},
        )

        self.assign_api_server_ip()

        await self._reconcile_step(
            "availability zones", scope.location, self.set_failure_domains_for_location()
        )

        await self._reconcile_step(
            GroupsService.kind,
            scope.resource_group,
            self.groups_svc.reconcile(
                GroupSpec(
                    name=scope.resource_group, location=scope.location, tags=scope.owned_tags()
                )
            ),
        )

        vnet = scope.vnet
        vnet_cidrs = list(vnet.cidr_blocks)
        if scope.is_ipv6_enabled() and vnet.ipv6_cidr_block:
            vnet_cidrs.append(vnet.ipv6_cidr_block)
        await self._reconcile_step(
            VirtualNetworksService.kind,
            vnet.name,
            self.vnet_svc.reconcile(
                VnetSpec(
                    resource_group=scope.vnet_resource_group,
                    name=vnet.name,
                    cidrs=tuple(vnet_cidrs),
                )
            ),
        )

        cp_subnet = scope.control_plane_subnet
        node_subnet = scope.node_subnet

        for subnet, is_control_plane in ((cp_subnet, True), (node_subnet, False)):
            group = subnet.security_group
            await self._reconcile_step(
                SecurityGroupsService.kind,
                group.name,
                self.security_group_svc.reconcile(
                    SecurityGroupSpec(
                        name=group.name,
                        is_control_plane=is_control_plane,
                        ingress_rules=tuple(
                            SecurityRuleSpec(
                                name=rule.name,
                                description=rule.description,
                                protocol=rule.protocol,
                                source=rule.source,
                                source_ports=rule.source_ports,
                                destination=rule.destination,
                                destination_ports=rule.destination_ports,
                                priority=rule.priority,
                            )
                            for rule in group.ingress_rules
                        ),
                    )
                ),
            )

        route_table_name = node_subnet.route_table.name if node_subnet.route_table else ""
        await self._reconcile_step(
            RouteTablesService.kind,
            route_table_name,
            self.route_table_svc.reconcile(RouteTableSpec(name=route_table_name)),
        )

        for subnet in (cp_subnet, node_subnet):
            await self._reconcile_step(
                SubnetsService.kind,
                subnet.name,
                self.subnets_svc.reconcile(
                    SubnetSpec(
                        name=subnet.name,
                        vnet_name=vnet.name,
                        vnet_resource_group=scope.vnet_resource_group,
                        cidrs=self._subnet_cidrs(subnet.cidr_block, subnet.ipv6_cidr_block),
                        security_group_name=subnet.security_group.name,
                        route_table_name=subnet.route_table.name if subnet.route_table else None,
                        role=subnet.role.value,
                        internal_lb_ip_address=subnet.internal_lb_ip_address,
                    )
                ),
            )

        internal_lb_name = naming.generate_internal_lb_name(naming.API_SERVER_PURPOSE)
        await self._reconcile_step(
            InternalLoadBalancersService.kind,
            internal_lb_name,
            self.internal_lb_svc.reconcile(
                InternalLBSpec(
                    name=internal_lb_name,
                    subnet_name=cp_subnet.name,
                    subnet_cidr=cp_subnet.cidr_block,
                    vnet_name=vnet.name,
                    vnet_resource_group=scope.vnet_resource_group,
                    ip_address=cp_subnet.internal_lb_ip_address,
                )
            ),
        )

        api_ip = scope.api_server_ip
        await self._reconcile_step(
            PublicIPsService.kind,
            api_ip.name,
            self.public_ip_svc.reconcile(
                PublicIPSpec(name=api_ip.name, dns_name=api_ip.dns_name, is_ipv6=False)
            ),
        )

        public_lb_name = naming.generate_public_lb_name(naming.API_SERVER_PURPOSE)
        await self._reconcile_step(
            PublicLoadBalancersService.kind,
            public_lb_name,
            self.public_lb_svc.reconcile(
                PublicLBSpec(name=public_lb_name, public_ip_name=api_ip.name, is_api_server=True)
            ),
        )

        # IPv6 clusters need a dedicated IPv4 load balancer for outbound traffic
        if scope.is_ipv6_enabled():
            egress_ip_name = self._egress_ip_name()
            await self._reconcile_step(
                PublicIPsService.kind,
                egress_ip_name,
                self.public_ip_svc.reconcile(PublicIPSpec(name=egress_ip_name, is_ipv6=False)),
            )

            egress_lb_name = naming.generate_public_lb_name(naming.EGRESS_PURPOSE)
            await self._reconcile_step(
                PublicLoadBalancersService.kind,
                egress_lb_name,
                self.public_lb_svc.reconcile(
                    PublicLBSpec(name=egress_lb_name, public_ip_name=egress_ip_name)
                ),
            )

        logger.info("Successfully reconciled cluster network", extra={"cluster": scope.name})

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(self) -> None:
        """Tear down the cluster network, dependents before their dependencies."""
        scope = self._scope
        logger.info("Deleting cluster network", extra={"cluster": scope.name})

        await self.delete_load_balancers()
        await self.delete_subnets()

        node_route_table = scope.node_subnet.route_table
        if node_route_table is not None:
            await self._delete_step(
                RouteTablesService.kind,
                node_route_table.name,
                self.route_table_svc.delete(RouteTableSpec(name=node_route_table.name)),
            )

        await self.delete_security_groups()

        await self._delete_step(
            VirtualNetworksService.kind,
            scope.vnet.name,
            self.vnet_svc.delete(
                VnetSpec(resource_group=scope.vnet_resource_group, name=scope.vnet.name)
            ),
        )

        await self._delete_step(
            GroupsService.kind,
            scope.resource_group,
            self.groups_svc.delete(GroupSpec(name=scope.resource_group, location=scope.location)),
        )

        logger.info("Successfully deleted cluster network", extra={"cluster": scope.name})

    async def delete_load_balancers(self) -> None:
        if self._scope.is_ipv6_enabled():
            egress_lb_name = naming.generate_public_lb_name(naming.EGRESS_PURPOSE)
            await self._delete_step(
                PublicLoadBalancersService.kind,
                egress_lb_name,
                self.public_lb_svc.delete(PublicLBSpec(name=egress_lb_name)),
            )
            egress_ip_name = self._egress_ip_name()
            await self._delete_step(
                PublicIPsService.kind,
                egress_ip_name,
                self.public_ip_svc.delete(PublicIPSpec(name=egress_ip_name)),
            )

        public_lb_name = naming.generate_public_lb_name(naming.API_SERVER_PURPOSE)
        await self._delete_step(
            PublicLoadBalancersService.kind,
            public_lb_name,
            self.public_lb_svc.delete(PublicLBSpec(name=public_lb_name)),
        )

        api_ip_name = self._api_server_ip_name()
        await self._delete_step(
            PublicIPsService.kind,
            api_ip_name,
            self.public_ip_svc.delete(PublicIPSpec(name=api_ip_name)),
        )

        internal_lb_name = naming.generate_internal_lb_name(naming.API_SERVER_PURPOSE)
        await self._delete_step(
            InternalLoadBalancersService.kind,
            internal_lb_name,
            self.internal_lb_svc.delete(InternalLBSpec(name=internal_lb_name)),
        )

    async def delete_subnets(self) -> None:
        for subnet in self._scope.subnets:
            await self._delete_step(
                SubnetsService.kind,
                subnet.name,
                self.subnets_svc.delete(
                    SubnetSpec(
                        name=subnet.name,
                        vnet_name=self._scope.vnet.name,
                        vnet_resource_group=self._scope.vnet_resource_group,
                    )
                ),
            )

    async def delete_security_groups(self) -> None:
        for subnet in (self._scope.node_subnet, self._scope.control_plane_subnet):
            name = subnet.security_group.name
            await self._delete_step(
                SecurityGroupsService.kind,
                name,
                self.security_group_svc.delete(SecurityGroupSpec(name=name)),
            )
