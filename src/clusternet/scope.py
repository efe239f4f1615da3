"""Cluster scope shared by every reconcile step.

The scope is the only channel between the engine and the caller-owned
cluster object. Readers are plentiful; writers are limited to the three
allocated values the engine owns:

- ``set_api_server_ip_name``
- ``set_api_server_dns_name``
- ``set_failure_domain``

The caller persists the cluster object after the engine returns.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import Config
from .models import (
    AzureCluster,
    FailureDomainSpec,
    MachineSpec,
    NetworkSpec,
    PublicIPSpec,
    SubnetRole,
    SubnetSpec,
    VnetSpec,
)

# Tag marking a resource as created (and therefore deletable) by this engine
OWNED_TAG_PREFIX = "clusternet.io_cluster_"
OWNED_TAG_VALUE = "owned"

def cluster_owned_tag(cluster_name: str) -> str:
    return f"{OWNED_TAG_PREFIX}{cluster_name}"

@dataclass
class ClusterScope:
    """Read/write view of one cluster for a single reconcile or delete pass."""

    config: Config
    cluster: AzureCluster

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.cluster.name

    @property
    def subscription_id(self) -> str:
        return self.cluster.spec.subscription_id or self.config.subscription_id

    @property
    def resource_group(self) -> str:
        return self.cluster.spec.resource_group

    @property
    def location(self) -> str:
        return self.cluster.spec.location or self.config.location

    # -------------------------------------------------------------------------
    # Desired network
    # -------------------------------------------------------------------------

    @property
    def network(self) -> NetworkSpec:
        return self.cluster.spec.network_spec

    @property
    def vnet(self) -> VnetSpec:
        return self.network.vnet

    @property
    def vnet_resource_group(self) -> str:
        return self.vnet.resource_group or self.resource_group

    @property
    def subnets(self) -> list[SubnetSpec]:
        return list(self.network.subnets)

    def _subnet(self, role: SubnetRole) -> SubnetSpec:
        for subnet in self.network.subnets:
            if subnet.role == role:
                return subnet
        # NetworkSpec validation guarantees both roles exist
        raise LookupError(f"cluster {self.name} has no {role.value} subnet")

    @property
    def control_plane_subnet(self) -> SubnetSpec:
        return self._subnet(SubnetRole.CONTROL_PLANE)

    @property
    def node_subnet(self) -> SubnetSpec:
        return self._subnet(SubnetRole.NODE)

    @property
    def api_server_ip(self) -> PublicIPSpec:
        return self.network.api_server_ip

    @property
    def machines(self) -> list[MachineSpec]:
        return list(self.cluster.spec.machines)

    def is_ipv6_enabled(self) -> bool:
        return self.vnet.ipv6_enabled

    def owned_tags(self) -> dict[str, str]:
        """Tags applied to every resource the engine creates."""
        tags = dict(self.cluster.spec.additional_tags)
        tags[cluster_owned_tag(self.name)] = OWNED_TAG_VALUE
        return tags

    def is_owned(self, tags: dict[str, str] | None) -> bool:
        return (tags or {}).get(cluster_owned_tag(self.name)) == OWNED_TAG_VALUE

    # -------------------------------------------------------------------------
    # Allocated state (the only fields the engine may mutate)
    # -------------------------------------------------------------------------

    def set_api_server_ip_name(self, name: str) -> None:
        self.network.api_server_ip.name = name

    def set_api_server_dns_name(self, dns_name: str) -> None:
        self.network.api_server_ip.dns_name = dns_name

    def set_failure_domain(self, zone: str, spec: FailureDomainSpec) -> None:
        self.cluster.status.failure_domains[zone] = spec

    @property
    def failure_domains(self) -> dict[str, FailureDomainSpec]:
        return dict(self.cluster.status.failure_domains)
