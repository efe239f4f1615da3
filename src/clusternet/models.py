"""Pydantic models for the cluster network desired state.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A mutable status section the engine writes allocated values into
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator


class SubnetRole(str, Enum):
    """Role a subnet plays in the cluster."""

    CONTROL_PLANE = "control-plane"
    NODE = "node"


def _validate_cidr(value: str) -> str:
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise ValueError(f"invalid CIDR block {value!r}: {e}") from e
    return value


# =============================================================================
# Network building blocks
# =============================================================================


class IngressRule(BaseModel):
    """Inbound security rule attached to a network security group."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    description: str | None = None
    protocol: str = "Tcp"
    source: str = "*"
    source_ports: str = Field("*", alias="sourcePorts")
    destination: str = "*"
    destination_ports: str = Field(alias="destinationPorts")
    priority: Annotated[int, Field(ge=100, le=4096)] = 2200

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        valid = {"Tcp", "Udp", "Icmp", "*"}
        if v not in valid:
            raise ValueError(f"protocol must be one of {valid}")
        return v


class SecurityGroupSpec(BaseModel):
    """Network security group reference with optional extra ingress rules."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    ingress_rules: list[IngressRule] = Field(default_factory=list, alias="ingressRules")


class RouteTableSpec(BaseModel):
    """Route table reference."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=80)]


class SubnetSpec(BaseModel):
    """Subnet descriptor."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    role: SubnetRole
    cidr_block: str = Field(alias="cidrBlock")
    ipv6_cidr_block: str | None = Field(None, alias="ipv6CidrBlock")
    security_group: SecurityGroupSpec = Field(alias="securityGroup")
    route_table: RouteTableSpec | None = Field(None, alias="routeTable")
    # Static frontend address for the internal load balancer (control plane only)
    internal_lb_ip_address: str | None = Field(None, alias="internalLBIPAddress")

    @field_validator("cidr_block", "ipv6_cidr_block")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_cidr(v)

    @field_validator("internal_lb_ip_address")
    @classmethod
    def validate_ip_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"internalLBIPAddress is not a valid IP address: {v}") from e
        return v

    @model_validator(mode="after")
    def check_internal_lb_address(self) -> SubnetSpec:
        if self.internal_lb_ip_address:
            network = ipaddress.ip_network(self.cidr_block, strict=False)
            if ipaddress.ip_address(self.internal_lb_ip_address) not in network:
                raise ValueError(
                    f"internalLBIPAddress {self.internal_lb_ip_address} is outside "
                    f"subnet {self.cidr_block}"
                )
        return self


class VnetSpec(BaseModel):
    """Virtual network descriptor."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    # Defaults to the cluster resource group when unset
    resource_group: str | None = Field(None, alias="resourceGroup")
    cidr_blocks: list[str] = Field(alias="cidrBlocks", min_length=1)
    ipv6_enabled: bool = Field(False, alias="ipv6Enabled")
    ipv6_cidr_block: str | None = Field(None, alias="ipv6CidrBlock")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_blocks")
    @classmethod
    def validate_cidr_blocks(cls, v: list[str]) -> list[str]:
        return [_validate_cidr(cidr) for cidr in v]

    @field_validator("ipv6_cidr_block")
    @classmethod
    def validate_ipv6_cidr(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_cidr(v)

    @model_validator(mode="after")
    def check_ipv6(self) -> VnetSpec:
        if self.ipv6_enabled and not self.ipv6_cidr_block:
            raise ValueError("ipv6CidrBlock is required when ipv6Enabled is true")
        return self


class PublicIPSpec(BaseModel):
    """API server public IP. Name and DNS name are filled in by the engine."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    dns_name: str = Field("", alias="dnsName")


class NetworkSpec(BaseModel):
    """Complete network layout of one cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    vnet: VnetSpec
    subnets: list[SubnetSpec] = Field(min_length=1)
    api_server_ip: PublicIPSpec = Field(default_factory=PublicIPSpec, alias="apiServerIp")

    @model_validator(mode="after")
    def check_subnet_roles(self) -> NetworkSpec:
        roles = [s.role for s in self.subnets]
        for role in SubnetRole:
            if role not in roles:
                raise ValueError(f"a subnet with role {role.value!r} is required")
        for subnet in self.subnets:
            if subnet.role == SubnetRole.NODE and subnet.route_table is None:
                raise ValueError(f"node subnet {subnet.name!r} requires a routeTable")
        if self.vnet.ipv6_enabled:
            missing = [s.name for s in self.subnets if not s.ipv6_cidr_block]
            if missing:
                raise ValueError(f"ipv6CidrBlock is required on subnets {missing}")
        return self


# =============================================================================
# Cluster
# =============================================================================


class MachineSpec(BaseModel):
    """Machine whose network interface the engine manages.

    Load balancer names default by role: control plane machines join the
    API server public and internal load balancers, node machines join the
    egress load balancer when IPv6 is enabled.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    role: SubnetRole
    vm_size: str = Field(alias="vmSize", min_length=1)
    nic_name: str | None = Field(None, alias="nicName")
    static_ip_address: str | None = Field(None, alias="staticIPAddress")
    public_lb_name: str | None = Field(None, alias="publicLBName")
    internal_lb_name: str | None = Field(None, alias="internalLBName")
    public_ip_name: str | None = Field(None, alias="publicIPName")
    # None defers to the VM size's capabilities
    accelerated_networking: bool | None = Field(None, alias="acceleratedNetworking")

    @field_validator("static_ip_address")
    @classmethod
    def validate_static_ip(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"staticIPAddress is not a valid IP address: {v}") from e
        return v


class FailureDomainSpec(BaseModel):
    """Fault isolation boundary a machine can be placed in."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    control_plane: bool = Field(False, alias="controlPlane")
    attributes: dict[str, str] = Field(default_factory=dict)


class AzureClusterSpec(BaseModel):
    """Desired state of a cluster's Azure footprint."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    location: str
    resource_group: str = Field(alias="resourceGroup", min_length=1, max_length=90)
    subscription_id: str | None = Field(None, alias="subscriptionId")
    network_spec: NetworkSpec = Field(alias="networkSpec")
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")
    machines: list[MachineSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_machines(self) -> AzureClusterSpec:
        seen: set[str] = set()
        for machine in self.machines:
            if machine.name in seen:
                raise ValueError(f"duplicate machine name {machine.name!r}")
            seen.add(machine.name)
        return self


class AzureClusterStatus(BaseModel):
    """Values the engine discovers or allocates."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    failure_domains: dict[str, FailureDomainSpec] = Field(
        default_factory=dict, alias="failureDomains"
    )


class AzureCluster(BaseModel):
    """Cluster object owned by the caller and shared with the engine via the scope."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")]
    spec: AzureClusterSpec
    status: AzureClusterStatus = Field(default_factory=AzureClusterStatus)
