"""Per-kind resource specs.

A spec is built fresh from the cluster scope for every pass and handed to
exactly one reconciler. Specs are frozen; a reconciler that needs a derived
value (for example a defaulted accelerated-networking flag) keeps it in a
local variable instead of writing it back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MachineRole(str, Enum):
    """Role of the machine a network interface belongs to."""

    CONTROL_PLANE = "control-plane"
    NODE = "node"


@dataclass(frozen=True)
class GroupSpec:
    name: str
    location: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VnetSpec:
    resource_group: str
    name: str
    cidrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class SecurityRuleSpec:
    name: str
    destination_ports: str
    priority: int
    protocol: str = "Tcp"
    source: str = "*"
    source_ports: str = "*"
    destination: str = "*"
    description: str | None = None


@dataclass(frozen=True)
class SecurityGroupSpec:
    name: str
    is_control_plane: bool = False
    ingress_rules: tuple[SecurityRuleSpec, ...] = ()


@dataclass(frozen=True)
class RouteTableSpec:
    name: str


@dataclass(frozen=True)
class SubnetSpec:
    name: str
    vnet_name: str
    cidrs: tuple[str, ...] = ()
    vnet_resource_group: str | None = None
    security_group_name: str | None = None
    route_table_name: str | None = None
    role: str | None = None
    internal_lb_ip_address: str | None = None


@dataclass(frozen=True)
class InternalLBSpec:
    name: str
    subnet_name: str = ""
    subnet_cidr: str = ""
    vnet_name: str = ""
    vnet_resource_group: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class PublicIPSpec:
    name: str
    dns_name: str = ""
    is_ipv6: bool = False


@dataclass(frozen=True)
class PublicLBSpec:
    name: str
    public_ip_name: str = ""
    is_api_server: bool = False


@dataclass(frozen=True)
class AvailabilityZonesSpec:
    """Zone listing request; ``vm_size`` narrows zones to a single VM size."""

    vm_size: str | None = None


@dataclass(frozen=True)
class NICSpec:
    """Network interface of one machine.

    ``accelerated_networking`` is tri-state: None means "use whatever the
    VM size supports".
    """

    name: str
    machine_name: str
    vnet_name: str
    subnet_name: str
    machine_role: MachineRole = MachineRole.NODE
    vnet_resource_group: str | None = None
    vm_size: str = ""
    static_ip_address: str | None = None
    public_lb_name: str | None = None
    internal_lb_name: str | None = None
    public_ip_name: str | None = None
    accelerated_networking: bool | None = None
