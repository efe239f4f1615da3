"""Deterministic resource naming.

Names are derived from cluster identity alone so a re-run after a crash
arrives at the same names without any external registry:

    hash = fnv1a_32("{subscription_id}/{resource_group}/{cluster_name}")
    api server public IP  -> "{cluster_name}-{hash:x}"
    egress public IP      -> "cluster-{hash:x}"
    FQDN                  -> "{public_ip_name}.{location}.cloudapp.azure.com"
"""

from __future__ import annotations

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193

AZURE_DNS_ZONE_SUFFIX = "cloudapp.azure.com"

# Purpose tags for load balancers and the egress public IP
API_SERVER_PURPOSE = "control-plane"
EGRESS_PURPOSE = "cluster"


def fnv1a_32(data: bytes) -> int:
    """32-bit FNV-1a hash."""
    h = FNV32_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def cluster_hash(subscription_id: str, resource_group: str, cluster_name: str) -> str:
    """Lowercase hex FNV-1a hash of the cluster identity triple."""
    identity = "/".join((subscription_id, resource_group, cluster_name))
    return format(fnv1a_32(identity.encode("utf-8")), "x")


def generate_public_ip_name(prefix: str, hash_value: str) -> str:
    return f"{prefix}-{hash_value}"


def generate_api_server_ip_name(subscription_id: str, resource_group: str, cluster_name: str) -> str:
    return generate_public_ip_name(
        cluster_name, cluster_hash(subscription_id, resource_group, cluster_name)
    )


def generate_egress_ip_name(subscription_id: str, resource_group: str, cluster_name: str) -> str:
    return generate_public_ip_name(
        EGRESS_PURPOSE, cluster_hash(subscription_id, resource_group, cluster_name)
    )


def generate_fqdn(public_ip_name: str, location: str) -> str:
    return f"{public_ip_name}.{location}.{AZURE_DNS_ZONE_SUFFIX}"


def generate_public_lb_name(purpose: str) -> str:
    return f"{purpose}-public-lb"


def generate_internal_lb_name(purpose: str) -> str:
    return f"{purpose}-internal-lb"


def generate_frontend_ip_config_name(lb_name: str) -> str:
    return f"{lb_name}-frontEnd"


def generate_backend_pool_name(lb_name: str) -> str:
    return f"{lb_name}-backendPool"


def generate_nat_rule_name(machine_name: str) -> str:
    """Per-machine inbound NAT rule name (one SSH rule per control plane machine)."""
    return machine_name


def generate_nic_name(machine_name: str) -> str:
    return f"{machine_name}-nic"


# =============================================================================
# Resource IDs
# =============================================================================


def resource_group_id(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def network_resource_id(
    subscription_id: str, resource_group: str, resource_type: str, name: str
) -> str:
    """ID of a top-level Microsoft.Network resource."""
    return (
        f"{resource_group_id(subscription_id, resource_group)}"
        f"/providers/Microsoft.Network/{resource_type}/{name}"
    )


def security_group_id(subscription_id: str, resource_group: str, name: str) -> str:
    return network_resource_id(subscription_id, resource_group, "networkSecurityGroups", name)


def route_table_id(subscription_id: str, resource_group: str, name: str) -> str:
    return network_resource_id(subscription_id, resource_group, "routeTables", name)


def public_ip_id(subscription_id: str, resource_group: str, name: str) -> str:
    return network_resource_id(subscription_id, resource_group, "publicIPAddresses", name)


def subnet_id(subscription_id: str, resource_group: str, vnet_name: str, name: str) -> str:
    vnet_id = network_resource_id(subscription_id, resource_group, "virtualNetworks", vnet_name)
    return f"{vnet_id}/subnets/{name}"


def load_balancer_id(subscription_id: str, resource_group: str, name: str) -> str:
    return network_resource_id(subscription_id, resource_group, "loadBalancers", name)


def lb_child_id(lb_id: str, child_type: str, name: str) -> str:
    """ID of a load balancer child (frontendIPConfigurations, backendAddressPools, ...)."""
    return f"{lb_id}/{child_type}/{name}"
