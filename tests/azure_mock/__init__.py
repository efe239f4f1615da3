"""In-memory Azure network fakes for testing.

This package provides fake implementations of the clusternet resource
client contracts so the engine can be exercised without Azure connectivity.

Key Features:
- Per-kind dictionary-backed clients sharing one call log
- Not-found semantics matching azure-core (ResourceNotFoundError)
- Error injection per kind, operation and resource name
- NAT rules reflected into their parent load balancer
- Compute SKU listings for capability and zone lookups

Usage:
    from azure_mock import MockAzureNetwork, make_scope, make_vm_sku

    azure = MockAzureNetwork(SUBSCRIPTION_ID, skus=[make_vm_sku("Standard_D2s_v3", LOCATION)])
    await ClusterReconciler(make_scope(), azure.clients).reconcile()
    assert azure.state.mutation_count() > 0
"""

from .cluster import (
    CLUSTER_NAME,
    CONTROL_PLANE_NSG,
    CONTROL_PLANE_SUBNET,
    INTERNAL_LB_IP,
    LOCATION,
    NODE_NSG,
    NODE_ROUTE_TABLE,
    NODE_SUBNET,
    RESOURCE_GROUP,
    SUBSCRIPTION_ID,
    VNET_NAME,
    cluster_document,
    make_cluster,
    make_config,
    make_scope,
)
from .network import (
    FakeInboundNatRuleClient,
    FakeLoadBalancerClient,
    FakeResourceClient,
    MockAzureNetwork,
    MockNetworkState,
    Mutation,
    not_found,
)
from .skus import FakeSkuClient, MockResourceSku, make_vm_sku

__all__ = [
    "CLUSTER_NAME",
    "CONTROL_PLANE_NSG",
    "CONTROL_PLANE_SUBNET",
    "INTERNAL_LB_IP",
    "LOCATION",
    "NODE_NSG",
    "NODE_ROUTE_TABLE",
    "NODE_SUBNET",
    "RESOURCE_GROUP",
    "SUBSCRIPTION_ID",
    "VNET_NAME",
    "FakeInboundNatRuleClient",
    "FakeLoadBalancerClient",
    "FakeResourceClient",
    "FakeSkuClient",
    "MockAzureNetwork",
    "MockNetworkState",
    "MockResourceSku",
    "Mutation",
    "cluster_document",
    "make_cluster",
    "make_config",
    "make_scope",
    "make_vm_sku",
    "not_found",
]
