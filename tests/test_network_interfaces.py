"""Tests for network interface reconciliation and SSH NAT rule allocation."""

from __future__ import annotations

import logging

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.network.models import (
    BackendAddressPool,
    FrontendIPConfiguration,
    InboundNatRule,
    LoadBalancer,
    PublicIPAddress,
    Subnet,
)
from azure_mock import (
    CONTROL_PLANE_SUBNET,
    LOCATION,
    NODE_SUBNET,
    RESOURCE_GROUP,
    SUBSCRIPTION_ID,
    VNET_NAME,
    MockAzureNetwork,
    make_scope,
    make_vm_sku,
)

from clusternet import naming
from clusternet.clients import ResourceRef
from clusternet.errors import (
    LoadBalancerConfigurationError,
    NATPortExhaustedError,
    ResourceOperationError,
    SkuNotFoundError,
)
from clusternet.network_interfaces import (
    allocate_frontend_port,
    build_network_interface_service,
    machine_nic_specs,
)
from clusternet.specs import MachineRole, NICSpec

VM_SIZE = "Standard_D2s_v3"
PUBLIC_LB = "control-plane-public-lb"
INTERNAL_LB = "control-plane-internal-lb"


def _azure(accelerated_networking: bool | None = False) -> MockAzureNetwork:
    azure = MockAzureNetwork(
        SUBSCRIPTION_ID,
        skus=[make_vm_sku(VM_SIZE, LOCATION, accelerated_networking=accelerated_networking)],
    )
    for subnet_name in (CONTROL_PLANE_SUBNET, NODE_SUBNET):
        azure.subnets.seed(
            ResourceRef(RESOURCE_GROUP, subnet_name, parent=VNET_NAME),
            Subnet(address_prefix="10.0.0.0/16"),
        )
    return azure


def _seed_lb(
    azure: MockAzureNetwork, name: str, nat_ports: dict[str, int] | None = None
) -> LoadBalancer:
    lb_id = naming.load_balancer_id(SUBSCRIPTION_ID, RESOURCE_GROUP, name)
    frontend = naming.generate_frontend_ip_config_name(name)
    pool = naming.generate_backend_pool_name(name)
    rules = [
        InboundNatRule(name=rule_name, frontend_port=port, backend_port=22)
        for rule_name, port in (nat_ports or {}).items()
    ]
    return azure.load_balancers.seed(
        ResourceRef(RESOURCE_GROUP, name),
        LoadBalancer(
            location=LOCATION,
            frontend_ip_configurations=[
                FrontendIPConfiguration(
                    name=frontend,
                    id=naming.lb_child_id(lb_id, "frontendIPConfigurations", frontend),
                )
            ],
            backend_address_pools=[
                BackendAddressPool(
                    name=pool, id=naming.lb_child_id(lb_id, "backendAddressPools", pool)
                )
            ],
            inbound_nat_rules=rules,
        ),
    )


def _control_plane_nic(machine: str = "demo-control-plane-0", **overrides) -> NICSpec:
    values = {
        "name": f"{machine}-nic",
        "machine_name": machine,
        "vnet_name": VNET_NAME,
        "subnet_name": CONTROL_PLANE_SUBNET,
        "machine_role": MachineRole.CONTROL_PLANE,
        "vm_size": VM_SIZE,
        "public_lb_name": PUBLIC_LB,
    }
    values.update(overrides)
    return NICSpec(**values)


def _node_nic(machine: str = "demo-node-0", **overrides) -> NICSpec:
    values = {
        "name": f"{machine}-nic",
        "machine_name": machine,
        "vnet_name": VNET_NAME,
        "subnet_name": NODE_SUBNET,
        "vm_size": VM_SIZE,
    }
    values.update(overrides)
    return NICSpec(**values)


def _stored_nic(azure: MockAzureNetwork, name: str):
    return azure.network_interfaces.lookup(ResourceRef(RESOURCE_GROUP, name))


def _nat_ports(azure: MockAzureNetwork, lb_name: str = PUBLIC_LB) -> dict[str, int]:
    lb = azure.load_balancers.lookup(ResourceRef(RESOURCE_GROUP, lb_name))
    return {r.name: r.frontend_port for r in lb.inbound_nat_rules}


class TestAllocateFrontendPort:
    """Tests for SSH frontend port selection."""

    def test_default_port_when_free(self) -> None:
        assert allocate_frontend_port(set()) == 22

    def test_default_port_ignores_unrelated_ports(self) -> None:
        assert allocate_frontend_port({2201, 2202}) == 22

    def test_first_free_fallback(self) -> None:
        """Test the lowest free port in 2201..2219 is chosen after 22."""
        assert allocate_frontend_port({22, 2201, 2202}) == 2203

    def test_gap_in_fallback_range(self) -> None:
        assert allocate_frontend_port({22, 2201, 2203}) == 2202

    def test_last_port(self) -> None:
        used = {22, *range(2201, 2219)}
        assert allocate_frontend_port(used) == 2219

    def test_exhausted(self) -> None:
        assert allocate_frontend_port({22, *range(2201, 2220)}) is None


class TestReconcileNodeInterface:
    """Tests for interfaces without NAT rules."""

    @pytest.mark.asyncio
    async def test_dynamic_ip_and_capability_default(self) -> None:
        """Test defaults: dynamic private IP, acceleration resolved from the SKU."""
        azure = _azure(accelerated_networking=False)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic()])

        nic = _stored_nic(azure, "demo-node-0-nic")
        ip_config = nic.ip_configurations[0]
        assert ip_config.private_ip_allocation_method == "Dynamic"
        assert ip_config.private_ip_address is None
        assert ip_config.subnet.id == naming.subnet_id(
            SUBSCRIPTION_ID, RESOURCE_GROUP, VNET_NAME, NODE_SUBNET
        )
        assert nic.enable_accelerated_networking is False
        assert azure.skus.calls == [LOCATION]

    @pytest.mark.asyncio
    async def test_capability_enabled_from_sku(self) -> None:
        azure = _azure(accelerated_networking=True)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic()])

        assert _stored_nic(azure, "demo-node-0-nic").enable_accelerated_networking is True

    @pytest.mark.asyncio
    async def test_explicit_capability_skips_lookup(self) -> None:
        azure = _azure(accelerated_networking=False)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic(accelerated_networking=True)])

        assert _stored_nic(azure, "demo-node-0-nic").enable_accelerated_networking is True
        assert azure.skus.calls == []

    @pytest.mark.asyncio
    async def test_static_ip(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic(static_ip_address="10.1.0.10")])

        ip_config = _stored_nic(azure, "demo-node-0-nic").ip_configurations[0]
        assert ip_config.private_ip_allocation_method == "Static"
        assert ip_config.private_ip_address == "10.1.0.10"

    @pytest.mark.asyncio
    async def test_node_behind_public_lb_gets_pool_only(self) -> None:
        """Test node machines join the pool without an SSH NAT rule."""
        azure = _azure()
        lb = _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic(public_lb_name=PUBLIC_LB)])

        ip_config = _stored_nic(azure, "demo-node-0-nic").ip_configurations[0]
        assert [p.id for p in ip_config.load_balancer_backend_address_pools] == [
            lb.backend_address_pools[0].id
        ]
        assert not ip_config.load_balancer_inbound_nat_rules
        assert _nat_ports(azure) == {}

    @pytest.mark.asyncio
    async def test_public_ip_attached(self) -> None:
        azure = _azure()
        ip = azure.public_ips.seed(
            ResourceRef(RESOURCE_GROUP, "demo-node-0-pip"), PublicIPAddress(location=LOCATION)
        )
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic(public_ip_name="demo-node-0-pip")])

        ip_config = _stored_nic(azure, "demo-node-0-nic").ip_configurations[0]
        assert ip_config.public_ip_address.id == ip.id

    @pytest.mark.asyncio
    async def test_nic_tagged_as_owned(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_node_nic()])

        tags = _stored_nic(azure, "demo-node-0-nic").tags
        assert tags["clusternet.io_cluster_demo"] == "owned"


class TestReconcileControlPlaneInterface:
    """Tests for interfaces that need an SSH NAT rule."""

    @pytest.mark.asyncio
    async def test_first_machine_gets_port_22(self) -> None:
        azure = _azure()
        lb = _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic()])

        assert _nat_ports(azure) == {"demo-control-plane-0": 22}
        rule = azure.load_balancers.lookup(ResourceRef(RESOURCE_GROUP, PUBLIC_LB)).inbound_nat_rules[0]
        assert rule.backend_port == 22
        assert rule.idle_timeout_in_minutes == 4
        assert rule.protocol == "Tcp"
        assert rule.enable_floating_ip is False
        assert rule.frontend_ip_configuration.id == lb.frontend_ip_configurations[0].id

    @pytest.mark.asyncio
    async def test_port_allocation_with_existing_rules(self) -> None:
        """Test a new machine takes 2203 when 22, 2201 and 2202 are in use."""
        azure = _azure()
        _seed_lb(azure, PUBLIC_LB, {"m0": 22, "m1": 2201, "m2": 2202})
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic("m3")])

        assert _nat_ports(azure)["m3"] == 2203

    @pytest.mark.asyncio
    async def test_nat_rule_and_pool_associated(self) -> None:
        azure = _azure()
        lb = _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic()])

        ip_config = _stored_nic(azure, "demo-control-plane-0-nic").ip_configurations[0]
        assert [r.id for r in ip_config.load_balancer_inbound_nat_rules] == [
            naming.lb_child_id(lb.id, "inboundNatRules", "demo-control-plane-0")
        ]
        assert [p.id for p in ip_config.load_balancer_backend_address_pools] == [
            lb.backend_address_pools[0].id
        ]

    @pytest.mark.asyncio
    async def test_internal_lb_pool_appended(self) -> None:
        azure = _azure()
        public_lb = _seed_lb(azure, PUBLIC_LB)
        internal_lb = _seed_lb(azure, INTERNAL_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic(internal_lb_name=INTERNAL_LB)])

        ip_config = _stored_nic(azure, "demo-control-plane-0-nic").ip_configurations[0]
        assert [p.id for p in ip_config.load_balancer_backend_address_pools] == [
            public_lb.backend_address_pools[0].id,
            internal_lb.backend_address_pools[0].id,
        ]

    @pytest.mark.asyncio
    async def test_existing_rule_not_recreated(self) -> None:
        """Test a second pass issues no NAT rule mutation but still updates the NIC."""
        azure = _azure()
        _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic()])
        azure.state.mutations.clear()
        await service.reconcile([_control_plane_nic()])

        assert azure.state.mutations_of("create_or_update") == [
            ("network_interfaces", "demo-control-plane-0-nic")
        ]
        assert _nat_ports(azure) == {"demo-control-plane-0": 22}

    @pytest.mark.asyncio
    async def test_machines_get_distinct_ports(self) -> None:
        azure = _azure()
        _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.reconcile([_control_plane_nic(f"cp-{i}") for i in range(3)])

        assert _nat_ports(azure) == {"cp-0": 22, "cp-1": 2201, "cp-2": 2202}

    @pytest.mark.asyncio
    async def test_ports_exhausted(self) -> None:
        azure = _azure()
        used = {"m-22": 22, **{f"m-{p}": p for p in range(2201, 2220)}}
        _seed_lb(azure, PUBLIC_LB, used)
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_control_plane_nic("new-machine")])

        assert isinstance(exc_info.value.__cause__, NATPortExhaustedError)
        assert exc_info.value.name == "new-machine-nic"
        assert _stored_nic(azure, "new-machine-nic") is None

    @pytest.mark.asyncio
    async def test_lb_without_frontend(self) -> None:
        azure = _azure()
        lb = _seed_lb(azure, PUBLIC_LB)
        lb.frontend_ip_configurations = []
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_control_plane_nic()])

        assert isinstance(exc_info.value.__cause__, LoadBalancerConfigurationError)

    @pytest.mark.asyncio
    async def test_lb_without_rule_list(self) -> None:
        azure = _azure()
        lb = _seed_lb(azure, PUBLIC_LB)
        lb.inbound_nat_rules = None
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_control_plane_nic()])

        assert isinstance(exc_info.value.__cause__, LoadBalancerConfigurationError)
        assert "inbound NAT rules" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_public_lb(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_control_plane_nic()])

        assert exc_info.value.kind == "public load balancer"
        assert isinstance(exc_info.value.__cause__, ResourceNotFoundError)


class TestReconcileErrors:
    """Tests for error propagation across a batch of interfaces."""

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)
        specs = [
            _node_nic("broken", subnet_name="no-such-subnet"),
            _node_nic("healthy"),
        ]

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile(specs)

        assert exc_info.value.kind == "subnet"
        assert _stored_nic(azure, "healthy-nic") is None

    @pytest.mark.asyncio
    async def test_unknown_vm_size(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_node_nic(vm_size="Standard_Unknown")])

        assert isinstance(exc_info.value.__cause__, SkuNotFoundError)

    @pytest.mark.asyncio
    async def test_create_failure_annotated(self) -> None:
        azure = _azure()
        azure.state.fail(
            "network_interfaces", "create_or_update", "demo-node-0-nic", HttpResponseError("quota")
        )
        service = build_network_interface_service(make_scope(), azure.clients)

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.reconcile([_node_nic()])

        assert exc_info.value.operation == "create or update"
        assert exc_info.value.cluster == "demo"
        assert "demo-node-0-nic" in str(exc_info.value)


class TestDeleteInterfaces:
    """Tests for interface deletion."""

    @pytest.mark.asyncio
    async def test_deletes_nic_and_nat_rule(self) -> None:
        azure = _azure()
        _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)
        await service.reconcile([_control_plane_nic()])

        await service.delete([_control_plane_nic()])

        assert _stored_nic(azure, "demo-control-plane-0-nic") is None
        assert _nat_ports(azure) == {}

    @pytest.mark.asyncio
    async def test_nat_rule_only_logged_when_deleted(self, caplog: pytest.LogCaptureFixture) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)
        await service.reconcile([_node_nic()])
        caplog.set_level(logging.INFO, logger="clusternet.network_interfaces")

        await service.delete([_node_nic()])

        messages = [r.getMessage() for r in caplog.records]
        assert "Successfully deleted NIC" in messages
        assert "Successfully deleted NIC and NAT rule" not in messages
        assert all(not hasattr(r, "nat_rule") for r in caplog.records)
        assert azure.state.mutations_of("delete") == [("network_interfaces", "demo-node-0-nic")]

    @pytest.mark.asyncio
    async def test_already_deleted_tolerated(self) -> None:
        azure = _azure()
        _seed_lb(azure, PUBLIC_LB)
        service = build_network_interface_service(make_scope(), azure.clients)

        await service.delete([_control_plane_nic()])

        assert azure.state.mutations == []

    @pytest.mark.asyncio
    async def test_delete_failure_raised(self) -> None:
        azure = _azure()
        service = build_network_interface_service(make_scope(), azure.clients)
        await service.reconcile([_node_nic()])
        azure.state.fail("network_interfaces", "delete", "demo-node-0-nic", HttpResponseError("locked"))

        with pytest.raises(ResourceOperationError) as exc_info:
            await service.delete([_node_nic()])

        assert exc_info.value.operation == "delete"
        assert _stored_nic(azure, "demo-node-0-nic") is not None


class TestMachineNicSpecs:
    """Tests for building interface specs from the machines in a cluster document."""

    def test_control_plane_defaults(self) -> None:
        scope = make_scope(machines=[{"name": "cp-0", "role": "control-plane", "vmSize": VM_SIZE}])

        [spec] = machine_nic_specs(scope)

        assert spec.name == "cp-0-nic"
        assert spec.machine_name == "cp-0"
        assert spec.machine_role == MachineRole.CONTROL_PLANE
        assert spec.subnet_name == CONTROL_PLANE_SUBNET
        assert spec.vnet_name == VNET_NAME
        assert spec.vnet_resource_group == RESOURCE_GROUP
        assert spec.public_lb_name == PUBLIC_LB
        assert spec.internal_lb_name == INTERNAL_LB
        assert spec.accelerated_networking is None

    def test_node_defaults(self) -> None:
        scope = make_scope(machines=[{"name": "node-0", "role": "node", "vmSize": VM_SIZE}])

        [spec] = machine_nic_specs(scope)

        assert spec.machine_role == MachineRole.NODE
        assert spec.subnet_name == NODE_SUBNET
        assert spec.public_lb_name is None
        assert spec.internal_lb_name is None

    def test_ipv6_node_joins_egress_lb(self) -> None:
        scope = make_scope(ipv6=True, machines=[{"name": "node-0", "role": "node", "vmSize": VM_SIZE}])

        [spec] = machine_nic_specs(scope)

        assert spec.public_lb_name == "cluster-public-lb"

    def test_overrides(self) -> None:
        scope = make_scope(
            machines=[
                {
                    "name": "node-0",
                    "role": "node",
                    "vmSize": VM_SIZE,
                    "nicName": "custom-nic",
                    "staticIPAddress": "10.1.0.10",
                    "publicIPName": "node-0-ip",
                    "acceleratedNetworking": True,
                }
            ]
        )

        [spec] = machine_nic_specs(scope)

        assert spec.name == "custom-nic"
        assert spec.static_ip_address == "10.1.0.10"
        assert spec.public_ip_name == "node-0-ip"
        assert spec.accelerated_networking is True

    def test_no_machines(self) -> None:
        assert machine_nic_specs(make_scope()) == []
