"""
tests/test_lifecycle.py
───────────────────────
LifecycleController: create/admit, retire, destroy, reconcile.

Test groups:
    Group 1 — Scale up (create → ready → admit)
    Group 2 — Scale down (evict → grace → destroy)
    Group 3 — destroy() and retiree selection
    Group 4 — reconcile() against the provider listing
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeCloudClient, FakeProber, wait_for_idle

from nodescaler.control_plane.lifecycle import DESTROY_ATTEMPTS
from nodescaler.control_plane.scaler_service import ScalerService
from nodescaler.shared.errors import InvalidTransitionError, ProviderError
from nodescaler.shared.models import CloudNode, ControlMode, Node, NodeLifecycle, utcnow


async def _seed(service: ScalerService, cloud: FakeCloudClient, *ids: str) -> None:
    for node_id in ids:
        cloud.add_node(node_id)
    await service.monitor.tick()


class FlakyDestroyCloud(FakeCloudClient):
    """destroy_node() fails for the first `fail_destroy` calls."""

    def __init__(self, fail_destroy: int) -> None:
        super().__init__()
        self.fail_destroy = fail_destroy
        self.destroy_calls = 0

    async def destroy_node(self, node_id: str) -> None:
        self.destroy_calls += 1
        if self.fail_destroy:
            self.fail_destroy -= 1
            raise ProviderError("droplet locked", status=422)
        await super().destroy_node(node_id)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Scale up
# ─────────────────────────────────────────────────────────────────────────────

class TestScaleUp:
    @pytest.mark.asyncio
    async def test_admits_only_after_ok_probe(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1")
        lifecycle = service.lifecycle

        assert lifecycle.scale_up()
        assert service.control_state.mode == ControlMode.SCALING_UP
        await wait_for_idle(service)

        assert service.control_state.is_idle
        assert lifecycle.membership == ["1", "100"]
        assert cloud.membership == ["1", "100"]
        node = lifecycle.nodes["100"]
        assert node.lifecycle_state == NodeLifecycle.IN_SERVICE
        assert node.ready_at is not None and node.admitted_at is not None
        assert cloud.index_of("probe", ("100", True)) < cloud.index_of("membership", ["1", "100"])

    @pytest.mark.asyncio
    async def test_waits_for_address(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        cloud.lists_until_ip = 3

        assert service.lifecycle.scale_up()
        await wait_for_idle(service)

        assert service.lifecycle.nodes["100"].ip_address == "10.1.0.100"
        assert len(cloud.of_kind("list")) >= 3
        assert service.lifecycle.membership == ["100"]

    @pytest.mark.asyncio
    async def test_timeout_above_floor_destroys_node(
        self, service: ScalerService, cloud: FakeCloudClient, prober: FakeProber
    ) -> None:
        await _seed(service, cloud, "1")
        prober.down.add("100")

        service.lifecycle.scale_up()
        await wait_for_idle(service)

        assert cloud.destroyed == ["100"]
        assert "100" not in service.lifecycle.nodes
        assert service.lifecycle.membership == ["1"]
        assert service.control_state.is_idle
        assert cloud.violations == []

    @pytest.mark.asyncio
    async def test_timeout_at_floor_keeps_waiting(
        self, service: ScalerService, cloud: FakeCloudClient, prober: FakeProber
    ) -> None:
        """The only node of a fleet at its floor is never given up on."""
        prober.down.add("100")

        service.lifecycle.scale_up()
        await asyncio.sleep(service.config.readiness_timeout_s * 2.5)
        assert cloud.destroyed == []
        assert service.control_state.mode == ControlMode.SCALING_UP

        prober.down.clear()
        await wait_for_idle(service)
        assert service.lifecycle.membership == ["100"]
        assert service.control_state.is_idle

    @pytest.mark.asyncio
    async def test_create_failure_returns_to_idle(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1")
        cloud.fail_create = 1

        service.lifecycle.scale_up()
        await wait_for_idle(service)

        assert cloud.created == []
        assert service.lifecycle.membership == ["1"]
        assert service.control_state.is_idle

    @pytest.mark.asyncio
    async def test_admission_failure_destroys_node(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1")
        cloud.fail_membership = 1

        service.lifecycle.scale_up()
        await wait_for_idle(service)

        assert cloud.destroyed == ["100"]
        assert cloud.membership == ["1"]
        assert service.lifecycle.membership == ["1"]
        assert cloud.violations == []
        assert service.control_state.is_idle


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Scale down
# ─────────────────────────────────────────────────────────────────────────────

class TestScaleDown:
    @pytest.mark.asyncio
    async def test_evict_then_grace_then_destroy(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1", "2")

        assert service.lifecycle.scale_down("2")
        assert service.control_state.mode == ControlMode.SCALING_DOWN
        await asyncio.sleep(0.01)
        assert service.lifecycle.nodes["2"].lifecycle_state == NodeLifecycle.DRAINING

        await wait_for_idle(service)

        assert cloud.membership == ["1"]
        assert cloud.destroyed == ["2"]
        assert cloud.index_of("membership", ["1"]) < cloud.index_of("destroy", "2")
        gap = cloud.time_of("destroy", "2") - cloud.time_of("membership", ["1"])
        assert gap >= service.config.grace_delay_s * 0.9
        assert "2" not in service.lifecycle.nodes
        assert cloud.violations == []
        assert service.control_state.is_idle

    @pytest.mark.asyncio
    async def test_membership_failure_aborts_retire(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1", "2")
        cloud.fail_membership = 1

        service.lifecycle.scale_down("2")
        await wait_for_idle(service)

        assert cloud.destroyed == []
        assert service.lifecycle.nodes["2"].lifecycle_state == NodeLifecycle.IN_SERVICE
        assert service.lifecycle.membership == ["1", "2"]
        assert service.control_state.is_idle

    def test_nothing_in_service(self, service: ScalerService) -> None:
        assert not service.lifecycle.scale_down()
        assert service.control_state.is_idle

    def test_refused_while_another_operation_runs(self, service: ScalerService) -> None:
        service.lifecycle.nodes["1"] = Node(id="1", lifecycle_state=NodeLifecycle.IN_SERVICE)
        service.control_state.begin(ControlMode.DEPLOYING)

        assert not service.lifecycle.scale_up()
        assert not service.lifecycle.scale_down()
        assert service.control_state.mode == ControlMode.DEPLOYING
        assert service.lifecycle.pending_tasks == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — destroy() and retiree selection
# ─────────────────────────────────────────────────────────────────────────────

class TestDestroy:
    @pytest.mark.asyncio
    async def test_refuses_balancer_member(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        await _seed(service, cloud, "1")

        with pytest.raises(InvalidTransitionError):
            await service.lifecycle.destroy(service.lifecycle.nodes["1"])
        assert cloud.destroyed == []
        assert service.lifecycle.nodes["1"].lifecycle_state == NodeLifecycle.IN_SERVICE

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, config, prober: FakeProber) -> None:
        cloud = FlakyDestroyCloud(fail_destroy=DESTROY_ATTEMPTS - 1)
        service = ScalerService(config, cloud, prober=prober)
        node = Node(id="5", lifecycle_state=NodeLifecycle.DRAINING)
        service.lifecycle.nodes["5"] = node

        await service.lifecycle.destroy(node)

        assert cloud.destroy_calls == DESTROY_ATTEMPTS
        assert cloud.destroyed == ["5"]
        assert "5" not in service.lifecycle.nodes

    @pytest.mark.asyncio
    async def test_destroyed_node_not_readopted(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        """The provider may list a deleted droplet for a while."""
        node = Node(id="5", ip_address="10.0.0.5", lifecycle_state=NodeLifecycle.DRAINING)
        service.lifecycle.nodes["5"] = node
        await service.lifecycle.destroy(node)

        service.lifecycle.reconcile([CloudNode(id="5", ip_address="10.0.0.5")])
        assert "5" not in service.lifecycle.nodes
        assert service.lifecycle.membership == []

    @pytest.mark.asyncio
    async def test_exhausted_destroy_retried_on_later_tick(self, config, prober: FakeProber) -> None:
        """A droplet that outlives every attempt is not leaked."""
        cloud = FlakyDestroyCloud(fail_destroy=DESTROY_ATTEMPTS)
        service = ScalerService(config, cloud, prober=prober)
        await _seed(service, cloud, "1", "2")

        service.lifecycle.scale_down("2")
        await wait_for_idle(service)

        assert cloud.destroy_calls == DESTROY_ATTEMPTS
        assert "2" in cloud.nodes
        assert "2" not in service.lifecycle.nodes
        assert service.lifecycle.pending_destroys == ["2"]
        assert service.control_state.is_idle

        await service.monitor.tick()
        await wait_for_idle(service)

        assert cloud.destroy_calls == DESTROY_ATTEMPTS + 1
        assert cloud.destroyed == ["2"]
        assert service.lifecycle.pending_destroys == []
        assert "2" not in service.lifecycle.nodes
        assert service.lifecycle.membership == ["1"]
        assert cloud.violations == []

    @pytest.mark.asyncio
    async def test_pending_destroy_not_readopted(self, config, prober: FakeProber) -> None:
        cloud = FlakyDestroyCloud(fail_destroy=DESTROY_ATTEMPTS * 2)
        service = ScalerService(config, cloud, prober=prober)
        node = Node(id="5", ip_address="10.0.0.5", lifecycle_state=NodeLifecycle.DRAINING)
        service.lifecycle.nodes["5"] = node
        cloud.nodes["5"] = CloudNode(id="5", ip_address="10.0.0.5", tags=["nodejs"])

        await service.lifecycle.destroy(node)
        await service.monitor.tick()

        assert "5" not in service.lifecycle.nodes
        assert service.lifecycle.membership == []
        assert service.lifecycle.pending_destroys == ["5"]
        await wait_for_idle(service)

    @pytest.mark.asyncio
    async def test_forgotten_ids_dropped_once_unlisted(self, service: ScalerService, cloud: FakeCloudClient) -> None:
        node = Node(id="5", ip_address="10.0.0.5", lifecycle_state=NodeLifecycle.DRAINING)
        service.lifecycle.nodes["5"] = node
        await service.lifecycle.destroy(node)
        assert "5" in service.lifecycle._forgotten

        await service.monitor.tick()
        assert "5" not in service.lifecycle._forgotten

    def test_most_recently_admitted_is_retired(self, service: ScalerService) -> None:
        now = utcnow()
        lifecycle = service.lifecycle
        for node_id, age_s in (("1", 30), ("2", 5), ("3", 60)):
            lifecycle.nodes[node_id] = Node(
                id=node_id,
                lifecycle_state=NodeLifecycle.IN_SERVICE,
                admitted_at=now - timedelta(seconds=age_s),
            )
        lifecycle.nodes["4"] = Node(id="4", lifecycle_state=NodeLifecycle.AWAITING_READY)

        assert lifecycle.select_retiree().id == "2"

    def test_ties_go_to_last_seen(self, service: ScalerService) -> None:
        now = utcnow()
        for node_id in ("1", "2", "3"):
            service.lifecycle.nodes[node_id] = Node(
                id=node_id, lifecycle_state=NodeLifecycle.IN_SERVICE, admitted_at=now
            )
        assert service.lifecycle.select_retiree().id == "3"


# ─────────────────────────────────────────────────────────────────────────────
# Group 4 — reconcile()
# ─────────────────────────────────────────────────────────────────────────────

class TestReconcile:
    def test_unknown_node_adopted_as_member(self, service: ScalerService) -> None:
        service.lifecycle.reconcile([CloudNode(id="5", ip_address="10.0.0.5")])

        node = service.lifecycle.nodes["5"]
        assert node.lifecycle_state == NodeLifecycle.IN_SERVICE
        assert node.is_ready
        assert service.lifecycle.membership == ["5"]

    def test_vanished_in_service_node_forgotten(self, service: ScalerService) -> None:
        service.lifecycle.reconcile([CloudNode(id="5", ip_address="10.0.0.5")])
        service.lifecycle.reconcile([])

        assert service.lifecycle.nodes == {}
        assert service.lifecycle.membership == []

    def test_provisioning_node_kept_and_addressed(self, service: ScalerService) -> None:
        service.lifecycle.nodes["7"] = Node(id="7")

        service.lifecycle.reconcile([])
        assert "7" in service.lifecycle.nodes

        service.lifecycle.reconcile([CloudNode(id="7", ip_address="10.1.0.7")])
        node = service.lifecycle.nodes["7"]
        assert node.ip_address == "10.1.0.7"
        assert node.lifecycle_state == NodeLifecycle.PROVISIONING
        assert service.lifecycle.membership == []

    @pytest.mark.asyncio
    async def test_unaddressed_stranger_kept_out_of_balancer(
        self, service: ScalerService, cloud: FakeCloudClient
    ) -> None:
        """A listed node with no address is checked before it serves traffic."""
        await _seed(service, cloud, "1")
        cloud.nodes["9"] = CloudNode(id="9", ip_address=None, tags=["nodejs"])

        await service.monitor.tick()
        assert service.lifecycle.nodes["9"].lifecycle_state == NodeLifecycle.PROVISIONING
        assert service.lifecycle.membership == ["1"]

        service.lifecycle.scale_up()
        await asyncio.sleep(0.02)
        assert cloud.membership == ["1", "100"]
        assert service.lifecycle.nodes["9"].lifecycle_state != NodeLifecycle.IN_SERVICE

        cloud.nodes["9"].ip_address = "10.0.0.9"
        await wait_for_idle(service)

        assert cloud.membership == ["1", "100", "9"]
        assert service.lifecycle.nodes["9"].lifecycle_state == NodeLifecycle.IN_SERVICE
        assert cloud.index_of("probe", ("9", True)) < cloud.index_of("membership", ["1", "100", "9"])
        assert service.control_state.is_idle

    @pytest.mark.asyncio
    async def test_unaddressed_stranger_destroyed_if_never_ready(
        self, service: ScalerService, cloud: FakeCloudClient
    ) -> None:
        await _seed(service, cloud, "1")
        cloud.nodes["9"] = CloudNode(id="9", ip_address=None, tags=["nodejs"])

        await service.monitor.tick()
        await wait_for_idle(service)

        assert cloud.destroyed == ["9"]
        assert "9" not in service.lifecycle.nodes
        assert all("9" not in ids for ids in cloud.of_kind("membership"))
        assert service.lifecycle.membership == ["1"]

    def test_fleet_size_counts_live_states(self, service: ScalerService) -> None:
        lifecycle = service.lifecycle
        states = [
            NodeLifecycle.PROVISIONING,
            NodeLifecycle.AWAITING_READY,
            NodeLifecycle.IN_SERVICE,
            NodeLifecycle.DRAINING,
            NodeLifecycle.TERMINATING,
        ]
        for i, state in enumerate(states):
            lifecycle.nodes[str(i)] = Node(id=str(i), lifecycle_state=state)
        assert lifecycle.fleet_size() == 3
