"""
tests/conftest.py
─────────────────
Shared fixtures: a scripted in-memory cloud and prober.

Both fakes append to one ordered event log:

    ("list", tag, t)  ("create", id, t)  ("destroy", id, t)
    ("membership", [ids], t)  ("probe", (id, ok), t)

so ordering properties (evict → grace → destroy, ready → swap) can be
asserted directly from the log. `t` is time.monotonic().
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from nodescaler.cloud.client import CloudClient
from nodescaler.control_plane.scaler_service import ScalerService
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import ProviderError, TransientProviderError
from nodescaler.shared.models import CloudNode, HealthSample, NodeSpec

Event = Tuple[str, Any, float]


class FakeCloudClient(CloudClient):
    """
    In-memory provider.

    Knobs:
        fail_list        → next N list_nodes() raise TransientProviderError
        fail_list_hard   → next N list_nodes() raise ProviderError
        fail_create      → next N create_node() raise ProviderError
        fail_membership  → next N set_balancer_membership() raise ProviderError
        lists_until_ip   → a new node gets its address after this many listings
    """

    def __init__(self, events: Optional[List[Event]] = None) -> None:
        self.events: List[Event] = events if events is not None else []
        self.nodes: Dict[str, CloudNode] = {}
        self.membership: List[str] = []
        self.created: List[str] = []
        self.destroyed: List[str] = []
        # destroy_node() calls made while the id was still a balancer member
        self.violations: List[str] = []

        self.fail_list = 0
        self.fail_list_hard = 0
        self.fail_create = 0
        self.fail_membership = 0
        self.lists_until_ip = 0
        self._pending_ip: Dict[str, int] = {}
        self._next_id = 100

    def _log(self, kind: str, payload: Any) -> None:
        self.events.append((kind, payload, time.monotonic()))

    def add_node(self, node_id: str, ip_address: Optional[str] = None) -> None:
        """Seed a node that existed before the scaler started."""
        self.nodes[node_id] = CloudNode(id=node_id, ip_address=ip_address or f"10.0.0.{node_id}", tags=["nodejs"])
        self.membership.append(node_id)

    async def list_nodes(self, tag: str) -> List[CloudNode]:
        self._log("list", tag)
        if self.fail_list:
            self.fail_list -= 1
            raise TransientProviderError("listing unavailable")
        if self.fail_list_hard:
            self.fail_list_hard -= 1
            raise ProviderError("forbidden", status=403)
        for node_id in list(self._pending_ip):
            self._pending_ip[node_id] -= 1
            if self._pending_ip[node_id] <= 0 and node_id in self.nodes:
                self.nodes[node_id].ip_address = f"10.1.0.{node_id}"
                del self._pending_ip[node_id]
        return [n.model_copy() for n in self.nodes.values() if tag in n.tags]

    async def create_node(self, spec: NodeSpec) -> CloudNode:
        if self.fail_create:
            self.fail_create -= 1
            raise ProviderError("quota exceeded", status=422)
        node_id = str(self._next_id)
        self._next_id += 1
        ip = None if self.lists_until_ip else f"10.1.0.{node_id}"
        if self.lists_until_ip:
            self._pending_ip[node_id] = self.lists_until_ip
        self.nodes[node_id] = CloudNode(id=node_id, ip_address=ip, tags=list(spec.tags))
        self.created.append(node_id)
        self._log("create", node_id)
        return CloudNode(id=node_id, tags=list(spec.tags))

    async def destroy_node(self, node_id: str) -> None:
        self._log("destroy", node_id)
        if node_id in self.membership:
            self.violations.append(node_id)
        self.nodes.pop(node_id, None)
        self.destroyed.append(node_id)

    async def set_balancer_membership(self, node_ids: Sequence[str]) -> None:
        self._log("membership", list(node_ids))
        if self.fail_membership:
            self.fail_membership -= 1
            raise ProviderError("load balancer busy", status=422)
        self.membership = list(node_ids)

    def index_of(self, kind: str, payload: Any) -> int:
        for i, (k, p, _) in enumerate(self.events):
            if k == kind and p == payload:
                return i
        raise AssertionError(f"no {kind} event with {payload!r} in {self.events}")

    def time_of(self, kind: str, payload: Any) -> float:
        return self.events[self.index_of(kind, payload)][2]

    def of_kind(self, kind: str) -> List[Any]:
        return [p for k, p, _ in self.events if k == kind]


class FakeProber:
    """
    Scripted HealthProber.

    cpu[node_id] sets a node's reading; ids in `down` always fail. Unknown
    ids read `default_cpu`.
    """

    def __init__(self, events: Optional[List[Event]] = None, default_cpu: float = 70.0) -> None:
        self.events: List[Event] = events if events is not None else []
        self.default_cpu = default_cpu
        self.cpu: Dict[str, float] = {}
        self.down: Set[str] = set()
        self.delay: float = 0.0
        self.calls: List[str] = []

    async def probe(self, node_id: str, ip_address: str) -> HealthSample:
        self.calls.append(node_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if node_id in self.down:
            sample = HealthSample(node_id=node_id, ok=False, error="connection refused")
        else:
            sample = HealthSample(node_id=node_id, cpu_percent=self.cpu.get(node_id, self.default_cpu), ok=True)
        self.events.append(("probe", (node_id, sample.ok), time.monotonic()))
        return sample

    async def close(self) -> None:
        return None


@pytest.fixture
def config() -> ScalerConfig:
    """Production semantics, millisecond timers."""
    return ScalerConfig(
        minimum_nodes=1,
        monitor_interval_s=0.01,
        grace_delay_s=0.05,
        readiness_timeout_s=0.1,
        provision_poll_interval_s=0.005,
        probe_timeout_s=0.05,
        backoff_initial_s=0.05,
        backoff_factor=2.0,
        backoff_max_s=0.2,
        provider_retry_delay_s=0.005,
        service_key="test-service-key",
    )


@pytest.fixture
def cloud() -> FakeCloudClient:
    return FakeCloudClient()


@pytest.fixture
def prober(cloud: FakeCloudClient) -> FakeProber:
    return FakeProber(cloud.events)


@pytest.fixture
def service(config: ScalerConfig, cloud: FakeCloudClient, prober: FakeProber) -> ScalerService:
    return ScalerService(config, cloud, prober=prober)


async def wait_for_idle(svc: ScalerService, timeout: float = 2.0) -> None:
    """Wait for every lifecycle background task to finish, bounded."""
    await asyncio.wait_for(svc.lifecycle.wait_idle(), timeout=timeout)


async def tick_until(svc: ScalerService, predicate, max_ticks: int = 200, pause: float = 0.01) -> None:
    """Drive ticks until predicate() holds."""
    for _ in range(max_ticks):
        if predicate():
            return
        await svc.tick()
        await asyncio.sleep(pause)
    raise AssertionError("condition not reached within tick budget")
