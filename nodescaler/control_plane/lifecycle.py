"""
nodescaler/control_plane/lifecycle.py
─────────────────────────────────────
LifecycleController: creates, admits, drains and destroys nodes.

This class is the only writer of Node objects and of the load balancer
membership. The DeploymentOrchestrator builds on its primitives
(create_node, await_ready, update_membership, destroy) rather than calling
the CloudClient itself.

Create path (SCALE_UP)
──────────────────────
    begin(SCALING_UP)
    create_node(spec)                         → PROVISIONING
    poll every provision_poll_interval_s until the node has an address
                                              → AWAITING_READY
    probe it directly (not via the monitor tick) until one sample is ok
    set_balancer_membership(current + node)   → IN_SERVICE
    finish(SCALING_UP)

  Readiness timeout: if no ok sample within readiness_timeout_s and the
  fleet has more than minimum_nodes members, destroy the node and go idle.
  At or below the floor the node is given another window instead, so a slow
  boot never leaves the fleet short.

Retire path (SCALE_DOWN)
────────────────────────
    begin(SCALING_DOWN)
    set_balancer_membership(current - node)   → DRAINING
    sleep(grace_delay_s)
    destroy_node(node)                        → TERMINATING → forgotten
    finish(SCALING_DOWN)

  If the membership call fails the retire is aborted: the node stays
  IN_SERVICE and the mode returns to IDLE. A node still receiving traffic is
  never destroyed; destroy() refuses any id in the current membership.

  A destroy that still fails after DESTROY_ATTEMPTS is parked as pending and
  retried from reconcile() on later ticks until the provider stops listing
  the node.

Adoption
────────
Listed nodes the scaler does not know about are adopted. Addressed ones
were serving before the scaler started and join membership as they are.
Unaddressed ones (typically a create whose response was lost) are tracked
as PROVISIONING and must pass the same readiness check as a new node before
they are admitted; if they never do, they are destroyed.

Concurrency
───────────
Every multi-tick operation runs as a tracked asyncio task (spawn()), so the
monitor tick is never blocked by a poll loop or a grace delay.
asyncio.wait_for() cancels the poll loop when the readiness window closes.
aclose() cancels whatever is still running at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, Iterable, List, Optional, Sequence, Set

from nodescaler.cloud.client import CloudClient
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import (
    InvalidTransitionError,
    MembershipUpdateFailure,
    ProviderError,
    ReadinessTimeout,
)
from nodescaler.shared.models import (
    CloudNode,
    ControlMode,
    ControlState,
    HealthSample,
    Node,
    NodeLifecycle,
    utcnow,
)
from nodescaler.telemetry.prober import HealthProber

logger = logging.getLogger(__name__)

# Attempts per destroy_node() before giving up and logging the leak
DESTROY_ATTEMPTS: int = 3

_LIVE_STATES = (
    NodeLifecycle.PROVISIONING,
    NodeLifecycle.AWAITING_READY,
    NodeLifecycle.IN_SERVICE,
)


class LifecycleController:
    """
    Owner of the fleet's Node records and balancer membership.

    Attributes:
        nodes:  node_id → Node, in the order the scaler first saw them.
    """

    def __init__(
        self,
        config: ScalerConfig,
        cloud: CloudClient,
        prober: HealthProber,
        control_state: ControlState,
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._prober = prober
        self._state = control_state

        self.nodes: Dict[str, Node] = {}
        self._membership: List[str] = []
        # ids we destroyed; the provider may keep listing them for a while
        self._forgotten: Set[str] = set()
        # ids whose destroy ran out of attempts, retried from reconcile()
        self._pending_destroy: Dict[str, Node] = {}
        self._destroying: Set[str] = set()
        self._adoptions: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ── Read-only views ────────────────────────────────────────────────────────

    @property
    def membership(self) -> List[str]:
        """Node ids last written to the load balancer."""
        return list(self._membership)

    def ordered_nodes(self) -> List[Node]:
        return list(self.nodes.values())

    def in_service(self) -> List[Node]:
        return [n for n in self.nodes.values() if n.lifecycle_state == NodeLifecycle.IN_SERVICE]

    def fleet_size(self) -> int:
        """Nodes that are, or are on their way to being, able to serve traffic."""
        return sum(1 for n in self.nodes.values() if n.lifecycle_state in _LIVE_STATES)

    @property
    def pending_destroys(self) -> List[str]:
        """Ids the provider still lists although destroying them failed."""
        return list(self._pending_destroy)

    # ── Reconciliation (called by the FleetMonitor every tick) ─────────────────

    def reconcile(self, listing: Iterable[CloudNode]) -> None:
        """
        Merge the provider's node listing into the tracked node set.

          - Unknown, addressed   → adopted as IN_SERVICE and assumed to be a
                                   balancer member (it was there before us).
          - Unknown, unaddressed → PROVISIONING, outside membership, and
                                   handed to an adoption task that admits it
                                   only after it passes a health check.
          - Known, new address   → address recorded.
          - IN_SERVICE node missing from the listing → forgotten; something
            outside the scaler removed it.
          - Pending destroy still listed → destroy retried; no longer
            listed → done.

        Nodes we are still provisioning may not be listed yet and are left
        alone, as are nodes already on their retirement path.
        """
        seen: Set[str] = set()
        for cloud_node in listing:
            seen.add(cloud_node.id)
            if cloud_node.id in self._forgotten or cloud_node.id in self._pending_destroy:
                continue
            node = self.nodes.get(cloud_node.id)
            if node is None:
                self._adopt(cloud_node)
            elif cloud_node.ip_address and node.ip_address != cloud_node.ip_address:
                node.ip_address = cloud_node.ip_address

        for node_id in [i for i, n in self.nodes.items()
                        if n.lifecycle_state == NodeLifecycle.IN_SERVICE and i not in seen]:
            logger.warning("Node %s disappeared from the provider listing; forgetting it", node_id)
            del self.nodes[node_id]
            if node_id in self._membership:
                self._membership.remove(node_id)

        # once the provider stops listing an id there is nothing left to ignore
        self._forgotten &= seen
        for node_id, node in list(self._pending_destroy.items()):
            if node_id not in seen:
                del self._pending_destroy[node_id]
                logger.info("NODE DESTROYED %s (no longer listed)", node_id)
            elif node_id not in self._destroying:
                self.spawn(self.destroy(node), name=f"destroy-{node_id}")

    def _adopt(self, cloud_node: CloudNode) -> None:
        if cloud_node.ip_address:
            now = utcnow()
            self.nodes[cloud_node.id] = Node(
                id=cloud_node.id,
                ip_address=cloud_node.ip_address,
                lifecycle_state=NodeLifecycle.IN_SERVICE,
                ready_at=now,
                admitted_at=now,
            )
            if cloud_node.id not in self._membership:
                self._membership.append(cloud_node.id)
            logger.info("Adopted existing node %s (%s)", cloud_node.id, cloud_node.ip_address)
            return

        node = Node(id=cloud_node.id)
        self.nodes[node.id] = node
        logger.warning("Found unaddressed node %s; admitting it only once it passes a health check", node.id)
        self._adoptions[node.id] = self.spawn(self._run_adopt(node), name=f"adopt-{node.id}")

    # ── Scale operations (entry points for decisions) ──────────────────────────

    def scale_up(self) -> bool:
        """Start the create path in the background. Returns False if not idle."""
        if not self._state.is_idle:
            logger.warning("Scale up ignored: %s in progress", self._state.mode.value)
            return False
        self._state.begin(ControlMode.SCALING_UP)
        logger.info("UPSCALING: fleet of %d, adding one node", self.fleet_size())
        self.spawn(self._run_scale_up(), name="scale-up")
        return True

    def scale_down(self, node_id: Optional[str] = None) -> bool:
        """
        Start the retire path for one node in the background.

        Without node_id the most recently admitted IN_SERVICE node is chosen
        (ties go to the node seen last). Returns False when nothing was started.
        """
        if not self._state.is_idle:
            logger.warning("Scale down ignored: %s in progress", self._state.mode.value)
            return False

        node = self.nodes.get(node_id) if node_id else self.select_retiree()
        if node is None or node.lifecycle_state != NodeLifecycle.IN_SERVICE:
            logger.warning("Scale down ignored: no in-service node to retire")
            return False

        self._state.begin(ControlMode.SCALING_DOWN)
        logger.info("DOWNSCALING: retiring node %s", node.id)
        self.spawn(self._run_retire(node), name=f"retire-{node.id}")
        return True

    def select_retiree(self) -> Optional[Node]:
        candidates = self.in_service()
        if not candidates:
            return None
        # sorted() is stable, so the last of equal admitted_at values wins
        return sorted(candidates, key=lambda n: n.admitted_at or n.created_at)[-1]

    async def _run_scale_up(self) -> None:
        try:
            try:
                node = await self.create_node()
            except ProviderError as e:
                logger.error("ERROR CREATING NODE: %s", e)
                return

            while True:
                try:
                    await self.await_ready(node)
                    break
                except ReadinessTimeout as e:
                    if self.fleet_size() > self._config.minimum_nodes:
                        logger.warning("%s; destroying it", e)
                        await self.destroy(node)
                        return
                    logger.warning("%s, but the fleet is at its floor; waiting another window", e)

            await self._admit(node)
        finally:
            self._state.finish(ControlMode.SCALING_UP)

    async def _run_adopt(self, node: Node) -> None:
        """Readiness check for an unaddressed stranger, then admission under SCALING_UP."""
        try:
            try:
                await self.await_ready(node)
            except ReadinessTimeout as e:
                logger.warning("%s; destroying unadmitted node", e)
                await self.destroy(node)
                return

            while not self._state.is_idle:
                await asyncio.sleep(self._config.provision_poll_interval_s)
            self._state.begin(ControlMode.SCALING_UP)
            try:
                await self._admit(node)
            finally:
                self._state.finish(ControlMode.SCALING_UP)
        finally:
            self._adoptions.pop(node.id, None)

    async def _admit(self, node: Node) -> bool:
        try:
            await self.update_membership(self._membership + [node.id])
        except MembershipUpdateFailure as e:
            logger.error("Could not admit node %s (%s); destroying it", node.id, e)
            await self.destroy(node)
            return False
        self.mark_in_service([node])
        logger.info("Node %s admitted to the load balancer", node.id)
        return True

    async def _run_retire(self, node: Node) -> None:
        try:
            remaining = [i for i in self._membership if i != node.id]
            try:
                await self.update_membership(remaining)
            except MembershipUpdateFailure as e:
                logger.error("Retire of %s aborted, node stays in service: %s", node.id, e)
                return

            node.lifecycle_state = NodeLifecycle.DRAINING
            logger.info("Node %s draining; destroying in %.0fs", node.id, self._config.grace_delay_s)
            await asyncio.sleep(self._config.grace_delay_s)
            await self.destroy(node)
        finally:
            self._state.finish(ControlMode.SCALING_DOWN)

    # ── Primitives (shared with the DeploymentOrchestrator) ────────────────────

    async def create_node(self) -> Node:
        """
        Ask the provider for one node built from the fleet's NodeSpec.

        Raises:
            ProviderError: quota, validation or transient provider failure.
        """
        cloud_node = await self._cloud.create_node(self._config.node_spec)
        # a listing may have raced the create response and adopted it early
        adoption = self._adoptions.pop(cloud_node.id, None)
        if adoption is not None:
            adoption.cancel()
        if cloud_node.id in self._membership:
            self._membership.remove(cloud_node.id)
        node = Node(id=cloud_node.id, ip_address=cloud_node.ip_address)
        self.nodes[node.id] = node
        logger.info("Created node %s; waiting for it to become ready", node.id)
        return node

    async def await_ready(self, node: Node) -> HealthSample:
        """
        Poll `node` until it returns an ok health sample.

        Raises:
            ReadinessTimeout: no ok sample within readiness_timeout_s.
        """
        timeout = self._config.readiness_timeout_s
        try:
            return await asyncio.wait_for(self._poll_until_ready(node), timeout=timeout)
        except asyncio.TimeoutError:
            raise ReadinessTimeout(node.id, timeout) from None

    async def _poll_until_ready(self, node: Node) -> HealthSample:
        while True:
            if node.ip_address is None:
                await self._refresh_address(node)

            if node.ip_address is not None:
                if node.lifecycle_state == NodeLifecycle.PROVISIONING:
                    node.lifecycle_state = NodeLifecycle.AWAITING_READY
                    logger.info("Node %s has address %s", node.id, node.ip_address)
                sample = await self._prober.probe(node.id, node.ip_address)
                if sample.ok:
                    node.ready_at = sample.sampled_at
                    logger.info("Node %s is ready (cpu %.1f%%)", node.id, sample.cpu_percent)
                    return sample

            await asyncio.sleep(self._config.provision_poll_interval_s)

    async def _refresh_address(self, node: Node) -> None:
        try:
            listing = await self._cloud.list_nodes(self._config.node_tag)
        except ProviderError as e:
            logger.debug("Address lookup for %s failed: %s", node.id, e)
            return
        for cloud_node in listing:
            if cloud_node.id == node.id and cloud_node.ip_address:
                node.ip_address = cloud_node.ip_address
                return

    async def update_membership(self, node_ids: Sequence[str]) -> None:
        """
        Replace the balancer membership with exactly `node_ids`.

        Raises:
            MembershipUpdateFailure: the provider call failed. The recorded
                                     membership is left unchanged.
        """
        ids = list(dict.fromkeys(node_ids))
        try:
            await self._cloud.set_balancer_membership(ids)
        except ProviderError as e:
            raise MembershipUpdateFailure(f"load balancer update failed: {e}") from e
        self._membership = ids
        logger.info("UPDATED LOAD BALANCER: %s", ids)

    def mark_in_service(self, nodes: Iterable[Node]) -> None:
        now = utcnow()
        for node in nodes:
            node.lifecycle_state = NodeLifecycle.IN_SERVICE
            node.admitted_at = now

    def mark_draining(self, nodes: Iterable[Node]) -> None:
        for node in nodes:
            node.lifecycle_state = NodeLifecycle.DRAINING

    async def destroy(self, node: Node) -> None:
        """
        Destroy `node` at the provider and forget it.

        Retries up to DESTROY_ATTEMPTS times. A node that is already gone is
        fine (destroy_node is idempotent). If every attempt fails the node
        leaves the fleet anyway and is parked as a pending destroy, which
        reconcile() retries on later ticks.

        Raises:
            InvalidTransitionError: the node is still a balancer member.
        """
        if node.id in self._membership:
            raise InvalidTransitionError(
                f"refusing to destroy node {node.id}: still in load balancer membership"
            )
        node.lifecycle_state = NodeLifecycle.TERMINATING

        self._destroying.add(node.id)
        try:
            destroyed = await self._delete_with_retries(node.id)
        finally:
            self._destroying.discard(node.id)

        self.nodes.pop(node.id, None)
        if destroyed:
            self._pending_destroy.pop(node.id, None)
            self._forgotten.add(node.id)
            logger.info("NODE DESTROYED %s", node.id)
        else:
            self._pending_destroy[node.id] = node
            logger.error("Node %s still exists; retrying the destroy on a later tick", node.id)

    async def _delete_with_retries(self, node_id: str) -> bool:
        for attempt in range(1, DESTROY_ATTEMPTS + 1):
            try:
                await self._cloud.destroy_node(node_id)
                return True
            except ProviderError as e:
                logger.warning("Destroy of node %s failed (attempt %d/%d): %s", node_id, attempt, DESTROY_ATTEMPTS, e)
                if attempt < DESTROY_ATTEMPTS:
                    await asyncio.sleep(self._config.provider_retry_delay_s)
        return False

    # ── Background tasks ───────────────────────────────────────────────────────

    def spawn(self, coro: Coroutine[Any, Any, None], name: Optional[str] = None) -> asyncio.Task:
        """Run `coro` as a tracked background task."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every background task (including ones they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel all background work. Used at shutdown."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
