"""
nodescaler/control_plane/deployment.py
──────────────────────────────────────
DeploymentOrchestrator: zero-downtime replacement of the whole fleet.

How a deploy runs
─────────────────
DEPLOY_START (start()):
  1. Capture every IN_SERVICE node as the retiring cohort. The ids are kept
     in ControlState.pending_cohort_ids for the lifetime of the deploy.
  2. begin(DEPLOYING).
  3. Open one ReplacementSlot per retiring node and fill them all
     concurrently. Filling a slot = create a node and wait for it to pass a
     health probe. A ready replacement is *held*: it is not admitted to the
     balancer on its own.

DEPLOY_CONTINUE (advance(), once per tick while DEPLOYING):
  4. Not every slot ready → nothing to do yet.
  5. All slots ready → one set_balancer_membership(new cohort) call. The
     swap is atomic; there is never a moment where the balancer holds a mix
     chosen by us.
  6. New cohort → IN_SERVICE, old cohort → DRAINING.
  7. After grace_delay_s, destroy every old node, then finish(DEPLOYING).

Self-healing
────────────
A replacement that misses its readiness window is destroyed and its slot is
refilled with exactly one fresh node. A failed create_node() is retried
after provider_retry_delay_s. A failed swap is retried on the next tick.
A deploy never rolls back; it finishes or keeps healing.

There is no minimum_nodes check while replacing: a deploy is a one-for-one
swap, not a net change in fleet size.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from nodescaler.control_plane.lifecycle import LifecycleController
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import MembershipUpdateFailure, ProviderError, ReadinessTimeout
from nodescaler.shared.models import ControlMode, ControlState, Node

logger = logging.getLogger(__name__)


@dataclass
class ReplacementSlot:
    """
    One position in the new cohort.

    node         → the node currently filling the slot (None between attempts)
    attempts     → nodes created for this slot so far
    """
    index: int
    node: Optional[Node] = None
    attempts: int = 0

    @property
    def ready(self) -> bool:
        return self.node is not None and self.node.is_ready


class DeploymentOrchestrator:
    """
    Full-fleet replacement built on LifecycleController primitives.

    Usage (driven by ScalerService):
        orchestrator.start()            # on DEPLOY_START
        await orchestrator.advance()    # on every DEPLOY_CONTINUE
    """

    def __init__(
        self,
        config: ScalerConfig,
        lifecycle: LifecycleController,
        control_state: ControlState,
    ) -> None:
        self._config = config
        self._lifecycle = lifecycle
        self._state = control_state

        self.slots: List[ReplacementSlot] = []
        self._retiring_ids: List[str] = []
        self._swapping: bool = False
        self._swapped: bool = False
        self.deploys_completed: int = 0

    # ── Public API ─────────────────────────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self._state.mode == ControlMode.DEPLOYING

    @property
    def swapped(self) -> bool:
        return self._swapped

    def start(self) -> bool:
        """Begin a deploy. Returns False if another operation holds the mode."""
        if not self._state.is_idle:
            logger.warning("Deploy not started: %s in progress", self._state.mode.value)
            return False

        self._retiring_ids = [n.id for n in self._lifecycle.in_service()]
        self._state.begin(ControlMode.DEPLOYING, cohort_ids=self._retiring_ids)
        self._swapping = False
        self._swapped = False
        logger.info("DEPLOYING: replacing %d nodes %s", len(self._retiring_ids), self._retiring_ids)

        if not self._retiring_ids:
            logger.info("Nothing in service to replace; deploy finished")
            self._finish()
            return True

        self.slots = [ReplacementSlot(index=i) for i in range(len(self._retiring_ids))]
        for slot in self.slots:
            self._lifecycle.spawn(self._fill_slot(slot), name=f"deploy-slot-{slot.index}")
        return True

    def all_ready(self) -> bool:
        return bool(self.slots) and all(slot.ready for slot in self.slots)

    async def advance(self) -> None:
        """DEPLOY_CONTINUE: swap the balancer once every replacement is ready."""
        if not self.active or self._swapping or self._swapped:
            return

        if not self.all_ready():
            ready = sum(1 for s in self.slots if s.ready)
            logger.info("Deploy waiting: %d/%d replacements ready", ready, len(self.slots))
            return

        self._swapping = True
        new_nodes = [slot.node for slot in self.slots]
        try:
            await self._lifecycle.update_membership([n.id for n in new_nodes])
        except MembershipUpdateFailure as e:
            logger.error("Cohort swap failed, retrying next tick: %s", e)
            return
        finally:
            self._swapping = False

        old_nodes = [self._lifecycle.nodes[i] for i in self._retiring_ids if i in self._lifecycle.nodes]
        self._lifecycle.mark_in_service(new_nodes)
        self._lifecycle.mark_draining(old_nodes)
        self._swapped = True
        logger.info("REDIRECTED TRAFFIC to %s", [n.id for n in new_nodes])

        self._lifecycle.spawn(self._retire_cohort(old_nodes), name="deploy-retire")

    # ── Background work ────────────────────────────────────────────────────────

    async def _fill_slot(self, slot: ReplacementSlot) -> None:
        while True:
            try:
                node = await self._lifecycle.create_node()
            except ProviderError as e:
                logger.error(
                    "Replacement %d: create failed (%s); retrying in %.0fs",
                    slot.index, e, self._config.provider_retry_delay_s,
                )
                await asyncio.sleep(self._config.provider_retry_delay_s)
                continue

            slot.node = node
            slot.attempts += 1
            try:
                await self._lifecycle.await_ready(node)
                return
            except ReadinessTimeout as e:
                logger.warning("Replacement %d: %s; destroying and creating a fresh one", slot.index, e)
                slot.node = None
                await self._lifecycle.destroy(node)

    async def _retire_cohort(self, old_nodes: List[Node]) -> None:
        try:
            await asyncio.sleep(self._config.grace_delay_s)
            await asyncio.gather(*(self._lifecycle.destroy(n) for n in old_nodes))
            self.deploys_completed += 1
            logger.info("FULLY DEPLOYED: %d nodes replaced", len(self.slots))
        finally:
            self._finish()

    def _finish(self) -> None:
        self._retiring_ids = []
        self.slots = []
        self._state.finish(ControlMode.DEPLOYING)
