"""
nodescaler/control_plane/scaler_service.py
──────────────────────────────────────────
ScalerService: the control loop that ties every component together.

    ┌──────────── every monitor_interval_s ────────────┐
    │ FleetMonitor.tick() → FleetSnapshot              │
    │ decide(snapshot, control_state, config, flag)    │
    │   SCALE_UP        → LifecycleController.scale_up │
    │   SCALE_DOWN      → LifecycleController.scale_down
    │   DEPLOY_START    → DeploymentOrchestrator.start │
    │   DEPLOY_CONTINUE → DeploymentOrchestrator.advance
    └──────────────────────────────────────────────────┘

Ownership
─────────
The service owns the single ControlState and the deploy-request flag. It
never changes the mode itself; the LifecycleController and
DeploymentOrchestrator do, under the begin()/finish() rules.

Failure policy
──────────────
Nothing terminates the loop. Each tick runs as its own task; an unexpected
exception is logged with its traceback and the next tick fires on schedule.
A provider that is unreachable at startup is just a run of skipped ticks.

Thread safety
─────────────
Not thread-safe. Everything runs on one asyncio event loop. The only way in
from outside is request_deploy(), which just sets a flag.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Optional, Set

from nodescaler.cloud.client import CloudClient
from nodescaler.control_plane.decision_engine import decide
from nodescaler.control_plane.deployment import DeploymentOrchestrator
from nodescaler.control_plane.lifecycle import LifecycleController
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.models import ControlState, Decision, FleetSnapshot
from nodescaler.telemetry.monitor import FleetMonitor
from nodescaler.telemetry.prober import HealthProber

logger = logging.getLogger(__name__)


class ScalerService:
    """
    Elastic fleet controller: autoscaling plus on-demand full redeploys.

    Public API:
        request_deploy()   → bool                (deploy trigger)
        tick()             → Decision            (one control iteration)
        run(max_ticks)     → None                (scheduler loop)
        stop()             → None                (ask run() to return)
        aclose()           → None                (cancel background work)
        get_status()       → Dict                (read-only view)
    """

    def __init__(
        self,
        config: ScalerConfig,
        cloud: CloudClient,
        prober: Optional[HealthProber] = None,
    ) -> None:
        self.config = config
        self.cloud = cloud
        self.prober = prober or HealthProber(config)

        self.control_state = ControlState()
        self.lifecycle = LifecycleController(config, cloud, self.prober, self.control_state)
        self.deployment = DeploymentOrchestrator(config, self.lifecycle, self.control_state)
        self.monitor = FleetMonitor(config, cloud, self.prober, self.lifecycle)

        self._deploy_requested: bool = False
        self._tick_tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None

        self.last_decision: Decision = Decision.NONE
        self.decision_counts: Counter = Counter()

    # ── Deploy trigger ─────────────────────────────────────────────────────────

    def request_deploy(self) -> bool:
        """
        Ask for a full-fleet redeploy on the next idle tick.

        Repeated requests before the deploy starts collapse into one. The
        caller only learns that the request was accepted, never the outcome.
        """
        self._deploy_requested = True
        logger.info("Deploy requested")
        return True

    @property
    def deploy_requested(self) -> bool:
        return self._deploy_requested

    # ── Control iteration ──────────────────────────────────────────────────────

    async def tick(self) -> Decision:
        """Run one monitor tick and act on its decision."""
        snapshot = await self.monitor.tick()
        if snapshot is None:
            return Decision.NONE

        decision = decide(snapshot, self.control_state, self.config, self._deploy_requested)
        self.last_decision = decision
        self.decision_counts[decision.value] += 1
        await self.apply(decision, snapshot)
        return decision

    async def apply(self, decision: Decision, snapshot: FleetSnapshot) -> None:
        if decision == Decision.SCALE_UP:
            logger.info(
                "Scale up: %d nodes, avg CPU %s, floor %d",
                snapshot.node_count, snapshot.average_cpu, self.config.minimum_nodes,
            )
            self.lifecycle.scale_up()
        elif decision == Decision.SCALE_DOWN:
            logger.info("Scale down: %d nodes, avg CPU %.1f", snapshot.node_count, snapshot.average_cpu)
            self.lifecycle.scale_down()
        elif decision == Decision.DEPLOY_START:
            if self.deployment.start():
                self._deploy_requested = False
        elif decision == Decision.DEPLOY_CONTINUE:
            await self.deployment.advance()

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Unexpected error in control tick %d", self.monitor.tick_count)

    # ── Scheduler loop ─────────────────────────────────────────────────────────

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """
        Fire a tick every monitor_interval_s until stop() or max_ticks.

        Each tick is started as its own task, so a slow provider call never
        delays the next deadline. Overlapping probing rounds are prevented by
        the FleetMonitor, not here.
        """
        self._stop_event = asyncio.Event()
        interval = self.config.monitor_interval_s
        logger.info(
            "INITIALIZING NODE SCALER WITH %d MINIMUM NODES (interval %.0fs, cpu %.0f–%.0f%%)",
            self.config.minimum_nodes, interval,
            self.config.cpu_lower_threshold, self.config.cpu_upper_threshold,
        )

        loop = asyncio.get_running_loop()
        next_deadline = loop.time()
        fired = 0
        while not self._stop_event.is_set():
            task = asyncio.create_task(self._safe_tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            fired += 1
            if max_ticks is not None and fired >= max_ticks:
                break

            next_deadline += interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, next_deadline - loop.time()))
            except asyncio.TimeoutError:
                pass

        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def aclose(self) -> None:
        """Stop the loop and cancel in-flight ticks, polls and grace delays."""
        self.stop()
        for task in list(self._tick_tasks):
            task.cancel()
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        await self.lifecycle.aclose()
        await self.prober.close()
        await self.cloud.close()

    # ── Introspection ──────────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        """Read-only view of the fleet for operators and the CLI."""
        snapshot = self.monitor.last_snapshot
        return {
            "mode": self.control_state.mode.value,
            "pending_cohort_ids": list(self.control_state.pending_cohort_ids),
            "last_transition_at": self.control_state.last_transition_at.isoformat(),
            "deploy_requested": self._deploy_requested,
            "nodes": [
                {"id": n.id, "ip_address": n.ip_address, "state": n.lifecycle_state.value}
                for n in self.lifecycle.ordered_nodes()
            ],
            "membership": self.lifecycle.membership,
            "average_cpu": snapshot.average_cpu if snapshot else None,
            "ready_count": snapshot.ready_count if snapshot else 0,
            "ticks": self.monitor.tick_count,
            "skipped_ticks": self.monitor.skipped_ticks,
            "last_decision": self.last_decision.value,
            "decisions": dict(self.decision_counts),
            "deploys_completed": self.deployment.deploys_completed,
        }
