"""
nodescaler/telemetry/monitor.py
───────────────────────────────
FleetMonitor: one reconcile + probing round per tick → FleetSnapshot.

What one tick does
──────────────────
  1. Backoff gate. After a transient provider failure the monitor sits out
     ticks until its backoff deadline passes.
  2. list_nodes(tag). On failure: skip the tick, mutate nothing, log.
  3. LifecycleController.reconcile(listing). The controller owns Node
     objects; the monitor only hands it what the provider reported.
  4. Round gate. If the previous tick's probing round is still running,
     skip. At most one round is ever in flight, so a slow network cannot
     pile up concurrent probe fan-outs.
  5. Probe every node that has an address, concurrently. A failed probe is
     an ok=False sample, never an aborted round.
  6. Aggregate into a frozen FleetSnapshot.

Aggregation
───────────
    average_cpu = mean(cpu_percent for ok samples)     (None if no ok samples)
    ready_count = count(ok samples)

Nodes without an address are still provisioning; they appear in
snapshot.nodes (they count towards fleet size) but contribute no sample.

Backoff
───────
    delay(n) = min(backoff_initial_s * backoff_factor ** (n - 1), backoff_max_s)

where n is the number of consecutive transient failures. One successful
listing resets n to 0.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

import numpy as np

from nodescaler.cloud.client import CloudClient
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import ProviderError, TransientProviderError
from nodescaler.shared.models import FleetSnapshot, HealthSample, Node
from nodescaler.telemetry.prober import HealthProber

if TYPE_CHECKING:
    from nodescaler.control_plane.lifecycle import LifecycleController

logger = logging.getLogger(__name__)


class FleetMonitor:
    """
    Periodic fleet reconciliation and health aggregation.

    The monitor does not schedule itself. ScalerService calls tick() once per
    monitor interval and acts on the returned snapshot; None means "this
    tick was skipped, decide nothing".
    """

    def __init__(
        self,
        config: ScalerConfig,
        cloud: CloudClient,
        prober: HealthProber,
        lifecycle: "LifecycleController",
    ) -> None:
        self._config = config
        self._cloud = cloud
        self._prober = prober
        self._lifecycle = lifecycle

        self._round_in_flight: bool = False
        self._consecutive_failures: int = 0
        self._backoff_until: Optional[float] = None

        self._tick_count: int = 0
        self._skipped_ticks: int = 0
        self.last_snapshot: Optional[FleetSnapshot] = None

    # ── Public API ─────────────────────────────────────────────────────────────

    async def tick(self) -> Optional[FleetSnapshot]:
        """Run one monitor tick. Returns the new snapshot, or None if skipped."""
        self._tick_count += 1

        if self.in_backoff:
            self._skipped_ticks += 1
            logger.debug(
                "Tick %d skipped: provider backoff for another %.1fs",
                self._tick_count, self._backoff_until - time.monotonic(),
            )
            return None

        try:
            listing = await self._cloud.list_nodes(self._config.node_tag)
        except TransientProviderError as e:
            self._skipped_ticks += 1
            delay = self._enter_backoff()
            logger.warning(
                "Tick %d skipped: node listing failed (%s). Backing off %.1fs",
                self._tick_count, e, delay,
            )
            return None
        except ProviderError as e:
            self._skipped_ticks += 1
            logger.error("Tick %d skipped: provider rejected node listing: %s", self._tick_count, e)
            return None

        self._reset_backoff()
        self._lifecycle.reconcile(listing)

        if self._round_in_flight:
            self._skipped_ticks += 1
            logger.warning("Tick %d skipped: previous probing round still in flight", self._tick_count)
            return None

        self._round_in_flight = True
        try:
            snapshot = await self.probe_round()
        finally:
            self._round_in_flight = False

        self.last_snapshot = snapshot
        return snapshot

    async def probe_round(self) -> FleetSnapshot:
        """Probe every addressed node concurrently and aggregate the results."""
        nodes = self._lifecycle.ordered_nodes()
        addressed = [n for n in nodes if n.ip_address]

        results = await asyncio.gather(
            *(self._prober.probe(n.id, n.ip_address) for n in addressed),
            return_exceptions=True,
        )

        samples: Dict[str, HealthSample] = {}
        for node, result in zip(addressed, results):
            if isinstance(result, BaseException):
                # the prober contract says this cannot happen; count it as down
                logger.error("Probe of %s raised %r", node.id, result)
                result = HealthSample(node_id=node.id, ok=False, error=repr(result))
            samples[node.id] = result

        snapshot = build_snapshot(nodes, samples)
        logger.info(
            "Fleet: %d nodes, %d ready, avg CPU %s",
            snapshot.node_count,
            snapshot.ready_count,
            "unknown" if snapshot.average_cpu is None else f"{snapshot.average_cpu:.1f}%",
        )
        return snapshot

    # ── Backoff ────────────────────────────────────────────────────────────────

    @property
    def in_backoff(self) -> bool:
        return self._backoff_until is not None and time.monotonic() < self._backoff_until

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        delay = self._config.backoff_initial_s * self._config.backoff_factor ** (failures - 1)
        return min(delay, self._config.backoff_max_s)

    def _enter_backoff(self) -> float:
        self._consecutive_failures += 1
        delay = self.backoff_delay(self._consecutive_failures)
        self._backoff_until = time.monotonic() + delay
        return delay

    def _reset_backoff(self) -> None:
        if self._consecutive_failures:
            logger.info("Provider reachable again after %d failed listings", self._consecutive_failures)
        self._consecutive_failures = 0
        self._backoff_until = None

    # ── Introspection ──────────────────────────────────────────────────────────

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def round_in_flight(self) -> bool:
        return self._round_in_flight

    def __repr__(self) -> str:
        return (
            f"FleetMonitor(ticks={self._tick_count}, skipped={self._skipped_ticks}, "
            f"failures={self._consecutive_failures})"
        )


def build_snapshot(nodes: List[Node], samples: Dict[str, HealthSample]) -> FleetSnapshot:
    """
    Aggregate per-node samples into a FleetSnapshot.

    Nodes are copied so later lifecycle changes cannot leak into a snapshot
    that has already been handed to the decision engine.
    """
    ok_cpu = [s.cpu_percent for s in samples.values() if s.ok and s.cpu_percent is not None]
    average_cpu = float(np.mean(ok_cpu)) if ok_cpu else None
    return FleetSnapshot(
        nodes=[n.model_copy() for n in nodes],
        samples=dict(samples),
        average_cpu=average_cpu,
        ready_count=len(ok_cpu),
    )
