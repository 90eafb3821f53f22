"""
nodescaler/shared/models.py
───────────────────────────
The single source of truth for every data structure in the node scaler.

Design philosophy
-----------------
Every model answers one question: "What does the control loop *need to know*
about this thing in order to decide whether to grow, shrink or replace the
fleet?"

Ownership
---------
  Node          → written only by the LifecycleController. Everyone else reads.
  HealthSample  → produced by the HealthProber, consumed within one tick.
  FleetSnapshot → rebuilt by the FleetMonitor every tick. Frozen.
  ControlState  → one instance per ScalerService. Mutated only through
                  begin() / finish(), which enforce the single-operation rule.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from nodescaler.shared.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware UTC now. Every timestamp in the scaler comes from here."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class NodeLifecycle(str, Enum):
    """
    Lifecycle of one node, from the scaler's point of view.

    PROVISIONING   → create_node() returned an id. No network address yet.
    AWAITING_READY → Has an address. Waiting for a passing health sample.
    IN_SERVICE     → Member of the load balancer. Receiving traffic.
    DRAINING       → Removed from the balancer. Grace delay running.
    TERMINATING    → destroy_node() has been (or is being) called.

    Transitions only move forward. A node is never resurrected.
    """
    PROVISIONING = "provisioning"
    AWAITING_READY = "awaiting-ready"
    IN_SERVICE = "in-service"
    DRAINING = "draining"
    TERMINATING = "terminating"


class ControlMode(str, Enum):
    """
    The fleet-wide operation currently in progress.

    At most one non-IDLE mode is active at any time. A mode is held across
    many ticks: from the moment a scale/deploy starts until its last node
    has been admitted or destroyed.
    """
    IDLE = "idle"
    SCALING_UP = "scaling-up"
    SCALING_DOWN = "scaling-down"
    DEPLOYING = "deploying"


class Decision(str, Enum):
    """Output of the decision engine. At most one per tick."""
    NONE = "none"
    SCALE_UP = "scale-up"
    SCALE_DOWN = "scale-down"
    DEPLOY_START = "deploy-start"
    DEPLOY_CONTINUE = "deploy-continue"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: PROVIDER-FACING MODELS
# What the cloud API tells us, and what we send it.
# ─────────────────────────────────────────────────────────────────────────────

class CloudNode(BaseModel):
    """
    A node as the cloud provider reports it.

    ip_address is None while the provider is still assigning networking,
    which for a fresh node can take tens of seconds.
    """
    id: str
    ip_address: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class NodeSpec(BaseModel):
    """
    The fixed template every new node is created from.

    Defaults reproduce the droplet template the fleet has always used: a
    small image that boots nginx, pulls the app repo and starts the server
    from cloud-init.
    """
    name: str = "cue-node"
    region: str = "sfo2"
    size: str = "s-1vcpu-1gb"
    image: str = "53396713"
    ssh_keys: List[str] = Field(default_factory=lambda: ["20298220", "20398405"])
    backups: bool = False
    ipv6: bool = False
    monitoring: bool = False
    tags: List[str] = Field(default_factory=lambda: ["nodejs"])
    user_data: Optional[str] = (
        "#cloud-config\n"
        "runcmd:\n"
        " - /etc/init.d/nginx start\n"
        " - /root/update-repo.sh\n"
        " - mkdir /root/cue-server/images\n"
        " - /usr/bin/yarn --cwd /root/cue-server\n"
        " - /root/.nvm/versions/node/v8.15.1/bin/forever start /root/cue-server/server/server.js"
    )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: FLEET MODELS
# ─────────────────────────────────────────────────────────────────────────────

class Node(BaseModel):
    """
    One compute node tracked by the scaler.

    Fields:
        id              → Provider-assigned id.
        ip_address      → Private address once assigned. None while provisioning.
        lifecycle_state → See NodeLifecycle.
        created_at      → When the scaler first saw this node.
        ready_at        → When the node produced its first passing health sample.
                          Replacement nodes in a deploy are "ready" but not yet
                          IN_SERVICE until the cohort swap.
        admitted_at     → When the node entered the balancer. Drives the
                          scale-down selection policy (newest admitted first).
    """
    id: str
    ip_address: Optional[str] = None
    lifecycle_state: NodeLifecycle = NodeLifecycle.PROVISIONING
    created_at: datetime = Field(default_factory=utcnow)
    ready_at: Optional[datetime] = None
    admitted_at: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.ready_at is not None


class HealthSample(BaseModel):
    """
    A point-in-time CPU reading from one node, or a failure marker.

    ok=False means the sample must not be counted: the node timed out, the
    transport failed, or the response had no usage figure. `error` says which.
    """
    node_id: str
    cpu_percent: Optional[float] = None
    sampled_at: datetime = Field(default_factory=utcnow)
    ok: bool = False
    error: Optional[str] = None


class FleetSnapshot(BaseModel):
    """
    Aggregated health of the fleet for one tick. Never mutated after creation.

    average_cpu is None when ready_count == 0. "Unknown" and "0% CPU" mean
    very different things to the decision engine.
    """
    model_config = ConfigDict(frozen=True)

    nodes: List[Node] = Field(default_factory=list)
    samples: Dict[str, HealthSample] = Field(default_factory=dict)
    average_cpu: Optional[float] = None
    ready_count: int = 0
    taken_at: datetime = Field(default_factory=utcnow)

    @property
    def node_count(self) -> int:
        return len(self.nodes)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: CONTROL STATE
# The single piece of shared mutable state gating fleet mutations.
# ─────────────────────────────────────────────────────────────────────────────

class ControlState(BaseModel):
    """
    Process-wide fleet-control state.

    Legal transitions:
        IDLE → SCALING_UP | SCALING_DOWN | DEPLOYING      (begin)
        <active mode> → IDLE                              (finish)

    Anything else raises InvalidTransitionError. This is the only lock in
    the system: holding a non-IDLE mode is equivalent to holding a mutex for
    the logical duration of the operation.
    """
    mode: ControlMode = ControlMode.IDLE
    pending_cohort_ids: List[str] = Field(default_factory=list)
    last_transition_at: datetime = Field(default_factory=utcnow)

    @property
    def is_idle(self) -> bool:
        return self.mode == ControlMode.IDLE

    def begin(self, mode: ControlMode, cohort_ids: Optional[List[str]] = None) -> None:
        """Enter `mode` from IDLE. `cohort_ids` is only meaningful for DEPLOYING."""
        if mode == ControlMode.IDLE:
            raise InvalidTransitionError("begin() requires a non-idle mode")
        if self.mode != ControlMode.IDLE:
            raise InvalidTransitionError(
                f"cannot begin {mode.value}: {self.mode.value} already in progress"
            )
        self.mode = mode
        self.pending_cohort_ids = list(cohort_ids or [])
        self.last_transition_at = utcnow()
        logger.debug("Control mode idle → %s", mode.value)

    def finish(self, mode: ControlMode) -> None:
        """Return to IDLE from `mode`. The caller must own the active mode."""
        if self.mode != mode or mode == ControlMode.IDLE:
            raise InvalidTransitionError(
                f"cannot finish {mode.value}: active mode is {self.mode.value}"
            )
        self.mode = ControlMode.IDLE
        self.pending_cohort_ids = []
        self.last_transition_at = utcnow()
        logger.debug("Control mode %s → idle", mode.value)
