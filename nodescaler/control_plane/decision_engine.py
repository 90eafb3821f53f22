"""
nodescaler/control_plane/decision_engine.py
───────────────────────────────────────────
decide(): snapshot + control state + config → at most one Decision per tick.

Pure function. It reads the ControlState but never writes it, and it never
clears the deploy request itself; ScalerService clears the flag when it
accepts a DEPLOY_START.

Rule order (first match wins)
─────────────────────────────
  1. mode == DEPLOYING                          → DEPLOY_CONTINUE
  2. deploy requested and mode == IDLE          → DEPLOY_START
  3. mode != IDLE                               → NONE
  4. ready_count == 0 and nodes >= minimum      → NONE   (health unknown)
  5. avg CPU > upper or nodes < minimum         → SCALE_UP
  6. avg CPU < lower and nodes > minimum        → SCALE_DOWN
  7.                                            → NONE

Rule 4 is why average_cpu is Optional: with no ok samples there is no
average, and treating it as 0% would shrink a fleet that is merely
unreachable. Rule 5's floor check still fires with unknown CPU, so an empty
fleet always grows.

Because cpu_lower_threshold < cpu_upper_threshold (enforced by ScalerConfig)
rules 5 and 6 can never both match the same average.
"""

from __future__ import annotations

from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.models import ControlMode, ControlState, Decision, FleetSnapshot


def decide(
    snapshot: FleetSnapshot,
    control_state: ControlState,
    config: ScalerConfig,
    deploy_requested: bool = False,
) -> Decision:
    """
    Pick this tick's action.

    Args:
        snapshot:         The FleetSnapshot just built by the FleetMonitor.
        control_state:    Current fleet-control mode (read only).
        config:           Thresholds and the fleet floor.
        deploy_requested: The externally set deploy flag.

    Returns:
        Exactly one Decision.
    """
    mode = control_state.mode

    if mode == ControlMode.DEPLOYING:
        return Decision.DEPLOY_CONTINUE

    if deploy_requested and mode == ControlMode.IDLE:
        return Decision.DEPLOY_START

    if mode != ControlMode.IDLE:
        return Decision.NONE

    node_count = snapshot.node_count
    below_floor = node_count < config.minimum_nodes

    if snapshot.ready_count == 0 and not below_floor:
        return Decision.NONE

    cpu = snapshot.average_cpu

    if below_floor or (cpu is not None and cpu > config.cpu_upper_threshold):
        return Decision.SCALE_UP

    if cpu is not None and cpu < config.cpu_lower_threshold and node_count > config.minimum_nodes:
        return Decision.SCALE_DOWN

    return Decision.NONE
