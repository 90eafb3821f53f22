"""
nodescaler/control_plane — the scaling brain.

Public API:
    decide()                — pure decision rule: snapshot → Decision
    LifecycleController     — create/admit and evict/drain/destroy nodes
    DeploymentOrchestrator  — full-fleet replacement with an atomic swap
    ReplacementSlot         — one position in a deploy's new cohort
    ScalerService           — the control loop wiring everything together
"""

from nodescaler.control_plane.decision_engine import decide
from nodescaler.control_plane.lifecycle import LifecycleController
from nodescaler.control_plane.deployment import DeploymentOrchestrator, ReplacementSlot
from nodescaler.control_plane.scaler_service import ScalerService

__all__ = [
    "decide",
    "LifecycleController",
    "DeploymentOrchestrator",
    "ReplacementSlot",
    "ScalerService",
]
