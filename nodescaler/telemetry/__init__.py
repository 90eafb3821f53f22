"""
nodescaler/telemetry — node health probing and fleet aggregation.

Public API:
    HealthProber  — one signed health request → HealthSample
    FleetMonitor  — reconcile + probing round → FleetSnapshot
    build_snapshot — pure aggregation helper
"""

from nodescaler.telemetry.prober import HealthProber
from nodescaler.telemetry.monitor import FleetMonitor, build_snapshot

__all__ = ["HealthProber", "FleetMonitor", "build_snapshot"]
