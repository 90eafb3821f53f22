"""
nodescaler — elastic node fleet controller.

Keeps a fleet of nodes behind one load balancer sized to its CPU load, and
replaces the whole fleet with zero downtime on request.

Packages:
    nodescaler.shared         — models, config, errors, logging setup
    nodescaler.cloud          — provider adapters (CloudClient)
    nodescaler.telemetry      — health probing and fleet snapshots
    nodescaler.control_plane  — decisions, node lifecycle, deploys, the loop
"""

__version__ = "0.1.0"
