"""
nodescaler/shared/errors.py
───────────────────────────
Exception taxonomy for the node scaler.

Handling contract
─────────────────
  ProviderError            → the cloud API rejected the call (quota,
                             validation). Abort the current action, go idle.
  TransientProviderError   → network or API hiccup. Skip this tick; the
                             FleetMonitor backs off before trying again.
  ReadinessTimeout         → a new node never passed its health check.
                             Destroy it and forget it.
  MembershipUpdateFailure  → the load balancer call failed. Abort, go idle,
                             leave the fleet exactly as it was.
  ProbeFailure             → one node is unreachable or returned junk.
                             Never escapes the HealthProber; it becomes an
                             ok=False HealthSample.

None of these terminate the control loop. InvalidTransitionError and
ConfigurationError indicate programming or operator mistakes and do surface.
"""

from __future__ import annotations

from typing import Optional


class ScalerError(Exception):
    """Base class for every error raised by the node scaler."""


class ConfigurationError(ScalerError):
    """Configuration is missing or inconsistent. Raised at startup only."""


class InvalidTransitionError(ScalerError):
    """A ControlState transition that would break the single-operation rule."""


class ProviderError(ScalerError):
    """
    The cloud provider refused a request.

    Attributes:
        status: HTTP status returned by the provider, if any.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Network failure, rate limit or provider outage. Worth retrying later."""


class ReadinessTimeout(ScalerError):
    """A freshly created node did not pass a health check within its window."""

    def __init__(self, node_id: str, timeout_s: float) -> None:
        self.node_id = node_id
        self.timeout_s = timeout_s
        super().__init__(f"node {node_id} not ready after {timeout_s:.0f}s")


class MembershipUpdateFailure(ScalerError):
    """The load balancer membership could not be replaced."""


class ProbeFailure(ScalerError):
    """A single health probe failed. Internal to the HealthProber."""
