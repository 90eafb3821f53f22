"""
nodescaler/shared/config.py
───────────────────────────
ScalerConfig: every tunable the control loop reads.

Nothing in the control logic hard-wires a number. Each field below carries
the documented fallback; operators override through the environment
(SCALER_* variables) or a JSON file.

    config = ScalerConfig.from_env()
    config = ScalerConfig.from_file("scaler.json")

Validation
──────────
Pydantic enforces ranges per field. The cross-field rule that matters is
cpu_lower_threshold < cpu_upper_threshold: the two bands must leave a neutral
zone between them, otherwise one tick could both scale up and scale down.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from nodescaler.shared.errors import ConfigurationError
from nodescaler.shared.models import NodeSpec

ENV_PREFIX = "SCALER_"

# field name → environment variable suffix
_ENV_FIELDS: Dict[str, str] = {
    "minimum_nodes": "MINIMUM_NODES",
    "cpu_upper_threshold": "CPU_UPPER_THRESHOLD",
    "cpu_lower_threshold": "CPU_LOWER_THRESHOLD",
    "monitor_interval_s": "MONITOR_INTERVAL",
    "grace_delay_s": "GRACE_DELAY",
    "readiness_timeout_s": "READINESS_TIMEOUT",
    "provision_poll_interval_s": "PROVISION_POLL_INTERVAL",
    "probe_timeout_s": "PROBE_TIMEOUT",
    "health_port": "HEALTH_PORT",
    "health_path": "HEALTH_PATH",
    "node_tag": "NODE_TAG",
    "backoff_initial_s": "BACKOFF_INITIAL",
    "backoff_factor": "BACKOFF_FACTOR",
    "backoff_max_s": "BACKOFF_MAX",
    "provider_retry_delay_s": "PROVIDER_RETRY_DELAY",
    "token_ttl_s": "TOKEN_TTL",
    "service_key": "SERVICE_KEY",
}


class ScalerConfig(BaseModel):
    """
    Tunables for the FleetMonitor, decision engine, lifecycle and deploys.

    Scaling policy:
        minimum_nodes        → Fleet floor. ScaleUp whenever below it.
        cpu_upper_threshold  → Mean CPU % above which we add a node.
        cpu_lower_threshold  → Mean CPU % below which we remove one.

    Timers (seconds):
        monitor_interval_s        → One probing round per interval.
        grace_delay_s             → Balancer removal → destroy.
        readiness_timeout_s       → How long a new node gets to pass a probe.
        provision_poll_interval_s → How often a pending node is re-checked.
        probe_timeout_s           → Per-request health probe timeout.

    Provider retry:
        backoff_*                 → Exponential backoff after transient
                                    listing failures.
        provider_retry_delay_s    → Pause before a deploy slot retries a
                                    failed create_node().
    """
    minimum_nodes: int = Field(1, ge=0)
    cpu_upper_threshold: float = Field(80.0, ge=0.0, le=100.0)
    cpu_lower_threshold: float = Field(60.0, ge=0.0, le=100.0)

    monitor_interval_s: float = Field(10.0, gt=0)
    grace_delay_s: float = Field(60.0, ge=0)
    readiness_timeout_s: float = Field(300.0, gt=0)
    provision_poll_interval_s: float = Field(5.0, gt=0)
    probe_timeout_s: float = Field(10.0, gt=0)

    health_port: int = Field(1111, gt=0, lt=65536)
    health_path: str = "/api/health"
    node_tag: str = "nodejs"
    service_key: Optional[str] = Field(None, repr=False)
    token_ttl_s: float = Field(60.0, gt=0)

    backoff_initial_s: float = Field(10.0, gt=0)
    backoff_factor: float = Field(2.0, ge=1.0)
    backoff_max_s: float = Field(120.0, gt=0)
    provider_retry_delay_s: float = Field(15.0, ge=0)

    node_spec: NodeSpec = Field(default_factory=NodeSpec)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ScalerConfig":
        if self.cpu_lower_threshold >= self.cpu_upper_threshold:
            raise ValueError(
                f"cpu_lower_threshold ({self.cpu_lower_threshold}) must be below "
                f"cpu_upper_threshold ({self.cpu_upper_threshold})"
            )
        if self.backoff_max_s < self.backoff_initial_s:
            raise ValueError("backoff_max_s must be >= backoff_initial_s")
        return self

    # ── Loaders ───────────────────────────────────────────────────────────────

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScalerConfig":
        """
        Build a config from SCALER_* environment variables.

        Unset variables keep their defaults. SCALER_NODE_SPEC, when present,
        is a JSON object merged over the default NodeSpec.

        Raises:
            ConfigurationError: on unparsable JSON or failed validation.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field_name, suffix in _ENV_FIELDS.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is not None and raw != "":
                values[field_name] = raw

        raw_spec = env.get(ENV_PREFIX + "NODE_SPEC")
        if raw_spec:
            try:
                values["node_spec"] = json.loads(raw_spec)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"{ENV_PREFIX}NODE_SPEC is not valid JSON: {e}") from e

        return cls._validated(values)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ScalerConfig":
        """Load a JSON config file. Keys are field names."""
        try:
            values = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"cannot read config {path}: {e}") from e
        if not isinstance(values, dict):
            raise ConfigurationError(f"config {path} must contain a JSON object")
        return cls._validated(values)

    @classmethod
    def _validated(cls, values: Dict[str, Any]) -> "ScalerConfig":
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    def summary(self) -> Dict[str, Any]:
        """Effective configuration with the service key masked. For logs and the CLI."""
        data = self.model_dump(mode="json")
        data["service_key"] = "SET" if self.service_key else "MISSING"
        return data
