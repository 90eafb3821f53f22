"""
nodescaler/telemetry/prober.py
──────────────────────────────
HealthProber: one signed readiness/metrics request to one node.

Wire protocol
─────────────
    POST http://{ip}:{health_port}{health_path}
    body:     {"jwt": "<HS256 token signed with the service key>"}
    response: {"usage": {"cpu": 37.5}}        healthy, CPU reading
              {"error": "..."}                node-side failure

The token carries `iat` and a short `exp`, so a captured request cannot be
replayed for long. The node verifies it with the same shared service key.

Boundary contract
─────────────────
probe() NEVER raises. Timeouts, connection errors, non-JSON bodies, error
payloads and missing usage figures all come back as
HealthSample(ok=False, error=...). Internally the failure is a ProbeFailure
so every path funnels through one conversion point.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp
import jwt

from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import ProbeFailure
from nodescaler.shared.models import HealthSample

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


def sign_service_token(service_key: str, ttl_s: float) -> str:
    """Short-lived HS256 token proving the caller holds the service key."""
    now = int(time.time())
    return jwt.encode({"iat": now, "exp": now + int(ttl_s)}, service_key, algorithm=TOKEN_ALGORITHM)


def extract_cpu(body: Any) -> float:
    """
    Pull the CPU percentage out of a health response body.

    Raises:
        ProbeFailure: body is an error payload or lacks a numeric usage.cpu.
    """
    if not isinstance(body, dict):
        raise ProbeFailure(f"unexpected health body: {body!r}")
    if body.get("error"):
        raise ProbeFailure(f"node reported error: {body['error']}")
    usage = body.get("usage")
    cpu = usage.get("cpu") if isinstance(usage, dict) else None
    # bool is an int subclass; a JSON true is not a CPU reading
    if isinstance(cpu, bool) or not isinstance(cpu, (int, float)):
        raise ProbeFailure("health response has no usage.cpu figure")
    return float(cpu)


class HealthProber:
    """
    Signed health probes against fleet nodes.

    One aiohttp session is shared across probes and opened lazily; call
    close() on shutdown.

    Usage:
        prober = HealthProber(config)
        sample = await prober.probe("123", "10.0.0.5")
        if sample.ok:
            print(sample.cpu_percent)
    """

    def __init__(self, config: ScalerConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    def _url(self, ip_address: str) -> str:
        return f"http://{ip_address}:{self._config.health_port}{self._config.health_path}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def probe(self, node_id: str, ip_address: str) -> HealthSample:
        """Probe one node. Always returns a HealthSample; never raises."""
        try:
            cpu = await self._request(ip_address)
        except ProbeFailure as e:
            logger.debug("Probe %s (%s) failed: %s", node_id, ip_address, e)
            return HealthSample(node_id=node_id, ok=False, error=str(e))
        return HealthSample(node_id=node_id, cpu_percent=cpu, ok=True)

    async def _request(self, ip_address: str) -> float:
        if not self._config.service_key:
            raise ProbeFailure("no service key configured for signing")

        token = sign_service_token(self._config.service_key, self._config.token_ttl_s)
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self._config.probe_timeout_s)

        try:
            async with session.post(self._url(ip_address), json={"jwt": token}, timeout=timeout) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise ProbeFailure(f"non-JSON health response (HTTP {resp.status})") from e
        except asyncio.TimeoutError as e:
            raise ProbeFailure(f"timed out after {self._config.probe_timeout_s:.1f}s") from e
        except aiohttp.ClientError as e:
            raise ProbeFailure(f"transport error: {e}") from e

        return extract_cpu(body)
