"""DigitalOcean implementation of CloudClient.

Nodes are droplets carrying the fleet tag; the balancer is a single
DigitalOcean load balancer whose full definition is PUT on every membership
change (the API has no partial update for droplet_ids that also preserves
forwarding rules).

API Documentation: https://docs.digitalocean.com/reference/api/
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from nodescaler.cloud.client import CloudClient
from nodescaler.shared.errors import ConfigurationError, ProviderError, TransientProviderError
from nodescaler.shared.models import CloudNode, NodeSpec

logger = logging.getLogger(__name__)

# DigitalOcean answers some outages with a 200 and this id in the body
SERVICE_UNAVAILABLE_ID = "service_unavailable"


def _default_forwarding_rules() -> List[Dict[str, Any]]:
    return [
        {
            "entry_protocol": "https",
            "entry_port": 443,
            "target_protocol": "http",
            "target_port": 80,
            "certificate_id": "95615b86-03ce-4085-aba9-4fc281921d74",
        }
    ]


def _default_health_check() -> Dict[str, Any]:
    return {
        "protocol": "tcp",
        "port": 1111,
        "check_interval_seconds": 10,
        "response_timeout_seconds": 5,
        "healthy_threshold": 5,
        "unhealthy_threshold": 3,
    }


@dataclass
class DigitalOceanConfig:
    """Configuration for the DigitalOcean client and its load balancer."""
    api_token: Optional[str] = None
    load_balancer_id: str = "00e4399b-4acd-46c3-8391-56d0b2585d35"
    api_base: str = "https://api.digitalocean.com"
    timeout_seconds: float = 30.0

    balancer_name: str = "cue-nodes"
    balancer_region: str = "sfo2"
    balancer_algorithm: str = "round_robin"
    forwarding_rules: List[Dict[str, Any]] = field(default_factory=_default_forwarding_rules)
    health_check: Dict[str, Any] = field(default_factory=_default_health_check)
    enable_proxy_protocol: bool = True

    @classmethod
    def from_env(cls) -> "DigitalOceanConfig":
        """Load configuration from environment variables."""
        config = cls(api_token=os.environ.get("DIGITALOCEAN_TOKEN"))
        lb_id = os.environ.get("DIGITALOCEAN_LOAD_BALANCER_ID")
        if lb_id:
            config.load_balancer_id = lb_id
        return config

    def balancer_body(self, node_ids: Sequence[str]) -> Dict[str, Any]:
        """Full load-balancer definition with the given droplet membership."""
        return {
            "name": self.balancer_name,
            "region": self.balancer_region,
            "algorithm": self.balancer_algorithm,
            "forwarding_rules": self.forwarding_rules,
            "health_check": self.health_check,
            "enable_proxy_protocol": self.enable_proxy_protocol,
            "sticky_sessions": {},
            "droplet_ids": [int(i) if str(i).isdigit() else i for i in node_ids],
        }


class DigitalOceanClient(CloudClient):
    """CloudClient backed by the DigitalOcean v2 API.

    Example:
        client = DigitalOceanClient(DigitalOceanConfig.from_env())
        nodes = await client.list_nodes("nodejs")
        await client.close()
    """

    def __init__(self, config: Optional[DigitalOceanConfig] = None):
        self.config = config or DigitalOceanConfig.from_env()
        if not self.config.api_token:
            raise ConfigurationError("DigitalOcean API token not configured (DIGITALOCEAN_TOKEN)")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        allow_not_found: bool = False,
    ) -> Dict[str, Any]:
        """Make an authenticated API request and classify failures."""
        url = f"{self.config.api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }
        session = await self._get_session()

        try:
            async with session.request(method, url, headers=headers, json=json, params=params) as resp:
                if resp.status == 404 and allow_not_found:
                    return {}
                if resp.status == 204:
                    return {}
                try:
                    data = await resp.json(content_type=None) if resp.content_length != 0 else {}
                except ValueError:
                    # gateway error pages are HTML
                    data = {"message": (await resp.text())[:200]}
                if not isinstance(data, dict):
                    data = {}

                if resp.status == 429 or resp.status >= 500:
                    raise TransientProviderError(
                        f"DigitalOcean API unavailable ({resp.status}): {data.get('message', data)}",
                        status=resp.status,
                    )
                if resp.status >= 400:
                    raise ProviderError(
                        f"DigitalOcean API error ({resp.status}): {data.get('message', data)}",
                        status=resp.status,
                    )
                if data.get("id") == SERVICE_UNAVAILABLE_ID:
                    raise TransientProviderError(
                        f"DigitalOcean API unavailable: {data.get('message', SERVICE_UNAVAILABLE_ID)}",
                        status=resp.status,
                    )
                return data

        except aiohttp.ClientError as e:
            raise TransientProviderError(f"DigitalOcean request {method} {endpoint} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"DigitalOcean request {method} {endpoint} timed out") from e

    @staticmethod
    def _parse_droplet(droplet: Dict[str, Any]) -> CloudNode:
        v4 = droplet.get("networks", {}).get("v4", [])
        ip_address = v4[0].get("ip_address") if v4 else None
        return CloudNode(
            id=str(droplet["id"]),
            ip_address=ip_address,
            tags=list(droplet.get("tags") or []),
        )

    async def list_nodes(self, tag: str) -> List[CloudNode]:
        data = await self._api_request("GET", "/v2/droplets", params={"tag_name": tag, "per_page": 200})
        return [self._parse_droplet(d) for d in data.get("droplets", [])]

    async def create_node(self, spec: NodeSpec) -> CloudNode:
        body = spec.model_dump()
        data = await self._api_request("POST", "/v2/droplets", json=body)
        droplet = data.get("droplet")
        if not droplet or "id" not in droplet:
            raise ProviderError(f"DigitalOcean create returned no droplet: {data}")
        node = self._parse_droplet(droplet)
        logger.info("Created droplet %s", node.id)
        return node

    async def destroy_node(self, node_id: str) -> None:
        await self._api_request("DELETE", f"/v2/droplets/{node_id}", allow_not_found=True)
        logger.info("Deleted droplet %s", node_id)

    async def set_balancer_membership(self, node_ids: Sequence[str]) -> None:
        body = self.config.balancer_body(node_ids)
        await self._api_request("PUT", f"/v2/load_balancers/{self.config.load_balancer_id}", json=body)
        logger.info("Updated load balancer membership: %s", list(node_ids))
