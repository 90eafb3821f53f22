"""
nodescaler/cloud/client.py
──────────────────────────
CloudClient: the four provider operations the scaler depends on.

The control plane never talks HTTP to the provider directly. Everything goes
through this interface so the lifecycle and deploy logic can be exercised
against an in-memory fake, and so a different provider is one subclass away.

Contract
────────
  list_nodes(tag)                → every node carrying `tag`
  create_node(spec)              → the new node (usually without an address)
  destroy_node(node_id)          → idempotent: a missing node is not an error
  set_balancer_membership(ids)   → replaces the full member set in one call

Error contract
──────────────
  TransientProviderError  network failure, 429, 5xx, provider outage
  ProviderError           anything else the provider rejects
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

from nodescaler.shared.models import CloudNode, NodeSpec


class CloudClient(ABC):
    """Abstract node + load-balancer API."""

    @abstractmethod
    async def list_nodes(self, tag: str) -> List[CloudNode]:
        ...

    @abstractmethod
    async def create_node(self, spec: NodeSpec) -> CloudNode:
        ...

    @abstractmethod
    async def destroy_node(self, node_id: str) -> None:
        ...

    @abstractmethod
    async def set_balancer_membership(self, node_ids: Sequence[str]) -> None:
        ...

    async def close(self) -> None:
        """Release any held connections. Default: nothing to release."""
        return None
