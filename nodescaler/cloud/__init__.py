"""
nodescaler/cloud — provider adapters.

Public API:
    CloudClient         — abstract node + load-balancer operations
    DigitalOceanClient  — droplets + DigitalOcean load balancer
    DigitalOceanConfig  — API token, balancer id and balancer definition
"""

from nodescaler.cloud.client import CloudClient
from nodescaler.cloud.digitalocean import DigitalOceanClient, DigitalOceanConfig

__all__ = ["CloudClient", "DigitalOceanClient", "DigitalOceanConfig"]
