"""Adapters over the certificate issuer, proxy and container orchestrator."""

from .base import CertificateIssuer, OrchestratorController, ProxyController, config_hash
from .certbot import CertbotIssuer
from .nginx import NginxController
from .swarm import DockerSwarmController

__all__ = [
    'CertificateIssuer',
    'OrchestratorController',
    'ProxyController',
    'config_hash',
    'CertbotIssuer',
    'NginxController',
    'DockerSwarmController',
]
