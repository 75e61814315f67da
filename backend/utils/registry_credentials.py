"""
Registry Credentials Utility

Credential lookup for registries, shared by the digest checker (registry API)
and image pulls. Credentials come from DOCKWARDEN_REGISTRY_CREDENTIALS.
"""

import logging
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DOCKER_HUB_ALIASES = ('docker.io', 'index.docker.io', 'registry-1.docker.io')


def get_registry_credentials(
    registry: str,
    credentials: Optional[Mapping[str, Dict[str, str]]] = None
) -> Optional[Dict[str, str]]:
    """
    Get {username, password} for a registry host, None if not configured.

    Args:
        registry: Registry host as ImageReference.registry reports it
            ("docker.io", "ghcr.io", "registry.example.com:5000")
        credentials: Mapping to search; defaults to AppConfig.REGISTRY_CREDENTIALS

    Docker Hub is known under several hostnames; any of them matches.
    """
    if credentials is None:
        from config.settings import AppConfig
        credentials = AppConfig.REGISTRY_CREDENTIALS

    registry = (registry or 'docker.io').lower()
    candidates = DOCKER_HUB_ALIASES if registry in DOCKER_HUB_ALIASES else (registry,)
    for candidate in candidates:
        entry = credentials.get(candidate)
        if entry:
            logger.debug(f"Using credentials for registry '{registry}'")
            return {'username': entry['username'], 'password': entry['password']}
    return None
