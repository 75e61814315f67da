"""
Configuration Management for Dockwarden
Centralizes all environment-based configuration and settings
"""

import json
import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Dict


class PollingRequestFilter(logging.Filter):
    """Drop successful access-log lines for endpoints the UI polls"""

    QUIET_PATHS = ('/health', '/api/self-update/progress', '/api/self-update/check')

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if ' 200' in message and any(path in message for path in self.QUIET_PATHS):
            return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Replace handlers installed by libraries or an earlier call
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    # 10MB per file, 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'dockwarden.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn.access").addFilter(PollingRequestFilter())


def _parse_environments(raw: str) -> Dict[str, str]:
    """
    DOCKWARDEN_ENVIRONMENTS='{"2": "tcp://10.0.0.5:2375"}'

    Maps environment ids to engine URLs. Invalid JSON is a startup error.
    """
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("DOCKWARDEN_ENVIRONMENTS must be a JSON object")
    return {str(key): str(value) for key, value in data.items()}


def _parse_registry_credentials(raw: str) -> Dict[str, Dict[str, str]]:
    """
    DOCKWARDEN_REGISTRY_CREDENTIALS='{"ghcr.io": {"username": "me", "password": "token"}}'
    """
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("DOCKWARDEN_REGISTRY_CREDENTIALS must be a JSON object")
    credentials = {}
    for registry, entry in data.items():
        if not isinstance(entry, dict) or 'username' not in entry or 'password' not in entry:
            raise ValueError(f"Credentials for {registry} need username and password")
        credentials[str(registry).lower()] = {
            'username': str(entry['username']),
            'password': str(entry['password']),
        }
    return credentials


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('DOCKWARDEN_HOST', '0.0.0.0')
    PORT = int(os.getenv('DOCKWARDEN_PORT', 8080))

    # Logging
    LOG_LEVEL = os.getenv('DOCKWARDEN_LOG_LEVEL', 'INFO')

    # Engine access
    DOCKER_SOCKET = os.getenv('DOCKWARDEN_DOCKER_SOCKET', '/var/run/docker.sock')
    ENVIRONMENTS = _parse_environments(os.getenv('DOCKWARDEN_ENVIRONMENTS', ''))
    DOCKER_CALL_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_DOCKER_CALL_TIMEOUT', 120))

    # Update pipeline
    UPDATE_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_UPDATE_TIMEOUT', 3600))
    PULL_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_PULL_TIMEOUT', 1800))
    STOP_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_STOP_TIMEOUT', 30))
    REGISTRY_CACHE_TTL_SECONDS = int(os.getenv('DOCKWARDEN_REGISTRY_CACHE_TTL', 120))
    REGISTRY_CREDENTIALS = _parse_registry_credentials(os.getenv('DOCKWARDEN_REGISTRY_CREDENTIALS', ''))

    # 'recreate' falls back to container recreation for compose containers
    # whose stack file we don't manage, 'refuse' skips them
    UNMANAGED_STACK_POLICY = os.getenv('DOCKWARDEN_UNMANAGED_STACK_POLICY', 'recreate')
    COMPOSE_COMMAND = os.getenv('DOCKWARDEN_COMPOSE_COMMAND', 'docker compose')
    COMPOSE_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_COMPOSE_TIMEOUT', 900))

    # Vulnerability scanning
    SCANNER = os.getenv('DOCKWARDEN_SCANNER', 'none')
    TRIVY_IMAGE = os.getenv('DOCKWARDEN_TRIVY_IMAGE', 'aquasec/trivy:latest')
    SCAN_TIMEOUT_SECONDS = int(os.getenv('DOCKWARDEN_SCAN_TIMEOUT', 900))
    DEFAULT_VULNERABILITY_CRITERIA = os.getenv('DOCKWARDEN_VULNERABILITY_CRITERIA', 'never')

    # Self-update helper
    HELPER_IMAGE = os.getenv('DOCKWARDEN_HELPER_IMAGE', 'dockwarden/dockwarden:latest')
    HELPER_COMMAND = os.getenv('DOCKWARDEN_HELPER_COMMAND', 'python -m selfupdate.helper')

    VALID_STACK_POLICIES = {'recreate', 'refuse'}
    VALID_SCANNERS = {'none', 'trivy'}

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.UNMANAGED_STACK_POLICY not in cls.VALID_STACK_POLICIES:
            raise ValueError(f"Invalid unmanaged stack policy: {cls.UNMANAGED_STACK_POLICY}")

        if cls.SCANNER not in cls.VALID_SCANNERS:
            raise ValueError(f"Invalid scanner: {cls.SCANNER}")

        from updates.vulnerability_gate import VulnerabilityCriterion
        VulnerabilityCriterion(cls.DEFAULT_VULNERABILITY_CRITERIA)

        for name in ('UPDATE_TIMEOUT_SECONDS', 'PULL_TIMEOUT_SECONDS', 'STOP_TIMEOUT_SECONDS'):
            if getattr(cls, name) < 1:
                raise ValueError(f"{name} must be positive")

        return True
