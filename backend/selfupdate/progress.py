"""Helper container progress, polled by the UI after the handoff."""

import logging
from typing import Any, Dict

import docker

from updates.engine import DockerEngine

logger = logging.getLogger(__name__)


async def get_helper_progress(engine: DockerEngine, helper_id: str, tail: int = 500) -> Dict[str, Any]:
    """
    State and log output of the helper.

    The helper runs with AutoRemove, so "not found" after a launch means it
    finished: ``removed`` rather than an error.
    """
    try:
        attrs = await engine.inspect_container(helper_id)
    except docker.errors.NotFound:
        return {'logs': '', 'status': 'removed'}

    state = attrs.get('State') or {}
    result = {
        'status': 'running' if state.get('Running') else 'exited',
        'exitCode': state.get('ExitCode', 0),
        'logs': '',
    }
    try:
        result['logs'] = await engine.container_logs(helper_id, tail=tail)
    except docker.errors.NotFound:
        # Removed between inspect and logs
        return {'logs': '', 'status': 'removed'}
    except docker.errors.APIError as e:
        logger.warning(f"Could not read helper logs: {e}")
    return result
