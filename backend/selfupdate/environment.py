"""
Where am I running?

Self-update needs the id of the container this process runs in and the
host-side path of the engine socket mounted into it. Both are discovered
from the container's own view of the system.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_FULL_ID = re.compile(r'[0-9a-f]{64}')
_SHORT_ID = re.compile(r'^[0-9a-f]{12}$')
# .../docker/containers/<id>/hostname in mountinfo
_MOUNTINFO_ID = re.compile(r'/containers/([0-9a-f]{64})/')


def _read_lines(path: str) -> List[str]:
    try:
        with open(path, 'r') as f:
            return f.readlines()
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")
        return []


def _id_from_mountinfo(lines: List[str]) -> Optional[str]:
    for line in lines:
        match = _MOUNTINFO_ID.search(line)
        if match:
            return match.group(1)
    return None


def _id_from_cgroup(lines: List[str]) -> Optional[str]:
    # cgroup v1: 12:cpu:/docker/<id>
    # systemd:   0::/system.slice/docker-<id>.scope
    for line in lines:
        if 'docker' not in line and 'containerd' not in line:
            continue
        match = _FULL_ID.search(line)
        if match:
            return match.group(0)
    return None


def get_own_container_id(
    hostname: Optional[str] = None,
    mountinfo_path: str = '/proc/self/mountinfo',
    cgroup_path: str = '/proc/self/cgroup'
) -> Optional[str]:
    """
    Full or short id of this process's container, None outside a container.

    mountinfo is tried first because it works on cgroup v2 hosts, where the
    cgroup file no longer names the container.
    """
    container_id = _id_from_mountinfo(_read_lines(mountinfo_path))
    if container_id:
        return container_id

    container_id = _id_from_cgroup(_read_lines(cgroup_path))
    if container_id:
        return container_id

    # The engine sets HOSTNAME to the short id unless --hostname was given
    hostname = hostname if hostname is not None else os.environ.get('HOSTNAME', '')
    if _SHORT_ID.match(hostname or ''):
        return hostname
    return None


def find_socket_mount(attrs: Dict[str, Any], socket_path: str) -> Optional[Dict[str, Any]]:
    for mount in attrs.get('Mounts') or []:
        if mount.get('Destination') == socket_path:
            return mount
    return None


def is_socket_writable(attrs: Dict[str, Any], socket_path: str) -> bool:
    mount = find_socket_mount(attrs, socket_path)
    return bool(mount and mount.get('RW'))


def host_socket_path(attrs: Dict[str, Any], socket_path: str) -> str:
    """Host side of the socket bind, so the helper can mount the same socket."""
    mount = find_socket_mount(attrs, socket_path)
    if mount and mount.get('Source'):
        return mount['Source']
    return socket_path
