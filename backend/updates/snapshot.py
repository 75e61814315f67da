"""
Container snapshots.

capture_snapshot() turns one inspect payload into a ContainerSnapshot: a
self-contained description of everything needed to create an equivalent
container. build_create_spec() turns a snapshot back into keyword arguments
for the low-level create call.

HostConfig is passed through untouched so fields we don't model (GPU device
requests, ulimits, security options...) survive. Hostname and MAC address are
dropped on purpose: the replacement gets fresh ones from the engine.
"""

import copy
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from updates.image_ref import ImageReference

logger = logging.getLogger(__name__)

COMPOSE_PROJECT_LABEL = 'com.docker.compose.project'
COMPOSE_SERVICE_LABEL = 'com.docker.compose.service'

# Network modes with no per-network attachments to carry over
NON_ATTACHABLE_MODES = ('host', 'none')

SHORT_ID_LENGTH = 12


@dataclass(frozen=True)
class NetworkAttachment:
    network_name: str
    aliases: Tuple[str, ...] = ()
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    gateway_priority: Optional[int] = None
    links: Tuple[str, ...] = ()
    is_primary: bool = False

    def endpoint_config(self) -> Dict[str, Any]:
        """EndpointSettings for this attachment, as the create API expects."""
        endpoint: Dict[str, Any] = {}
        if self.aliases:
            endpoint['Aliases'] = list(self.aliases)
        if self.links:
            endpoint['Links'] = list(self.links)
        ipam = {}
        if self.ipv4:
            ipam['IPv4Address'] = self.ipv4
        if self.ipv6:
            ipam['IPv6Address'] = self.ipv6
        if ipam:
            endpoint['IPAMConfig'] = ipam
        if self.gateway_priority:
            endpoint['GwPriority'] = self.gateway_priority
        return endpoint


@dataclass(frozen=True)
class ContainerSnapshot:
    """
    Everything needed to recreate one container.

    ``config`` and ``host_config`` are private deep copies of the inspect
    payload; nothing outside this module mutates them, and build_create_spec
    copies again before handing them to the engine.
    """
    container_id: str
    name: str
    image: ImageReference
    image_id: str
    config: Dict[str, Any]
    host_config: Dict[str, Any]
    networks: Tuple[NetworkAttachment, ...] = ()
    was_running: bool = False
    compose_project: Optional[str] = None
    compose_service: Optional[str] = None

    @property
    def network_mode(self) -> str:
        return self.host_config.get('NetworkMode') or 'default'

    @property
    def primary_network(self) -> Optional[NetworkAttachment]:
        for attachment in self.networks:
            if attachment.is_primary:
                return attachment
        return None

    @property
    def secondary_networks(self) -> List[NetworkAttachment]:
        return [a for a in self.networks if not a.is_primary]

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.config.get('Labels') or {})

    @property
    def env(self) -> List[str]:
        return list(self.config.get('Env') or [])

    @property
    def is_compose_managed(self) -> bool:
        return bool(self.compose_project and self.compose_service)


def _clean_aliases(aliases: Optional[List[str]], container_id: str) -> List[str]:
    """Drop aliases the engine generates from the container id."""
    short_id = container_id[:SHORT_ID_LENGTH]
    cleaned = []
    for alias in aliases or []:
        if alias in (container_id, short_id) or alias in cleaned:
            continue
        cleaned.append(alias)
    return cleaned


def _is_primary(network_name: str, network_mode: str) -> bool:
    if network_name == network_mode:
        return True
    # "default" and "bridge" both mean the engine's bridge network
    return network_mode in ('default', 'bridge') and network_name == 'bridge'


def extract_network_attachments(attrs: Dict[str, Any], for_compose: bool = True) -> List[NetworkAttachment]:
    """
    Describe every network the container is attached to.

    Exactly one attachment is primary unless the container runs in host or
    none mode or shares another container's namespace, in which case there
    are no attachments at all. Compose containers get their service name and
    ``{project}-{service}`` as aliases on secondary networks, which the engine
    only adds automatically on the network compose created them on.
    """
    host_config = attrs.get('HostConfig') or {}
    network_mode = host_config.get('NetworkMode') or 'default'
    if network_mode in NON_ATTACHABLE_MODES or network_mode.startswith('container:'):
        return []

    container_id = attrs.get('Id', '')
    labels = (attrs.get('Config') or {}).get('Labels') or {}
    project = labels.get(COMPOSE_PROJECT_LABEL)
    service = labels.get(COMPOSE_SERVICE_LABEL)

    networks = ((attrs.get('NetworkSettings') or {}).get('Networks')) or {}
    attachments = []
    primary_seen = False
    for network_name, data in networks.items():
        data = data or {}
        primary = not primary_seen and _is_primary(network_name, network_mode)
        primary_seen = primary_seen or primary

        # Older engines report user aliases in Aliases, newer ones in DNSNames
        aliases = _clean_aliases(data.get('Aliases') or data.get('DNSNames'), container_id)
        if for_compose and not primary and project and service:
            for extra in (service, f"{project}-{service}"):
                if extra not in aliases:
                    aliases.append(extra)

        ipam = data.get('IPAMConfig') or {}
        attachments.append(NetworkAttachment(
            network_name=network_name,
            aliases=tuple(aliases),
            ipv4=ipam.get('IPv4Address') or None,
            ipv6=ipam.get('IPv6Address') or None,
            gateway_priority=data.get('GwPriority') or None,
            links=tuple(data.get('Links') or ()),
            is_primary=primary,
        ))

    if attachments and not primary_seen:
        # NetworkMode names a network the container is no longer on; promote
        # the first attachment so creation still lands on a real network
        first = attachments[0]
        logger.warning(
            f"NetworkMode {network_mode} not among attached networks, "
            f"using {first.network_name} as primary"
        )
        attachments[0] = dataclasses.replace(first, is_primary=True)

    return attachments


def _preserve_anonymous_volumes(attrs: Dict[str, Any], host_config: Dict[str, Any]):
    """
    Keep anonymous volumes by pinning them to their current volume names.

    Without this the replacement would get fresh, empty anonymous volumes for
    every VOLUME declared in the image, every ``-v /path`` bind and every
    ``--mount type=volume`` without a source (how compose declares them).
    """
    volume_names = {}
    for mount in attrs.get('Mounts') or []:
        if mount.get('Type') == 'volume' and mount.get('Name') and mount.get('Destination'):
            volume_names[mount['Destination']] = mount['Name']

    pinned = []
    binds = []
    covered = set()
    for bind in host_config.get('Binds') or []:
        parts = bind.split(':')
        if len(parts) == 1 and parts[0] in volume_names:
            bind = f"{volume_names[parts[0]]}:{parts[0]}"
            pinned.append(bind)
            parts = bind.split(':')
        if len(parts) >= 2:
            covered.add(parts[1])
        binds.append(bind)

    mounts = []
    for mount in host_config.get('Mounts') or []:
        mount = dict(mount)
        target = mount.get('Target')
        if mount.get('Type') == 'volume' and not mount.get('Source') and target in volume_names:
            mount['Source'] = volume_names[target]
            pinned.append(f"{mount['Source']}:{target}")
        # A mount without a source would get a fresh volume
        if target and mount.get('Source'):
            covered.add(target)
        mounts.append(mount)

    for destination, name in volume_names.items():
        if destination in covered:
            continue
        binds.append(f"{name}:{destination}")
        pinned.append(f"{name}:{destination}")
        covered.add(destination)

    if host_config.get('Binds') is not None or binds:
        host_config['Binds'] = binds
    if host_config.get('Mounts') is not None:
        host_config['Mounts'] = mounts
    if pinned:
        logger.debug(f"Preserving anonymous volumes: {pinned}")


def capture_snapshot(attrs: Dict[str, Any]) -> ContainerSnapshot:
    """Build a snapshot from an inspect payload. Pure: attrs is not modified."""
    attrs = copy.deepcopy(attrs)
    config = attrs.get('Config') or {}
    host_config = attrs.get('HostConfig') or {}

    # Identity the engine must regenerate
    config.pop('Hostname', None)
    config.pop('MacAddress', None)
    host_config.pop('MacAddress', None)

    _preserve_anonymous_volumes(attrs, host_config)

    labels = config.get('Labels') or {}
    state = attrs.get('State') or {}

    return ContainerSnapshot(
        container_id=attrs.get('Id', ''),
        name=(attrs.get('Name') or '').lstrip('/'),
        image=ImageReference.parse(config.get('Image') or attrs.get('Image', '')),
        image_id=attrs.get('Image', ''),
        config=config,
        host_config=host_config,
        networks=tuple(extract_network_attachments(attrs)),
        was_running=bool(state.get('Running')),
        compose_project=labels.get(COMPOSE_PROJECT_LABEL),
        compose_service=labels.get(COMPOSE_SERVICE_LABEL),
    )


def _exposed_ports(config: Dict[str, Any]) -> Optional[List[Any]]:
    exposed = config.get('ExposedPorts') or {}
    if not exposed:
        return None
    ports = []
    for key in exposed:
        port, _, proto = key.partition('/')
        ports.append((int(port), proto or 'tcp'))
    return ports


def build_create_spec(
    snapshot: ContainerSnapshot,
    image: Optional[str] = None,
    name: Optional[str] = None,
    attach_primary: bool = True
) -> Dict[str, Any]:
    """
    Keyword arguments for ``APIClient.create_container``.

    With ``attach_primary`` the primary network goes into NetworkingConfig so
    the container is created on it; secondaries are always left for explicit
    connect calls. Without it (self-update pre-creation) no endpoint config
    is sent at all.
    """
    config = copy.deepcopy(snapshot.config)
    host_config = copy.deepcopy(snapshot.host_config)

    networking_config = None
    primary = snapshot.primary_network
    if attach_primary and primary is not None:
        networking_config = {'EndpointsConfig': {primary.network_name: primary.endpoint_config()}}

    volumes = config.get('Volumes') or None

    return {
        'image': image or str(snapshot.image),
        'name': name or snapshot.name,
        'command': config.get('Cmd'),
        'entrypoint': config.get('Entrypoint'),
        'environment': config.get('Env'),
        'labels': config.get('Labels') or {},
        'working_dir': config.get('WorkingDir') or None,
        'user': config.get('User') or None,
        'domainname': config.get('Domainname') or None,
        'healthcheck': config.get('Healthcheck'),
        'stop_signal': config.get('StopSignal'),
        'tty': config.get('Tty', False),
        'stdin_open': config.get('OpenStdin', False),
        'ports': _exposed_ports(config),
        'volumes': list(volumes.keys()) if volumes else None,
        'host_config': host_config,
        'networking_config': networking_config,
    }
