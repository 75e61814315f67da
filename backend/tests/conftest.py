"""
Shared pytest fixtures for Dockwarden tests.

Fixtures provided:
- test_db: Temporary SQLite DatabaseManager
- ledger: DatabaseExecutionLedger on test_db
- event_bus / recorded_events: Test event bus and the events it delivered
- fake_engine: In-memory engine modelling containers, images, tags and networks
- make_container: Factory for container inspect payloads

The fake engine has the same async surface as updates.engine.DockerEngine,
so the update pipeline runs against it unchanged. Pulls resolve through
``fake_engine.registry`` ("repo:tag" -> image id the registry serves).
"""

import copy
import hashlib
import os
import sys
from typing import Any, Dict, List, Optional

import docker
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager
from event_bus import EventBus, EventType
from updates.event_emitter import UpdateEventEmitter
from updates.ledger import DatabaseExecutionLedger

OLD_IMAGE_ID = 'sha256:' + 'a' * 64
NEW_IMAGE_ID = 'sha256:' + 'b' * 64
OLD_DIGEST = 'sha256:' + '1' * 64
NEW_DIGEST = 'sha256:' + '2' * 64


class FakeEngine:
    """
    Stand-in for DockerEngine.

    Every call is appended to ``calls`` as ``(method, *key args)``. Failures
    are injected with fail_on(method, exc, match): the call raises ``exc``
    when ``match`` is None or equals one of its key args.
    """

    def __init__(self, environment_id: Optional[str] = None):
        self.environment_id = environment_id
        self.api_version = '1.45'
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, Dict[str, Any]] = {}
        self.tags: Dict[str, str] = {}
        self.registry: Dict[str, str] = {}
        self.logs: Dict[str, str] = {}
        self.created_specs: Dict[str, Dict[str, Any]] = {}
        self.connections: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.failures: List[tuple] = []
        self._counter = 0

    # Test setup

    def add_image(self, image_id: str, tags=(), repo_digests=()):
        self.images[image_id] = {'Id': image_id, 'RepoDigests': list(repo_digests)}
        for tag in tags:
            self.tags[tag] = image_id

    def add_container(self, attrs: Dict[str, Any]) -> str:
        self.containers[attrs['Id']] = copy.deepcopy(attrs)
        return attrs['Id']

    def fail_on(self, method: str, exc: Exception, match: Optional[str] = None):
        self.failures.append((method, match, exc))

    def called(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def container_named(self, name: str) -> Optional[Dict[str, Any]]:
        for attrs in self.containers.values():
            if attrs['Name'].lstrip('/') == name:
                return attrs
        return None

    def _record(self, method: str, *args):
        self.calls.append((method,) + args)
        for name, match, exc in self.failures:
            if name == method and (match is None or match in args):
                raise exc

    def _resolve(self, ref: str) -> str:
        if ref in self.containers:
            return ref
        for container_id, attrs in self.containers.items():
            if attrs['Name'].lstrip('/') == ref or container_id.startswith(ref):
                return container_id
        raise docker.errors.NotFound(f"No such container: {ref}")

    # Containers

    async def inspect_container(self, ref: str) -> Dict[str, Any]:
        self._record('inspect_container', ref)
        return copy.deepcopy(self.containers[self._resolve(ref)])

    async def find_container(self, ref: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.inspect_container(ref)
        except docker.errors.NotFound:
            return None

    async def list_containers(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self._record('list_containers')
        filters = filters or {}
        summaries = []
        for container_id, attrs in self.containers.items():
            labels = attrs['Config'].get('Labels') or {}
            wanted_labels = [item.split('=', 1) for item in filters.get('label', [])]
            if any(labels.get(key) != value for key, value in wanted_labels):
                continue
            if any(name not in attrs['Name'] for name in filters.get('name', [])):
                continue
            summaries.append({
                'Id': container_id,
                'Names': [attrs['Name']],
                'Labels': labels,
                'State': 'running' if attrs['State']['Running'] else 'exited',
            })
        return summaries

    async def create_container(self, spec: Dict[str, Any]) -> str:
        self._record('create_container', spec['name'])
        if self.container_named(spec['name']):
            raise docker.errors.APIError(f"Conflict. The container name \"/{spec['name']}\" is already in use")

        self._counter += 1
        container_id = format(0xc0ffee000 + self._counter, '064x')
        networks = {}
        endpoints = (spec.get('networking_config') or {}).get('EndpointsConfig') or {}
        for network, endpoint in endpoints.items():
            networks[network] = {
                'Aliases': endpoint.get('Aliases'),
                'IPAMConfig': endpoint.get('IPAMConfig'),
            }
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f"/{spec['name']}",
            'Image': self.tags.get(spec['image'], spec['image']),
            'Config': {
                'Image': spec['image'],
                'Env': spec.get('environment'),
                'Labels': dict(spec.get('labels') or {}),
                'Cmd': spec.get('command'),
            },
            'HostConfig': copy.deepcopy(spec.get('host_config') or {}),
            'NetworkSettings': {'Networks': networks},
            'State': {'Running': False, 'ExitCode': 0},
            'Mounts': [],
        }
        self.created_specs[container_id] = copy.deepcopy(spec)
        return container_id

    async def start_container(self, ref: str):
        self._record('start_container', ref)
        self.containers[self._resolve(ref)]['State']['Running'] = True

    async def stop_container(self, ref: str, timeout: int = 10):
        self._record('stop_container', ref)
        self.containers[self._resolve(ref)]['State']['Running'] = False

    async def remove_container(self, ref: str, force: bool = False):
        self._record('remove_container', ref)
        del self.containers[self._resolve(ref)]

    async def rename_container(self, ref: str, name: str):
        self._record('rename_container', ref, name)
        self.containers[self._resolve(ref)]['Name'] = f"/{name}"

    async def container_logs(self, ref: str, tail: int = 200) -> str:
        self._record('container_logs', ref)
        return self.logs.get(self._resolve(ref), '')

    # Networks

    async def connect_network(self, network, container, aliases=None, ipv4_address=None,
                              ipv6_address=None, links=None, gw_priority=None):
        self._record('connect_network', network, container)
        attrs = self.containers[self._resolve(container)]
        attrs['NetworkSettings']['Networks'][network] = {
            'Aliases': aliases,
            'IPAMConfig': {'IPv4Address': ipv4_address, 'IPv6Address': ipv6_address},
            'Links': links,
            'GwPriority': gw_priority,
        }
        self.connections.append({
            'network': network, 'container': container, 'aliases': aliases,
            'ipv4': ipv4_address, 'ipv6': ipv6_address, 'links': links, 'gw_priority': gw_priority,
        })

    async def disconnect_network(self, network, container, force=True):
        self._record('disconnect_network', network, container)
        networks = self.containers[self._resolve(container)]['NetworkSettings']['Networks']
        if network not in networks:
            raise docker.errors.APIError(f"container is not connected to network {network}")
        del networks[network]

    # Images

    async def inspect_image(self, ref: str) -> Optional[Dict[str, Any]]:
        image = self.images.get(self.tags.get(ref, ref))
        return copy.deepcopy(image) if image else None

    async def get_image_id(self, ref: str) -> Optional[str]:
        attrs = await self.inspect_image(ref)
        return attrs.get('Id') if attrs else None

    async def pull_image(self, ref: str, auth_config=None, timeout: int = 1800) -> str:
        self._record('pull_image', ref)
        if ref not in self.registry:
            raise docker.errors.APIError(f"manifest for {ref} not found")
        image_id = self.registry[ref]
        self.images.setdefault(image_id, {'Id': image_id, 'RepoDigests': []})
        self.tags[ref] = image_id
        return image_id

    async def pull_image_with_progress(self, ref: str, progress, auth_config=None, timeout: int = 1800):
        await progress(f"{ref}: Pull complete")
        return await self.pull_image(ref, auth_config=auth_config, timeout=timeout)

    async def tag_image(self, image_id: str, repository: str, tag: str):
        ref = f"{repository}:{tag}"
        self._record('tag_image', ref)
        if image_id not in self.images:
            raise docker.errors.ImageNotFound(f"No such image: {image_id}")
        self.tags[ref] = image_id

    async def remove_image(self, ref: str, force: bool = False):
        self._record('remove_image', ref)
        if ref in self.tags:
            image_id = self.tags.pop(ref)
            in_use = image_id in self.tags.values() or any(
                c['Image'] == image_id for c in self.containers.values()
            )
            if not in_use:
                self.images.pop(image_id, None)
        elif ref in self.images:
            del self.images[ref]
        else:
            raise docker.errors.ImageNotFound(f"No such image: {ref}")


def _make_container(
    name: str = 'web',
    image: str = 'nginx:1.25',
    image_id: str = OLD_IMAGE_ID,
    container_id: Optional[str] = None,
    running: bool = True,
    labels: Optional[Dict[str, str]] = None,
    networks: Optional[Dict[str, Any]] = None,
    network_mode: str = 'bridge',
    mounts: Optional[List[Dict[str, Any]]] = None,
    binds: Optional[List[str]] = None
) -> Dict[str, Any]:
    container_id = container_id or hashlib.sha256(name.encode()).hexdigest()
    if networks is None:
        networks = {} if network_mode in ('host', 'none') else {network_mode: {'Aliases': None, 'IPAMConfig': None}}
    return {
        'Id': container_id,
        'Name': f"/{name}",
        'Image': image_id,
        'Config': {
            'Image': image,
            'Hostname': container_id[:12],
            'MacAddress': '02:42:ac:11:00:02',
            'Env': ['PATH=/usr/local/bin:/usr/bin', 'TZ=UTC'],
            'Labels': dict(labels or {}),
            'Cmd': ['nginx', '-g', 'daemon off;'],
            'ExposedPorts': {'80/tcp': {}},
        },
        'HostConfig': {
            'NetworkMode': network_mode,
            'Binds': list(binds or []),
            'RestartPolicy': {'Name': 'unless-stopped'},
            'PortBindings': {'80/tcp': [{'HostPort': '8080'}]},
        },
        'NetworkSettings': {'Networks': networks},
        'State': {'Running': running, 'ExitCode': 0},
        'Mounts': list(mounts or []),
    }


@pytest.fixture
def make_container():
    """Factory for container inspect payloads (nginx:1.25 on bridge by default)."""
    return _make_container


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def engine_with_web(fake_engine):
    """
    Fake engine running ``web`` on nginx:1.25, with the registry serving a
    newer image for that tag.
    """
    fake_engine.add_image(OLD_IMAGE_ID, tags=['nginx:1.25'], repo_digests=[f"nginx@{OLD_DIGEST}"])
    fake_engine.add_container(_make_container())
    fake_engine.registry['nginx:1.25'] = NEW_IMAGE_ID
    return fake_engine


@pytest.fixture(scope="function")
def test_db(tmp_path):
    """
    Temporary SQLite database for testing.

    Each test gets its own file, so tests don't affect each other.
    """
    db = DatabaseManager(str(tmp_path / 'dockwarden-test.db'))
    yield db
    db.engine.dispose()


@pytest.fixture
def ledger(test_db):
    return DatabaseExecutionLedger(test_db)


@pytest.fixture
def event_bus():
    """Create a fresh event bus for testing."""
    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    """Every event delivered through event_bus, in order."""
    events = []

    async def record(event):
        events.append(event)

    for event_type in EventType:
        event_bus.subscribe(event_type, record)
    return events


@pytest.fixture
def emitter(event_bus):
    return UpdateEventEmitter(event_bus)
