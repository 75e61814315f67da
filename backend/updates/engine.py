"""
Container engine adapter.

Thin async facade over the Docker SDK's low-level API. Every method maps to
one engine call and returns plain dicts (inspect payloads) or ids, so the
update pipeline never holds SDK model objects and is easy to fake in tests.

One DockerEngine exists per environment; get_engine() hands them out.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import docker
from packaging import version

from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

# Endpoint GwPriority was added in Engine API 1.48
GW_PRIORITY_MIN_API = version.parse("1.48")


class DockerEngine:
    """Async wrapper around one docker.DockerClient."""

    def __init__(self, client: docker.DockerClient, environment_id: Optional[str] = None):
        self.client = client
        self.environment_id = environment_id

    @property
    def api_version(self) -> str:
        return self.client.api.api_version

    @property
    def base_url(self) -> str:
        return self.client.api.base_url

    # Containers

    async def inspect_container(self, ref: str) -> Dict[str, Any]:
        """Inspect by id or name. Raises docker.errors.NotFound."""
        return await async_docker_call(self.client.api.inspect_container, ref)

    async def find_container(self, ref: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.inspect_container(ref)
        except docker.errors.NotFound:
            return None

    async def list_containers(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Summary dicts (Id, Names, Labels, State) for all containers."""
        return await async_docker_call(self.client.api.containers, all=True, filters=filters)

    async def create_container(self, spec: Dict[str, Any]) -> str:
        """Create from a spec built by updates.snapshot.build_create_spec. Returns the id."""
        response = await async_docker_call(self.client.api.create_container, **spec)
        for warning in response.get('Warnings') or []:
            logger.warning(f"Engine warning creating {spec.get('name')}: {warning}")
        return response['Id']

    async def start_container(self, ref: str):
        await async_docker_call(self.client.api.start, ref)

    async def stop_container(self, ref: str, timeout: int = 10):
        await async_docker_call(self.client.api.stop, ref, timeout=timeout)

    async def remove_container(self, ref: str, force: bool = False):
        await async_docker_call(self.client.api.remove_container, ref, force=force)

    async def rename_container(self, ref: str, name: str):
        await async_docker_call(self.client.api.rename, ref, name)

    async def container_logs(self, ref: str, tail: int = 200) -> str:
        raw = await async_docker_call(
            self.client.api.logs, ref, stdout=True, stderr=True, tail=tail, timestamps=False
        )
        if isinstance(raw, bytes):
            return raw.decode('utf-8', errors='replace')
        return raw or ''

    # Networks

    async def connect_network(
        self,
        network: str,
        container: str,
        aliases: Optional[List[str]] = None,
        ipv4_address: Optional[str] = None,
        ipv6_address: Optional[str] = None,
        links: Optional[List[str]] = None,
        gw_priority: Optional[int] = None
    ):
        if gw_priority and version.parse(self.api_version) >= GW_PRIORITY_MIN_API:
            await async_docker_call(
                self._connect_with_endpoint_config, network, container,
                aliases, ipv4_address, ipv6_address, links, gw_priority
            )
            return

        await async_docker_call(
            self.client.api.connect_container_to_network,
            container, network,
            ipv4_address=ipv4_address,
            ipv6_address=ipv6_address,
            aliases=aliases or None,
            links=links or None,
        )

    def _connect_with_endpoint_config(self, network, container, aliases, ipv4, ipv6, links, gw_priority):
        # docker-py has no GwPriority parameter, so post the endpoint config directly
        api = self.client.api
        endpoint: Dict[str, Any] = {'GwPriority': gw_priority}
        if aliases:
            endpoint['Aliases'] = aliases
        if links:
            endpoint['Links'] = links
        ipam = {}
        if ipv4:
            ipam['IPv4Address'] = ipv4
        if ipv6:
            ipam['IPv6Address'] = ipv6
        if ipam:
            endpoint['IPAMConfig'] = ipam
        url = api._url("/networks/{0}/connect", network)
        response = api._post_json(url, data={'Container': container, 'EndpointConfig': endpoint})
        api._raise_for_status(response)

    async def disconnect_network(self, network: str, container: str, force: bool = True):
        await async_docker_call(
            self.client.api.disconnect_container_from_network, container, network, force=force
        )

    # Images

    async def inspect_image(self, ref: str) -> Optional[Dict[str, Any]]:
        try:
            return await async_docker_call(self.client.api.inspect_image, ref)
        except (docker.errors.ImageNotFound, docker.errors.NotFound):
            return None

    async def get_image_id(self, ref: str) -> Optional[str]:
        attrs = await self.inspect_image(ref)
        return attrs.get('Id') if attrs else None

    async def pull_image(
        self,
        ref: str,
        auth_config: Optional[Dict[str, str]] = None,
        timeout: int = 1800
    ) -> str:
        """
        Pull ``ref`` and return the pulled image id.

        The deadline is enforced on the pull stream itself: when it passes,
        the connection is closed so the engine abandons the pull. This call
        only returns once the engine can no longer move the tag.
        """
        await async_docker_call(self._stream_pull, ref, auth_config, timeout, None, None)
        logger.debug(f"Pulled image {ref}")
        image_id = await self.get_image_id(ref)
        if not image_id:
            raise docker.errors.ImageNotFound(f"Pulled image {ref} could not be inspected")
        return image_id

    async def pull_image_with_progress(
        self,
        ref: str,
        progress: Callable[[str], Awaitable[None]],
        auth_config: Optional[Dict[str, str]] = None,
        timeout: int = 1800
    ) -> Optional[str]:
        """
        Pull ``ref`` reporting status lines ("<layer>: Pull complete") as they arrive.

        Returns the pulled image id.
        """
        loop = asyncio.get_running_loop()
        await async_docker_call(self._stream_pull, ref, auth_config, timeout, progress, loop)
        return await self.get_image_id(ref)

    def _open_pull(self, ref: str, auth_config: Optional[Dict[str, str]]):
        # Same request docker-py's pull() makes, but keeping the response so
        # the connection can be closed when the deadline passes
        api = self.client.api
        repository, tag = docker.utils.parse_repository_tag(ref)
        headers = {}
        if auth_config:
            headers['X-Registry-Auth'] = docker.auth.encode_header(auth_config)
        else:
            registry, _ = docker.auth.resolve_repository_name(repository)
            header = docker.auth.get_config_header(api, registry)
            if header:
                headers['X-Registry-Auth'] = header
        params = {'fromImage': repository, 'tag': tag or 'latest'}
        response = api._post(api._url('/images/create'), params=params, headers=headers, stream=True, timeout=None)
        api._raise_for_status(response)
        return response

    def _stream_pull(self, ref, auth_config, timeout, progress, loop):
        # Runs in a worker thread; progress is awaited on the loop
        deadline = time.monotonic() + timeout
        response = self._open_pull(ref, auth_config)
        try:
            for line in self.client.api._stream_helper(response, decode=True):
                if time.monotonic() > deadline:
                    raise TimeoutError(f"Image pull timed out after {timeout}s for {ref}")
                if line.get('error'):
                    raise docker.errors.APIError(line['error'])
                if progress is None:
                    continue
                status = line.get('status')
                # Per-chunk byte counters would flood observers
                if not status or line.get('progressDetail', {}).get('current'):
                    continue
                message = f"{line['id']}: {status}" if line.get('id') else status
                try:
                    asyncio.run_coroutine_threadsafe(progress(message), loop).result()
                except Exception as e:
                    logger.debug(f"Pull progress observer failed: {e}")
        finally:
            # An unfinished pull is cancelled by the engine once its client goes away
            response.close()

    async def tag_image(self, image_id: str, repository: str, tag: str):
        ok = await async_docker_call(self.client.api.tag, image_id, repository, tag, force=True)
        if ok is False:
            raise docker.errors.APIError(f"Engine refused to tag {image_id} as {repository}:{tag}")

    async def remove_image(self, ref: str, force: bool = False):
        await async_docker_call(self.client.api.remove_image, ref, force=force)

    def close(self):
        try:
            self.client.close()
        except Exception as e:
            logger.debug(f"Error closing docker client: {e}")


_engines: Dict[Optional[str], DockerEngine] = {}
_engines_lock = threading.Lock()


def get_engine(environment_id: Optional[str] = None) -> DockerEngine:
    """
    Get the engine for an environment.

    Environment ids map to engine URLs through DOCKWARDEN_ENVIRONMENTS; the
    default environment (None or unmapped "local") uses the local socket.
    """
    from config.settings import AppConfig

    key = str(environment_id) if environment_id is not None else None
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            base_url = AppConfig.ENVIRONMENTS.get(key) if key else None
            if not base_url:
                if key and key != 'local':
                    raise KeyError(f"Unknown environment: {environment_id}")
                base_url = f"unix://{AppConfig.DOCKER_SOCKET}"
            client = docker.DockerClient(base_url=base_url, timeout=AppConfig.DOCKER_CALL_TIMEOUT_SECONDS)
            engine = DockerEngine(client, environment_id=key)
            _engines[key] = engine
            logger.info(f"Connected engine for environment {key or 'local'} at {base_url}")
        return engine


def close_engines():
    with _engines_lock:
        for engine in _engines.values():
            engine.close()
        _engines.clear()
