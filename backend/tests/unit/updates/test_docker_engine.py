"""
Tests for the DockerEngine facade over the low-level SDK client.
"""

import asyncio
import time

import docker
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from updates import engine as engine_module
from updates.engine import DockerEngine, get_engine
from updates.image_ref import ImageReference
from updates.safe_pull import SafePullGuard
from updates.types import SafePullStatus
from utils.keyed_lock import KeyedLock


@pytest.fixture(autouse=True)
def no_stored_credentials():
    # Keep pulls without explicit credentials away from ~/.docker/config.json
    with patch.object(docker.auth, 'get_config_header', return_value=None):
        yield


@pytest.fixture
def client():
    client = MagicMock()
    client.api.api_version = '1.45'
    return client


@pytest.fixture
def engine(client):
    return DockerEngine(client, environment_id='2')


@pytest.mark.unit
class TestContainers:

    @pytest.mark.asyncio
    async def test_find_missing_container(self, engine, client):
        client.api.inspect_container.side_effect = docker.errors.NotFound('No such container: web')
        assert await engine.find_container('web') is None

    @pytest.mark.asyncio
    async def test_create_returns_id(self, engine, client):
        client.api.create_container.return_value = {'Id': 'c' * 64, 'Warnings': ['memory limit ignored']}

        container_id = await engine.create_container({'image': 'nginx:1.25', 'name': 'web'})

        assert container_id == 'c' * 64
        client.api.create_container.assert_called_once_with(image='nginx:1.25', name='web')

    @pytest.mark.asyncio
    async def test_logs_decoded(self, engine, client):
        client.api.logs.return_value = b'ready\n'
        assert await engine.container_logs('web') == 'ready\n'


@pytest.mark.unit
class TestNetworks:

    @pytest.mark.asyncio
    async def test_connect_uses_sdk_below_gw_priority_api(self, engine, client):
        await engine.connect_network('frontend', 'web', aliases=['web'], ipv4_address='172.20.0.5', gw_priority=10)

        client.api.connect_container_to_network.assert_called_once_with(
            'web', 'frontend', ipv4_address='172.20.0.5', ipv6_address=None, aliases=['web'], links=None,
        )
        client.api._post_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_posts_gw_priority(self, engine, client):
        client.api.api_version = '1.48'
        client.api._url.return_value = '/networks/frontend/connect'

        await engine.connect_network('frontend', 'web', aliases=['web'], ipv4_address='172.20.0.5', gw_priority=10)

        client.api._post_json.assert_called_once_with('/networks/frontend/connect', data={
            'Container': 'web',
            'EndpointConfig': {
                'GwPriority': 10,
                'Aliases': ['web'],
                'IPAMConfig': {'IPv4Address': '172.20.0.5'},
            },
        })
        client.api.connect_container_to_network.assert_not_called()


@pytest.mark.unit
class TestImages:

    @pytest.mark.asyncio
    async def test_inspect_missing_image(self, engine, client):
        client.api.inspect_image.side_effect = docker.errors.ImageNotFound('No such image')
        assert await engine.get_image_id('nginx:1.25') is None

    @pytest.mark.asyncio
    async def test_pull_passes_credentials(self, engine, client):
        client.api._stream_helper.return_value = iter([{'status': 'Pull complete', 'id': 'a1b2'}])
        client.api.inspect_image.return_value = {'Id': 'sha256:' + 'b' * 64}
        auth = {'username': 'me', 'password': 'token'}

        assert await engine.pull_image('ghcr.io/me/app:1', auth_config=auth) == 'sha256:' + 'b' * 64

        kwargs = client.api._post.call_args.kwargs
        assert kwargs['params'] == {'fromImage': 'ghcr.io/me/app', 'tag': '1'}
        assert kwargs['headers'] == {'X-Registry-Auth': docker.auth.encode_header(auth)}
        assert kwargs['stream'] is True
        client.api._post.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_pull_with_progress_filters_byte_counters(self, engine, client):
        client.api._stream_helper.return_value = iter([
            {'status': 'Pulling from library/nginx', 'id': '1.25'},
            {'status': 'Downloading', 'id': 'a1b2', 'progressDetail': {'current': 1024, 'total': 4096}},
            {'status': 'Pull complete', 'id': 'a1b2', 'progressDetail': {}},
            {'status': 'Digest: sha256:abc'},
        ])
        client.api.inspect_image.return_value = {'Id': 'sha256:' + 'b' * 64}
        messages = []

        async def progress(message):
            messages.append(message)

        image_id = await engine.pull_image_with_progress('nginx:1.25', progress)

        assert image_id == 'sha256:' + 'b' * 64
        assert messages == ['1.25: Pulling from library/nginx', 'a1b2: Pull complete', 'Digest: sha256:abc']

    @pytest.mark.asyncio
    async def test_pull_stream_error(self, engine, client):
        client.api._stream_helper.return_value = iter([{'error': 'manifest unknown'}])

        with pytest.raises(docker.errors.APIError, match='manifest unknown'):
            await engine.pull_image('nginx:9.9')
        client.api._post.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_pull_deadline_closes_stream(self, engine, client):
        consumed = []

        def slow_stream(response, decode):
            for n in range(10):
                time.sleep(0.05)
                consumed.append(n)
                yield {'status': 'Downloading', 'id': 'a1b2', 'progressDetail': {'current': n}}

        client.api._stream_helper.side_effect = slow_stream

        with pytest.raises(TimeoutError):
            await engine.pull_image('nginx:1.25', timeout=0.1)

        # Nothing reads the stream once the call has returned
        client.api._post.return_value.close.assert_called_once()
        read = len(consumed)
        await asyncio.sleep(0.2)
        assert len(consumed) == read < 10

    @pytest.mark.asyncio
    async def test_refused_tag(self, engine, client):
        client.api.tag.return_value = False
        with pytest.raises(docker.errors.APIError):
            await engine.tag_image('sha256:' + 'b' * 64, 'nginx', '1.25')


@pytest.mark.unit
class TestGetEngine:

    @pytest.fixture(autouse=True)
    def isolated_engines(self):
        with patch.dict(engine_module._engines, clear=True):
            yield

    def test_local_engine_cached(self):
        with patch.object(engine_module.docker, 'DockerClient') as client_cls:
            first = get_engine(None)
            assert get_engine(None) is first
        client_cls.assert_called_once()
        assert client_cls.call_args.kwargs['base_url'].startswith('unix://')

    def test_remote_environment(self):
        with patch('config.settings.AppConfig.ENVIRONMENTS', {'2': 'tcp://10.0.0.5:2375'}), \
             patch.object(engine_module.docker, 'DockerClient') as client_cls:
            engine = get_engine('2')
        assert engine.environment_id == '2'
        assert client_cls.call_args.kwargs['base_url'] == 'tcp://10.0.0.5:2375'

    def test_unknown_environment(self):
        with patch.object(engine_module.docker, 'DockerClient'):
            with pytest.raises(KeyError):
                get_engine('99')


@pytest.mark.unit
class TestGuardedPullDeadline:
    """A timed-out pull must not move the production tag after the guard gives up."""

    @pytest.mark.asyncio
    async def test_timed_out_pull_leaves_production_tag(self, engine, client):
        old_id, new_id = 'sha256:' + 'a' * 64, 'sha256:' + 'b' * 64
        tags = {'nginx:1.25': old_id}

        def tag(image, repository, tag, force=False):
            tags[f"{repository}:{tag}"] = image
            return True

        def inspect_image(ref):
            if ref not in tags:
                raise docker.errors.ImageNotFound(ref)
            return {'Id': tags[ref]}

        def slow_stream(response, decode):
            for n in range(10):
                time.sleep(0.05)
                yield {'status': 'Downloading', 'id': 'a1b2', 'progressDetail': {'current': n}}
            # The engine moves the tag only once the pull completes
            tags['nginx:1.25'] = new_id
            yield {'status': 'Status: Downloaded newer image for nginx:1.25'}

        client.api.tag.side_effect = tag
        client.api.inspect_image.side_effect = inspect_image
        client.api._stream_helper.side_effect = slow_stream
        inspect = AsyncMock()

        guard = SafePullGuard(engine, locks=KeyedLock(), pull_timeout=0.1)
        result = await guard.run(ImageReference.parse('nginx:1.25'), old_id, inspect)

        assert result.status == SafePullStatus.FAILED
        assert result.failed_stage == 'pull'
        assert result.production_tag_intact
        inspect.assert_not_awaited()

        await asyncio.sleep(0.6)
        assert tags['nginx:1.25'] == old_id
