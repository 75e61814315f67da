"""
Tests for the self-update helper's stop/remove/rename/reconnect/start sequence.
"""

import docker
import pytest
from unittest.mock import MagicMock, patch

from selfupdate import helper as helper_module
from selfupdate.helper import EXIT_BAD_CONTRACT, EXIT_FAILED, EXIT_OK, SelfUpdateHelper
from selfupdate.helper_contract import HelperContract
from updates.snapshot import NetworkAttachment


@pytest.fixture
def swap(fake_engine, make_container):
    """Old container running, replacement pre-created as dockwarden-updating."""
    old_id = fake_engine.add_container(make_container(
        name='dockwarden', image='dockwarden/dockwarden:1.0',
        network_mode='frontend', networks={'frontend': {}, 'backend': {}},
    ))
    new_id = fake_engine.add_container(make_container(
        name='dockwarden-updating', image='dockwarden/dockwarden:2.0',
        running=False, network_mode='frontend', networks={},
    ))
    contract = HelperContract(
        old_container_id=old_id,
        new_container_id=new_id,
        container_name='dockwarden',
        networks=(
            NetworkAttachment(network_name='frontend', aliases=('dockwarden',), ipv4='172.20.0.5', is_primary=True),
            NetworkAttachment(network_name='backend', gateway_priority=5),
        ),
    )
    return old_id, new_id, contract


@pytest.mark.unit
class TestSelfUpdateHelper:

    @pytest.mark.asyncio
    async def test_replaces_container(self, fake_engine, swap):
        old_id, new_id, contract = swap

        code = await SelfUpdateHelper(fake_engine, contract, stop_timeout=5).run()

        assert code == EXIT_OK
        assert old_id not in fake_engine.containers
        new = fake_engine.containers[new_id]
        assert new['Name'] == '/dockwarden'
        assert new['State']['Running']
        assert set(new['NetworkSettings']['Networks']) == {'frontend', 'backend'}

        ops = [call[0] for call in fake_engine.calls]
        assert ops.index('remove_container') < ops.index('rename_container') < ops.index('start_container')

        frontend = next(c for c in fake_engine.connections if c['network'] == 'frontend')
        assert frontend['aliases'] == ['dockwarden']
        assert frontend['ipv4'] == '172.20.0.5'

    @pytest.mark.asyncio
    async def test_old_container_already_gone(self, fake_engine, swap):
        old_id, new_id, contract = swap
        del fake_engine.containers[old_id]

        assert await SelfUpdateHelper(fake_engine, contract).run() == EXIT_OK
        assert fake_engine.containers[new_id]['State']['Running']

    @pytest.mark.asyncio
    async def test_stop_failure_changes_nothing(self, fake_engine, swap):
        old_id, new_id, contract = swap
        fake_engine.fail_on('stop_container', docker.errors.APIError('daemon busy'))

        assert await SelfUpdateHelper(fake_engine, contract).run() == EXIT_FAILED
        assert fake_engine.containers[old_id]['State']['Running']
        assert fake_engine.called('remove_container') == []

    @pytest.mark.asyncio
    async def test_remove_failure_restarts_old(self, fake_engine, swap):
        old_id, new_id, contract = swap
        fake_engine.fail_on('remove_container', docker.errors.APIError('device busy'))

        assert await SelfUpdateHelper(fake_engine, contract).run() == EXIT_FAILED
        assert fake_engine.containers[old_id]['State']['Running']
        assert fake_engine.called('rename_container') == []

    @pytest.mark.asyncio
    async def test_network_failure_does_not_stop_start(self, fake_engine, swap):
        old_id, new_id, contract = swap
        fake_engine.fail_on('connect_network', docker.errors.APIError('address in use'), match='frontend')

        assert await SelfUpdateHelper(fake_engine, contract).run() == EXIT_OK
        assert fake_engine.containers[new_id]['State']['Running']
        assert 'backend' in fake_engine.containers[new_id]['NetworkSettings']['Networks']

    @pytest.mark.asyncio
    async def test_start_failure(self, fake_engine, swap):
        old_id, new_id, contract = swap
        fake_engine.fail_on('start_container', docker.errors.APIError('port is already allocated'))

        assert await SelfUpdateHelper(fake_engine, contract).run() == EXIT_FAILED


@pytest.mark.unit
class TestHelperMain:

    def test_bad_contract_exit_code(self):
        assert helper_module.main({'HELPER_CONTRACT_VERSION': '1'}) == EXIT_BAD_CONTRACT

    def test_runs_against_socket_from_env(self, swap):
        old_id, new_id, contract = swap
        env = dict(item.split('=', 1) for item in contract.to_env())
        env['DOCKER_SOCKET'] = '/run/docker.sock'

        with patch.object(helper_module.docker, 'DockerClient') as client_cls, \
             patch.object(helper_module, 'SelfUpdateHelper') as helper_cls:
            helper_cls.return_value.run = MagicMock(return_value=_completed(EXIT_OK))
            code = helper_module.main(env)

        assert code == EXIT_OK
        client_cls.assert_called_once_with(base_url='unix:///run/docker.sock')
        assert helper_cls.call_args.args[1].new_container_id == new_id


async def _completed(value):
    return value
