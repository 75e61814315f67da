"""
Tests for the update API routes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from api import update_routes
from updates.vulnerability_gate import VulnerabilityCriterion


@pytest.fixture
def task():
    task = MagicMock()
    outcome = MagicMock()
    outcome.to_dict.return_value = {'executionId': 7, 'status': 'success', 'details': {}, 'error': None}
    task.run = AsyncMock(return_value=outcome)
    return task


@pytest.fixture
def client(task, ledger):
    app = FastAPI()
    app.include_router(update_routes.router)
    factory_calls = []

    def factory(environment_id):
        factory_calls.append(environment_id)
        if environment_id == 'missing':
            raise KeyError(environment_id)
        return task

    app.dependency_overrides[update_routes.get_task_factory] = lambda: factory
    app.dependency_overrides[update_routes.get_ledger] = lambda: ledger
    client = TestClient(app)
    client.factory_calls = factory_calls
    return client


@pytest.mark.unit
class TestRunUpdate:

    def test_runs_task(self, client, task):
        response = client.post('/api/updates/run', json={
            'container': 'web',
            'environment_id': '2',
            'triggered_by': 'scheduler',
            'vulnerability_criteria': 'critical',
        })

        assert response.status_code == 200
        assert response.json()['status'] == 'success'
        assert client.factory_calls == ['2']
        task.run.assert_awaited_once_with(
            'web', environment_id='2', triggered_by='scheduler', criterion=VulnerabilityCriterion.CRITICAL,
        )

    def test_default_criterion(self, client, task):
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr('config.settings.AppConfig.DEFAULT_VULNERABILITY_CRITERIA', 'any')
            client.post('/api/updates/run', json={'container': 'web'})

        assert task.run.await_args.kwargs['criterion'] == 'any'
        assert task.run.await_args.kwargs['triggered_by'] == 'user'

    def test_unknown_environment(self, client):
        response = client.post('/api/updates/run', json={'container': 'web', 'environment_id': 'missing'})
        assert response.status_code == 404

    def test_invalid_criterion(self, client, task):
        response = client.post('/api/updates/run', json={'container': 'web', 'vulnerability_criteria': 'sometimes'})
        assert response.status_code == 422
        task.run.assert_not_awaited()

    def test_empty_container_name(self, client):
        assert client.post('/api/updates/run', json={'container': ''}).status_code == 422


@pytest.mark.unit
class TestGetExecution:

    def test_found(self, client, ledger):
        handle = ledger.begin('web', None, 'user')

        response = client.get(f'/api/updates/executions/{handle}')

        assert response.status_code == 200
        assert response.json()['targetName'] == 'web'
        assert response.json()['status'] == 'running'

    def test_missing(self, client):
        assert client.get('/api/updates/executions/9999').status_code == 404
