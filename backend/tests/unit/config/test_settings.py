"""
Tests for environment-driven configuration parsing and validation.
"""

import pytest
from unittest.mock import patch

from config.settings import AppConfig, _parse_environments, _parse_registry_credentials


@pytest.mark.unit
class TestParseEnvironments:

    def test_empty(self):
        assert _parse_environments('') == {}

    def test_keys_become_strings(self):
        assert _parse_environments('{"2": "tcp://10.0.0.5:2375", "3": "ssh://me@host"}') == {
            '2': 'tcp://10.0.0.5:2375',
            '3': 'ssh://me@host',
        }

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            _parse_environments('["tcp://10.0.0.5:2375"]')


@pytest.mark.unit
class TestParseRegistryCredentials:

    def test_hosts_lowercased(self):
        parsed = _parse_registry_credentials('{"GHCR.io": {"username": "me", "password": "token"}}')
        assert parsed == {'ghcr.io': {'username': 'me', 'password': 'token'}}

    def test_missing_password(self):
        with pytest.raises(ValueError, match='ghcr.io'):
            _parse_registry_credentials('{"ghcr.io": {"username": "me"}}')

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            _parse_registry_credentials('{not json')


@pytest.mark.unit
class TestValidate:

    def test_defaults_valid(self):
        assert AppConfig.validate()

    @pytest.mark.parametrize('attr, value', [
        ('PORT', 70000),
        ('UNMANAGED_STACK_POLICY', 'fallback'),
        ('SCANNER', 'clair'),
        ('DEFAULT_VULNERABILITY_CRITERIA', 'sometimes'),
        ('STOP_TIMEOUT_SECONDS', 0),
    ])
    def test_invalid(self, attr, value):
        with patch.object(AppConfig, attr, value):
            with pytest.raises(ValueError):
                AppConfig.validate()
