"""
Tests for registry credential lookup.
"""

import pytest
from unittest.mock import patch

from utils.registry_credentials import get_registry_credentials

CREDENTIALS = {
    'ghcr.io': {'username': 'octo', 'password': 'ghp_token'},
    'docker.io': {'username': 'hubuser', 'password': 'hubpass'},
}


@pytest.mark.unit
class TestRegistryCredentials:

    def test_exact_registry(self):
        assert get_registry_credentials('ghcr.io', CREDENTIALS) == {'username': 'octo', 'password': 'ghp_token'}

    def test_case_insensitive(self):
        assert get_registry_credentials('GHCR.io', CREDENTIALS)['username'] == 'octo'

    @pytest.mark.parametrize('host', ['docker.io', 'index.docker.io', 'registry-1.docker.io', ''])
    def test_docker_hub_aliases(self, host):
        assert get_registry_credentials(host, CREDENTIALS)['username'] == 'hubuser'

    def test_hub_stored_under_alias(self):
        credentials = {'index.docker.io': {'username': 'legacy', 'password': 'x'}}
        assert get_registry_credentials('docker.io', credentials)['username'] == 'legacy'

    def test_unknown_registry(self):
        assert get_registry_credentials('registry.example.com:5000', CREDENTIALS) is None

    def test_defaults_to_app_config(self):
        with patch('config.settings.AppConfig.REGISTRY_CREDENTIALS', CREDENTIALS):
            assert get_registry_credentials('ghcr.io')['username'] == 'octo'
