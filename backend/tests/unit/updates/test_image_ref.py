"""
Tests for image reference parsing.
"""

import pytest

from updates.image_ref import (
    MAX_TAG_LENGTH,
    ImageReference,
    extract_repo_digests,
    is_temp_tag,
)

DIGEST = 'sha256:' + 'c' * 64


@pytest.mark.unit
class TestImageReferenceParse:

    def test_official_image_defaults(self):
        ref = ImageReference.parse('nginx')
        assert ref.repository == 'nginx'
        assert ref.tag == 'latest'
        assert ref.registry == 'docker.io'
        assert ref.path == 'library/nginx'

    def test_namespaced_docker_hub_image(self):
        ref = ImageReference.parse('grafana/grafana:10.2.0')
        assert ref.registry == 'docker.io'
        assert ref.path == 'grafana/grafana'
        assert ref.tag == '10.2.0'

    def test_explicit_registry(self):
        ref = ImageReference.parse('ghcr.io/user/app:v1.0')
        assert ref.registry == 'ghcr.io'
        assert ref.path == 'user/app'
        assert str(ref) == 'ghcr.io/user/app:v1.0'

    def test_registry_port_is_not_a_tag(self):
        ref = ImageReference.parse('localhost:5000/app')
        assert ref.registry == 'localhost:5000'
        assert ref.repository == 'localhost:5000/app'
        assert ref.tag == 'latest'

    def test_registry_port_with_tag(self):
        ref = ImageReference.parse('myregistry.com:5000/team/app:2')
        assert ref.registry == 'myregistry.com:5000'
        assert ref.path == 'team/app'
        assert ref.tag == '2'

    def test_digest_reference_is_pinned(self):
        ref = ImageReference.parse(f'nginx@{DIGEST}')
        assert ref.is_digest_pinned
        assert ref.digest == DIGEST
        assert ref.tag is None
        assert str(ref) == f'nginx@{DIGEST}'

    def test_tag_and_digest_keeps_only_digest(self):
        ref = ImageReference.parse(f'nginx:1.25@{DIGEST}')
        assert ref.is_digest_pinned
        assert ref.repository == 'nginx'

    @pytest.mark.parametrize('bad', ['', '   ', 'nginx@', 'nginx@nodigest'])
    def test_malformed_references_rejected(self, bad):
        with pytest.raises(ValueError):
            ImageReference.parse(bad)


@pytest.mark.unit
class TestTempTag:

    def test_temp_tag_is_deterministic(self):
        ref = ImageReference.parse('nginx:1.25')
        assert ref.temp_tag() == ref.temp_tag()
        assert ref.temp_tag().repository == 'nginx'
        assert is_temp_tag(ref.temp_tag().tag)

    def test_temp_tags_differ_between_repositories(self):
        a = ImageReference.parse('team-a/app:latest').temp_tag()
        b = ImageReference.parse('team-b/app:latest').temp_tag()
        assert a.tag != b.tag

    def test_long_tag_is_truncated_to_engine_limit(self):
        ref = ImageReference.parse('app:' + 'x' * 127)
        assert len(ref.temp_tag().tag) <= MAX_TAG_LENGTH

    def test_digest_reference_has_no_temp_tag(self):
        with pytest.raises(ValueError):
            ImageReference.parse(f'nginx@{DIGEST}').temp_tag()

    def test_is_temp_tag(self):
        assert not is_temp_tag('1.25')
        assert not is_temp_tag(None)


@pytest.mark.unit
def test_extract_repo_digests():
    assert extract_repo_digests([f'nginx@{DIGEST}', 'garbage']) == [DIGEST]
    assert extract_repo_digests(None) == []
