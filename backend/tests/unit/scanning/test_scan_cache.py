"""
Tests for the per-image scan cache.
"""

from datetime import datetime, timedelta, timezone

import pytest

from scanning.scan_cache import ScanCache
from updates.vulnerability_gate import ScanSummary

IMAGE_ID = 'sha256:' + 'a' * 64


@pytest.fixture
def cache(test_db):
    return ScanCache(test_db)


@pytest.mark.unit
class TestScanCache:

    def test_round_trip(self, cache):
        cache.save(IMAGE_ID, None, [ScanSummary(critical=1, low=2, scanner='trivy')], image_ref='nginx:1.25')

        [summary] = cache.get(IMAGE_ID, None)
        assert summary.critical == 1
        assert summary.low == 2
        assert summary.scanner == 'trivy'

    def test_latest_result_per_scanner(self, cache):
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        cache.save(IMAGE_ID, None, [ScanSummary(high=5, scanner='trivy', scanned_at=earlier)])
        cache.save(IMAGE_ID, None, [ScanSummary(high=2, scanner='trivy')])

        [summary] = cache.get(IMAGE_ID, None)
        assert summary.high == 2

    def test_environments_kept_apart(self, cache):
        cache.save(IMAGE_ID, '2', [ScanSummary(high=1, scanner='trivy')])
        assert cache.get(IMAGE_ID, None) == []
        assert cache.get_combined(IMAGE_ID, None) is None

    def test_stale_results_ignored(self, test_db):
        cache = ScanCache(test_db, max_age=timedelta(days=1))
        old = datetime.now(timezone.utc) - timedelta(days=3)
        cache.save(IMAGE_ID, None, [ScanSummary(critical=1, scanner='trivy', scanned_at=old)])

        assert cache.get(IMAGE_ID, None) == []

    def test_combined_across_scanners(self, cache):
        cache.save(IMAGE_ID, None, [
            ScanSummary(critical=1, scanner='trivy'),
            ScanSummary(high=3, scanner='grype'),
        ])

        combined = cache.get_combined(IMAGE_ID, None)
        assert combined.critical == 1
        assert combined.high == 3
