"""
Scanning Module

Vulnerability scanners and the per-image scan cache.
"""

from scanning.scan_cache import ScanCache
from scanning.scanner import ScanError, TrivyScanner, VulnerabilityScanner, build_scanners

__all__ = [
    'ScanCache',
    'ScanError',
    'TrivyScanner',
    'VulnerabilityScanner',
    'build_scanners',
]
