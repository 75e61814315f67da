"""
Vulnerability scanners.

A scanner takes an image reference that the engine can resolve locally
(including an unpromoted temp tag) and returns a ScanSummary. Trivy runs as a
throwaway container on the same engine, talking to it through the socket.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import docker

from updates.engine import DockerEngine
from updates.vulnerability_gate import SEVERITIES, ScanSummary
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

# async def progress(message: str) -> None
ScanProgressCallback = Callable[[str], Awaitable[None]]


class ScanError(Exception):
    """Scanner ran but produced no usable result."""


class VulnerabilityScanner(ABC):
    name = "scanner"

    @abstractmethod
    async def scan(
        self,
        image: str,
        progress: Optional[ScanProgressCallback] = None
    ) -> ScanSummary:
        """Scan ``image`` and return severity counts. Raises ScanError."""


def parse_trivy_report(report: Dict[str, Any], scanner: str = "trivy") -> ScanSummary:
    """
    Count vulnerabilities in a ``trivy image --format json`` report.

    Trivy reports one entry per target (OS packages, language lockfiles...);
    the same CVE in two targets is two findings, matching Trivy's own totals.
    """
    counts = {severity: 0 for severity in SEVERITIES}
    for result in report.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            severity = str(vuln.get("Severity", "UNKNOWN")).lower()
            if severity not in counts:
                severity = "unknown"
            counts[severity] += 1
    return ScanSummary(**counts, scanner=scanner, scanned_at=datetime.now(timezone.utc))


class TrivyScanner(VulnerabilityScanner):
    name = "trivy"

    CACHE_VOLUME = "dockwarden-trivy-cache"

    def __init__(
        self,
        engine: DockerEngine,
        trivy_image: str = "aquasec/trivy:latest",
        docker_socket: str = "/var/run/docker.sock",
        timeout: int = 900
    ):
        self.engine = engine
        self.trivy_image = trivy_image
        self.docker_socket = docker_socket
        self.timeout = timeout
        # Trivy's DB cache lives in one volume; concurrent runs corrupt it
        self._lock = asyncio.Lock()

    async def scan(self, image: str, progress: Optional[ScanProgressCallback] = None) -> ScanSummary:
        async with self._lock:
            await self._notify(progress, f"Scanning {image} with Trivy")
            output = await self._run(image)

        try:
            report = json.loads(output)
        except ValueError as e:
            raise ScanError(f"Trivy produced invalid JSON: {e}")

        summary = parse_trivy_report(report, scanner=self.name)
        await self._notify(progress, f"Trivy: {summary.describe()}")
        return summary

    async def _run(self, image: str) -> str:
        client = self.engine.client
        command = ["image", "--format", "json", "--quiet", "--scanners", "vuln", image]
        container = await async_docker_call(
            client.containers.run,
            self.trivy_image,
            command,
            detach=True,
            volumes={
                self.docker_socket: {'bind': '/var/run/docker.sock', 'mode': 'ro'},
                self.CACHE_VOLUME: {'bind': '/root/.cache/trivy', 'mode': 'rw'},
            },
            labels={'dockwarden.scanner': 'trivy'},
        )
        try:
            try:
                result = await asyncio.wait_for(async_docker_call(container.wait), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise ScanError(f"Trivy scan timed out after {self.timeout}s")

            if result.get('StatusCode', 1) != 0:
                stderr = await async_docker_call(container.logs, stdout=False, stderr=True)
                raise ScanError(f"Trivy exited with {result.get('StatusCode')}: {stderr.decode(errors='replace')[-500:]}")

            stdout = await async_docker_call(container.logs, stdout=True, stderr=False)
            return stdout.decode('utf-8', errors='replace')
        finally:
            try:
                await async_docker_call(container.remove, force=True)
            except docker.errors.APIError as e:
                logger.warning(f"Failed to remove Trivy container: {e}")

    @staticmethod
    async def _notify(progress: Optional[ScanProgressCallback], message: str):
        if progress:
            try:
                await progress(message)
            except Exception as e:
                logger.debug(f"Scan progress callback failed: {e}")


def build_scanners(engine: DockerEngine) -> List[VulnerabilityScanner]:
    """Scanners enabled by configuration. Empty list means scanning is off."""
    from config.settings import AppConfig

    if AppConfig.SCANNER == 'trivy':
        return [TrivyScanner(
            engine,
            trivy_image=AppConfig.TRIVY_IMAGE,
            docker_socket=AppConfig.DOCKER_SOCKET,
            timeout=AppConfig.SCAN_TIMEOUT_SECONDS,
        )]
    return []
