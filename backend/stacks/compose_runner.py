"""
Stack re-convergence via the compose CLI.

``docker compose up -d`` compares every service's container with the compose
file and the local images and recreates whatever drifted. After the safe-pull
guard promoted a new image, that is exactly the containers using it.

``--pull never`` matters: compose must use the image the gate approved, not
fetch whatever the registry serves now.
"""

import asyncio
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from stacks.stack_storage import StackDefinition

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], Awaitable[None]]

# " Container shop-api-1  Recreated"
_CONTAINER_LINE = re.compile(r'^\s*Container\s+(\S+)\s+(\w+)\s*$')


class ComposeError(Exception):
    """Compose CLI failed."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.returncode = returncode
        self.output = output or []


@dataclass
class ConvergeResult:
    stack_name: str
    recreated_services: List[str] = field(default_factory=list)
    output: List[str] = field(default_factory=list)


def service_from_container_name(container_name: str, project: str) -> str:
    """
    ``shop-api-1`` / ``shop_api_1`` -> ``api`` for project ``shop``.

    Falls back to the container name if it doesn't follow compose naming
    (services with an explicit container_name).
    """
    for sep in ('-', '_'):
        prefix = f"{project}{sep}"
        if container_name.startswith(prefix):
            rest = container_name[len(prefix):]
            head, _, index = rest.rpartition(sep)
            if head and index.isdigit():
                return head
            return rest
    return container_name


def parse_recreated_services(lines: List[str], project: str) -> List[str]:
    services = []
    for line in lines:
        match = _CONTAINER_LINE.match(line)
        if not match:
            continue
        container_name, state = match.groups()
        if state == 'Recreated':
            service = service_from_container_name(container_name, project)
            if service not in services:
                services.append(service)
    return services


class ComposeRunner:

    def __init__(self, compose_command: str = 'docker compose', timeout: int = 900):
        self.compose_command = shlex.split(compose_command)
        self.timeout = timeout

    def build_command(self, stack: StackDefinition) -> List[str]:
        cmd = list(self.compose_command) + ['--ansi', 'never', '-p', stack.name, '-f', str(stack.compose_file)]
        if stack.env_file is not None:
            cmd += ['--env-file', str(stack.env_file)]
        cmd += ['up', '-d', '--pull', 'never']
        return cmd

    async def converge(
        self,
        stack: StackDefinition,
        docker_host: Optional[str] = None,
        log: Optional[LogCallback] = None
    ) -> ConvergeResult:
        """
        Run ``up -d`` for the stack against ``docker_host``.

        Raises:
            ComposeError: Non-zero exit or timeout
        """
        cmd = self.build_command(stack)
        env = dict(os.environ)
        if docker_host:
            env['DOCKER_HOST'] = docker_host

        logger.info(f"Re-converging stack {stack.name}: {' '.join(cmd)}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                cwd=stack.path,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise ComposeError(f"compose up timed out after {self.timeout}s")
        except FileNotFoundError:
            raise ComposeError(f"Compose command not found: {self.compose_command[0]}")

        # Compose writes progress to stderr
        output = [line for line in (result.stdout + "\n" + result.stderr).splitlines() if line.strip()]
        for line in output:
            if log:
                await log(f"[compose] {line.strip()}")

        if result.returncode != 0:
            raise ComposeError(
                f"compose up exited with code {result.returncode}",
                returncode=result.returncode,
                output=output,
            )

        return ConvergeResult(
            stack_name=stack.name,
            recreated_services=parse_recreated_services(output, stack.name),
            output=output,
        )
