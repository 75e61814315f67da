"""
Compose-aware update routing.

Containers that belong to a stack we manage are updated by re-converging the
stack, so compose keeps ownership of labels, networks and dependencies.
Everything else goes through the container recreator. Compose containers
whose stack file we don't have are recreated with a warning (or refused,
depending on UNMANAGED_STACK_POLICY), since recreation can't reproduce
compose-only semantics such as depends_on ordering.
"""

import logging
from typing import Optional

from stacks.compose_runner import ComposeError, ComposeRunner
from stacks.stack_storage import StackStore
from updates.recreator import ContainerRecreator
from updates.snapshot import ContainerSnapshot
from updates.types import LogCallback, RoutePath, RouteResult

logger = logging.getLogger(__name__)

POLICY_RECREATE = 'recreate'
POLICY_REFUSE = 'refuse'


class UpdateRouter:

    def __init__(
        self,
        recreator: ContainerRecreator,
        stack_store: StackStore,
        compose_runner: ComposeRunner,
        unmanaged_stack_policy: str = POLICY_RECREATE,
        docker_host: Optional[str] = None
    ):
        self.recreator = recreator
        self.stack_store = stack_store
        self.compose_runner = compose_runner
        self.unmanaged_stack_policy = unmanaged_stack_policy
        self.docker_host = docker_host

    async def apply(
        self,
        snapshot: ContainerSnapshot,
        log: Optional[LogCallback] = None
    ) -> RouteResult:
        """Replace the container described by ``snapshot`` with one on its (now promoted) image."""
        if snapshot.is_compose_managed:
            stack = await self.stack_store.get_definition(snapshot.compose_project)
            if stack is not None:
                return await self._converge_stack(snapshot, stack, log)

            warning = (
                f"Stack '{snapshot.compose_project}' is not managed here; compose-specific "
                f"configuration (depends_on, scaling, profiles) will not be re-applied"
            )
            if self.unmanaged_stack_policy == POLICY_REFUSE:
                await _log(log, f"Refusing to recreate {snapshot.name}: {warning}")
                return RouteResult(
                    path=RoutePath.REFUSED,
                    success=False,
                    error_message=f"Unmanaged stack '{snapshot.compose_project}'",
                    warnings=[warning],
                )

            logger.warning(f"{snapshot.name}: {warning}")
            await _log(log, f"Warning: {warning}")
            result = await self._recreate(snapshot, log)
            result.degraded = True
            result.warnings.insert(0, warning)
            return result

        return await self._recreate(snapshot, log)

    async def _converge_stack(self, snapshot: ContainerSnapshot, stack, log) -> RouteResult:
        await _log(log, f"{snapshot.name} belongs to stack '{stack.name}', re-converging stack")
        try:
            converge = await self.compose_runner.converge(stack, docker_host=self.docker_host, log=log)
        except ComposeError as e:
            logger.error(f"Stack {stack.name} re-convergence failed: {e.message}")
            return RouteResult(path=RoutePath.STACK, success=False, error_message=e.message)

        if converge.recreated_services:
            await _log(log, f"Recreated services: {', '.join(converge.recreated_services)}")
        else:
            await _log(log, "Compose reported no recreated services")
        return RouteResult(
            path=RoutePath.STACK,
            success=True,
            recreated_services=converge.recreated_services,
        )

    async def _recreate(self, snapshot: ContainerSnapshot, log) -> RouteResult:
        recreate = await self.recreator.recreate(snapshot.name, log=log, snapshot=snapshot)
        return RouteResult(
            path=RoutePath.RECREATE,
            success=recreate.success,
            error_message=recreate.error_message,
            recreate=recreate,
            warnings=list(recreate.warnings),
        )


async def _log(log: Optional[LogCallback], line: str):
    if log:
        await log(line)
