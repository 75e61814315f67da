"""
Container recreator.

Replaces a container with one created from a snapshot of itself, optionally
pointing at a different image. Runs as a state machine:

    inspecting -> stopping -> removing -> creating -> network_reconnecting
               -> starting -> done
    (any step) -> failed

There is no rollback: once the old container is removed the only way is
forward. The snapshot is always taken before anything destructive happens,
and from stopping onwards the run is shielded from cancellation so a timeout
or disconnect can't strand the target halfway.
"""

import asyncio
import logging
from typing import Optional

import docker

from updates.engine import DockerEngine
from updates.snapshot import ContainerSnapshot, build_create_spec, capture_snapshot
from updates.state_machine import StepEvent, StepStateMachine, linear_transitions
from updates.types import LogCallback, RecreateResult, RecreateState

logger = logging.getLogger(__name__)

RECREATE_STEPS = [
    RecreateState.INSPECTING,
    RecreateState.STOPPING,
    RecreateState.REMOVING,
    RecreateState.CREATING,
    RecreateState.NETWORK_RECONNECTING,
    RecreateState.STARTING,
    RecreateState.DONE,
]
RECREATE_TRANSITIONS = linear_transitions(RECREATE_STEPS, RecreateState.FAILED)
RECREATE_TERMINAL = {RecreateState.DONE, RecreateState.FAILED}


class _RecreateRun:
    """State for one recreation."""

    def __init__(self, target: str, image: Optional[str]):
        self.target = target
        self.image = image
        self.snapshot: Optional[ContainerSnapshot] = None
        self.new_container_id: Optional[str] = None
        self.old_removed = False
        self.warnings = []
        self.error: Optional[str] = None
        self.machine = StepStateMachine(
            f"recreate {target}", RECREATE_TRANSITIONS,
            initial=RecreateState.INSPECTING, terminal=RECREATE_TERMINAL,
        )


class ContainerRecreator:

    def __init__(self, engine: DockerEngine, stop_timeout: int = 30):
        self.engine = engine
        self.stop_timeout = stop_timeout

    async def recreate(
        self,
        target: str,
        image: Optional[str] = None,
        log: Optional[LogCallback] = None,
        snapshot: Optional[ContainerSnapshot] = None
    ) -> RecreateResult:
        """
        Recreate ``target`` (name or id).

        Args:
            target: Container to replace
            image: Image for the replacement; defaults to the snapshot's
                own reference (which now resolves to the promoted image)
            log: Async line logger for progress
            snapshot: Use a snapshot captured earlier instead of inspecting
        """
        run = _RecreateRun(target, image)
        run.snapshot = snapshot

        # Inspecting is cancellable: nothing has been touched yet
        event = await self._run_step(run, log)
        run.machine.fire(event)
        if run.machine.is_terminal:
            return self._result(run)

        # Everything after this point must finish once started
        return await asyncio.shield(self._run_destructive(run, log))

    async def _run_destructive(self, run: _RecreateRun, log) -> RecreateResult:
        while not run.machine.is_terminal:
            event = await self._run_step(run, log)
            run.machine.fire(event)
        return self._result(run)

    async def _run_step(self, run: _RecreateRun, log) -> StepEvent:
        step = run.machine.state
        handler = getattr(self, f"_step_{step.value}")
        try:
            await handler(run, log)
            return StepEvent.SUCCEEDED
        except Exception as e:
            run.error = str(e)
            if run.old_removed:
                logger.critical(
                    f"Recreation of {run.target} failed at {step.value} after the old container "
                    f"was removed: {e}. Target has no replacement container."
                )
            else:
                logger.error(f"Recreation of {run.target} failed at {step.value}: {e}")
            await _log(log, f"Failed at {step.value}: {e}")
            return StepEvent.FAILED

    def _result(self, run: _RecreateRun) -> RecreateResult:
        states = run.machine.states_visited()
        if run.machine.state == RecreateState.DONE:
            return RecreateResult.success_result(run.new_container_id, warnings=run.warnings, states=states)
        return RecreateResult.failure_result(
            failed_step=run.machine.last_step.value,
            error_message=run.error or 'unknown error',
            old_container_removed=run.old_removed,
            new_container_id=run.new_container_id,
            warnings=run.warnings,
            states=states,
        )

    async def _step_inspecting(self, run: _RecreateRun, log):
        if run.snapshot is None:
            attrs = await self.engine.inspect_container(run.target)
            run.snapshot = capture_snapshot(attrs)
        snap = run.snapshot
        await _log(log, f"Captured configuration of {snap.name} ({snap.container_id[:12]})")

    async def _step_stopping(self, run: _RecreateRun, log):
        snap = run.snapshot
        if not snap.was_running:
            await _log(log, f"{snap.name} is not running, skipping stop")
            return
        await _log(log, f"Stopping {snap.name}")
        await self.engine.stop_container(snap.container_id, timeout=self.stop_timeout)

    async def _step_removing(self, run: _RecreateRun, log):
        snap = run.snapshot
        await _log(log, f"Removing {snap.name}")
        try:
            await self.engine.remove_container(snap.container_id, force=True)
        except docker.errors.NotFound:
            # Already gone (auto-remove on stop); the name is free either way
            pass
        run.old_removed = True

    async def _step_creating(self, run: _RecreateRun, log):
        snap = run.snapshot
        spec = build_create_spec(snap, image=run.image)
        await _log(log, f"Creating {snap.name} from {spec['image']}")
        run.new_container_id = await self.engine.create_container(spec)

    async def _step_network_reconnecting(self, run: _RecreateRun, log):
        snap = run.snapshot
        for attachment in snap.secondary_networks:
            try:
                await self.engine.connect_network(
                    attachment.network_name,
                    run.new_container_id,
                    aliases=list(attachment.aliases),
                    ipv4_address=attachment.ipv4,
                    ipv6_address=attachment.ipv6,
                    links=list(attachment.links),
                    gw_priority=attachment.gateway_priority,
                )
                await _log(log, f"Connected to network {attachment.network_name}")
            except Exception as e:
                # One lost secondary network is better than a container that never starts
                warning = f"Failed to connect network {attachment.network_name}: {e}"
                logger.warning(f"{snap.name}: {warning}")
                run.warnings.append(warning)
                await _log(log, f"Warning: {warning}")

    async def _step_starting(self, run: _RecreateRun, log):
        snap = run.snapshot
        if not snap.was_running:
            await _log(log, f"{snap.name} was not running before, leaving it stopped")
            return
        await _log(log, f"Starting {snap.name}")
        await self.engine.start_container(run.new_container_id)


async def _log(log: Optional[LogCallback], line: str):
    if log:
        try:
            await log(line)
        except Exception as e:
            logger.debug(f"Log callback failed: {e}")
