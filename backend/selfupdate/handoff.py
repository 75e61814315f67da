"""
Self-update handoff.

Replacing the container this process runs in cannot be done from inside it:
the moment the old container stops, so does this code. The orchestrator
therefore only prepares, and hands the destructive part to a helper
container:

    validating -> pulling_image -> building_config -> pulling_helper
               -> creating_container -> launching_helper -> launched
    (any step) -> failed

The replacement is pre-created under ``<name>-updating`` with no network
endpoints, because the original still holds its static addresses. Until the
helper has started, a failure removes that pre-created container. Once the
helper runs, the outcome belongs to it: the ledger records ``launched`` and
nothing this process cannot observe.
"""

import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import docker

from selfupdate.environment import get_own_container_id, host_socket_path, is_socket_writable
from selfupdate.helper_contract import HelperContract
from updates.engine import DockerEngine
from updates.event_emitter import UpdateEventEmitter
from updates.image_ref import ImageReference
from updates.ledger import STATUS_FAILED, STATUS_LAUNCHED, ExecutionLedger
from updates.snapshot import ContainerSnapshot, build_create_spec, capture_snapshot
from updates.state_machine import StepEvent, StepStateMachine, linear_transitions

logger = logging.getLogger(__name__)

HELPER_LABEL = 'dockwarden.updater'
HELPER_NAME = 'dockwarden-updater'
HELPER_SOCKET = '/var/run/docker.sock'
PENDING_SUFFIX = '-updating'

# async def emit(event: str, data: dict) -> None
EmitCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


class PreconditionError(Exception):
    """Self-update cannot start here; nothing was changed."""


class HandoffState(str, Enum):
    VALIDATING = "validating"
    PULLING_IMAGE = "pulling_image"
    BUILDING_CONFIG = "building_config"
    PULLING_HELPER = "pulling_helper"
    CREATING_CONTAINER = "creating_container"
    LAUNCHING_HELPER = "launching_helper"
    LAUNCHED = "launched"
    FAILED = "failed"


HANDOFF_STEPS = [
    HandoffState.VALIDATING,
    HandoffState.PULLING_IMAGE,
    HandoffState.BUILDING_CONFIG,
    HandoffState.PULLING_HELPER,
    HandoffState.CREATING_CONTAINER,
    HandoffState.LAUNCHING_HELPER,
    HandoffState.LAUNCHED,
]
HANDOFF_TRANSITIONS = linear_transitions(HANDOFF_STEPS, HandoffState.FAILED)

_STEP_MESSAGES = {
    HandoffState.VALIDATING: ("Checking self-update preconditions...", "Preconditions met"),
    HandoffState.PULLING_IMAGE: ("Pulling new image...", "Image pulled"),
    HandoffState.BUILDING_CONFIG: ("Building container config...", "Config ready"),
    HandoffState.PULLING_HELPER: ("Pulling helper image...", "Helper ready"),
    HandoffState.CREATING_CONTAINER: ("Creating new container...", "Container created"),
    HandoffState.LAUNCHING_HELPER: ("Launching helper...", "Helper launched"),
}


@dataclass
class SelfContext:
    """What validation learned about the running instance."""
    container_id: str
    container_name: str
    attrs: Dict[str, Any]
    socket_source: str


@dataclass
class HandoffResult:
    state: HandoffState
    execution_id: Optional[int] = None
    helper_id: Optional[str] = None
    new_container_id: Optional[str] = None
    failed_step: Optional[str] = None
    error_message: Optional[str] = None
    states: List[str] = field(default_factory=list)

    @property
    def launched(self) -> bool:
        return self.state == HandoffState.LAUNCHED


class _HandoffRun:

    def __init__(self, new_image: str, context: Optional[SelfContext], emit: Optional[EmitCallback]):
        self.new_image = new_image
        self.context = context
        self.emit = emit
        self.snapshot: Optional[ContainerSnapshot] = None
        self.create_spec: Optional[Dict[str, Any]] = None
        self.new_container_id: Optional[str] = None
        self.helper_id: Optional[str] = None
        self.error: Optional[str] = None
        self.handle: Optional[int] = None
        self.machine = StepStateMachine(
            'self-update', HANDOFF_TRANSITIONS,
            initial=HandoffState.VALIDATING,
            terminal={HandoffState.LAUNCHED, HandoffState.FAILED},
        )


class SelfUpdateOrchestrator:

    def __init__(
        self,
        engine: DockerEngine,
        ledger: ExecutionLedger,
        helper_image: str,
        helper_command: str = 'python -m selfupdate.helper',
        docker_socket: str = '/var/run/docker.sock',
        emitter: Optional[UpdateEventEmitter] = None,
        own_container_id: Optional[Callable[[], Optional[str]]] = None,
        stop_timeout: int = 30,
        pull_timeout: int = 1800,
        credentials_lookup: Optional[Callable[[str], Optional[Dict[str, str]]]] = None
    ):
        self.engine = engine
        self.ledger = ledger
        self.helper_image = helper_image
        self.helper_command = helper_command
        self.docker_socket = docker_socket
        self.emitter = emitter or UpdateEventEmitter()
        self.own_container_id = own_container_id or get_own_container_id
        self.stop_timeout = stop_timeout
        self.pull_timeout = pull_timeout
        self.credentials_lookup = credentials_lookup
        self.in_progress = False

    async def validate(self) -> SelfContext:
        """
        Fail fast, before any side effect.

        Raises:
            PreconditionError: Not in a container, socket read-only, or the
                own container can't be inspected
        """
        container_id = self.own_container_id()
        if not container_id:
            raise PreconditionError('Not running in a container')

        attrs = await self.engine.find_container(container_id)
        if attrs is None:
            raise PreconditionError('Failed to inspect own container')

        if not is_socket_writable(attrs, self.docker_socket):
            raise PreconditionError(
                'Docker socket is mounted read-only. Self-update requires read-write socket access.'
            )

        name = (attrs.get('Name') or '').lstrip('/')
        if not name:
            raise PreconditionError('Failed to determine container name')

        return SelfContext(
            container_id=attrs.get('Id') or container_id,
            container_name=name,
            attrs=attrs,
            socket_source=host_socket_path(attrs, self.docker_socket),
        )

    async def run(
        self,
        new_image: str,
        emit: Optional[EmitCallback] = None,
        context: Optional[SelfContext] = None,
        triggered_by: str = 'user'
    ) -> HandoffResult:
        """
        Prepare the replacement and launch the helper.

        ``context`` from an earlier validate() skips re-validation. Progress
        goes to ``emit`` as step/log/error/launched events.
        """
        run = _HandoffRun(new_image, context, emit)
        if self.in_progress:
            await self._emit(run, 'error', {'step': 'validating', 'message': 'Self-update already in progress'})
            return HandoffResult(HandoffState.FAILED, failed_step='validating',
                                 error_message='Self-update already in progress')

        self.in_progress = True
        try:
            target = context.container_name if context else 'self'
            run.handle = self.ledger.begin(target, None, triggered_by, kind='self_update')
            while not run.machine.is_terminal:
                event = await self._run_step(run)
                run.machine.fire(event)
            return await self._finish(run)
        finally:
            self.in_progress = False

    async def _run_step(self, run: _HandoffRun) -> StepEvent:
        step = run.machine.state
        active, done = _STEP_MESSAGES[step]
        await self._emit(run, 'step', {'step': step.value, 'status': 'active', 'message': active})
        try:
            await getattr(self, f"_step_{step.value}")(run)
        except Exception as e:
            run.error = str(e)
            logger.error(f"Self-update failed at {step.value}: {e}")
            await self._log(run, f"Failed at {step.value}: {e}")
            await self._emit(run, 'step', {'step': step.value, 'status': 'failed', 'message': str(e)})
            return StepEvent.FAILED
        await self._emit(run, 'step', {'step': step.value, 'status': 'completed', 'message': done})
        return StepEvent.SUCCEEDED

    async def _finish(self, run: _HandoffRun) -> HandoffResult:
        states = run.machine.states_visited()
        if run.machine.state == HandoffState.LAUNCHED:
            self.ledger.complete(run.handle, STATUS_LAUNCHED, details={
                'newImage': run.new_image,
                'helperId': run.helper_id,
                'newContainerId': run.new_container_id,
                'states': states,
            })
            await self.emitter.emit_self_update_launched(
                run.context.container_name, run.new_image, run.helper_id
            )
            await self._emit(run, 'launched', {'helperId': run.helper_id})
            return HandoffResult(
                HandoffState.LAUNCHED, execution_id=run.handle, helper_id=run.helper_id,
                new_container_id=run.new_container_id, states=states,
            )

        failed_step = run.machine.last_step.value
        # Nothing was handed over: the pre-created replacement must go
        if run.new_container_id and not run.helper_id:
            await self._remove_precreated(run)

        self.ledger.complete(run.handle, STATUS_FAILED, details={
            'newImage': run.new_image,
            'failedStep': failed_step,
            'states': states,
        }, error=run.error)
        await self._emit(run, 'error', {'step': failed_step, 'message': run.error or 'Self-update failed'})
        return HandoffResult(
            HandoffState.FAILED, execution_id=run.handle, failed_step=failed_step,
            error_message=run.error, states=states,
        )

    # Steps

    async def _step_validating(self, run: _HandoffRun):
        if run.context is None:
            run.context = await self.validate()
        ImageReference.parse(run.new_image)

    async def _step_pulling_image(self, run: _HandoffRun):
        await self._pull(run, run.new_image)

    async def _step_building_config(self, run: _HandoffRun):
        ctx = run.context
        await self._log(run, f"Inspecting container {ctx.container_id[:12]}...")
        # Fresh inspect: validation may have happened a while ago
        attrs = await self.engine.inspect_container(ctx.container_id)
        run.snapshot = capture_snapshot(attrs)
        run.create_spec = build_create_spec(
            run.snapshot,
            image=run.new_image,
            name=f"{ctx.container_name}{PENDING_SUFFIX}",
            attach_primary=False,
        )
        names = ' '.join(n.network_name for n in run.snapshot.networks)
        await self._log(run, f"Networks: {names or 'none'}")

    async def _step_pulling_helper(self, run: _HandoffRun):
        if self.helper_image == run.new_image:
            await self._log(run, "Helper runs from the new image")
            return
        await self._pull(run, self.helper_image)

    async def _step_creating_container(self, run: _HandoffRun):
        await self._log(run, "Cleaning up previous helper containers...")
        await self.cleanup_stale(run.context.container_name)
        run.new_container_id = await self.engine.create_container(run.create_spec)
        await self._log(
            run,
            f"Container created: {run.new_container_id[:12]} ({run.context.container_name}{PENDING_SUFFIX})"
        )

    async def _step_launching_helper(self, run: _HandoffRun):
        ctx = run.context
        contract = HelperContract(
            old_container_id=ctx.container_id,
            new_container_id=run.new_container_id,
            container_name=ctx.container_name,
            networks=run.snapshot.networks,
        )
        helper_id = await self.engine.create_container({
            'image': self.helper_image,
            'name': HELPER_NAME,
            'command': shlex.split(self.helper_command),
            'environment': contract.to_env() + [
                f"DOCKER_SOCKET={HELPER_SOCKET}",
                f"STOP_TIMEOUT={self.stop_timeout}",
            ],
            'labels': {HELPER_LABEL: 'true'},
            'host_config': {
                'AutoRemove': True,
                'Binds': [f"{ctx.socket_source}:{HELPER_SOCKET}"],
            },
        })
        try:
            await self.engine.start_container(helper_id)
        except Exception:
            await self._force_remove(helper_id)
            raise

        # Point of no return: the helper will stop this container shortly
        run.helper_id = helper_id
        logger.info(f"Helper started ({helper_id[:12]}), this instance will be replaced shortly")
        await self._log(run, f"Helper started: {helper_id[:12]}")
        await self._log(run, "Handing off to helper...")

    # Support

    async def cleanup_stale(self, container_name: str):
        """Remove helpers and ``-updating`` containers left by earlier attempts."""
        stale = await self.engine.list_containers(filters={'label': [f"{HELPER_LABEL}=true"]})
        pending_name = f"/{container_name}{PENDING_SUFFIX}"
        # The name filter matches substrings, so check the exact name
        for summary in await self.engine.list_containers(filters={'name': [f"{container_name}{PENDING_SUFFIX}"]}):
            if pending_name in (summary.get('Names') or []):
                stale.append(summary)
        for summary in stale:
            logger.info(f"Removing stale container {summary['Id'][:12]}")
            await self._force_remove(summary['Id'])

    async def _pull(self, run: _HandoffRun, image: str):
        await self._log(run, f"Pulling {image}...")
        auth = None
        if self.credentials_lookup:
            auth = self.credentials_lookup(ImageReference.parse(image).registry)

        async def progress(line: str):
            await self._emit(run, 'log', {'message': line})

        await self.engine.pull_image_with_progress(image, progress, auth_config=auth, timeout=self.pull_timeout)
        await self._log(run, f"Pulled {image}")

    async def _remove_precreated(self, run: _HandoffRun):
        await self._log(run, f"Removing pre-created container {run.new_container_id[:12]}")
        await self._force_remove(run.new_container_id)

    async def _force_remove(self, container_id: str):
        try:
            await self.engine.remove_container(container_id, force=True)
        except docker.errors.NotFound:
            pass
        except Exception as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")

    async def _log(self, run: _HandoffRun, line: str):
        logger.info(f"[SelfUpdate] {line}")
        if run.handle is not None:
            self.ledger.append_log(run.handle, line)
        await self._emit(run, 'log', {'message': line})

    @staticmethod
    async def _emit(run: _HandoffRun, event: str, data: Dict[str, Any]):
        if not run.emit:
            return
        try:
            await run.emit(event, data)
        except Exception as e:
            logger.debug(f"Progress observer failed on {event}: {e}")


_orchestrator: Optional[SelfUpdateOrchestrator] = None


def get_self_update_orchestrator() -> SelfUpdateOrchestrator:
    """Self-update always targets the local engine."""
    global _orchestrator
    if _orchestrator is None:
        from config.settings import AppConfig
        from database import get_database_manager
        from updates.engine import get_engine
        from updates.ledger import DatabaseExecutionLedger
        from utils.registry_credentials import get_registry_credentials

        _orchestrator = SelfUpdateOrchestrator(
            engine=get_engine(None),
            ledger=DatabaseExecutionLedger(get_database_manager()),
            helper_image=AppConfig.HELPER_IMAGE,
            helper_command=AppConfig.HELPER_COMMAND,
            docker_socket=AppConfig.DOCKER_SOCKET,
            stop_timeout=AppConfig.STOP_TIMEOUT_SECONDS,
            pull_timeout=AppConfig.PULL_TIMEOUT_SECONDS,
            credentials_lookup=get_registry_credentials,
        )
    return _orchestrator
