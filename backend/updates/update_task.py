"""
Container update task.

One call updates one container in one environment:

    digest check -> pull (guarded when scanning is on) -> gate -> route

Everything up to routing is "prepare": nothing the running container depends
on has changed yet, so the whole phase runs under the overall deadline and
may be cancelled. Routing (recreation or stack re-convergence) runs to
completion once started.

Every run leaves exactly one ledger record with a terminal status. Exceptions
stop here; callers get an UpdateOutcome, never a traceback.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from updates.digest_checker import CredentialsLookup, DigestChecker, DigestStatus
from updates.engine import DockerEngine
from updates.event_emitter import UpdateEventEmitter
from updates.image_ref import ImageReference
from updates.ledger import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    ExecutionLedger,
)
from updates.safe_pull import SafePullGuard, plain_pull
from updates.snapshot import ContainerSnapshot, capture_snapshot
from updates.types import RoutePath, SafePullStatus
from updates.update_router import UpdateRouter
from updates.vulnerability_gate import (
    ScanSummary,
    VulnerabilityCriterion,
    combine_summaries,
    evaluate,
)

logger = logging.getLogger(__name__)

HELPER_LABEL = 'dockwarden.updater'

# async def progress(line: str) -> None
ProgressCallback = Callable[[str], Awaitable[None]]


@dataclass
class UpdateOutcome:
    execution_id: Optional[int]
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'executionId': self.execution_id,
            'status': self.status,
            'details': self.details,
            'error': self.error,
        }


class _Finished(Exception):
    """Ends a run early with a terminal status."""

    def __init__(self, status: str, reason: str, critical: bool = False):
        super().__init__(reason)
        self.status = status
        self.reason = reason
        self.critical = critical


class _UpdateRun:

    def __init__(self, target_name, environment_id, triggered_by, criterion, log):
        self.target_name = target_name
        self.triggered_by = triggered_by
        self.environment_id = environment_id
        self.criterion = criterion
        self.log = log
        self.snapshot: Optional[ContainerSnapshot] = None
        self.container: Dict[str, Any] = {'name': target_name, 'status': 'checking'}
        self.details: Dict[str, Any] = {
            'mode': None,
            'newDigest': None,
            'vulnerabilityCriteria': criterion.value,
            'summary': {'checked': 0, 'updated': 0, 'blocked': 0, 'failed': 0},
            'containers': [self.container],
        }


class ContainerUpdateTask:
    """
    Runs single-container updates for one environment.

    Two runs for the same target never overlap; the second is recorded as
    skipped. Different targets update concurrently.
    """

    def __init__(
        self,
        engine: DockerEngine,
        ledger: ExecutionLedger,
        digest_checker: DigestChecker,
        router: UpdateRouter,
        guard: Optional[SafePullGuard] = None,
        scanners: Optional[List[Any]] = None,
        scan_cache=None,
        emitter: Optional[UpdateEventEmitter] = None,
        self_container_id: Optional[str] = None,
        timeout: int = 3600,
        pull_timeout: int = 1800,
        credentials_lookup: Optional[CredentialsLookup] = None
    ):
        self.engine = engine
        self.ledger = ledger
        self.digest_checker = digest_checker
        self.router = router
        self.guard = guard or SafePullGuard(engine, pull_timeout=pull_timeout)
        self.scanners = list(scanners or [])
        self.scan_cache = scan_cache
        self.emitter = emitter or UpdateEventEmitter()
        self.self_container_id = self_container_id
        self.timeout = timeout
        self.pull_timeout = pull_timeout
        self.credentials_lookup = credentials_lookup

        self.updating_targets = set()  # "environment:name"
        self._update_lock = threading.Lock()

    def is_updating(self, target_name: str, environment_id: Optional[str] = None) -> bool:
        return self._target_key(target_name, environment_id) in self.updating_targets

    @staticmethod
    def _target_key(target_name: str, environment_id: Optional[str]) -> str:
        return f"{environment_id or 'local'}:{target_name}"

    async def run(
        self,
        target_name: str,
        environment_id: Optional[str] = None,
        triggered_by: str = 'scheduler',
        criterion: Any = VulnerabilityCriterion.NEVER,
        progress: Optional[ProgressCallback] = None
    ) -> UpdateOutcome:
        """Update one container and return the terminal ledger status."""
        criterion = VulnerabilityCriterion(criterion)
        key = self._target_key(target_name, environment_id)

        with self._update_lock:
            already_running = key in self.updating_targets
            if not already_running:
                self.updating_targets.add(key)

        try:
            handle = self.ledger.begin(target_name, environment_id, triggered_by)
        except Exception as e:
            logger.error(f"Could not record update of {target_name}: {e}", exc_info=True)
            if not already_running:
                with self._update_lock:
                    self.updating_targets.discard(key)
            return UpdateOutcome(None, STATUS_FAILED, error=f"Could not record execution: {e}")

        async def log(line: str):
            logger.info(f"[Auto-update] {target_name}: {line}")
            self.ledger.append_log(handle, line)
            if progress:
                try:
                    await progress(line)
                except Exception as e:
                    logger.debug(f"Progress observer failed for {target_name}: {e}")

        run = _UpdateRun(target_name, environment_id, triggered_by, criterion, log)

        if already_running:
            logger.warning(f"{target_name} is already being updated, rejecting concurrent update")
            reason = 'Update already in progress'
            run.container['status'] = 'skipped'
            run.container['reason'] = reason
            self.ledger.complete(handle, STATUS_SKIPPED, details=run.details, error=reason)
            return UpdateOutcome(handle, STATUS_SKIPPED, run.details, reason)

        status, error, critical = STATUS_FAILED, None, False
        try:
            status, error, critical = await self._execute(run)
        except asyncio.CancelledError:
            error = 'Update cancelled'
            await _quiet_log(log, error)
            raise
        except Exception as e:
            logger.error(f"Unexpected error updating {target_name}: {e}", exc_info=True)
            error = f"Unexpected error: {e}"
            await _quiet_log(log, error)
        finally:
            if status == STATUS_FAILED:
                run.details['summary']['failed'] = 1
                run.container['status'] = 'failed'
            try:
                self.ledger.complete(handle, status, details=run.details, error=error)
            except Exception as e:
                logger.error(f"Could not record outcome of {target_name} update: {e}", exc_info=True)
            with self._update_lock:
                self.updating_targets.discard(key)

        await self._emit_outcome(run, status, error, critical)
        return UpdateOutcome(handle, status, run.details, error)

    async def _execute(self, run: _UpdateRun) -> Tuple[str, Optional[str], bool]:
        try:
            await asyncio.wait_for(self._prepare(run), timeout=self.timeout)
            await self._route(run)
        except _Finished as f:
            if f.status == STATUS_SKIPPED and run.container['status'] != 'blocked':
                run.container['status'] = 'skipped'
            if f.status == STATUS_SKIPPED:
                run.container['reason'] = f.reason
            await run.log(f"{'Skipped' if f.status == STATUS_SKIPPED else 'Failed'}: {f.reason}")
            return f.status, f.reason, f.critical
        except asyncio.TimeoutError:
            reason = f"Update timed out after {self.timeout}s; the container was not changed"
            await run.log(reason)
            return STATUS_FAILED, reason, False

        run.container['status'] = 'updated'
        run.details['summary']['updated'] = 1
        await run.log("Update completed successfully")
        return STATUS_SUCCESS, None, False

    async def _prepare(self, run: _UpdateRun):
        attrs = await self.engine.find_container(run.target_name)
        if attrs is None:
            raise _Finished(STATUS_FAILED, f"Container {run.target_name} not found")

        self._check_not_system(attrs)

        config_image = (attrs.get('Config') or {}).get('Image') or ''
        if not config_image or config_image.startswith('sha256:'):
            run.details['summary']['checked'] = 1
            raise _Finished(STATUS_SKIPPED, 'Local image - no registry available')

        try:
            snapshot = capture_snapshot(attrs)
        except ValueError as e:
            raise _Finished(STATUS_FAILED, f"Cannot parse container configuration: {e}")
        run.snapshot = snapshot
        run.container['image'] = str(snapshot.image)
        await self.emitter.emit_started(run.target_name, run.environment_id, str(snapshot.image), run.triggered_by)
        run.details['summary']['checked'] = 1
        await run.log(f"Checking {snapshot.image} for updates")

        if snapshot.image.is_digest_pinned:
            raise _Finished(STATUS_SKIPPED, 'Image pinned to specific digest')

        image_attrs = await self.engine.inspect_image(snapshot.image_id)
        repo_digests = (image_attrs or {}).get('RepoDigests')
        check = await self.digest_checker.check(snapshot.image, repo_digests)
        run.container['currentDigest'] = check.current_digest

        if check.status == DigestStatus.LOCAL_IMAGE:
            raise _Finished(STATUS_SKIPPED, 'Local image - no registry available')
        if check.status == DigestStatus.REGISTRY_ERROR:
            raise _Finished(STATUS_SKIPPED, f"Registry check failed: {check.error}")
        if check.status == DigestStatus.PINNED:
            raise _Finished(STATUS_SKIPPED, 'Image pinned to specific digest')
        if check.status == DigestStatus.UP_TO_DATE:
            raise _Finished(STATUS_SKIPPED, 'Already up-to-date')

        run.details['newDigest'] = check.new_digest
        await run.log(f"Update available: {check.current_digest} -> {check.new_digest}")

        auth = self._credentials(snapshot.image)
        if self.scanners:
            await self._safe_pull(run, snapshot, auth)
        else:
            await self._simple_pull(run, snapshot, auth)

    def _check_not_system(self, attrs: Dict[str, Any]):
        container_id = attrs.get('Id') or ''
        if self.self_container_id and container_id and (
            container_id.startswith(self.self_container_id) or self.self_container_id.startswith(container_id)
        ):
            raise _Finished(
                STATUS_SKIPPED,
                'Cannot update the orchestrator container from here; use self-update',
            )
        labels = (attrs.get('Config') or {}).get('Labels') or {}
        if labels.get(HELPER_LABEL) == 'true':
            raise _Finished(STATUS_SKIPPED, 'Self-update helper containers are not updated')

    def _credentials(self, image: ImageReference) -> Optional[Dict[str, str]]:
        if not self.credentials_lookup:
            return None
        try:
            return self.credentials_lookup(image.registry)
        except Exception as e:
            logger.warning(f"Credential lookup failed for {image.registry}: {e}")
            return None

    async def _simple_pull(self, run: _UpdateRun, snapshot: ContainerSnapshot, auth):
        run.details['mode'] = 'simple'
        await run.log(f"Pulling {snapshot.image}")
        try:
            new_image_id = await plain_pull(self.engine, snapshot.image, auth=auth, timeout=self.pull_timeout)
        except Exception as e:
            logger.error(f"Pull failed for {snapshot.image}: {e}")
            raise _Finished(STATUS_FAILED, f"Pull failed: {e}")
        if new_image_id == snapshot.image_id:
            raise _Finished(STATUS_SKIPPED, 'Already up-to-date')

    async def _safe_pull(self, run: _UpdateRun, snapshot: ContainerSnapshot, auth):
        run.details['mode'] = 'safe'

        async def inspect(temp_ref: ImageReference, new_image_id: str):
            return await self._inspect_new_image(run, snapshot, temp_ref, new_image_id)

        result = await self.guard.run(snapshot.image, snapshot.image_id, inspect, log=run.log, auth=auth)
        if result.scan:
            run.details['scan'] = result.scan

        if result.status == SafePullStatus.BLOCKED:
            run.details['summary']['blocked'] = 1
            run.details['blockReason'] = result.block_reason
            run.container['status'] = 'blocked'
            raise _Finished(STATUS_SKIPPED, 'vulnerabilities_found')
        if result.status == SafePullStatus.FAILED:
            run.container['failedStage'] = result.failed_stage
            if not result.production_tag_intact:
                run.details['productionTagIntact'] = False
            raise _Finished(STATUS_FAILED, result.error_message or 'Pull failed')
        if result.new_image_id == snapshot.image_id:
            raise _Finished(STATUS_SKIPPED, 'Already up-to-date')

    async def _inspect_new_image(
        self,
        run: _UpdateRun,
        snapshot: ContainerSnapshot,
        temp_ref: ImageReference,
        new_image_id: str
    ):
        summaries = await self._scan(str(temp_ref), run)
        self._save_scans(new_image_id, run.environment_id, summaries, str(snapshot.image))
        new_scan = combine_summaries(summaries)
        await run.log(f"Scan result: {new_scan.describe()}")

        current_scan = None
        if run.criterion == VulnerabilityCriterion.MORE_THAN_CURRENT:
            current_scan = await self._current_scan(run, snapshot)

        decision = evaluate(run.criterion, new_scan, current_scan)
        scan_details = {
            'new': new_scan.to_dict(),
            'scanners': [s.to_dict() for s in summaries],
            'current': current_scan.to_dict() if current_scan else None,
        }
        return decision, scan_details

    async def _scan(self, image: str, run: _UpdateRun) -> List[ScanSummary]:
        summaries = []
        for scanner in self.scanners:
            await run.log(f"Scanning {image} with {scanner.name}")
            summaries.append(await scanner.scan(image, progress=run.log))
        return summaries

    async def _current_scan(self, run: _UpdateRun, snapshot: ContainerSnapshot) -> Optional[ScanSummary]:
        if self.scan_cache is not None:
            cached = self.scan_cache.get_combined(snapshot.image_id, run.environment_id)
            if cached is not None:
                return cached

        # The production tag resolves to the running image again at this point
        await run.log("No cached scan for the running image, scanning it now")
        summaries = await self._scan(str(snapshot.image), run)
        self._save_scans(snapshot.image_id, run.environment_id, summaries, str(snapshot.image))
        return combine_summaries(summaries)

    def _save_scans(self, image_id, environment_id, summaries, image_ref):
        if self.scan_cache is None or not summaries:
            return
        try:
            self.scan_cache.save(image_id, environment_id, summaries, image_ref=image_ref)
        except Exception as e:
            logger.warning(f"Could not store scan result for {image_id[:19]}: {e}")

    async def _route(self, run: _UpdateRun):
        route = await self.router.apply(run.snapshot, run.log)
        run.details['route'] = route.to_dict()
        for warning in route.warnings:
            run.details.setdefault('warnings', []).append(warning)

        if route.path == RoutePath.REFUSED:
            raise _Finished(STATUS_SKIPPED, route.error_message or 'Refused by unmanaged stack policy')
        if not route.success:
            if route.recreate and route.recreate.failed_step:
                run.container['failedStep'] = route.recreate.failed_step
            if route.old_container_removed:
                await run.log(
                    "CRITICAL: the old container was removed and no replacement is running; "
                    "manual intervention required"
                )
            raise _Finished(
                STATUS_FAILED,
                route.error_message or 'Update failed',
                critical=route.old_container_removed,
            )
        if route.recreate and route.recreate.new_container_id:
            run.container['newContainerId'] = route.recreate.new_container_id

    async def _emit_outcome(self, run: _UpdateRun, status: str, error: Optional[str], critical: bool):
        target, env = run.target_name, run.environment_id
        if status == STATUS_SUCCESS:
            await self.emitter.emit_completed(
                target, env, run.container.get('image', ''),
                previous_digest=run.container.get('currentDigest'),
                new_digest=run.details.get('newDigest'),
            )
        elif status == STATUS_FAILED:
            await self.emitter.emit_failed(target, env, error or 'Update failed', critical=critical)
        elif run.details.get('blockReason'):
            await self.emitter.emit_blocked(target, env, run.details['blockReason'], scan=run.details.get('scan'))
        else:
            await self.emitter.emit_skipped(target, env, error or '')


async def _quiet_log(log, line: str):
    try:
        await log(line)
    except Exception as e:
        logger.debug(f"Could not record log line: {e}")


_update_tasks: Dict[Optional[str], ContainerUpdateTask] = {}


def get_update_task(environment_id: Optional[str] = None) -> ContainerUpdateTask:
    """
    Get or create the ContainerUpdateTask for an environment.

    One instance per environment so its in-flight target set sees every run.
    """
    task = _update_tasks.get(environment_id)
    if task is None:
        task = _update_tasks[environment_id] = _build_update_task(environment_id)
    return task


def _build_update_task(environment_id: Optional[str]) -> ContainerUpdateTask:
    from config.settings import AppConfig
    from database import get_database_manager
    from scanning.scan_cache import ScanCache
    from scanning.scanner import build_scanners
    from selfupdate.environment import get_own_container_id
    from stacks.compose_runner import ComposeRunner
    from stacks.stack_storage import get_stack_store
    from updates.engine import get_engine
    from updates.ledger import DatabaseExecutionLedger
    from updates.recreator import ContainerRecreator
    from updates.registry_adapter import get_registry_adapter
    from utils.registry_credentials import get_registry_credentials

    engine = get_engine(environment_id)
    db = get_database_manager()
    router = UpdateRouter(
        ContainerRecreator(engine, stop_timeout=AppConfig.STOP_TIMEOUT_SECONDS),
        get_stack_store(),
        ComposeRunner(AppConfig.COMPOSE_COMMAND, timeout=AppConfig.COMPOSE_TIMEOUT_SECONDS),
        unmanaged_stack_policy=AppConfig.UNMANAGED_STACK_POLICY,
        docker_host=AppConfig.ENVIRONMENTS.get(environment_id) if environment_id not in (None, 'local') else None,
    )
    return ContainerUpdateTask(
        engine=engine,
        ledger=DatabaseExecutionLedger(db),
        digest_checker=DigestChecker(get_registry_adapter(), credentials_lookup=get_registry_credentials),
        router=router,
        guard=SafePullGuard(engine, pull_timeout=AppConfig.PULL_TIMEOUT_SECONDS),
        scanners=build_scanners(engine),
        scan_cache=ScanCache(db),
        self_container_id=get_own_container_id(),
        timeout=AppConfig.UPDATE_TIMEOUT_SECONDS,
        pull_timeout=AppConfig.PULL_TIMEOUT_SECONDS,
        credentials_lookup=get_registry_credentials,
    )
