"""
Safe-pull tag guard.

Pulling ``repo:tag`` moves the production tag to whatever the registry
serves, before anyone has looked at it. The guard makes that move
temporary:

    1. pull repo:tag
    2. read the new image id
    3. re-point repo:tag at the known-good image id    <- safety boundary
    4. tag the new image with a temp tag
    5. hand the temp tag to the inspector (scan + gate)
    6. approved: re-point repo:tag at the new id, drop the temp tag
       blocked or failed: remove the temp tag (and its image)

Steps 1-4 never interleave with another guard run on the same reference.
The deterministic temp tag is shared by runs on the same reference, so the
whole run (including the scan) holds the reference's lock.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import docker

from updates.engine import DockerEngine
from updates.image_ref import ImageReference
from updates.types import LogCallback, SafePullResult, SafePullStatus
from updates.vulnerability_gate import GateDecision
from utils.keyed_lock import KeyedLock, image_tag_locks

logger = logging.getLogger(__name__)

# async def inspect(temp_ref, new_image_id) -> (decision, scan details)
InspectCallback = Callable[[ImageReference, str], Awaitable[Tuple[GateDecision, Optional[Dict[str, Any]]]]]


async def plain_pull(
    engine: DockerEngine,
    image: ImageReference,
    auth: Optional[Dict[str, str]] = None,
    timeout: int = 1800
) -> str:
    """Pull without guarding (scanning disabled). Returns the pulled image id."""
    return await engine.pull_image(str(image), auth_config=auth, timeout=timeout)


class SafePullGuard:

    def __init__(
        self,
        engine: DockerEngine,
        locks: KeyedLock = image_tag_locks,
        pull_timeout: int = 1800
    ):
        self.engine = engine
        self.locks = locks
        self.pull_timeout = pull_timeout

    def _lock_key(self, image: ImageReference) -> str:
        return f"{self.engine.environment_id or 'local'}:{image}"

    async def run(
        self,
        image: ImageReference,
        known_good_image_id: str,
        inspect: InspectCallback,
        log: Optional[LogCallback] = None,
        auth: Optional[Dict[str, str]] = None
    ) -> SafePullResult:
        """
        Pull ``image`` and promote it only if ``inspect`` approves.

        ``known_good_image_id`` is the id the production tag must resolve to
        unless promotion happens.
        """
        if image.is_digest_pinned:
            return SafePullResult(
                SafePullStatus.FAILED,
                failed_stage='pull',
                error_message='Digest-pinned images cannot be pulled through the tag guard',
            )

        async with self.locks.hold(self._lock_key(image)):
            return await self._run_locked(image, known_good_image_id, inspect, log, auth)

    async def _run_locked(self, image, known_good_image_id, inspect, log, auth) -> SafePullResult:
        # Steps 1-4 run to completion even if the caller is cancelled: an
        # abandoned pull would leave the production tag on the new image
        parking = asyncio.ensure_future(self._pull_and_park(image, known_good_image_id, log, auth))
        try:
            parked = await asyncio.shield(parking)
        except asyncio.CancelledError:
            parked = await parking
            if not isinstance(parked, SafePullResult):
                await self._remove_temp(parked[1], log)
            raise

        if isinstance(parked, SafePullResult):
            return parked
        new_image_id, temp_ref = parked

        # 5. Inspect
        try:
            decision, scan = await inspect(temp_ref, new_image_id)
        except asyncio.CancelledError:
            await asyncio.shield(self._remove_temp(temp_ref, log))
            raise
        except Exception as e:
            logger.error(f"Inspection of {temp_ref} failed: {e}", exc_info=True)
            await self._remove_temp(temp_ref, log)
            return SafePullResult(
                SafePullStatus.FAILED, new_image_id=new_image_id, failed_stage='scan',
                error_message=f"Scan failed: {e}",
            )

        if not decision.allowed:
            await _log(log, f"Update blocked: {decision.reason}")
            await self._remove_temp(temp_ref, log)
            return SafePullResult(
                SafePullStatus.BLOCKED, new_image_id=new_image_id,
                block_reason=decision.reason, scan=scan,
            )

        # 6. Promote
        try:
            await self.engine.tag_image(new_image_id, image.repository, image.tag)
        except Exception as e:
            logger.error(f"Promotion of {new_image_id[:19]} to {image} failed: {e}")
            await self._remove_temp(temp_ref, log)
            return SafePullResult(
                SafePullStatus.FAILED, new_image_id=new_image_id, failed_stage='promote',
                error_message=f"Could not promote new image: {e}", scan=scan,
            )
        await _log(log, f"Promoted new image to {image}")
        await self._remove_temp(temp_ref, log, quiet=True)

        return SafePullResult(SafePullStatus.PROMOTED, new_image_id=new_image_id, scan=scan)

    async def _pull_and_park(self, image, known_good_image_id, log, auth):
        """Steps 1-4. Returns (new_image_id, temp_ref) or a terminal SafePullResult."""
        temp_ref = image.temp_tag()

        # 1. Pull under the production tag
        await _log(log, f"Pulling {image}")
        try:
            await self.engine.pull_image(str(image), auth_config=auth, timeout=self.pull_timeout)
        except Exception as e:
            logger.error(f"Pull failed for {image}: {e}")
            # The tag may have moved before the failure surfaced; put it back regardless
            restored = await self._restore(image, known_good_image_id, log)
            return SafePullResult(
                SafePullStatus.FAILED, failed_stage='pull', error_message=f"Pull failed: {e}",
                production_tag_intact=restored,
            )

        # 2. Record what the pull produced
        try:
            new_image_id = await self.engine.get_image_id(str(image))
        except Exception as e:
            new_image_id = None
            logger.error(f"Could not inspect pulled image {image}: {e}")
        if not new_image_id:
            restored = await self._restore(image, known_good_image_id, log)
            return SafePullResult(
                SafePullStatus.FAILED, failed_stage='pull',
                error_message='Pulled image could not be resolved',
                production_tag_intact=restored,
            )

        if new_image_id == known_good_image_id:
            await _log(log, "Pulled image is identical to the running image")
            return SafePullResult(SafePullStatus.PROMOTED, new_image_id=new_image_id)

        # 3. Safety boundary: production tag back to known-good
        if not await self._restore(image, known_good_image_id, log):
            return SafePullResult(
                SafePullStatus.FAILED, new_image_id=new_image_id, failed_stage='restore',
                error_message=f"Could not restore {image} to the running image",
                production_tag_intact=False,
            )

        # 4. Park the new image
        try:
            await self.engine.tag_image(new_image_id, temp_ref.repository, temp_ref.tag)
        except Exception as e:
            logger.error(f"Failed to apply temp tag {temp_ref}: {e}")
            await self._discard_untagged(new_image_id)
            return SafePullResult(
                SafePullStatus.FAILED, new_image_id=new_image_id, failed_stage='temp_tag',
                error_message=f"Could not tag pulled image: {e}",
            )
        await _log(log, f"New image parked as {temp_ref}")
        return new_image_id, temp_ref

    async def _restore(self, image: ImageReference, image_id: str, log) -> bool:
        try:
            await self.engine.tag_image(image_id, image.repository, image.tag)
            return True
        except Exception as e:
            logger.critical(
                f"Could not restore production tag {image} to {image_id[:19]}: {e}. "
                f"The tag may now point at an unverified image."
            )
            await _log(log, f"ERROR: could not restore {image} to the running image: {e}")
            return False

    async def _remove_temp(self, temp_ref: ImageReference, log, quiet: bool = False):
        """Untag the parking tag; the engine deletes the image if nothing else uses it."""
        try:
            await self.engine.remove_image(str(temp_ref))
            if not quiet:
                await _log(log, f"Removed temporary image {temp_ref}")
        except docker.errors.NotFound:
            pass
        except Exception as e:
            logger.warning(f"Failed to remove temp tag {temp_ref}: {e}")

    async def _discard_untagged(self, image_id: str):
        try:
            await self.engine.remove_image(image_id)
        except Exception as e:
            logger.debug(f"Could not remove dangling image {image_id[:19]}: {e}")


async def _log(log: Optional[LogCallback], line: str):
    if log:
        try:
            await log(line)
        except Exception as e:
            logger.debug(f"Log callback failed: {e}")
