"""
Self-update availability check.

Same question the digest checker answers for any container, asked about the
container this process runs in. Read-only: nothing is pulled.
"""

import logging
from typing import Any, Callable, Dict, Optional

from selfupdate.environment import get_own_container_id
from updates.digest_checker import DigestChecker, DigestStatus
from updates.engine import DockerEngine
from updates.image_ref import ImageReference
from updates.snapshot import COMPOSE_PROJECT_LABEL

logger = logging.getLogger(__name__)


class SelfUpdateChecker:

    def __init__(
        self,
        engine: DockerEngine,
        digest_checker: DigestChecker,
        own_container_id: Optional[Callable[[], Optional[str]]] = None
    ):
        self.engine = engine
        self.digest_checker = digest_checker
        self.own_container_id = own_container_id or get_own_container_id

    async def check(self) -> Dict[str, Any]:
        """
        Returns a dict with ``updateAvailable`` always set, plus whatever
        could be determined: currentImage, currentDigest, newDigest,
        containerName, isComposeManaged, isLocalImage, error.
        """
        container_id = self.own_container_id()
        if not container_id:
            return {'updateAvailable': False, 'error': 'Not running in a container'}

        try:
            attrs = await self.engine.find_container(container_id)
        except Exception as e:
            logger.error(f"Self-update check failed: {e}")
            return {'updateAvailable': False, 'error': f"Check failed: {e}"}
        if attrs is None:
            return {'updateAvailable': False, 'error': 'Failed to inspect own container'}

        config = attrs.get('Config') or {}
        current_image = config.get('Image') or ''
        result: Dict[str, Any] = {
            'updateAvailable': False,
            'currentImage': current_image,
            'containerName': (attrs.get('Name') or '').lstrip('/'),
            'isComposeManaged': bool((config.get('Labels') or {}).get(COMPOSE_PROJECT_LABEL)),
        }
        if not current_image:
            result['error'] = 'Could not determine current image'
            return result

        try:
            image = ImageReference.parse(current_image)
        except ValueError as e:
            result['error'] = f"Unparseable image reference: {e}"
            return result

        image_attrs = None
        if not image.is_digest_pinned:
            image_attrs = await self.engine.inspect_image(attrs.get('Image') or current_image)
            if image_attrs is None:
                result['error'] = 'Could not inspect current image'
                return result

        check = await self.digest_checker.check(image, (image_attrs or {}).get('RepoDigests'))
        result['currentDigest'] = check.current_digest
        if check.status == DigestStatus.LOCAL_IMAGE:
            result['isLocalImage'] = True
        elif check.status == DigestStatus.REGISTRY_ERROR:
            result['error'] = f"Could not query registry: {check.error}"
        elif check.status in (DigestStatus.UP_TO_DATE, DigestStatus.UPDATE_AVAILABLE):
            result['newDigest'] = check.new_digest or check.current_digest
            result['updateAvailable'] = check.update_available
        return result
