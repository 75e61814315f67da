"""
Registry digest checker.

Answers "is there a newer image behind this tag?" by comparing the digest the
registry serves now with the digests the engine recorded when the running
image was pulled. Nothing is pulled. Registry trouble is reported in the
result, never raised.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from updates.image_ref import ImageReference, extract_repo_digests
from updates.registry_adapter import RegistryAdapter, RegistryError

logger = logging.getLogger(__name__)

CredentialsLookup = Callable[[str], Optional[Dict[str, str]]]


class DigestStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    LOCAL_IMAGE = "local_image"
    REGISTRY_ERROR = "registry_error"
    PINNED = "pinned"


@dataclass
class DigestCheckResult:
    status: DigestStatus
    current_digest: Optional[str] = None
    new_digest: Optional[str] = None
    error: Optional[str] = None

    @property
    def update_available(self) -> bool:
        return self.status == DigestStatus.UPDATE_AVAILABLE

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'currentDigest': self.current_digest,
            'newDigest': self.new_digest,
            'error': self.error,
        }


class DigestChecker:
    """Classifies a tagged reference against the locally recorded digests."""

    def __init__(
        self,
        registry: RegistryAdapter,
        credentials_lookup: Optional[CredentialsLookup] = None
    ):
        self.registry = registry
        self.credentials_lookup = credentials_lookup

    async def check(
        self,
        image: ImageReference,
        local_repo_digests: Optional[List[str]]
    ) -> DigestCheckResult:
        """
        Args:
            image: Reference the container was started from
            local_repo_digests: RepoDigests of the running image as reported
                by the engine (``["repo@sha256:..."]``)
        """
        # Pinned references are immutable: no registry round trip at all
        if image.is_digest_pinned:
            return DigestCheckResult(DigestStatus.PINNED, current_digest=image.digest)

        local_digests = extract_repo_digests(local_repo_digests)
        if not local_digests:
            logger.debug(f"{image} has no RepoDigests, treating as local image")
            return DigestCheckResult(DigestStatus.LOCAL_IMAGE)

        auth = None
        if self.credentials_lookup:
            try:
                auth = self.credentials_lookup(image.registry)
            except Exception as e:
                logger.warning(f"Credential lookup failed for {image.registry}: {e}")

        try:
            remote_digest = await self.registry.resolve_digest(image, auth=auth)
        except RegistryError as e:
            logger.warning(f"Registry check failed for {image}: {e.message}")
            return DigestCheckResult(
                DigestStatus.REGISTRY_ERROR,
                current_digest=local_digests[0],
                error=e.message,
            )
        except Exception as e:
            logger.error(f"Unexpected registry error for {image}: {e}", exc_info=True)
            return DigestCheckResult(
                DigestStatus.REGISTRY_ERROR,
                current_digest=local_digests[0],
                error=str(e),
            )

        if remote_digest in local_digests:
            return DigestCheckResult(DigestStatus.UP_TO_DATE, current_digest=remote_digest)

        return DigestCheckResult(
            DigestStatus.UPDATE_AVAILABLE,
            current_digest=local_digests[0],
            new_digest=remote_digest,
        )
