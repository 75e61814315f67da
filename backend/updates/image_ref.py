"""
Image reference parsing.

An image reference names either a mutable tag (``nginx:1.25``) or an
immutable content digest (``nginx@sha256:...``). Only tagged references
take part in update detection; a digest reference is a pin.

Examples:
    nginx                          -> docker.io  library/nginx  latest
    ghcr.io/user/app:v1.0          -> ghcr.io    user/app       v1.0
    myregistry.com:5000/app        -> myregistry.com:5000  app  latest
    app@sha256:abc...              -> digest-pinned, never update-checked
"""

import hashlib
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

# Docker rejects tags longer than 128 characters
MAX_TAG_LENGTH = 128
TEMP_TAG_MARKER = "dockwarden-pending"


def _split_registry(name: str) -> Tuple[Optional[str], str]:
    """Split an explicit registry host off the front of a repository name."""
    if "/" in name:
        first, rest = name.split("/", 1)
        # First component is a registry if it looks like a host
        if "." in first or ":" in first or first == "localhost":
            return first, rest
    return None, name


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    ``repository`` keeps the registry host exactly as written (``ghcr.io/x/y``
    or ``nginx``) so that it can be handed back to the engine unchanged.
    Exactly one of ``tag`` and ``digest`` is set.
    """
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __post_init__(self):
        if not self.repository:
            raise ValueError("Image reference has no repository")
        if (self.tag is None) == (self.digest is None):
            raise ValueError(
                f"Image reference {self.repository} must have exactly one of tag or digest"
            )

    @classmethod
    def parse(cls, image: str) -> 'ImageReference':
        """
        Parse ``repo[:tag]`` or ``repo[:tag]@digest``.

        A missing tag normalizes to ``latest``. When a digest is present the
        tag (if any) is informational only and is dropped.
        """
        if not image or not image.strip():
            raise ValueError("Empty image reference")
        image = image.strip()

        if "@" in image:
            name, digest = image.split("@", 1)
            if not digest or ":" not in digest:
                raise ValueError(f"Malformed digest in image reference: {image}")
            repository, _ = cls._split_tag(name)
            return cls(repository=repository, digest=digest)

        repository, tag = cls._split_tag(image)
        return cls(repository=repository, tag=tag or DEFAULT_TAG)

    @staticmethod
    def _split_tag(name: str) -> Tuple[str, Optional[str]]:
        # A colon only separates a tag if it comes after the last slash;
        # otherwise it is a registry port (localhost:5000/app)
        last_slash = name.rfind("/")
        last_colon = name.rfind(":")
        if last_colon > last_slash:
            return name[:last_colon], name[last_colon + 1:] or None
        return name, None

    @property
    def is_digest_pinned(self) -> bool:
        return self.digest is not None

    @property
    def registry(self) -> str:
        explicit, _ = _split_registry(self.repository)
        return (explicit or DEFAULT_REGISTRY).lower()

    @property
    def path(self) -> str:
        """Repository path as the registry API expects it (library/ for official images)."""
        explicit, path = _split_registry(self.repository)
        if explicit is None and "/" not in path:
            return f"library/{path}"
        return path

    def with_tag(self, tag: str) -> 'ImageReference':
        return ImageReference(repository=self.repository, tag=tag)

    def temp_tag(self) -> 'ImageReference':
        """
        Deterministic parking tag for an unpromoted pull of this reference.

        The suffix is derived from the full reference so two repositories
        sharing a tag name never collide, and the same reference always maps
        to the same parking tag.
        """
        if self.is_digest_pinned:
            raise ValueError(f"Digest-pinned reference has no temp tag: {self}")
        suffix = hashlib.sha256(str(self).encode()).hexdigest()[:12]
        tail = f"-{TEMP_TAG_MARKER}-{suffix}"
        head = self.tag[:MAX_TAG_LENGTH - len(tail)]
        return self.with_tag(f"{head}{tail}")

    def __str__(self) -> str:
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return f"{self.repository}:{self.tag}"


def is_temp_tag(tag: Optional[str]) -> bool:
    return bool(tag) and f"-{TEMP_TAG_MARKER}-" in tag


def extract_repo_digests(repo_digests) -> list:
    """
    Pull the bare digests out of an image's RepoDigests list.

    ``["nginx@sha256:abc"]`` -> ``["sha256:abc"]``. An empty result means the
    image was built locally and never came from a registry.
    """
    digests = []
    for entry in repo_digests or []:
        if "@" in entry:
            digests.append(entry.split("@", 1)[1])
    return digests
