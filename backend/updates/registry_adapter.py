"""
Registry Adapter for manifest digest lookup

Asks a registry (Registry v2 / OCI distribution API) which manifest digest a
tag currently points at, without pulling anything. The answer is compared
against the RepoDigests the engine already holds for the running image.

Supports Docker Hub, GHCR and any registry that advertises its token endpoint
through the WWW-Authenticate header.
"""

import aiohttp
import asyncio
import base64
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from updates.image_ref import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ",".join([
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
])

# Registry tokens are typically valid for 5 minutes
TOKEN_LIFETIME = timedelta(minutes=4)


class RegistryError(Exception):
    """Registry could not answer the digest question."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class RegistryCache:
    """In-memory TTL cache for resolved digests"""

    MAX_CACHE_SIZE = 1000

    def __init__(self, ttl_seconds: int = 120):
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if datetime.now(timezone.utc) - stored_at < self._ttl:
            return value
        del self._cache[key]
        return None

    def set(self, key: str, value: Any):
        if len(self._cache) >= self.MAX_CACHE_SIZE:
            self._evict()
        self._cache[key] = (value, datetime.now(timezone.utc))

    def _evict(self):
        """Drop expired entries, then the oldest tenth if still full."""
        now = datetime.now(timezone.utc)
        for key in [k for k, (_, ts) in self._cache.items() if now - ts >= self._ttl]:
            del self._cache[key]

        if len(self._cache) >= self.MAX_CACHE_SIZE:
            oldest = sorted(self._cache.items(), key=lambda item: item[1][1])
            for key, _ in oldest[:self.MAX_CACHE_SIZE // 10]:
                del self._cache[key]
            logger.warning("Registry cache full, evicted oldest entries")

    def clear(self):
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class RegistryAdapter:
    """
    Resolves tags to manifest digests.

    Only ``resolve_digest`` is public. Failures raise RegistryError with a
    short human-readable reason; callers translate that into a skip.
    """

    def __init__(self, cache_ttl: int = 120, request_timeout: int = 30):
        self.cache = RegistryCache(cache_ttl)
        self._tokens: Dict[str, Dict[str, Any]] = {}
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def resolve_digest(
        self,
        image: ImageReference,
        auth: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Return the digest the registry currently serves for ``image``'s tag.

        Args:
            image: Tagged image reference
            auth: Optional {username, password} for private registries

        Raises:
            RegistryError: Registry unreachable, auth failed, tag missing...
            ValueError: Called with a digest-pinned reference
        """
        if image.is_digest_pinned:
            raise ValueError(f"Digest-pinned reference cannot be resolved: {image}")

        cache_key = str(image)
        cached = self.cache.get(cache_key)
        if cached:
            logger.debug(f"Cache hit for {image}")
            return cached

        registry, repository = image.registry, image.path
        token = await self._get_auth_token(registry, repository, image.tag, auth)
        digest = await self._fetch_digest(
            self._manifest_url(registry, repository, image.tag), token
        )

        self.cache.set(cache_key, digest)
        logger.info(f"Resolved {image} -> {digest[:19]}...")
        return digest

    def _normalize_registry_url(self, registry: str) -> str:
        if registry in ("docker.io", "index.docker.io", "registry-1.docker.io"):
            return "https://registry-1.docker.io"
        if registry.startswith("http://") or registry.startswith("https://"):
            return registry
        return f"https://{registry}"

    def _manifest_url(self, registry: str, repository: str, reference: str) -> str:
        return f"{self._normalize_registry_url(registry)}/v2/{repository}/manifests/{reference}"

    def _encode_basic_auth(self, auth: Dict[str, str]) -> str:
        credentials = f"{auth['username']}:{auth['password']}"
        return f"Basic {base64.b64encode(credentials.encode()).decode()}"

    def _parse_www_authenticate(self, header: Optional[str]) -> Optional[Dict[str, str]]:
        """
        Parse a Bearer challenge.

        'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:u/app:pull"'
        -> {"realm": ..., "service": ..., "scope": ...}
        """
        if not header or not header.startswith("Bearer "):
            return None
        params = dict(re.findall(r'(\w+)="([^"]*)"', header[len("Bearer "):]))
        if "realm" not in params:
            logger.warning("WWW-Authenticate challenge without realm")
            return None
        return params

    async def _discover_challenge(
        self,
        registry: str,
        repository: str,
        tag: str
    ) -> Optional[Dict[str, str]]:
        """HEAD the manifest anonymously and read the auth challenge, if any."""
        url = self._manifest_url(registry, repository, tag)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.head(url, headers={"Accept": MANIFEST_ACCEPT}) as response:
                    if response.status == 401:
                        return self._parse_www_authenticate(response.headers.get("WWW-Authenticate"))
                    return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Auth discovery failed for {registry}: {e}")
            return None

    async def _fetch_token(
        self,
        realm: str,
        service: Optional[str],
        scope: Optional[str],
        auth: Optional[Dict[str, str]] = None
    ) -> Optional[str]:
        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope
        headers = {"Authorization": self._encode_basic_auth(auth)} if auth else {}

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(realm, params=params, headers=headers) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.warning(f"Token request to {realm} returned {response.status}: {body[:200]}")
                        return None
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Error fetching token from {realm}: {e}")
            return None

        token = data.get("token") or data.get("access_token")
        return f"Bearer {token}" if token else None

    async def _get_auth_token(
        self,
        registry: str,
        repository: str,
        tag: str,
        auth: Optional[Dict[str, str]] = None
    ) -> Optional[str]:
        """
        Obtain an Authorization header value for a manifest request.

        Order: cached token, challenge discovery, known-registry fallback
        (Docker Hub does not always send a usable challenge), basic auth,
        anonymous.
        """
        cache_key = f"{registry}:{repository}"
        cached = self._tokens.get(cache_key)
        if cached:
            if datetime.now(timezone.utc) < cached["expires_at"]:
                return cached["token"]
            del self._tokens[cache_key]

        challenge = await self._discover_challenge(registry, repository, tag)
        if challenge:
            scope = challenge.get("scope") or f"repository:{repository}:pull"
            token = await self._fetch_token(challenge["realm"], challenge.get("service"), scope, auth)
        elif registry == "docker.io":
            token = await self._fetch_token(
                "https://auth.docker.io/token", "registry.docker.io",
                f"repository:{repository}:pull", auth
            )
        elif registry == "ghcr.io":
            token = await self._fetch_token(
                "https://ghcr.io/token", "ghcr.io", f"repository:{repository}:pull", auth
            )
        else:
            token = None

        if token:
            self._tokens[cache_key] = {
                "token": token,
                "expires_at": datetime.now(timezone.utc) + TOKEN_LIFETIME,
            }
            return token

        if auth:
            return self._encode_basic_auth(auth)
        return None

    async def _fetch_digest(self, manifest_url: str, token: Optional[str]) -> str:
        """
        Read Docker-Content-Digest for a manifest.

        HEAD first (doesn't count against Docker Hub pull limits), GET if the
        registry omits the header on HEAD. For multi-platform images this is
        the index digest, which is what the engine records in RepoDigests.
        """
        headers = {"Accept": MANIFEST_ACCEPT}
        if token:
            headers["Authorization"] = token

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                for method in ("HEAD", "GET"):
                    async with session.request(method, manifest_url, headers=headers) as response:
                        if response.status == 200:
                            digest = response.headers.get("Docker-Content-Digest")
                            if digest:
                                return digest
                            continue
                        raise RegistryError(self._describe_status(response.status), response.status)
        except RegistryError:
            raise
        except asyncio.TimeoutError:
            raise RegistryError("Registry request timed out")
        except aiohttp.ClientError as e:
            raise RegistryError(f"Registry unreachable: {e}")

        raise RegistryError("Registry did not return a content digest")

    @staticmethod
    def _describe_status(status: int) -> str:
        if status == 401:
            return "Authentication failed"
        if status == 403:
            return "Access denied"
        if status == 404:
            return "Image or tag not found in registry"
        if status == 429:
            return "Rate limited by registry"
        return f"Registry returned HTTP {status}"


_registry_adapter: Optional[RegistryAdapter] = None


def get_registry_adapter() -> RegistryAdapter:
    """Get or create the process-wide RegistryAdapter"""
    global _registry_adapter
    if _registry_adapter is None:
        from config.settings import AppConfig
        _registry_adapter = RegistryAdapter(cache_ttl=AppConfig.REGISTRY_CACHE_TTL_SECONDS)
    return _registry_adapter
