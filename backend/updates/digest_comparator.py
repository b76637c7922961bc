"""
Digest Comparator

Compares the registry's current manifest digest for an image tag against
every digest the local daemon knows for that image.

A local image pulled from several registries (or re-tagged) carries several
RepoDigests; the image only has an update when the remote digest matches
none of them. Images built locally have no RepoDigests and fall back to the
image ID, which never equals a manifest digest.
"""

import logging
import time
from typing import Iterable, List, Optional, Tuple

import docker

from updates.errors import AuthError, DaemonError, NetworkError, NotFoundError, UnauthorizedError
from updates.reference import ImageReference
from updates.registry_adapter import RegistryClient
from updates.types import AuthDetails, AuthMethod, CheckResult
from updates.versions import is_special_tag, newer_tag, parse_version
from utils.async_docker import async_docker_call
from utils.registry_credentials import Credential

logger = logging.getLogger(__name__)


async def get_local_digests(client: docker.DockerClient, image_ref: str) -> Tuple[str, List[str]]:
    """
    Collect every locally known digest for image_ref.

    Returns:
        (primary, all) where primary is the first RepoDigest (or the image ID)

    Raises:
        NotFoundError: image not present locally
        DaemonError: inspect failed
    """
    try:
        image = await async_docker_call(client.images.get, image_ref)
    except docker.errors.ImageNotFound:
        raise NotFoundError(f"image not found locally: {image_ref}")
    except docker.errors.APIError as e:
        raise DaemonError(f"failed to inspect image {image_ref}: {e}", step="inspect")

    attrs = image.attrs or {}
    digests = []
    for repo_digest in attrs.get('RepoDigests') or []:
        _, sep, digest = repo_digest.partition('@')
        if sep and digest and digest not in digests:
            digests.append(digest)

    if not digests:
        image_id = attrs.get('Id') or image.id
        if not image_id:
            raise NotFoundError(f"image {image_ref} has neither repo digests nor an ID")
        digests.append(image_id)

    return digests[0], digests


def has_digest_update(remote_digest: str, local_digests: Iterable[str]) -> bool:
    """True when remote_digest matches none of the local digests."""
    return remote_digest not in set(local_digests)


class DigestComparator:
    """
    Per-image update check.

    Uses the registry's shared token when given, re-authenticates once on a
    401 and falls back to tag-level detection when the digest is unchanged.
    """

    def __init__(self, registry: RegistryClient, docker_client: docker.DockerClient):
        self.registry = registry
        self.docker_client = docker_client

    async def compare(
        self,
        image_ref: str,
        ref: ImageReference,
        token: str = "",
        auth: Optional[AuthDetails] = None,
        credentials: Iterable[Credential] = (),
    ) -> CheckResult:
        """
        Check one image. Never raises for per-image failures; errors land on the result.

        Args:
            image_ref: Reference as given by the caller (used to inspect locally)
            ref: Parsed reference
            token: Registry token shared by the batch ("" = none)
            auth: How the shared token was obtained
            credentials: Credentials for one-shot re-authentication
        """
        start = time.monotonic()
        auth = auth or AuthDetails(method=AuthMethod.UNKNOWN.value, registry=ref.registry)
        credentials = list(credentials)

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            remote_digest, token, auth = await self._get_remote_digest(ref, token, auth, credentials)
            _, local_digests = await get_local_digests(self.docker_client, image_ref)
        except (AuthError, NetworkError, NotFoundError, DaemonError) as e:
            result = CheckResult.failure(e.message, response_time_ms=elapsed_ms())
            result.apply_auth(auth)
            return result

        has_update = has_digest_update(remote_digest, local_digests)

        if not has_update:
            tag_result = await self._check_tag_update(ref, token, auth)
            if tag_result is not None:
                tag_result.response_time_ms = elapsed_ms()
                return tag_result

        result = CheckResult(
            has_update=has_update,
            update_type="digest",
            current_digest=local_digests[0],
            latest_digest=remote_digest,
            response_time_ms=elapsed_ms(),
        )
        result.apply_auth(auth)
        return result

    async def _get_remote_digest(
        self,
        ref: ImageReference,
        token: str,
        auth: AuthDetails,
        credentials: List[Credential],
    ) -> Tuple[str, str, AuthDetails]:
        try:
            digest = await self.registry.get_latest_digest(ref.registry, ref.repository, ref.tag, token)
            return digest, token, auth
        except UnauthorizedError:
            logger.debug(f"Unauthorized for {ref}, resolving auth header")

        header, method, username = await self.registry.resolve_auth_header(
            ref.registry, ref.repository, ref.tag, credentials
        )
        digest = await self.registry.get_latest_digest(ref.registry, ref.repository, ref.tag, header)
        new_auth = AuthDetails(
            method=method,
            username=username or None,
            registry=ref.registry,
            used_credential=bool(username),
        )
        return digest, header, new_auth

    async def _check_tag_update(self, ref: ImageReference, token: str,
                                auth: AuthDetails) -> Optional[CheckResult]:
        """Tag-level detection; None when not applicable or nothing newer exists."""
        if is_special_tag(ref.tag) or parse_version(ref.tag) is None:
            return None

        try:
            tags = await self.registry.get_image_tags(ref.registry, ref.repository, token)
        except (AuthError, NetworkError) as e:
            logger.debug(f"Tag listing for {ref} failed, keeping digest result: {e}")
            return None

        latest = newer_tag(ref.tag, tags)
        if latest is None:
            return None

        result = CheckResult(
            has_update=True,
            update_type="tag",
            current_version=ref.tag,
            latest_version=latest,
        )
        result.apply_auth(auth)
        return result
