"""
Batch Update Checker

Checks many image references in one pass:

1. Parse every reference (invalid ones get an immediate error result)
2. Group repositories by registry host
3. Build the credential lookup (caller-supplied credentials replace stored ones)
4. Resolve ONE auth decision per registry (multi-scope token)
5. Run per-image digest comparisons on a bounded worker pool
6. Persist each result as soon as it arrives
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

import docker

from config.settings import UpdaterConfig
from event_bus import Event, EventType, get_event_bus
from updates.digest_comparator import DigestComparator
from updates.errors import AuthError, DaemonError, NetworkError, NotFoundError, ParseError
from updates.event_emitter import UpdaterEventEmitter
from updates.record_store import UpdateRecordStore
from updates.reference import ImageReference, normalize_registry_host, parse_reference
from updates.registry_adapter import RegistryClient
from updates.types import AuthDetails, AuthMethod, CheckResult, ExternalCredential
from utils.async_docker import async_docker_call
from utils.registry_credentials import Credential, load_stored_credentials

logger = logging.getLogger(__name__)

INVALID_REFERENCE_ERROR = "Invalid image reference format"


@dataclass
class RegistryAuth:
    """Shared auth decision for every image of one registry in a batch."""
    token: str
    details: AuthDetails


@dataclass
class _WorkItem:
    image_ref: str
    ref: ImageReference


class BatchUpdateChecker:
    """
    Coordinates update checks across images and registries.

    Usage:
        checker = BatchUpdateChecker(db, docker_client, config)
        results = await checker.check_multiple_images(["nginx:1.25", "ghcr.io/org/app:v2"])
    """

    def __init__(
        self,
        db,
        docker_client: docker.DockerClient,
        config: Optional[UpdaterConfig] = None,
        registry: Optional[RegistryClient] = None,
        record_store: Optional[UpdateRecordStore] = None,
        emitter: Optional[UpdaterEventEmitter] = None,
    ):
        self.db = db
        self.docker_client = docker_client
        self.config = config or UpdaterConfig()
        self.registry = registry
        self.record_store = record_store or UpdateRecordStore(db, docker_client)
        self.emitter = emitter or UpdaterEventEmitter()

    # ==================== Batch helpers ====================

    @staticmethod
    def parse_and_group(
        image_refs: Iterable[str],
    ) -> Tuple[Dict[str, Set[str]], Dict[str, CheckResult], List[_WorkItem]]:
        """
        Parse references and group repositories by registry.

        Returns:
            (registry → normalized repositories, immediate error results, work items)
        """
        registry_repos: Dict[str, Set[str]] = {}
        results: Dict[str, CheckResult] = {}
        items: List[_WorkItem] = []

        seen: Set[str] = set()
        for image_ref in image_refs:
            if image_ref in seen:
                continue
            seen.add(image_ref)
            try:
                ref = parse_reference(image_ref)
            except ParseError:
                results[image_ref] = CheckResult.failure(INVALID_REFERENCE_ERROR)
                continue
            registry_repos.setdefault(ref.registry, set()).add(ref.repository)
            items.append(_WorkItem(image_ref=image_ref, ref=ref))

        return registry_repos, results, items

    def build_credentials(
        self,
        external_credentials: Optional[Iterable[ExternalCredential]] = None,
    ) -> Tuple[Dict[str, Credential], List[Credential]]:
        """
        Build the per-host credential map and the list used for re-authentication.

        External credentials, when given, replace stored ones for the whole batch.
        The first usable credential per host wins.
        """
        if external_credentials:
            creds = [
                Credential(url=c.url, username=c.username, token=c.token,
                           enabled=c.enabled, encrypted=False)
                for c in external_credentials
            ]
            logger.debug(f"Using {len(creds)} external credential(s) for batch check")
        else:
            creds = load_stored_credentials(self.db)

        usable = [c for c in creds if c.usable and c.host]
        cred_map: Dict[str, Credential] = {}
        for cred in usable:
            cred_map.setdefault(cred.host, cred)
        return cred_map, usable

    async def build_registry_auth(
        self,
        registry: RegistryClient,
        registry_repos: Dict[str, Set[str]],
        cred_map: Dict[str, Credential],
    ) -> Dict[str, RegistryAuth]:
        """
        One auth decision per registry: none, anonymous, credential or unknown.
        """
        auth_map: Dict[str, RegistryAuth] = {}

        for registry_host, repo_set in registry_repos.items():
            repos = sorted(repo_set)
            unknown = RegistryAuth("", AuthDetails(method=AuthMethod.UNKNOWN.value, registry=registry_host))

            try:
                auth_url = await registry.check_auth(registry_host)
            except NetworkError as e:
                logger.debug(f"Auth check failed for {registry_host}: {e.message}")
                auth_map[registry_host] = unknown
                continue

            if not auth_url:
                auth_map[registry_host] = RegistryAuth(
                    "", AuthDetails(method=AuthMethod.NONE.value, registry=registry_host))
                continue

            try:
                token = await registry.get_token_multi(auth_url, repos)
                auth_map[registry_host] = RegistryAuth(
                    token, AuthDetails(method=AuthMethod.ANONYMOUS.value, registry=registry_host))
                continue
            except (AuthError, NetworkError) as e:
                logger.debug(f"Anonymous token for {registry_host} failed: {e.message}")

            cred = cred_map.get(normalize_registry_host(registry_host))
            if cred is not None:
                try:
                    password = cred.plaintext_token()
                    token = await registry.get_token_multi(auth_url, repos, (cred.username, password))
                    auth_map[registry_host] = RegistryAuth(token, AuthDetails(
                        method=AuthMethod.CREDENTIAL.value,
                        username=cred.username,
                        registry=registry_host,
                        used_credential=True,
                    ))
                    continue
                except (AuthError, NetworkError, ValueError, IOError) as e:
                    logger.debug(f"Credential token for {registry_host} failed: {e}")

            auth_map[registry_host] = unknown

        return auth_map

    # ==================== Public API ====================

    async def check_multiple_images(
        self,
        image_refs: Iterable[str],
        external_credentials: Optional[Iterable[ExternalCredential]] = None,
        persist: bool = True,
    ) -> Dict[str, CheckResult]:
        """
        Check a batch of image references.

        Args:
            image_refs: References as found locally (e.g. "nginx:1.25")
            external_credentials: Plaintext credentials replacing stored ones for this batch
            persist: Write each result to image_updates as it arrives

        Returns:
            Dict mapping each input reference to its CheckResult
        """
        batch_start = time.monotonic()
        image_refs = list(image_refs)
        if not image_refs:
            return {}

        registry_repos, results, items = self.parse_and_group(image_refs)
        cred_map, credentials = self.build_credentials(external_credentials)

        registry = self.registry or RegistryClient(self.config)
        try:
            auth_map = await self.build_registry_auth(registry, registry_repos, cred_map)
            comparator = DigestComparator(registry, self.docker_client)

            queue: asyncio.Queue = asyncio.Queue()
            for item in items:
                queue.put_nowait(item)

            async def worker(worker_id: int):
                while True:
                    try:
                        item = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    try:
                        result = await self._check_one(comparator, item, auth_map, credentials)
                    except Exception as e:
                        logger.error(f"Update check worker {worker_id} failed for {item.image_ref}: {e}",
                                     exc_info=True)
                        result = CheckResult.failure(str(e) or type(e).__name__)
                    results[item.image_ref] = result
                    if persist:
                        await self._persist(item.image_ref, result)

            worker_count = max(1, min(self.config.concurrency, len(items)))
            if items:
                await asyncio.gather(*(worker(i) for i in range(worker_count)))
        finally:
            if self.registry is None:
                await registry.close()

        with_updates = sum(1 for r in results.values() if r.has_update)
        errors = sum(1 for r in results.values() if r.error)
        logger.info(
            f"Batch image update check completed: {len(image_refs)} image(s), "
            f"{with_updates} with updates, {errors} error(s) in {time.monotonic() - batch_start:.2f}s"
        )
        await self._emit_completed(len(results), with_updates, errors)
        return results

    async def check_image(self, image_ref: str,
                          external_credentials: Optional[Iterable[ExternalCredential]] = None,
                          persist: bool = True) -> CheckResult:
        """Single-image check (same path as a batch of one)."""
        results = await self.check_multiple_images([image_ref], external_credentials, persist=persist)
        return results[image_ref]

    async def check_all_images(self, limit: int = 0,
                               external_credentials: Optional[Iterable[ExternalCredential]] = None,
                               persist: bool = True) -> Dict[str, CheckResult]:
        """
        Check every tagged local image.

        Raises:
            DaemonError: image list failed
        """
        image_refs = await self.get_all_image_refs(limit)
        if not image_refs:
            return {}
        return await self.check_multiple_images(image_refs, external_credentials, persist=persist)

    async def check_image_by_id(self, image_id: str) -> CheckResult:
        """
        Check the local image with this ID (via its first usable tag).

        Raises:
            DaemonError / NotFoundError from the inspect
        """
        image_ref = await self.get_image_ref_by_id(image_id)
        result = await self.check_image(image_ref, persist=False)
        await self.record_store.save_result_by_id(image_id, result)
        return result

    # ==================== Docker helpers ====================

    async def get_all_image_refs(self, limit: int = 0) -> List[str]:
        try:
            images = await async_docker_call(self.docker_client.images.list)
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to list Docker images: {e}", step="list_images")

        refs: List[str] = []
        for image in images:
            for tag in image.tags or []:
                if tag != "<none>:<none>" and tag not in refs:
                    refs.append(tag)
            if limit and len(refs) >= limit:
                break
        if limit and limit > 0:
            refs = refs[:limit]
        return refs

    async def get_image_ref_by_id(self, image_id: str) -> str:
        try:
            image = await async_docker_call(self.docker_client.images.get, image_id)
        except docker.errors.ImageNotFound:
            raise NotFoundError(f"image not found: {image_id}")
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to inspect image {image_id}: {e}", step="inspect")

        attrs = image.attrs or {}
        for tag in attrs.get('RepoTags') or []:
            if tag != "<none>:<none>":
                return tag
        for repo_digest in attrs.get('RepoDigests') or []:
            name, sep, _ = repo_digest.partition('@')
            if sep and name and name != "<none>":
                return f"{name}:latest"
        raise NotFoundError(f"no valid repository tags or digests found for image {image_id}")

    # ==================== Internals ====================

    async def _check_one(
        self,
        comparator: DigestComparator,
        item: _WorkItem,
        auth_map: Dict[str, RegistryAuth],
        credentials: List[Credential],
    ) -> CheckResult:
        registry_auth = auth_map.get(item.ref.registry)
        token = registry_auth.token if registry_auth else ""
        details = registry_auth.details if registry_auth else None
        return await comparator.compare(item.image_ref, item.ref, token, details, credentials)

    async def _persist(self, image_ref: str, result: CheckResult):
        try:
            image_id = await self.record_store.save_result(image_ref, result)
        except Exception as e:
            logger.warning(f"Failed to save update result for {image_ref}: {e}")
            return
        if image_id and result.has_update:
            await self.emitter.emit_update_available(
                image_id,
                image_ref,
                result.current_version or result.current_digest or "",
                result.latest_version or result.latest_digest or "",
            )

    async def _emit_completed(self, checked: int, with_updates: int, errors: int):
        try:
            await get_event_bus().emit(Event(
                event_type=EventType.UPDATER_CHECK_COMPLETED,
                scope_type='system',
                scope_id='updater',
                scope_name='Update check',
                data={'checked': checked, 'with_updates': with_updates, 'errors': errors},
            ))
        except Exception as e:
            logger.error(f"Error emitting check completed event: {e}")
