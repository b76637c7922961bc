"""
Update Planner

Turns pending image_updates rows into UpdatePlans and decides which
containers and stacks the applier may touch.

Plans capture the local image IDs behind old_ref BEFORE anything is pulled:
after the pull the tag points at the new image, and the old IDs are the only
way to find containers still running the stale image.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

import docker

from config.settings import UpdaterConfig
from deployment.stack_provider import StackInfo, StackProvider
from updates.labels import COMPOSE_PROJECT_LABEL, SWARM_NAMESPACE_LABEL, ContainerLabels
from updates.record_store import UpdateRecordStore
from updates.reference import DEFAULT_REGISTRY, DEFAULT_TAG, DOCKER_HUB_ALIASES, OFFICIAL_REPO_PREFIX
from updates.types import UpdatePlan
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

UNTAGGED_REF = "<none>:<none>"


def strip_digest(ref: str) -> str:
    return ref.split("@", 1)[0]


def normalize_ref(ref: str) -> str:
    """
    Canonical lower-case "registry/repository:tag" without digest.

    Never raises; used only for set membership.

    Examples:
        redis:latest         → docker.io/library/redis:latest
        nginx@sha256:...     → docker.io/library/nginx:latest
        Index.Docker.io/foo/bar:1 → docker.io/foo/bar:1
    """
    ref = strip_digest((ref or "").strip())

    tag = DEFAULT_TAG
    colon = ref.rfind(":")
    if colon != -1 and ref.rfind("/") < colon:
        tag = ref[colon + 1:] or DEFAULT_TAG
        ref = ref[:colon]

    parts = ref.split("/")
    first = parts[0]
    if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
        domain = first.lower()
        parts = parts[1:]
    else:
        domain = DEFAULT_REGISTRY

    if domain in DOCKER_HUB_ALIASES:
        domain = DEFAULT_REGISTRY

    repo = "/".join(parts)
    if domain == DEFAULT_REGISTRY and "/" not in repo:
        repo = OFFICIAL_REPO_PREFIX + repo

    return f"{domain}/{repo}:{tag}".lower()


def container_skip_reason(labels: ContainerLabels, running: bool = True) -> Optional[str]:
    """
    Why the container path must leave this container alone (None = eligible).
    """
    if not running:
        return "container not running"
    if labels.is_stack_managed:
        return "managed by a stack"
    if labels.opted_out:
        return "updates disabled by label"
    return None


def stack_skip_reason(stack: StackInfo, members: Iterable, stale_ids: Set[str]) -> Optional[str]:
    """
    Why the stack path must leave this stack alone (None = redeploy it).

    members are the stack's containers (compose or swarm label).
    """
    if not stack.status.is_active:
        return f"stack is {stack.status.value}"
    members = list(members)
    for member in members:
        if ContainerLabels.from_labels(member.labels).opted_out:
            return f"member {member.name} has updates disabled"
    if not any(container_image_id(m) in stale_ids for m in members):
        return "no member runs an outdated image"
    return None


def container_image_id(container) -> str:
    """Image ID the container was created from (sha256:...)."""
    return (container.attrs or {}).get('Image', '')


class UpdatePlanner:
    """Reads pending records and live Docker state to decide what to update."""

    def __init__(
        self,
        docker_client: docker.DockerClient,
        record_store: UpdateRecordStore,
        stack_provider: Optional[StackProvider] = None,
        config: Optional[UpdaterConfig] = None,
    ):
        self.docker_client = docker_client
        self.record_store = record_store
        self.stack_provider = stack_provider
        self.config = config or UpdaterConfig()

    # ==================== Plans ====================

    async def build_plans(self) -> List[UpdatePlan]:
        """
        One plan per pending record, filtered to images in use when enabled.

        Raises:
            Exception from the record store (run-level error for the caller)
        """
        records = self.record_store.list_pending()
        if not records:
            return []

        used: Optional[Set[str]] = None
        if self.config.filter_used_images:
            used = await self.collect_used_images()

        plans: List[UpdatePlan] = []
        seen: Set[str] = set()
        for record in records:
            old_ref = f"{record.repository}:{record.tag}"
            if old_ref in seen:
                continue
            if used is not None and normalize_ref(old_ref) not in used:
                logger.debug(f"Skipping {old_ref}: not used by a running container or stack")
                continue
            seen.add(old_ref)

            new_ref = old_ref
            if record.is_tag_update and record.latest_version:
                new_ref = f"{record.repository}:{record.latest_version}"

            old_ids = await self.resolve_image_ids(old_ref)
            if record.id not in old_ids:
                old_ids.append(record.id)

            plans.append(UpdatePlan(
                old_ref=old_ref,
                new_ref=new_ref,
                old_image_ids=old_ids,
                record_id=record.id,
                update_type=record.update_type or "digest",
            ))

        logger.info(f"Planned {len(plans)} image update(s) from {len(records)} pending record(s)")
        return plans

    async def resolve_image_ids(self, ref: str) -> List[str]:
        """Local image IDs currently behind ref (empty if it can't be inspected)."""
        try:
            image = await async_docker_call(self.docker_client.images.get, ref)
        except docker.errors.DockerException as e:
            logger.debug(f"Could not resolve local image for {ref}: {e}")
            return []
        return [image.id] if image.id else []

    # ==================== Used-image filter ====================

    async def collect_used_images(self) -> Optional[Set[str]]:
        """
        Normalized refs used by running containers and running stacks.

        Returns None when the set cannot be built; the filter is then skipped.
        """
        used: Set[str] = set()
        try:
            containers = await self.list_running_containers()
            for container in containers:
                used.update(await self.container_refs(container))

            if self.stack_provider is not None:
                for stack in await self.stack_provider.list_stacks():
                    if not stack.status.is_active:
                        continue
                    for service in stack.services:
                        if service.image:
                            used.add(normalize_ref(service.image))
        except Exception as e:
            logger.warning(f"Could not build used-image filter, planning all pending updates: {e}")
            return None
        return used

    async def container_refs(self, container) -> Set[str]:
        """Normalized tags of the container's image plus its Config.Image."""
        refs: Set[str] = set()
        image_id = container_image_id(container)
        if image_id:
            try:
                image = await async_docker_call(self.docker_client.images.get, image_id)
                for tag in image.tags or []:
                    if tag and tag != UNTAGGED_REF:
                        refs.add(normalize_ref(tag))
            except docker.errors.DockerException as e:
                logger.debug(f"Could not inspect image {image_id[:19]}: {e}")

        configured = ((container.attrs or {}).get('Config') or {}).get('Image')
        if configured:
            refs.add(normalize_ref(configured))
        return refs

    # ==================== Docker state ====================

    async def list_running_containers(self) -> list:
        """
        Raises:
            docker.errors.APIError: list failed (run-level error)
        """
        return await async_docker_call(self.docker_client.containers.list)

    async def stack_members(self, stack_name: str) -> list:
        """Union of containers labelled with the compose project or swarm namespace."""
        members: Dict[str, object] = {}
        errors = []
        for label in (COMPOSE_PROJECT_LABEL, SWARM_NAMESPACE_LABEL):
            try:
                found = await async_docker_call(
                    self.docker_client.containers.list,
                    all=True,
                    filters={"label": f"{label}={stack_name}"},
                )
            except docker.errors.APIError as e:
                errors.append(e)
                continue
            for container in found:
                members[container.id] = container

        if len(errors) == 2:
            raise errors[-1]
        return list(members.values())
