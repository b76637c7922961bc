"""
Tests for UpdatePlanner and the skip rules shared with the applier.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

import docker

from deployment.stack_provider import StackInfo, StackService, StackStatus
from updates.labels import COMPOSE_PROJECT_LABEL, SWARM_NAMESPACE_LABEL, UPDATER_LABEL, ContainerLabels
from updates.planner import (
    UpdatePlanner,
    container_skip_reason,
    normalize_ref,
    stack_skip_reason,
    strip_digest,
)
from updates.record_store import UpdateRecordStore
from updates.types import CheckResult
from config.settings import UpdaterConfig

OLD_ID = "sha256:" + "0" * 64
NEW_ID = "sha256:" + "1" * 64
REDIS_ID = "sha256:" + "2" * 64


# =============================================================================
# normalize_ref
# =============================================================================

@pytest.mark.parametrize("ref,expected", [
    ("redis", "docker.io/library/redis:latest"),
    ("redis:7", "docker.io/library/redis:7"),
    ("library/redis:7", "docker.io/library/redis:7"),
    ("docker.io/library/redis:7", "docker.io/library/redis:7"),
    ("Index.Docker.io/foo/bar:1", "docker.io/foo/bar:1"),
    ("registry-1.docker.io/foo/bar", "docker.io/foo/bar:latest"),
    ("nginx@sha256:" + "a" * 64, "docker.io/library/nginx:latest"),
    ("nginx:1.25@sha256:" + "a" * 64, "docker.io/library/nginx:1.25"),
    ("localhost:5000/App:1.0", "localhost:5000/app:1.0"),
    ("localhost/app", "localhost/app:latest"),
    ("ghcr.io/Org/App:v2", "ghcr.io/org/app:v2"),
    ("traefik/whoami", "docker.io/traefik/whoami:latest"),
])
def test_normalize_ref(ref, expected):
    assert normalize_ref(ref) == expected


def test_strip_digest():
    assert strip_digest("nginx@sha256:abc") == "nginx"
    assert strip_digest("nginx:1.25") == "nginx:1.25"


# =============================================================================
# Skip rules
# =============================================================================

class TestSkipRules:

    @pytest.mark.parametrize("labels,running,reason", [
        ({}, True, None),
        ({}, False, "container not running"),
        ({COMPOSE_PROJECT_LABEL: "media"}, True, "managed by a stack"),
        ({SWARM_NAMESPACE_LABEL: "media"}, True, "managed by a stack"),
        ({UPDATER_LABEL: "false"}, True, "updates disabled by label"),
        ({UPDATER_LABEL: "true"}, True, None),
    ])
    def test_container_skip_reason(self, labels, running, reason):
        assert container_skip_reason(ContainerLabels.from_labels(labels), running) == reason

    def test_stack_not_active(self, make_container):
        stack = StackInfo(name="media", status=StackStatus.STOPPED)
        member = make_container(image_id=OLD_ID)
        assert stack_skip_reason(stack, [member], {OLD_ID}) == "stack is stopped"

    def test_stack_member_opted_out(self, make_container):
        stack = StackInfo(name="media", status=StackStatus.PARTIALLY_RUNNING)
        members = [
            make_container(name="app", image_id=OLD_ID),
            make_container(name="db", image_id=REDIS_ID, labels={UPDATER_LABEL: "off"}),
        ]
        assert stack_skip_reason(stack, members, {OLD_ID}) == "member db has updates disabled"

    def test_stack_without_stale_member(self, make_container):
        stack = StackInfo(name="media", status=StackStatus.RUNNING)
        members = [make_container(image_id=NEW_ID)]
        assert stack_skip_reason(stack, members, {OLD_ID}) == "no member runs an outdated image"

    def test_stack_eligible(self, make_container):
        stack = StackInfo(name="media", status=StackStatus.RUNNING)
        members = [make_container(image_id=OLD_ID)]
        assert stack_skip_reason(stack, members, {OLD_ID}) is None


# =============================================================================
# build_plans
# =============================================================================

class TestBuildPlans:

    @pytest.fixture
    def store(self, db_manager, mock_docker_client):
        return UpdateRecordStore(db_manager, mock_docker_client)

    @pytest.fixture
    def planner(self, mock_docker_client, store, make_image):
        images = {
            "nginx:1.25": make_image(NEW_ID, ["nginx:1.25"]),
            OLD_ID: make_image(OLD_ID, []),
            REDIS_ID: make_image(REDIS_ID, ["redis:7"]),
        }

        def get_image(ref):
            if ref not in images:
                raise docker.errors.ImageNotFound(ref)
            return images[ref]

        mock_docker_client.images.get = MagicMock(side_effect=get_image)
        return UpdatePlanner(mock_docker_client, store)

    @pytest.mark.asyncio
    async def test_plan_captures_old_ids_and_filters_unused(self, planner, store, mock_docker_client,
                                                            make_container):
        store.upsert(OLD_ID, "nginx", "1.25", CheckResult(has_update=True))
        store.upsert(REDIS_ID, "redis", "7", CheckResult(has_update=True))
        mock_docker_client.containers.list.return_value = [
            make_container(image_ref="docker.io/library/nginx:1.25", image_id=OLD_ID),
        ]

        plans = await planner.build_plans()

        assert len(plans) == 1
        plan = plans[0]
        assert plan.old_ref == "nginx:1.25"
        assert plan.new_ref == "nginx:1.25"
        # Tag already moved to the new image: both IDs are stale candidates
        assert plan.old_image_ids == [NEW_ID, OLD_ID]
        assert plan.record_id == OLD_ID
        assert plan.update_type == "digest"

    @pytest.mark.asyncio
    async def test_tag_update_targets_latest_version(self, planner, store, mock_docker_client, make_container):
        store.upsert(REDIS_ID, "redis", "7",
                     CheckResult(has_update=True, update_type="tag", latest_version="8"))
        mock_docker_client.containers.list.return_value = [
            make_container(image_ref="redis:7", image_id=REDIS_ID),
        ]

        plans = await planner.build_plans()

        assert [(p.old_ref, p.new_ref, p.update_type) for p in plans] == [("redis:7", "redis:8", "tag")]

    @pytest.mark.asyncio
    async def test_filter_disabled_plans_everything(self, planner, store):
        planner.config = UpdaterConfig(filter_used_images=False)
        store.upsert(OLD_ID, "nginx", "1.25", CheckResult(has_update=True))
        store.upsert(REDIS_ID, "redis", "7", CheckResult(has_update=True))

        plans = await planner.build_plans()

        assert sorted(p.old_ref for p in plans) == ["nginx:1.25", "redis:7"]

    @pytest.mark.asyncio
    async def test_filter_failure_plans_everything(self, planner, store, mock_docker_client):
        store.upsert(REDIS_ID, "redis", "7", CheckResult(has_update=True))
        mock_docker_client.containers.list.side_effect = docker.errors.APIError("daemon down")

        plans = await planner.build_plans()

        assert [p.old_ref for p in plans] == ["redis:7"]

    @pytest.mark.asyncio
    async def test_running_stack_services_count_as_used(self, planner, store):
        store.upsert(REDIS_ID, "redis", "7", CheckResult(has_update=True))
        provider = MagicMock()
        provider.list_stacks = AsyncMock(return_value=[
            StackInfo(name="cache", status=StackStatus.RUNNING,
                      services=[StackService(name="redis", image="docker.io/library/redis:7")]),
            StackInfo(name="old", status=StackStatus.STOPPED,
                      services=[StackService(name="web", image="nginx:1.25")]),
        ])
        planner.stack_provider = provider

        used = await planner.collect_used_images()

        assert used == {"docker.io/library/redis:7"}
        assert [p.old_ref for p in await planner.build_plans()] == ["redis:7"]

    @pytest.mark.asyncio
    async def test_no_pending_records(self, planner, mock_docker_client):
        assert await planner.build_plans() == []
        mock_docker_client.containers.list.assert_not_called()


# =============================================================================
# Docker state
# =============================================================================

class TestDockerState:

    @pytest.mark.asyncio
    async def test_container_refs_include_image_tags(self, mock_docker_client, db_manager, make_container,
                                                     make_image):
        mock_docker_client.images.get = MagicMock(return_value=make_image(OLD_ID, ["nginx:1.25", "web:prod"]))
        planner = UpdatePlanner(mock_docker_client, UpdateRecordStore(db_manager))

        refs = await planner.container_refs(make_container(image_ref="nginx:1.25", image_id=OLD_ID))

        assert refs == {"docker.io/library/nginx:1.25", "docker.io/library/web:prod"}

    @pytest.mark.asyncio
    async def test_stack_members_union(self, mock_docker_client, db_manager, make_container):
        compose_member = make_container(container_id="a" * 64, name="app")
        swarm_member = make_container(container_id="b" * 64, name="worker")

        def list_containers(all=False, filters=None):
            if filters["label"].startswith(COMPOSE_PROJECT_LABEL):
                return [compose_member]
            return [swarm_member, compose_member]

        mock_docker_client.containers.list = MagicMock(side_effect=list_containers)
        planner = UpdatePlanner(mock_docker_client, UpdateRecordStore(db_manager))

        members = await planner.stack_members("media")

        assert {m.name for m in members} == {"app", "worker"}

    @pytest.mark.asyncio
    async def test_stack_members_raises_when_both_lists_fail(self, mock_docker_client, db_manager):
        mock_docker_client.containers.list = MagicMock(side_effect=docker.errors.APIError("down"))
        planner = UpdatePlanner(mock_docker_client, UpdateRecordStore(db_manager))

        with pytest.raises(docker.errors.APIError):
            await planner.stack_members("media")
