"""
Tests for the label-driven AutoUpdater.

Containers and stacks opt in with refit.auto-update / refit.stack.auto-update.
Every update is guarded by the in-flight registry.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

import docker

from deployment.stack_provider import StackInfo, StackProvider, StackService, StackStatus
from updates.auto_updater import AutoUpdater
from updates.errors import DaemonError
from updates.event_emitter import UpdaterEventEmitter
from updates.in_flight import InProcessInFlightRegistry
from updates.labels import AUTO_UPDATE_LABEL, COMPOSE_PROJECT_LABEL, STACK_AUTO_UPDATE_LABEL, UPDATER_LABEL

OLD_ID = "sha256:" + "0" * 64
NEW_ID = "sha256:" + "1" * 64


@pytest.fixture
def registry():
    return InProcessInFlightRegistry()


@pytest.fixture
def emitter():
    return AsyncMock(spec=UpdaterEventEmitter)


@pytest.fixture
def stack_provider():
    provider = MagicMock(spec=StackProvider)
    provider.list_stacks = AsyncMock(return_value=[])
    provider.pull = AsyncMock()
    provider.down = AsyncMock()
    provider.up = AsyncMock()
    return provider


@pytest.fixture
def images(mock_docker_client, make_image):
    """Tag → image ID map served by images.get; pull moves tags to NEW_ID."""
    current = {"nginx:1.25": OLD_ID, "redis:7": OLD_ID, "postgres:16": OLD_ID}
    moved = set()

    def get_image(ref):
        if ref not in current:
            raise docker.errors.ImageNotFound(ref)
        return make_image(current[ref], [ref])

    def pull(ref, **kwargs):
        if ref in moved:
            current[ref] = NEW_ID
        return make_image(current[ref], [ref])

    mock_docker_client.images.get = MagicMock(side_effect=get_image)
    mock_docker_client.images.pull = MagicMock(side_effect=pull)
    return moved


@pytest.fixture
def updater(db_manager, mock_docker_client, stack_provider, registry, emitter, images):
    return AutoUpdater(db_manager, mock_docker_client, stack_provider=stack_provider,
                       in_flight=registry, emitter=emitter)


# =============================================================================
# Containers
# =============================================================================

class TestContainerAutoUpdate:

    @pytest.mark.asyncio
    async def test_recreates_when_pull_moves_tag(self, updater, mock_docker_client, images, make_container,
                                                 emitter):
        web = make_container(name="web", image_ref="nginx:1.25", image_id=OLD_ID,
                             labels={AUTO_UPDATE_LABEL: "true"})
        mock_docker_client.containers.list.return_value = [web]
        images.add("nginx:1.25")

        result = await updater.check_and_update_containers()

        assert result.updated == 1
        item = result.items[0]
        assert item.status == "updated"
        assert item.details['new_image_id'] == NEW_ID
        assert item.details['path'] == 'auto_update'
        web.stop.assert_called_once()
        emitter.emit_container_updated.assert_awaited_once()
        assert updater.record_store.list_history()[1] == 1

    @pytest.mark.asyncio
    async def test_container_removed_during_update_is_skipped(self, updater, mock_docker_client, images,
                                                              make_container, emitter):
        web = make_container(name="web", image_ref="nginx:1.25", image_id=OLD_ID,
                             labels={AUTO_UPDATE_LABEL: "true"})
        web.stop.side_effect = docker.errors.NotFound("No such container")
        mock_docker_client.containers.list.return_value = [web]
        images.add("nginx:1.25")

        result = await updater.check_and_update_containers()

        assert result.skipped == 1
        assert result.failed == 0
        assert result.items[0].status == "skipped"
        assert "stop failed for web" in result.items[0].details['reason']
        emitter.emit_container_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_up_to_date(self, updater, mock_docker_client, make_container):
        web = make_container(name="web", image_ref="nginx:1.25", image_id=OLD_ID,
                             labels={AUTO_UPDATE_LABEL: "yes"})
        mock_docker_client.containers.list.return_value = [web]

        result = await updater.check_and_update_containers()

        assert [i.status for i in result.items] == ["up_to_date"]
        web.stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_only_opted_in_standalone_containers(self, updater, mock_docker_client, make_container):
        mock_docker_client.containers.list.return_value = [
            make_container(container_id="1" * 64, name="plain", image_ref="nginx:1.25"),
            make_container(container_id="2" * 64, name="vetoed", image_ref="nginx:1.25",
                           labels={AUTO_UPDATE_LABEL: "true", UPDATER_LABEL: "false"}),
            make_container(container_id="3" * 64, name="stacked", image_ref="nginx:1.25",
                           labels={AUTO_UPDATE_LABEL: "true", COMPOSE_PROJECT_LABEL: "media"}),
        ]

        result = await updater.check_and_update_containers()

        assert result.items == []
        mock_docker_client.images.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_digest_pinned_is_skipped(self, updater, mock_docker_client, make_container):
        mock_docker_client.containers.list.return_value = [
            make_container(name="pinned", image_ref="nginx@sha256:" + "a" * 64,
                           labels={AUTO_UPDATE_LABEL: "true"}),
        ]

        result = await updater.check_and_update_containers()

        assert result.skipped == 1
        assert result.items[0].details['reason'] == 'image is pinned by digest'

    @pytest.mark.asyncio
    async def test_pull_failure(self, updater, mock_docker_client, make_container):
        mock_docker_client.containers.list.return_value = [
            make_container(name="web", image_ref="nginx:1.25", labels={AUTO_UPDATE_LABEL: "true"}),
        ]
        mock_docker_client.images.pull.side_effect = docker.errors.APIError("denied")

        result = await updater.check_and_update_containers()

        assert result.failed == 1
        assert "failed to pull image nginx:1.25" in result.items[0].error

    @pytest.mark.asyncio
    async def test_in_flight_container_is_skipped(self, updater, registry, mock_docker_client, make_container):
        web = make_container(name="web", image_ref="nginx:1.25", labels={AUTO_UPDATE_LABEL: "true"})
        mock_docker_client.containers.list.return_value = [web]
        await registry.try_acquire(web.id, "container", "web")

        result = await updater.check_and_update_containers()

        assert result.items[0].status == "skipped"
        assert result.items[0].details['reason'] == 'update already in progress'
        mock_docker_client.images.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_registry_released_after_update(self, updater, registry, mock_docker_client, make_container):
        web = make_container(name="web", image_ref="nginx:1.25", labels={AUTO_UPDATE_LABEL: "true"})
        mock_docker_client.containers.list.return_value = [web]

        await updater.check_and_update_containers()

        assert not await registry.is_in_flight(web.id)

    @pytest.mark.asyncio
    async def test_list_failure_raises(self, updater, mock_docker_client):
        mock_docker_client.containers.list.side_effect = docker.errors.APIError("daemon down")
        with pytest.raises(DaemonError):
            await updater.check_and_update_containers()


# =============================================================================
# Stacks
# =============================================================================

def _stack(name="media", status=StackStatus.RUNNING, auto_update="true"):
    labels = {STACK_AUTO_UPDATE_LABEL: auto_update} if auto_update is not None else {}
    return StackInfo(name=name, status=status, services=[
        StackService(name="web", image="nginx:1.25", labels=labels),
        StackService(name="db", image="postgres:16"),
    ])


class TestStackAutoUpdate:

    @pytest.mark.asyncio
    async def test_redeploys_when_any_service_image_moved(self, updater, stack_provider, images, emitter):
        stack_provider.list_stacks.return_value = [_stack()]
        calls = []
        for step in ("down", "pull", "up"):
            getattr(stack_provider, step).side_effect = lambda name, step=step: calls.append(step)
        images.add("postgres:16")

        result = await updater.check_and_update_stacks()

        assert result.updated == 1
        assert result.items[0].new_images == {'db': 'postgres:16'}
        assert calls == ["down", "pull", "up"]
        stack_provider.down.assert_awaited_once_with("media")
        stack_provider.pull.assert_awaited_once_with("media")
        stack_provider.up.assert_awaited_once_with("media")
        emitter.emit_stack_updated.assert_awaited_once_with("media", {'db': 'postgres:16'})

    @pytest.mark.asyncio
    async def test_unchanged_stack_is_up_to_date(self, updater, stack_provider):
        stack_provider.list_stacks.return_value = [_stack()]

        result = await updater.check_and_update_stacks()

        assert result.items[0].status == "up_to_date"
        stack_provider.down.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_eligibility(self, updater, stack_provider):
        stack_provider.list_stacks.return_value = [
            _stack(name="off", auto_update=None),
            _stack(name="stopped", status=StackStatus.STOPPED),
            _stack(name="partial", status=StackStatus.PARTIALLY_RUNNING, auto_update="1"),
        ]

        result = await updater.check_and_update_stacks()

        assert [i.resource_id for i in result.items] == ["partial"]

    @pytest.mark.asyncio
    async def test_step_failure_stops_redeploy(self, updater, stack_provider, images):
        stack_provider.list_stacks.return_value = [_stack()]
        stack_provider.down.side_effect = RuntimeError("compose down failed")
        images.add("nginx:1.25")

        result = await updater.check_and_update_stacks()

        assert result.failed == 1
        assert result.items[0].error == "Failed to down stack: compose down failed"
        stack_provider.up.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_provider(self, db_manager, mock_docker_client, registry):
        updater = AutoUpdater(db_manager, mock_docker_client, in_flight=registry)
        result = await updater.check_and_update_stacks()
        assert result.items == []


# =============================================================================
# Status
# =============================================================================

class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_status_while_updating(self, updater, registry, stack_provider):
        gate = asyncio.Event()

        async def slow_down(name):
            await gate.wait()

        stack_provider.list_stacks.return_value = [_stack()]
        stack_provider.down.side_effect = slow_down
        updater._pull_and_get_id = AsyncMock(return_value=NEW_ID)

        task = asyncio.create_task(updater.check_and_update_stacks())
        for _ in range(50):
            if await registry.is_in_flight("media"):
                break
            await asyncio.sleep(0.01)

        status = await updater.get_update_status()
        assert status == {
            'updating_containers': 0,
            'updating_stacks': 1,
            'container_ids': [],
            'stack_ids': ['media'],
        }

        gate.set()
        await task
        assert (await updater.get_update_status())['updating_stacks'] == 0
