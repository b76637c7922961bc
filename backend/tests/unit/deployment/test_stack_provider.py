"""
Tests for ComposeStackProvider.

Compose commands are never executed: asyncio.create_subprocess_exec is patched.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from deployment.stack_provider import (
    ComposeCommandError,
    ComposeStackProvider,
    StackStatus,
    derive_status,
)
from updates.labels import COMPOSE_PROJECT_LABEL

COMPOSE = """
services:
  web:
    image: nginx:1.25
    labels:
      - refit.stack.auto-update=true
  db:
    image: postgres:16
    labels:
      tier: data
  builder:
    build: .
"""


@pytest.fixture
def stacks_dir(tmp_path):
    root = tmp_path / "stacks"
    (root / "media").mkdir(parents=True)
    (root / "media" / "compose.yaml").write_text(COMPOSE)
    return root


@pytest.fixture
def provider(mock_docker_client, stacks_dir):
    return ComposeStackProvider(mock_docker_client, stacks_dir)


def _process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock()
    return process


@pytest.mark.parametrize("running,total,expected", [
    (0, 0, StackStatus.STOPPED),
    (0, 3, StackStatus.STOPPED),
    (3, 3, StackStatus.RUNNING),
    (1, 3, StackStatus.PARTIALLY_RUNNING),
])
def test_derive_status(running, total, expected):
    assert derive_status(running, total) is expected


def test_active_statuses():
    assert StackStatus.RUNNING.is_active
    assert StackStatus.PARTIALLY_RUNNING.is_active
    assert not StackStatus.STOPPED.is_active


# =============================================================================
# Discovery
# =============================================================================

class TestDiscovery:

    @pytest.mark.asyncio
    async def test_list_services(self, provider):
        services = {s.name: s for s in await provider.list_services("media")}

        assert services["web"].image == "nginx:1.25"
        assert services["web"].labels == {"refit.stack.auto-update": "true"}
        assert services["db"].labels == {"tier": "data"}
        assert services["builder"].image is None

    @pytest.mark.asyncio
    async def test_list_stacks_status_from_containers(self, provider, mock_docker_client, make_container):
        mock_docker_client.containers.list.return_value = [
            make_container(container_id="1" * 64, name="media-web-1"),
            make_container(container_id="2" * 64, name="media-db-1", status="exited"),
        ]

        stacks = await provider.list_stacks()

        assert [s.name for s in stacks] == ["media"]
        assert stacks[0].status is StackStatus.PARTIALLY_RUNNING
        assert stacks[0].container_ids == ["1" * 64, "2" * 64]
        mock_docker_client.containers.list.assert_called_with(
            all=True, filters={"label": f"{COMPOSE_PROJECT_LABEL}=media"})

    @pytest.mark.asyncio
    async def test_stack_without_containers_is_stopped(self, provider):
        stack = await provider.get_stack("media")
        assert stack.status is StackStatus.STOPPED
        assert stack.to_dict()["status"] == "stopped"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["missing", "../media", "Media"])
    async def test_get_unknown_stack(self, provider, name):
        assert await provider.get_stack(name) is None


# =============================================================================
# Compose commands
# =============================================================================

class TestComposeCommands:

    @pytest.mark.asyncio
    async def test_up_command_line(self, provider, stacks_dir):
        process = _process()
        with patch("deployment.stack_provider.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=process)) as mock_exec:
            await provider.up("media")

        args = mock_exec.call_args[0]
        assert list(args) == [
            "docker", "compose", "-p", "media", "-f", str(stacks_dir / "media" / "compose.yaml"),
            "up", "-d", "--remove-orphans",
        ]
        assert mock_exec.call_args[1]["cwd"] == str(stacks_dir / "media")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,expected", [("pull", ["pull"]), ("down", ["down"])])
    async def test_pull_and_down(self, provider, method, expected):
        with patch("deployment.stack_provider.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=_process())) as mock_exec:
            await getattr(provider, method)("media")
        assert list(mock_exec.call_args[0][6:]) == expected

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, provider):
        process = _process(returncode=1, stderr=b"no such image\n")
        with patch("deployment.stack_provider.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=process)):
            with pytest.raises(ComposeCommandError) as exc_info:
                await provider.pull("media")

        err = exc_info.value
        assert err.returncode == 1
        assert err.stderr == "no such image"
        assert err.command == "pull"
        assert "no such image" in err.message

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, provider):
        process = _process()
        with patch("deployment.stack_provider.asyncio.create_subprocess_exec",
                   AsyncMock(return_value=process)), \
                patch("deployment.stack_provider.asyncio.wait_for",
                      AsyncMock(side_effect=asyncio.TimeoutError)):
            with pytest.raises(ComposeCommandError, match="timed out"):
                await provider.down("media")
        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_compose_file(self, provider, stacks_dir):
        (stacks_dir / "bare").mkdir()
        with pytest.raises(ComposeCommandError, match="no compose file"):
            await provider.up("bare")
