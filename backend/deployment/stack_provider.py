"""
Stack provider for the update engine.

A stack is a compose project: a directory under STACKS_DIR holding a compose
file, plus the containers Docker created for it (labelled
com.docker.compose.project=<name>). The update engine only needs a few opaque
operations from it: list stacks with their status, list the services (image +
labels) of a stack, and pull / down / up the whole stack.

ComposeStackProvider drives the `docker compose` CLI, so the host running
refit needs the compose plugin installed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import docker

from deployment import stack_storage
from updates.labels import COMPOSE_PROJECT_LABEL, parse_service_labels
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

# Seconds allowed per compose command
COMPOSE_PULL_TIMEOUT = 600
COMPOSE_DOWN_TIMEOUT = 120
COMPOSE_UP_TIMEOUT = 600


class ComposeCommandError(Exception):
    """A `docker compose` invocation failed or timed out."""

    def __init__(self, message: str, stack_name: str = "", command: str = "",
                 returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.stack_name = stack_name
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class StackStatus(str, Enum):
    RUNNING = "running"
    PARTIALLY_RUNNING = "partially running"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        """Running or partially running."""
        return self in (StackStatus.RUNNING, StackStatus.PARTIALLY_RUNNING)


@dataclass
class StackService:
    """One service from a stack's compose file."""
    name: str
    image: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class StackInfo:
    name: str
    status: StackStatus
    compose_file: Optional[str] = None
    services: List[StackService] = field(default_factory=list)
    container_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'status': self.status.value,
            'compose_file': self.compose_file,
            'services': [
                {'name': s.name, 'image': s.image, 'labels': s.labels}
                for s in self.services
            ],
            'container_ids': self.container_ids,
        }


def derive_status(running: int, total: int) -> StackStatus:
    """
    Stack status from container counts.

    total is the larger of declared services and existing containers, so a
    service whose container was removed still counts as not running.
    """
    if running <= 0:
        return StackStatus.STOPPED
    if running >= total:
        return StackStatus.RUNNING
    return StackStatus.PARTIALLY_RUNNING


class StackProvider(ABC):
    """Operations the update engine needs from a stack backend."""

    @abstractmethod
    async def list_stacks(self) -> List[StackInfo]:
        """
        Raises:
            Exception from the backend; callers treat it as a run-level error
        """

    async def get_stack(self, name: str) -> Optional[StackInfo]:
        for stack in await self.list_stacks():
            if stack.name == name:
                return stack
        return None

    @abstractmethod
    async def list_services(self, name: str) -> List[StackService]:
        ...

    @abstractmethod
    async def pull(self, name: str) -> None:
        ...

    @abstractmethod
    async def down(self, name: str) -> None:
        ...

    @abstractmethod
    async def up(self, name: str) -> None:
        ...


class ComposeStackProvider(StackProvider):
    """Stacks from STACKS_DIR, executed with the `docker compose` CLI."""

    def __init__(self, docker_client: docker.DockerClient, stacks_dir: Optional[Path] = None):
        self.docker_client = docker_client
        self.stacks_dir = Path(stacks_dir) if stacks_dir else stack_storage.STACKS_DIR

    # ==================== Discovery ====================

    async def list_stacks(self) -> List[StackInfo]:
        names = await stack_storage.list_stacks(self.stacks_dir)
        stacks = []
        for name in names:
            stacks.append(await self._build_info(name))
        return stacks

    async def get_stack(self, name: str) -> Optional[StackInfo]:
        try:
            stack_path = stack_storage.get_stack_path(name, self.stacks_dir)
        except ValueError:
            return None
        if await asyncio.to_thread(stack_storage.find_compose_file, stack_path) is None:
            return None
        return await self._build_info(name)

    async def list_services(self, name: str) -> List[StackService]:
        compose_yaml = await stack_storage.read_compose(name, self.stacks_dir)
        services = []
        for service_name, definition in stack_storage.parse_compose_services(compose_yaml).items():
            services.append(StackService(
                name=service_name,
                image=definition.get('image'),
                labels=parse_service_labels(definition.get('labels')),
            ))
        return services

    async def _build_info(self, name: str) -> StackInfo:
        stack_path = stack_storage.get_stack_path(name, self.stacks_dir)
        compose_file = await asyncio.to_thread(stack_storage.find_compose_file, stack_path)

        try:
            services = await self.list_services(name)
        except FileNotFoundError:
            services = []

        containers = await async_docker_call(
            self.docker_client.containers.list,
            all=True,
            filters={"label": f"{COMPOSE_PROJECT_LABEL}={name}"},
        )
        running = sum(1 for c in containers if c.status == "running")
        total = max(len(services), len(containers))

        return StackInfo(
            name=name,
            status=derive_status(running, total),
            compose_file=str(compose_file) if compose_file else None,
            services=services,
            container_ids=[c.id for c in containers],
        )

    # ==================== Compose commands ====================

    async def pull(self, name: str) -> None:
        await self._run_compose(name, ["pull"], COMPOSE_PULL_TIMEOUT)

    async def down(self, name: str) -> None:
        await self._run_compose(name, ["down"], COMPOSE_DOWN_TIMEOUT)

    async def up(self, name: str) -> None:
        await self._run_compose(name, ["up", "-d", "--remove-orphans"], COMPOSE_UP_TIMEOUT)

    async def _run_compose(self, name: str, args: List[str], timeout: float) -> str:
        stack_path = stack_storage.get_stack_path(name, self.stacks_dir)
        compose_file = await asyncio.to_thread(stack_storage.find_compose_file, stack_path)
        if compose_file is None:
            raise ComposeCommandError(f"Stack '{name}' has no compose file", stack_name=name,
                                      command=args[0])

        # List-based construction, never a shell string
        cmd = ["docker", "compose", "-p", name, "-f", str(compose_file), *args]
        logger.info(f"Running compose {args[0]} for stack {name}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(stack_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ComposeCommandError(
                f"compose {args[0]} for stack {name} timed out after {timeout}s",
                stack_name=name,
                command=args[0],
            )

        stderr = stderr_bytes.decode("utf-8", errors="replace").strip() if stderr_bytes else ""
        if process.returncode != 0:
            raise ComposeCommandError(
                f"compose {args[0]} for stack {name} failed: {stderr or 'exit code ' + str(process.returncode)}",
                stack_name=name,
                command=args[0],
                returncode=process.returncode,
                stderr=stderr,
            )

        return stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
