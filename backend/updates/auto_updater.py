"""
Per-resource auto-updater

The label-driven update path, independent of the pending-record pipeline:

- Containers labelled refit.auto-update=true (running, not stack-managed):
  pull the same tag, compare image IDs, recreate when the ID changed.
- Stacks with a service labelled refit.stack.auto-update=true (running or
  partially running): pull each service image, and when any ID changed
  redeploy the stack as down → pull → up.

Every resource is registered in the in-flight registry for the duration of
its update so overlapping runs never touch it twice.
"""

import asyncio
import logging
from typing import List, Optional

import docker

from config.settings import UpdaterConfig
from database import DatabaseManager
from deployment.stack_provider import StackInfo, StackProvider
from updates.container_ops import container_name, recreate_container
from updates.errors import DaemonError, NotFoundError
from updates.event_emitter import UpdaterEventEmitter
from updates.in_flight import InFlightRegistry, get_in_flight_registry
from updates.labels import STACK_AUTO_UPDATE_LABEL, ContainerLabels, UpdatePolicy
from updates.planner import container_image_id
from updates.record_store import UpdateRecordStore
from updates.reference import is_digest_pinned
from updates.types import AuditPhase, ItemStatus, ResourceType, RunResult, UpdaterItem
from utils.async_docker import async_docker_call
from utils.registry_credentials import build_auth_config, load_stored_credentials

logger = logging.getLogger(__name__)

PULL_TIMEOUT = 1800


class AutoUpdater:
    """Label-driven container and stack updates, guarded by an InFlightRegistry."""

    def __init__(
        self,
        db: DatabaseManager,
        docker_client: docker.DockerClient,
        stack_provider: Optional[StackProvider] = None,
        in_flight: Optional[InFlightRegistry] = None,
        config: Optional[UpdaterConfig] = None,
        record_store: Optional[UpdateRecordStore] = None,
        emitter: Optional[UpdaterEventEmitter] = None,
    ):
        self.db = db
        self.docker_client = docker_client
        self.stack_provider = stack_provider
        self.in_flight = in_flight or get_in_flight_registry()
        self.config = config or UpdaterConfig()
        self.record_store = record_store or UpdateRecordStore(db, docker_client)
        self.emitter = emitter or UpdaterEventEmitter()

    # ==================== Containers ====================

    async def check_and_update_containers(self) -> RunResult:
        """
        Update every opted-in standalone container whose tag moved.

        Raises:
            DaemonError: container list failed
        """
        result = RunResult()
        try:
            containers = await async_docker_call(self.docker_client.containers.list)
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to list containers: {e}", step="list_containers")

        eligible = []
        for container in containers:
            labels = ContainerLabels.from_labels(container.labels)
            if not labels.auto_update.is_enabled or labels.opted_out:
                continue
            if labels.is_stack_managed:
                logger.debug(f"Skipping container {container_name(container)}: part of a stack")
                continue
            eligible.append(container)

        logger.info(f"Found {len(eligible)} standalone container(s) eligible for auto-update")
        credentials = load_stored_credentials(self.db) if eligible else []

        for container in eligible:
            name = container_name(container)
            if not await self.in_flight.try_acquire(container.id, ResourceType.CONTAINER.value, name):
                logger.info(f"Container {name} is already being updated, skipping")
                item = self._item(container.id, ResourceType.CONTAINER, name)
                item.details['reason'] = 'update already in progress'
                result.add(item.finish(ItemStatus.SKIPPED))
                continue
            try:
                result.add(await self._update_container(container, name, credentials))
            finally:
                await self.in_flight.release(container.id)

        return self._finish(result, "Container")

    async def _update_container(self, container, name: str, credentials) -> UpdaterItem:
        item = self._item(container.id, ResourceType.CONTAINER, name)
        image_ref = ((container.attrs or {}).get('Config') or {}).get('Image') or ''
        current_id = container_image_id(container)
        item.old_images = {'main': image_ref}

        if not image_ref or is_digest_pinned(image_ref):
            item.details['reason'] = 'image is pinned by digest' if image_ref else 'no image reference'
            return item.finish(ItemStatus.SKIPPED)

        try:
            new_id = await self._pull_and_get_id(image_ref, credentials)
        except DaemonError as e:
            logger.error(f"Error checking container {name}: {e.message}")
            return item.finish(ItemStatus.FAILED, e.message)

        if new_id == current_id:
            logger.debug(f"Container {name} is up-to-date ({image_ref})")
            return item.finish(ItemStatus.UP_TO_DATE)

        logger.info(f"Update detected for container {name}: {current_id[:19]} -> {new_id[:19]}")
        item.new_images = {'main': image_ref}
        item.details['new_image_id'] = new_id

        async def on_step(step: str, success: bool, error: Optional[str]):
            await self.emitter.emit_container_step(container.id, name, step, success, error)

        try:
            new_container_id = await recreate_container(self.docker_client, container, image_ref, on_step)
        except NotFoundError as e:
            logger.warning(f"Container {name} disappeared during auto-update: {e.message}")
            item.details['reason'] = e.message
            return item.finish(ItemStatus.SKIPPED)
        except DaemonError as e:
            await self.emitter.emit_container_failed(container.id, name, e.message)
            return item.finish(ItemStatus.FAILED, f"Failed to recreate: {e.message}")

        item.update_applied = True
        item.details['new_container_id'] = new_container_id
        await self.emitter.emit_container_updated(container.id, name, image_ref, image_ref, new_container_id)
        return item.finish(ItemStatus.UPDATED)

    # ==================== Stacks ====================

    async def check_and_update_stacks(self) -> RunResult:
        """
        Update every opted-in running stack whose service images moved.

        Raises:
            Exception from the stack provider's list (run-level)
        """
        result = RunResult()
        if self.stack_provider is None:
            return self._finish(result, "Stack")

        eligible: List[StackInfo] = []
        for stack in await self.stack_provider.list_stacks():
            if not stack.status.is_active:
                continue
            if any(UpdatePolicy.from_label(s.labels.get(STACK_AUTO_UPDATE_LABEL)).is_enabled
                   for s in stack.services):
                eligible.append(stack)

        logger.info(f"Found {len(eligible)} stack(s) eligible for auto-update")
        credentials = load_stored_credentials(self.db) if eligible else []

        for stack in eligible:
            if not await self.in_flight.try_acquire(stack.name, ResourceType.STACK.value, stack.name):
                logger.info(f"Stack {stack.name} is already being updated, skipping")
                item = self._item(stack.name, ResourceType.STACK, stack.name)
                item.details['reason'] = 'update already in progress'
                result.add(item.finish(ItemStatus.SKIPPED))
                continue
            try:
                result.add(await self._update_stack(stack, credentials))
            finally:
                await self.in_flight.release(stack.name)

        return self._finish(result, "Stack")

    async def _update_stack(self, stack: StackInfo, credentials) -> UpdaterItem:
        item = self._item(stack.name, ResourceType.STACK, stack.name)
        changed = {}
        for service in stack.services:
            if not service.image or is_digest_pinned(service.image):
                continue
            before = await self._local_image_id(service.image)
            try:
                after = await self._pull_and_get_id(service.image, credentials)
            except DaemonError as e:
                logger.warning(f"Error checking image {service.image} in stack {stack.name}: {e.message}")
                continue
            if after != before:
                changed[service.name] = service.image

        if not changed:
            logger.debug(f"Stack {stack.name} is up-to-date")
            return item.finish(ItemStatus.UP_TO_DATE)

        logger.info(f"Updates available for stack {stack.name}: {', '.join(sorted(changed))}")
        item.new_images = changed

        for step in ('down', 'pull', 'up'):
            try:
                await getattr(self.stack_provider, step)(stack.name)
            except Exception as e:
                error = getattr(e, 'message', None) or str(e) or type(e).__name__
                logger.error(f"Stack {stack.name} {step} failed: {error}")
                await self.emitter.emit_stack_step(stack.name, step, success=False, error=error)
                await self.emitter.emit_stack_failed(stack.name, error)
                return item.finish(ItemStatus.FAILED, f"Failed to {step} stack: {error}")
            await self.emitter.emit_stack_step(stack.name, step)

        item.update_applied = True
        await self.emitter.emit_stack_updated(stack.name, changed)
        return item.finish(ItemStatus.UPDATED)

    # ==================== Status ====================

    async def get_update_status(self) -> dict:
        entries = await self.in_flight.snapshot()
        containers = [e.resource_id for e in entries if e.resource_type == ResourceType.CONTAINER.value]
        stacks = [e.resource_id for e in entries if e.resource_type == ResourceType.STACK.value]
        return {
            'updating_containers': len(containers),
            'updating_stacks': len(stacks),
            'container_ids': containers,
            'stack_ids': stacks,
        }

    # ==================== Helpers ====================

    def _item(self, resource_id: str, resource_type: ResourceType, name: str) -> UpdaterItem:
        phase = AuditPhase.CONTAINER if resource_type is ResourceType.CONTAINER else AuditPhase.STACK
        return UpdaterItem(
            resource_id=resource_id,
            resource_type=resource_type.value,
            resource_name=name,
            status=ItemStatus.CHECKED.value,
            details={'phase': phase.value, 'path': 'auto_update'},
        )

    async def _local_image_id(self, image_ref: str) -> str:
        try:
            image = await async_docker_call(self.docker_client.images.get, image_ref)
        except docker.errors.DockerException:
            return ""
        return image.id or ""

    async def _pull_and_get_id(self, image_ref: str, credentials) -> str:
        pull_kwargs = {}
        auth_config = build_auth_config(credentials, image_ref)
        if auth_config:
            pull_kwargs['auth_config'] = auth_config
        try:
            await asyncio.wait_for(
                async_docker_call(self.docker_client.images.pull, image_ref, **pull_kwargs),
                timeout=PULL_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise DaemonError(f"Image pull timed out after {PULL_TIMEOUT}s for {image_ref}", step="pull")
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to pull image {image_ref}: {e}", step="pull")

        new_id = await self._local_image_id(image_ref)
        if not new_id:
            raise DaemonError(f"failed to get image ID after pull: {image_ref}", step="inspect")
        return new_id

    def _finish(self, result: RunResult, kind: str) -> RunResult:
        result.finish()
        try:
            self.record_store.record_items(result.items)
        except Exception as e:
            logger.error(f"Failed to write auto-update audit records: {e}")
        logger.info(
            f"{kind} auto-update completed: {result.checked} checked, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} errors"
        )
        return result
