"""
Update Applier

Applies pending image updates in four sequential phases:

1. Image phase      - pull every plan's new_ref (dry run: skipped, nothing pulled)
2. Container phase  - recreate standalone containers still on a stale image
3. Stack phase      - redeploy (pull + down + up) running stacks with a stale member
4. Cleanup          - clear has_update for plans no running container references,
                      then delete records whose image is gone

Phases 2-4 only run outside dry runs. Nothing is retried within a run and
completed steps are never rolled back; the next run picks up whatever is
still outdated. Every item is appended to auto_update_records.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

import docker

from config.settings import UpdaterConfig
from database import DatabaseManager
from deployment.stack_provider import StackProvider
from updates.container_ops import container_name, recreate_container
from updates.errors import DaemonError, NotFoundError
from updates.event_emitter import UpdaterEventEmitter
from updates.labels import ContainerLabels
from updates.planner import (
    UpdatePlanner,
    container_image_id,
    container_skip_reason,
    normalize_ref,
    stack_skip_reason,
)
from updates.record_store import UpdateRecordStore
from updates.types import AuditPhase, ItemStatus, ResourceType, RunResult, UpdatePlan, UpdaterItem
from utils.async_docker import async_docker_call
from utils.registry_credentials import build_auth_config, load_stored_credentials

logger = logging.getLogger(__name__)

# Seconds allowed for a single image pull
PULL_TIMEOUT = 1800


class UpdateApplier:
    """
    Usage:
        applier = UpdateApplier(db, docker_client, stack_provider=provider)
        result = await applier.apply_pending(dry_run=False)
    """

    def __init__(
        self,
        db: DatabaseManager,
        docker_client: docker.DockerClient,
        config: Optional[UpdaterConfig] = None,
        stack_provider: Optional[StackProvider] = None,
        record_store: Optional[UpdateRecordStore] = None,
        planner: Optional[UpdatePlanner] = None,
        emitter: Optional[UpdaterEventEmitter] = None,
    ):
        self.db = db
        self.docker_client = docker_client
        self.config = config or UpdaterConfig()
        self.stack_provider = stack_provider
        self.record_store = record_store or UpdateRecordStore(db, docker_client)
        self.planner = planner or UpdatePlanner(docker_client, self.record_store, stack_provider, self.config)
        self.emitter = emitter or UpdaterEventEmitter()
        self._run_lock = asyncio.Lock()

    async def apply_pending(self, dry_run: bool = False) -> RunResult:
        """
        Apply every pending update.

        Never raises for per-resource failures. A failure to read pending
        records or list containers/stacks is stored on result.error.
        """
        async with self._run_lock:
            result = RunResult(dry_run=dry_run)
            try:
                await self._run(result, dry_run)
            except Exception as e:
                logger.error(f"Update run failed: {e}", exc_info=True)
                result.error = str(e) or type(e).__name__
            finally:
                # Also on cancellation: steps that already ran must stay diagnosable
                self._record(result.items)
                result.finish()

            if result.error:
                await self.emitter.emit_run_failed(result.error)
            await self.emitter.emit_run_completed(result)
            logger.info(
                f"Update run {'(dry run) ' if dry_run else ''}finished in {result.duration:.2f}s: "
                f"checked={result.checked} updated={result.updated} "
                f"skipped={result.skipped} failed={result.failed}"
            )
            return result

    async def _run(self, result: RunResult, dry_run: bool):
        plans = await self.planner.build_plans()
        await self.emitter.emit_run_started(dry_run, pending=len(plans))
        if not plans:
            return

        pulled = await self._image_phase(plans, result, dry_run)
        if dry_run:
            return

        stale_ids: Dict[str, UpdatePlan] = {}
        for plan in pulled:
            for image_id in plan.old_image_ids:
                stale_ids[image_id] = plan

        if pulled:
            await self._container_phase(pulled, stale_ids, result)
            await self._stack_phase(set(stale_ids), result)

        await self._cleanup(plans)

    # ==================== Image phase ====================

    async def _image_phase(self, plans: List[UpdatePlan], result: RunResult, dry_run: bool) -> List[UpdatePlan]:
        """Pull new images sequentially. Returns the plans whose pull succeeded."""
        credentials = [] if dry_run else load_stored_credentials(self.db)
        pulled = []

        for plan in plans:
            item = UpdaterItem(
                resource_id=plan.old_ref,
                resource_type=ResourceType.IMAGE.value,
                resource_name=plan.old_ref,
                status=ItemStatus.CHECKED.value,
                old_images={'main': plan.old_ref},
                new_images={'main': plan.new_ref},
                details={'phase': AuditPhase.IMAGE_PULL.value, 'update_type': plan.update_type},
            )

            if dry_run:
                result.add(item.finish(ItemStatus.SKIPPED))
                await self.emitter.emit_skipped(AuditPhase.IMAGE_PULL, 'image', plan.old_ref,
                                                plan.old_ref, 'dry run')
                continue

            try:
                new_id = await self._pull(plan.new_ref, credentials)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(f"Failed to pull {plan.new_ref}: {error}")
                result.add(item.finish(ItemStatus.FAILED, error))
                await self.emitter.emit_image_pull_failed(plan.new_ref, error)
                continue

            item.update_applied = True
            if new_id:
                item.details['new_image_id'] = new_id
            result.add(item.finish(ItemStatus.UPDATED))
            await self.emitter.emit_image_pulled(plan.new_ref, new_id)
            pulled.append(plan)

        return pulled

    async def _pull(self, image_ref: str, credentials) -> Optional[str]:
        pull_kwargs = {}
        auth_config = build_auth_config(credentials, image_ref)
        if auth_config:
            pull_kwargs['auth_config'] = auth_config

        try:
            image = await asyncio.wait_for(
                async_docker_call(self.docker_client.images.pull, image_ref, **pull_kwargs),
                timeout=PULL_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise DaemonError(f"Image pull timed out after {PULL_TIMEOUT}s for {image_ref}", step="pull")
        except docker.errors.APIError as e:
            raise DaemonError(f"Image pull failed for {image_ref}: {e}", step="pull")

        logger.info(f"Pulled {image_ref}")
        return getattr(image, 'id', None)

    # ==================== Container phase ====================

    async def _container_phase(self, plans: List[UpdatePlan], stale_ids: Dict[str, UpdatePlan],
                               result: RunResult):
        stale_refs = {normalize_ref(plan.old_ref): plan for plan in plans}
        containers = await self.planner.list_running_containers()

        for container in containers:
            labels = ContainerLabels.from_labels(container.labels)
            reason = container_skip_reason(labels)
            if reason:
                logger.debug(f"Container {container_name(container)} left alone: {reason}")
                continue

            image_id = container_image_id(container)
            plan = stale_ids.get(image_id)
            matched = image_id
            if plan is None:
                for ref in await self.planner.container_refs(container):
                    if ref in stale_refs:
                        plan, matched = stale_refs[ref], ref
                        break
            if plan is None:
                continue

            item = self._container_item(container, plan, matched)
            try:
                await self._update_container(container, plan, item)
            finally:
                result.add(_interrupted(item))

    def _container_item(self, container, plan: UpdatePlan, matched: str) -> UpdaterItem:
        return UpdaterItem(
            resource_id=container.id,
            resource_type=ResourceType.CONTAINER.value,
            resource_name=container_name(container),
            status=ItemStatus.CHECKED.value,
            old_images={'main': matched},
            new_images={'main': normalize_ref(plan.new_ref)},
            details={'phase': AuditPhase.CONTAINER.value, 'steps': []},
        )

    async def _update_container(self, container, plan: UpdatePlan, item: UpdaterItem) -> UpdaterItem:
        name = item.resource_name

        async def on_step(step: str, success: bool, error: Optional[str]):
            item.details['steps'].append({'step': step, 'success': success})
            await self.emitter.emit_container_step(container.id, name, step, success, error)

        try:
            new_id = await recreate_container(self.docker_client, container, plan.new_ref, on_step)
        except NotFoundError as e:
            logger.warning(f"Container {name} disappeared during update: {e.message}")
            item.details['reason'] = e.message
            await self.emitter.emit_skipped(AuditPhase.CONTAINER, 'container', container.id, name, e.message)
            return item.finish(ItemStatus.SKIPPED)
        except DaemonError as e:
            await self.emitter.emit_container_failed(container.id, name, e.message)
            return item.finish(ItemStatus.FAILED, e.message)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Unexpected error updating container {name}: {error}", exc_info=True)
            await self.emitter.emit_container_failed(container.id, name, error)
            return item.finish(ItemStatus.FAILED, error)

        item.update_applied = True
        item.details['new_container_id'] = new_id
        await self.emitter.emit_container_updated(container.id, name, plan.old_ref, plan.new_ref, new_id)
        return item.finish(ItemStatus.UPDATED)

    # ==================== Stack phase ====================

    async def _stack_phase(self, stale_ids: Set[str], result: RunResult):
        if self.stack_provider is None:
            return

        for stack in await self.stack_provider.list_stacks():
            item = UpdaterItem(
                resource_id=stack.name,
                resource_type=ResourceType.STACK.value,
                resource_name=stack.name,
                status=ItemStatus.CHECKED.value,
                details={'phase': AuditPhase.STACK.value, 'status': stack.status.value},
            )

            members = []
            if stack.status.is_active:
                try:
                    members = await self.planner.stack_members(stack.name)
                except docker.errors.APIError as e:
                    error = f"failed to list stack containers: {e}"
                    logger.error(f"Stack {stack.name}: {error}")
                    result.add(item.finish(ItemStatus.FAILED, error))
                    await self.emitter.emit_stack_failed(stack.name, error)
                    continue

            reason = stack_skip_reason(stack, members, stale_ids)
            if reason:
                item.details['reason'] = reason
                result.add(item.finish(ItemStatus.SKIPPED))
                await self.emitter.emit_skipped(AuditPhase.STACK, 'stack', stack.name, stack.name, reason)
                continue

            item.old_images = {
                m.name: container_image_id(m) for m in members if container_image_id(m) in stale_ids
            }
            item.new_images = {
                s.name: s.image for s in stack.services if s.image
            }
            try:
                await self._redeploy_stack(stack.name, item)
            finally:
                result.add(_interrupted(item))

    async def _redeploy_stack(self, name: str, item: UpdaterItem) -> UpdaterItem:
        try:
            await self.stack_provider.pull(name)
            await self.emitter.emit_stack_step(name, 'pull')
        except Exception as e:
            # Redeploy anyway; up uses whatever images are present
            logger.warning(f"Stack {name} pull failed, redeploying anyway: {e}")
            await self.emitter.emit_stack_step(name, 'pull', success=False, error=str(e))

        for step in ('down', 'up'):
            try:
                await getattr(self.stack_provider, step)(name)
            except Exception as e:
                error = getattr(e, 'message', None) or str(e) or type(e).__name__
                logger.error(f"Stack {name} {step} failed: {error}")
                await self.emitter.emit_stack_step(name, step, success=False, error=error)
                await self.emitter.emit_stack_failed(name, error)
                item.details['failed_step'] = step
                return item.finish(ItemStatus.FAILED, error)
            await self.emitter.emit_stack_step(name, step)

        item.update_applied = True
        await self.emitter.emit_stack_updated(name, item.new_images)
        return item.finish(ItemStatus.UPDATED)

    # ==================== Cleanup ====================

    async def _cleanup(self, plans: List[UpdatePlan]):
        """
        Clear has_update for plans no running container still uses, then GC.

        Safe to repeat: a later check sets has_update again if still outdated.
        """
        try:
            containers = await self.planner.list_running_containers()
        except docker.errors.APIError as e:
            logger.warning(f"Skipping update record cleanup, cannot list containers: {e}")
            return

        in_use = {container_image_id(c) for c in containers}
        to_clear = []
        for plan in plans:
            if not any(image_id in in_use for image_id in plan.old_image_ids):
                to_clear.extend(plan.old_image_ids)

        cleared = self.record_store.clear_update(to_clear)
        if cleared:
            logger.info(f"Cleared update flag on {cleared} image record(s)")

        try:
            await self.record_store.cleanup_orphaned_records()
        except DaemonError as e:
            logger.warning(f"Orphaned record cleanup failed: {e.message}")

    def _record(self, items: List[UpdaterItem]):
        try:
            self.record_store.record_items(items)
        except Exception as e:
            logger.error(f"Failed to write update audit records: {e}")


def _interrupted(item: UpdaterItem) -> UpdaterItem:
    """Close an item whose update was cut short (e.g. by cancellation)."""
    if item.end_time is None:
        item.finish(ItemStatus.FAILED, "update interrupted")
    return item
