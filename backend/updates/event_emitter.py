"""
Event emitter for the update engine.

Handles emission of update-related events via the EventBus system.
Centralizes event creation so the applier and auto-updater stay readable.
Every event carries data['phase'] (start, image_pull, container, stack, complete).
"""

import logging
from typing import Any, Dict, Optional

from event_bus import Event, EventBus, EventType, get_event_bus
from updates.types import AuditPhase, RunResult

logger = logging.getLogger(__name__)


class UpdaterEventEmitter:
    """
    Emits phase-tagged audit events via the EventBus.

    Emission never raises: a broken subscriber must not fail an update.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._event_bus = event_bus

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus or get_event_bus()

    async def _emit(
        self,
        event_type: EventType,
        phase: AuditPhase,
        scope_type: str,
        scope_id: str,
        scope_name: str,
        data: Optional[Dict[str, Any]] = None,
    ):
        payload = {'phase': phase.value}
        payload.update(data or {})
        try:
            await self.event_bus.emit(Event(
                event_type=event_type,
                scope_type=scope_type,
                scope_id=scope_id,
                scope_name=scope_name,
                data=payload,
            ))
        except Exception as e:
            logger.error(f"Error emitting {event_type.value} event: {e}")

    # ==================== Run lifecycle ====================

    async def emit_run_started(self, dry_run: bool, pending: int = 0):
        await self._emit(EventType.UPDATER_RUN_STARTED, AuditPhase.START,
                         'system', 'updater', 'Update run',
                         {'dry_run': dry_run, 'pending': pending})

    async def emit_run_completed(self, result: RunResult):
        await self._emit(EventType.UPDATER_RUN_COMPLETED, AuditPhase.COMPLETE,
                         'system', 'updater', 'Update run', {
                             'checked': result.checked,
                             'updated': result.updated,
                             'skipped': result.skipped,
                             'failed': result.failed,
                             'duration': result.duration,
                             'dry_run': result.dry_run,
                         })

    async def emit_run_failed(self, error: str):
        await self._emit(EventType.UPDATER_RUN_FAILED, AuditPhase.COMPLETE,
                         'system', 'updater', 'Update run', {'error': error})

    # ==================== Image phase ====================

    async def emit_update_available(self, image_id: str, image_name: str, current: str, latest: str):
        await self._emit(EventType.UPDATER_UPDATE_AVAILABLE, AuditPhase.START,
                         'image', image_id, image_name, {'current': current, 'latest': latest})

    async def emit_image_pulled(self, image_ref: str, new_image_id: Optional[str] = None):
        await self._emit(EventType.UPDATER_IMAGE_PULLED, AuditPhase.IMAGE_PULL,
                         'image', image_ref, image_ref,
                         {'image': image_ref, 'new_image_id': new_image_id})

    async def emit_image_pull_failed(self, image_ref: str, error: str):
        await self._emit(EventType.UPDATER_IMAGE_PULL_FAILED, AuditPhase.IMAGE_PULL,
                         'image', image_ref, image_ref, {'image': image_ref, 'error': error})

    # ==================== Container phase ====================

    async def emit_container_step(self, container_id: str, container_name: str, step: str,
                                  success: bool = True, error: Optional[str] = None):
        """One event per stop / remove / create / start step."""
        await self._emit(EventType.UPDATER_CONTAINER_STEP, AuditPhase.CONTAINER,
                         'container', container_id, container_name,
                         {'step': step, 'success': success, 'error': error})

    async def emit_container_updated(self, container_id: str, container_name: str,
                                     old_image: str, new_image: str, new_container_id: Optional[str] = None):
        await self._emit(EventType.UPDATER_CONTAINER_UPDATED, AuditPhase.CONTAINER,
                         'container', container_id, container_name, {
                             'old_image': old_image,
                             'new_image': new_image,
                             'new_container_id': new_container_id,
                         })

    async def emit_container_failed(self, container_id: str, container_name: str, error: str):
        await self._emit(EventType.UPDATER_CONTAINER_FAILED, AuditPhase.CONTAINER,
                         'container', container_id, container_name, {'error': error})

    # ==================== Stack phase ====================

    async def emit_stack_step(self, stack_name: str, step: str,
                              success: bool = True, error: Optional[str] = None):
        await self._emit(EventType.UPDATER_STACK_STEP, AuditPhase.STACK,
                         'stack', stack_name, stack_name,
                         {'step': step, 'success': success, 'error': error})

    async def emit_stack_updated(self, stack_name: str, images: Dict[str, str]):
        await self._emit(EventType.UPDATER_STACK_UPDATED, AuditPhase.STACK,
                         'stack', stack_name, stack_name,
                         {'new_image': ", ".join(sorted(images.values())) or '?', 'images': images})

    async def emit_stack_failed(self, stack_name: str, error: str):
        await self._emit(EventType.UPDATER_STACK_FAILED, AuditPhase.STACK,
                         'stack', stack_name, stack_name, {'error': error})

    # ==================== Skips ====================

    async def emit_skipped(self, phase: AuditPhase, scope_type: str, scope_id: str,
                           scope_name: str, reason: str):
        await self._emit(EventType.UPDATER_ITEM_SKIPPED, phase,
                         scope_type, scope_id, scope_name, {'reason': reason})
