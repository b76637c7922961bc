"""
Update engine API routes

Provides REST endpoints for:
- Checking images for updates (all local images, a list, one image ID, or one container/stack)
- Triggering the scheduled check on demand
- Applying pending updates (optionally as a dry run)
- In-flight status, audit history and summary counts
- Tag listing / version comparison helpers
"""

import logging
from typing import List, Optional

import docker
from fastapi import APIRouter, Depends, HTTPException, Query

from database import DatabaseManager
from deployment.stack_provider import StackProvider
from docker_monitor.periodic_jobs import UpdateJobsManager
from models.update_models import (
    ApplyRequest,
    CheckRequest,
    CheckResponse,
    CleanupResponse,
    HistoryResponse,
    UpdateSummaryResponse,
    VersionsResponse,
)
from updates.applier import UpdateApplier
from updates.auto_updater import AutoUpdater
from updates.batch_checker import BatchUpdateChecker
from updates.errors import AuthError, DaemonError, NetworkError, NotFoundError, ParseError
from updates.registry_adapter import RegistryClient
from updates.types import ExternalCredential
from updates.versions import compare_versions, get_available_versions
from utils.async_docker import async_docker_call
from utils.registry_credentials import load_stored_credentials

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/updates", tags=["updates"])


# ==================== Dependency Injection ====================

# These will be set by main.py during startup
_database_manager: Optional[DatabaseManager] = None
_batch_checker: Optional[BatchUpdateChecker] = None
_update_applier: Optional[UpdateApplier] = None
_auto_updater: Optional[AutoUpdater] = None
_stack_provider: Optional[StackProvider] = None
_jobs_manager: Optional[UpdateJobsManager] = None


def set_database_manager(db: DatabaseManager):
    """Set database manager instance (called from main.py)."""
    global _database_manager
    _database_manager = db


def set_batch_checker(checker: BatchUpdateChecker):
    global _batch_checker
    _batch_checker = checker


def set_update_applier(applier: UpdateApplier):
    global _update_applier
    _update_applier = applier


def set_auto_updater(updater: AutoUpdater):
    global _auto_updater
    _auto_updater = updater


def set_stack_provider(provider: Optional[StackProvider]):
    global _stack_provider
    _stack_provider = provider


def set_jobs_manager(jobs: UpdateJobsManager):
    global _jobs_manager
    _jobs_manager = jobs


def get_database_manager() -> DatabaseManager:
    """Get database manager (dependency)."""
    if _database_manager is None:
        raise RuntimeError("DatabaseManager not initialized")
    return _database_manager


def get_batch_checker() -> BatchUpdateChecker:
    if _batch_checker is None:
        raise RuntimeError("BatchUpdateChecker not initialized")
    return _batch_checker


def get_update_applier() -> UpdateApplier:
    if _update_applier is None:
        raise RuntimeError("UpdateApplier not initialized")
    return _update_applier


def get_auto_updater() -> AutoUpdater:
    if _auto_updater is None:
        raise RuntimeError("AutoUpdater not initialized")
    return _auto_updater


def get_stack_provider() -> Optional[StackProvider]:
    return _stack_provider


def get_jobs_manager() -> UpdateJobsManager:
    if _jobs_manager is None:
        raise RuntimeError("UpdateJobsManager not initialized")
    return _jobs_manager


# ==================== Helpers ====================

async def _resource_image_refs(checker: BatchUpdateChecker, resource_id: str,
                               resource_type: str) -> List[str]:
    """Image references used by one container or stack."""
    if resource_type == "container":
        try:
            container = await async_docker_call(checker.docker_client.containers.get, resource_id)
        except docker.errors.NotFound:
            raise NotFoundError(f"container not found: {resource_id}")
        image_ref = ((container.attrs or {}).get('Config') or {}).get('Image')
        return [image_ref] if image_ref else []

    provider = get_stack_provider()
    stack = await provider.get_stack(resource_id) if provider else None
    if stack is None:
        raise NotFoundError(f"stack not found: {resource_id}")
    return sorted({s.image for s in stack.services if s.image})


# ==================== Update Endpoints ====================

@router.post("/check", response_model=CheckResponse)
async def check_updates(
    request: CheckRequest,
    checker: BatchUpdateChecker = Depends(get_batch_checker),
):
    """Check images for updates. dry_run skips persisting results."""
    external = None
    if request.credentials:
        external = [ExternalCredential(**c.model_dump()) for c in request.credentials]
    persist = not request.dry_run

    try:
        if request.resource_id:
            if not request.resource_type:
                raise HTTPException(status_code=400, detail="resource_type is required with resource_id")
            refs = await _resource_image_refs(checker, request.resource_id, request.resource_type)
            results = await checker.check_multiple_images(refs, external, persist=persist)
        elif request.image_refs:
            results = await checker.check_multiple_images(request.image_refs, external, persist=persist)
        else:
            results = await checker.check_all_images(request.limit, external, persist=persist)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ParseError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except DaemonError as e:
        logger.error(f"Update check failed: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)

    return CheckResponse(
        results={ref: result.to_dict() for ref, result in results.items()},
        checked=len(results),
        with_updates=sum(1 for r in results.values() if r.has_update),
        errors=sum(1 for r in results.values() if r.error),
        persisted=persist,
    )


@router.post("/check/now")
async def check_now(jobs: UpdateJobsManager = Depends(get_jobs_manager)):
    """Run the scheduled check immediately instead of waiting for the next interval."""
    stats = await jobs.check_now()
    last = jobs.last_update_check
    stats['last_update_check'] = last.isoformat() if last else None
    return stats


@router.post("/check/image/{image_id}")
async def check_image(image_id: str, checker: BatchUpdateChecker = Depends(get_batch_checker)):
    """Check one local image by ID and save the result under that ID."""
    try:
        result = await checker.check_image_by_id(image_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except DaemonError as e:
        logger.error(f"Update check for image {image_id} failed: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
    return {'image_id': image_id, 'result': result.to_dict()}


@router.post("/apply")
async def apply_updates(
    request: ApplyRequest,
    applier: UpdateApplier = Depends(get_update_applier),
):
    """Apply pending updates; run-level failures are reported in the body."""
    result = await applier.apply_pending(dry_run=request.dry_run)
    return result.to_dict()


@router.get("/status")
async def get_status(updater: AutoUpdater = Depends(get_auto_updater)):
    """Containers and stacks with an update in progress."""
    return await updater.get_update_status()


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    checker: BatchUpdateChecker = Depends(get_batch_checker),
):
    items, total = checker.record_store.list_history(page, page_size)
    return HistoryResponse(items=items, total=total, page=page, page_size=page_size)


@router.get("/summary", response_model=UpdateSummaryResponse)
async def get_summary(checker: BatchUpdateChecker = Depends(get_batch_checker)):
    return UpdateSummaryResponse(**checker.record_store.get_summary())


@router.get("/versions", response_model=VersionsResponse)
async def get_versions(
    image_ref: str = Query(..., min_length=1),
    limit: int = Query(0, ge=0, le=1000),
    checker: BatchUpdateChecker = Depends(get_batch_checker),
    db: DatabaseManager = Depends(get_database_manager),
):
    """Tags available for image_ref plus the newest compatible one."""
    try:
        async with RegistryClient(checker.config) as registry:
            data = await get_available_versions(registry, image_ref, limit, load_stored_credentials(db))
    except ParseError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.message)
    except NetworkError as e:
        if e.status == 404:
            raise HTTPException(status_code=404, detail=e.message)
        raise HTTPException(status_code=502, detail=e.message)
    return VersionsResponse(**data)


@router.get("/compare")
async def compare(
    current: str = Query(..., min_length=1),
    target: str = Query(..., min_length=1),
):
    return compare_versions(current, target)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_records(checker: BatchUpdateChecker = Depends(get_batch_checker)):
    """Delete update records for images no longer present locally."""
    try:
        deleted = await checker.record_store.cleanup_orphaned_records()
    except DaemonError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return CleanupResponse(deleted=deleted)


@router.get("/health")
async def health():
    return {"status": "ok"}
