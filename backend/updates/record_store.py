"""
Update Record Store

Persistence for the update engine:
- image_updates: last check result per local image ID (upsert, last write wins)
- auto_update_records: append-only audit rows, one per unit of work per run

Database calls are synchronous (SQLite, short transactions) like the rest of
the DatabaseManager users; Docker inspects go through async_docker_call.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

import docker
from sqlalchemy import func

from database import AutoUpdateRecord, DatabaseManager, ImageUpdateRecord, utcnow
from updates.errors import DaemonError, NotFoundError
from updates.types import CheckResult, UpdaterItem
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

UNTAGGED = "<none>"


def split_repo_tag(repo_tag: str) -> Tuple[str, str]:
    """
    Split a RepoTags entry into (repository, tag).

    The tag separator is the last ':' after the last '/', so registry ports
    survive ("localhost:5000/app:1.0" → ("localhost:5000/app", "1.0")).
    """
    if not repo_tag or repo_tag == f"{UNTAGGED}:{UNTAGGED}":
        return UNTAGGED, UNTAGGED
    slash = repo_tag.rfind('/')
    colon = repo_tag.rfind(':')
    if colon > slash:
        return repo_tag[:colon], repo_tag[colon + 1:] or "latest"
    return repo_tag, "latest"


class UpdateRecordStore:
    """Reads and writes image_updates / auto_update_records."""

    def __init__(self, db: DatabaseManager, docker_client: Optional[docker.DockerClient] = None):
        self.db = db
        self.docker_client = docker_client

    # ==================== Image update records ====================

    async def _inspect(self, image_ref_or_id: str) -> dict:
        if self.docker_client is None:
            raise DaemonError("no Docker client configured", step="inspect")
        try:
            image = await async_docker_call(self.docker_client.images.get, image_ref_or_id)
        except docker.errors.ImageNotFound:
            raise NotFoundError(f"image not found: {image_ref_or_id}")
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to inspect image {image_ref_or_id}: {e}", step="inspect")
        return image.attrs or {}

    async def save_result(self, image_ref: str, result: CheckResult) -> Optional[str]:
        """
        Persist a check result for the local image image_ref resolves to.

        Returns:
            The image ID the row was written under, or None if the image is gone
        """
        try:
            attrs = await self._inspect(image_ref)
        except (NotFoundError, DaemonError) as e:
            logger.warning(f"Failed to save update result for {image_ref}: {e.message}")
            return None
        image_id = attrs.get('Id')
        if not image_id:
            logger.warning(f"Failed to save update result for {image_ref}: image has no ID")
            return None
        self._upsert_from_attrs(image_id, attrs, result)
        return image_id

    async def save_result_by_id(self, image_id: str, result: CheckResult) -> bool:
        try:
            attrs = await self._inspect(image_id)
        except (NotFoundError, DaemonError) as e:
            logger.warning(f"Failed to save update result for image {image_id[:19]}: {e.message}")
            return False
        self._upsert_from_attrs(attrs.get('Id') or image_id, attrs, result)
        return True

    def _upsert_from_attrs(self, image_id: str, attrs: dict, result: CheckResult):
        repo_tags = attrs.get('RepoTags') or []
        repository, tag = split_repo_tag(repo_tags[0] if repo_tags else "")
        self.upsert(image_id, repository, tag, result)

    def upsert(self, image_id: str, repository: str, tag: str, result: CheckResult) -> None:
        """Insert or overwrite the row for image_id."""
        with self.db.get_session() as session:
            record = session.query(ImageUpdateRecord).filter_by(id=image_id).first()
            if record is None:
                record = ImageUpdateRecord(id=image_id)
                session.add(record)

            record.repository = repository
            record.tag = tag
            record.has_update = result.has_update
            record.update_type = result.update_type
            record.current_version = result.current_version or tag
            record.latest_version = result.latest_version or None
            record.current_digest = result.current_digest or None
            record.latest_digest = result.latest_digest or None
            record.check_time = result.check_time or utcnow()
            record.response_time_ms = result.response_time_ms or 0
            record.last_error = result.error or None
            record.auth_method = result.auth_method or None
            record.auth_username = result.auth_username or None
            record.auth_registry = result.auth_registry or None
            record.used_credential = bool(result.used_credential)

            session.commit()

    def get_record(self, image_id: str) -> Optional[ImageUpdateRecord]:
        with self.db.get_session() as session:
            record = session.query(ImageUpdateRecord).filter_by(id=image_id).first()
            if record is not None:
                session.expunge(record)
            return record

    def list_pending(self) -> List[ImageUpdateRecord]:
        """Records with has_update=True and a usable repository/tag."""
        with self.db.get_session() as session:
            records = (
                session.query(ImageUpdateRecord)
                .filter(ImageUpdateRecord.has_update == True)  # noqa: E712
                .order_by(ImageUpdateRecord.check_time)
                .all()
            )
            session.expunge_all()
        return [r for r in records if r.repository and r.tag and r.repository != UNTAGGED and r.tag != UNTAGGED]

    def clear_update(self, image_ids: Iterable[str]) -> int:
        """Set has_update=False for the given image IDs. Returns rows changed."""
        ids = [i for i in image_ids if i]
        if not ids:
            return 0
        with self.db.get_session() as session:
            changed = (
                session.query(ImageUpdateRecord)
                .filter(ImageUpdateRecord.id.in_(ids), ImageUpdateRecord.has_update == True)  # noqa: E712
                .update({ImageUpdateRecord.has_update: False, ImageUpdateRecord.updated_at: utcnow()},
                        synchronize_session=False)
            )
            session.commit()
        return changed

    def get_summary(self) -> Dict[str, int]:
        with self.db.get_session() as session:
            base = session.query(func.count(ImageUpdateRecord.id))
            total = base.scalar() or 0
            with_updates = base.filter(ImageUpdateRecord.has_update == True).scalar() or 0  # noqa: E712
            digest_updates = base.filter(
                ImageUpdateRecord.has_update == True,  # noqa: E712
                ImageUpdateRecord.update_type == "digest",
            ).scalar() or 0
            tag_updates = base.filter(
                ImageUpdateRecord.has_update == True,  # noqa: E712
                ImageUpdateRecord.update_type == "tag",
            ).scalar() or 0
            errors = base.filter(ImageUpdateRecord.last_error.isnot(None)).scalar() or 0

        return {
            'total_images': total,
            'images_with_updates': with_updates,
            'digest_updates': digest_updates,
            'tag_updates': tag_updates,
            'errors_count': errors,
        }

    async def cleanup_orphaned_records(self) -> int:
        """
        Delete records whose image no longer exists locally.

        Raises:
            DaemonError: image list failed (nothing is deleted)
        """
        if self.docker_client is None:
            raise DaemonError("no Docker client configured", step="list_images")
        try:
            images = await async_docker_call(self.docker_client.images.list)
        except docker.errors.APIError as e:
            raise DaemonError(f"failed to list Docker images: {e}", step="list_images")

        present = {img.id for img in images}

        deleted = 0
        with self.db.get_session() as session:
            for record in session.query(ImageUpdateRecord).all():
                if record.id not in present:
                    session.delete(record)
                    deleted += 1
            session.commit()

        logger.info(f"Cleaned up orphaned image update records: {deleted} deleted")
        return deleted

    # ==================== Audit records ====================

    def record_items(self, items: Iterable[UpdaterItem]) -> int:
        """Append one audit row per item. Returns rows written."""
        items = list(items)
        if not items:
            return 0
        with self.db.get_session() as session:
            for item in items:
                session.add(AutoUpdateRecord(
                    resource_id=item.resource_id,
                    resource_type=item.resource_type,
                    resource_name=item.resource_name,
                    status=item.status,
                    start_time=item.start_time,
                    end_time=item.end_time or utcnow(),
                    update_available=item.status in ("updated", "update_available"),
                    update_applied=item.update_applied,
                    old_image_versions=item.old_images or {},
                    new_image_versions=item.new_images or {},
                    error=item.error,
                    details=item.details or {},
                ))
            session.commit()
        return len(items)

    def list_history(self, page: int = 1, page_size: int = 50) -> Tuple[List[dict], int]:
        """Audit rows, newest first. Returns (rows, total)."""
        page = max(page, 1)
        page_size = max(min(page_size, 500), 1)
        with self.db.get_session() as session:
            query = session.query(AutoUpdateRecord)
            total = query.count()
            rows = (
                query.order_by(AutoUpdateRecord.start_time.desc(), AutoUpdateRecord.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [row.to_dict() for row in rows], total
