"""
Shared types for the update engine.

Dataclasses passed between the batch checker, planner, applier and routes so
every stage agrees on the same result shapes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ItemStatus(str, Enum):
    """Terminal status of one unit of work in a run."""
    CHECKED = "checked"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"


class AuditPhase(str, Enum):
    """Phase tag carried on every audit event."""
    START = "start"
    IMAGE_PULL = "image_pull"
    CONTAINER = "container"
    STACK = "stack"
    COMPLETE = "complete"


class ResourceType(str, Enum):
    IMAGE = "image"
    CONTAINER = "container"
    STACK = "stack"


class AuthMethod(str, Enum):
    """How a registry was accessed during a check."""
    NONE = "none"
    ANONYMOUS = "anonymous"
    CREDENTIAL = "credential"
    BASIC = "basic"
    BEARER = "bearer"
    UNKNOWN = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthDetails:
    """Outcome of token acquisition for one registry."""
    method: str = AuthMethod.NONE.value
    username: Optional[str] = None
    registry: Optional[str] = None
    used_credential: bool = False


@dataclass
class ExternalCredential:
    """Plaintext registry credential supplied by a caller for a single batch."""
    url: str
    username: str
    token: str
    enabled: bool = True


@dataclass
class CheckResult:
    """
    Result of checking one image reference against its registry.

    error is set (and has_update False) when the check could not complete.
    """
    has_update: bool = False
    update_type: str = "digest"  # digest|tag
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    current_digest: Optional[str] = None
    latest_digest: Optional[str] = None
    check_time: datetime = field(default_factory=_utcnow)
    response_time_ms: int = 0
    auth_method: Optional[str] = None
    auth_username: Optional[str] = None
    auth_registry: Optional[str] = None
    used_credential: bool = False
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, response_time_ms: int = 0) -> 'CheckResult':
        """Create a failed check result."""
        return cls(has_update=False, error=error, response_time_ms=response_time_ms)

    def apply_auth(self, details: Optional[AuthDetails]) -> None:
        if details is None:
            return
        self.auth_method = details.method
        self.auth_username = details.username
        self.auth_registry = details.registry
        self.used_credential = details.used_credential

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['check_time'] = self.check_time.isoformat() if self.check_time else None
        return data


@dataclass
class UpdatePlan:
    """
    One pending image update.

    old_image_ids is captured before the new image is pulled so containers
    still running the stale image can be found afterwards.
    """
    old_ref: str
    new_ref: str
    old_image_ids: List[str] = field(default_factory=list)
    record_id: Optional[str] = None
    update_type: str = "digest"


@dataclass
class UpdaterItem:
    """Outcome of one unit of work (image, container or stack) in a run."""
    resource_id: str
    resource_type: str
    resource_name: str
    status: str
    old_images: Dict[str, str] = field(default_factory=dict)
    new_images: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    update_applied: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None

    def finish(self, status: ItemStatus, error: Optional[str] = None) -> 'UpdaterItem':
        self.status = status.value
        if error is not None:
            self.error = error
        self.end_time = _utcnow()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'resource_name': self.resource_name,
            'status': self.status,
            'old_images': self.old_images,
            'new_images': self.new_images,
            'error': self.error,
            'update_applied': self.update_applied,
            'details': self.details,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
        }


@dataclass
class RunResult:
    """Aggregate result of one apply run."""
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    items: List[UpdaterItem] = field(default_factory=list)
    duration: float = 0.0
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and self.failed == 0

    def add(self, item: UpdaterItem) -> None:
        """Append an item and bump the counter matching its status."""
        self.items.append(item)
        self.checked += 1
        if item.status == ItemStatus.UPDATED.value:
            self.updated += 1
        elif item.status == ItemStatus.FAILED.value:
            self.failed += 1
        elif item.status == ItemStatus.SKIPPED.value:
            self.skipped += 1

    def finish(self) -> 'RunResult':
        self.end_time = _utcnow()
        self.duration = (self.end_time - self.start_time).total_seconds()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'updated': self.updated,
            'skipped': self.skipped,
            'failed': self.failed,
            'items': [item.to_dict() for item in self.items],
            'duration': self.duration,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'error': self.error,
            'dry_run': self.dry_run,
            'success': self.success,
        }
