"""
Request/Response Models for the update engine API
Pydantic models for /api/updates request validation
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class RegistryCredentialInput(BaseModel):
    """Plaintext registry credential used for a single check"""
    url: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    token: str = Field(..., min_length=1)
    enabled: bool = True


class CheckRequest(BaseModel):
    """Request model for an update check"""
    image_refs: Optional[List[str]] = Field(None, max_length=1000)
    credentials: Optional[List[RegistryCredentialInput]] = Field(None, max_length=50)
    dry_run: bool = False
    resource_id: Optional[str] = Field(None, max_length=255)
    resource_type: Optional[str] = Field(None, pattern='^(container|stack)$')
    limit: int = Field(0, ge=0, le=10000)

    @field_validator('image_refs')
    @classmethod
    def validate_image_refs(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Strip whitespace and drop empty entries"""
        if v is None:
            return v
        return [ref.strip() for ref in v if ref and ref.strip()]


class ApplyRequest(BaseModel):
    """Request model for applying pending updates"""
    dry_run: bool = False


class CheckResponse(BaseModel):
    results: Dict[str, Dict[str, Any]]
    checked: int
    with_updates: int
    errors: int
    persisted: bool


class UpdateSummaryResponse(BaseModel):
    total_images: int
    images_with_updates: int
    digest_updates: int
    tag_updates: int
    errors_count: int


class HistoryResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int


class VersionsResponse(BaseModel):
    image_ref: str
    versions: List[str]
    latest_version: Optional[str] = None
    current_version: str


class CleanupResponse(BaseModel):
    deleted: int
