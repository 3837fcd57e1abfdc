"""Duplicate-group review models for the GrantMatch API."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from grantmatch.models.base import ApiModel


class GroupMemberResponse(ApiModel):
    id: uuid.UUID
    name: Optional[str] = None
    organization: Optional[str] = None
    category: Optional[str] = None
    region: Optional[str] = None
    deadline: Optional[datetime] = None
    status: str
    is_canonical: bool
    detail_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class DuplicateGroupResponse(ApiModel):
    id: uuid.UUID
    normalized_name: str
    project_year: Optional[int] = None
    canonical_project_id: uuid.UUID
    merge_confidence: float
    review_status: str
    source_count: int
    canonical_locked: bool = False
    merged_data: Optional[Dict[str, Any]] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DuplicateGroupDetail(DuplicateGroupResponse):
    members: List[GroupMemberResponse] = Field(default_factory=list)


class PaginationInfo(ApiModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class DuplicateGroupListResponse(ApiModel):
    groups: List[DuplicateGroupResponse]
    pagination: PaginationInfo
    status_counts: Dict[str, int]


class DuplicateGroupUpdate(ApiModel):
    """Reviewer change: a new status, a new canonical member, or both."""

    review_status: Optional[str] = Field(
        None, description="pending_review, confirmed or rejected"
    )
    canonical_project_id: Optional[uuid.UUID] = None
    reviewed_by: Optional[str] = Field(None, max_length=200)


class DissolveResponse(ApiModel):
    success: bool
    group_id: uuid.UUID
    detached_count: int
