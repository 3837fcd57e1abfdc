"""Batch job, embedding backfill and regroup models for the GrantMatch API."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from grantmatch.models.base import ApiModel


class GenerateEmbeddingsRequest(ApiModel):
    """Request model for a synchronous embedding backfill batch."""

    batch_size: int = Field(
        50, ge=1, le=500, description="Programs flagged needs_embedding to process"
    )


class ItemErrorResponse(ApiModel):
    item_id: str
    error: str


class BatchSummaryResponse(ApiModel):
    """Aggregate outcome of a batch run."""

    processed: int
    success_count: int
    error_count: int
    skipped_count: int = 0
    error_details: List[ItemErrorResponse] = Field(default_factory=list)
    duration_ms: int = 0


class EmbeddingStatsResponse(ApiModel):
    total_projects: int
    needs_embedding: int
    has_embeddings: int
    completion_rate: float = Field(..., description="Percent of live programs embedded")


class RegroupRequest(ApiModel):
    """Request model for a background grouper run."""

    project_year: Optional[int] = Field(None, ge=2000, le=2100)
    changed_since_hours: Optional[int] = Field(
        None, ge=1, le=24 * 365, description="Only rescan programs updated this recently"
    )


class BatchJobResponse(ApiModel):
    """Status row of a background job."""

    id: uuid.UUID
    job_type: str
    status: str
    params: Optional[Dict[str, Any]] = None
    queued_count: int = 0
    processed: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    error_details: Optional[List[Dict[str, Any]]] = None
    result_summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobAcceptedResponse(ApiModel):
    accepted: bool
    job_id: uuid.UUID
    status: str
