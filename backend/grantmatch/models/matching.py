"""Matching models for the GrantMatch API."""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import Field, model_validator

from grantmatch.models.base import ApiModel
from grantmatch.models.batch import BatchJobResponse


class MatchingBatchRequest(ApiModel):
    """Request model for a background matching refresh."""

    batch_size: int = Field(10, ge=1, le=100, description="Companies per paced chunk")
    max_companies: int = Field(50, ge=1, le=1000, description="Companies to refresh")


class MatchingBatchAccepted(ApiModel):
    accepted: bool
    companies_queued: int
    batch_size: int
    job_id: Optional[uuid.UUID] = None


class MatchingStatsResponse(ApiModel):
    total_companies: int
    companies_with_preferences: int
    total_matching_results: int
    results_last_24_hours: int = Field(..., alias="resultsLast24Hours")
    last_job: Optional[BatchJobResponse] = None


class MatchingPreferenceRequest(ApiModel):
    """Preferences consulted by the next matching refresh of a company."""

    categories: List[str] = Field(default_factory=list, max_length=50)
    min_amount: Optional[int] = Field(None, ge=0)
    max_amount: Optional[int] = Field(None, ge=0)
    regions: Optional[List[str]] = Field(None, max_length=20)
    exclude_keywords: Optional[List[str]] = Field(None, max_length=50)

    @model_validator(mode="after")
    def _check_bounds(self) -> "MatchingPreferenceRequest":
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("minAmount must not exceed maxAmount")
        return self


class MatchingPreferenceResponse(ApiModel):
    id: uuid.UUID
    company_id: uuid.UUID
    categories: List[str]
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    regions: Optional[List[str]] = None
    exclude_keywords: Optional[List[str]] = None
    created_at: Optional[datetime] = None


class MatchingResultResponse(ApiModel):
    id: uuid.UUID
    project_id: uuid.UUID
    total_score: int
    confidence: str
    match_reasons: List[str]
    category_score: Optional[int] = None
    region_score: Optional[int] = None
    amount_score: Optional[int] = None
    semantic_score: Optional[int] = None
    industry_score: Optional[int] = None
    eligibility_score: Optional[int] = None
    created_at: Optional[datetime] = None


class CompanyMatchingResponse(ApiModel):
    company_id: uuid.UUID
    result_count: int
    results: List[MatchingResultResponse]
