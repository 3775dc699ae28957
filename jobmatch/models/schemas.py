from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from jobmatch.models.models import Job, Tier, UserPreferences


# -------- Matches --------
class ComputeMatchesRequest(BaseModel):
    target_count: Optional[int] = Field(default=None, ge=0, le=100)
    persist: bool = True


class PreviewMatchesRequest(BaseModel):
    preferences: UserPreferences
    jobs: Optional[List[Job]] = None
    target_count: Optional[int] = Field(default=None, ge=0, le=100)


class StoredMatch(BaseModel):
    job_hash: str
    match_score: float
    match_reason: str = ""
    provenance: str
    matched_at: Optional[datetime] = None
    job: Dict[str, Any]


# -------- Embeddings --------
class CoverageResponse(BaseModel):
    total_active: int
    with_embedding: int
    coverage: float


class BackfillRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class BackfillResponse(BaseModel):
    requested: int
    generated: int
    skipped: int
    failed: int
    stored: int
    store_failed: int


# -------- Send policy --------
class EligibilityResponse(BaseModel):
    user_id: str
    tier: Tier
    week_start: str
    can_receive_send: bool
    is_send_day: bool
    jobs_per_send: int
    sends_used: int
    sends_per_week: int
