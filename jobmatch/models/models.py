from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class Provenance(str, Enum):
    AI_SUCCESS = "ai_success"
    FALLBACK = "fallback"
    SEMANTIC = "semantic"


class MatchingMethod(str, Enum):
    AI = "ai"
    SEMANTIC = "semantic"
    RULE_BASED = "rule-based"


class UserPreferences(BaseModel):
    """Matching input for one user; read from the profile store, never written."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: Optional[str] = None
    email: Optional[str] = None
    subscription_tier: Tier = Tier.FREE
    target_cities: List[str] = Field(default_factory=list)
    career_path: List[str] = Field(default_factory=list)
    roles_selected: List[str] = Field(default_factory=list)
    work_environment: Optional[str] = None
    entry_level_preference: Optional[str] = None
    languages_spoken: List[str] = Field(default_factory=list)
    company_types: List[str] = Field(default_factory=list)
    visa_sponsorship: bool = False

    @field_validator(
        "target_cities", "career_path", "roles_selected", "languages_spoken", "company_types", mode="before"
    )
    @classmethod
    def null_lists(cls, v):
        return [] if v is None else v

    @field_validator("visa_sponsorship", mode="before")
    @classmethod
    def null_flag(cls, v):
        return False if v is None else v


class Job(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    job_hash: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    location: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    description: Optional[str] = None
    original_posted_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    categories: List[str] = Field(default_factory=list)
    is_internship: bool = False
    is_graduate: bool = False
    is_early_career: bool = False
    is_active: bool = True
    embedding: Optional[List[float]] = None
    source: Optional[str] = None
    work_environment: Optional[str] = None
    experience_required: Optional[str] = None
    job_url: Optional[str] = None

    # Scraped documents carry nulls where the field was never filled
    @field_validator("categories", mode="before")
    @classmethod
    def null_categories(cls, v):
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [c for c in v if c]
        return v

    @field_validator("is_internship", "is_graduate", "is_early_career", "is_active", mode="before")
    @classmethod
    def null_flags(cls, v):
        return False if v is None else v

    def has_required_fields(self) -> bool:
        return bool(self.job_hash and self.title and self.company)

    def posted_at(self) -> Optional[datetime]:
        return self.original_posted_date or self.created_at


class SemanticJob(Job):
    """Job returned by similarity search. Never persisted."""
    semantic_score: float = Field(ge=0.0, le=1.0)
    embedding_distance: float = Field(ge=0.0)


class MatchResult(BaseModel):
    user_id: Optional[str] = None
    job: Job
    match_score: float = Field(ge=0.0, le=100.0)
    match_reason: str = ""
    provenance: Provenance = Provenance.FALLBACK


class SendLedgerEntry(BaseModel):
    user_id: str
    week_start: str  # ISO date of the Monday
    tier: Tier
    sends_used: int = Field(default=0, ge=0)
    jobs_sent: int = Field(default=0, ge=0)
    last_send_date: Optional[str] = None


class DistributionMetrics(BaseModel):
    total_jobs: int = 0
    valid_job_count: int = 0
    selected_job_count: int = 0
    processing_time_ms: float = 0.0
    tier_distribution: Dict[str, int] = Field(default_factory=dict)
    source_distribution: Dict[str, int] = Field(default_factory=dict)
    city_distribution: Dict[str, int] = Field(default_factory=dict)


class LevelAttempt(BaseModel):
    level: str
    eligible_count: int
    selected_count: int


class MatchMetadata(BaseModel):
    matching_method: MatchingMethod = MatchingMethod.RULE_BASED
    relaxation_level: str
    processing_time_ms: float = 0.0
    target_count: int = 0
    pool_size: int = 0
    semantic_status: str = "skipped"  # ok, unavailable, failed, skipped
    deadline_exceeded: bool = False
    attempts: List[LevelAttempt] = Field(default_factory=list)
    metrics: DistributionMetrics = Field(default_factory=DistributionMetrics)


class MatchComputation(BaseModel):
    matches: List[MatchResult] = Field(default_factory=list)
    metadata: MatchMetadata
