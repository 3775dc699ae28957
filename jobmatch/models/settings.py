"""
Engine settings: thresholds, model endpoints and batching knobs
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from jobmatch.utils.exceptions import ConfigurationError

load_dotenv()


class EmbeddingSettings(BaseModel):
    """Embedding model configuration"""
    model: str = Field(default="nomic-embed-text:latest", description="Ollama embedding model")
    base_url: str = Field(default="http://localhost:11434", description="Ollama base URL")
    timeout: float = Field(default=30.0, gt=0, le=300, description="Per-request timeout in seconds")
    dimension: Optional[int] = Field(default=768, ge=1, description="Expected vector length, None to accept any")
    context_tokens: int = Field(default=8192, ge=1, description="Model context length in tokens")
    chars_per_token: float = Field(default=4.0, gt=0, description="Conservative characters-per-token estimate")
    max_input_chars: int = Field(default=30000, ge=100, description="Inputs longer than this are truncated")
    safety_margin_chars: int = Field(default=100, ge=0, description="Headroom kept below max_input_chars when truncating")
    min_text_chars: int = Field(default=10, ge=0, description="Shorter inputs are skipped")
    batch_size: int = Field(default=100, ge=1, le=1000, description="Jobs embedded per batch")
    inter_batch_delay: float = Field(default=0.5, ge=0.0, le=60.0, description="Pause between batches in seconds")
    store_retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per embedding write")

    @model_validator(mode="after")
    def validate_truncation(self):
        ceiling = int(self.context_tokens * self.chars_per_token)
        if self.max_input_chars > ceiling:
            raise ValueError(
                f"max_input_chars ({self.max_input_chars}) exceeds the model ceiling of ~{ceiling} chars"
            )
        if self.safety_margin_chars >= self.max_input_chars:
            raise ValueError("safety_margin_chars must be smaller than max_input_chars")
        return self


class RetrievalSettings(BaseModel):
    """Semantic retrieval configuration"""
    similarity_threshold: float = Field(default=0.65, description="Minimum cosine similarity, inclusive")
    candidate_limit: int = Field(default=200, ge=1, le=5000, description="Maximum candidates returned (K)")
    timeout: float = Field(default=10.0, gt=0, description="Timeout for embedding plus search, in seconds")
    vector_index: str = Field(default="job_embedding_index", description="Atlas vector search index name")
    num_candidates_factor: int = Field(default=10, ge=1, description="ANN candidates examined per requested result")

    @field_validator("similarity_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("similarity_threshold must be between 0.0 and 1.0")
        return v


class RerankerSettings(BaseModel):
    """LLM reranker configuration"""
    enabled: bool = Field(default=False, description="Use the LLM reranker when building matches")
    model: str = Field(default="llama3.1:8b", description="Ollama generation model")
    base_url: str = Field(default="http://localhost:11434", description="Ollama base URL")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    batch_size: int = Field(default=5, ge=1, le=50, description="Jobs per reranker prompt")
    batch_delay: float = Field(default=1.0, ge=0.0, description="Pause between prompts in seconds")
    timeout: float = Field(default=30.0, gt=0, description="Timeout for a whole rerank call in seconds")
    max_retries: int = Field(default=3, ge=1, le=10)
    max_jobs: int = Field(default=50, ge=1, description="Jobs sent to the reranker per run")
    breaker_failures: int = Field(default=3, ge=1, description="Consecutive failures before the reranker is skipped")
    breaker_cooldown: float = Field(default=300.0, ge=0.0, description="Seconds the reranker is skipped once the breaker opens")


class MatchingSettings(BaseModel):
    """Coordinator and scoring configuration"""
    relaxed_min_score: float = Field(default=40.0, ge=0.0, le=100.0, description="Score floor at the score-relaxed level")
    semantic_weight: float = Field(default=0.3, ge=0.0, le=1.0, description="Share of the semantic signal in blended scores")
    pool_limit: int = Field(default=2000, ge=1, description="Jobs fetched from the pool per run")
    deadline_seconds: Optional[float] = Field(default=None, gt=0, description="Overall run deadline")
    slow_run_threshold_ms: float = Field(default=2000.0, gt=0)


class EngineSettings(BaseModel):
    """All engine settings"""
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    reranker: RerankerSettings = Field(default_factory=RerankerSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> EngineSettings:
    """Build settings from environment variables, falling back to defaults."""
    ollama = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    overrides = {
        "embedding": {
            "base_url": ollama,
            "model": os.getenv("EMBED_MODEL", "nomic-embed-text:latest"),
        },
        "retrieval": {},
        "reranker": {
            "base_url": ollama,
            "enabled": _env_bool("RERANKER_ENABLED", False),
            "model": os.getenv("LLM_MODEL", "llama3.1:8b"),
        },
        "matching": {},
    }
    if os.getenv("SIMILARITY_THRESHOLD"):
        overrides["retrieval"]["similarity_threshold"] = os.getenv("SIMILARITY_THRESHOLD")
    if os.getenv("CANDIDATE_LIMIT"):
        overrides["retrieval"]["candidate_limit"] = os.getenv("CANDIDATE_LIMIT")
    if os.getenv("VECTOR_INDEX"):
        overrides["retrieval"]["vector_index"] = os.getenv("VECTOR_INDEX")
    if os.getenv("MATCH_DEADLINE_SECONDS"):
        overrides["matching"]["deadline_seconds"] = os.getenv("MATCH_DEADLINE_SECONDS")

    try:
        return EngineSettings(**overrides)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid engine settings: {e}", cause=e) from e
