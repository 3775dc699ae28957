"""
Semantic candidate retrieval.

Retrieval is an enhancement: every failure is reported through
``RetrievalResult`` so the coordinator can fall back to rule-based matching,
and nothing is raised to the caller.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from jobmatch.helpers.text import build_semantic_query
from jobmatch.models.models import SemanticJob, UserPreferences
from jobmatch.models.settings import RetrievalSettings
from jobmatch.services.category_mapper import ALL_CATEGORIES, CategoryMapper
from jobmatch.services.embedding import EmbeddingService
from jobmatch.services.job_pool import JobPool
from jobmatch.utils.exceptions import JobMatchBaseException, SemanticSearchUnavailableError
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger

logger = get_logger(__name__)


class RetrievalStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class RetrievalResult:
    status: RetrievalStatus
    candidates: List[SemanticJob] = field(default_factory=list)
    reason: Optional[str] = None

    @classmethod
    def ok(cls, candidates: List[SemanticJob]) -> "RetrievalResult":
        return cls(RetrievalStatus.OK, candidates)

    @classmethod
    def unavailable(cls, reason: str) -> "RetrievalResult":
        return cls(RetrievalStatus.UNAVAILABLE, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "RetrievalResult":
        return cls(RetrievalStatus.FAILED, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == RetrievalStatus.OK


class SemanticRetrievalService:

    def __init__(
        self,
        job_pool: JobPool,
        embedding_service: EmbeddingService,
        category_mapper: CategoryMapper,
        settings: Optional[RetrievalSettings] = None,
    ):
        self.job_pool = job_pool
        self.embedding_service = embedding_service
        self.category_mapper = category_mapper
        self.settings = settings or RetrievalSettings()

    def build_semantic_query(self, prefs: UserPreferences) -> str:
        return build_semantic_query(prefs)

    async def is_available(self) -> bool:
        """True when at least one active job carries an embedding."""
        report = await self.embedding_service.check_embedding_coverage()
        return report.with_embedding > 0

    def category_filter(self, prefs: UserPreferences) -> List[str]:
        categories = self.category_mapper.expand_career_paths(prefs.career_path)
        # Jobs are never tagged with the sentinel itself
        return [c for c in categories if c != ALL_CATEGORIES]

    async def retrieve(self, prefs: UserPreferences, limit: Optional[int] = None) -> RetrievalResult:
        """
        Up to ``limit`` (default K) active jobs at or above the similarity
        threshold, pre-filtered by the user's cities and career-path categories.
        """
        limit = limit or self.settings.candidate_limit
        context = {"user_id": prefs.user_id, "stage": "semantic_retrieval"}
        try:
            with PerformanceMonitor("semantic retrieval", logger, threshold_ms=self.settings.timeout * 500):
                return await asyncio.wait_for(self._retrieve(prefs, limit), timeout=self.settings.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Semantic retrieval timed out after {self.settings.timeout}s", extra=context)
            return RetrievalResult.failed("timeout")
        except SemanticSearchUnavailableError as e:
            logger.warning(f"Vector search capability unavailable: {e.message}", extra=context)
            return RetrievalResult.unavailable("similarity search not supported by the job store")
        except JobMatchBaseException as e:
            logger.error(f"Semantic retrieval failed: {e.message} {e.details}", extra=context)
            return RetrievalResult.failed(e.message)
        except Exception as e:
            logger.exception(f"Unexpected semantic retrieval error: {e}", extra=context)
            return RetrievalResult.failed(str(e))

    async def _retrieve(self, prefs: UserPreferences, limit: int) -> RetrievalResult:
        if not await self.is_available():
            logger.warning(
                "No active job has an embedding, semantic signal unavailable",
                extra={"user_id": prefs.user_id},
            )
            return RetrievalResult.unavailable("no job embeddings")

        vector = await self.embedding_service.generate_user_embedding(prefs)
        if not vector:
            return RetrievalResult.unavailable("empty user embedding")

        cities = [c for c in prefs.target_cities if c] or None
        categories = self.category_filter(prefs) or None
        threshold = self.settings.similarity_threshold

        rows = await self.job_pool.similarity_search(
            vector, threshold=threshold, limit=limit, cities=cities, categories=categories
        )

        candidates = []
        for job, similarity in rows:
            if similarity < threshold:
                continue
            score = min(1.0, max(0.0, similarity))
            candidates.append(SemanticJob(
                **job.model_dump(),
                semantic_score=score,
                embedding_distance=1.0 - score,
            ))
        candidates.sort(key=lambda j: (-j.semantic_score, j.job_hash or ""))
        candidates = candidates[:limit]

        logger.info(
            f"Semantic retrieval returned {len(candidates)} candidates",
            extra={"user_id": prefs.user_id, "threshold": threshold, "cities": len(cities or [])},
        )
        return RetrievalResult.ok(candidates)

    async def get_semantic_candidates(self, prefs: UserPreferences, limit: Optional[int] = None) -> List[SemanticJob]:
        """Candidate list only; empty when retrieval was unavailable or failed."""
        result = await self.retrieve(prefs, limit)
        return result.candidates
