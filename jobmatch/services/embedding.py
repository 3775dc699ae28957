"""
Embedding generation and storage for jobs and user profiles.

Generation and storage are separate steps: ``generate_job_embeddings``
returns vectors keyed by job hash and ``store_job_embeddings`` writes them,
so a failed write can be retried without calling the model again.
"""
import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence

from jobmatch.helpers.text import build_job_text, build_semantic_query, meaningful_length, truncate_for_embedding
from jobmatch.models.models import Job, UserPreferences
from jobmatch.models.settings import EmbeddingSettings
from jobmatch.services.job_pool import JobPool
from jobmatch.utils.exceptions import EmbeddingError, JobMatchBaseException, retry_with_logging
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger, log_function_call
from jobmatch.utils.utils import ollama_embed

logger = get_logger(__name__)

EmbedFn = Callable[[str], List[float]]


@dataclass
class EmbeddingBatchResult:
    embeddings: Dict[str, List[float]] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class StoreResult:
    stored: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class CoverageReport:
    total_active: int
    with_embedding: int

    @property
    def coverage(self) -> float:
        if self.total_active == 0:
            return 0.0
        return self.with_embedding / self.total_active


@dataclass
class BackfillReport:
    requested: int
    generated: int
    skipped: int
    failed: int
    stored: int
    store_failed: int


class EmbeddingService:
    """Turns jobs and profiles into vectors through a blocking ``embed_fn``."""

    def __init__(
        self,
        job_pool: JobPool,
        settings: Optional[EmbeddingSettings] = None,
        embed_fn: Optional[EmbedFn] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.job_pool = job_pool
        self.settings = settings or EmbeddingSettings()
        self.embed_fn = embed_fn or partial(
            ollama_embed,
            model=self.settings.model,
            base_url=self.settings.base_url,
            timeout=self.settings.timeout,
        )
        self._sleep = sleep

    def prepare_text(self, text: str) -> Optional[str]:
        """Return model-ready text, or None when there is too little to embed."""
        if meaningful_length(text) < self.settings.min_text_chars:
            return None
        return truncate_for_embedding(text, self.settings.max_input_chars, self.settings.safety_margin_chars)

    async def embed_text(self, text: str, item_id: str = None) -> List[float]:
        """Embed one prepared text; raises EmbeddingError on failure or a bad vector."""
        try:
            vector = await asyncio.wait_for(asyncio.to_thread(self.embed_fn, text), timeout=self.settings.timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Embedding timed out after {self.settings.timeout}s", model_name=self.settings.model, item_id=item_id, cause=e
            ) from e
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Embedding request failed: {e}", model_name=self.settings.model, item_id=item_id, cause=e
            ) from e

        vector = [float(x) for x in vector or []]
        if not vector:
            raise EmbeddingError("Model returned an empty vector", model_name=self.settings.model, item_id=item_id)
        if self.settings.dimension and len(vector) != self.settings.dimension:
            raise EmbeddingError(
                f"Expected {self.settings.dimension} dimensions, got {len(vector)}",
                model_name=self.settings.model,
                item_id=item_id,
            )
        return vector

    async def generate_job_embeddings(self, jobs: Sequence[Job]) -> EmbeddingBatchResult:
        """
        Embed jobs in batches of ``batch_size`` with a pause between batches.

        Jobs with too little text are skipped; a job whose call fails is
        logged and recorded in ``failed``, and the rest of the batch goes on.
        """
        result = EmbeddingBatchResult()
        batch_size = self.settings.batch_size
        batches = [jobs[i:i + batch_size] for i in range(0, len(jobs), batch_size)]

        for index, batch in enumerate(batches):
            with PerformanceMonitor(f"embedding batch {index + 1}/{len(batches)}", logger, threshold_ms=30000):
                for job in batch:
                    key = job.job_hash or job.id or ""
                    text = self.prepare_text(build_job_text(job))
                    if text is None:
                        result.skipped.append(key)
                        continue
                    try:
                        result.embeddings[key] = await self.embed_text(text, item_id=key)
                    except EmbeddingError as e:
                        logger.warning(f"Skipping job {key}: {e.message}", extra={"job_hash": key})
                        result.failed.append(key)

            if index < len(batches) - 1 and self.settings.inter_batch_delay > 0:
                await self._sleep(self.settings.inter_batch_delay)

        logger.info(
            f"Generated {len(result.embeddings)} job embeddings "
            f"(skipped={len(result.skipped)}, failed={len(result.failed)})"
        )
        return result

    async def generate_user_embedding(self, prefs: UserPreferences) -> List[float]:
        """Embed the profile summary. Returns [] when skipped or on failure."""
        text = self.prepare_text(build_semantic_query(prefs))
        if text is None:
            logger.info("Profile text too short to embed", extra={"user_id": prefs.user_id})
            return []
        try:
            return await self.embed_text(text, item_id=prefs.user_id)
        except EmbeddingError as e:
            logger.warning(f"User embedding failed: {e.message}", extra={"user_id": prefs.user_id})
            return []

    async def store_job_embeddings(self, embeddings: Dict[str, List[float]]) -> StoreResult:
        """Write vectors onto their jobs, retrying each write on its own."""
        result = StoreResult()

        @retry_with_logging(
            max_attempts=self.settings.store_retry_attempts,
            backoff_factor=0.5,
            exceptions=(JobMatchBaseException,),
            logger=logger,
        )
        async def store(job_hash: str, vector: List[float]) -> bool:
            return await self.job_pool.store_embedding(job_hash, vector)

        for job_hash, vector in embeddings.items():
            try:
                found = await store(job_hash, vector)
            except JobMatchBaseException as e:
                result.failed += 1
                result.errors.append(f"{job_hash}: {e.message}")
                continue
            if found:
                result.stored += 1
            else:
                result.failed += 1
                result.errors.append(f"{job_hash}: job not found")

        if result.failed:
            logger.warning(f"Stored {result.stored} embeddings, {result.failed} failed")
        else:
            logger.info(f"Stored {result.stored} embeddings")
        return result

    async def check_embedding_coverage(self) -> CoverageReport:
        total = await self.job_pool.count_active_jobs()
        with_embedding = await self.job_pool.count_active_jobs(with_embedding=True)
        report = CoverageReport(total_active=total, with_embedding=with_embedding)
        logger.debug(f"Embedding coverage {report.coverage:.1%} ({with_embedding}/{total})")
        return report

    @log_function_call
    async def backfill_missing_embeddings(self, limit: int = 100) -> BackfillReport:
        jobs = await self.job_pool.jobs_missing_embeddings(limit=limit)
        generated = await self.generate_job_embeddings(jobs)
        stored = await self.store_job_embeddings(generated.embeddings)
        return BackfillReport(
            requested=len(jobs),
            generated=len(generated.embeddings),
            skipped=len(generated.skipped),
            failed=len(generated.failed),
            stored=stored.stored,
            store_failed=stored.failed,
        )
