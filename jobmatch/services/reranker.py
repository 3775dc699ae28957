"""
Optional LLM reranking of candidate jobs.

The reranker either returns scored jobs or raises ``RerankerError``; the
coordinator treats any failure as "use rule-based scoring".
"""
import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional, Protocol, Sequence

from jobmatch.helpers.prompts import JOB_LINE, RERANK_PROMPT
from jobmatch.helpers.text import build_semantic_query, clean_text
from jobmatch.models.models import Job, UserPreferences
from jobmatch.models.settings import RerankerSettings
from jobmatch.utils.exceptions import ExternalServiceError, RerankerError, retry_with_logging
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger
from jobmatch.utils.utils import ollama_generate, safe_json

logger = get_logger(__name__)

GenerateFn = Callable[[str], str]


@dataclass
class ScoredJob:
    job_hash: str
    score: float
    reason: str


class Reranker(Protocol):
    async def rerank(self, jobs: Sequence[Job], prefs: UserPreferences) -> List[ScoredJob]:
        ...


def build_rerank_prompt(jobs: Sequence[Job], prefs: UserPreferences) -> str:
    lines = [
        JOB_LINE.format(
            job_hash=job.job_hash,
            title=clean_text(job.title),
            company=clean_text(job.company),
            location=clean_text(job.location or job.city),
            categories=", ".join(job.categories) or "none",
            snippet=clean_text(job.description)[:300],
        )
        for job in jobs
    ]
    return RERANK_PROMPT.format(profile=build_semantic_query(prefs) or "No stated preferences", jobs="\n".join(lines))


def parse_rerank_response(raw: str, batch: Sequence[Job]) -> List[ScoredJob]:
    """Validate model output against the batch; raises RerankerError when unusable."""
    data = safe_json(raw, fallback=None)
    if isinstance(data, dict):
        data = data.get("matches")
    if not isinstance(data, list):
        raise RerankerError("Reranker response is not a JSON list of matches", details={"raw": raw[:200]})

    allowed = {job.job_hash for job in batch}
    scored = {}
    for item in data:
        if not isinstance(item, dict):
            continue
        job_hash = item.get("job_hash")
        try:
            score = float(item.get("score"))
        except (TypeError, ValueError):
            continue
        if job_hash not in allowed or not 0.0 <= score <= 100.0:
            continue
        scored[job_hash] = ScoredJob(job_hash, score, clean_text(str(item.get("reason") or "")))

    if not scored:
        raise RerankerError("Reranker returned no usable scores", details={"batch_size": len(batch)})
    return list(scored.values())


class OllamaReranker:
    """Scores jobs in small batches with an Ollama generation model."""

    def __init__(
        self,
        settings: Optional[RerankerSettings] = None,
        generate_fn: Optional[GenerateFn] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.settings = settings or RerankerSettings()
        self.generate_fn = generate_fn or partial(
            ollama_generate,
            model=self.settings.model,
            base_url=self.settings.base_url,
            temperature=self.settings.temperature,
            timeout=self.settings.timeout,
            json_mode=True,
        )
        self._sleep = sleep

    async def rerank(self, jobs: Sequence[Job], prefs: UserPreferences) -> List[ScoredJob]:
        jobs = [j for j in jobs if j.job_hash][: self.settings.max_jobs]
        if not jobs:
            return []

        size = self.settings.batch_size
        batches = [jobs[i:i + size] for i in range(0, len(jobs), size)]
        results: List[ScoredJob] = []

        with PerformanceMonitor(f"rerank {len(jobs)} jobs", logger, threshold_ms=self.settings.timeout * 1000):
            for index, batch in enumerate(batches):
                results.extend(await self._score_batch(batch, prefs, index))
                if index < len(batches) - 1 and self.settings.batch_delay > 0:
                    await self._sleep(self.settings.batch_delay)

        results.sort(key=lambda s: (-s.score, s.job_hash))
        return results

    async def _score_batch(self, batch: Sequence[Job], prefs: UserPreferences, index: int) -> List[ScoredJob]:
        prompt = build_rerank_prompt(batch, prefs)

        @retry_with_logging(
            max_attempts=self.settings.max_retries,
            backoff_factor=0.5,
            exceptions=(ExternalServiceError, RerankerError),
            logger=logger,
        )
        async def call() -> List[ScoredJob]:
            raw = await asyncio.to_thread(self.generate_fn, prompt)
            return parse_rerank_response(raw, batch)

        try:
            return await call()
        except RerankerError:
            raise
        except ExternalServiceError as e:
            raise RerankerError(
                f"Reranker unreachable: {e.message}", model_name=self.settings.model, batch_index=index, cause=e
            ) from e
