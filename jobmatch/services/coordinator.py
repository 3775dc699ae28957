"""
Guaranteed matching: run selection under progressively relaxed constraints
until the target count is met or the ladder runs out.

Levels, tightest first:

    strict            city + category/work environment + minimum score
    city_relaxed      category + minimum score
    category_relaxed  city + minimum score
    score_relaxed     city + category + relaxed minimum score
    fully_relaxed     validity only (active, job_hash/title/company)

A run that is still short after ``fully_relaxed`` ends in ``exhausted`` and
returns what the last level produced.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

from jobmatch.helpers.text import normalize_city, normalize_work_environment
from jobmatch.models.models import (
    DistributionMetrics,
    Job,
    LevelAttempt,
    MatchComputation,
    MatchingMethod,
    MatchMetadata,
    MatchResult,
    Provenance,
    Tier,
    UserPreferences,
)
from jobmatch.models.settings import EngineSettings, MatchingSettings
from jobmatch.services.category_mapper import ALL_CATEGORIES, CategoryMapper
from jobmatch.services.distributor import JobDistributor
from jobmatch.services.embedding import EmbeddingService
from jobmatch.services.job_pool import JobPool
from jobmatch.services.matching import RuleBasedScorer
from jobmatch.services.reranker import OllamaReranker, Reranker, ScoredJob
from jobmatch.services.semantic_retrieval import SemanticRetrievalService
from jobmatch.services.send_configuration import SendConfiguration
from jobmatch.utils.exceptions import CircuitBreaker, JobMatchBaseException
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger

logger = get_logger(__name__)

EXHAUSTED = "exhausted"
WORK_ENVIRONMENTS = {"remote", "hybrid", "on-site"}


class RelaxationLevel(str, Enum):
    STRICT = "strict"
    CITY_RELAXED = "city_relaxed"
    CATEGORY_RELAXED = "category_relaxed"
    SCORE_RELAXED = "score_relaxed"
    FULLY_RELAXED = "fully_relaxed"


LADDER = list(RelaxationLevel)


@dataclass(frozen=True)
class LevelConstraints:
    enforce_city: bool
    enforce_category: bool
    min_score: Optional[float]


def constraints_for(level: RelaxationLevel, min_score: float, relaxed_min_score: float) -> LevelConstraints:
    if level == RelaxationLevel.STRICT:
        return LevelConstraints(True, True, min_score)
    if level == RelaxationLevel.CITY_RELAXED:
        return LevelConstraints(False, True, min_score)
    if level == RelaxationLevel.CATEGORY_RELAXED:
        return LevelConstraints(True, False, min_score)
    if level == RelaxationLevel.SCORE_RELAXED:
        return LevelConstraints(True, True, relaxed_min_score)
    return LevelConstraints(False, False, None)


@dataclass
class LevelOutcome:
    level: RelaxationLevel
    eligible_count: int
    matches: List[MatchResult]
    method: MatchingMethod
    metrics: DistributionMetrics


@dataclass
class RunState:
    """Per-run caches shared by all levels of one compute_matches call."""
    now: datetime
    deadline: Optional[float] = None
    semantic_scores: Dict[str, float] = field(default_factory=dict)
    ai_scores: Dict[str, ScoredJob] = field(default_factory=dict)
    ai_attempted: Set[str] = field(default_factory=set)
    ai_failed: bool = False

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.perf_counter()

    def past_deadline(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class GuaranteedMatchingCoordinator:

    def __init__(
        self,
        category_mapper: CategoryMapper,
        distributor: JobDistributor,
        send_config: SendConfiguration,
        scorer: Optional[RuleBasedScorer] = None,
        job_pool: Optional[JobPool] = None,
        retrieval: Optional[SemanticRetrievalService] = None,
        reranker: Optional[Reranker] = None,
        settings: Optional[MatchingSettings] = None,
        reranker_timeout: float = 30.0,
        reranker_breaker: Optional[CircuitBreaker] = None,
    ):
        self.category_mapper = category_mapper
        self.distributor = distributor
        self.send_config = send_config
        self.settings = settings or MatchingSettings()
        self.scorer = scorer or RuleBasedScorer(category_mapper, semantic_weight=self.settings.semantic_weight)
        self.job_pool = job_pool
        self.retrieval = retrieval
        self.reranker = reranker
        self.reranker_timeout = reranker_timeout
        self.reranker_breaker = reranker_breaker or CircuitBreaker("reranker", logger=logger)

    def constraints_for(self, level: RelaxationLevel) -> LevelConstraints:
        return constraints_for(level, self.send_config.rules.min_score, self.settings.relaxed_min_score)

    async def compute_matches(
        self,
        prefs: UserPreferences,
        jobs: Optional[Sequence[Job]] = None,
        tier: Union[Tier, str, None] = None,
        target_count: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> MatchComputation:
        """
        Run the relaxation ladder for one user.

        ``jobs`` is the candidate pool; when omitted the pool is fetched from
        ``job_pool`` over the lookback window. Never raises for unavailable
        services, invalid jobs or a pool too small for the target.
        """
        start = time.perf_counter()
        tier = Tier(tier or prefs.subscription_tier)
        target = target_count if target_count is not None else self.send_config.jobs_per_send(tier)
        deadline_seconds = deadline_seconds or self.settings.deadline_seconds
        state = RunState(
            now=now or datetime.now(timezone.utc),
            deadline=start + deadline_seconds if deadline_seconds else None,
        )
        context = {"user_id": prefs.user_id, "tier": tier.value, "target": target}

        with PerformanceMonitor(
            f"compute_matches user={prefs.user_id}", logger, threshold_ms=self.settings.slow_run_threshold_ms
        ):
            fetched = jobs is None
            pool = list(jobs) if jobs is not None else await self._load_pool(state)
            semantic_status, extra_jobs = await self._load_semantic_scores(prefs, state)
            if fetched and extra_jobs:
                known = {j.job_hash for j in pool}
                pool.extend(j for j in extra_jobs if j.job_hash not in known)
            valid = self.distributor.filter_valid_jobs(pool)

            attempts: List[LevelAttempt] = []
            outcome: Optional[LevelOutcome] = None
            deadline_exceeded = False
            relaxation_level = EXHAUSTED

            for level in LADDER:
                if outcome is not None and state.past_deadline():
                    deadline_exceeded = True
                    relaxation_level = outcome.level.value
                    logger.warning(f"Deadline reached before level {level.value}", extra=context)
                    break
                outcome = await self.attempt_level(level, valid, prefs, tier, target, state)
                attempts.append(LevelAttempt(
                    level=level.value,
                    eligible_count=outcome.eligible_count,
                    selected_count=len(outcome.matches),
                ))
                if len(outcome.matches) >= target:
                    relaxation_level = level.value
                    break
                logger.debug(
                    f"Level {level.value} produced {len(outcome.matches)}/{target}, relaxing",
                    extra=context,
                )

        metrics = outcome.metrics.model_copy(update={"total_jobs": len(pool)})
        metadata = MatchMetadata(
            matching_method=outcome.method,
            relaxation_level=relaxation_level,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 3),
            target_count=target,
            pool_size=len(pool),
            semantic_status=semantic_status,
            deadline_exceeded=deadline_exceeded,
            attempts=attempts,
            metrics=metrics,
        )
        if relaxation_level == EXHAUSTED:
            logger.warning(
                f"Relaxation exhausted with {len(outcome.matches)}/{target} matches", extra=context
            )
        logger.info(
            f"Matched {len(outcome.matches)} jobs at level {relaxation_level} via {outcome.method.value}",
            extra=context,
        )
        return MatchComputation(matches=outcome.matches, metadata=metadata)

    async def attempt_level(
        self,
        level: RelaxationLevel,
        pool: Sequence[Job],
        prefs: UserPreferences,
        tier: Tier,
        target: int,
        state: RunState,
    ) -> LevelOutcome:
        """Filter, score and select under one level's constraints."""
        constraints = self.constraints_for(level)
        eligible = [job for job in pool if self.passes_constraints(job, prefs, constraints)]

        if self.reranker is not None and not state.ai_failed:
            await self._ensure_ai_scores(eligible, prefs, state)

        scored: Dict[str, MatchResult] = {}
        qualifying = []
        for job in eligible:
            match = self.score_job(job, prefs, state)
            if constraints.min_score is not None and match.match_score < constraints.min_score:
                continue
            scored[job.job_hash] = match
            qualifying.append(job)

        result = self.distributor.distribute(
            qualifying,
            tier,
            user_career_path=prefs.career_path,
            per_send=target,
            target_cities=prefs.target_cities,
        )
        matches = [scored[job.job_hash] for job in result.jobs]
        return LevelOutcome(level, len(eligible), matches, self._method(matches), result.metrics)

    def passes_constraints(self, job: Job, prefs: UserPreferences, constraints: LevelConstraints) -> bool:
        if constraints.enforce_city and prefs.target_cities:
            targets = {normalize_city(c) for c in prefs.target_cities if c}
            if normalize_city(job.city) not in targets:
                return False

        if constraints.enforce_category:
            if not self.category_mapper.prefers_all_categories(prefs.career_path):
                wanted = set(self.category_mapper.expand_career_paths(prefs.career_path)) - {ALL_CATEGORIES}
                if not wanted & set(job.categories or []):
                    return False
            preferred = normalize_work_environment(prefs.work_environment)
            actual = normalize_work_environment(job.work_environment)
            if preferred in WORK_ENVIRONMENTS and actual in WORK_ENVIRONMENTS and preferred != actual:
                return False

        return True

    def score_job(self, job: Job, prefs: UserPreferences, state: RunState) -> MatchResult:
        ai = state.ai_scores.get(job.job_hash)
        semantic = state.semantic_scores.get(job.job_hash)
        if ai is not None:
            reason = ai.reason or self.scorer.score(job, prefs, semantic, state.now).reason
            return MatchResult(
                user_id=prefs.user_id, job=job, match_score=ai.score, match_reason=reason,
                provenance=Provenance.AI_SUCCESS,
            )
        breakdown = self.scorer.score(job, prefs, semantic, state.now)
        return MatchResult(
            user_id=prefs.user_id,
            job=job,
            match_score=breakdown.total,
            match_reason=breakdown.reason,
            provenance=Provenance.SEMANTIC if semantic is not None else Provenance.FALLBACK,
        )

    @staticmethod
    def _method(matches: Iterable[MatchResult]) -> MatchingMethod:
        provenances = {m.provenance for m in matches}
        if Provenance.AI_SUCCESS in provenances:
            return MatchingMethod.AI
        if Provenance.SEMANTIC in provenances:
            return MatchingMethod.SEMANTIC
        return MatchingMethod.RULE_BASED

    async def _load_pool(self, state: RunState) -> List[Job]:
        if self.job_pool is None:
            logger.warning("No job pool configured and no jobs supplied")
            return []
        try:
            return await self.job_pool.fetch_active_jobs(
                since=self.send_config.lookback_start(state.now),
                limit=self.settings.pool_limit,
            )
        except JobMatchBaseException as e:
            logger.error(f"Failed to load job pool: {e.message}")
            return []

    async def _load_semantic_scores(self, prefs: UserPreferences, state: RunState):
        if self.retrieval is None:
            return "skipped", []
        result = await self.retrieval.retrieve(prefs)
        if not result.is_ok:
            logger.info(
                f"Semantic signal {result.status.value} ({result.reason}), using rule-based retrieval",
                extra={"user_id": prefs.user_id},
            )
            return result.status.value, []
        state.semantic_scores = {c.job_hash: c.semantic_score for c in result.candidates if c.job_hash}
        jobs = [
            Job(**c.model_dump(exclude={"semantic_score", "embedding_distance", "embedding"}))
            for c in result.candidates
        ]
        return result.status.value, jobs

    async def _ensure_ai_scores(self, eligible: Sequence[Job], prefs: UserPreferences, state: RunState) -> None:
        pending = [j for j in eligible if j.job_hash not in state.ai_attempted]
        if not pending:
            return
        if not self.reranker_breaker.allow():
            state.ai_failed = True
            logger.info("Reranker circuit is open, using rule-based scoring", extra={"user_id": prefs.user_id})
            return
        pending = self.distributor.rank(pending, prefs.career_path)
        timeout = self.reranker_timeout
        remaining = state.remaining()
        if remaining is not None:
            timeout = min(timeout, max(remaining, 0.0))
        try:
            scored = await asyncio.wait_for(self.reranker.rerank(pending, prefs), timeout=timeout)
        except asyncio.TimeoutError:
            state.ai_failed = True
            self.reranker_breaker.record_failure()
            logger.warning(f"Reranker timed out after {timeout:.1f}s, using rule-based scoring")
            return
        except Exception as e:
            state.ai_failed = True
            self.reranker_breaker.record_failure()
            logger.warning(f"Reranker failed, using rule-based scoring: {e}", extra={"user_id": prefs.user_id})
            return
        self.reranker_breaker.record_success()
        # Jobs beyond the reranker's per-run cap keep rule-based scores
        state.ai_attempted.update(j.job_hash for j in pending)
        scored = list(scored or [])
        accepted = self.accept_ai_scores(scored, {j.job_hash for j in pending})
        if len(accepted) < len(scored):
            logger.warning(
                f"Discarded {len(scored) - len(accepted)} reranker scores for unknown jobs or out of range",
                extra={"user_id": prefs.user_id},
            )
        state.ai_scores.update(accepted)

    @staticmethod
    def accept_ai_scores(scored: Optional[Iterable[ScoredJob]], allowed: Set[str]) -> Dict[str, ScoredJob]:
        """Keep reranker items for requested jobs whose score is a number in [0, 100]."""
        accepted: Dict[str, ScoredJob] = {}
        for item in scored or []:
            job_hash = getattr(item, "job_hash", None)
            if job_hash not in allowed:
                continue
            try:
                score = float(getattr(item, "score", None))
            except (TypeError, ValueError):
                continue
            if not 0.0 <= score <= 100.0:
                continue
            accepted[job_hash] = ScoredJob(job_hash, score, str(getattr(item, "reason", None) or ""))
        return accepted


def build_coordinator(
    job_pool: Optional[JobPool] = None,
    settings: Optional[EngineSettings] = None,
    send_config: Optional[SendConfiguration] = None,
    embed_fn=None,
    reranker: Optional[Reranker] = None,
) -> GuaranteedMatchingCoordinator:
    """Wire the default component graph. Semantic retrieval needs a job pool."""
    settings = settings or EngineSettings()
    send_config = send_config or SendConfiguration()
    mapper = CategoryMapper()
    distributor = JobDistributor(mapper, send_config)

    retrieval = None
    if job_pool is not None:
        embedding = EmbeddingService(job_pool, settings.embedding, embed_fn=embed_fn)
        retrieval = SemanticRetrievalService(job_pool, embedding, mapper, settings.retrieval)
    if reranker is None and settings.reranker.enabled:
        reranker = OllamaReranker(settings.reranker)

    return GuaranteedMatchingCoordinator(
        mapper,
        distributor,
        send_config,
        job_pool=job_pool,
        retrieval=retrieval,
        reranker=reranker,
        settings=settings.matching,
        reranker_timeout=settings.reranker.timeout,
        reranker_breaker=CircuitBreaker(
            "reranker",
            failure_threshold=settings.reranker.breaker_failures,
            cooldown=settings.reranker.breaker_cooldown,
            logger=logger,
        ),
    )


async def compute_matches(
    profile: UserPreferences,
    job_pool: Union[JobPool, Sequence[Job]],
    **kwargs,
) -> MatchComputation:
    """Top-level entry point: matches plus method, level and timing metadata."""
    if isinstance(job_pool, JobPool):
        coordinator = build_coordinator(job_pool=job_pool)
        return await coordinator.compute_matches(profile, **kwargs)
    coordinator = build_coordinator()
    return await coordinator.compute_matches(profile, jobs=list(job_pool), **kwargs)
