import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobmatch.models.models import MatchingMethod, Provenance, SemanticJob
from jobmatch.models.settings import MatchingSettings
from jobmatch.services.coordinator import (
    EXHAUSTED,
    LADDER,
    GuaranteedMatchingCoordinator,
    RelaxationLevel,
    compute_matches,
    constraints_for,
)
from jobmatch.services.job_pool import InMemoryJobPool, MongoJobPool
from jobmatch.services.reranker import ScoredJob
from jobmatch.services.semantic_retrieval import RetrievalResult
from jobmatch.utils.exceptions import CircuitBreaker, DatabaseError


@pytest.fixture
def coordinator(mapper, distributor, send_config):
    return GuaranteedMatchingCoordinator(mapper, distributor, send_config)


@pytest.fixture
def analyst_user(berlin_finance_user):
    return berlin_finance_user.model_copy(update={"roles_selected": ["Analyst"]})


def munich(make_job, **overrides):
    return make_job(city="Munich", location="Munich, Germany", **overrides)


def hashes(matches):
    return [m.job.job_hash for m in matches]


class TestLadder:

    def test_ladder_order(self):
        assert [level.value for level in LADDER] == [
            "strict", "city_relaxed", "category_relaxed", "score_relaxed", "fully_relaxed",
        ]

    def test_each_level_drops_something(self):
        """Every relaxed level enforces no more than strict does"""
        strict = constraints_for(RelaxationLevel.STRICT, 65, 40)
        assert strict.enforce_city and strict.enforce_category and strict.min_score == 65
        assert not constraints_for(RelaxationLevel.CITY_RELAXED, 65, 40).enforce_city
        assert not constraints_for(RelaxationLevel.CATEGORY_RELAXED, 65, 40).enforce_category
        assert constraints_for(RelaxationLevel.SCORE_RELAXED, 65, 40).min_score == 40
        fully = constraints_for(RelaxationLevel.FULLY_RELAXED, 65, 40)
        assert not fully.enforce_city and not fully.enforce_category and fully.min_score is None


class TestRelaxationScenarios:

    @pytest.mark.asyncio
    async def test_strict_is_enough(self, coordinator, make_job, berlin_finance_user, now):
        """Five strong local matches stop at strict"""
        jobs = [make_job() for _ in range(5)]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert result.metadata.relaxation_level == "strict"
        assert len(result.matches) == 5
        assert all(m.match_score == 72.5 for m in result.matches)
        assert all(m.provenance == Provenance.FALLBACK for m in result.matches)
        assert result.metadata.matching_method == MatchingMethod.RULE_BASED
        assert len(result.metadata.attempts) == 1

    @pytest.mark.asyncio
    async def test_city_relaxed(self, coordinator, make_job, analyst_user, now):
        """Strong matches in other cities fill the gap"""
        jobs = [make_job() for _ in range(2)] + [munich(make_job) for _ in range(4)]

        result = await coordinator.compute_matches(analyst_user, jobs, now=now)

        assert result.metadata.relaxation_level == "city_relaxed"
        assert len(result.matches) == 5
        assert [a.selected_count for a in result.metadata.attempts] == [2, 5]

    @pytest.mark.asyncio
    async def test_category_relaxed(self, coordinator, make_job, analyst_user, now):
        """Local jobs outside the career path come in third"""
        jobs = [make_job() for _ in range(2)] + [make_job(categories=["marketing-growth"]) for _ in range(4)]

        result = await coordinator.compute_matches(analyst_user, jobs, now=now)

        assert result.metadata.relaxation_level == "category_relaxed"
        assert len(result.matches) == 5

    @pytest.mark.asyncio
    async def test_score_relaxed(self, coordinator, make_job, berlin_finance_user, now):
        """Weak but local, in-path jobs pass once the floor drops"""
        prefs = berlin_finance_user.model_copy(update={"roles_selected": ["Accountant"]})
        jobs = [make_job(is_early_career=False, created_at=now - timedelta(days=20)) for _ in range(5)]

        result = await coordinator.compute_matches(prefs, jobs, now=now)

        assert result.metadata.relaxation_level == "score_relaxed"
        assert all(m.match_score == 47 for m in result.matches)

    @pytest.mark.asyncio
    async def test_fully_relaxed(self, coordinator, make_job, berlin_finance_user, now):
        """Nothing local or in-path still yields a full send"""
        jobs = [munich(make_job, categories=["marketing-growth"]) for _ in range(10)]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert result.metadata.relaxation_level == "fully_relaxed"
        assert len(result.matches) == 5

    @pytest.mark.asyncio
    async def test_exhausted_returns_what_exists(self, coordinator, make_job, berlin_finance_user, now):
        """A pool smaller than the target ends exhausted with every valid job"""
        jobs = [make_job(), munich(make_job), make_job(is_active=False), make_job(title="")]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert result.metadata.relaxation_level == EXHAUSTED
        assert len(result.matches) == 2
        assert len(result.metadata.attempts) == len(LADDER)

    @pytest.mark.asyncio
    async def test_inactive_never_selected(self, coordinator, make_job, berlin_finance_user, now):
        inactive = [make_job(is_active=False) for _ in range(5)]
        active = [munich(make_job, categories=["marketing-growth"]) for _ in range(5)]

        result = await coordinator.compute_matches(berlin_finance_user, inactive + active, now=now)

        assert set(hashes(result.matches)) == {j.job_hash for j in active}

    @pytest.mark.asyncio
    async def test_target_defaults_to_tier(self, coordinator, make_job, berlin_finance_user, now):
        jobs = [make_job() for _ in range(8)]
        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)
        assert result.metadata.target_count == 5
        assert len(result.matches) == 5

    @pytest.mark.asyncio
    async def test_work_environment_mismatch_relaxes(self, coordinator, make_job, berlin_finance_user, now):
        """An explicit on-site job fails strict for a remote-only user"""
        prefs = berlin_finance_user.model_copy(update={"work_environment": "remote"})
        jobs = [make_job(work_environment="on-site")] + [make_job(work_environment=None) for _ in range(4)]

        result = await coordinator.compute_matches(prefs, jobs, target_count=4, now=now)

        assert result.metadata.relaxation_level == "strict"
        assert jobs[0].job_hash not in hashes(result.matches)

    @pytest.mark.asyncio
    async def test_runs_are_idempotent(self, coordinator, make_job, berlin_finance_user, now):
        """Same inputs, same output"""
        jobs = [make_job(categories=["finance-investment", "data-analytics"]) for _ in range(3)]
        jobs += [munich(make_job) for _ in range(4)]

        first = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)
        second = await coordinator.compute_matches(berlin_finance_user, list(reversed(jobs)), now=now)

        assert hashes(first.matches) == hashes(second.matches)
        assert [m.match_score for m in first.matches] == [m.match_score for m in second.matches]
        assert first.metadata.relaxation_level == second.metadata.relaxation_level


class TestSignals:

    @pytest.mark.asyncio
    async def test_reranker_failure_falls_back_once(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """A failing reranker is tried once per run and never surfaces"""
        reranker = AsyncMock()
        reranker.rerank.side_effect = RuntimeError("model offline")
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, reranker=reranker)
        jobs = [munich(make_job, categories=["marketing-growth"]) for _ in range(10)]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert reranker.rerank.await_count == 1
        assert result.metadata.matching_method == MatchingMethod.RULE_BASED
        assert result.metadata.relaxation_level == "fully_relaxed"
        assert len(result.matches) == 5

    @pytest.mark.asyncio
    async def test_reranker_success_sets_ai(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """AI scores replace rule-based ones and mark the run as ai"""

        async def rerank(jobs, prefs):
            return [ScoredJob(job.job_hash, 91.0, "Excellent fit") for job in jobs]

        reranker = AsyncMock()
        reranker.rerank.side_effect = rerank
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, reranker=reranker)

        result = await coordinator.compute_matches(berlin_finance_user, [make_job() for _ in range(5)], now=now)

        assert result.metadata.matching_method == MatchingMethod.AI
        assert all(m.provenance == Provenance.AI_SUCCESS for m in result.matches)
        assert all(m.match_score == 91.0 and m.match_reason == "Excellent fit" for m in result.matches)

    @pytest.mark.asyncio
    async def test_semantic_scores_blend(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """Semantic candidates are blended into rule-based scores"""
        jobs = [make_job() for _ in range(5)]
        retrieval = AsyncMock()
        retrieval.retrieve.return_value = RetrievalResult.ok([
            SemanticJob(**jobs[0].model_dump(), semantic_score=0.9, embedding_distance=0.1)
        ])
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, retrieval=retrieval)

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        by_hash = {m.job.job_hash: m for m in result.matches}
        assert by_hash[jobs[0].job_hash].provenance == Provenance.SEMANTIC
        assert by_hash[jobs[0].job_hash].match_score == pytest.approx(0.7 * 72.5 + 0.3 * 90)
        assert by_hash[jobs[1].job_hash].provenance == Provenance.FALLBACK
        assert result.metadata.matching_method == MatchingMethod.SEMANTIC
        assert result.metadata.semantic_status == "ok"

    @pytest.mark.asyncio
    async def test_semantic_unavailable_is_reported(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        retrieval = AsyncMock()
        retrieval.retrieve.return_value = RetrievalResult.unavailable("no job embeddings")
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, retrieval=retrieval)

        result = await coordinator.compute_matches(berlin_finance_user, [make_job() for _ in range(5)], now=now)

        assert result.metadata.semantic_status == "unavailable"
        assert result.metadata.matching_method == MatchingMethod.RULE_BASED
        assert len(result.matches) == 5


class TestPoolAndDeadline:

    @pytest.mark.asyncio
    async def test_pool_is_fetched_when_jobs_omitted(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """Jobs outside the lookback window are not considered"""
        fresh = [make_job() for _ in range(5)]
        stale = make_job(created_at=now - timedelta(days=45))
        pool = InMemoryJobPool(fresh + [stale])
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, job_pool=pool)

        result = await coordinator.compute_matches(berlin_finance_user, now=now)

        assert result.metadata.pool_size == 5
        assert stale.job_hash not in hashes(result.matches)
        assert result.metadata.relaxation_level == "strict"

    @pytest.mark.asyncio
    async def test_pool_errors_give_empty_result(self, mapper, distributor, send_config, berlin_finance_user, now):
        """A failing store yields zero matches, not an exception"""
        pool = AsyncMock()
        pool.fetch_active_jobs.side_effect = DatabaseError("connection refused")
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, job_pool=pool)

        result = await coordinator.compute_matches(berlin_finance_user, now=now)

        assert result.matches == []
        assert result.metadata.relaxation_level == EXHAUSTED

    @pytest.mark.asyncio
    async def test_deadline_stops_the_ladder(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """Once the deadline passes the best result so far is returned"""
        coordinator = GuaranteedMatchingCoordinator(
            mapper, distributor, send_config, settings=MatchingSettings(deadline_seconds=1e-9)
        )
        jobs = [make_job(), make_job()]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert result.metadata.deadline_exceeded is True
        assert result.metadata.relaxation_level == "strict"
        assert len(result.metadata.attempts) == 1
        assert len(result.matches) == 2

    @pytest.mark.asyncio
    async def test_module_entry_point(self, make_job, berlin_finance_user, now):
        """The top-level helper accepts a plain list of jobs"""
        result = await compute_matches(berlin_finance_user, [make_job() for _ in range(6)], now=now)
        assert len(result.matches) == 5
        assert result.metadata.relaxation_level == "strict"


class TestRobustness:

    @pytest.mark.asyncio
    async def test_null_fields_in_stored_jobs(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """A stored job with null categories and flags does not stop the run"""
        docs = [dict(make_job().model_dump(), _id=f"oid-{i}") for i in range(5)]
        docs.append(dict(make_job().model_dump(), _id="oid-null", categories=None, is_internship=None))
        collection = MagicMock()
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=docs)
        coordinator = GuaranteedMatchingCoordinator(
            mapper, distributor, send_config, job_pool=MongoJobPool(collection)
        )

        result = await coordinator.compute_matches(berlin_finance_user, now=now)

        assert result.metadata.pool_size == 6
        assert result.metadata.relaxation_level == "strict"
        assert len(result.matches) == 5

    @pytest.mark.asyncio
    async def test_repeated_jobs_matched_once(self, coordinator, make_job, berlin_finance_user, now):
        job = make_job()

        result = await coordinator.compute_matches(berlin_finance_user, [job, job, job], now=now)

        assert hashes(result.matches) == [job.job_hash]
        assert result.metadata.relaxation_level == EXHAUSTED

    @pytest.mark.asyncio
    async def test_unusable_reranker_scores_are_dropped(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """Out-of-range, non-numeric and unknown-job scores fall back to rule-based scoring"""
        jobs = [make_job() for _ in range(5)]

        async def rerank(batch, prefs):
            return [
                ScoredJob(batch[0].job_hash, 120.0, "Too good"),
                ScoredJob(batch[1].job_hash, "high", "Not a number"),
                ScoredJob("job-unknown", 90.0, "Never sent"),
                ScoredJob(batch[2].job_hash, 88.0, "Great fit"),
            ]

        reranker = AsyncMock()
        reranker.rerank.side_effect = rerank
        coordinator = GuaranteedMatchingCoordinator(mapper, distributor, send_config, reranker=reranker)

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert len(result.matches) == 5
        assert "job-unknown" not in hashes(result.matches)
        ai = [m for m in result.matches if m.provenance == Provenance.AI_SUCCESS]
        assert [(m.job.job_hash, m.match_score, m.match_reason) for m in ai] == [
            (jobs[2].job_hash, 88.0, "Great fit")
        ]
        assert all(m.match_score == 72.5 for m in result.matches if m.provenance == Provenance.FALLBACK)
        assert result.metadata.matching_method == MatchingMethod.AI

    def test_accept_ai_scores(self):
        accepted = GuaranteedMatchingCoordinator.accept_ai_scores(
            [ScoredJob("a", 0.0, ""), ScoredJob("b", 100.0, "top"), ScoredJob("c", -1.0, ""), ScoredJob("d", 50, "x")],
            {"a", "b", "c"},
        )
        assert sorted(accepted) == ["a", "b"]
        assert accepted["b"].score == 100.0

    @pytest.mark.asyncio
    async def test_two_city_user_gets_both_cities(self, coordinator, make_job, berlin_finance_user, now):
        """Target cities share the send even when one city's jobs rank higher"""
        prefs = berlin_finance_user.model_copy(update={"target_cities": ["Berlin", "Munich"]})
        jobs = [make_job(description="Detailed description " * 10) for _ in range(6)]
        jobs += [munich(make_job) for _ in range(3)]

        result = await coordinator.compute_matches(prefs, jobs, now=now)

        cities = [m.job.city for m in result.matches]
        assert result.metadata.relaxation_level == "strict"
        assert cities.count("Berlin") == 3
        assert cities.count("Munich") == 2


class TestRerankerCircuit:

    @pytest.mark.asyncio
    async def test_open_circuit_skips_the_reranker(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        """Repeated failures stop reranker calls until the cooldown passes"""
        clock = [0.0]
        breaker = CircuitBreaker("reranker", failure_threshold=2, cooldown=60, clock=lambda: clock[0])
        reranker = AsyncMock()
        reranker.rerank.side_effect = RuntimeError("model offline")
        coordinator = GuaranteedMatchingCoordinator(
            mapper, distributor, send_config, reranker=reranker, reranker_breaker=breaker
        )
        jobs = [make_job() for _ in range(5)]

        for _ in range(3):
            result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)
            assert len(result.matches) == 5
            assert result.metadata.matching_method == MatchingMethod.RULE_BASED

        assert reranker.rerank.await_count == 2
        assert breaker.state == CircuitBreaker.OPEN

        clock[0] = 61.0
        reranker.rerank.side_effect = None
        reranker.rerank.return_value = [ScoredJob(jobs[0].job_hash, 90.0, "Back online")]

        result = await coordinator.compute_matches(berlin_finance_user, jobs, now=now)

        assert reranker.rerank.await_count == 3
        assert result.metadata.matching_method == MatchingMethod.AI
        assert breaker.state == CircuitBreaker.CLOSED

    @pytest.mark.asyncio
    async def test_timeouts_count_as_failures(self, mapper, distributor, send_config, make_job, berlin_finance_user, now):
        breaker = CircuitBreaker("reranker", failure_threshold=1, cooldown=60, clock=lambda: 0.0)

        async def slow(batch, prefs):
            await asyncio.sleep(1)
            return []

        reranker = AsyncMock()
        reranker.rerank.side_effect = slow
        coordinator = GuaranteedMatchingCoordinator(
            mapper, distributor, send_config, reranker=reranker, reranker_timeout=0.01, reranker_breaker=breaker
        )

        result = await coordinator.compute_matches(berlin_finance_user, [make_job() for _ in range(5)], now=now)

        assert len(result.matches) == 5
        assert breaker.state == CircuitBreaker.OPEN
