import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobmatch.models.settings import RerankerSettings
from jobmatch.services.reranker import OllamaReranker, build_rerank_prompt, parse_rerank_response
from jobmatch.utils.exceptions import ExternalServiceError, RerankerError


def response_for(jobs, score=80):
    return json.dumps({"matches": [{"job_hash": j.job_hash, "score": score, "reason": "Good fit"} for j in jobs]})


class TestPrompt:

    def test_prompt_lists_every_job(self, make_job, berlin_finance_user):
        """Each job hash appears in the prompt with the profile summary"""
        jobs = [make_job(), make_job()]
        prompt = build_rerank_prompt(jobs, berlin_finance_user)
        for job in jobs:
            assert f"job_hash: {job.job_hash}" in prompt
        assert "Career: finance-investment" in prompt


class TestParsing:

    def test_valid_response(self, make_job):
        jobs = [make_job(), make_job()]
        scored = parse_rerank_response(response_for(jobs, 77), jobs)
        assert {s.job_hash for s in scored} == {j.job_hash for j in jobs}
        assert all(s.score == 77 for s in scored)

    def test_accepts_bare_list_with_chatter(self, make_job):
        """JSON embedded in surrounding text is still found"""
        job = make_job()
        raw = f'Here you go: [{{"job_hash": "{job.job_hash}", "score": 55, "reason": "ok"}}] thanks'
        assert parse_rerank_response(raw, [job])[0].score == 55

    def test_unknown_hashes_and_bad_scores_dropped(self, make_job):
        """Hallucinated hashes and out-of-range scores are ignored"""
        job = make_job()
        raw = json.dumps({"matches": [
            {"job_hash": "made-up", "score": 90},
            {"job_hash": job.job_hash, "score": 140},
            {"job_hash": job.job_hash, "score": "n/a"},
        ]})
        with pytest.raises(RerankerError):
            parse_rerank_response(raw, [job])

    def test_non_json_rejected(self, make_job):
        with pytest.raises(RerankerError):
            parse_rerank_response("I cannot help with that", [make_job()])


class TestOllamaReranker:

    @pytest.mark.asyncio
    async def test_batches_and_sorts(self, make_job, berlin_finance_user):
        """Jobs are scored in batches and returned best first"""
        jobs = [make_job() for _ in range(5)]
        scores = {jobs[0].job_hash: 40, jobs[1].job_hash: 90, jobs[2].job_hash: 70, jobs[3].job_hash: 10, jobs[4].job_hash: 60}

        def generate(prompt):
            batch = [j for j in jobs if f"job_hash: {j.job_hash} " in prompt]
            return json.dumps({"matches": [{"job_hash": j.job_hash, "score": scores[j.job_hash]} for j in batch]})

        generate_fn = MagicMock(side_effect=generate)
        sleep = AsyncMock()
        reranker = OllamaReranker(RerankerSettings(batch_size=2, batch_delay=0.25, max_retries=1), generate_fn, sleep)

        result = await reranker.rerank(jobs, berlin_finance_user)

        assert [s.score for s in result] == [90, 70, 60, 40, 10]
        assert generate_fn.call_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_max_jobs_caps_work(self, make_job, berlin_finance_user):
        """Only the first max_jobs candidates are sent"""
        jobs = [make_job() for _ in range(6)]
        generate_fn = MagicMock(side_effect=lambda prompt: response_for(jobs))
        reranker = OllamaReranker(RerankerSettings(batch_size=10, max_jobs=4, max_retries=1), generate_fn, AsyncMock())

        result = await reranker.rerank(jobs, berlin_finance_user)

        assert len(result) == 4
        assert generate_fn.call_count == 1

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_calls(self, berlin_finance_user):
        generate_fn = MagicMock()
        reranker = OllamaReranker(RerankerSettings(), generate_fn, AsyncMock())
        assert await reranker.rerank([], berlin_finance_user) == []
        generate_fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_model_raises_reranker_error(self, make_job, berlin_finance_user):
        """Transport failures surface as RerankerError"""
        generate_fn = MagicMock(side_effect=ExternalServiceError("connection refused", service_name="ollama"))
        reranker = OllamaReranker(RerankerSettings(max_retries=1), generate_fn, AsyncMock())

        with pytest.raises(RerankerError) as exc_info:
            await reranker.rerank([make_job()], berlin_finance_user)
        assert exc_info.value.details["batch_index"] == 0

    @pytest.mark.asyncio
    async def test_garbage_output_raises(self, make_job, berlin_finance_user):
        generate_fn = MagicMock(return_value="not json")
        reranker = OllamaReranker(RerankerSettings(max_retries=1), generate_fn, AsyncMock())

        with pytest.raises(RerankerError):
            await reranker.rerank([make_job()], berlin_finance_user)
