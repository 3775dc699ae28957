from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from jobmatch.services.job_pool import InMemoryJobPool, MongoJobPool
from jobmatch.utils.exceptions import DatabaseError, SemanticSearchUnavailableError


def job_doc(job_hash, **extra):
    return {"_id": f"oid-{job_hash}", "job_hash": job_hash, "title": "Analyst", "company": "Acme", **extra}


@pytest.fixture
def collection():
    return MagicMock()


class TestMongoJobPool:

    def test_build_query(self, now):
        """Cities match case-insensitively and dates fall back to created_at"""
        query = MongoJobPool.build_query(cities=["Berlin "], categories=["finance-investment"], since=now)
        assert query["is_active"] is True
        assert query["city"]["$in"][0].match("berlin")
        assert query["categories"] == {"$in": ["finance-investment"]}
        assert query["$or"][1] == {"original_posted_date": None, "created_at": {"$gte": now}}

    @pytest.mark.asyncio
    async def test_fetch_maps_documents(self, collection):
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[job_doc("h1", city="Berlin")])

        jobs = await MongoJobPool(collection).fetch_active_jobs(cities=["Berlin"], limit=10)

        assert jobs[0].id == "oid-h1"
        assert jobs[0].job_hash == "h1"

    @pytest.mark.asyncio
    async def test_fetch_errors_wrapped(self, collection):
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))

        with pytest.raises(DatabaseError):
            await MongoJobPool(collection).fetch_active_jobs(limit=10)

    @pytest.mark.asyncio
    async def test_store_embedding_reports_missing_job(self, collection):
        collection.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
        assert await MongoJobPool(collection).store_embedding("nope", [0.1]) is False

    @pytest.mark.asyncio
    async def test_vector_search_converts_scores(self, collection):
        """Atlas scores map back to cosine before the threshold applies"""
        collection.aggregate.return_value.to_list = AsyncMock(return_value=[
            job_doc("h1", city="Berlin", score=0.9),
            job_doc("h2", city="berlin", score=0.85),
            job_doc("h3", city="Berlin", score=0.8),
            job_doc("h4", city="Hamburg", score=0.95),
        ])
        pool = MongoJobPool(collection, vector_index="idx", num_candidates_factor=5)

        rows = await pool.similarity_search([0.1, 0.2], threshold=0.65, limit=10, cities=["Berlin"])

        assert [(job.job_hash, round(score, 3)) for job, score in rows] == [("h1", 0.8), ("h2", 0.7)]
        stage = collection.aggregate.call_args.args[0][0]["$vectorSearch"]
        assert stage["index"] == "idx"
        assert stage["numCandidates"] == 50
        assert stage["filter"] == {"$and": [{"is_active": True}, {"city": {"$in": ["Berlin", "berlin", "BERLIN"]}}]}

    @pytest.mark.asyncio
    async def test_missing_vector_capability(self, collection):
        collection.aggregate.return_value.to_list = AsyncMock(
            side_effect=OperationFailure("Unrecognized pipeline stage name: '$vectorSearch'", code=40324)
        )
        with pytest.raises(SemanticSearchUnavailableError):
            await MongoJobPool(collection).similarity_search([0.1], threshold=0.5, limit=5)

    @pytest.mark.asyncio
    async def test_other_operation_failures_are_database_errors(self, collection):
        collection.aggregate.return_value.to_list = AsyncMock(
            side_effect=OperationFailure("not authorized on jobs", code=13)
        )
        with pytest.raises(DatabaseError) as exc_info:
            await MongoJobPool(collection).similarity_search([0.1], threshold=0.5, limit=5)
        assert not isinstance(exc_info.value, SemanticSearchUnavailableError)


class TestInMemoryJobPool:

    @pytest.mark.asyncio
    async def test_fetch_filters(self, make_job, now):
        """City, category, activity and lookback filters all apply"""
        keep = make_job(city="berlin")
        jobs = [
            keep,
            make_job(city="Munich"),
            make_job(categories=["marketing-growth"]),
            make_job(is_active=False),
            make_job(created_at=now - timedelta(days=60)),
        ]
        pool = InMemoryJobPool(jobs)

        result = await pool.fetch_active_jobs(
            cities=["Berlin"], categories=["finance-investment"], since=now - timedelta(days=30)
        )

        assert result == [keep]

    @pytest.mark.asyncio
    async def test_fetch_newest_first_with_limit(self, make_job, now):
        old = make_job(created_at=now - timedelta(days=5))
        new = make_job(created_at=now)
        pool = InMemoryJobPool([old, new])
        assert await pool.fetch_active_jobs(limit=1) == [new]

    @pytest.mark.asyncio
    async def test_similarity_ignores_mismatched_dimensions(self, make_job):
        good = make_job(embedding=[1.0, 0.0])
        odd = make_job(embedding=[1.0, 0.0, 0.0])
        zero = make_job(embedding=[0.0, 0.0])
        pool = InMemoryJobPool([good, odd, zero])

        rows = await pool.similarity_search([2.0, 0.0], threshold=0.0, limit=10)

        assert [(job.job_hash, score) for job, score in rows] == [(good.job_hash, 1.0), (zero.job_hash, 0.0)]

    @pytest.mark.asyncio
    async def test_store_embedding(self, make_job):
        job = make_job()
        pool = InMemoryJobPool([job])
        assert await pool.store_embedding(job.job_hash, [0.5, 0.5]) is True
        assert await pool.count_active_jobs(with_embedding=True) == 1
        assert await pool.store_embedding("missing", [0.5]) is False


class TestMalformedDocuments:

    @pytest.mark.asyncio
    async def test_null_fields_are_read_as_empty(self, collection):
        """Null categories and flags do not stop a fetch"""
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[
            job_doc("h1", categories=None, is_internship=None, is_early_career=None),
            job_doc("h2", categories=["finance-investment", None]),
        ])

        jobs = await MongoJobPool(collection).fetch_active_jobs(limit=10)

        assert [job.job_hash for job in jobs] == ["h1", "h2"]
        assert jobs[0].categories == []
        assert jobs[0].is_internship is False
        assert jobs[1].categories == ["finance-investment"]

    @pytest.mark.asyncio
    async def test_unreadable_documents_are_skipped(self, collection):
        collection.find.return_value.limit.return_value.to_list = AsyncMock(return_value=[
            job_doc("h1", categories="finance-investment"),
            job_doc("h2", created_at="not a date"),
            job_doc("h3"),
        ])

        jobs = await MongoJobPool(collection).jobs_missing_embeddings(limit=10)

        assert [job.job_hash for job in jobs] == ["h3"]

    @pytest.mark.asyncio
    async def test_null_active_flag_means_inactive(self, collection):
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[job_doc("h1", is_active=None)])

        jobs = await MongoJobPool(collection).fetch_active_jobs(limit=10)

        assert jobs[0].is_active is False
