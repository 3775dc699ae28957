"""
Job pool access.

``JobPool`` is the query surface the engine needs from job storage.
``MongoJobPool`` serves it from MongoDB, using Atlas ``$vectorSearch`` for
similarity search; ``InMemoryJobPool`` serves it from a list and does the
cosine math with numpy.
"""
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from pymongo import DESCENDING
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import OperationFailure, PyMongoError

from jobmatch.helpers.text import normalize_city
from jobmatch.models.models import Job
from jobmatch.utils.exceptions import DatabaseError, SemanticSearchUnavailableError
from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)

# Unrecognized pipeline stage, command not supported
CAPABILITY_ERROR_CODES = {40324, 115}


class JobPool(ABC):

    @abstractmethod
    async def fetch_active_jobs(
        self,
        cities: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        ...

    @abstractmethod
    async def count_active_jobs(self, with_embedding: bool = False) -> int:
        ...

    @abstractmethod
    async def jobs_missing_embeddings(self, limit: int = 100) -> List[Job]:
        ...

    @abstractmethod
    async def store_embedding(self, job_hash: str, vector: List[float]) -> bool:
        """Write a vector onto a job. Returns False when no job has that hash."""

    @abstractmethod
    async def similarity_search(
        self,
        vector: List[float],
        threshold: float,
        limit: int,
        cities: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> List[Tuple[Job, float]]:
        """Active jobs with cosine similarity >= threshold, best first, at most ``limit``."""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _doc_to_job(doc: dict) -> Job:
    doc = dict(doc)
    if "_id" in doc:
        doc.setdefault("id", str(doc.pop("_id")))
    return Job(**doc)


def _docs_to_jobs(docs: Iterable[dict]) -> List[Job]:
    """Map documents to jobs, skipping any that cannot be read as a job."""
    jobs = []
    for doc in docs:
        try:
            jobs.append(_doc_to_job(doc))
        except PydanticValidationError as e:
            logger.warning(
                f"Skipping malformed job document {doc.get('job_hash') or doc.get('_id')}: "
                f"{e.error_count()} invalid fields"
            )
    return jobs


def city_variants(cities: Iterable[str]) -> List[str]:
    """Spellings of each city an exact-match filter should accept."""
    variants = []
    for city in cities:
        city = (city or "").strip()
        for variant in (city, city.lower(), city.title(), city.upper()):
            if variant and variant not in variants:
                variants.append(variant)
    return variants


class MongoJobPool(JobPool):
    """Job pool backed by a motor collection."""

    def __init__(self, collection, vector_index: str = "job_embedding_index", num_candidates_factor: int = 10):
        self.collection = collection
        self.vector_index = vector_index
        self.num_candidates_factor = num_candidates_factor

    @staticmethod
    def build_query(cities=None, categories=None, since=None) -> dict:
        query = {"is_active": True}
        if cities:
            query["city"] = {"$in": [re.compile(f"^{re.escape(c.strip())}$", re.IGNORECASE) for c in cities]}
        if categories:
            query["categories"] = {"$in": list(categories)}
        if since:
            query["$or"] = [
                {"original_posted_date": {"$gte": since}},
                {"original_posted_date": None, "created_at": {"$gte": since}},
            ]
        return query

    async def fetch_active_jobs(self, cities=None, categories=None, since=None, limit=None) -> List[Job]:
        query = self.build_query(cities, categories, since)
        try:
            cursor = self.collection.find(query, {"embedding": 0}).sort("created_at", DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to fetch active jobs: {e}", operation="find", collection="jobs", cause=e) from e
        return _docs_to_jobs(docs)

    async def count_active_jobs(self, with_embedding: bool = False) -> int:
        query = {"is_active": True}
        if with_embedding:
            query["embedding"] = {"$exists": True, "$ne": None}
        try:
            return await self.collection.count_documents(query)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to count jobs: {e}", operation="count", collection="jobs", cause=e) from e

    async def jobs_missing_embeddings(self, limit: int = 100) -> List[Job]:
        query = {"is_active": True, "$or": [{"embedding": {"$exists": False}}, {"embedding": None}]}
        try:
            docs = await self.collection.find(query).limit(limit).to_list(length=limit)
        except PyMongoError as e:
            raise DatabaseError(f"Failed to list jobs without embeddings: {e}", operation="find", collection="jobs", cause=e) from e
        return _docs_to_jobs(docs)

    async def store_embedding(self, job_hash: str, vector: List[float]) -> bool:
        try:
            result = await self.collection.update_one(
                {"job_hash": job_hash},
                {"$set": {"embedding": list(vector), "embedding_updated_at": datetime.now(timezone.utc)}},
            )
        except PyMongoError as e:
            raise DatabaseError(
                f"Failed to store embedding for {job_hash}: {e}", operation="update", collection="jobs", cause=e
            ) from e
        return result.matched_count > 0

    async def similarity_search(self, vector, threshold, limit, cities=None, categories=None):
        clauses = [{"is_active": True}]
        if cities:
            clauses.append({"city": {"$in": city_variants(cities)}})
        if categories:
            clauses.append({"categories": {"$in": list(categories)}})

        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.vector_index,
                    "path": "embedding",
                    "queryVector": list(vector),
                    "numCandidates": limit * self.num_candidates_factor,
                    "limit": limit,
                    "filter": {"$and": clauses} if len(clauses) > 1 else clauses[0],
                }
            },
            {"$project": {"embedding": 0, "score": {"$meta": "vectorSearchScore"}}},
        ]
        try:
            docs = await self.collection.aggregate(pipeline).to_list(length=limit)
        except OperationFailure as e:
            if e.code in CAPABILITY_ERROR_CODES or "vectorsearch" in str(e).lower():
                raise SemanticSearchUnavailableError(cause=e, details={"index": self.vector_index}) from e
            raise DatabaseError(f"Vector search failed: {e}", operation="aggregate", collection="jobs", cause=e) from e
        except PyMongoError as e:
            raise DatabaseError(f"Vector search failed: {e}", operation="aggregate", collection="jobs", cause=e) from e

        wanted_cities = {normalize_city(c) for c in cities or []}
        results = []
        for doc in docs:
            # Atlas reports cosine as (1 + cos) / 2
            similarity = 2.0 * float(doc.pop("score", 0.0)) - 1.0
            if similarity < threshold:
                continue
            if wanted_cities and normalize_city(doc.get("city")) not in wanted_cities:
                continue
            results.extend((job, similarity) for job in _docs_to_jobs([doc]))
        logger.debug(f"Vector search kept {len(results)} of {len(docs)} hits at threshold {threshold}")
        return results


class InMemoryJobPool(JobPool):
    """List-backed pool for local runs and tests."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self.jobs = {}
        self._anonymous = []
        for job in jobs:
            if job.job_hash:
                self.jobs[job.job_hash] = job
            else:
                self._anonymous.append(job)

    def all_jobs(self) -> List[Job]:
        return list(self.jobs.values()) + list(self._anonymous)

    async def fetch_active_jobs(self, cities=None, categories=None, since=None, limit=None):
        wanted_cities = {normalize_city(c) for c in cities or []}
        wanted_categories = set(categories or [])
        since = _as_utc(since)
        out = []
        for job in self.all_jobs():
            if not job.is_active:
                continue
            if wanted_cities and normalize_city(job.city) not in wanted_cities:
                continue
            if wanted_categories and not wanted_categories & set(job.categories):
                continue
            if since and (job.posted_at() is None or _as_utc(job.posted_at()) < since):
                continue
            out.append(job)
        out.sort(key=lambda j: _as_utc(j.created_at) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return out[:limit] if limit else out

    async def count_active_jobs(self, with_embedding: bool = False) -> int:
        return sum(
            1 for job in self.all_jobs()
            if job.is_active and (not with_embedding or job.embedding)
        )

    async def jobs_missing_embeddings(self, limit: int = 100) -> List[Job]:
        return [j for j in self.all_jobs() if j.is_active and not j.embedding][:limit]

    async def store_embedding(self, job_hash: str, vector: List[float]) -> bool:
        job = self.jobs.get(job_hash)
        if job is None:
            return False
        self.jobs[job_hash] = job.model_copy(update={"embedding": list(vector)})
        return True

    async def similarity_search(self, vector, threshold, limit, cities=None, categories=None):
        candidates = await self.fetch_active_jobs(cities=cities, categories=categories)
        candidates = [j for j in candidates if j.embedding and len(j.embedding) == len(vector)]
        if not candidates:
            logger.debug("No embedded jobs match the similarity filters")
            return []

        matrix = np.asarray([j.embedding for j in candidates], dtype=np.float64)
        query = np.asarray(vector, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        order = np.argsort(-scores, kind="stable")
        results = []
        for idx in order:
            score = float(scores[idx])
            if score < threshold:
                break
            results.append((candidates[idx], score))
            if len(results) >= limit:
                break
        return results
