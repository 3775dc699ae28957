"""
FastAPI dependency providers. Tests replace these through
``app.dependency_overrides``.
"""
from functools import lru_cache

from jobmatch.models.settings import EngineSettings, load_settings
from jobmatch.services.coordinator import GuaranteedMatchingCoordinator, build_coordinator
from jobmatch.services.db import jobs_coll, matches_coll
from jobmatch.services.embedding import EmbeddingService
from jobmatch.services.job_pool import JobPool, MongoJobPool
from jobmatch.services.match_store import MatchStore
from jobmatch.services.send_configuration import SendConfiguration


@lru_cache
def get_settings() -> EngineSettings:
    return load_settings()


@lru_cache
def get_send_config() -> SendConfiguration:
    return SendConfiguration()


@lru_cache
def get_job_pool() -> JobPool:
    settings = get_settings()
    return MongoJobPool(
        jobs_coll,
        vector_index=settings.retrieval.vector_index,
        num_candidates_factor=settings.retrieval.num_candidates_factor,
    )


def get_embedding_service() -> EmbeddingService:
    return EmbeddingService(get_job_pool(), get_settings().embedding)


@lru_cache
def get_coordinator() -> GuaranteedMatchingCoordinator:
    return build_coordinator(job_pool=get_job_pool(), settings=get_settings(), send_config=get_send_config())


def get_match_store() -> MatchStore:
    return MatchStore(matches_coll, jobs_coll)
