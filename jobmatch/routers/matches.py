from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from jobmatch.models.models import MatchComputation, UserPreferences
from jobmatch.models.schemas import ComputeMatchesRequest, PreviewMatchesRequest, StoredMatch
from jobmatch.services.coordinator import GuaranteedMatchingCoordinator
from jobmatch.services.db import users_coll
from jobmatch.services.dependencies import get_coordinator, get_match_store
from jobmatch.services.match_store import MatchStore
from jobmatch.utils.exceptions import ExceptionContext, NotFoundError
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger

router = APIRouter()
logger = get_logger(__name__)


async def load_preferences(user_id: str) -> UserPreferences:
    doc = await users_coll.find_one({"user_id": user_id}, {"_id": 0})
    if not doc:
        raise NotFoundError(f"User not found: {user_id}", resource="user", identifier=user_id)
    return UserPreferences(**doc)


@router.post("/users/{user_id}", response_model=MatchComputation)
async def compute_user_matches(
    user_id: str,
    request: Request,
    body: Optional[ComputeMatchesRequest] = None,
    coordinator: GuaranteedMatchingCoordinator = Depends(get_coordinator),
    store: MatchStore = Depends(get_match_store),
):
    """Run matching for a stored user and persist the selected matches"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    body = body or ComputeMatchesRequest()
    logger.info(f"Computing matches for user {user_id}", extra={"request_id": request_id, "user_id": user_id})

    with PerformanceMonitor("compute_user_matches", logger, threshold_ms=5000):
        with ExceptionContext("compute_user_matches", logger, request_id=request_id, user_id=user_id):
            prefs = await load_preferences(user_id)
            result = await coordinator.compute_matches(prefs, target_count=body.target_count)
            if body.persist and result.matches:
                await store.save_matches(user_id, result.matches)

    logger.info(
        f"Returned {len(result.matches)} matches at level {result.metadata.relaxation_level}",
        extra={"request_id": request_id, "user_id": user_id},
    )
    return result


@router.get("/users/{user_id}", response_model=List[StoredMatch])
async def list_user_matches(
    user_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    store: MatchStore = Depends(get_match_store),
):
    """Stored matches for a user, skipping jobs that are no longer active"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    with ExceptionContext("list_user_matches", logger, request_id=request_id, user_id=user_id):
        rows = await store.recent_matches(user_id, limit=limit)
    return [StoredMatch(**row) for row in rows]


@router.post("/preview", response_model=MatchComputation)
async def preview_matches(
    body: PreviewMatchesRequest,
    request: Request,
    coordinator: GuaranteedMatchingCoordinator = Depends(get_coordinator),
):
    """Match ad-hoc preferences, optionally against a supplied job list, without saving"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    with ExceptionContext("preview_matches", logger, request_id=request_id):
        return await coordinator.compute_matches(
            body.preferences, jobs=body.jobs, target_count=body.target_count
        )
