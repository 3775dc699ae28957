from typing import Optional

from fastapi import APIRouter, Depends, Request

from jobmatch.models.schemas import BackfillRequest, BackfillResponse, CoverageResponse
from jobmatch.services.dependencies import get_embedding_service
from jobmatch.services.embedding import EmbeddingService
from jobmatch.utils.exceptions import ExceptionContext
from jobmatch.utils.logging_config import PerformanceMonitor, get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/coverage", response_model=CoverageResponse)
async def embedding_coverage(request: Request, service: EmbeddingService = Depends(get_embedding_service)):
    request_id = getattr(request.state, 'request_id', 'unknown')
    with ExceptionContext("embedding_coverage", logger, request_id=request_id):
        report = await service.check_embedding_coverage()
    return CoverageResponse(
        total_active=report.total_active,
        with_embedding=report.with_embedding,
        coverage=round(report.coverage, 4),
    )


@router.post("/backfill", response_model=BackfillResponse)
async def backfill_embeddings(
    request: Request,
    body: Optional[BackfillRequest] = None,
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Embed and store active jobs that have no vector yet"""
    request_id = getattr(request.state, 'request_id', 'unknown')
    body = body or BackfillRequest()
    logger.info(f"Starting embedding backfill (limit={body.limit})", extra={"request_id": request_id})

    with PerformanceMonitor("embedding_backfill", logger, threshold_ms=60000):
        with ExceptionContext("embedding_backfill", logger, request_id=request_id):
            report = await service.backfill_missing_embeddings(limit=body.limit)

    return BackfillResponse(**vars(report))
