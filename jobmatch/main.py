from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobmatch.middleware.error_handlers import (
    ExceptionHandlerMiddleware,
    PerformanceMiddleware,
    RequestLoggingMiddleware,
)
from jobmatch.routers import embeddings, matches, send_config
from jobmatch.services.db import init_indexes
from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Job matching API starting up...")
    await init_indexes()
    logger.info("Job matching API startup completed")

    yield

    logger.info("Job matching API shut down")


app = FastAPI(title="Job Matching API", version=VERSION, lifespan=lifespan)

# Last added runs first, so the exception handler wraps everything else
app.add_middleware(PerformanceMiddleware, slow_request_threshold=2.0)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(ExceptionHandlerMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
@app.head("/")
async def root():
    return {"message": "Job Matching API", "version": VERSION, "status": "ok"}


@app.get("/health")
@app.head("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


app.include_router(matches.router, prefix="/api/matches", tags=["matches"])
app.include_router(embeddings.router, prefix="/api/embeddings", tags=["embeddings"])
app.include_router(send_config.router, prefix="/api/send-config", tags=["send-config"])

logger.info("Job matching API initialized")
