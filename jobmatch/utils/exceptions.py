"""
Exception hierarchy for the job matching engine
"""
import asyncio
import functools
import inspect
import time
from random import uniform
from typing import Any, Callable, Dict, Optional, Tuple, Type

from fastapi import HTTPException


class JobMatchBaseException(Exception):
    """Base exception for the matching engine"""

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Dict[str, Any] = None,
        cause: Exception = None
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for logs and error responses"""
        result = {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }
        if self.cause:
            result["cause"] = str(self.cause)
        return result


class ValidationError(JobMatchBaseException):
    """Invalid input such as an unknown tier or malformed preferences"""

    def __init__(self, message: str, field: str = None, value: Any = None, **kwargs):
        details = kwargs.pop('details', {})
        if field:
            details['field'] = field
        if value is not None:
            details['invalid_value'] = str(value)
        super().__init__(message, error_code="VALIDATION_ERROR", details=details, **kwargs)


class NotFoundError(JobMatchBaseException):
    """A requested user or record does not exist"""

    def __init__(self, message: str, resource: str = None, identifier: str = None, **kwargs):
        details = kwargs.pop('details', {})
        if resource:
            details['resource'] = resource
        if identifier:
            details['identifier'] = identifier
        super().__init__(message, error_code="NOT_FOUND", details=details, **kwargs)


class DatabaseError(JobMatchBaseException):
    """Job pool or match store operation failed"""

    def __init__(self, message: str, operation: str = None, collection: str = None, **kwargs):
        details = kwargs.pop('details', {})
        if operation:
            details['operation'] = operation
        if collection:
            details['collection'] = collection
        super().__init__(message, error_code="DATABASE_ERROR", details=details, **kwargs)


class SemanticSearchUnavailableError(DatabaseError):
    """The store has no vector similarity capability (missing index or operator)"""

    def __init__(self, message: str = "Vector similarity search is not available", **kwargs):
        super().__init__(message, operation="similarity_search", **kwargs)
        self.error_code = "SEMANTIC_SEARCH_UNAVAILABLE"


class EmbeddingError(JobMatchBaseException):
    """Embedding model request failed or returned an unusable vector"""

    def __init__(self, message: str, model_name: str = None, item_id: str = None, **kwargs):
        details = kwargs.pop('details', {})
        if model_name:
            details['model_name'] = model_name
        if item_id:
            details['item_id'] = item_id
        super().__init__(message, error_code="EMBEDDING_ERROR", details=details, **kwargs)


class RerankerError(JobMatchBaseException):
    """LLM reranker unreachable or produced invalid output"""

    def __init__(self, message: str, model_name: str = None, batch_index: int = None, **kwargs):
        details = kwargs.pop('details', {})
        if model_name:
            details['model_name'] = model_name
        if batch_index is not None:
            details['batch_index'] = batch_index
        super().__init__(message, error_code="RERANKER_ERROR", details=details, **kwargs)


class ProcessingError(JobMatchBaseException):
    """A matching run or backfill failed unexpectedly"""

    def __init__(self, message: str, stage: str = None, user_id: str = None, **kwargs):
        details = kwargs.pop('details', {})
        if stage:
            details['stage'] = stage
        if user_id:
            details['user_id'] = user_id
        super().__init__(message, error_code="PROCESSING_ERROR", details=details, **kwargs)


class ConfigurationError(JobMatchBaseException):
    """Settings are invalid or missing"""

    def __init__(self, message: str, config_key: str = None, config_value: Any = None, **kwargs):
        details = kwargs.pop('details', {})
        if config_key:
            details['config_key'] = config_key
        if config_value is not None:
            details['config_value'] = str(config_value)
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details, **kwargs)


class ExternalServiceError(JobMatchBaseException):
    """HTTP call to Ollama or another service failed"""

    def __init__(self, message: str, service_name: str = None, status_code: int = None, **kwargs):
        details = kwargs.pop('details', {})
        if service_name:
            details['service_name'] = service_name
        if status_code:
            details['status_code'] = status_code
        super().__init__(message, error_code="EXTERNAL_SERVICE_ERROR", details=details, **kwargs)


STATUS_CODES = {
    ValidationError: 400,
    ConfigurationError: 500,
    NotFoundError: 404,
    DatabaseError: 500,
    SemanticSearchUnavailableError: 503,
    EmbeddingError: 502,
    RerankerError: 502,
    ProcessingError: 500,
    ExternalServiceError: 502,
}


def map_to_http_exception(exc: JobMatchBaseException) -> HTTPException:
    """Map a domain exception onto an HTTPException"""
    status_code = STATUS_CODES.get(type(exc), 500)
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.to_dict(), "message": exc.message},
    )


class ExceptionContext:
    """Log failures of an operation and wrap foreign exceptions into domain ones"""

    def __init__(self, operation: str, logger=None, **context):
        self.operation = operation
        self.logger = logger
        self.context = context

    def __enter__(self):
        if self.logger:
            self.logger.debug(f"Starting operation: {self.operation}", extra=self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            if self.logger:
                self.logger.debug(f"Operation completed: {self.operation}", extra=self.context)
            return False

        if self.logger:
            self.logger.error(
                f"Operation failed: {self.operation} - {exc_val}",
                extra={**self.context, "exception_type": exc_type.__name__}
            )

        if isinstance(exc_val, (JobMatchBaseException, HTTPException)):
            return False

        if isinstance(exc_val, (KeyError, ValueError, TypeError)):
            raise ValidationError(
                f"Validation error in {self.operation}: {exc_val}",
                details=dict(self.context),
                cause=exc_val
            ) from exc_val

        if "mongo" in str(exc_val).lower() or "database" in str(exc_val).lower():
            raise DatabaseError(
                f"Database error in {self.operation}: {exc_val}",
                operation=self.operation,
                details=dict(self.context),
                cause=exc_val
            ) from exc_val

        raise ProcessingError(
            f"Processing error in {self.operation}: {exc_val}",
            stage=self.operation,
            details=dict(self.context),
            cause=exc_val
        ) from exc_val


def retry_with_logging(
    max_attempts: int = 3,
    backoff_factor: float = 1.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    logger=None,
    jitter: bool = True
):
    """Retry a sync or async callable with exponential backoff"""

    def delay_for(attempt: int) -> float:
        base = backoff_factor * (2 ** attempt)
        return base + uniform(0, 1) if jitter else base

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if logger:
                        logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {e}")
                    if attempt == max_attempts - 1:
                        if logger:
                            logger.error(f"All {max_attempts} attempts failed for {func.__name__}")
                        raise
                    await asyncio.sleep(delay_for(attempt))

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if logger:
                        logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {e}")
                    if attempt == max_attempts - 1:
                        if logger:
                            logger.error(f"All {max_attempts} attempts failed for {func.__name__}")
                        raise
                    time.sleep(delay_for(attempt))

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


class CircuitBreaker:
    """
    Stop calling a failing dependency for a while.

    Opens after ``failure_threshold`` consecutive failures and rejects calls
    until ``cooldown`` seconds have passed. The first call after the cooldown
    is a trial: success closes the breaker, failure reopens it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        logger=None
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.clock = clock
        self.logger = logger
        self.failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self.clock() - self._opened_at >= self.cooldown:
            return self.HALF_OPEN
        return self.OPEN

    def allow(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        if self._opened_at is not None and self.logger:
            self.logger.info(f"Circuit {self.name} closed")
        self.failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self._opened_at is not None or self.failures >= self.failure_threshold:
            self._opened_at = self.clock()
            if self.logger:
                self.logger.warning(
                    f"Circuit {self.name} open for {self.cooldown:.0f}s after {self.failures} failures"
                )
