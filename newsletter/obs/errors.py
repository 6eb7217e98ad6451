"""
RFC-7807 compliant error handling for the newsletter delivery service.
Provides structured error responses with trace correlation.
"""
import traceback
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter.core.exceptions import (
    IdempotencyConflict,
    InvalidIdempotencyKey,
    InvalidNewsletterForm,
    NewsletterError,
    NoSavedResponse,
    StoreError,
    TransactionAlreadyConsumed,
    ValidationError,
)
from newsletter.obs.logging import get_logger, log_error
from newsletter.obs.tracing import get_current_trace_id

logger = get_logger(__name__)


class ProblemDetail:
    """RFC-7807 Problem Details for HTTP APIs."""

    def __init__(
        self,
        type: str,
        title: str,
        detail: str,
        status: int,
        instance: Optional[str] = None,
        trace_id: Optional[str] = None,
        **kwargs
    ):
        self.type = type
        self.title = title
        self.detail = detail
        self.status = status
        self.instance = instance
        self.trace_id = trace_id
        self.extensions = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "status": self.status,
        }

        if self.instance:
            result["instance"] = self.instance

        if self.trace_id:
            result["trace_id"] = self.trace_id

        result.update(self.extensions)

        return result


def create_problem_detail(
    error: Exception,
    request: Request,
    status_code: int = 500,
    error_type: str = "about:blank",
    title: str = "Internal Server Error",
    detail: Optional[str] = None
) -> ProblemDetail:
    """Create a ProblemDetail from an exception."""
    trace_id = getattr(request.state, 'trace_id', None) or get_current_trace_id()

    if detail is None:
        detail = str(error)

    return ProblemDetail(
        type=error_type,
        title=title,
        detail=detail,
        status=status_code,
        instance=request.url.path,
        trace_id=trace_id,
    )


# Error type mappings for consistent error responses. Lookup walks the MRO,
# so the most specific class wins.
ERROR_TYPE_MAPPINGS = {
    InvalidIdempotencyKey: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.5.1",
        "title": "Invalid Idempotency Key",
        "status": 400,
    },
    InvalidNewsletterForm: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.5.1",
        "title": "Invalid Newsletter Form",
        "status": 400,
    },
    ValidationError: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.5.1",
        "title": "Validation Error",
        "status": 400,
    },
    IdempotencyConflict: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.5.8",
        "title": "Request In Flight",
        "status": 409,
    },
    NoSavedResponse: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.6.1",
        "title": "Missing Saved Response",
        "status": 500,
    },
    StoreError: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.6.1",
        "title": "Database Error",
        "status": 500,
    },
    TransactionAlreadyConsumed: {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.6.1",
        "title": "Internal Server Error",
        "status": 500,
    },
}


def _mapping_for(exc: Exception) -> Dict[str, Any]:
    for klass in type(exc).__mro__:
        if klass in ERROR_TYPE_MAPPINGS:
            return ERROR_TYPE_MAPPINGS[klass]
    return {
        "type": "https://tools.ietf.org/html/rfc7231#section-6.6.1",
        "title": "Internal Server Error",
        "status": 500,
    }


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=exc.status_code,
        error_type="https://tools.ietf.org/html/rfc7231#section-6.5",
        title="HTTP Error",
        detail=exc.detail
    )

    log_error(
        logger=logger,
        error=exc,
        trace_id=problem.trace_id,
        user_id=getattr(request.state, 'user_id', None),
        route=request.url.path,
        method=request.method,
        status=exc.status_code,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(problem.to_dict()),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=422,
        error_type="https://tools.ietf.org/html/rfc4918#section-11.2",
        title="Validation Error",
        detail="Request validation failed"
    )
    problem.extensions["validation_errors"] = exc.errors()

    log_error(
        logger=logger,
        error=exc,
        trace_id=problem.trace_id,
        user_id=getattr(request.state, 'user_id', None),
        route=request.url.path,
        method=request.method,
        status=422,
    )

    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(problem.to_dict())
    )


async def domain_exception_handler(request: Request, exc: NewsletterError) -> JSONResponse:
    """Map domain errors onto RFC-7807 responses using ERROR_TYPE_MAPPINGS."""
    mapping = _mapping_for(exc)
    status_code = mapping["status"]

    # Server-side failures never echo internal messages back to the caller
    detail = str(exc) if status_code < 500 else "An unexpected error occurred"

    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=status_code,
        error_type=mapping["type"],
        title=mapping["title"],
        detail=detail,
    )

    headers = None
    if isinstance(exc, IdempotencyConflict) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}

    log_error(
        logger=logger,
        error=exc,
        trace_id=problem.trace_id,
        user_id=getattr(request.state, 'user_id', None),
        route=request.url.path,
        method=request.method,
        status=status_code,
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(problem.to_dict()),
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with RFC-7807 format."""
    problem = create_problem_detail(
        error=exc,
        request=request,
        status_code=500,
        error_type="https://tools.ietf.org/html/rfc7231#section-6.6.1",
        title="Internal Server Error",
        detail="An unexpected error occurred"
    )

    log_error(
        logger=logger,
        error=exc,
        trace_id=problem.trace_id,
        user_id=getattr(request.state, 'user_id', None),
        route=request.url.path,
        method=request.method,
        status=500,
        stack_trace=traceback.format_exc(),
    )

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(problem.to_dict())
    )


def register_error_handlers(app):
    """Register all error handlers with the FastAPI app."""
    # HTTPException from fastapi subclasses the starlette one
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.add_exception_handler(NewsletterError, domain_exception_handler)

    # General exceptions (catch-all)
    app.add_exception_handler(Exception, general_exception_handler)

    return app
