"""
RFC 7807 Problem Details exception handling.

Provides standardized error responses for the API following the
"Problem Details for HTTP APIs" specification, plus the segment-criteria
exception taxonomy raised by the services layer.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List, TYPE_CHECKING
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import traceback
import uuid
from datetime import datetime

from app.middleware.correlation import get_request_id

if TYPE_CHECKING:
    from app.schemas.segment import CriteriaTree, ValidationResult

logger = logging.getLogger(__name__)


def _get_trace_id() -> str:
    """Get trace ID from correlation context or generate a new one."""
    request_id = get_request_id()
    if request_id and request_id != "unknown":
        return request_id
    return str(uuid.uuid4())[:12]


def _problem_type(code: "ErrorCode") -> str:
    return f"/problems/{code.value.lower().replace('_', '-')}"


class ErrorCode(str, Enum):
    """Standardized error codes for the segment criteria API."""

    # Validation
    VALIDATION_ERROR = "VAL_001"
    CRITERIA_INVALID = "VAL_005"
    MALFORMED_RULE_SET = "VAL_006"

    # Resource
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_003"

    # External Services
    EXTERNAL_SERVICE_ERROR = "EXT_001"
    CATALOG_UNAVAILABLE = "EXT_010"
    COMPUTE_ENGINE_ERROR = "EXT_011"
    RULE_STORE_ERROR = "EXT_012"
    PARTIAL_PERSISTENCE = "EXT_013"

    # Server
    INTERNAL_ERROR = "SRV_001"
    SERVICE_UNAVAILABLE = "SRV_002"


class ProblemDetail(BaseModel):
    """
    RFC 7807 Problem Details response schema.

    Attributes:
        type: URI reference identifying the problem type
        title: Short, human-readable summary
        status: HTTP status code
        detail: Human-readable explanation specific to this occurrence
        instance: URI reference identifying this specific occurrence
        code: Machine-readable error code for client handling
        timestamp: ISO 8601 timestamp of when the error occurred
        trace_id: Unique identifier for tracing in logs
        errors: List of field-level or criteria-level errors
    """

    type: str = Field(
        default="about:blank",
        description="URI reference identifying the problem type"
    )
    title: str = Field(
        description="Short, human-readable summary of the problem"
    )
    status: int = Field(
        description="HTTP status code"
    )
    detail: str = Field(
        description="Human-readable explanation specific to this occurrence"
    )
    instance: Optional[str] = Field(
        default=None,
        description="URI reference for this specific occurrence"
    )
    code: str = Field(
        description="Machine-readable error code"
    )
    timestamp: str = Field(
        description="ISO 8601 timestamp"
    )
    trace_id: str = Field(
        description="Unique trace ID for debugging"
    )
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Field-level or criteria-level errors"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "type": "/problems/val-005",
                "title": "Validation Error",
                "status": 422,
                "detail": "Segment criteria failed validation",
                "instance": "/api/v2/segment-criteria/compile",
                "code": "VAL_005",
                "timestamp": "2026-01-29T10:30:00Z",
                "trace_id": "abc123def456",
                "errors": [{"code": "UnknownField", "message": "UnknownField: tenure_months"}],
            }
        }
    }


class APIException(HTTPException):
    """
    Base exception for the API with RFC 7807 support.

    Usage:
        raise APIException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Segment not found",
            instance="/api/v2/segment-criteria/segments/123/criteria"
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.errors = errors
        self.trace_id = _get_trace_id()
        self.timestamp = datetime.utcnow().isoformat() + "Z"

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    @staticmethod
    def _default_title(status_code: int) -> str:
        """Get default title based on status code."""
        titles = {
            400: "Bad Request",
            404: "Not Found",
            409: "Conflict",
            422: "Validation Error",
            500: "Internal Server Error",
            502: "Bad Gateway",
            503: "Service Unavailable",
            504: "Gateway Timeout",
        }
        return titles.get(status_code, "Error")

    def to_problem_detail(self) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=_problem_type(self.code),
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
        )


# Convenience exception classes

class NotFoundError(APIException):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        resource_id: str,
        instance: Optional[str] = None
    ):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
            instance=instance,
        )


class ValidationError(APIException):
    """Validation error (422)."""

    def __init__(
        self,
        detail: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            status_code=422,
            code=code,
            detail=detail,
            errors=errors,
        )


class ExternalServiceError(APIException):
    """External service error (502)."""

    def __init__(
        self,
        service: str,
        detail: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        status_code: int = 502,
        upstream_status: Optional[int] = None,
    ):
        self.service = service
        self.upstream_status = upstream_status
        super().__init__(
            status_code=status_code,
            code=code,
            detail=f"{service} service error: {detail}",
        )


# Segment criteria taxonomy

class CatalogUnavailable(ExternalServiceError):
    """The field catalog could not be loaded; callers fall back to built-in fields."""

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(
            service="Field catalog",
            detail=detail,
            code=ErrorCode.CATALOG_UNAVAILABLE,
            status_code=503,
            upstream_status=upstream_status,
        )


class ComputeEngineUnavailable(ExternalServiceError):
    """The preview/compute engine failed to answer a count request."""

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(
            service="Compute engine",
            detail=detail,
            code=ErrorCode.COMPUTE_ENGINE_ERROR,
            upstream_status=upstream_status,
        )


class RuleStoreError(ExternalServiceError):
    """A single call against the rule persistence API failed."""

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(
            service="Rule store",
            detail=detail,
            code=ErrorCode.RULE_STORE_ERROR,
            upstream_status=upstream_status,
        )


class PartialPersistenceFailure(APIException):
    """
    The delete-then-recreate rule replacement did not complete.

    The segment may be left with some or none of its rules; the whole
    replacement must be retried, never patched.
    """

    def __init__(self, segment_id: Any, deleted: int, created: int, expected: int, reason: str):
        self.segment_id = segment_id
        self.deleted = deleted
        self.created = created
        self.expected = expected
        super().__init__(
            status_code=503,
            code=ErrorCode.PARTIAL_PERSISTENCE,
            detail=(
                f"Replacing rules for segment {segment_id} was interrupted "
                f"({created}/{expected} rules created): {reason}"
            ),
            errors=[{
                "segment_id": segment_id,
                "deleted": deleted,
                "created": created,
                "expected": expected,
            }],
        )


class MalformedRuleSet(ValidationError):
    """
    A persisted rule list cannot be rebuilt into a criteria tree cleanly.

    ``tree`` holds whatever could be rebuilt (unresolved conditions are
    kept and marked), or ``None`` when the ordering itself is corrupt.
    """

    def __init__(
        self,
        detail: str,
        problems: Optional[List[Dict[str, Any]]] = None,
        tree: Optional["CriteriaTree"] = None,
    ):
        self.problems = problems or []
        self.tree = tree
        super().__init__(
            detail=detail,
            errors=self.problems,
            code=ErrorCode.MALFORMED_RULE_SET,
        )


class CriteriaValidationFailed(ValidationError):
    """Raised at submission/preview boundaries when a tree fails validation."""

    def __init__(self, result: "ValidationResult"):
        self.result = result
        super().__init__(
            detail=f"Segment criteria failed validation with {len(result.errors)} error(s)",
            errors=[error.model_dump(mode="json") for error in result.errors],
            code=ErrorCode.CRITERIA_INVALID,
        )


# Exception handlers for FastAPI

def create_problem_response(
    status_code: int,
    code: ErrorCode,
    detail: str,
    request: Request,
    errors: Optional[List[Dict[str, Any]]] = None,
    trace_id: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None,
) -> JSONResponse:
    """Create a RFC 7807 compliant JSON response with CORS headers."""
    problem = ProblemDetail(
        type=_problem_type(code),
        title=APIException._default_title(status_code),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code.value,
        timestamp=datetime.utcnow().isoformat() + "Z",
        trace_id=trace_id or _get_trace_id(),
        errors=errors,
    )

    response = JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )

    _add_cors_headers(response, request, allowed_origins)
    return response


def _add_cors_headers(response: JSONResponse, request: Request, allowed_origins: Optional[List[str]]) -> None:
    if allowed_origins:
        origin = request.headers.get("origin", "")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Vary"] = "Origin"


async def api_exception_handler(
    request: Request,
    exc: APIException,
    allowed_origins: Optional[List[str]] = None,
) -> JSONResponse:
    """Handle APIException with RFC 7807 response."""
    logger.warning(
        f"APIException: {exc.code.value} - {exc.detail}",
        extra={
            "trace_id": exc.trace_id,
            "status_code": exc.status_code,
            "path": request.url.path,
        }
    )

    problem = exc.to_problem_detail()
    if problem.instance is None:
        problem.instance = str(request.url.path)

    response = JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=exc.headers,
    )

    _add_cors_headers(response, request, allowed_origins)
    return response


def create_exception_handlers(allowed_origins: List[str]):
    """
    Create exception handlers with configured allowed origins for CORS.

    Usage in main.py:
        handlers = create_exception_handlers(allowed_origins)
        app.add_exception_handler(APIException, handlers["api"])
        app.add_exception_handler(RequestValidationError, handlers["validation"])
        app.add_exception_handler(Exception, handlers["generic"])
    """

    async def handle_api_exception(request: Request, exc: APIException) -> JSONResponse:
        return await api_exception_handler(request, exc, allowed_origins)

    async def handle_http_exception(
        request: Request,
        exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle standard HTTPException with RFC 7807 response."""
        code_map = {
            400: ErrorCode.VALIDATION_ERROR,
            404: ErrorCode.NOT_FOUND,
            409: ErrorCode.CONFLICT,
            422: ErrorCode.VALIDATION_ERROR,
            500: ErrorCode.INTERNAL_ERROR,
            502: ErrorCode.EXTERNAL_SERVICE_ERROR,
            503: ErrorCode.SERVICE_UNAVAILABLE,
        }

        code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)

        return create_problem_response(
            status_code=exc.status_code,
            code=code,
            detail=str(exc.detail),
            request=request,
            allowed_origins=allowed_origins,
        )

    async def handle_validation_exception(
        request: Request,
        exc: RequestValidationError
    ) -> JSONResponse:
        """Handle Pydantic validation errors with field-level details."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })

        return create_problem_response(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail="Request validation failed",
            request=request,
            errors=errors,
            allowed_origins=allowed_origins,
        )

    async def handle_generic_exception(
        request: Request,
        exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions with RFC 7807 response."""
        trace_id = str(uuid.uuid4())[:12]

        logger.error(
            f"Unhandled exception: {exc}",
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        logger.error(traceback.format_exc())

        # Don't expose internal details in production
        from app.config import settings
        detail = str(exc) if settings.DEBUG else "An unexpected error occurred"

        return create_problem_response(
            status_code=500,
            code=ErrorCode.INTERNAL_ERROR,
            detail=detail,
            request=request,
            trace_id=trace_id,
            allowed_origins=allowed_origins,
        )

    return {
        "api": handle_api_exception,
        "http": handle_http_exception,
        "validation": handle_validation_exception,
        "generic": handle_generic_exception,
    }
