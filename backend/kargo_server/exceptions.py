import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = structlog.get_logger(__name__)


class AppException(Exception):
    """Base class for errors that map onto a structured HTTP error response."""

    def __init__(self, message: str, *, status_code: int = 400, code: str = "APP_ERROR", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}


class NotAllowedError(AppException):
    """No caller identity is bound to the call."""

    def __init__(self, message: str = "not allowed") -> None:
        super().__init__(message, status_code=401, code="NOT_ALLOWED")


class ForbiddenError(AppException):
    """An access review denied the operation."""

    def __init__(self, message: str = "forbidden", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=403, code="FORBIDDEN", details=details)

    @classmethod
    def for_operation(cls, *, verb: str, group: str, resource: str, name: str = "") -> "ForbiddenError":
        qualified = f"{resource}.{group}" if group else resource
        target = f'{qualified} "{name}"' if name else qualified
        return cls(
            f"{target} is forbidden: {verb} is not permitted",
            details={"verb": verb, "group": group, "resource": resource, "name": name},
        )


class InternalError(AppException):
    """The authorization machinery itself failed."""

    def __init__(self, message: str = "internal error", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=500, code="INTERNAL", details=details)


class BadRequestError(AppException):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=400, code="BAD_REQUEST", details=details)


class InvalidResourceTypeError(AppException):
    """A policy rule names a resource type that is not known in its plural form."""

    def __init__(self, resource_type: str, suggestion: Optional[str] = None) -> None:
        if suggestion:
            message = f'unrecognized resource type "{resource_type}"; did you mean "{suggestion}"?'
        else:
            message = f'unrecognized resource type "{resource_type}"'
        details: Dict[str, Any] = {"resource_type": resource_type}
        if suggestion:
            details["suggestion"] = suggestion
        super().__init__(message, status_code=400, code="INVALID_RESOURCE_TYPE", details=details)
        self.resource_type = resource_type
        self.suggestion = suggestion


class NotFoundError(AppException):
    def __init__(self, message: str = "not found", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=404, code="NOT_FOUND", details=details)


class AlreadyExistsError(AppException):
    def __init__(self, message: str = "already exists", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status_code=409, code="ALREADY_EXISTS", details=details)


class NotRegisteredError(AppException):
    """The scheme has no kind registered for an object type."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=500, code="NOT_REGISTERED")


class KubernetesApiError(AppException):
    """Any other failure reported by the Kubernetes API for a delegated operation."""

    def __init__(self, message: str, *, status_code: int = 500, reason: Optional[str] = None) -> None:
        super().__init__(
            message,
            status_code=status_code if 400 <= status_code < 600 else 502,
            code="KUBERNETES_API_ERROR",
            details={"reason": reason} if reason else None,
        )


def _build_error_payload(
    *,
    message: str,
    status_code: int,
    code: str = "APP_ERROR",
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the uniform error envelope."""
    error: Dict[str, Any] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "request_id": request_id or str(uuid.uuid4()),
        "status_code": status_code,
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    rid = _request_id(request)
    payload = _build_error_payload(
        message=message, status_code=status_code, code=code, details=details, request_id=rid
    )
    return JSONResponse(status_code=status_code, content=payload, headers={"X-Request-ID": rid})


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers producing the uniform error envelope."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        # detail may be a str or a dict
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        logger.warning("http.error", status_code=exc.status_code, path=request.url.path)
        return _error_response(request, status_code=exc.status_code, code="HTTP_ERROR", message=message)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()
        ]
        logger.info("http.validation_failed", path=request.url.path, errors=len(errors))
        return _error_response(
            request,
            status_code=422,
            code="VALIDATION_ERROR",
            message="request validation failed",
            details={"errors": errors},
        )

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):  # type: ignore[override]
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("http.app_error", status_code=exc.status_code, code=exc.code, path=request.url.path, error=exc.message)
        return _error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("http.unhandled_error", path=request.url.path)
        return _error_response(request, status_code=500, code="INTERNAL_SERVER_ERROR", message="internal server error")
