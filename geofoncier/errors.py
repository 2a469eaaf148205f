"""Domain errors and their HTTP translation.

Components raise these; the handlers registered by ``register_exception_handlers``
turn them into the JSON envelope ``{"success": false, "error": ..., "code": ...}``.
Integrity defects are data, not errors, and never appear here.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class GeoFoncierError(Exception):
    """Base class for every error the API reports to callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# Validation (400)


class ValidationError(GeoFoncierError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    default_message = "Invalid request"


class InvalidGeometry(ValidationError):
    code = "invalid_geometry"
    default_message = "Invalid geometry"


class UnsupportedGeometryType(ValidationError):
    code = "unsupported_geometry_type"
    default_message = "Unsupported geometry type"


class MissingName(ValidationError):
    code = "missing_name"
    default_message = "A name is required"


class InvalidBounds(ValidationError):
    code = "invalid_bounds"
    default_message = "Invalid bounding box"


class SubscriptionRequired(ValidationError):
    code = "subscription_required"
    default_message = "An active subscription is required"


# Not found (404)


class NotFound(GeoFoncierError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Resource not found"


class DivisionNotFound(NotFound):
    code = "division_not_found"
    default_message = "Division not found"


class ParcelNotFound(NotFound):
    code = "parcel_not_found"
    default_message = "Parcel not found"


class ContactNotFound(NotFound):
    code = "contact_not_found"
    default_message = "Contact request not found"


class SubscriptionNotFound(NotFound):
    code = "subscription_not_found"
    default_message = "Subscription not found"


class DocumentNotFound(NotFound):
    code = "document_not_found"
    default_message = "Document not found"


class NoContainingDivision(NotFound):
    code = "no_containing_division"
    default_message = "No division contains this point"


# Conflict (409)


class Conflict(GeoFoncierError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    default_message = "Conflicting state"


class HasDependents(Conflict):
    code = "has_dependents"
    default_message = "Division still has dependent records"


class AlreadyResolved(Conflict):
    code = "already_resolved"
    default_message = "Contact request has already been resolved"


class DuplicateName(Conflict):
    code = "duplicate_name"
    default_message = "A division with this name already exists"


class InvalidTransition(Conflict):
    code = "invalid_transition"
    default_message = "Status transition not allowed"


# Auth (401)


class Unauthorized(GeoFoncierError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"
    default_message = "Authentication required"


class InvalidSignature(Unauthorized):
    code = "invalid_signature"
    default_message = "Invalid webhook signature"


class Forbidden(GeoFoncierError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_message = "You do not own this resource"


# Upstream (500 / 504)


class UpstreamFailure(GeoFoncierError):
    """A collaborator (database function, storage, gateway) failed."""

    code = "upstream_failure"
    default_message = "Upstream service failed"


class UpstreamTimeout(UpstreamFailure):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    code = "upstream_timeout"
    default_message = "Upstream service timed out"


def error_body(message: str, code: str) -> dict:
    return {"success": False, "error": message, "code": code}


async def geofoncier_error_handler(request: Request, exc: GeoFoncierError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic request validation errors become 400, like every other validation failure."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    message = "; ".join(parts) or "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(message, ValidationError.code),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), code.get(exc.status_code, "http_error")),
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(GeoFoncierError.default_message, GeoFoncierError.code),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(GeoFoncierError, geofoncier_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
