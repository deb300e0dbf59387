"""
Centralized error handling for the telemetry service.

Error Hierarchy:
- APIError (4xx/503): Expected errors with messages safe to expose to clients
- TelemetryError: Domain failures raised inside the pipeline
- Anything else reaching the middleware is a 500 with a generic message

Usage:
    from core.errors import NotFoundError, ValidationError

    # For expected errors - raise with safe message
    raise NotFoundError(f"Device {device_id} not found")

    # Unexpected errors are caught by error_middleware; never build
    # client-facing messages from them
"""

import logging
import uuid

from aiohttp import web

logger = logging.getLogger(__name__)


# =============================================================================
# Exception Classes (Expected Errors)
# =============================================================================

class APIError(Exception):
    """
    Base class for expected API errors.
    Messages are safe to expose to clients.
    """
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(APIError):
    """Resource not found (404)."""
    status_code = 404


class ValidationError(APIError):
    """Request validation failed (400)."""
    status_code = 400


class ServiceUnavailableError(APIError):
    """Service temporarily unavailable (503)."""
    status_code = 503


# =============================================================================
# Pipeline Errors
# =============================================================================

class TelemetryError(Exception):
    """Base class for failures inside the ingestion pipeline."""


class UnknownDeviceError(TelemetryError):
    """A metric referenced an address not present in the device directory."""

    def __init__(self, address: str):
        super().__init__(f"No device configured for address {address!r}")
        self.address = address


class MalformedMetricError(TelemetryError):
    """A metric record is missing required fields or has unusable values."""


class StoreError(TelemetryError):
    """A batch transaction against the durable store failed."""


# =============================================================================
# Middleware
# =============================================================================

def _error_id() -> str:
    return str(uuid.uuid4())[:8]


@web.middleware
async def error_middleware(request: web.Request, handler):
    """
    Render APIError and unhandled exceptions as ``{"error", "error_id"}`` JSON.

    APIError messages are returned as-is and logged at WARNING. Anything
    else is logged with its traceback and answered with a generic 500.
    aiohttp's own HTTPException responses (404 for unknown routes, 405, ...)
    pass through untouched.
    """
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except APIError as e:
        error_id = _error_id()
        logger.warning(f"API error: {e}", extra={'error_id': error_id})
        return web.json_response({"error": str(e), "error_id": error_id}, status=e.status_code)
    except Exception:
        error_id = _error_id()
        logger.exception("Internal server error", extra={'error_id': error_id})
        return web.json_response({"error": "Internal server error", "error_id": error_id}, status=500)
