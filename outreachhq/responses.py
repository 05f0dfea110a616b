"""
OutreachHQ API Response Utilities
Standardized response envelope and error handling
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import (
    CampaignError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PublishFailure,
    ValidationError,
)
from .logging_config import api_logger


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# SUCCESS RESPONSES
# ============================================================

def paginated(items: List, total: int, page: int = 1, per_page: int = 20) -> Dict:
    """Paginated list response"""
    return {
        "ok": True,
        "data": items,
        "pagination": {
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": (total + per_page - 1) // per_page,
            "has_next": page * per_page < total,
            "has_prev": page > 1,
        },
        "timestamp": _timestamp(),
    }


# ============================================================
# ERROR RESPONSES
# ============================================================

class ApiException(HTTPException):
    """Custom API exception with error codes"""

    def __init__(
        self,
        status_code: int,
        message: str,
        error_code: str = None,
        details: Dict = None,
    ):
        self.error_code = error_code or f"ERR_{status_code}"
        self.details = details
        super().__init__(status_code=status_code, detail=message)


def not_found(resource: str = "Resource", id: Any = None):
    message = f"{resource} not found" if id is None else f"{resource} '{id}' not found"
    raise ApiException(404, message, "NOT_FOUND")


def validation_error(message: str, details: Dict = None):
    raise ApiException(422, message, "VALIDATION_ERROR", details)


def _error_body(message: str, error_code: str, details: Optional[Dict] = None) -> Dict:
    return {
        "ok": False,
        "error": message,
        "error_code": error_code,
        "details": details,
        "timestamp": _timestamp(),
    }


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

CAMPAIGN_ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    PublishFailure: 502,
    InvariantViolation: 500,
}


def status_for(exc: CampaignError) -> int:
    for error_type, status_code in CAMPAIGN_ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def campaign_error_handler(request: Request, exc: CampaignError) -> JSONResponse:
    """Map engine errors onto the standard error envelope"""
    status_code = status_for(exc)

    if isinstance(exc, InvariantViolation):
        api_logger.critical(
            f"Invariant violation: {exc.message}",
            error=exc,
            path=request.url.path,
            details=exc.details,
        )
    elif status_code >= 500:
        api_logger.error(f"Campaign error: {exc.message}", error=exc, path=request.url.path)
    else:
        api_logger.warning(
            f"Campaign error: {exc.message}",
            status_code=status_code,
            error_code=exc.code,
            path=request.url.path,
        )

    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.message, exc.code, exc.details or None),
    )


async def api_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for API errors"""

    if isinstance(exc, ApiException):
        api_logger.warning(
            f"API Error: {exc.detail}",
            status_code=exc.status_code,
            error_code=exc.error_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.detail, exc.error_code, exc.details),
        )

    if isinstance(exc, StarletteHTTPException):
        api_logger.warning(
            f"HTTP Error: {exc.detail}",
            status_code=exc.status_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.detail, f"HTTP_{exc.status_code}"),
        )

    api_logger.error(
        f"Unexpected error: {exc}",
        error=exc,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=500,
        content=_error_body("An unexpected error occurred", "INTERNAL_ERROR"),
    )
