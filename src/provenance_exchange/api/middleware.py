"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based marketplace clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from provenance_exchange.domain.exceptions import (
    ExchangeError,
    ExternalUnavailableError,
    ForbiddenError,
    LimitExceededError,
    NotFoundError,
    StateConflictError,
    StorageError,
    ValidationError,
    WrongStateError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except NotFoundError as exc:
            logger.warning("entity.not_found", entity=exc.entity, entity_id=exc.entity_id)
            return _error(404, exc.code, exc.message)
        except ForbiddenError as exc:
            logger.warning("actor.forbidden", user_id=exc.user_id, action=exc.action)
            return _error(403, exc.code, exc.message)
        except WrongStateError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted,
            )
            return _error(409, exc.code, exc.message)
        except (StateConflictError, LimitExceededError) as exc:
            logger.warning("domain.conflict", code=exc.code, error=exc.message)
            return _error(409, exc.code, exc.message)
        except ValidationError as exc:
            logger.info("domain.rejected", code=exc.code, error=exc.message)
            body = {"error": exc.code, "message": exc.message}
            if reason := getattr(exc, "reason", None):
                body["reason"] = reason
            return JSONResponse(status_code=422, content=body)
        except ExternalUnavailableError as exc:
            # Callers get a generic message; the diagnostics stay in the logs.
            logger.error("external.unavailable", service=exc.service, detail=exc.detail)
            return _error(
                503,
                exc.code,
                f"{exc.service} is temporarily unavailable, please retry shortly",
            )
        except StorageError as exc:
            logger.exception("storage.error", code=exc.code, error=exc.message)
            return _error(500, exc.code, "The record store failed to complete the request")
        except ExchangeError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc.code, exc.message)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return _error(500, "INTERNAL_ERROR", "An unexpected error occurred")


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
