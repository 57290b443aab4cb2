"""
Error Taxonomy and Global Error Handling

Pipeline errors fall into these groups:

- TransientIOError     network/backend hiccup, retried where it is observed
- MalformedInputError  bad feed record, dropped and counted
- ConfigurationError   fatal at startup, aborts before any subscription
- ExhaustedRetryError  retry bound exceeded, the unit of work is dead-lettered
- StoreRejectedError   permanent store rejection, isolated and dead-lettered
                       without retries

MalformedInputError and ExhaustedRetryError never leave the pipeline
coordinator. ConfigurationError propagates to process startup.

The module also provides the FastAPI catch-all handler for the operations API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("aigis.errors")


# ---------------------------------------------------------------------
# Pipeline Exceptions
# ---------------------------------------------------------------------

class AigisError(Exception):
    """Base class for all pipeline errors."""


class TransientIOError(AigisError):
    """A network or backend call failed in a way that may succeed on retry."""


class EmbeddingError(TransientIOError):
    """Raised when embedding generation fails."""


class StoreError(TransientIOError):
    """Raised when a vector store operation fails for a possibly temporary reason."""


class StoreRejectedError(AigisError):
    """The vector store refused the data itself; retrying the same write cannot succeed."""


class MalformedInputError(AigisError):
    """A feed record could not be decoded or lacks required fields."""


class ConfigurationError(AigisError):
    """Invalid or inconsistent configuration detected at startup."""


class ExhaustedRetryError(AigisError):
    """
    A retried operation kept failing past its attempt bound.

    Carries enough context for the coordinator to dead-letter the work.
    """

    def __init__(
        self,
        stage: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.stage = stage
        self.attempts = attempts
        self.last_error = last_error
        detail = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown"
        super().__init__(f"{stage} failed after {attempts} attempts ({detail})")


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions in the operations API.

    Logs the full traceback and returns a generic 500 body with no internal
    details.
    """
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
