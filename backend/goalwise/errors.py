"""Error taxonomy shared by services, tools and HTTP routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FinanceError(Exception):
    """Base class for every expected failure; carries an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnauthenticatedError(FinanceError):
    """No caller identity could be resolved."""

    status_code = 401


class NotFoundError(FinanceError):
    """Entity is absent or owned by someone else (deliberately indistinguishable)."""

    status_code = 404


class InvalidArgumentsError(FinanceError):
    """Tool or API input failed schema validation."""

    status_code = 400


class InvalidInputError(FinanceError):
    """A financial calculation precondition was violated."""

    status_code = 422


class AmbiguousMatchError(FinanceError):
    """A name or keyword lookup matched more than one entity."""

    status_code = 409

    def __init__(self, message: str, matches: list[dict[str, Any]]):
        super().__init__(message)
        self.matches = matches


class MarketDataError(FinanceError):
    """Base class for market-data failures; all are recoverable."""


class DataUnavailableError(MarketDataError):
    status_code = 404


class InvalidPriceError(MarketDataError):
    status_code = 422


class NoDataError(MarketDataError):
    status_code = 404


class UpstreamTimeoutError(MarketDataError):
    status_code = 504


class UpstreamFormatError(MarketDataError):
    status_code = 500


class UpstreamDataError(MarketDataError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def install_error_handlers(app: FastAPI) -> None:
    """Render every failure as `{"error": ...}` with the matching status."""

    @app.exception_handler(FinanceError)
    async def _finance_error(_: Request, exc: FinanceError) -> JSONResponse:
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(HTTPException)
    async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
        return error_response(str(exc.detail), exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return error_response(f"{location}: {message}" if location else message, 422)

    @app.exception_handler(Exception)
    async def _unexpected_error(_: Request, exc: Exception) -> JSONResponse:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return error_response("Internal Server Error", 500)
