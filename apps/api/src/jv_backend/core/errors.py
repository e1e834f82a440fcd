"""
Error Envelope

Every failure leaving the application is rendered as

    {"success": false, "msg": ..., "error": ...}

and, in development only, a "stack" field. Three paths feed the single
envelope builder:
- HTTPException / RequestValidationError, through FastAPI exception handlers
- any other exception, through ErrorEnvelopeMiddleware (terminal handler)
- oversized payloads, rejected by the body limit before a handler runs

4xx HTTPException and validation errors are raised on purpose with a
client-facing detail, so their envelope carries the reason phrase and that
detail (logged at warning). Every other exception is an internal failure
whatever status it advertises: it is logged at error level with its stack,
its envelope says "Internal Server Error", and in production `error` is a fixed
generic string, never the raw exception message.
"""

import logging
import traceback
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from jv_backend.core.proxy import client_ip

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MSG = "Internal Server Error"
GENERIC_ERROR_TEXT = "An error occurred. Please try again later."


class PayloadTooLargeError(HTTPException):
    """Request body exceeded the configured limit."""

    def __init__(self, limit: int):
        super().__init__(
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            detail=f"request entity too large (limit: {limit} bytes)",
        )
        self.limit = limit


def _status_for(exc: Exception) -> int:
    if isinstance(exc, RequestValidationError):
        return HTTPStatus.UNPROCESSABLE_ENTITY
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return HTTPStatus.INTERNAL_SERVER_ERROR


def _is_client_error(exc: Exception, status_code: int) -> bool:
    """Deliberate 4xx raised through the framework; anything else is internal."""
    return status_code < 500 and isinstance(
        exc, (StarletteHTTPException, RequestValidationError)
    )


def _client_detail(exc: StarletteHTTPException | RequestValidationError) -> Any:
    if isinstance(exc, RequestValidationError):
        return jsonable_encoder(exc.errors())
    return exc.detail


def _reason_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _log_failure(scope: Scope, exc: Exception, status_code: int) -> None:
    path = scope.get("path", "")
    query = scope.get("query_string", b"").decode("latin-1")
    context = {
        "url": f"{path}?{query}" if query else path,
        "method": scope.get("method", ""),
        "ip": client_ip(scope),
    }
    if _is_client_error(exc, status_code):
        logger.warning(
            f"{context['method']} {context['url']} -> {status_code}: {_client_detail(exc)}",
            extra=context,
        )
        return

    logger.error(
        f"SERVER_ERROR: {exc} | {context['method']} {context['url']} from {context['ip']}",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra=context,
    )


def build_error_response(scope: Scope, exc: Exception, expose_details: bool) -> JSONResponse:
    """
    Render `exc` as the uniform error envelope and log it.

    Args:
        scope: ASGI scope of the failing request
        exc: The failure
        expose_details: True in development; adds raw messages and the stack

    Returns:
        JSONResponse carrying the failure's advertised status (or 500)
    """
    status_code = _status_for(exc)
    _log_failure(scope, exc, status_code)

    if _is_client_error(exc, status_code):
        content: dict[str, Any] = {
            "success": False,
            "msg": _reason_phrase(status_code),
            "error": _client_detail(exc),
        }
    else:
        content = {
            "success": False,
            "msg": INTERNAL_ERROR_MSG,
            "error": str(exc) if expose_details else GENERIC_ERROR_TEXT,
        }

    if expose_details:
        content["stack"] = _format_stack(exc)

    headers = getattr(exc, "headers", None) if isinstance(exc, StarletteHTTPException) else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


class ErrorEnvelopeMiddleware:
    """
    Terminal error handler.

    Sits inside the CORS and quota layers, so envelopes for unhandled
    exceptions still carry admission headers. Exceptions raised after the
    response has started are re-raised untouched.
    """

    def __init__(self, app: ASGIApp, expose_details: bool = False) -> None:
        self.app = app
        self.expose_details = expose_details

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if response_started:
                raise
            response = build_error_response(scope, exc, self.expose_details)
            await response(scope, receive, send)


def register_error_handlers(app: FastAPI, expose_details: bool) -> None:
    """Route HTTP and validation errors through the envelope builder."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return build_error_response(request.scope, exc, expose_details)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return build_error_response(request.scope, exc, expose_details)


__all__ = [
    "ErrorEnvelopeMiddleware",
    "GENERIC_ERROR_TEXT",
    "INTERNAL_ERROR_MSG",
    "PayloadTooLargeError",
    "build_error_response",
    "register_error_handlers",
]
