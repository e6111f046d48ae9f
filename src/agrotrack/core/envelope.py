"""
Uniform response envelopes.

Success: ``{"success": true, "data": ..., "message"?: ..., "meta"?: ...}``
Error:   ``{"success": false, "error": {"code", "message", "details"?, "field"?}}``

Errors are raised as ``AgroTrackException`` where they are detected and turned
into envelopes here, by the registered exception handlers or, for anything
unexpected, by ``ErrorEnvelopeMiddleware``.
"""

import time
import uuid
from typing import Any, Dict, List, Mapping, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .exceptions import AgroTrackException, ErrorCode, status_for_code
from .logging import bind_request_context, clear_request_context

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_HTTP_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.VALIDATION_ERROR,
    409: ErrorCode.CONFLICT,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
}


def success_response(data: Any = None, message: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if meta:
        body["meta"] = meta
    return body


def created_response(response: Response, data: Any, message: str = "Resource created successfully") -> Dict[str, Any]:
    response.status_code = 201
    return success_response(data, message)


def no_content_response(response: Response) -> Response:
    """Empty 204 carrying any headers dependencies already set."""
    return Response(status_code=204, headers={k: v for k, v in response.headers.items() if k.lower() != "content-length"})


def paginated_response(items: List[Any], page: int, limit: int, total: int, message: Optional[str] = None) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return success_response(
        {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        },
        message,
    )


def error_body(
    code: Any,
    message: str,
    details: Optional[Any] = None,
    field: Optional[str] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code.value if isinstance(code, ErrorCode) else str(code), "message": message}
    if details:
        error["details"] = details
    if field:
        error["field"] = field
    return {"success": False, "error": error}


def error_response(
    code: Any,
    message: str,
    status_code: Optional[int] = None,
    details: Optional[Any] = None,
    field: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    expose_details: bool = True,
    log_context: Optional[Dict[str, Any]] = None,
    log: bool = True,
) -> JSONResponse:
    """
    Build an error envelope response and log it.

    5xx responses log at error level and 4xx at warning level. With
    ``expose_details`` off, internal (500) messages and details are replaced
    by a generic message; deliberate 501/503 errors keep theirs.
    """
    status = status_code or status_for_code(code)
    context = dict(log_context or {})
    code_value = code.value if isinstance(code, ErrorCode) else str(code)

    if status >= 500:
        if log:
            logger.error(message, code=code_value, status_code=status, **context)
        if status == 500 and not expose_details:
            message = "Database operation failed" if code_value == ErrorCode.DATABASE_ERROR.value else "Internal server error"
            details = None
    elif status >= 400 and log:
        logger.warning(message, code=code_value, status_code=status, **context)

    return JSONResponse(
        status_code=status,
        content=jsonable_encoder(error_body(code_value, message, details, field)),
        headers=dict(headers or {}),
    )


def validation_errors_response(errors: List[Dict[str, Any]], expose_details: bool = True) -> JSONResponse:
    return error_response(
        ErrorCode.VALIDATION_ERROR,
        "Validation failed",
        details={"errors": errors},
        expose_details=expose_details,
    )


def _expose_details(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return settings.is_development if settings is not None else True


def _context(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


async def agrotrack_exception_handler(request: Request, exc: AgroTrackException) -> JSONResponse:
    """Handle custom AgroTrack exceptions."""
    return error_response(
        exc.code,
        exc.message,
        details=exc.details or None,
        field=exc.field,
        headers=exc.headers,
        expose_details=_expose_details(request),
        log_context=_context(request),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())[1:]) or None,
            "message": error.get("msg", "Invalid value"),
            "code": error.get("type"),
        }
        for error in exc.errors()
    ]
    return error_response(
        ErrorCode.VALIDATION_ERROR,
        "Validation failed",
        details={"errors": errors},
        log_context=_context(request),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_SERVER_ERROR)
    return error_response(
        code,
        str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
        expose_details=_expose_details(request),
        log_context=_context(request),
    )


def unhandled_exception_response(exc: Exception, expose_details: bool, context: Dict[str, Any]) -> JSONResponse:
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
        **context,
    )
    return error_response(
        ErrorCode.INTERNAL_SERVER_ERROR,
        str(exc) or "Internal server error",
        expose_details=expose_details,
        log=False,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AgroTrackException, agrotrack_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)


class ErrorEnvelopeMiddleware:
    """
    Outermost catch-all turning unexpected exceptions into a 500 envelope.

    If the response has already started nothing more can be sent, so the
    error is only logged.
    """

    def __init__(self, app: ASGIApp, expose_details: bool = True) -> None:
        self.app = app
        self.expose_details = expose_details

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            context = {"path": scope.get("path"), "method": scope.get("method")}
            if started:
                logger.error(
                    "Unhandled error after response started",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=exc,
                    **context,
                )
                return
            response = unhandled_exception_response(exc, self.expose_details, context)
            await response(scope, receive, send)


class RequestContextMiddleware:
    """Assigns a request id, binds it to the log context and records request metrics."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        incoming = headers.get(REQUEST_ID_HEADER.lower().encode("latin-1"))
        request_id = incoming.decode("latin-1") if incoming else uuid.uuid4().hex
        bind_request_context(request_id, path=scope.get("path"), method=scope.get("method"))

        start = time.perf_counter()
        status_holder = {"status": 500}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                status_holder["status"] = message["status"]
                message["headers"] = list(message.get("headers") or []) + [
                    (REQUEST_ID_HEADER.encode("latin-1"), request_id.encode("latin-1"))
                ]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            metrics = getattr(scope.get("app").state, "metrics", None) if scope.get("app") else None
            if metrics is not None:
                route = scope.get("route")
                endpoint = getattr(route, "path", None) or scope.get("path", "unknown")
                metrics.record_request(
                    scope.get("method", "GET"),
                    endpoint,
                    status_holder["status"],
                    time.perf_counter() - start,
                )
            clear_request_context()
