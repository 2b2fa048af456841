from __future__ import annotations

import logging
import time
from typing import Any, Optional, TypeVar

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from config import worker_config

from .client import TelethonClientFactory
from .manager import SessionError, SessionManager


logger = logging.getLogger("msgworker.api")
_access_logger = logging.getLogger("msgworker.access")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _coerce_text(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


class _SessionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _coerce_text(value)


class StartSessionRequest(_SessionModel):
    pass


class LogoutRequest(_SessionModel):
    pass


class SendMessageRequest(_SessionModel):
    to: Optional[str] = None
    message: Optional[str] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_data: Optional[str] = Field(default=None, alias="fileData")

    @field_validator("to", mode="before")
    @classmethod
    def _coerce_to(cls, value: Any) -> Any:
        return _coerce_text(value)


_ModelT = TypeVar("_ModelT", bound=BaseModel)


class _InvalidBody(Exception):
    pass


def _parse_body(model: type[_ModelT], raw_payload: Any) -> _ModelT:
    if raw_payload is None:
        raw_payload = {}
    if not isinstance(raw_payload, dict):
        raise _InvalidBody("body_must_be_object")
    try:
        return model.model_validate(raw_payload)
    except ValidationError as exc:
        raise _InvalidBody("invalid_body") from exc


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status, headers=dict(NO_STORE_HEADERS))


def _session_error(exc: SessionError) -> JSONResponse:
    return _error(exc.status_code, exc.detail)


class BodySizeLimitMiddleware:
    """Reject request bodies above ``max_bytes`` with 413.

    A declared ``Content-Length`` is checked up front.  Chunked bodies are
    counted as they are received and the read is aborted once the running
    total passes the limit.
    """

    def __init__(self, app: ASGIApp, max_bytes: int) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        raw_length = Headers(scope=scope).get("content-length")
        if raw_length:
            try:
                length = int(raw_length)
            except ValueError:
                await _error(400, "invalid_content_length")(scope, receive, send)
                return
            if length > self.max_bytes:
                logger.warning(
                    "event=body_too_large path=%s length=%s limit=%s",
                    path,
                    length,
                    self.max_bytes,
                )
                await _error(413, "body_too_large")(scope, receive, send)
                return

        received = 0

        async def _receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    logger.warning(
                        "event=body_too_large path=%s received=%s limit=%s",
                        path,
                        received,
                        self.max_bytes,
                    )
                    raise HTTPException(status_code=413, detail="body_too_large")
            return message

        await self.app(scope, _receive, send)


def create_app() -> FastAPI:
    cfg = worker_config()
    manager = SessionManager(TelethonClientFactory(cfg))

    app = FastAPI(title="msgworker")
    app.state.session_manager = manager

    def _enforce_admin(request: Request, route: str) -> JSONResponse | None:
        if not cfg.admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != cfg.admin_token:
            logger.warning("event=admin_token_invalid route=%s", route)
            return _error(401, "not_authorized")
        return None

    def require_credentials() -> None:
        if cfg.api_id <= 0 or not cfg.api_hash:
            raise HTTPException(status_code=503, detail="telegram_credentials_missing")

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=cfg.max_body_bytes)

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        start = time.time()
        try:
            response = await call_next(request)
        except Exception:
            took = (time.time() - start) * 1000.0
            _access_logger.exception(
                "%s %s -> 500 %.1fms", request.method, request.url.path, took
            )
            return _error(500, "internal_error")
        took = (time.time() - start) * 1000.0
        _access_logger.info(
            "%s %s -> %s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            took,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return _error(404, "not_found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "invalid_body")

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        if cfg.api_id <= 0 or not cfg.api_hash:
            logger.warning("telegram api credentials are not configured")

    @app.post("/start-session")
    async def start_session(request: Request, raw_payload: Any = Body(None)):
        unauthorized = _enforce_admin(request, "/start-session")
        if unauthorized is not None:
            return unauthorized
        try:
            payload = _parse_body(StartSessionRequest, raw_payload)
        except _InvalidBody as exc:
            return _error(400, str(exc))
        if payload.id:
            require_credentials()
        try:
            result = await manager.start_session(payload.id)
        except SessionError as exc:
            return _session_error(exc)
        return JSONResponse(result.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/send-message")
    async def send_message(request: Request, raw_payload: Any = Body(None)):
        unauthorized = _enforce_admin(request, "/send-message")
        if unauthorized is not None:
            return unauthorized
        try:
            payload = _parse_body(SendMessageRequest, raw_payload)
        except _InvalidBody as exc:
            return _error(400, str(exc))
        try:
            await manager.send_message(
                payload.id,
                payload.to,
                payload.message,
                file_name=payload.file_name,
                file_data=payload.file_data,
            )
        except SessionError as exc:
            return _session_error(exc)
        return JSONResponse({"status": "sent"}, headers=dict(NO_STORE_HEADERS))

    @app.post("/logout")
    async def logout(request: Request, raw_payload: Any = Body(None)):
        unauthorized = _enforce_admin(request, "/logout")
        if unauthorized is not None:
            return unauthorized
        try:
            payload = _parse_body(LogoutRequest, raw_payload)
        except _InvalidBody as exc:
            return _error(400, str(exc))
        try:
            await manager.logout(payload.id)
        except SessionError as exc:
            return _session_error(exc)
        return JSONResponse({"status": "logged out"}, headers=dict(NO_STORE_HEADERS))

    @app.get("/health")
    async def health():
        try:
            stats = manager.stats_snapshot()
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
            stats = {}
        return {"ok": True, "sessions": int(stats.get("sessions", 0) or 0)}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
