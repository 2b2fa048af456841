"""Messaging-client collaborator used by the session manager.

The manager only relies on :class:`MessagingClient`: it issues commands
(``initialize``, ``send_message``, ``destroy``) and subscribes to the events
``ready``, ``qr``, ``disconnected`` and ``auth_failure``.  The Telethon-backed
implementation below turns Telegram's QR login flow into those events.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import contextlib
import inspect
import io
import logging
import mimetypes
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from telethon import TelegramClient
from telethon.errors import RPCError, SessionPasswordNeededError

from config import WorkerConfig

from .metrics import EVENT_ERRORS


LOGGER = logging.getLogger("msgworker.client")

DEFAULT_MIMETYPE = "application/octet-stream"
_CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_PEER_ID_RE = re.compile(r"^-?\d+$")


@dataclass(slots=True)
class _Listener:
    callback: Callable[..., Any]
    once: bool = False


class EventEmitter:
    """Minimal named-event dispatcher.

    Coroutine listeners are scheduled on the running loop; a failing listener
    is logged and does not prevent the remaining listeners from running.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, list[_Listener]] = {}
        self._pending: set[asyncio.Future[Any]] = set()

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[..., Any]:
        self._listeners.setdefault(event, []).append(_Listener(callback))
        return callback

    def once(self, event: str, callback: Callable[..., Any]) -> Callable[..., Any]:
        self._listeners.setdefault(event, []).append(_Listener(callback, once=True))
        return callback

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        for index, listener in enumerate(listeners):
            if listener.callback is callback:
                del listeners[index]
                break
        if not listeners:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            return False
        for listener in listeners:
            if listener.once:
                self.remove_listener(event, listener.callback)
        for listener in listeners:
            try:
                result = listener.callback(*args)
            except Exception:
                EVENT_ERRORS.labels("listener").inc()
                LOGGER.exception("stage=listener_failed event=%s", event)
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._listener_done)
        return True

    def _listener_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            EVENT_ERRORS.labels("listener").inc()
            LOGGER.error("stage=listener_failed error=%s", exc, exc_info=exc)


class LocalAuth:
    """Per-identity credential storage under a shared sessions root."""

    def __init__(self, client_id: str, data_dir: Path) -> None:
        if not client_id or not _CLIENT_ID_RE.match(client_id):
            raise ValueError("invalid_client_id")
        self.client_id = client_id
        self.data_path = Path(data_dir) / f"session-{client_id}"

    @property
    def session_path(self) -> Path:
        return self.data_path / "client.session"

    def prepare(self) -> None:
        try:
            self.data_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning(
                "event=session_dir_prepare_failed path=%s error=%s",
                self.data_path,
                exc,
            )
            return
        try:
            os.chmod(self.data_path, 0o700)
        except OSError as exc:
            LOGGER.warning(
                "event=session_dir_chmod_failed path=%s error=%s",
                self.data_path,
                exc,
            )


@dataclass(slots=True)
class MessageMedia:
    """Attachment payload: base64 data tagged with its content type."""

    mimetype: str
    data: str
    filename: Optional[str] = None

    @classmethod
    def from_file(cls, filename: Optional[str], data: str) -> "MessageMedia":
        mimetype = None
        if filename:
            mimetype, _ = mimetypes.guess_type(filename)
        return cls(mimetype=mimetype or DEFAULT_MIMETYPE, data=data, filename=filename)

    def decode(self) -> bytes:
        return base64.b64decode(self.data)


class MessagingClient(EventEmitter, abc.ABC):
    """Contract between the session manager and a messaging backend."""

    def __init__(self, auth: LocalAuth) -> None:
        super().__init__()
        self.auth = auth

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Connect and authenticate; progress is reported through events."""

    @abc.abstractmethod
    async def send_message(
        self,
        target: str,
        payload: str | MessageMedia,
        options: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...

    @abc.abstractmethod
    async def destroy(self) -> None:
        ...


def _resolve_entity(target: str) -> int | str:
    cleaned = target.strip()
    if _PEER_ID_RE.match(cleaned):
        return int(cleaned)
    return cleaned


class TelethonMessagingClient(MessagingClient):
    """Telegram user client driven through Telethon's QR login."""

    def __init__(
        self,
        auth: LocalAuth,
        *,
        api_id: int,
        api_hash: str,
        device_model: str,
        system_version: str,
        app_version: str,
        lang_code: str,
        system_lang_code: str,
        qr_ttl: float = 120.0,
    ) -> None:
        super().__init__(auth)
        self._api_id = api_id
        self._api_hash = api_hash
        self._device_model = device_model
        self._system_version = system_version
        self._app_version = app_version
        self._lang_code = lang_code
        self._system_lang_code = system_lang_code
        self._qr_ttl = qr_ttl
        self._client: Optional[TelegramClient] = None
        self._init_task: Optional[asyncio.Task[Any]] = None
        self._watcher: Optional[asyncio.Task[Any]] = None
        self._destroyed = False

    def _build_client(self) -> TelegramClient:
        self.auth.prepare()
        return TelegramClient(
            str(self.auth.session_path),
            self._api_id,
            self._api_hash,
            device_model=self._device_model,
            system_version=self._system_version,
            app_version=self._app_version,
            lang_code=self._lang_code,
            system_lang_code=self._system_lang_code,
        )

    async def initialize(self) -> None:
        self._init_task = asyncio.current_task()
        client = self._build_client()
        self._client = client
        await client.connect()
        if await client.is_user_authorized():
            LOGGER.info("stage=authorized client_id=%s event=session_resume", self.auth.client_id)
        elif not await self._qr_login(client):
            return
        self._mark_ready(client)

    def _qr_timeout(self, qr_login: Any) -> float:
        timeout = self._qr_ttl
        expires_raw = getattr(qr_login, "expires", None)
        try:
            remaining = float(expires_raw.timestamp()) - time.time()  # type: ignore[union-attr]
        except Exception:
            return timeout
        return max(1.0, min(timeout, remaining))

    async def _qr_login(self, client: TelegramClient) -> bool:
        qr_login = await client.qr_login()
        while not self._destroyed:
            LOGGER.info("stage=qr_new client_id=%s", self.auth.client_id)
            self.emit("qr", qr_login.url)
            try:
                await qr_login.wait(timeout=self._qr_timeout(qr_login))
            except asyncio.TimeoutError:
                LOGGER.info("stage=qr_expired client_id=%s", self.auth.client_id)
                await qr_login.recreate()
                continue
            except SessionPasswordNeededError:
                EVENT_ERRORS.labels("needs_2fa").inc()
                LOGGER.warning("stage=needs_2fa client_id=%s", self.auth.client_id)
                self.emit("auth_failure", "two_factor_required")
                return False
            except RPCError as exc:
                EVENT_ERRORS.labels("rpc_error").inc()
                LOGGER.error(
                    "stage=qr_fail client_id=%s error=%s", self.auth.client_id, exc
                )
                self.emit("auth_failure", str(exc) or "telegram_error")
                return False
            LOGGER.info("stage=qr_scanned client_id=%s", self.auth.client_id)
            return True
        return False

    def _mark_ready(self, client: TelegramClient) -> None:
        with contextlib.suppress(Exception):
            session_obj = getattr(client, "session", None)
            if session_obj is not None:
                session_obj.save()
        self.emit("ready")
        self._watcher = asyncio.ensure_future(self._watch_disconnect(client))

    async def _watch_disconnect(self, client: TelegramClient) -> None:
        try:
            await client.disconnected
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or "connection_error"
        else:
            reason = "connection_closed"
        if self._destroyed:
            return
        LOGGER.warning(
            "stage=disconnected client_id=%s reason=%s", self.auth.client_id, reason
        )
        self.emit("disconnected", reason)

    def _require_client(self) -> TelegramClient:
        if self._client is None or self._destroyed:
            raise RuntimeError("client_not_initialized")
        return self._client

    async def send_message(
        self,
        target: str,
        payload: str | MessageMedia,
        options: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = self._require_client()
        entity = _resolve_entity(target)
        options = options or {}
        if isinstance(payload, MessageMedia):
            buffer = io.BytesIO(payload.decode())
            buffer.name = payload.filename or "file"
            return await client.send_file(
                entity,
                file=buffer,
                caption=options.get("caption") or "",
                force_document=not payload.mimetype.startswith("image/"),
            )
        return await client.send_message(entity, payload)

    async def destroy(self) -> None:
        self._destroyed = True
        current = asyncio.current_task()
        for task in (self._watcher, self._init_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._watcher = None
        self._init_task = None
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()


class TelethonClientFactory:
    """Build :class:`TelethonMessagingClient` instances from the worker config."""

    def __init__(self, cfg: WorkerConfig) -> None:
        self._cfg = cfg

    def __call__(self, client_id: str) -> TelethonMessagingClient:
        cfg = self._cfg
        return TelethonMessagingClient(
            LocalAuth(client_id, cfg.sessions_dir),
            api_id=cfg.api_id,
            api_hash=cfg.api_hash,
            device_model=cfg.device_model,
            system_version=cfg.system_version,
            app_version=cfg.app_version,
            lang_code=cfg.lang_code,
            system_lang_code=cfg.system_lang_code,
            qr_ttl=cfg.qr_ttl,
        )


__all__ = [
    "DEFAULT_MIMETYPE",
    "EventEmitter",
    "LocalAuth",
    "MessageMedia",
    "MessagingClient",
    "TelethonClientFactory",
    "TelethonMessagingClient",
]
