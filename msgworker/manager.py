from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .client import MessageMedia, MessagingClient
from .metrics import (
    AUTH_FAILURE_TOTAL,
    EVENT_ERRORS,
    SEND_TOTAL,
    SESSIONS_ACTIVE,
    SESSION_START_TOTAL,
    TEARDOWN_TOTAL,
)
from .registry import Session, SessionRegistry


LOGGER = logging.getLogger("msgworker")

ALREADY_AUTHENTICATED = "Already authenticated"

ClientFactory = Callable[[str], MessagingClient]


class SessionError(Exception):
    """Base class for failures reported back to the caller."""

    status_code = 500
    error = "session_error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.error
        super().__init__(self.detail)


class InvalidRequestError(SessionError):
    status_code = 400
    error = "missing_fields"


class SessionConflictError(SessionError):
    status_code = 409
    error = "operation_in_progress"


class SessionNotFoundError(SessionError):
    status_code = 404
    error = "session_not_found"


class SendFailedError(SessionError):
    """Raised when the messaging client rejects a send; the session stays usable."""

    status_code = 500
    error = "send_failed"


@dataclass(slots=True)
class StartResult:
    qr: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.qr is None

    def to_payload(self) -> dict[str, Any]:
        if self.qr is not None:
            return {"qr": self.qr}
        return {"message": ALREADY_AUTHENTICATED}


class SessionManager:
    """Create, race, serialize and destroy per-identity messaging sessions.

    ``initializing`` and ``sending`` act as per-session try-locks: a second
    operation of the same kind is rejected with :class:`SessionConflictError`
    instead of being queued.  Flags are checked and set without an
    intervening ``await`` so the check-and-set is atomic on the event loop.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        registry: Optional[SessionRegistry] = None,
    ) -> None:
        self._client_factory = client_factory
        self._registry = registry if registry is not None else SessionRegistry()
        self._tasks: set[asyncio.Future[Any]] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def stats_snapshot(self) -> Dict[str, int]:
        return {"sessions": len(self._registry)}

    def _update_metrics(self) -> None:
        SESSIONS_ACTIVE.set(len(self._registry))

    def _spawn(self, awaitable: Awaitable[Any], *, stage: str, session_id: str) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(fut: asyncio.Future[Any]) -> None:
            self._tasks.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                EVENT_ERRORS.labels(stage).inc()
                LOGGER.error(
                    "stage=%s_failed session_id=%s error=%s",
                    stage,
                    session_id,
                    exc,
                    exc_info=exc,
                )

        task.add_done_callback(_done)
        return task

    def _create_session(self, session_id: str) -> Session:
        try:
            client = self._client_factory(session_id)
        except ValueError as exc:
            raise InvalidRequestError("invalid_id") from exc

        session = Session(id=session_id, client=client)
        self._registry.put(session_id, session)
        self._update_metrics()

        def _on_ready(*_: Any) -> None:
            session.ready = True
            session.initializing = False
            LOGGER.info("stage=ready session_id=%s", session_id)

        def _on_disconnected(reason: Optional[str] = None, *_: Any) -> None:
            LOGGER.warning(
                "stage=disconnected session_id=%s reason=%s", session_id, reason
            )
            self._spawn(
                self._teardown_if_current(session, reason="disconnected"),
                stage="teardown",
                session_id=session_id,
            )

        def _on_auth_failure(reason: Optional[str] = None, *_: Any) -> None:
            AUTH_FAILURE_TOTAL.inc()
            LOGGER.error("stage=auth_failure session_id=%s reason=%s", session_id, reason)

        client.on("ready", _on_ready)
        client.on("disconnected", _on_disconnected)
        client.on("auth_failure", _on_auth_failure)
        self._spawn(self._run_initialize(session), stage="initialize", session_id=session_id)
        LOGGER.info("stage=session_created session_id=%s", session_id)
        return session

    async def _run_initialize(self, session: Session) -> None:
        try:
            await session.client.initialize()
        except Exception as exc:
            EVENT_ERRORS.labels("initialize").inc()
            LOGGER.error(
                "stage=initialize_failed session_id=%s error=%s",
                session.id,
                exc,
                exc_info=exc,
            )
            await self._teardown_if_current(session, reason="initialize_failed")

    async def _pairing_race(self, session: Session) -> Optional[str]:
        """Wait for the first of ``qr`` (artifact) or ``ready`` (``None``)."""
        client = session.client
        outcome: asyncio.Future[Optional[str]] = asyncio.get_running_loop().create_future()

        def _on_qr(artifact: str, *_: Any) -> None:
            client.remove_listener("ready", _on_ready)
            if not outcome.done():
                outcome.set_result(artifact)

        def _on_ready(*_: Any) -> None:
            client.remove_listener("qr", _on_qr)
            if not outcome.done():
                outcome.set_result(None)

        client.once("qr", _on_qr)
        client.once("ready", _on_ready)
        session.pending_start = outcome
        try:
            return await outcome
        finally:
            session.pending_start = None
            client.remove_listener("qr", _on_qr)
            client.remove_listener("ready", _on_ready)

    async def start_session(self, session_id: Optional[str]) -> StartResult:
        if not session_id:
            SESSION_START_TOTAL.labels("invalid").inc()
            raise InvalidRequestError("missing_id")

        session = self._registry.get(session_id)
        if session is None:
            session = self._create_session(session_id)
        else:
            if session.initializing:
                SESSION_START_TOTAL.labels("conflict").inc()
                LOGGER.info("stage=start_conflict session_id=%s", session_id)
                raise SessionConflictError("initialization_in_progress")
            if session.ready:
                SESSION_START_TOTAL.labels("authenticated").inc()
                return StartResult()
            session.initializing = True

        try:
            artifact = await self._pairing_race(session)
        except SessionNotFoundError:
            SESSION_START_TOTAL.labels("closed").inc()
            LOGGER.info("stage=start_closed session_id=%s", session_id)
            raise
        finally:
            session.initializing = False

        if artifact is None:
            SESSION_START_TOTAL.labels("authenticated").inc()
            LOGGER.info("stage=start_authenticated session_id=%s", session_id)
            return StartResult()
        SESSION_START_TOTAL.labels("qr").inc()
        LOGGER.info("stage=start_qr session_id=%s", session_id)
        return StartResult(qr=artifact)

    async def send_message(
        self,
        session_id: Optional[str],
        target: Optional[str],
        body: Optional[str] = None,
        *,
        file_name: Optional[str] = None,
        file_data: Optional[str] = None,
    ) -> None:
        if not session_id or not target or (not body and not file_data):
            SEND_TOTAL.labels("invalid").inc()
            raise InvalidRequestError("missing_fields")

        session = self._registry.get(session_id)
        if session is None or not session.ready:
            SEND_TOTAL.labels("not_found").inc()
            raise SessionNotFoundError()
        if session.sending:
            SEND_TOTAL.labels("conflict").inc()
            raise SessionConflictError("send_in_progress")

        session.sending = True
        try:
            if file_data:
                media = MessageMedia.from_file(file_name, file_data)
                await session.client.send_message(target, media, {"caption": body})
            else:
                await session.client.send_message(target, body)
        except Exception as exc:
            SEND_TOTAL.labels("failed").inc()
            LOGGER.error(
                "stage=send_fail session_id=%s to=%s error=%s", session_id, target, exc
            )
            raise SendFailedError(str(exc) or SendFailedError.error) from exc
        finally:
            session.sending = False

        SEND_TOTAL.labels("sent").inc()
        LOGGER.info("stage=send_ok session_id=%s to=%s", session_id, target)

    async def logout(self, session_id: Optional[str]) -> None:
        if not session_id:
            raise InvalidRequestError("missing_id")
        if not await self._teardown(session_id, reason="logout"):
            raise SessionNotFoundError()

    async def _teardown_if_current(self, session: Session, *, reason: str) -> None:
        if self._registry.get(session.id) is not session:
            LOGGER.info("stage=teardown_skip session_id=%s reason=stale", session.id)
            return
        await self._teardown(session.id, reason=reason)

    async def _teardown(self, session_id: str, *, reason: str) -> bool:
        # Registry removal comes first; everything after it is best-effort.
        session = self._registry.remove(session_id)
        if session is None:
            return False
        session.ready = False
        self._update_metrics()
        TEARDOWN_TOTAL.labels(reason).inc()

        pending = session.pending_start
        if pending is not None and not pending.done():
            pending.set_exception(SessionNotFoundError("session_closed"))

        client = session.client
        try:
            await client.destroy()
        except Exception as exc:
            EVENT_ERRORS.labels("destroy").inc()
            LOGGER.warning(
                "stage=destroy_failed session_id=%s error=%s", session_id, exc
            )

        removed_storage = False
        data_path = getattr(getattr(client, "auth", None), "data_path", None)
        if data_path is not None:
            try:
                shutil.rmtree(data_path)
                removed_storage = True
            except FileNotFoundError:
                pass
            except OSError as exc:
                EVENT_ERRORS.labels("storage_cleanup").inc()
                LOGGER.error(
                    "stage=storage_cleanup_failed session_id=%s path=%s error=%s",
                    session_id,
                    data_path,
                    exc,
                )

        LOGGER.info(
            "stage=teardown session_id=%s reason=%s removed_storage=%s",
            session_id,
            reason,
            removed_storage,
        )
        return True

    async def shutdown(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()


__all__ = [
    "ALREADY_AUTHENTICATED",
    "ClientFactory",
    "InvalidRequestError",
    "SendFailedError",
    "SessionConflictError",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "StartResult",
]
