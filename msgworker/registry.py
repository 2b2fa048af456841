from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .client import MessagingClient


@dataclass(slots=True)
class Session:
    """Per-identity state bound 1:1 to a messaging client handle."""

    id: str
    client: MessagingClient
    ready: bool = False
    initializing: bool = True
    sending: bool = False
    # Outcome of the StartSession currently waiting on the pairing race.
    pending_start: Optional[asyncio.Future[Optional[str]]] = None


class SessionRegistry:
    """Process-wide ``id -> Session`` store.

    Sessions live until they are removed explicitly; there is no eviction.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session_id: str, session: Session) -> None:
        with self._lock:
            self._sessions[session_id] = session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = ["Session", "SessionRegistry"]
