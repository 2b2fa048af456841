from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from fastapi.testclient import TestClient

from msgworker.client import LocalAuth, MessagingClient


class FakeClient(MessagingClient):
    """Scripted stand-in for the Telethon client."""

    def __init__(self, client_id: str, data_dir: Path) -> None:
        super().__init__(LocalAuth(client_id, data_dir))
        self.script: list[tuple[str, tuple[Any, ...]]] = []
        self.initialize_calls = 0
        self.destroy_calls = 0
        self.sent: list[tuple[str, Any, Any]] = []
        self.send_error: Exception | None = None
        self.destroy_error: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self.init_error: Exception | None = None
        self.init_gate: asyncio.Event | None = None
        self.init_cancelled = False

    async def initialize(self) -> None:
        self.initialize_calls += 1
        self.auth.prepare()
        await asyncio.sleep(0)
        if self.init_gate is not None:
            try:
                await self.init_gate.wait()
            except asyncio.CancelledError:
                self.init_cancelled = True
                raise
        if self.init_error is not None:
            raise self.init_error
        for event, args in self.script:
            self.emit(event, *args)

    async def send_message(self, target, payload, options=None):
        self.sent.append((target, payload, options))
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        return {"message_id": len(self.sent)}

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.destroy_error is not None:
            raise self.destroy_error


class FakeClientFactory:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.script: list[tuple[str, tuple[Any, ...]]] = []
        self.init_error: Exception | None = None
        self.init_gate: asyncio.Event | None = None
        self.clients: dict[str, list[FakeClient]] = {}

    def __call__(self, client_id: str) -> FakeClient:
        client = FakeClient(client_id, self.data_dir)
        client.script = list(self.script)
        client.init_error = self.init_error
        client.init_gate = self.init_gate
        self.clients.setdefault(client_id, []).append(client)
        return client

    def latest(self, client_id: str) -> FakeClient:
        return self.clients[client_id][-1]


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def client_factory(tmp_path: Path) -> FakeClientFactory:
    return FakeClientFactory(tmp_path)


def make_config(tmp_path: Path, **overrides: Any) -> SimpleNamespace:
    values: dict[str, Any] = {
        "api_id": 1,
        "api_hash": "hash",
        "sessions_dir": tmp_path,
        "device_model": "Test",
        "system_version": "1.0",
        "app_version": "1.0",
        "lang_code": "en",
        "system_lang_code": "en",
        "qr_ttl": 120.0,
        "port": 3000,
        "max_body_bytes": 10_000_000,
        "admin_token": "",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def worker_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, client_factory: FakeClientFactory):
    import msgworker.api as api

    def _build(**overrides: Any):
        cfg = make_config(tmp_path, **overrides)
        monkeypatch.setattr(api, "worker_config", lambda: cfg)
        monkeypatch.setattr(api, "TelethonClientFactory", lambda _cfg: client_factory)
        return api.create_app()

    return _build


@pytest.fixture
def worker_client(worker_app, client_factory: FakeClientFactory):
    app = worker_app()
    with TestClient(app) as client:
        yield client, app.state.session_manager, client_factory
