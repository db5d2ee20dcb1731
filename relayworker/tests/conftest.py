from __future__ import annotations

import prometheus_client

prometheus_client.REGISTRY._names_to_collectors.clear()
prometheus_client.REGISTRY._collector_to_names.clear()

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest

from relayworker.auth_store import AuthStore
from relayworker.errors import TransportError
from relayworker.manager import SessionLifecycleManager
from relayworker.relay import EventRelay
from relayworker.storage import AssetStorage
from relayworker.transport import (
    ConnectionOpened,
    Conversation,
    CredentialsChanged,
    InboundMessage,
    PairingCodeAvailable,
    StoredCredentials,
    Transport,
)


WEBHOOK_URL = "http://app.test/webhook/messages"
CONNECT_URL = "http://app.test/webhook/connected"
UPLOAD_URL = "http://storage.test/upload"
PUBLIC_URL = "http://cdn.test/media"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeTransport(Transport):
    """Scripted transport with WhatsApp-style identities."""

    source = "whatsapp"

    def __init__(
        self,
        account_id: str,
        credentials: Optional[StoredCredentials],
        network: "FakeNetwork",
    ) -> None:
        super().__init__(account_id)
        self.credentials = credentials
        self.network = network
        self.connected = False
        self.closed = False
        self.logged_out = False
        self.sent: list[tuple[str, str]] = []
        self.media: dict[str, bytes] = {}
        self.conversations: list[Conversation] = []

    def is_alias(self, identity: Optional[str]) -> bool:
        return bool(identity) and identity.endswith("@lid")

    def normalize_destination(self, destination: str) -> str:
        cleaned = destination.strip()
        if "@" in cleaned:
            return cleaned
        return f"{cleaned}@s.whatsapp.net"

    async def connect(self) -> None:
        self.network.connects += 1
        if self.network.fail_connect:
            raise TransportError("connection refused")
        self.connected = True
        if not self.network.auto_handshake:
            return
        if self.credentials is not None and self.credentials.registered:
            self.emit(ConnectionOpened(identity=self.network.identity))
        else:
            self.emit(CredentialsChanged(blob="partial-keys", registered=False))
            self.emit(PairingCodeAvailable(code=f"2@ref-{self.network.connects}"))

    async def send_text(self, destination: str, text: str) -> str:
        if self.network.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append((destination, text))
        return f"MSG{len(self.sent)}"

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    async def download_media(self, message: InboundMessage) -> Optional[bytes]:
        if message.id not in self.media:
            raise RuntimeError("media expired")
        return self.media[message.id]

    async def list_conversations(self) -> list[Conversation]:
        return list(self.conversations)


class FakeNetwork:
    def __init__(self) -> None:
        self.transports: dict[str, list[FakeTransport]] = {}
        self.connects = 0
        self.fail_connect = False
        self.fail_send = False
        self.auto_handshake = True
        self.identity = "5511999990000:7@s.whatsapp.net"

    def factory(
        self, account_id: str, credentials: Optional[StoredCredentials]
    ) -> FakeTransport:
        transport = FakeTransport(account_id, credentials, self)
        self.transports.setdefault(account_id, []).append(transport)
        return transport

    def latest(self, account_id: str) -> FakeTransport:
        return self.transports[account_id][-1]

    def created(self, account_id: str) -> int:
        return len(self.transports.get(account_id, []))


class WebhookRecorder:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.webhook_status = 200
        self.upload_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "storage.test":
            return httpx.Response(self.upload_status)
        return httpx.Response(self.webhook_status, json={"ok": True})

    def payloads(self, url: str = WEBHOOK_URL) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if str(r.url) == url]

    def uploads(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "storage.test"]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def auth_store(tmp_path: Path) -> AuthStore:
    return AuthStore(tmp_path / "auth")


@pytest.fixture
def make_relay(webhook: WebhookRecorder):
    clients: list[httpx.AsyncClient] = []

    def _make(*, with_storage: bool = True) -> EventRelay:
        http = httpx.AsyncClient(transport=httpx.MockTransport(webhook.handler))
        clients.append(http)
        storage = None
        if with_storage:
            storage = AssetStorage(
                http, upload_url=UPLOAD_URL, public_url=PUBLIC_URL, secret="s3cret"
            )
        return EventRelay(
            http,
            webhook_url=WEBHOOK_URL,
            webhook_secret="s3cret",
            connect_webhook_url=CONNECT_URL,
            storage=storage,
        )

    return _make


@pytest.fixture
async def make_manager(fake_network: FakeNetwork, auth_store: AuthStore, make_relay):
    managers: list[SessionLifecycleManager] = []

    def _make(**overrides: Any) -> SessionLifecycleManager:
        options: dict[str, Any] = {
            "max_sessions": 5,
            "pairing_timeout": 0.2,
            "max_reconnect_attempts": 3,
            "reconnect_base_delay": 0.01,
            "reconnect_max_delay": 0.05,
            "init_timeout": 1.0,
            "logout_timeout": 0.5,
            "sweep_interval": 60.0,
        }
        options.update(overrides)
        manager = SessionLifecycleManager(
            auth_store=auth_store,
            transport_factory=fake_network.factory,
            relay=make_relay(),
            **options,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        await manager.shutdown()
