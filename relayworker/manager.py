from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Coroutine, Dict, Optional, cast

import httpx

from .auth_store import AuthStore
from .config import RelayConfig
from .errors import (
    CapacityError,
    NotConnectedError,
    NotFoundError,
    PairingTimeoutError,
    RelayError,
    TransportError,
)
from .metrics import (
    PAIRING_EXPIRED_TOTAL,
    PAIRING_START_TOTAL,
    RECONNECT_TOTAL,
    RELAY_ERRORS,
    SESSIONS_CONNECTING,
    SESSIONS_OPEN,
    SESSIONS_PAIRING,
    TEARDOWN_TOTAL,
)
from .pairing import PairingArtifact, build_artifact
from .registry import LIVE_STATES, ConnectionState, SessionRecord, SessionRegistry
from .relay import EventRelay
from .storage import AssetStorage
from .sweeper import MaintenanceSweeper
from .telegram import telethon_factory
from .transport import (
    ConnectionClosed,
    ConnectionOpened,
    ContactsUpdated,
    Conversation,
    CredentialsChanged,
    MessagesReceived,
    PairingCodeAvailable,
    Transport,
    TransportEvent,
    TransportFactory,
    identity_handle,
)


LOGGER = logging.getLogger("relayworker")

_ACTIVE_STATES = frozenset({ConnectionState.OPEN, ConnectionState.CONNECTING})


@dataclass(slots=True)
class InitResult:
    account_id: str
    connected: bool
    identity: Optional[str] = None
    pairing: Optional[PairingArtifact] = None
    pairing_timeout: Optional[float] = None
    already_connected: bool = False

    def to_payload(self) -> dict[str, Any]:
        if self.connected:
            return {
                "success": True,
                "connected": True,
                "already_connected": self.already_connected,
                "identity": identity_handle(self.identity),
                "state": "CONNECTED",
            }
        payload: dict[str, Any] = {
            "success": True,
            "connected": False,
            "session_id": self.account_id,
            "qr_code": None,
            "timeout_seconds": int(self.pairing_timeout) if self.pairing_timeout else None,
        }
        if self.pairing is not None:
            payload.update(self.pairing.to_payload())
        return payload


@dataclass(slots=True)
class StatusSnapshot:
    account_id: str
    connected: bool
    state: str
    identity: Optional[str] = None
    qr_code: Optional[str] = None
    qr_valid_until: Optional[int] = None
    reconnect_attempts: int = 0

    @classmethod
    def from_record(cls, record: Optional[SessionRecord], account_id: str) -> "StatusSnapshot":
        if record is None:
            return cls(
                account_id=account_id,
                connected=False,
                state=ConnectionState.CLOSED.value,
            )
        pairing = record.pairing if record.state == ConnectionState.PAIRING_PENDING else None
        return cls(
            account_id=account_id,
            connected=record.state == ConnectionState.OPEN,
            state=record.state.value,
            identity=record.identity,
            qr_code=pairing.rendered_code if pairing else None,
            qr_valid_until=int(pairing.expires_at * 1000) if pairing else None,
            reconnect_attempts=record.reconnect_attempts,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "account_id": self.account_id,
            "connected": self.connected,
            "state": "CONNECTED" if self.connected else self.state,
            "reconnect_attempts": self.reconnect_attempts,
        }
        if self.connected:
            payload["identity"] = identity_handle(self.identity)
        else:
            payload["qr_code"] = self.qr_code
            payload["qr_valid_until"] = self.qr_valid_until
        return payload


class SessionLifecycleManager:
    """Own every account session: admission, pairing, reconnects, teardown."""

    def __init__(
        self,
        *,
        auth_store: AuthStore,
        transport_factory: TransportFactory,
        relay: EventRelay,
        max_sessions: int = 5,
        pairing_timeout: float = 180.0,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 2.0,
        reconnect_max_delay: float = 10.0,
        init_timeout: float = 60.0,
        logout_timeout: float = 10.0,
        sweep_interval: float = 300.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._auth_store = auth_store
        self._transport_factory = transport_factory
        self._relay = relay
        self._max_sessions = max_sessions
        self._pairing_timeout = pairing_timeout
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._init_timeout = init_timeout
        self._logout_timeout = logout_timeout
        self._http = http
        self._registry = SessionRegistry()
        self._background: set[asyncio.Task[Any]] = set()
        self._sweeper = MaintenanceSweeper(self.reap_stranded, interval=sweep_interval)
        self._started = False

    @classmethod
    def from_config(
        cls,
        cfg: RelayConfig,
        *,
        transport_factory: Optional[TransportFactory] = None,
    ) -> "SessionLifecycleManager":
        http = httpx.AsyncClient(timeout=cfg.http_timeout)
        storage: Optional[AssetStorage] = None
        if cfg.storage_upload_url:
            storage = AssetStorage(
                http,
                upload_url=cfg.storage_upload_url,
                public_url=cfg.storage_public_url,
                secret=cfg.webhook_secret,
            )
        relay = EventRelay(
            http,
            webhook_url=cfg.webhook_url,
            webhook_secret=cfg.webhook_secret,
            connect_webhook_url=cfg.connect_webhook_url,
            storage=storage,
        )
        return cls(
            auth_store=AuthStore(cfg.auth_dir),
            transport_factory=transport_factory or telethon_factory(cfg),
            relay=relay,
            max_sessions=cfg.max_sessions,
            pairing_timeout=cfg.pairing_timeout,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            reconnect_base_delay=cfg.reconnect_base_delay,
            reconnect_max_delay=cfg.reconnect_max_delay,
            init_timeout=cfg.init_timeout,
            logout_timeout=cfg.logout_timeout,
            sweep_interval=cfg.sweep_interval,
            http=http,
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def pairing_timeout(self) -> float:
        return self._pairing_timeout

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._sweeper.start()

    async def shutdown(self) -> None:
        await self._sweeper.stop()
        for record in self._registry.records():
            async with self._registry.lock(record.account_id):
                await self._teardown_locked(
                    record, reason="shutdown", erase_credentials=False, logout=False
                )
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
        self._started = False
        self._update_metrics()

    def reconnect_delay(self, attempt: int) -> float:
        return min(attempt * self._reconnect_base_delay, self._reconnect_max_delay)

    # -- control surface operations -------------------------------------------------

    async def init(self, account_id: str) -> InitResult:
        account_id = _require_account(account_id)
        lock = self._registry.lock(account_id)
        async with lock:
            record = self._registry.get(account_id)
            if record is not None and record.state == ConnectionState.OPEN:
                LOGGER.info("stage=init_skip account_id=%s reason=already_open", account_id)
                return InitResult(
                    account_id=account_id,
                    connected=True,
                    identity=record.identity,
                    already_connected=True,
                )

            active = self._registry.count_open(exclude=account_id)
            if record is None and active >= self._max_sessions:
                LOGGER.warning(
                    "stage=init_rejected account_id=%s reason=session_limit active=%s limit=%s",
                    account_id,
                    active,
                    self._max_sessions,
                )
                raise CapacityError(active, self._max_sessions)

            if record is not None:
                LOGGER.info(
                    "stage=init_replace account_id=%s previous_state=%s",
                    account_id,
                    record.state.value,
                )
                await self._teardown_locked(
                    record, reason="reinit", erase_credentials=False, logout=False
                )

            stored = self._auth_store.load(account_id)
            if stored is not None and not stored.registered:
                LOGGER.info("stage=init_discard_partial_credentials account_id=%s", account_id)
                self._auth_store.delete(account_id)
                stored = None

            transport = self._transport_factory(account_id, stored)
            record = self._registry.create(account_id, transport=transport)
            record.driver = self._spawn(
                self._drive(record, transport), name=f"relay-driver-{account_id}"
            )
            self._update_metrics()
            LOGGER.info(
                "stage=init_connect account_id=%s generation=%s resume=%s",
                account_id,
                record.generation,
                stored is not None,
            )
            try:
                await asyncio.wait_for(transport.connect(), timeout=self._init_timeout)
            except Exception as exc:
                LOGGER.error(
                    "stage=init_connect_failed account_id=%s error=%s", account_id, exc
                )
                await self._teardown_locked(
                    record, reason="connect_failed", erase_credentials=False, logout=False
                )
                if isinstance(exc, TransportError):
                    raise
                raise TransportError(str(exc) or "connect_failed") from exc
            ready = record.ready

        try:
            return await asyncio.wait_for(asyncio.shield(ready), timeout=self._init_timeout)
        except asyncio.TimeoutError:
            pass
        async with lock:
            if not ready.done():
                LOGGER.warning("stage=init_timeout account_id=%s", account_id)
                await self._teardown_locked(
                    record, reason="init_timeout", erase_credentials=False, logout=False
                )
                raise TransportError("init_timeout")
        return ready.result()

    async def status(self, account_id: str) -> StatusSnapshot:
        account_id = _require_account(account_id)
        return StatusSnapshot.from_record(self._registry.get(account_id), account_id)

    async def send(self, account_id: str, destination: str, content: str) -> Dict[str, Any]:
        account_id = _require_account(account_id)
        record = self._registry.get(account_id)
        if record is None:
            raise NotFoundError(account_id)
        transport = record.transport
        if record.state != ConnectionState.OPEN or transport is None:
            raise NotConnectedError(account_id)
        target = transport.normalize_destination(destination)
        try:
            message_id = await transport.send_text(target, content)
        except RelayError:
            raise
        except Exception as exc:
            RELAY_ERRORS.labels("send").inc()
            LOGGER.exception("stage=send_fail account_id=%s to=%s", account_id, target)
            raise TransportError(str(exc) or "send_failed") from exc
        LOGGER.info(
            "stage=send_ok account_id=%s to=%s message_id=%s", account_id, target, message_id
        )
        return {"message_id": message_id}

    async def list_conversations(self, account_id: str) -> list[Conversation]:
        record = self._require_open(account_id)
        transport = cast(Transport, record.transport)
        try:
            return await transport.list_conversations()
        except RelayError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=list_conversations_fail account_id=%s", account_id)
            raise TransportError(str(exc) or "list_conversations_failed") from exc

    async def list_messages(
        self, account_id: str, conversation_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        record = self._require_open(account_id)
        return record.recent(conversation_id, limit)

    async def disconnect(self, account_id: str) -> bool:
        account_id = _require_account(account_id)
        async with self._registry.lock(account_id):
            record = self._registry.get(account_id)
            if record is None:
                removed = self._auth_store.delete(account_id)
                LOGGER.info(
                    "stage=disconnect_noop account_id=%s removed_credentials=%s",
                    account_id,
                    removed,
                )
                return False
            await self._teardown_locked(
                record, reason="disconnect", erase_credentials=True, logout=True
            )
            return True

    def stats_snapshot(self) -> Dict[str, int]:
        registry = self._registry
        return {
            "open": registry.count(ConnectionState.OPEN),
            "connecting": registry.count(ConnectionState.CONNECTING)
            + registry.count(ConnectionState.CLOSING),
            "pairing": registry.count(ConnectionState.PAIRING_PENDING),
            "total": len(registry),
            "max_sessions": self._max_sessions,
        }

    async def reap_stranded(self) -> int:
        reaped = 0
        for record in self._registry.records():
            if not self._is_stranded(record, time.time()):
                continue
            async with self._registry.lock(record.account_id):
                if not self._registry.is_current(record):
                    continue
                if not self._is_stranded(record, time.time()):
                    continue
                LOGGER.info(
                    "stage=sweep_reap account_id=%s state=%s",
                    record.account_id,
                    record.state.value,
                )
                await self._teardown_locked(
                    record, reason="sweep", erase_credentials=True, logout=True
                )
                reaped += 1
        return reaped

    # -- driver loop ----------------------------------------------------------------

    async def _drive(self, record: SessionRecord, transport: Transport) -> None:
        closed = await self._pump(record, transport)
        while closed is not None:
            delay = await self._on_closed(record, closed)
            if delay is None:
                return
            await asyncio.sleep(delay)
            reopened, closed = await self._reopen(record)
            if reopened is None:
                return
            if closed is None:
                closed = await self._pump(record, reopened)

    async def _pump(
        self, record: SessionRecord, transport: Transport
    ) -> Optional[ConnectionClosed]:
        while True:
            event = await transport.events.get()
            if isinstance(event, ConnectionClosed):
                return event
            if not self._owns(record, transport):
                return None
            if isinstance(event, MessagesReceived):
                await self._relay.relay(record, transport, event)
                continue
            async with self._registry.lock(record.account_id):
                if not self._owns(record, transport):
                    return None
                if not await self._apply_locked(record, transport, event):
                    return None

    def _owns(self, record: SessionRecord, transport: Transport) -> bool:
        return self._registry.is_current(record) and record.transport is transport

    async def _apply_locked(
        self, record: SessionRecord, transport: Transport, event: TransportEvent
    ) -> bool:
        account_id = record.account_id
        if isinstance(event, PairingCodeAvailable):
            if not self._registry.transition(
                record,
                {ConnectionState.CONNECTING, ConnectionState.PAIRING_PENDING},
                ConnectionState.PAIRING_PENDING,
                reason="pairing_code",
            ):
                return True
            try:
                artifact = build_artifact(account_id, event.code, ttl=self._pairing_timeout)
            except Exception as exc:
                LOGGER.exception("stage=qr_render_failed account_id=%s", account_id)
                record.fail(TransportError(f"pairing_render_failed:{exc}"))
                await self._teardown_locked(
                    record, reason="pairing_render_failed", erase_credentials=False, logout=False
                )
                return False
            if record.pairing is None:
                PAIRING_START_TOTAL.inc()
            record.pairing = artifact
            self._cancel_connect_deadline(record)
            self._arm_pairing_timer(record)
            record.resolve(
                InitResult(
                    account_id=account_id,
                    connected=False,
                    pairing=artifact,
                    pairing_timeout=self._pairing_timeout,
                )
            )
            LOGGER.info(
                "event=qr_new account_id=%s qr_valid_until=%s",
                account_id,
                int(artifact.expires_at * 1000),
            )
            self._update_metrics()
        elif isinstance(event, ConnectionOpened):
            if not self._registry.transition(
                record,
                {ConnectionState.CONNECTING, ConnectionState.PAIRING_PENDING},
                ConnectionState.OPEN,
                reason="connection_opened",
            ):
                return True
            self._cancel_pairing_timer(record)
            self._cancel_connect_deadline(record)
            record.pairing = None
            record.reconnect_attempts = 0
            record.identity = event.identity or transport.identity
            record.resolve(
                InitResult(account_id=account_id, connected=True, identity=record.identity)
            )
            LOGGER.info(
                "stage=authorized account_id=%s identity=%s",
                account_id,
                identity_handle(record.identity),
            )
            self._spawn(
                self._relay.notify_connected(account_id, record.identity),
                name=f"relay-notify-{account_id}",
            )
            self._update_metrics()
        elif isinstance(event, CredentialsChanged):
            try:
                self._auth_store.save(account_id, event.blob, registered=event.registered)
            except OSError as exc:
                RELAY_ERRORS.labels("credentials_save").inc()
                LOGGER.error(
                    "event=credentials_save_failed account_id=%s error=%s", account_id, exc
                )
        elif isinstance(event, ContactsUpdated):
            record.update_contacts(event.contacts)
        else:
            LOGGER.warning(
                "event=unknown_transport_event account_id=%s type=%s",
                account_id,
                type(event).__name__,
            )
        return True

    async def _on_closed(
        self, record: SessionRecord, closed: ConnectionClosed
    ) -> Optional[float]:
        account_id = record.account_id
        async with self._registry.lock(account_id):
            if not self._registry.is_current(record):
                return None
            self._registry.transition(
                record, LIVE_STATES, ConnectionState.CLOSING, reason=closed.reason
            )
            self._cancel_pairing_timer(record)
            self._cancel_connect_deadline(record)
            record.pairing = None
            LOGGER.warning(
                "stage=connection_closed account_id=%s reason=%s status=%s logged_out=%s",
                account_id,
                closed.reason,
                closed.status_code,
                closed.logged_out,
            )

            if not record.ready.done():
                record.fail(TransportError(f"connection_closed:{closed.reason}"))
                await self._teardown_locked(
                    record,
                    reason="init_failed",
                    erase_credentials=closed.logged_out,
                    logout=False,
                )
                return None

            if closed.logged_out:
                await self._teardown_locked(
                    record, reason="logged_out", erase_credentials=True, logout=False
                )
                return None

            record.reconnect_attempts += 1
            attempt = record.reconnect_attempts
            if attempt > self._max_reconnect_attempts:
                RECONNECT_TOTAL.labels("exhausted").inc()
                LOGGER.warning(
                    "stage=reconnect_exhausted account_id=%s attempts=%s",
                    account_id,
                    self._max_reconnect_attempts,
                )
                await self._teardown_locked(
                    record, reason="reconnect_exhausted", erase_credentials=False, logout=False
                )
                return None

            delay = self.reconnect_delay(attempt)
            LOGGER.info(
                "stage=reconnect_scheduled account_id=%s attempt=%s max=%s delay=%.1f",
                account_id,
                attempt,
                self._max_reconnect_attempts,
                delay,
            )
            self._update_metrics()
            return delay

    async def _reopen(
        self, record: SessionRecord
    ) -> tuple[Optional[Transport], Optional[ConnectionClosed]]:
        account_id = record.account_id
        async with self._registry.lock(account_id):
            if not self._registry.is_current(record) or record.state != ConnectionState.CLOSING:
                LOGGER.info(
                    "stage=reconnect_cancelled account_id=%s generation=%s",
                    account_id,
                    record.generation,
                )
                return None, None
            previous = record.transport
            if previous is not None:
                await self._close_transport(account_id, previous, logout=False)
            stored = self._auth_store.load(account_id)
            transport = self._transport_factory(account_id, stored)
            record.transport = transport
            self._registry.transition(
                record, {ConnectionState.CLOSING}, ConnectionState.CONNECTING, reason="reconnect"
            )
            self._update_metrics()
            try:
                await asyncio.wait_for(transport.connect(), timeout=self._init_timeout)
            except Exception as exc:
                RECONNECT_TOTAL.labels("failed").inc()
                LOGGER.error(
                    "stage=reconnect_failed account_id=%s attempt=%s error=%s",
                    account_id,
                    record.reconnect_attempts,
                    exc,
                )
                return transport, ConnectionClosed(reason=f"reconnect_failed:{exc}")
            RECONNECT_TOTAL.labels("started").inc()
            self._arm_connect_deadline(record, transport)
            return transport, None

    # -- timers and teardown --------------------------------------------------------

    def _arm_pairing_timer(self, record: SessionRecord) -> None:
        self._cancel_pairing_timer(record)
        record.pairing_timer = asyncio.create_task(
            self._expire_pairing(record), name=f"relay-pairing-{record.account_id}"
        )

    @staticmethod
    def _cancel_pairing_timer(record: SessionRecord) -> None:
        timer = record.pairing_timer
        record.pairing_timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_pairing(self, record: SessionRecord) -> None:
        await asyncio.sleep(self._pairing_timeout)
        async with self._registry.lock(record.account_id):
            if (
                not self._registry.is_current(record)
                or record.state != ConnectionState.PAIRING_PENDING
                or record.pairing_timer is not asyncio.current_task()
            ):
                return
            PAIRING_EXPIRED_TOTAL.inc()
            LOGGER.warning("stage=qr_timeout event=qr_timeout account_id=%s", record.account_id)
            record.fail(PairingTimeoutError(record.account_id))
            await self._teardown_locked(
                record, reason="pairing_timeout", erase_credentials=True, logout=True
            )

    def _arm_connect_deadline(self, record: SessionRecord, transport: Transport) -> None:
        self._cancel_connect_deadline(record)
        record.connect_deadline = asyncio.create_task(
            self._expire_connect(record, transport),
            name=f"relay-connect-deadline-{record.account_id}",
        )

    @staticmethod
    def _cancel_connect_deadline(record: SessionRecord) -> None:
        deadline = record.connect_deadline
        record.connect_deadline = None
        if deadline is not None and not deadline.done() and deadline is not asyncio.current_task():
            deadline.cancel()

    async def _expire_connect(self, record: SessionRecord, transport: Transport) -> None:
        """Turn a reconnect that never reports back into a recoverable close."""

        await asyncio.sleep(self._init_timeout)
        async with self._registry.lock(record.account_id):
            if (
                not self._owns(record, transport)
                or record.state != ConnectionState.CONNECTING
                or record.connect_deadline is not asyncio.current_task()
            ):
                return
            record.connect_deadline = None
            RECONNECT_TOTAL.labels("timeout").inc()
            LOGGER.warning(
                "stage=reconnect_timeout account_id=%s attempt=%s timeout=%s",
                record.account_id,
                record.reconnect_attempts,
                self._init_timeout,
            )
        await transport.publish(ConnectionClosed(reason="reconnect_timeout"))

    async def _teardown_locked(
        self,
        record: SessionRecord,
        *,
        reason: str,
        erase_credentials: bool,
        logout: bool = True,
    ) -> None:
        account_id = record.account_id
        removed = self._registry.remove(record)
        record.state = ConnectionState.CLOSED
        record.state_since = time.time()
        self._cancel_pairing_timer(record)
        self._cancel_connect_deadline(record)
        record.pairing = None
        record.fail(TransportError(f"session_closed:{reason}"))
        driver = record.driver
        if driver is not None and not driver.done() and driver is not asyncio.current_task():
            driver.cancel()
        transport = record.transport
        record.transport = None
        if transport is not None:
            await self._close_transport(account_id, transport, logout=logout)
        removed_credentials = False
        if erase_credentials:
            removed_credentials = self._auth_store.delete(account_id)
        if removed:
            TEARDOWN_TOTAL.labels(reason).inc()
            LOGGER.info(
                "stage=teardown account_id=%s generation=%s reason=%s removed_credentials=%s",
                account_id,
                record.generation,
                reason,
                removed_credentials,
            )
        self._update_metrics()

    async def _close_transport(
        self, account_id: str, transport: Transport, *, logout: bool
    ) -> None:
        if logout:
            try:
                await asyncio.wait_for(transport.logout(), timeout=self._logout_timeout)
            except Exception as exc:
                RELAY_ERRORS.labels("logout").inc()
                LOGGER.warning("stage=logout_failed account_id=%s error=%s", account_id, exc)
        try:
            await asyncio.wait_for(transport.close(), timeout=self._logout_timeout)
        except Exception as exc:
            RELAY_ERRORS.labels("close").inc()
            LOGGER.warning("stage=close_failed account_id=%s error=%s", account_id, exc)

    # -- helpers --------------------------------------------------------------------

    def _require_open(self, account_id: str) -> SessionRecord:
        account_id = _require_account(account_id)
        record = self._registry.get(account_id)
        if record is None or record.state != ConnectionState.OPEN or record.transport is None:
            raise NotConnectedError(account_id)
        return record

    def _is_stranded(self, record: SessionRecord, now: float) -> bool:
        if record.state in _ACTIVE_STATES:
            return False
        if record.state == ConnectionState.PAIRING_PENDING:
            return record.pairing is None or record.pairing.expired(now)
        if record.state == ConnectionState.CLOSING:
            grace = self._reconnect_max_delay + self._init_timeout
            return now - record.state_since > grace
        return True

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            RELAY_ERRORS.labels("task").inc()
            LOGGER.error(
                "event=background_task_failed task=%s error=%s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        SESSIONS_OPEN.set(snapshot["open"])
        SESSIONS_CONNECTING.set(snapshot["connecting"])
        SESSIONS_PAIRING.set(snapshot["pairing"])


def _require_account(account_id: str) -> str:
    cleaned = (account_id or "").strip()
    if not cleaned:
        raise ValueError("account_id_required")
    return cleaned


__all__ = [
    "CapacityError",
    "InitResult",
    "NotConnectedError",
    "NotFoundError",
    "PairingTimeoutError",
    "SessionLifecycleManager",
    "StatusSnapshot",
    "TransportError",
]
