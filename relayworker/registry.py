from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Collection, Deque, Dict, Iterator, Optional

from .pairing import PairingArtifact
from .transport import Contact, Transport


LOGGER = logging.getLogger("relayworker.registry")

HISTORY_PER_CONVERSATION = 200


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    PAIRING_PENDING = "pairing_pending"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


LIVE_STATES = frozenset({ConnectionState.CONNECTING, ConnectionState.PAIRING_PENDING, ConnectionState.OPEN})


def _retrieve_exception(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled():
        future.exception()


@dataclass(slots=True, eq=False)
class SessionRecord:
    account_id: str
    generation: int
    state: ConnectionState = ConnectionState.CONNECTING
    transport: Optional[Transport] = None
    created_at: float = field(default_factory=time.time)
    state_since: float = field(default_factory=time.time)
    identity: Optional[str] = None
    pairing: Optional[PairingArtifact] = None
    pairing_timer: Optional[asyncio.Task[Any]] = None
    connect_deadline: Optional[asyncio.Task[Any]] = None
    reconnect_attempts: int = 0
    driver: Optional[asyncio.Task[Any]] = None
    ready: "asyncio.Future[Any]" = field(default=None)  # type: ignore[assignment]
    contacts: Dict[str, Contact] = field(default_factory=dict)
    history: Dict[str, Deque[dict[str, Any]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.ready is None:
            self.ready = asyncio.get_running_loop().create_future()
            self.ready.add_done_callback(_retrieve_exception)

    def resolve(self, value: Any) -> bool:
        if self.ready.done():
            return False
        self.ready.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self.ready.done():
            return False
        self.ready.set_exception(exc)
        return True

    def update_contacts(self, contacts: Collection[Contact]) -> None:
        for contact in contacts:
            current = self.contacts.get(contact.id)
            if current is None:
                self.contacts[contact.id] = Contact(
                    id=contact.id,
                    name=contact.name,
                    notify=contact.notify,
                    verified_name=contact.verified_name,
                    routable_id=contact.routable_id,
                )
            else:
                current.merge(contact)

    def remember(self, conversation_id: str, record: dict[str, Any]) -> None:
        bucket = self.history.get(conversation_id)
        if bucket is None:
            bucket = deque(maxlen=HISTORY_PER_CONVERSATION)
            self.history[conversation_id] = bucket
        bucket.append(record)

    def recent(self, conversation_id: str, limit: int) -> list[dict[str, Any]]:
        bucket = self.history.get(conversation_id)
        if not bucket or limit <= 0:
            return []
        return list(bucket)[-limit:]


class SessionRegistry:
    """Single owner of the account -> session mapping.

    Callers serialize multi-step operations on one account with
    ``lock(account_id)``; every mutation below is synchronous and therefore
    atomic on the event loop.
    """

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations = itertools.count(1)

    def lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def get(self, account_id: str) -> Optional[SessionRecord]:
        return self._records.get(account_id)

    def is_current(self, record: SessionRecord) -> bool:
        current = self._records.get(record.account_id)
        return current is not None and current.generation == record.generation

    def create(self, account_id: str, *, transport: Optional[Transport] = None) -> SessionRecord:
        if account_id in self._records:
            raise RuntimeError(f"session_exists account_id={account_id}")
        record = SessionRecord(
            account_id=account_id,
            generation=next(self._generations),
            transport=transport,
        )
        self._records[account_id] = record
        LOGGER.info(
            "stage=record_created account_id=%s generation=%s",
            account_id,
            record.generation,
        )
        return record

    def transition(
        self,
        record: SessionRecord,
        expected: Collection[ConnectionState],
        new_state: ConnectionState,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        if not self.is_current(record) or record.state not in expected:
            LOGGER.debug(
                "stage=transition_rejected account_id=%s generation=%s state=%s to=%s",
                record.account_id,
                record.generation,
                record.state.value,
                new_state.value,
            )
            return False
        previous = record.state
        record.state = new_state
        record.state_since = time.time()
        if previous != new_state:
            LOGGER.info(
                "stage=state_transition account_id=%s generation=%s from=%s to=%s reason=%s",
                record.account_id,
                record.generation,
                previous.value,
                new_state.value,
                reason or "-",
            )
        return True

    def remove(self, record: SessionRecord) -> bool:
        if not self.is_current(record):
            return False
        del self._records[record.account_id]
        return True

    def count(self, state: ConnectionState, *, exclude: Optional[str] = None) -> int:
        return sum(
            1
            for account_id, record in self._records.items()
            if record.state == state and account_id != exclude
        )

    def count_open(self, *, exclude: Optional[str] = None) -> int:
        return self.count(ConnectionState.OPEN, exclude=exclude)

    def records(self) -> list[SessionRecord]:
        return list(self._records.values())

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["ConnectionState", "LIVE_STATES", "SessionRecord", "SessionRegistry"]
