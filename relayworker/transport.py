"""Transport contract consumed by the session lifecycle manager.

A transport owns one protocol connection for one account. It reports what
happens on the wire by publishing typed events into its bounded ``events``
queue and accepts a small set of commands. The manager never looks at the
transport's own internal state.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union


LOGGER = logging.getLogger("relayworker.transport")

DEFAULT_QUEUE_SIZE = 256

DELIVERY_LIVE = "notify"
DELIVERY_HISTORY = "append"


def identity_handle(identity: Optional[str]) -> str:
    """Return the user part of a routable identity (``"123:4@host"`` -> ``"123"``)."""

    if not identity:
        return ""
    return identity.split("@", 1)[0].split(":", 1)[0]


@dataclass(slots=True)
class StoredCredentials:
    blob: str
    registered: bool = False
    updated_at: Optional[float] = None


@dataclass(slots=True)
class Contact:
    id: str
    name: Optional[str] = None
    notify: Optional[str] = None
    verified_name: Optional[str] = None
    routable_id: Optional[str] = None

    def merge(self, other: "Contact") -> None:
        self.routable_id = other.routable_id or self.routable_id
        self.name = other.name or self.name
        self.notify = other.notify or self.notify
        self.verified_name = other.verified_name or self.verified_name

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.notify or self.verified_name


@dataclass(slots=True)
class QuotedMessage:
    id: Optional[str]
    text: str = ""
    sender: Optional[str] = None


@dataclass(slots=True)
class InboundMessage:
    """Transport-neutral view of one message on the wire."""

    id: str
    chat_id: str
    timestamp: int
    from_me: bool = False
    is_group: bool = False
    participant: Optional[str] = None
    push_name: Optional[str] = None
    text: str = ""
    media_kind: Optional[str] = None
    voice: bool = False
    duration: Optional[int] = None
    mimetype: Optional[str] = None
    quoted: Optional[QuotedMessage] = None
    broadcast: bool = False
    protocol: bool = False
    raw: Any = None


@dataclass(slots=True)
class Conversation:
    id: str
    name: str
    is_group: bool = False
    last_activity: Optional[int] = None
    unread: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isGroup": self.is_group,
            "lastMessageTime": self.last_activity,
            "unreadCount": self.unread,
        }


@dataclass(slots=True)
class PairingCodeAvailable:
    code: str


@dataclass(slots=True)
class ConnectionOpened:
    identity: Optional[str] = None


@dataclass(slots=True)
class ConnectionClosed:
    reason: str = "unknown"
    logged_out: bool = False
    status_code: Optional[int] = None


@dataclass(slots=True)
class MessagesReceived:
    messages: Sequence[InboundMessage] = field(default_factory=list)
    delivery: str = DELIVERY_LIVE


@dataclass(slots=True)
class CredentialsChanged:
    blob: str
    registered: bool = False


@dataclass(slots=True)
class ContactsUpdated:
    contacts: Sequence[Contact] = field(default_factory=list)


TransportEvent = Union[
    PairingCodeAvailable,
    ConnectionOpened,
    ConnectionClosed,
    MessagesReceived,
    CredentialsChanged,
    ContactsUpdated,
]


class Transport(abc.ABC):
    """One account's protocol connection."""

    source = "transport"

    def __init__(self, account_id: str, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.account_id = account_id
        self.identity: Optional[str] = None
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue(maxsize=queue_size)

    def emit(self, event: TransportEvent) -> None:
        self.events.put_nowait(event)

    async def publish(self, event: TransportEvent) -> None:
        await self.events.put(event)

    def is_alias(self, identity: Optional[str]) -> bool:
        return False

    def normalize_destination(self, destination: str) -> str:
        return destination.strip()

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the connection; outcome is reported through ``events``."""

    @abc.abstractmethod
    async def send_text(self, destination: str, text: str) -> str:
        """Send a text message and return the transport message id."""

    @abc.abstractmethod
    async def logout(self) -> None:
        """Revoke the credentials on the remote side."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Drop the connection without revoking credentials."""

    @abc.abstractmethod
    async def download_media(self, message: InboundMessage) -> Optional[bytes]:
        ...

    @abc.abstractmethod
    async def list_conversations(self) -> list[Conversation]:
        ...


TransportFactory = Callable[[str, Optional[StoredCredentials]], Transport]


__all__ = [
    "Contact",
    "ConnectionClosed",
    "ConnectionOpened",
    "ContactsUpdated",
    "Conversation",
    "CredentialsChanged",
    "DELIVERY_HISTORY",
    "DELIVERY_LIVE",
    "InboundMessage",
    "MessagesReceived",
    "PairingCodeAvailable",
    "QuotedMessage",
    "StoredCredentials",
    "Transport",
    "TransportEvent",
    "TransportFactory",
    "identity_handle",
]
