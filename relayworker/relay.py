from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .metrics import MESSAGES_RELAYED, RELAY_ERRORS
from .registry import SessionRecord
from .storage import AssetStorage, media_key
from .transport import (
    DELIVERY_LIVE,
    Contact,
    InboundMessage,
    MessagesReceived,
    Transport,
    identity_handle,
)


LOGGER = logging.getLogger("relayworker.relay")

MEDIA_CLASS_TYPES = frozenset({"media", "voice", "sticker"})
QUOTE_EXCERPT = 100
UNKNOWN_GROUP = "Unknown Group"

MEDIA_LABELS = {
    "image": "Image",
    "video": "Video",
    "audio": "Audio",
    "document": "Document",
}
VOICE_LABEL = "Voice note"
STICKER_LABEL = "Sticker"
ATTACHMENT_LABEL = "Attachment"


def classify(message: InboundMessage) -> tuple[str, Optional[str]]:
    kind = message.media_kind
    if kind == "audio":
        if message.voice:
            return "voice", "ptt"
        return "media", "audio"
    if kind == "sticker":
        return "sticker", "sticker"
    if kind:
        return "media", kind
    if message.quoted is not None:
        return "reply", "text"
    return "text", "text"


def message_body(message: InboundMessage, message_type: str, subtype: Optional[str]) -> str:
    text = message.text or ""
    if message_type == "voice":
        return VOICE_LABEL
    if message_type == "sticker":
        return STICKER_LABEL
    if message_type == "media":
        label = MEDIA_LABELS.get(subtype or "", ATTACHMENT_LABEL)
        return f"{label}: {text}" if text else label
    return text


def resolve_identity(
    identity: str, contacts: Mapping[str, Contact], transport: Transport
) -> str:
    if not transport.is_alias(identity):
        return identity
    contact = contacts.get(identity)
    if contact and contact.routable_id and not transport.is_alias(contact.routable_id):
        return contact.routable_id
    LOGGER.info("stage=alias_unresolved identity=%s", identity)
    return identity


def display_name(
    identity: str,
    contacts: Mapping[str, Contact],
    push_name: Optional[str],
    *,
    alias: Optional[str] = None,
) -> str:
    for key in (identity, alias):
        contact = contacts.get(key) if key else None
        if contact and contact.display_name:
            return contact.display_name
    return push_name or identity_handle(identity)


class EventRelay:
    """Forward normalized message records to the webhook collaborator."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        webhook_url: str,
        webhook_secret: Optional[str] = None,
        connect_webhook_url: Optional[str] = None,
        storage: Optional[AssetStorage] = None,
        media_prefix: str = "media",
    ) -> None:
        self._http = http
        self._webhook_url = webhook_url
        self._webhook_secret = webhook_secret
        self._connect_webhook_url = connect_webhook_url or webhook_url
        self._storage = storage
        self._media_prefix = media_prefix

    def normalize(
        self,
        record: SessionRecord,
        transport: Transport,
        message: InboundMessage,
        *,
        media_url: Optional[str] = None,
        media_filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        contacts = record.contacts
        target = resolve_identity(message.chat_id, contacts, transport)
        participant = message.participant if message.is_group else None
        sender_name: Optional[str] = None
        if message.is_group:
            group = contacts.get(message.chat_id)
            contact_name = (group.display_name if group else None) or UNKNOWN_GROUP
            if participant and not message.from_me:
                sender_name = display_name(participant, contacts, message.push_name)
        else:
            contact_name = display_name(
                target, contacts, message.push_name, alias=message.chat_id
            )

        message_type, subtype = classify(message)
        metadata: Dict[str, Any] = {
            "timestamp": message.timestamp,
            "from": target,
            "participant": participant,
            "source": transport.source,
            "from_me": message.from_me,
        }
        if sender_name:
            metadata["sender_name"] = sender_name
        if message_type in MEDIA_CLASS_TYPES:
            metadata["media_type"] = subtype
            if media_url:
                metadata["media_url"] = media_url
                metadata["media_filename"] = media_filename
        if message_type == "reply" and message.quoted is not None:
            metadata["quoted_message"] = {
                "id": message.quoted.id,
                "body": (message.quoted.text or "")[:QUOTE_EXCERPT],
                "from": message.quoted.sender or message.chat_id,
            }
        if message_type == "voice":
            metadata["voice_duration"] = message.duration

        return {
            "account_id": record.account_id,
            "message_id": message.id,
            "from": target,
            "to": message.chat_id if message.from_me else (record.identity or transport.identity),
            "participant": participant,
            "body": message_body(message, message_type, subtype),
            "timestamp": message.timestamp,
            "has_media": message_type in MEDIA_CLASS_TYPES,
            "contact_name": contact_name,
            "is_group": message.is_group,
            "sender_name": sender_name,
            "from_me": message.from_me,
            "message_type": message_type,
            "message_metadata": metadata,
        }

    async def relay(
        self, record: SessionRecord, transport: Transport, event: MessagesReceived
    ) -> list[Dict[str, Any]]:
        if event.delivery != DELIVERY_LIVE:
            LOGGER.debug(
                "stage=history_skipped account_id=%s count=%s delivery=%s",
                record.account_id,
                len(event.messages),
                event.delivery,
            )
            return []
        relayed: list[Dict[str, Any]] = []
        for message in event.messages:
            if message.broadcast or message.protocol or not message.chat_id:
                continue
            try:
                payload = await self._relay_one(record, transport, message)
            except Exception:
                RELAY_ERRORS.labels("relay").inc()
                LOGGER.exception(
                    "stage=relay_fail account_id=%s message_id=%s",
                    record.account_id,
                    message.id,
                )
                continue
            relayed.append(payload)
        return relayed

    async def _relay_one(
        self, record: SessionRecord, transport: Transport, message: InboundMessage
    ) -> Dict[str, Any]:
        message_type, _ = classify(message)
        media_url: Optional[str] = None
        media_filename: Optional[str] = None
        if message_type in MEDIA_CLASS_TYPES and not message.from_me:
            media_url, media_filename = await self._store_media(record, transport, message)

        payload = self.normalize(
            record,
            transport,
            message,
            media_url=media_url,
            media_filename=media_filename,
        )
        record.remember(message.chat_id, payload)
        delivered = await self._post(self._webhook_url, payload, kind="webhook")
        MESSAGES_RELAYED.labels(message_type).inc()
        LOGGER.info(
            "stage=incoming account_id=%s direction=%s message_type=%s delivered=%s",
            record.account_id,
            "outgoing" if message.from_me else "incoming",
            message_type,
            delivered,
        )
        return payload

    async def _store_media(
        self, record: SessionRecord, transport: Transport, message: InboundMessage
    ) -> tuple[Optional[str], Optional[str]]:
        if self._storage is None:
            return None, None
        try:
            data = await transport.download_media(message)
        except Exception as exc:
            RELAY_ERRORS.labels("media_download").inc()
            LOGGER.error(
                "stage=media_download_fail account_id=%s message_id=%s error=%s",
                record.account_id,
                message.id,
                exc,
            )
            return None, None
        if not data:
            return None, None
        key = media_key(message.id, message.mimetype, prefix=self._media_prefix)
        url = await self._storage.upload(key, data, message.mimetype)
        if url is None:
            return None, None
        return url, key

    async def notify_connected(self, account_id: str, identity: Optional[str]) -> bool:
        payload = {
            "action": "connected",
            "account_id": account_id,
            "identity": identity_handle(identity),
            "session_id": account_id,
        }
        return await self._post(self._connect_webhook_url, payload, kind="connect_notify")

    async def _post(self, url: str, payload: Dict[str, Any], *, kind: str) -> bool:
        headers = {"Content-Type": "application/json"}
        if self._webhook_secret:
            headers["Authorization"] = f"Bearer {self._webhook_secret}"
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            RELAY_ERRORS.labels(kind).inc()
            LOGGER.error(
                "stage=send_fail kind=%s account_id=%s error=%s",
                kind,
                payload.get("account_id"),
                exc,
            )
            return False
        if not response.is_success:
            RELAY_ERRORS.labels(kind).inc()
            LOGGER.error(
                "stage=send_fail kind=%s account_id=%s status=%s body=%s",
                kind,
                payload.get("account_id"),
                response.status_code,
                response.text[:200],
            )
            return False
        return True


__all__ = ["EventRelay", "classify", "display_name", "message_body", "resolve_identity"]
