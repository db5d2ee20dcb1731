"""Telegram transport backed by Telethon.

Credentials are Telethon ``StringSession`` strings. QR login tokens are
published as pairing codes; the token is recreated every time it expires
until the manager's pairing timer gives up and closes the transport.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, Optional

from telethon import TelegramClient, events
from telethon.errors import RPCError, SessionPasswordNeededError
from telethon.errors.rpcerrorlist import AuthKeyUnregisteredError
from telethon.sessions import StringSession

from .errors import TransportError
from .transport import (
    ConnectionClosed,
    ConnectionOpened,
    Contact,
    ContactsUpdated,
    Conversation,
    CredentialsChanged,
    InboundMessage,
    MessagesReceived,
    PairingCodeAvailable,
    QuotedMessage,
    StoredCredentials,
    Transport,
    TransportFactory,
)

if TYPE_CHECKING:  # pragma: no cover
    from .config import RelayConfig


LOGGER = logging.getLogger("relayworker.telegram")

DIALOG_LIMIT = 100


def _timestamp(value: Any) -> int:
    try:
        return int(value.timestamp())
    except (AttributeError, TypeError, ValueError):
        return 0


def _full_name(entity: Any) -> Optional[str]:
    if entity is None:
        return None
    title = getattr(entity, "title", None)
    if title:
        return title
    parts = [getattr(entity, "first_name", None), getattr(entity, "last_name", None)]
    name = " ".join(part for part in parts if part)
    return name or None


def _media_kind(message: Any) -> tuple[Optional[str], bool]:
    if getattr(message, "sticker", None):
        return "sticker", False
    if getattr(message, "voice", None):
        return "audio", True
    if getattr(message, "photo", None):
        return "image", False
    if getattr(message, "video", None) or getattr(message, "gif", None):
        return "video", False
    if getattr(message, "audio", None):
        return "audio", False
    if getattr(message, "document", None):
        return "document", False
    return None, False


class TelethonTransport(Transport):
    source = "telegram"

    def __init__(
        self,
        account_id: str,
        credentials: Optional[StoredCredentials],
        *,
        api_id: int,
        api_hash: str,
        device_model: str,
        system_version: str,
        app_version: str,
        lang_code: str,
        system_lang_code: str,
    ) -> None:
        super().__init__(account_id)
        self._client = TelegramClient(
            StringSession(credentials.blob if credentials else None),
            api_id,
            api_hash,
            device_model=device_model,
            system_version=system_version,
            app_version=app_version,
            lang_code=lang_code,
            system_lang_code=system_lang_code,
        )
        self._tasks: list[asyncio.Task[Any]] = []
        self._closing = False
        self._handlers_registered = False

    async def connect(self) -> None:
        try:
            await self._client.connect()
            authorized = await self._client.is_user_authorized()
        except AuthKeyUnregisteredError:
            authorized = False
        except (RPCError, OSError) as exc:
            raise TransportError(str(exc) or "connect_failed") from exc
        self._spawn(self._watch_disconnect())
        if authorized:
            self._spawn(self._announce_authorized())
        else:
            self._spawn(self._pair())

    async def send_text(self, destination: str, text: str) -> str:
        entity: Any = destination
        if destination.lstrip("-").isdigit():
            entity = int(destination)
        try:
            message = await self._client.send_message(entity, text)
        except (RPCError, ValueError) as exc:
            raise TransportError(str(exc) or "send_failed") from exc
        return str(message.id)

    async def logout(self) -> None:
        self._closing = True
        await self._client.log_out()

    async def close(self) -> None:
        self._closing = True
        for task in self._tasks:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()
        with contextlib.suppress(Exception):
            await self._client.disconnect()

    async def download_media(self, message: InboundMessage) -> Optional[bytes]:
        if message.raw is None:
            return None
        data = await self._client.download_media(message.raw, file=bytes)
        return data if isinstance(data, bytes) else None

    async def list_conversations(self) -> list[Conversation]:
        dialogs = await self._client.get_dialogs(limit=DIALOG_LIMIT)
        return [
            Conversation(
                id=str(dialog.id),
                name=dialog.name or str(dialog.id),
                is_group=bool(dialog.is_group),
                last_activity=_timestamp(dialog.date),
                unread=int(dialog.unread_count or 0),
            )
            for dialog in dialogs
        ]

    def _spawn(self, coro: Any) -> None:
        self._tasks.append(asyncio.create_task(coro))

    async def _close_with(self, reason: str, *, logged_out: bool) -> None:
        if self._closing:
            return
        self._closing = True
        await self.publish(ConnectionClosed(reason=reason, logged_out=logged_out))

    async def _watch_disconnect(self) -> None:
        reason = "disconnected"
        logged_out = False
        try:
            await self._client.disconnected
        except AuthKeyUnregisteredError:
            reason, logged_out = "authkey_unregistered", True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
        await self._close_with(reason, logged_out=logged_out)

    async def _pair(self) -> None:
        try:
            qr_login = await self._client.qr_login()
            while True:
                await self.publish(PairingCodeAvailable(code=qr_login.url))
                try:
                    await qr_login.wait()
                except asyncio.TimeoutError:
                    LOGGER.info("stage=qr_recreate account_id=%s", self.account_id)
                    await qr_login.recreate()
                    continue
                break
        except SessionPasswordNeededError:
            LOGGER.warning("stage=needs_2fa account_id=%s", self.account_id)
            await self._close_with("two_factor_required", logged_out=True)
            return
        except AuthKeyUnregisteredError:
            await self._close_with("authkey_unregistered", logged_out=True)
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=qr_fail account_id=%s", self.account_id)
            await self._close_with(str(exc) or "qr_login_failed", logged_out=False)
            return
        await self._announce_authorized()

    async def _announce_authorized(self) -> None:
        try:
            me = await self._client.get_me()
        except AuthKeyUnregisteredError:
            await self._close_with("authkey_unregistered", logged_out=True)
            return
        except RPCError as exc:
            await self._close_with(str(exc) or "get_me_failed", logged_out=False)
            return
        self.identity = str(getattr(me, "id", "") or "") or None
        self._register_handlers()
        await self.publish(
            CredentialsChanged(blob=self._client.session.save(), registered=True)
        )
        await self.publish(ConnectionOpened(identity=self.identity))

    def _register_handlers(self) -> None:
        if self._handlers_registered:
            return
        self._client.add_event_handler(self._on_new_message, events.NewMessage())
        self._handlers_registered = True

    async def _on_new_message(self, event: Any) -> None:
        try:
            inbound, contacts = await self._convert(event)
        except AuthKeyUnregisteredError:
            await self._close_with("authkey_unregistered", logged_out=True)
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("stage=event_handler_error account_id=%s", self.account_id)
            return
        if contacts:
            await self.publish(ContactsUpdated(contacts=contacts))
        await self.publish(MessagesReceived(messages=[inbound]))

    async def _convert(self, event: Any) -> tuple[InboundMessage, list[Contact]]:
        message = event.message
        chat_id = str(event.chat_id)
        sender_id = getattr(message, "sender_id", None)
        contacts: list[Contact] = []

        sender = await event.get_sender()
        push_name = _full_name(sender)
        if sender is not None and sender_id is not None:
            contacts.append(
                Contact(
                    id=str(sender_id),
                    name=push_name,
                    notify=getattr(sender, "username", None),
                )
            )
        if event.is_group:
            chat = await event.get_chat()
            title = _full_name(chat)
            if title:
                contacts.append(Contact(id=chat_id, name=title))

        quoted: Optional[QuotedMessage] = None
        if getattr(message, "is_reply", False):
            replied = await event.get_reply_message()
            if replied is not None:
                quoted = QuotedMessage(
                    id=str(replied.id),
                    text=replied.message or "",
                    sender=str(replied.sender_id) if replied.sender_id else None,
                )

        kind, voice = _media_kind(message)
        file = getattr(message, "file", None) if kind else None
        duration = getattr(file, "duration", None) if file is not None else None
        inbound = InboundMessage(
            id=str(message.id),
            chat_id=chat_id,
            timestamp=_timestamp(message.date),
            from_me=bool(message.out),
            is_group=bool(event.is_group),
            participant=str(sender_id) if event.is_group and sender_id else None,
            push_name=push_name,
            text=message.message or "",
            media_kind=kind,
            voice=voice,
            duration=int(duration) if duration else None,
            mimetype=getattr(file, "mime_type", None) if file is not None else None,
            quoted=quoted,
            raw=message,
        )
        return inbound, contacts


def telethon_factory(cfg: "RelayConfig") -> TransportFactory:
    def _factory(account_id: str, credentials: Optional[StoredCredentials]) -> Transport:
        return TelethonTransport(
            account_id,
            credentials,
            api_id=cfg.api_id,
            api_hash=cfg.api_hash,
            device_model=cfg.device_model,
            system_version=cfg.system_version,
            app_version=cfg.app_version,
            lang_code=cfg.lang_code,
            system_lang_code=cfg.system_lang_code,
        )

    return _factory


__all__ = ["TelethonTransport", "telethon_factory"]
