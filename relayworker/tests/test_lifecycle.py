from __future__ import annotations

import asyncio

import pytest

from conftest import CONNECT_URL, wait_until
from relayworker.errors import CapacityError, NotConnectedError, NotFoundError, TransportError
from relayworker.registry import ConnectionState
from relayworker.transport import (
    ConnectionClosed,
    ConnectionOpened,
    Conversation,
    CredentialsChanged,
    InboundMessage,
    MessagesReceived,
    PairingCodeAvailable,
)


def _state(manager, account_id: str):
    record = manager.registry.get(account_id)
    return record.state if record is not None else None


async def _pair(manager, fake_network, account_id: str) -> None:
    result = await manager.init(account_id)
    assert result.connected is False
    transport = fake_network.latest(account_id)
    transport.emit(CredentialsChanged(blob=f"keys-{account_id}", registered=True))
    transport.emit(ConnectionOpened(identity=fake_network.identity))
    await wait_until(lambda: _state(manager, account_id) == ConnectionState.OPEN)


@pytest.mark.anyio
async def test_fresh_init_returns_pairing_artifact(make_manager, fake_network, auth_store):
    manager = make_manager(pairing_timeout=30)

    result = await manager.init("agent-1")

    assert result.connected is False
    assert result.pairing is not None
    assert result.pairing.code == "2@ref-1"
    assert result.pairing.rendered_code.startswith("data:image/png;base64,")
    payload = result.to_payload()
    assert payload["session_id"] == "agent-1"
    assert payload["timeout_seconds"] == 30
    assert payload["qr_valid_until"] > 0
    assert _state(manager, "agent-1") == ConnectionState.PAIRING_PENDING
    await wait_until(lambda: auth_store.exists("agent-1"))

    status = (await manager.status("agent-1")).to_payload()
    assert status["connected"] is False
    assert status["state"] == "pairing_pending"
    assert status["qr_code"] == result.pairing.rendered_code


@pytest.mark.anyio
async def test_pairing_timeout_destroys_session_and_erases_credentials(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=0.1)

    await manager.init("agent-1")
    transport = fake_network.latest("agent-1")
    await wait_until(lambda: auth_store.exists("agent-1"))

    await wait_until(lambda: "agent-1" not in manager.registry)

    assert transport.logged_out is True
    assert transport.closed is True
    assert not auth_store.exists("agent-1")
    status = (await manager.status("agent-1")).to_payload()
    assert status == {
        "account_id": "agent-1",
        "connected": False,
        "state": "closed",
        "reconnect_attempts": 0,
        "qr_code": None,
        "qr_valid_until": None,
    }


@pytest.mark.anyio
async def test_new_pairing_code_rearms_timer(make_manager, fake_network):
    manager = make_manager(pairing_timeout=0.15)

    await manager.init("agent-1")
    record = manager.registry.get("agent-1")
    first = record.pairing
    await asyncio.sleep(0.1)
    fake_network.latest("agent-1").emit(PairingCodeAvailable(code="2@ref-rotated"))
    await wait_until(lambda: record.pairing is not None and record.pairing is not first)

    await asyncio.sleep(0.08)
    assert _state(manager, "agent-1") == ConnectionState.PAIRING_PENDING
    assert record.pairing.code == "2@ref-rotated"

    await wait_until(lambda: "agent-1" not in manager.registry)


@pytest.mark.anyio
async def test_scan_opens_session_and_notifies(make_manager, fake_network, auth_store, webhook):
    manager = make_manager(pairing_timeout=30)

    await _pair(manager, fake_network, "agent-1")

    record = manager.registry.get("agent-1")
    assert record.pairing is None
    assert record.pairing_timer is None
    assert auth_store.load("agent-1").registered is True
    status = (await manager.status("agent-1")).to_payload()
    assert status["connected"] is True
    assert status["state"] == "CONNECTED"
    assert status["identity"] == "5511999990000"

    await wait_until(lambda: webhook.payloads(CONNECT_URL))
    assert webhook.payloads(CONNECT_URL)[0] == {
        "action": "connected",
        "account_id": "agent-1",
        "identity": "5511999990000",
        "session_id": "agent-1",
    }


@pytest.mark.anyio
async def test_stored_credentials_resume_without_pairing(make_manager, fake_network, auth_store):
    auth_store.save("agent-1", "keys", registered=True)
    manager = make_manager()

    result = await manager.init("agent-1")

    assert result.connected is True
    assert result.pairing is None
    assert result.to_payload()["identity"] == "5511999990000"
    assert fake_network.latest("agent-1").credentials.blob == "keys"
    assert _state(manager, "agent-1") == ConnectionState.OPEN


@pytest.mark.anyio
async def test_partial_credentials_are_discarded_on_fresh_init(
    make_manager, fake_network, auth_store
):
    auth_store.save("agent-1", "half-finished", registered=False)
    manager = make_manager(pairing_timeout=30)

    result = await manager.init("agent-1")

    assert result.connected is False
    assert fake_network.latest("agent-1").credentials is None


@pytest.mark.anyio
async def test_init_on_open_account_is_idempotent(make_manager, fake_network, auth_store):
    auth_store.save("agent-1", "keys", registered=True)
    manager = make_manager()
    await manager.init("agent-1")

    again = await manager.init("agent-1")

    assert again.connected is True
    assert again.already_connected is True
    assert fake_network.created("agent-1") == 1


@pytest.mark.anyio
async def test_reinit_replaces_pending_session_and_keeps_credentials(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30)
    await manager.init("agent-1")
    first_record = manager.registry.get("agent-1")
    first = fake_network.latest("agent-1")

    await manager.init("agent-1")

    second_record = manager.registry.get("agent-1")
    assert second_record is not first_record
    assert second_record.generation > first_record.generation
    assert first.closed is True
    assert first_record.state == ConnectionState.CLOSED
    assert fake_network.created("agent-1") == 2


@pytest.mark.anyio
async def test_recoverable_close_reconnects_and_resets_counter(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30)
    await _pair(manager, fake_network, "agent-1")
    first = fake_network.latest("agent-1")
    record = manager.registry.get("agent-1")

    first.emit(ConnectionClosed(reason="stream_errored", status_code=515))

    await wait_until(lambda: fake_network.created("agent-1") == 2)
    await wait_until(lambda: _state(manager, "agent-1") == ConnectionState.OPEN)
    assert manager.registry.get("agent-1") is record
    assert record.reconnect_attempts == 0
    assert first.closed is True
    assert first.logged_out is False
    assert fake_network.latest("agent-1").credentials.blob == "keys-agent-1"
    assert auth_store.exists("agent-1")


@pytest.mark.anyio
async def test_logout_close_erases_credentials_and_reinit_pairs_again(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30)
    await _pair(manager, fake_network, "agent-1")

    fake_network.latest("agent-1").emit(
        ConnectionClosed(reason="logged_out", logged_out=True, status_code=401)
    )

    await wait_until(lambda: "agent-1" not in manager.registry)
    assert not auth_store.exists("agent-1")
    assert fake_network.created("agent-1") == 1

    result = await manager.init("agent-1")
    assert result.connected is False
    assert result.pairing is not None
    assert fake_network.latest("agent-1").credentials is None


@pytest.mark.anyio
async def test_reconnect_attempts_exhausted_keeps_credentials(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30, max_reconnect_attempts=3)
    await _pair(manager, fake_network, "agent-1")

    fake_network.fail_connect = True
    fake_network.latest("agent-1").emit(ConnectionClosed(reason="connection_lost"))

    await wait_until(lambda: "agent-1" not in manager.registry)
    # first connection plus three failed reconnects
    assert fake_network.created("agent-1") == 4
    assert auth_store.exists("agent-1")
    assert (await manager.status("agent-1")).state == "closed"


@pytest.mark.anyio
async def test_admission_is_bounded_by_open_sessions(make_manager, fake_network, auth_store):
    manager = make_manager(max_sessions=2)
    for account_id in ("a", "b", "c"):
        auth_store.save(account_id, f"keys-{account_id}", registered=True)
    await manager.init("a")
    await manager.init("b")

    with pytest.raises(CapacityError) as excinfo:
        await manager.init("c")

    assert excinfo.value.active == 2
    assert excinfo.value.limit == 2
    assert "c" not in manager.registry
    assert fake_network.created("c") == 0

    assert await manager.disconnect("a") is True
    result = await manager.init("c")
    assert result.connected is True
    assert manager.stats_snapshot()["open"] == 2


@pytest.mark.anyio
async def test_disconnect_is_idempotent(make_manager, fake_network, auth_store):
    manager = make_manager(pairing_timeout=30)
    await _pair(manager, fake_network, "agent-1")
    transport = fake_network.latest("agent-1")

    assert await manager.disconnect("agent-1") is True
    assert await manager.disconnect("agent-1") is False

    assert transport.logged_out is True
    assert transport.closed is True
    assert not auth_store.exists("agent-1")
    assert "agent-1" not in manager.registry


@pytest.mark.anyio
async def test_disconnect_unknown_account_erases_stale_credentials(make_manager, auth_store):
    manager = make_manager()
    auth_store.save("ghost", "keys", registered=True)

    assert await manager.disconnect("ghost") is False
    assert not auth_store.exists("ghost")


@pytest.mark.anyio
async def test_disconnect_during_backoff_cancels_reconnect(
    make_manager, fake_network, auth_store
):
    manager = make_manager(
        pairing_timeout=30, reconnect_base_delay=0.2, reconnect_max_delay=0.2
    )
    await _pair(manager, fake_network, "agent-1")
    fake_network.latest("agent-1").emit(ConnectionClosed(reason="connection_lost"))
    await wait_until(lambda: _state(manager, "agent-1") == ConnectionState.CLOSING)

    assert await manager.disconnect("agent-1") is True
    await asyncio.sleep(0.3)

    assert fake_network.created("agent-1") == 1
    assert "agent-1" not in manager.registry
    assert not auth_store.exists("agent-1")


@pytest.mark.anyio
async def test_connect_failure_leaves_no_record(make_manager, fake_network):
    manager = make_manager()
    fake_network.fail_connect = True

    with pytest.raises(TransportError):
        await manager.init("agent-1")

    assert "agent-1" not in manager.registry
    assert fake_network.latest("agent-1").closed is True


@pytest.mark.anyio
async def test_close_before_ready_fails_init(make_manager, fake_network):
    manager = make_manager()
    fake_network.auto_handshake = False
    task = asyncio.create_task(manager.init("agent-1"))
    await wait_until(lambda: fake_network.created("agent-1") == 1)

    fake_network.latest("agent-1").emit(ConnectionClosed(reason="handshake_failed"))

    with pytest.raises(TransportError):
        await task
    assert "agent-1" not in manager.registry


@pytest.mark.anyio
async def test_init_times_out_when_transport_stays_silent(make_manager, fake_network):
    manager = make_manager(init_timeout=0.1)
    fake_network.auto_handshake = False

    with pytest.raises(TransportError) as excinfo:
        await manager.init("agent-1")

    assert excinfo.value.detail == "init_timeout"
    assert "agent-1" not in manager.registry


@pytest.mark.anyio
async def test_late_credentials_after_teardown_are_ignored(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30)
    await manager.init("agent-1")
    stale = fake_network.latest("agent-1")
    await manager.disconnect("agent-1")

    stale.emit(CredentialsChanged(blob="late", registered=True))
    await asyncio.sleep(0.05)

    assert not auth_store.exists("agent-1")


@pytest.mark.anyio
async def test_send_requires_open_session(make_manager, fake_network, auth_store):
    manager = make_manager(pairing_timeout=30)

    with pytest.raises(NotFoundError):
        await manager.send("agent-1", "5511", "hi")

    await manager.init("agent-1")
    with pytest.raises(NotConnectedError):
        await manager.send("agent-1", "5511", "hi")

    transport = fake_network.latest("agent-1")
    transport.emit(ConnectionOpened(identity=fake_network.identity))
    await wait_until(lambda: _state(manager, "agent-1") == ConnectionState.OPEN)

    result = await manager.send("agent-1", " 5511 ", "hi")
    assert result == {"message_id": "MSG1"}
    assert transport.sent == [("5511@s.whatsapp.net", "hi")]

    fake_network.fail_send = True
    with pytest.raises(TransportError):
        await manager.send("agent-1", "5511", "again")


@pytest.mark.anyio
async def test_relayed_messages_are_listed(make_manager, fake_network, auth_store, webhook):
    auth_store.save("agent-1", "keys", registered=True)
    manager = make_manager()
    await manager.init("agent-1")
    transport = fake_network.latest("agent-1")

    transport.emit(
        MessagesReceived(
            messages=[
                InboundMessage(
                    id="M1",
                    chat_id="5511888@s.whatsapp.net",
                    timestamp=1700000000,
                    push_name="Ana",
                    text="hello",
                )
            ]
        )
    )

    await wait_until(lambda: webhook.payloads())
    messages = await manager.list_messages("agent-1", "5511888@s.whatsapp.net")
    assert [m["message_id"] for m in messages] == ["M1"]
    assert messages[0]["contact_name"] == "Ana"

    with pytest.raises(NotConnectedError):
        await manager.list_messages("other", "5511888@s.whatsapp.net")


@pytest.mark.anyio
async def test_shutdown_keeps_credentials(make_manager, fake_network, auth_store):
    auth_store.save("agent-1", "keys", registered=True)
    manager = make_manager()
    await manager.init("agent-1")
    transport = fake_network.latest("agent-1")

    await manager.shutdown()

    assert transport.closed is True
    assert transport.logged_out is False
    assert auth_store.exists("agent-1")
    assert len(manager.registry) == 0


@pytest.mark.anyio
async def test_reinit_at_capacity_replaces_non_open_session(
    make_manager, fake_network, auth_store
):
    auth_store.save("a", "keys-a", registered=True)
    manager = make_manager(max_sessions=1, pairing_timeout=30)
    await manager.init("b")
    first_record = manager.registry.get("b")
    assert first_record.state == ConnectionState.PAIRING_PENDING
    await manager.init("a")
    assert manager.stats_snapshot()["open"] == 1

    result = await manager.init("b")

    assert result.connected is False
    assert result.pairing is not None
    replacement = manager.registry.get("b")
    assert replacement is not first_record
    assert replacement.state == ConnectionState.PAIRING_PENDING
    assert fake_network.created("b") == 2
    assert _state(manager, "a") == ConnectionState.OPEN

    with pytest.raises(CapacityError):
        await manager.init("c")


@pytest.mark.anyio
async def test_list_conversations_on_open_session(make_manager, fake_network, auth_store):
    auth_store.save("agent-1", "keys", registered=True)
    manager = make_manager()

    with pytest.raises(NotConnectedError):
        await manager.list_conversations("agent-1")

    await manager.init("agent-1")
    fake_network.latest("agent-1").conversations = [
        Conversation(id="5511888@s.whatsapp.net", name="Ana", unread=1)
    ]

    conversations = await manager.list_conversations("agent-1")
    assert [c.name for c in conversations] == ["Ana"]


@pytest.mark.anyio
async def test_silent_reconnect_counts_as_failed_attempt(
    make_manager, fake_network, auth_store
):
    manager = make_manager(pairing_timeout=30, init_timeout=0.1, max_reconnect_attempts=2)
    await _pair(manager, fake_network, "agent-1")
    fake_network.auto_handshake = False

    fake_network.latest("agent-1").emit(ConnectionClosed(reason="connection_lost"))
    await wait_until(lambda: fake_network.created("agent-1") == 2)
    assert _state(manager, "agent-1") == ConnectionState.CONNECTING

    await wait_until(lambda: "agent-1" not in manager.registry)
    # first connection plus two reconnects that never opened
    assert fake_network.created("agent-1") == 3
    assert auth_store.exists("agent-1")


@pytest.mark.anyio
async def test_reconnect_deadline_cancelled_once_open(make_manager, fake_network, auth_store):
    manager = make_manager(pairing_timeout=30, init_timeout=0.1)
    await _pair(manager, fake_network, "agent-1")

    fake_network.latest("agent-1").emit(ConnectionClosed(reason="connection_lost"))
    await wait_until(lambda: fake_network.created("agent-1") == 2)
    await wait_until(lambda: _state(manager, "agent-1") == ConnectionState.OPEN)
    record = manager.registry.get("agent-1")
    assert record.connect_deadline is None

    await asyncio.sleep(0.2)
    assert _state(manager, "agent-1") == ConnectionState.OPEN
    assert fake_network.created("agent-1") == 2
