from __future__ import annotations

import asyncio

import pytest

from presence_client.chat import ChatSession
from presence_client.network_client import ConnectionManager, ConnectionState, PresenceConnectionError
from presence_client.session import UserSession
from presence_common import protocol

CONVERSATION_EVENTS = (protocol.NEW_MESSAGE, protocol.MESSAGE_SENT, protocol.MESSAGES)


def _message(message_id: str, sender: str, recipient: str, text: str = "hi") -> dict:
    return {"id": message_id, "sender_id": sender, "recipient_id": recipient, "text": text}


def test_same_handler_is_attached_once() -> None:
    manager = ConnectionManager()
    calls: list = []

    manager.on("announcement", calls.append)
    manager.on("announcement", calls.append)
    manager._dispatch("announcement", "x")

    assert manager.listener_count("announcement") == 1
    assert calls == ["x"]


def test_off_for_unknown_handler_is_harmless() -> None:
    manager = ConnectionManager()

    manager.off("announcement", print)

    assert manager.listener_count() == 0


def test_listening_scope_releases_on_error() -> None:
    manager = ConnectionManager()

    with pytest.raises(RuntimeError):
        with manager.listening("announcement", print):
            assert manager.listener_count("announcement") == 1
            raise RuntimeError("view crashed")

    assert manager.listener_count("announcement") == 0


def test_failing_listener_does_not_stop_dispatch() -> None:
    manager = ConnectionManager()
    seen: list = []

    def broken(_payload) -> None:
        raise KeyError("boom")

    manager.on("announcement", broken)
    manager.on("announcement", seen.append)
    manager._dispatch("announcement", 1)

    assert seen == [1]


def test_switching_back_and_forth_keeps_one_listener_per_event() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        chat = ChatSession(manager)

        await chat.open_conversation("alice")
        await chat.open_conversation("bob")
        await chat.open_conversation("alice")

        for event in CONVERSATION_EVENTS:
            assert manager.listener_count(event) == 1

    asyncio.run(scenario())


def test_switch_then_disconnect_leaves_no_listeners() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        chat = ChatSession(manager)

        await chat.open_conversation("alice")
        await chat.open_conversation("bob")
        await manager.disconnect()

        assert manager.listener_count() == 0
        chat.close_conversation()
        assert manager.listener_count() == 0

    asyncio.run(scenario())


def test_closing_the_chat_context_releases_listeners() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        with ChatSession(manager) as chat:
            await chat.open_conversation("alice")
            assert manager.listener_count() == len(CONVERSATION_EVENTS)

        assert manager.listener_count() == 0

    asyncio.run(scenario())


def test_only_messages_from_open_conversation_are_kept() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        chat = ChatSession(manager)
        await chat.open_conversation("alice")

        manager._dispatch(protocol.NEW_MESSAGE, _message("1", "alice", "me"))
        manager._dispatch(protocol.NEW_MESSAGE, _message("2", "mallory", "me"))
        manager._dispatch(protocol.NEW_MESSAGE, _message("1", "alice", "me"))
        manager._dispatch(protocol.MESSAGE_SENT, _message("3", "me", "alice"))
        manager._dispatch(protocol.NEW_MESSAGE, {"sender_id": "alice"})

        assert [m["id"] for m in chat.messages] == ["1", "3"]

    asyncio.run(scenario())


def test_history_backfill_merges_with_live_messages() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        chat = ChatSession(manager)
        await chat.open_conversation("alice")
        manager._dispatch(protocol.NEW_MESSAGE, _message("3", "alice", "me"))

        manager._dispatch(protocol.MESSAGES, {"peer_id": "bob", "messages": [_message("9", "bob", "me")]})
        manager._dispatch(protocol.MESSAGES, {
            "peer_id": "alice",
            "messages": [_message("1", "alice", "me"), _message("3", "alice", "me")],
        })

        assert [m["id"] for m in chat.messages] == ["1", "3"]

    asyncio.run(scenario())


def test_sending_needs_an_open_conversation() -> None:
    async def scenario() -> None:
        chat = ChatSession(ConnectionManager())
        with pytest.raises(RuntimeError):
            await chat.send("hello")

    asyncio.run(scenario())


def test_emit_while_idle_raises() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        with pytest.raises(PresenceConnectionError):
            await manager.emit(protocol.SEND_MESSAGE, {"recipient_id": "bob", "text": "hi"})

    asyncio.run(scenario())


def test_connect_requires_a_user_id() -> None:
    async def scenario() -> None:
        with pytest.raises(ValueError):
            await ConnectionManager().connect("")

    asyncio.run(scenario())


def test_disconnect_when_idle_is_safe() -> None:
    async def scenario() -> None:
        manager = ConnectionManager()
        manager.presence.apply_update(["alice"])

        await manager.disconnect()
        await manager.disconnect()

        assert manager.state is ConnectionState.IDLE
        assert manager.presence.online_users == frozenset()

    asyncio.run(scenario())


def test_sign_in_requires_user_id() -> None:
    async def scenario() -> None:
        session = UserSession(ConnectionManager())
        with pytest.raises(ValueError):
            await session.sign_in({"email": "a@example.com"})
        assert session.user is None

    asyncio.run(scenario())


def test_unexpected_supervisor_failure_still_resolves_connect(monkeypatch) -> None:
    async def broken_establish(self):
        raise RuntimeError("handshake bookkeeping failed")

    monkeypatch.setattr(ConnectionManager, "_establish", broken_establish)

    async def scenario() -> None:
        manager = ConnectionManager()
        with pytest.raises(PresenceConnectionError):
            await asyncio.wait_for(manager.connect("alice"), 2.0)
        assert manager.state is ConnectionState.IDLE
        assert manager.user_id is None

    asyncio.run(scenario())
