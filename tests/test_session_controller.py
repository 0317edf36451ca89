import asyncio

import pytest

from app.chat.client.session_controller import ChatSessionController, MessageStatus, SessionState
from app.chat.client.transport import RECONNECTED

from conftest import CITIZEN, LAWYER, FakeHistory, FakeTransport, history_row

ROOM = "room-1"


def echo(temp_id, message_id, sender=CITIZEN, content="hello", room_key=ROOM) -> dict:
    return {
        "id": message_id,
        "roomKey": room_key,
        "content": content,
        "messageType": "text",
        "sender": {"userId": sender.user_id, "name": sender.display_name, "role": sender.role},
        "timestamp": "2026-01-01T10:00:00+00:00",
        **({"tempId": temp_id} if temp_id else {}),
    }


def ack(temp_id, message_id, room_key=ROOM) -> dict:
    return {
        "success": True,
        "messageId": message_id,
        "roomKey": room_key,
        "timestamp": "2026-01-01T10:00:00+00:00",
        "tempId": temp_id,
    }


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory([
        history_row("m1", LAWYER.user_id, "How can I help?"),
        history_row("m2", CITIZEN.user_id, "About my lease"),
    ])


@pytest.fixture
async def session(transport, history):
    controller = ChatSessionController(ROOM, CITIZEN, transport, history, send_timeout=5.0)
    await controller.open()
    yield controller
    await controller.close()


async def test_open_joins_and_loads_history(session, transport):
    assert session.state == SessionState.READY
    assert session.joined
    assert transport.emitted_events("join_chat") == [ROOM]
    assert [(m.id, m.status) for m in session.messages] == [
        ("m1", MessageStatus.RECEIVED),
        ("m2", MessageStatus.SENT),
    ]


async def test_open_connects_a_disconnected_transport(history):
    transport = FakeTransport(connected=False)
    controller = ChatSessionController(ROOM, CITIZEN, transport, history)

    await controller.open()

    assert transport.connect_calls == 1
    assert controller.state == SessionState.READY
    await controller.close()


async def test_send_is_optimistic(session, transport):
    message = await session.send("  Is the deposit refundable?  ")

    assert message.status == MessageStatus.SENDING
    assert message.content == "Is the deposit refundable?"
    assert session.is_sending
    sent = transport.emitted_events("send_message")
    assert sent == [{"roomKey": ROOM, "content": "Is the deposit refundable?", "tempId": message.temp_id}]


async def test_blank_send_is_refused(session, transport):
    assert await session.send("   ") is None
    assert transport.emitted_events("send_message") == []


async def test_echo_then_ack_leaves_one_entry(session, transport):
    message = await session.send("hello")

    await transport.deliver("new_message", echo(message.temp_id, "m3"))
    await transport.deliver("message_sent", ack(message.temp_id, "m3"))

    mine = [m for m in session.messages if m.id == "m3"]
    assert len(mine) == 1
    assert mine[0].status == MessageStatus.SENT
    assert len(session.messages) == 3
    assert not session.is_sending


async def test_ack_then_echo_leaves_one_entry(session, transport):
    message = await session.send("hello")

    await transport.deliver("message_sent", ack(message.temp_id, "m3"))
    await transport.deliver("new_message", echo(message.temp_id, "m3"))

    assert [m.id for m in session.messages] == ["m1", "m2", "m3"]
    assert session.messages[-1].status == MessageStatus.SENT
    assert transport.emitted_events("mark_messages_read") == []


async def test_unconfirmed_after_timeout_then_late_confirmation(transport, history):
    controller = ChatSessionController(ROOM, CITIZEN, transport, history, send_timeout=0.01)
    await controller.open()

    message = await controller.send("anyone there?")
    await asyncio.sleep(0.05)

    assert controller.messages[-1].status == MessageStatus.UNCONFIRMED
    assert not controller.is_sending
    assert controller.messages[-1].temp_id == message.temp_id

    await transport.deliver("message_sent", ack(message.temp_id, "m9"))

    assert controller.messages[-1].status == MessageStatus.SENT
    assert controller.messages[-1].id == "m9"
    await controller.close()


async def test_error_for_a_send_removes_the_optimistic_entry(session, transport):
    errors = []
    session.on_error = errors.append
    message = await session.send("too fast")

    await transport.deliver("error", {
        "message": "Message rate limit exceeded. Please slow down.",
        "code": "rate_limited",
        "event": "send_message",
        "roomKey": ROOM,
        "tempId": message.temp_id,
    })

    assert all(m.temp_id != message.temp_id for m in session.messages)
    assert session.failures == ["Message rate limit exceeded. Please slow down."]
    assert errors == session.failures
    assert not session.is_sending


async def test_untagged_send_error_drops_every_pending_send(session, transport):
    await session.send("one")
    await session.send("two")

    await transport.deliver("error", {"message": "Failed to send message", "event": "send_message"})

    assert [m.id for m in session.messages] == ["m1", "m2"]
    assert session.failures == ["Failed to send message"]


async def test_other_errors_become_notices(session, transport):
    await transport.deliver("error", {"message": "Unsupported event"})
    await transport.deliver("error", {"message": "Access denied to chat room", "roomKey": "someone-elses-room"})

    assert session.notices == ["Unsupported event"]
    assert session.failures == []
    assert len(session.messages) == 2


async def test_incoming_message_is_appended_and_read(session, transport):
    await transport.deliver("new_message", echo(None, "m5", sender=LAWYER, content="Yes it is"))

    assert session.messages[-1].id == "m5"
    assert session.messages[-1].status == MessageStatus.RECEIVED
    assert session.messages[-1].sender_name == LAWYER.display_name
    assert transport.emitted_events("mark_messages_read") == [{"roomKey": ROOM, "messageIds": ["m5"]}]


async def test_duplicate_delivery_is_ignored(session, transport):
    await transport.deliver("new_message", echo(None, "m5", sender=LAWYER))
    await transport.deliver("new_message", echo(None, "m5", sender=LAWYER))

    assert [m.id for m in session.messages].count("m5") == 1


async def test_other_rooms_are_ignored(session, transport):
    await transport.deliver("new_message", echo(None, "x1", sender=LAWYER, room_key="room-2"))

    assert [m.id for m in session.messages] == ["m1", "m2"]


async def test_read_receipts_mark_own_messages(session, transport):
    await transport.deliver("messages_read", {"roomKey": ROOM, "readBy": LAWYER.user_id, "messageIds": ["m2"]})

    assert [m.read for m in session.messages] == [False, True]


async def test_typing_indicators(session, transport):
    await transport.deliver("user_typing", {"roomKey": ROOM, "userId": LAWYER.user_id})
    assert session.typing_users == {LAWYER.user_id}

    await transport.deliver("user_stop_typing", {"roomKey": ROOM, "userId": LAWYER.user_id})
    assert session.typing_users == set()

    await session.start_typing()
    await session.stop_typing()
    assert transport.emitted_events("typing_start") == [{"roomKey": ROOM}]
    assert transport.emitted_events("typing_stop") == [{"roomKey": ROOM}]


async def test_reconnect_rejoins_and_merges_history(session, transport, history):
    pending = await session.send("sent while offline?")
    await asyncio.sleep(0)
    history.rows.append(history_row("m3", LAWYER.user_id, "Missed this"))

    await transport.deliver(RECONNECTED, {})

    assert transport.emitted_events("join_chat") == [ROOM, ROOM]
    assert history.calls == 2
    assert [m.id for m in session.messages] == ["m1", "m2", "m3", None]
    assert session.messages[-1].temp_id == pending.temp_id


class NewestPageHistory(FakeHistory):
    """Returns only the newest rows, like page 1 of the history endpoint."""

    def __init__(self, rows, limit: int):
        super().__init__(rows)
        self.limit = limit

    async def __call__(self, room_key: str):
        self.calls += 1
        return list(self.rows[-self.limit:])


async def test_reconnect_keeps_messages_older_than_the_newest_page(transport):
    history = NewestPageHistory([
        history_row("m1", LAWYER.user_id, "How can I help?"),
        history_row("m2", CITIZEN.user_id, "About my lease"),
    ], limit=2)
    controller = ChatSessionController(ROOM, CITIZEN, transport, history)
    await controller.open()
    pending = await controller.send("still sending")
    history.rows.append(history_row("m3", LAWYER.user_id, "Send me the contract"))

    await transport.deliver(RECONNECTED, {})

    assert [m.id for m in controller.messages] == ["m1", "m2", "m3", None]
    assert controller.messages[-1].temp_id == pending.temp_id
    await controller.close()


async def test_reconnect_after_a_gap_keeps_local_messages_first(transport):
    history = NewestPageHistory([history_row("m1", LAWYER.user_id, "How can I help?")], limit=2)
    controller = ChatSessionController(ROOM, CITIZEN, transport, history)
    await controller.open()
    history.rows += [
        history_row("m2", CITIZEN.user_id, "About my lease"),
        history_row("m3", LAWYER.user_id, "Send me the contract"),
    ]

    await transport.deliver(RECONNECTED, {})

    assert [m.id for m in controller.messages] == ["m1", "m2", "m3"]
    await controller.close()


async def test_room_marked_joined_only_after_history_loads(transport):
    seen = []

    async def history(room_key):
        seen.append(controller.joined)
        return []

    controller = ChatSessionController(ROOM, CITIZEN, transport, history)
    await controller.open()

    assert seen == [False]
    assert controller.joined
    assert transport.emitted_events("join_chat") == [ROOM]
    await controller.close()


async def test_closing_while_history_loads_leaves_the_room(transport):
    async def history(room_key):
        await controller.close()
        return [history_row("m1", LAWYER.user_id, "How can I help?")]

    controller = ChatSessionController(ROOM, CITIZEN, transport, history)
    await controller.open()

    assert controller.state == SessionState.CLOSED
    assert not controller.joined
    assert controller.messages == []
    assert transport.emitted_events("leave_chat") == [ROOM]


async def test_close_leaves_and_ignores_later_events(transport, history):
    controller = ChatSessionController(ROOM, CITIZEN, transport, history)
    await controller.open()
    await controller.send("bye")

    await controller.close()
    await transport.deliver("new_message", echo(None, "m7", sender=LAWYER))

    assert controller.state == SessionState.CLOSED
    assert transport.emitted_events("leave_chat") == [ROOM]
    assert all(m.id != "m7" for m in controller.messages)
    assert not controller.is_sending
    assert await controller.send("again") is None


async def test_history_failure_is_reported(transport):
    async def failing_history(room_key):
        raise RuntimeError("server unavailable")

    controller = ChatSessionController(ROOM, CITIZEN, transport, failing_history)
    await controller.open()

    assert controller.state == SessionState.READY
    assert controller.messages == []
    assert controller.notices == ["Failed to load messages"]
    await controller.close()
