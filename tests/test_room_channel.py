from qrdesk.state import ChannelEvent

ROOM_A = "device_D1_doctor_Dr_screen_a"
ROOM_B = "device_D2_doctor_Dr_screen_b"


def record_tokens(channel):
    seen = []
    channel.on_token_update(lambda value, room: seen.append((value, room)))
    return seen


async def test_commands_are_dropped_while_disconnected(scripted_channel):
    channel, socket = scripted_channel()

    assert not channel.is_connected
    assert await channel.join_room(ROOM_A) is False
    assert await channel.generate(ROOM_A) is False
    assert await channel.consume("tok", ROOM_A) is False
    assert socket.sent == []


async def test_connect_is_idempotent(scripted_channel):
    channel, _ = scripted_channel()
    states = []
    channel.on_connection_change(states.append)

    assert await channel.connect()
    assert await channel.connect()

    assert channel.is_connected
    assert states == [True]


async def test_join_sends_room_and_offered_token(scripted_channel):
    channel, socket = scripted_channel()
    await channel.connect()

    room = await channel.join_device_doctor_room("D1", "Dr", screen_id="a", token="tok0")

    assert room == ROOM_A
    assert socket.sent == [("JOIN_ROOM", {"roomId": ROOM_A, "token": "tok0"})]


async def test_room_isolation_between_displays(scripted_channel):
    channel_a, _ = scripted_channel()
    channel_b, _ = scripted_channel()
    for channel, room in ((channel_a, ROOM_A), (channel_b, ROOM_B)):
        await channel.connect()
        await channel.join_room(room)
        await channel.handle_message("ROOM_JOINED", {"roomId": room})
    seen_a, seen_b = record_tokens(channel_a), record_tokens(channel_b)

    await channel_b.handle_message("NEW_QR", {"qr": "tok-a", "roomId": ROOM_A})
    await channel_a.handle_message("NEW_QR", {"qr": "tok-b", "roomId": ROOM_B})
    await channel_a.handle_message("NEW_QR", {"qr": "tok-any"})

    assert seen_a == [] and seen_b == []

    await channel_a.handle_message("NEW_QR", {"qr": "tok-a", "roomId": ROOM_A})
    assert seen_a == [("tok-a", ROOM_A)]
    assert seen_b == []


async def test_token_before_join_ack_is_ignored(scripted_channel):
    channel, _ = scripted_channel()
    await channel.connect()
    seen = record_tokens(channel)

    await channel.join_room(ROOM_A)
    await channel.handle_message("NEW_QR", {"qr": "early", "roomId": ROOM_A})
    assert seen == []
    assert channel.current_room is None

    await channel.handle_message("ROOM_JOINED", {"roomId": ROOM_A})
    await channel.handle_message("NEW_QR", {"qr": "late", "roomId": ROOM_A})
    assert seen == [("late", ROOM_A)]


async def test_unrequested_join_ack_is_ignored(scripted_channel):
    channel, _ = scripted_channel()
    await channel.connect()
    rooms = []
    channel.on_room_change(rooms.append)

    await channel.handle_message("ROOM_JOINED", {"roomId": ROOM_B})

    assert channel.current_room is None
    assert rooms == []


async def test_stale_leave_does_not_clear_newer_room(scripted_channel):
    channel, _ = scripted_channel()
    await channel.connect()
    await channel.join_room(ROOM_A)
    await channel.handle_message("ROOM_JOINED", {"roomId": ROOM_A})

    await channel.leave_room(ROOM_A)
    await channel.join_room(ROOM_B)
    await channel.handle_message("ROOM_JOINED", {"roomId": ROOM_B})
    await channel.handle_message("ROOM_LEFT", {"roomId": ROOM_A})

    assert channel.current_room == ROOM_B


async def test_disconnect_clears_room_and_notifies(scripted_channel):
    channel, socket = scripted_channel()
    states, rooms = [], []
    channel.on_connection_change(states.append)
    channel.on_room_change(rooms.append)
    await channel.connect()
    await channel.join_room(ROOM_A)
    await channel.handle_message("ROOM_JOINED", {"roomId": ROOM_A})

    await channel.disconnect()

    assert not channel.is_connected
    assert channel.current_room is None
    assert socket.closed
    assert states == [True, False]
    assert rooms == [ROOM_A, None]


async def test_server_hangup_marks_channel_closed(scripted_channel, eventually):
    channel, socket = scripted_channel()
    states = []
    channel.on_connection_change(states.append)
    await channel.connect()

    await socket.hang_up()

    await eventually(lambda: not channel.is_connected)
    assert states == [True, False]


async def test_ping_is_answered(scripted_channel, eventually):
    channel, socket = scripted_channel()
    await channel.connect()

    await socket.push(ChannelEvent.PING, {})

    await eventually(lambda: ("PONG", {}) in socket.sent)


async def test_listener_dispatches_pushed_frames(scripted_channel, eventually):
    channel, socket = scripted_channel()
    await channel.connect()
    seen = record_tokens(channel)
    await channel.join_room(ROOM_A)

    await socket.push(ChannelEvent.ROOM_JOINED, {"roomId": ROOM_A})
    await socket.push(ChannelEvent.NEW_QR, {"qr": "tok1", "roomId": ROOM_A})

    await eventually(lambda: seen == [("tok1", ROOM_A)])


async def test_failing_handler_does_not_stop_others(scripted_channel):
    channel, _ = scripted_channel()
    events = []

    def broken(event, device_id):
        raise RuntimeError("boom")

    channel.on_device_event(broken)
    channel.on_device_event(lambda event, device_id: events.append((event, device_id)))

    await channel.handle_message("DEVICE_IN_USE", {"deviceId": "D1"})
    await channel.handle_message("DEVICE_AVAILABLE", {"deviceId": "D1"})

    assert events == [(ChannelEvent.DEVICE_IN_USE, "D1"), (ChannelEvent.DEVICE_AVAILABLE, "D1")]


async def test_unsubscribe_stops_delivery(scripted_channel):
    channel, _ = scripted_channel()
    errors = []
    unsubscribe = channel.on_error(errors.append)

    await channel.handle_message("ERROR", {"code": "token_consumed"})
    unsubscribe()
    await channel.handle_message("ERROR", {"code": "token_consumed"})

    assert errors == [{"code": "token_consumed"}]
