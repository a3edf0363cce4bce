import pytest

from qrdesk.server.hub import Hub
from qrdesk.server.tokens import TokenManager
from qrdesk.state import ChannelEvent, decode_message

ROOM = "device_D_doctor_Dr_screen_abc"
OTHER_ROOM = "device_D2_doctor_Dr_screen_def"


class RecordingSocket:
    def __init__(self) -> None:
        self.frames = []

    async def send_text(self, data: str) -> None:
        self.frames.append(decode_message(data))

    def events(self, event: ChannelEvent):
        return [data for name, data in self.frames if name == event.value]


@pytest.fixture
def tokens(clock):
    return TokenManager(clock=clock)


@pytest.fixture
def hub(tokens):
    return Hub(tokens)


def connect(hub):
    socket = RecordingSocket()
    return socket, hub.register(socket)


async def test_join_acknowledges_before_pushing_token(hub):
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": ROOM, "token": "stale"})

    names = [name for name, _ in socket.frames]
    assert names == ["ROOM_JOINED", "NEW_QR"]
    assert socket.frames[1][1]["roomId"] == ROOM
    assert socket.frames[1][1]["qr"] != "stale"


async def test_tokenless_join_of_abandoned_room_mints_nothing(hub, tokens):
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": ROOM})

    assert [name for name, _ in socket.frames] == ["ROOM_JOINED"]
    assert await tokens.current(ROOM) is None


async def test_join_binds_offered_token(hub, tokens):
    staged = await tokens.generate(device_id="D", doctor_id="Dr")
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": ROOM, "token": staged.value})

    assert socket.events(ChannelEvent.NEW_QR) == [{"qr": staged.value, "roomId": ROOM}]
    assert staged.room_id == ROOM


async def test_join_refuses_token_owned_by_other_room(hub, tokens):
    foreign = await tokens.generate(OTHER_ROOM)
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": ROOM, "token": foreign.value})

    pushed = socket.events(ChannelEvent.NEW_QR)
    assert len(pushed) == 1
    assert pushed[0]["qr"] != foreign.value
    assert foreign.room_id == OTHER_ROOM


async def test_join_plain_room_without_token_only_acks(hub):
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": "lobby"})

    assert socket.frames == [("ROOM_JOINED", {"roomId": "lobby"})]


async def test_join_without_room_is_an_error(hub):
    socket, conn = connect(hub)

    await hub.dispatch(conn, "JOIN_ROOM", {})

    assert socket.events(ChannelEvent.ERROR)[0]["code"] == "room_required"


async def test_consume_pushes_successor_only_to_room_members(hub, tokens):
    first = (await tokens.generate(ROOM)).value
    display, display_conn = connect(hub)
    stranger, stranger_conn = connect(hub)
    await hub.dispatch(display_conn, "JOIN_ROOM", {"roomId": ROOM})
    await hub.dispatch(stranger_conn, "JOIN_ROOM", {"roomId": OTHER_ROOM})
    stranger.frames.clear()

    await hub.dispatch(stranger_conn, "CONSUME_QR", {"tokenId": first, "roomId": ROOM})

    pushed = display.events(ChannelEvent.NEW_QR)
    assert pushed[-1]["roomId"] == ROOM and pushed[-1]["qr"] != first
    assert stranger.events(ChannelEvent.NEW_QR) == []


async def test_second_consume_reports_error(hub, tokens):
    record = await tokens.generate(ROOM)
    socket, conn = connect(hub)

    await hub.dispatch(conn, "CONSUME_QR", {"tokenId": record.value})
    await hub.dispatch(conn, "CONSUME_QR", {"tokenId": record.value})

    errors = socket.events(ChannelEvent.ERROR)
    assert [e["code"] for e in errors] == ["token_consumed"]


async def test_generate_defaults_to_last_joined_room(hub):
    socket, conn = connect(hub)
    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": "lobby"})

    await hub.dispatch(conn, "GENERATE_QR", {})

    assert socket.events(ChannelEvent.NEW_QR)[-1]["roomId"] == "lobby"


async def test_leave_acknowledges_and_stops_delivery(hub, tokens):
    socket, conn = connect(hub)
    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": "lobby"})

    await hub.dispatch(conn, "LEAVE_ROOM", {"roomId": "lobby"})
    record = await tokens.generate("lobby")
    delivered = await hub.publish_token(record)

    assert socket.events(ChannelEvent.ROOM_LEFT) == [{"roomId": "lobby"}]
    assert delivered == 0


async def test_unregister_drops_room_membership(hub):
    socket, conn = connect(hub)
    await hub.dispatch(conn, "JOIN_ROOM", {"roomId": ROOM})

    hub.unregister(conn)

    assert hub.rooms.members(ROOM) == set()
    assert hub.connection_count == 0
