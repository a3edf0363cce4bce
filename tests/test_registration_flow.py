import pytest

from qrdesk.client.http_client import ClinicHttpClient
from qrdesk.registration_flow import RegistrationFlow
from qrdesk.state import RegistrationPhase, Severity

ROOM = "device_D_doctor_Dr_screen_X"


class RecordingHttp:
    """Stands in for the REST client and fails the test on any call."""

    def __init__(self) -> None:
        self.calls = []

    def __getattr__(self, name):
        async def call(*args, **kwargs):
            self.calls.append(name)
            raise AssertionError(f"unexpected call {name}")

        return call


@pytest.fixture
def make_flow(http, settings):
    def make(channel=None, context=None, client=None):
        return RegistrationFlow(client or http, channel, context, settings=settings)

    return make


async def test_missing_token_is_terminal_without_network(make_flow):
    recorder = RecordingHttp()
    flow = make_flow(client=recorder)

    phase = await flow.load({"deviceId": "D", "roomId": ROOM})

    assert phase == RegistrationPhase.INVALID
    assert recorder.calls == []
    assert flow.notifications[-1].severity == Severity.ERROR


async def test_valid_token_opens_form_with_server_room(make_flow, desk):
    record = await desk.tokens.generate(ROOM, device_id="D", doctor_id="Dr")

    flow = make_flow()

    phase = await flow.load({"token": record.value, "roomId": "device_tampered"})

    assert phase == RegistrationPhase.READY
    assert flow.room_id == ROOM


async def test_room_taken_from_validation_response(make_flow, desk):
    record = await desk.tokens.generate(ROOM, device_id="D", doctor_id="Dr")
    flow = make_flow()

    await flow.load({"token": record.value})

    assert flow.room_id == ROOM
    assert flow.device_id == "D" and flow.doctor_id == "Dr"


async def test_unknown_token_without_submission_is_invalid(make_flow):
    flow = make_flow()

    phase = await flow.load({"token": "not-a-token", "roomId": ROOM})

    assert phase == RegistrationPhase.INVALID
    assert flow.notifications[-1].message == "This registration link is invalid or has expired."


async def test_expired_token_with_submission_opens_update(make_flow, http, desk, clock):
    record = await desk.tokens.generate(ROOM, device_id="D", doctor_id="Dr")
    await http.create_registration(record.value, {"name": "Asha Rao", "symptoms": "cough"})
    clock.advance(3601)
    flow = make_flow()

    phase = await flow.load({"token": record.value, "roomId": ROOM})

    assert phase == RegistrationPhase.UPDATE
    assert flow.prefill["name"] == "Asha Rao"
    assert flow.prefill["symptoms"] == "cough"

    assert await flow.submit({**flow.prefill, "symptoms": "cough, fever"})
    assert flow.phase == RegistrationPhase.SUBMITTED
    stored = await desk.registrations.get_by_token(record.value)
    assert stored.data.symptoms == "cough, fever"
    assert not (await desk.tokens.lookup(record.value)).consumed


async def test_submit_creates_and_consumes_over_http(make_flow, desk):
    record = await desk.tokens.generate(ROOM, device_id="D", doctor_id="Dr")
    flow = make_flow()
    await flow.load({"token": record.value, "roomId": ROOM})

    assert await flow.submit({"name": "Asha Rao", "email": ""})

    assert flow.phase == RegistrationPhase.SUBMITTED
    assert flow.registration["name"] == "Asha Rao"
    assert (await desk.tokens.lookup(record.value)).consumed
    assert (await desk.tokens.current(ROOM)).value != record.value


async def test_submit_failure_keeps_form(make_flow, desk):
    record = await desk.tokens.generate(ROOM)
    flow = make_flow()
    await flow.load({"token": record.value})

    ok = await flow.submit({"name": "", "symptoms": "headache"})

    assert not ok
    assert flow.phase == RegistrationPhase.READY
    assert flow.form == {"name": "", "symptoms": "headache"}
    assert flow.notifications[-1].severity == Severity.ERROR
    assert not (await desk.tokens.lookup(record.value)).consumed


async def test_submit_rejected_outside_form_states(make_flow):
    flow = make_flow()
    await flow.load({})

    assert not await flow.submit({"name": "Asha"})
    assert flow.phase == RegistrationPhase.INVALID


async def test_registered_but_unconsumed_token_updates_then_consumes(make_flow, http, desk):
    record = await desk.tokens.generate(ROOM)
    await http.create_registration(record.value, {"name": "Asha Rao"})
    flow = make_flow()

    assert await flow.load({"token": record.value}) == RegistrationPhase.UPDATE
    assert await flow.submit({"name": "Asha Rao", "age": 12000})

    assert (await desk.tokens.lookup(record.value)).consumed


async def test_transport_failure_keeps_validating(settings):
    api = ClinicHttpClient(settings.model_copy(update={"api_base_url": "http://127.0.0.1:9/api", "http_timeout_seconds": 0.5}))
    flow = RegistrationFlow(api, settings=settings)
    try:
        phase = await flow.load({"token": "tok"})
    finally:
        await api.aclose()

    assert phase == RegistrationPhase.VALIDATING
    assert flow.notifications[-1].severity == Severity.ERROR


async def test_consume_uses_channel_when_connected(make_flow, channel_factory, desk, sockets, eventually):
    record = await desk.tokens.generate(ROOM, device_id="D", doctor_id="Dr")
    channel = channel_factory()
    flow = make_flow(channel=channel)
    await flow.load({"token": record.value, "roomId": ROOM})
    await eventually(lambda: channel.current_room == ROOM)

    assert await flow.submit({"name": "Asha Rao"})

    consumes = [data for name, data in sockets[0].sent if name == "CONSUME_QR"]
    assert consumes == [{"tokenId": record.value, "roomId": ROOM}]
    assert (await desk.tokens.lookup(record.value)).consumed


async def test_device_release_clears_context(make_flow, channel_factory, context, staff_http, eventually):
    mapping = await staff_http.create_mapping("D", "Dr")
    context.set(device_id="D", doctor_id="Dr")
    flow = make_flow(channel=channel_factory(), context=context)
    await flow.load({"token": mapping["qrToken"], "deviceId": "D", "doctorId": "Dr", "roomId": ROOM})

    await staff_http.end_mapping("D")

    await eventually(lambda: not context.is_set)
    await flow.close()


async def test_late_results_ignored_after_close(make_flow, desk):
    record = await desk.tokens.generate(ROOM)
    flow = make_flow()
    await flow.close()

    await flow.load({"token": record.value})

    assert flow.phase == RegistrationPhase.VALIDATING
