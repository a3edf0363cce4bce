import json
import time

from qrdesk.context import CURRENT_QR_TOKEN_KEY, HandoffCache, RegistrationContext
from qrdesk.token_store import TokenStore


def test_token_store_set_and_push():
    store = TokenStore()
    snapshots = []
    store.subscribe(snapshots.append)

    assert store.set("tok1", source="handoff")
    assert not store.set("tok1", source="handoff")
    assert store.apply_push("tok1", "room-a")
    assert store.apply_push("tok2", "room-a")

    assert store.value == "tok2"
    assert store.room_id == "room-a"
    assert [s.source for s in snapshots] == ["handoff", "push", "push"]


def test_token_store_invalidate_hides_value():
    store = TokenStore()
    store.set("tok1")

    store.invalidate()

    assert store.value is None
    assert store.snapshot.value == "tok1"
    assert not store.valid


def test_token_store_listener_errors_are_contained():
    store = TokenStore()
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    store.subscribe(broken)
    unsubscribe = store.subscribe(seen.append)
    store.set("tok1")
    unsubscribe()
    store.set("tok2")

    assert [s.value for s in seen] == ["tok1"]


def test_handoff_take_reads_once(tmp_path):
    cache = HandoffCache(tmp_path)
    cache.put(CURRENT_QR_TOKEN_KEY, "tok1")

    assert cache.peek(CURRENT_QR_TOKEN_KEY) == "tok1"
    assert cache.take(CURRENT_QR_TOKEN_KEY) == "tok1"
    assert cache.take(CURRENT_QR_TOKEN_KEY) is None


def test_handoff_discards_stale_entry(tmp_path):
    cache = HandoffCache(tmp_path, max_age_seconds=60)
    (tmp_path / f"{CURRENT_QR_TOKEN_KEY}.json").write_text(
        json.dumps({"value": "old", "storedAt": time.time() - 120}), encoding="utf-8"
    )

    assert cache.take(CURRENT_QR_TOKEN_KEY) is None
    assert not (tmp_path / f"{CURRENT_QR_TOKEN_KEY}.json").exists()


def test_handoff_discards_corrupt_entry(tmp_path):
    cache = HandoffCache(tmp_path)
    (tmp_path / f"{CURRENT_QR_TOKEN_KEY}.json").write_text("{not json", encoding="utf-8")

    assert cache.peek(CURRENT_QR_TOKEN_KEY) is None


def test_handoff_clear_without_entry(tmp_path):
    HandoffCache(tmp_path / "missing").clear(CURRENT_QR_TOKEN_KEY)


def test_registration_context_lifecycle():
    context = RegistrationContext()
    assert not context.is_set

    context.set(device_id="D", doctor_id="Dr", device_name="Kiosk 1", doctor_name="Dr. Smith")
    assert context.is_set

    context.room_id = "device_D_doctor_Dr_screen_x"
    context.clear()
    assert not context.is_set
    assert context.room_id is None
