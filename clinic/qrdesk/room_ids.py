"""Room identifier construction shared by displays and the server."""
from __future__ import annotations

import re
import uuid
from typing import NamedTuple, Optional

_DEVICE_ROOM = re.compile(r"^device_(?P<device>.+)_doctor_(?P<doctor>.+)_screen_(?P<screen>[A-Za-z0-9-]+)$")


class DeviceRoom(NamedTuple):
    device_id: str
    doctor_id: str
    screen_id: str


def new_screen_id() -> str:
    return uuid.uuid4().hex[:12]


def device_room_id(device_id: str, doctor_id: str, screen_id: Optional[str] = None) -> str:
    """Room for one display instance; the screen suffix keeps parallel displays apart."""
    return f"device_{device_id}_doctor_{doctor_id}_screen_{screen_id or new_screen_id()}"


def parse_device_room(room_id: str) -> Optional[DeviceRoom]:
    match = _DEVICE_ROOM.match(room_id or "")
    if not match:
        return None
    return DeviceRoom(match["device"], match["doctor"], match["screen"])


__all__ = ["DeviceRoom", "device_room_id", "new_screen_id", "parse_device_room"]
