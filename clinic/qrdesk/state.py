"""Shared protocol and phase definitions for qrdesk."""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ChannelEvent(str, enum.Enum):
    """Real-time channel event names (server -> client and client -> server)."""

    # pushed by the server
    NEW_QR = "NEW_QR"
    ROOM_JOINED = "ROOM_JOINED"
    ROOM_LEFT = "ROOM_LEFT"
    DEVICE_AVAILABLE = "DEVICE_AVAILABLE"
    DEVICE_IN_USE = "DEVICE_IN_USE"
    ERROR = "ERROR"
    PING = "PING"

    # sent by clients
    JOIN_ROOM = "JOIN_ROOM"
    LEAVE_ROOM = "LEAVE_ROOM"
    GENERATE_QR = "GENERATE_QR"
    CONSUME_QR = "CONSUME_QR"
    PONG = "PONG"


DEVICE_EVENTS = frozenset({ChannelEvent.DEVICE_AVAILABLE, ChannelEvent.DEVICE_IN_USE})


def encode_message(event: ChannelEvent | str, data: Optional[Dict[str, Any]] = None) -> str:
    """Serialize one channel envelope."""
    name = event.value if isinstance(event, ChannelEvent) else event
    return json.dumps({"event": name, "data": data or {}})


def decode_message(raw: str | bytes) -> tuple[str, Dict[str, Any]]:
    """Parse one channel envelope; raises ValueError on malformed frames."""
    payload = json.loads(raw)
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise ValueError("channel frame without event name")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("channel frame data must be an object")
    return payload["event"], data


class BinderPhase(str, enum.Enum):
    """
    Staff display phases:

    1. LOADING  - waiting for token, device/doctor ids and a confirmed room
    2. READY    - composed URL available, QR shown
    3. STALLED  - something is missing past the setup timeout; retry offered
    4. CLOSED   - display left, mapping ended
    """
    LOADING = "loading"
    READY = "ready"
    STALLED = "stalled"
    CLOSED = "closed"


class RegistrationPhase(str, enum.Enum):
    """
    Patient flow phases:

    1. VALIDATING - checking the token from the link
    2. READY      - token valid, empty form
    3. UPDATE     - token spent but a submission exists; form pre-filled
    4. SUBMITTED  - registration stored
    5. INVALID    - no usable token and nothing to edit (terminal)
    """
    VALIDATING = "validating"
    READY = "ready"
    UPDATE = "update"
    SUBMITTED = "submitted"
    INVALID = "invalid"


class Severity(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    """User-visible message produced by a workflow step."""

    severity: Severity
    message: str
    detail: Optional[str] = None


@dataclass
class DisplayEvent:
    """Event payload distributed to display subscribers."""

    type: str
    phase: BinderPhase
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


__all__ = [
    "BinderPhase",
    "ChannelEvent",
    "DEVICE_EVENTS",
    "DisplayEvent",
    "Notification",
    "RegistrationPhase",
    "Severity",
    "decode_message",
    "encode_message",
]
