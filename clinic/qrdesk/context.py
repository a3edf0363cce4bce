"""Per-session registration context and the mapping -> display token handoff."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CURRENT_QR_TOKEN_KEY = "currentQrToken"


@dataclass
class RegistrationContext:
    """Device/doctor/room identifiers for one staff session.

    Passed explicitly to the binder and the patient flow; created when staff
    opens a registration and cleared when the session ends.
    """

    device_id: Optional[str] = None
    doctor_id: Optional[str] = None
    device_name: Optional[str] = None
    doctor_name: Optional[str] = None
    room_id: Optional[str] = None

    def set(
        self,
        *,
        device_id: str,
        doctor_id: str,
        device_name: str = "",
        doctor_name: str = "",
        room_id: Optional[str] = None,
    ) -> None:
        self.device_id = device_id
        self.doctor_id = doctor_id
        self.device_name = device_name
        self.doctor_name = doctor_name
        self.room_id = room_id

    def clear(self) -> None:
        self.device_id = None
        self.doctor_id = None
        self.device_name = None
        self.doctor_name = None
        self.room_id = None

    @property
    def is_set(self) -> bool:
        return bool(self.device_id and self.doctor_id)


class HandoffCache:
    """Short-lived single-writer/single-reader slots on disk.

    One JSON file per key. Readers use ``take`` so an entry is gone the
    moment it has been used; entries older than ``max_age_seconds`` are
    treated as absent.
    """

    def __init__(self, directory: Path, *, max_age_seconds: float = 600.0) -> None:
        self.directory = Path(directory).expanduser()
        self.max_age_seconds = max_age_seconds

    def put(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"value": value, "storedAt": time.time()}), encoding="utf-8")
        tmp.replace(path)

    def peek(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("handoff: unreadable entry %s (%s); discarding", key, e)
            self.clear(key)
            return None
        if time.time() - float(entry.get("storedAt", 0)) > self.max_age_seconds:
            logger.info("handoff: entry %s is stale; discarding", key)
            self.clear(key)
            return None
        value = entry.get("value")
        return value if isinstance(value, str) and value else None

    def take(self, key: str) -> Optional[str]:
        value = self.peek(key)
        self.clear(key)
        return value

    def clear(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"


__all__ = ["CURRENT_QR_TOKEN_KEY", "HandoffCache", "RegistrationContext"]
