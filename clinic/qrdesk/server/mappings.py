"""Device-doctor mapping lifecycle with one active mapping per device."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from .errors import DeviceInUse, MappingNotFound
from .tokens import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DeviceDoctorMapping:
    device_id: str
    doctor_id: str
    start_time: datetime
    notes: str = ""
    end_time: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class MappingStore:
    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._active: Dict[str, DeviceDoctorMapping] = {}
        self._history: List[DeviceDoctorMapping] = []

    async def create(self, device_id: str, doctor_id: str, notes: str = "") -> DeviceDoctorMapping:
        # check and insert under the same lock: two staff opening the same
        # device concurrently get exactly one winner
        async with self._lock:
            existing = self._active.get(device_id)
            if existing is not None:
                raise DeviceInUse(
                    "Device is already in use",
                    details={"deviceId": device_id, "doctorId": existing.doctor_id},
                )
            mapping = DeviceDoctorMapping(
                device_id=device_id,
                doctor_id=doctor_id,
                start_time=self._clock(),
                notes=notes,
            )
            self._active[device_id] = mapping
            self._history.append(mapping)
            logger.info("mappings.create: device %s -> doctor %s", device_id, doctor_id)
            return mapping

    async def end(self, device_id: str) -> DeviceDoctorMapping:
        async with self._lock:
            mapping = self._active.pop(device_id, None)
            if mapping is None:
                raise MappingNotFound("No active mapping for device", details={"deviceId": device_id})
            mapping.is_active = False
            mapping.end_time = self._clock()
            logger.info("mappings.end: device %s released", device_id)
            return mapping

    async def active_for(self, device_id: str) -> Optional[DeviceDoctorMapping]:
        async with self._lock:
            return self._active.get(device_id)

    async def all(self, *, active_only: bool = False) -> List[DeviceDoctorMapping]:
        async with self._lock:
            if active_only:
                return list(self._active.values())
            return list(self._history)

    async def busy_devices(self) -> Set[str]:
        async with self._lock:
            return set(self._active)


__all__ = ["DeviceDoctorMapping", "MappingStore"]
