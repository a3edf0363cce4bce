"""Registration records keyed by the token they were submitted with."""
from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..logging_config import short_token
from .auth import UserPrincipal
from .errors import PermissionDenied, RegistrationExists, RegistrationNotFound
from .schemas import RegistrationData, RegistrationOut
from .tokens import Clock, TokenRecord, utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_REVIEWED = "reviewed"


@dataclass
class Registration:
    token_id: str
    data: RegistrationData
    created_at: datetime
    device_id: Optional[str] = None
    doctor_id: Optional[str] = None
    doctor_advice: Optional[str] = None
    status: str = STATUS_PENDING
    updated_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_out(self) -> RegistrationOut:
        return RegistrationOut(
            **self.data.model_dump(),
            id=self.id,
            token_id=self.token_id,
            device_id=self.device_id,
            doctor_id=self.doctor_id,
            doctor_advice=self.doctor_advice,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class RegistrationStore:
    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._by_id: Dict[str, Registration] = {}
        self._by_token: Dict[str, str] = {}

    async def create(self, token: TokenRecord, data: RegistrationData) -> Registration:
        async with self._lock:
            if token.value in self._by_token:
                raise RegistrationExists("A registration already exists for this link")
            registration = Registration(
                token_id=token.value,
                data=data,
                created_at=self._clock(),
                device_id=token.device_id,
                doctor_id=token.doctor_id,
            )
            self._by_id[registration.id] = registration
            self._by_token[token.value] = registration.id
            logger.info("registrations.create: %s for token %s", registration.id, short_token(token.value))
            return registration

    async def get_by_token(self, token_id: str) -> Registration:
        async with self._lock:
            return self._require_token(token_id)

    async def update_by_token(self, token_id: str, data: RegistrationData) -> Registration:
        async with self._lock:
            registration = self._require_token(token_id)
            registration.data = data
            registration.updated_at = self._clock()
            logger.info("registrations.update: %s via token %s", registration.id, short_token(token_id))
            return registration

    async def get(self, registration_id: str) -> Registration:
        async with self._lock:
            registration = self._by_id.get(registration_id)
            if registration is None:
                raise RegistrationNotFound("Registration not found")
            return registration

    async def list(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
        status: str = "",
        doctor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Tuple[List[Registration], int]:
        async with self._lock:
            items = list(self._by_id.values())

        if doctor_id:
            items = [r for r in items if r.doctor_id == doctor_id]
        if status:
            items = [r for r in items if r.status == status]
        if start_date:
            items = [r for r in items if r.created_at >= start_date]
        if end_date:
            items = [r for r in items if r.created_at <= end_date]
        if search:
            needle = search.lower()
            items = [
                r
                for r in items
                if any(
                    needle in (value or "").lower()
                    for value in (r.data.name, r.data.contact_number, r.data.email, r.data.symptoms)
                )
            ]

        items.sort(key=lambda r: r.created_at, reverse=True)
        total = len(items)
        start = (page - 1) * limit
        return items[start : start + limit], total

    async def set_advice(self, registration_id: str, advice: str, user: UserPrincipal) -> Registration:
        async with self._lock:
            registration = self._by_id.get(registration_id)
            if registration is None:
                raise RegistrationNotFound("Registration not found")
            if not user.is_doctor or user.id != registration.doctor_id:
                raise PermissionDenied("Only the assigned doctor can provide advice")
            registration.doctor_advice = advice
            registration.status = STATUS_REVIEWED
            registration.updated_at = self._clock()
            return registration

    def _require_token(self, token_id: str) -> Registration:
        registration_id = self._by_token.get(token_id)
        if registration_id is None:
            raise RegistrationNotFound("No registration for this link")
        return self._by_id[registration_id]


def page_count(total: int, limit: int) -> int:
    return max(1, math.ceil(total / limit)) if limit else 1


__all__ = ["Registration", "RegistrationStore", "STATUS_PENDING", "STATUS_REVIEWED", "page_count"]
