"""One-time registration token lifecycle."""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..config import TokenSettings
from ..logging_config import short_token
from .errors import TokenConsumed, TokenExpired, TokenNotFound

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenRecord:
    value: str
    created_at: datetime
    valid: bool = True
    room_id: Optional[str] = None
    device_id: Optional[str] = None
    doctor_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class ConsumeResult:
    consumed: TokenRecord
    successor: TokenRecord


class TokenManager:
    """Mints, validates and consumes tokens; tracks each room's current token.

    All state changes happen under one lock so that consumption is a single
    check-and-set: a token flips to invalid exactly once.
    """

    def __init__(self, settings: Optional[TokenSettings] = None, *, clock: Clock = utcnow) -> None:
        self.settings = settings or TokenSettings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tokens: Dict[str, TokenRecord] = {}
        self._room_current: Dict[str, str] = {}
        self._latest: Optional[str] = None

    async def generate(
        self,
        room_id: Optional[str] = None,
        *,
        device_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
    ) -> TokenRecord:
        async with self._lock:
            return self._mint(room_id, device_id, doctor_id)

    async def bind(self, value: str, room_id: str) -> Optional[TokenRecord]:
        """Attach a still-usable token to a room and make it the room's current token.

        Returns None when the token is unknown, spent, expired or already bound
        to a different room.
        """
        async with self._lock:
            record = self._tokens.get(value)
            if record is None or not self._usable(record):
                return None
            if record.room_id and record.room_id != room_id:
                logger.warning(
                    "tokens.bind: %s belongs to %s, refusing %s",
                    short_token(value),
                    record.room_id,
                    room_id,
                )
                return None
            record.room_id = room_id
            self._room_current[room_id] = value
            return record

    async def validate(self, value: str) -> TokenRecord:
        async with self._lock:
            record = self._tokens.get(value)
            if record is None:
                raise TokenNotFound("Token not found")
            if record.consumed:
                raise TokenConsumed("Token already used")
            if not self._usable(record):
                raise TokenExpired("Token expired")
            return record

    async def lookup(self, value: str) -> Optional[TokenRecord]:
        async with self._lock:
            return self._tokens.get(value)

    async def consume(self, value: str, room_id: Optional[str] = None) -> ConsumeResult:
        async with self._lock:
            record = self._tokens.get(value)
            if record is None:
                raise TokenNotFound("Token not found")
            if record.consumed:
                raise TokenConsumed("Token already used")
            if not self._usable(record):
                raise TokenExpired("Token expired")

            record.valid = False
            record.consumed_at = self._clock()
            target_room = room_id or record.room_id
            successor = self._mint(target_room, record.device_id, record.doctor_id)
            logger.info(
                "tokens.consume: %s consumed, successor %s for room %s",
                short_token(value),
                short_token(successor.value),
                target_room,
            )
            return ConsumeResult(consumed=record, successor=successor)

    async def current(self, room_id: Optional[str] = None) -> Optional[TokenRecord]:
        """Current token of a room, or the most recently minted token without a room."""
        async with self._lock:
            value = self._room_current.get(room_id) if room_id else self._latest
            if value is None:
                return None
            record = self._tokens[value]
            return record if self._usable(record) else None

    def _mint(
        self,
        room_id: Optional[str],
        device_id: Optional[str],
        doctor_id: Optional[str],
    ) -> TokenRecord:
        now = self._clock()
        expires_at = None
        if self.settings.ttl_seconds > 0:
            expires_at = now + timedelta(seconds=self.settings.ttl_seconds)
        value = secrets.token_urlsafe(self.settings.token_bytes)
        record = TokenRecord(
            value=value,
            created_at=now,
            room_id=room_id,
            device_id=device_id,
            doctor_id=doctor_id,
            expires_at=expires_at,
        )
        self._tokens[value] = record
        self._latest = value
        if room_id:
            self._room_current[room_id] = value
        return record

    def _usable(self, record: TokenRecord) -> bool:
        if not record.valid:
            return False
        if record.expires_at is not None and self._clock() >= record.expires_at:
            record.valid = False
            return False
        return True


__all__ = ["ConsumeResult", "TokenManager", "TokenRecord", "utcnow"]
