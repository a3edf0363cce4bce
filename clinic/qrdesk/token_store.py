"""Holder for the display's current one-time token."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from .logging_config import short_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenSnapshot:
    value: Optional[str]
    valid: bool
    room_id: Optional[str]
    source: str
    updated_at: float


TokenListener = Callable[[TokenSnapshot], None]


class TokenStore:
    """Latest token value and validity flag, fed by REST responses and channel pushes."""

    def __init__(self) -> None:
        self._snapshot = TokenSnapshot(value=None, valid=False, room_id=None, source="empty", updated_at=time.time())
        self._listeners: list[TokenListener] = []

    @property
    def value(self) -> Optional[str]:
        return self._snapshot.value if self._snapshot.valid else None

    @property
    def valid(self) -> bool:
        return self._snapshot.valid

    @property
    def room_id(self) -> Optional[str]:
        return self._snapshot.room_id

    @property
    def snapshot(self) -> TokenSnapshot:
        return self._snapshot

    def set(self, value: str, *, room_id: Optional[str] = None, valid: bool = True, source: str = "server") -> bool:
        """Overwrite the current token; returns False when nothing changed."""
        current = self._snapshot
        if current.value == value and current.valid == valid and current.room_id == (room_id or current.room_id):
            return False
        self._snapshot = TokenSnapshot(
            value=value,
            valid=valid,
            room_id=room_id or current.room_id,
            source=source,
            updated_at=time.time(),
        )
        logger.info("token_store: %s from %s (room=%s)", short_token(value), source, self._snapshot.room_id)
        self._emit()
        return True

    def apply_push(self, value: str, room_id: str) -> bool:
        return self.set(value, room_id=room_id, source="push")

    def invalidate(self) -> None:
        if not self._snapshot.valid:
            return
        self._snapshot = TokenSnapshot(
            value=self._snapshot.value,
            valid=False,
            room_id=self._snapshot.room_id,
            source="invalidated",
            updated_at=time.time(),
        )
        self._emit()

    def clear(self) -> None:
        self._snapshot = TokenSnapshot(value=None, valid=False, room_id=None, source="empty", updated_at=time.time())
        self._emit()

    def subscribe(self, listener: TokenListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.exception("Error in token listener: %s", e)


__all__ = ["TokenSnapshot", "TokenStore"]
