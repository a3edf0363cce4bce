"""Server-side service container shared by the routers and the websocket hub."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from ..config import Settings
from .auth import SessionDirectory
from .hub import Hub
from .mappings import MappingStore
from .registrations import RegistrationStore
from .rooms import RoomRegistry
from .tokens import Clock, TokenManager, utcnow


@dataclass
class Desk:
    settings: Settings
    tokens: TokenManager
    rooms: RoomRegistry
    mappings: MappingStore
    registrations: RegistrationStore
    sessions: SessionDirectory
    hub: Hub


def build_desk(settings: Settings, *, clock: Clock = utcnow) -> Desk:
    tokens = TokenManager(settings.tokens, clock=clock)
    rooms = RoomRegistry()
    return Desk(
        settings=settings,
        tokens=tokens,
        rooms=rooms,
        mappings=MappingStore(clock=clock),
        registrations=RegistrationStore(clock=clock),
        sessions=SessionDirectory(settings.staff_accounts),
        hub=Hub(tokens, rooms, settings.channel),
    )


def get_desk(request: Request) -> Desk:
    return request.app.state.desk


__all__ = ["Desk", "build_desk", "get_desk"]
