"""
Auth module: demo staff directory, opaque bearer sessions and the
get_current_user FastAPI dependency.

Patients never authenticate; only staff-side endpoints (mappings, doctor
advice, registration listings) depend on the current user.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from fastapi import Request

from ..config import StaffAccount
from .errors import NotAuthenticated


@dataclass(frozen=True)
class UserPrincipal:
    """Resolved identity attached to each staff request."""
    id: str
    username: str
    role: str                     # "admin" | "doctor" | "staff"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_doctor(self) -> bool:
        return self.role == "doctor"


class SessionDirectory:
    """Staff accounts plus live bearer sessions (held in memory)."""

    def __init__(self, accounts: Iterable[StaffAccount]) -> None:
        self._accounts: Dict[str, StaffAccount] = {a.username: a for a in accounts}
        self._sessions: Dict[str, UserPrincipal] = {}

    def login(self, username: str, password: str) -> Optional[tuple[UserPrincipal, str]]:
        account = self._accounts.get(username)
        if account is None or not secrets.compare_digest(account.password, password):
            return None
        principal = UserPrincipal(id=account.id, username=account.username, role=account.role)
        return principal, self._issue(principal)

    def refresh(self, token: str) -> Optional[tuple[UserPrincipal, str]]:
        principal = self._sessions.pop(token, None)
        if principal is None:
            return None
        return principal, self._issue(principal)

    def logout(self, token: str) -> None:
        self._sessions.pop(token, None)

    def resolve(self, token: str) -> Optional[UserPrincipal]:
        return self._sessions.get(token)

    def doctors(self) -> list[UserPrincipal]:
        return [
            UserPrincipal(id=a.id, username=a.username, role=a.role)
            for a in self._accounts.values()
            if a.role == "doctor"
        ]

    def _issue(self, principal: UserPrincipal) -> str:
        token = secrets.token_urlsafe(32)
        self._sessions[token] = principal
        return token


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def get_current_user(request: Request) -> UserPrincipal:
    """FastAPI dependency. Raises 401 when the bearer session is missing or unknown."""
    token = bearer_token(request)
    directory: SessionDirectory = request.app.state.desk.sessions
    principal = directory.resolve(token) if token else None
    if principal is None:
        raise NotAuthenticated("Authentication required")
    return principal


__all__ = ["SessionDirectory", "UserPrincipal", "bearer_token", "get_current_user"]
