"""Client-side error taxonomy."""
from __future__ import annotations

from typing import Any, Optional


class ClinicApiError(RuntimeError):
    """A REST call failed; carries a message fit for the user."""

    def __init__(
        self,
        user_message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(f"{user_message} (status={status_code}, code={code})")
        self.user_message = user_message
        self.status_code = status_code
        self.code = code
        self.detail = detail

    @property
    def is_transport(self) -> bool:
        """True when the server was never reached (timeout, refused, dropped)."""
        return self.status_code is None


class TokenInvalidError(ClinicApiError):
    """Token unknown, expired or already consumed."""


class MappingError(ClinicApiError):
    """Device already in use or mapping create/end failure."""


class SubmissionError(ClinicApiError):
    """Registration create/update failure."""


class SessionFlowError(RuntimeError):
    """Raised when a recoverable workflow step fails."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


__all__ = [
    "ClinicApiError",
    "MappingError",
    "SessionFlowError",
    "SubmissionError",
    "TokenInvalidError",
]
