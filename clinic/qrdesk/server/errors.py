"""Domain errors raised by the server stores and rendered by the API layer."""
from __future__ import annotations

from typing import Any, Optional


class DeskError(Exception):
    """Base for expected, client-facing failures."""

    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, msg: str, details: Optional[dict[str, Any]] = None) -> None:
        self.msg = msg
        self.details = details or {}
        super().__init__(msg)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"msg": self.msg, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class TokenNotFound(DeskError):
    status_code = 404
    code = "token_not_found"


class TokenConsumed(DeskError):
    status_code = 410
    code = "token_consumed"


class TokenExpired(DeskError):
    status_code = 410
    code = "token_expired"


class DeviceInUse(DeskError):
    status_code = 409
    code = "device_in_use"


class MappingNotFound(DeskError):
    status_code = 404
    code = "mapping_not_found"


class RegistrationExists(DeskError):
    status_code = 409
    code = "registration_exists"


class RegistrationNotFound(DeskError):
    status_code = 404
    code = "registration_not_found"


class NotAuthenticated(DeskError):
    status_code = 401
    code = "not_authenticated"


class PermissionDenied(DeskError):
    status_code = 403
    code = "permission_denied"


__all__ = [
    "DeskError",
    "DeviceInUse",
    "MappingNotFound",
    "NotAuthenticated",
    "PermissionDenied",
    "RegistrationExists",
    "RegistrationNotFound",
    "TokenConsumed",
    "TokenExpired",
    "TokenNotFound",
]
