"""HTTP client helpers for the qrdesk REST endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type

import httpx

from ..config import Settings
from ..logging_config import short_token
from .errors import ClinicApiError, MappingError, SubmissionError, TokenInvalidError

logger = logging.getLogger(__name__)


class ClinicHttpClient:
    """Thin wrapper around the registration REST API."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.http_timeout_seconds,
            transport=transport,
        )
        self.current_user: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------ auth

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            "/auth/login",
            op="auth.login",
            user_message="Login failed",
            json={"username": username, "password": password},
        )
        self._store_session(data)
        return data

    async def refresh(self) -> Dict[str, Any]:
        data = await self._request("POST", "/auth/refresh", op="auth.refresh", user_message="Session expired")
        self._store_session(data)
        return data

    async def logout(self) -> None:
        try:
            await self._request("POST", "/auth/logout", op="auth.logout", user_message="Logout failed")
        finally:
            self._client.headers.pop("Authorization", None)
            self.current_user = None

    # ------------------------------------------------------------ tokens

    async def generate_qr(self, device_id: Optional[str] = None, doctor_id: Optional[str] = None) -> Dict[str, Any]:
        params = {k: v for k, v in (("deviceId", device_id), ("doctorId", doctor_id)) if v}
        return await self._request(
            "GET", "/qr/generate", op="qr.generate", user_message="Failed to generate QR code", params=params
        )

    async def current_qr(self, room_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"roomId": room_id} if room_id else None
        return await self._request("GET", "/qr/current", op="qr.current", user_message="No QR code available", params=params)

    async def validate_token(self, token: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/qr/validate/{token}",
            op="qr.validate",
            user_message="This registration link is no longer valid",
            error_cls=TokenInvalidError,
        )

    async def consume_qr(self, token: str, room_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"roomId": room_id} if room_id else None
        logger.info("clinic.consume_qr: %s (room=%s)", short_token(token), room_id)
        return await self._request(
            "POST",
            f"/qr/consume/{token}",
            op="qr.consume",
            user_message="Could not refresh the clinic QR code",
            error_cls=TokenInvalidError,
            params=params,
        )

    # ------------------------------------------------------------ mappings

    async def create_mapping(self, device_id: str, doctor_id: str, notes: str = "") -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/device-doctor-mapping",
            op="mapping.create",
            user_message="Failed to create device-doctor mapping",
            error_cls=MappingError,
            json={"deviceId": device_id, "doctorId": doctor_id, "notes": notes},
        )

    async def end_mapping(self, device_id: str) -> Dict[str, Any]:
        return await self._request(
            "DELETE",
            f"/device-doctor-mapping/{device_id}",
            op="mapping.end",
            user_message="Failed to release the device",
            error_cls=MappingError,
        )

    async def current_mapping(self, device_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/device-doctor-mapping/device/{device_id}",
            op="mapping.current",
            user_message="No active mapping for device",
            error_cls=MappingError,
        )

    async def list_mappings(self, *, active_only: bool = False) -> Dict[str, Any]:
        return await self._request(
            "GET",
            "/device-doctor-mapping",
            op="mapping.list",
            user_message="Failed to load mappings",
            error_cls=MappingError,
            params={"activeOnly": "true" if active_only else "false"},
        )

    # ------------------------------------------------------------ registrations

    async def create_registration(self, token: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/registration/{token}",
            op="registration.create",
            user_message="Registration failed",
            error_cls=SubmissionError,
            json=data,
        )

    async def get_registration_by_token(self, token: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/registration/token/{token}",
            op="registration.by_token",
            user_message="No registration found for this link",
            error_cls=SubmissionError,
        )

    async def update_registration_by_token(self, token: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/registration/token/{token}",
            op="registration.update",
            user_message="Failed to update registration",
            error_cls=SubmissionError,
            json=data,
        )

    async def list_registrations(self, *, doctor_id: Optional[str] = None, **params: Any) -> Dict[str, Any]:
        path = f"/registration/doctor/{doctor_id}" if doctor_id else "/registration"
        query = {k: v for k, v in params.items() if v not in (None, "")}
        return await self._request(
            "GET", path, op="registration.list", user_message="Failed to load registrations", params=query
        )

    async def get_registration(self, registration_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET", f"/registration/{registration_id}", op="registration.get", user_message="Registration not found"
        )

    async def set_advice(self, registration_id: str, advice: str) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/registration/{registration_id}/advice",
            op="registration.advice",
            user_message="Failed to save advice",
            json={"advice": advice},
        )

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)

    # ------------------------------------------------------------ internals

    def _store_session(self, data: Dict[str, Any]) -> None:
        token = data.get("accessToken")
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        self.current_user = data.get("user")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        op: str,
        user_message: str,
        error_cls: Type[ClinicApiError] = ClinicApiError,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error("clinic.%s: request timeout", op)
            raise ClinicApiError("The server did not respond, please retry") from e
        except httpx.NetworkError as e:
            logger.error("clinic.%s: network error - %s", op, e)
            raise ClinicApiError("Cannot reach the server, please retry") from e
        except httpx.HTTPStatusError as e:
            body = _safe_json(e.response)
            logger.error("clinic.%s: HTTP %d - %s", op, e.response.status_code, body)
            raise error_cls(
                body.get("msg") or user_message,
                status_code=e.response.status_code,
                code=body.get("code"),
                detail=body,
            ) from e
        except ValueError as e:
            logger.error("clinic.%s: invalid JSON response - %s", op, e)
            raise ClinicApiError(user_message) from e


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"msg": None, "text": response.text}
    return body if isinstance(body, dict) else {"msg": None, "body": body}


__all__ = ["ClinicHttpClient"]
