"""Patient-side registration flow driven by the token in the scanned link."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .client.errors import ClinicApiError
from .client.http_client import ClinicHttpClient
from .client.room_channel import RoomChannel
from .config import Settings, get_settings
from .context import RegistrationContext
from .logging_config import short_token
from .state import ChannelEvent, Notification, RegistrationPhase, Severity

logger = logging.getLogger(__name__)

# registration fields echoed back into the form in update mode
FORM_FIELDS = (
    "name",
    "dob",
    "age",
    "sex",
    "address",
    "contactNumber",
    "email",
    "allergies",
    "currentMedicalIllness",
    "symptoms",
)


class RegistrationFlow:
    """State machine over the validity of one registration token.

    VALIDATING -> READY -> SUBMITTED for a fresh link, VALIDATING -> UPDATE ->
    SUBMITTED when a submission already exists for the token, and INVALID when
    the link carries no token or neither validation nor lookup succeed.
    """

    def __init__(
        self,
        http: ClinicHttpClient,
        channel: Optional[RoomChannel] = None,
        context: Optional[RegistrationContext] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http = http
        self.channel = channel
        self.context = context

        self.phase = RegistrationPhase.VALIDATING
        self.token: Optional[str] = None
        self.room_id: Optional[str] = None
        self.device_id: Optional[str] = None
        self.doctor_id: Optional[str] = None
        self.prefill: Dict[str, Any] = {}
        self.form: Dict[str, Any] = {}
        self.registration: Optional[Dict[str, Any]] = None
        self.notifications: List[Notification] = []

        self._params: Dict[str, str] = {}
        self._live = True
        self._submitting = False
        self._token_usable = False
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------ load

    async def load(self, params: Mapping[str, str]) -> RegistrationPhase:
        """Resolve the link's token into READY, UPDATE or INVALID."""
        self._params = dict(params)
        self.phase = RegistrationPhase.VALIDATING
        token = (params.get("token") or "").strip()
        url_room = params.get("roomId") or None
        self.device_id = params.get("deviceId") or None
        self.doctor_id = params.get("doctorId") or None

        if not token:
            logger.info("registration: link without a token")
            self._notify(Severity.ERROR, "Invalid registration link. Please scan the QR code again.")
            self.phase = RegistrationPhase.INVALID
            return self.phase
        self.token = token

        try:
            response = await self.http.validate_token(token)
        except ClinicApiError as exc:
            if not self._live:
                return self.phase
            if exc.is_transport:
                self._notify(Severity.ERROR, exc.user_message)
                return self.phase
            logger.info("registration: token %s rejected (%s); looking for a submission", short_token(token), exc.code)
            self._token_usable = False
            self.room_id = url_room
            return await self._load_existing(required=True)

        if not self._live:
            return self.phase
        info = (response.get("token") or {}).get("tokenInfo") or {}
        # the server's record is authoritative for the room
        self.room_id = info.get("roomId") or url_room
        self.device_id = self.device_id or info.get("deviceId")
        self.doctor_id = self.doctor_id or info.get("doctorId")
        self._token_usable = True
        if url_room and info.get("roomId") and url_room != info.get("roomId"):
            logger.warning("registration: link room %s differs from token room %s", url_room, info.get("roomId"))

        # an earlier submit may have landed without its consume signal
        return await self._load_existing(required=False)

    async def reload(self) -> RegistrationPhase:
        return await self.load(self._params)

    async def _load_existing(self, *, required: bool) -> RegistrationPhase:
        try:
            existing = await self.http.get_registration_by_token(self.token)
        except ClinicApiError as exc:
            if not self._live:
                return self.phase
            if exc.is_transport:
                if required:
                    self._notify(Severity.ERROR, exc.user_message)
                    return self.phase
                self.phase = RegistrationPhase.READY
            elif required:
                self._notify(Severity.ERROR, "This registration link is invalid or has expired.")
                self.phase = RegistrationPhase.INVALID
                return self.phase
            else:
                self.phase = RegistrationPhase.READY
        else:
            if not self._live:
                return self.phase
            self.registration = existing
            self.prefill = {k: existing.get(k) for k in FORM_FIELDS if existing.get(k) is not None}
            self.form = dict(self.prefill)
            self.device_id = self.device_id or existing.get("deviceId")
            self.doctor_id = self.doctor_id or existing.get("doctorId")
            self.phase = RegistrationPhase.UPDATE
            self._notify(Severity.INFO, "You have already registered. You can update your information below.")

        await self._watch_device()
        return self.phase

    # ------------------------------------------------------------ submit

    async def submit(self, data: Mapping[str, Any]) -> bool:
        if self.phase not in (RegistrationPhase.READY, RegistrationPhase.UPDATE):
            self._notify(Severity.WARNING, "This form can no longer be submitted.")
            return False
        if self._submitting:
            return False

        self.form = dict(data)
        payload = {k: v for k, v in data.items() if v not in (None, "")}
        updating = self.phase == RegistrationPhase.UPDATE
        self._submitting = True
        try:
            if updating:
                response = await self.http.update_registration_by_token(self.token, payload)
            else:
                response = await self.http.create_registration(self.token, payload)
        except ClinicApiError as exc:
            logger.warning("registration: submit failed for %s: %s", short_token(self.token), exc)
            if self._live:
                self._notify(Severity.ERROR, exc.user_message, detail=exc.code)
            return False
        finally:
            self._submitting = False

        if not self._live:
            return False
        self.registration = response.get("registration")
        if self._token_usable:
            await self._signal_consumption()
        self.phase = RegistrationPhase.SUBMITTED
        self._notify(
            Severity.SUCCESS,
            response.get("msg")
            or ("Registration information updated successfully" if updating else "Registration successful!"),
        )
        return True

    async def _signal_consumption(self) -> bool:
        """Redeem the token so the display's room receives its successor."""
        token, room = self.token, self.room_id
        if self.channel is not None and self.channel.is_connected:
            if await self.channel.consume(token, room):
                self._token_usable = False
                return True
        try:
            await self.http.consume_qr(token, room)
        except ClinicApiError as exc:
            # the registration itself already succeeded
            logger.warning("registration: consume failed for %s: %s", short_token(token), exc)
            return False
        self._token_usable = False
        return True

    # ------------------------------------------------------------ room

    async def _watch_device(self) -> None:
        if self.channel is None or not self.room_id:
            return
        if not self._unsubscribers:
            self._unsubscribers.append(self.channel.on_device_event(self._on_device_event))
        if not self.channel.is_connected and not await self.channel.connect():
            logger.info("registration: channel unavailable; device events will not be received")
            return
        await self.channel.join_room(self.room_id)

    def _on_device_event(self, event: ChannelEvent, device_id: str) -> None:
        if event != ChannelEvent.DEVICE_AVAILABLE or self.context is None:
            return
        if device_id in (self.device_id, self.context.device_id):
            logger.info("registration: device %s released; clearing context", device_id)
            self.context.clear()

    async def close(self) -> None:
        """Stop applying results; late responses are ignored from here on."""
        self._live = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self.channel is not None and self.room_id and self.channel.current_room == self.room_id:
            await self.channel.leave_room(self.room_id)

    def _notify(self, severity: Severity, message: str, *, detail: Optional[str] = None) -> None:
        self.notifications.append(Notification(severity, message, detail))


__all__ = ["FORM_FIELDS", "RegistrationFlow"]
