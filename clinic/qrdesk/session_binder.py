"""Staff display orchestration: device/doctor selection to a live registration QR."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode

from .client.errors import ClinicApiError, SessionFlowError
from .client.http_client import ClinicHttpClient
from .client.room_channel import RoomChannel
from .config import Settings, get_settings
from .context import CURRENT_QR_TOKEN_KEY, HandoffCache, RegistrationContext
from .logging_config import short_token
from .room_ids import device_room_id, new_screen_id
from .state import BinderPhase, ChannelEvent, DisplayEvent, Notification, Severity
from .token_store import TokenStore

logger = logging.getLogger(__name__)

TOKEN_ERROR_CODES = frozenset({"token_consumed", "token_expired", "token_not_found"})


def compose_registration_url(
    origin: str,
    token: Optional[str],
    device_id: Optional[str],
    doctor_id: Optional[str],
    room_id: Optional[str],
) -> Optional[str]:
    """Patient link, or None while any of the four parameters is missing."""
    if not (token and device_id and doctor_id and room_id):
        return None
    query = urlencode({"token": token, "deviceId": device_id, "doctorId": doctor_id, "roomId": room_id})
    return f"{origin.rstrip('/')}/register?{query}"


async def open_registration_session(
    http: ClinicHttpClient,
    context: RegistrationContext,
    handoff: HandoffCache,
    *,
    device_id: str,
    doctor_id: str,
    device_name: str = "",
    doctor_name: str = "",
    notes: Optional[str] = None,
) -> Notification:
    """Staff "open registration": create the mapping and stage its first token.

    On failure the context and the handoff slot are left untouched.
    """
    if notes is None:
        notes = f"Registration session started at {datetime.now():%Y-%m-%d %H:%M:%S}"
    try:
        result = await http.create_mapping(device_id, doctor_id, notes)
    except ClinicApiError as exc:
        logger.error("Failed to create mapping for device %s: %s", device_id, exc)
        return Notification(Severity.ERROR, exc.user_message, detail=exc.code)

    context.set(device_id=device_id, doctor_id=doctor_id, device_name=device_name, doctor_name=doctor_name)
    qr_token = result.get("qrToken")
    if qr_token:
        handoff.put(CURRENT_QR_TOKEN_KEY, qr_token)
        logger.info("Mapping token %s staged for the display", short_token(qr_token))
    else:
        logger.warning("Mapping for device %s returned no token", device_id)
    return Notification(Severity.SUCCESS, "Device-Doctor mapping created successfully!")


class SessionBinder:
    """Turns a (device, doctor) context into a composed, self-refreshing QR link."""

    def __init__(
        self,
        channel: RoomChannel,
        http: ClinicHttpClient,
        context: RegistrationContext,
        *,
        settings: Optional[Settings] = None,
        handoff: Optional[HandoffCache] = None,
        token_store: Optional[TokenStore] = None,
        screen_id: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.channel = channel
        self.http = http
        self.context = context
        self.handoff = handoff or HandoffCache(self.settings.handoff_cache_dir)
        self.token_store = token_store or TokenStore()
        self.screen_id = screen_id or new_screen_id()

        self._phase = BinderPhase.LOADING
        self._composed_url: Optional[str] = None
        self._confirmed_room: Optional[str] = None
        self._live = False
        self._token_pending = False
        self._subscribers: List[asyncio.Queue[DisplayEvent]] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._retry_task: Optional[asyncio.Task[None]] = None
        self._stall_task: Optional[asyncio.Task[None]] = None
        self.busy_devices: Set[str] = set()
        self.notifications: List[Notification] = []

    # ------------------------------------------------------------ state

    @property
    def phase(self) -> BinderPhase:
        return self._phase

    @property
    def composed_url(self) -> Optional[str]:
        return self._composed_url

    @property
    def room_id(self) -> Optional[str]:
        return self._confirmed_room

    @property
    def expected_room(self) -> Optional[str]:
        if not self.context.is_set:
            return None
        return device_room_id(self.context.device_id, self.context.doctor_id, self.screen_id)

    def missing_steps(self) -> List[str]:
        missing = []
        if not self.context.is_set:
            missing.append("context")
        if not self.channel.is_connected:
            missing.append("connection")
        if self._confirmed_room is None:
            missing.append("room")
        if not self.token_store.value:
            missing.append("token")
        return missing

    def register_display(self) -> asyncio.Queue[DisplayEvent]:
        queue: asyncio.Queue[DisplayEvent] = asyncio.Queue(maxsize=self.settings.channel.event_queue_size)
        self._subscribers.append(queue)
        return queue

    def unregister_display(self, queue: asyncio.Queue[DisplayEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> bool:
        if not self.context.is_set:
            await self._notify(Severity.ERROR, "Device and Doctor information is required to generate QR code")
            await self._advance_phase(BinderPhase.STALLED, error="missing_context")
            return False

        self._live = True
        self._unsubscribers = [
            self.channel.on_token_update(self._on_token_update),
            self.channel.on_room_change(self._on_room_change),
            self.channel.on_connection_change(self._on_connection_change),
            self.channel.on_device_event(self._on_device_event),
            self.channel.on_error(self._on_channel_error),
        ]
        logger.info(
            "Starting display for device %s / doctor %s (screen %s)",
            self.context.device_id,
            self.context.doctor_id,
            self.screen_id,
        )

        await self._load_token()

        if self.channel.is_connected:
            await self._join()
        elif not await self.channel.connect():
            await self._notify(Severity.WARNING, "Not connected to the server; use retry")

        self._start_stall_watch()
        await self._recompose()
        return True

    async def leave(self) -> None:
        """Explicit exit from the display: drop the staged token and free the device."""
        self.handoff.clear(CURRENT_QR_TOKEN_KEY)
        device_id = self.context.device_id
        if device_id:
            try:
                await self.http.end_mapping(device_id)
                logger.info("Device %s released", device_id)
            except ClinicApiError as exc:
                logger.error("Error ending mapping for device %s: %s", device_id, exc)
                await self._notify(Severity.ERROR, exc.user_message)
        room = self._confirmed_room
        await self.close()
        if room and self.channel.is_connected:
            await self.channel.leave_room(room)
        self.context.clear()
        self.token_store.clear()
        self._composed_url = None
        self._confirmed_room = None
        await self._advance_phase(BinderPhase.CLOSED)

    async def close(self) -> None:
        """Stop reacting to channel events and cancel timers."""
        self._live = False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for task in (self._retry_task, self._stall_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error stopping binder task: %s", e)
        self._retry_task = None
        self._stall_task = None

    # ------------------------------------------------------------ affordances

    async def retry(self) -> List[str]:
        """Re-run only the steps that are still missing; returns what was missing."""
        missing = self.missing_steps()
        if not self._live or not missing:
            return missing
        logger.info("Display retry, missing: %s", ", ".join(missing))

        if "connection" in missing:
            if not await self.channel.connect():
                await self._notify(Severity.WARNING, "Still not connected to the server")
        elif "room" in missing:
            await self._join(force_retry=True)

        if "token" in missing and not self._token_pending:
            if self._confirmed_room and self.channel.is_connected:
                await self.channel.generate(self._confirmed_room)
            else:
                await self._load_token()

        if self._phase == BinderPhase.STALLED:
            await self._advance_phase(BinderPhase.LOADING, data={"missing": self.missing_steps()})
            self._start_stall_watch()
        await self._recompose()
        return missing

    async def copy_link(self) -> Optional[str]:
        if not self._composed_url:
            await self._notify(Severity.WARNING, "QR link not ready yet")
            return None
        return self._composed_url

    # ------------------------------------------------------------ steps

    async def _load_token(self) -> bool:
        self._token_pending = True
        try:
            value, source = await self._fetch_token()
        except SessionFlowError as exc:
            logger.error("Token step failed: %s", exc)
            await self._notify(Severity.ERROR, exc.user_message)
            return False
        finally:
            self._token_pending = False

        # a push may have landed while the request was in flight; it wins
        if not self.token_store.value:
            self.token_store.set(value, source=source)
        return True

    async def _fetch_token(self) -> Tuple[str, str]:
        cached = self.handoff.take(CURRENT_QR_TOKEN_KEY)
        if cached:
            logger.info("Using token %s staged by mapping creation", short_token(cached))
            return cached, "handoff"

        try:
            data = await self.http.generate_qr(self.context.device_id, self.context.doctor_id)
        except ClinicApiError as exc:
            raise SessionFlowError("Failed to generate QR code", log_message=str(exc)) from exc
        if not data.get("token"):
            raise SessionFlowError("Failed to generate QR code", log_message="generate returned no token")
        return data["token"], "generate"

    async def _join(self, *, force_retry: bool = False) -> None:
        if not self._live or not self.channel.is_connected or self._confirmed_room:
            return
        room = await self.channel.join_device_doctor_room(
            self.context.device_id,
            self.context.doctor_id,
            screen_id=self.screen_id,
            token=self.token_store.value,
        )
        if room:
            logger.info("Join requested for %s", room)
        if force_retry and self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
            self._retry_task = None
        if self._retry_task is None or self._retry_task.done():
            self._retry_task = asyncio.create_task(self._join_retry_loop(), name="binder-join-retry")

    async def _join_retry_loop(self) -> None:
        rooms = self.settings.rooms
        delay = rooms.join_retry_delay_seconds
        attempts = 1
        try:
            while self._live and self._confirmed_room is None:
                await asyncio.sleep(delay)
                if not self._live or self._confirmed_room is not None:
                    break
                if not self.channel.is_connected:
                    # the connection handler re-joins once the transport is back
                    break
                if attempts >= rooms.join_max_attempts:
                    logger.warning("Room join not confirmed after %d attempts", attempts)
                    await self._notify(Severity.ERROR, "Could not join the display room; use retry")
                    await self._advance_phase(BinderPhase.STALLED, error="room_not_joined")
                    break
                logger.info("Retrying room join after %.1fs (attempt %d)", delay, attempts + 1)
                await self.channel.join_device_doctor_room(
                    self.context.device_id,
                    self.context.doctor_id,
                    screen_id=self.screen_id,
                    token=self.token_store.value,
                )
                attempts += 1
                delay = min(delay * rooms.join_retry_backoff, rooms.join_retry_max_delay_seconds)
        except asyncio.CancelledError:
            raise

    def _start_stall_watch(self) -> None:
        if not self._live:
            return
        if self._stall_task and not self._stall_task.done() and self._stall_task is not asyncio.current_task():
            self._stall_task.cancel()
        self._stall_task = asyncio.create_task(self._stall_watch(), name="binder-stall-watch")

    async def _stall_watch(self) -> None:
        try:
            await asyncio.sleep(self.settings.rooms.setup_timeout_seconds)
        except asyncio.CancelledError:
            raise
        if self._live and self._phase == BinderPhase.LOADING:
            missing = self.missing_steps()
            logger.warning("QR setup timeout - missing %s", missing)
            await self._notify(Severity.WARNING, "QR setup is taking longer than expected", detail=", ".join(missing))
            await self._advance_phase(BinderPhase.STALLED, data={"missing": missing}, error="setup_timeout")

    # ------------------------------------------------------------ channel handlers

    async def _on_token_update(self, value: str, room_id: str) -> None:
        if not self._live or room_id != self._confirmed_room:
            return
        self.token_store.apply_push(value, room_id)
        await self._recompose()

    async def _on_room_change(self, room_id: Optional[str]) -> None:
        if not self._live:
            return
        if room_id is not None and room_id == self.expected_room:
            self._confirmed_room = room_id
            self.context.room_id = room_id
            if self._retry_task and not self._retry_task.done():
                self._retry_task.cancel()
        elif room_id is None:
            self._confirmed_room = None
            self.context.room_id = None
        await self._recompose()

    async def _on_connection_change(self, connected: bool) -> None:
        if not self._live:
            return
        if connected:
            await self._join()
        else:
            self._confirmed_room = None
            await self._notify(Severity.WARNING, "Disconnected from server")
            self._start_stall_watch()
        await self._recompose()

    async def _on_device_event(self, event: ChannelEvent, device_id: str) -> None:
        if event == ChannelEvent.DEVICE_IN_USE:
            self.busy_devices.add(device_id)
        else:
            self.busy_devices.discard(device_id)
        await self._broadcast(
            DisplayEvent(type="devices", phase=self._phase, data={"busy": sorted(self.busy_devices)})
        )

    async def _on_channel_error(self, data: Dict[str, Any]) -> None:
        if not self._live or data.get("code") not in TOKEN_ERROR_CODES:
            return
        logger.warning("Server rejected token %s: %s", short_token(self.token_store.value), data.get("code"))
        self.token_store.invalidate()
        await self._notify(Severity.WARNING, "QR code is no longer valid; requesting a new one", detail=data.get("code"))
        await self._recompose()
        if self._confirmed_room and self.channel.is_connected:
            await self.channel.generate(self._confirmed_room)

    # ------------------------------------------------------------ composition

    async def _recompose(self) -> None:
        if self._phase == BinderPhase.CLOSED:
            return
        url = compose_registration_url(
            self.settings.frontend_origin,
            self.token_store.value,
            self.context.device_id,
            self.context.doctor_id,
            self._confirmed_room,
        )
        if url:
            if url != self._composed_url or self._phase != BinderPhase.READY:
                self._composed_url = url
                logger.info("Composed QR for room %s with token %s", self._confirmed_room, short_token(self.token_store.value))
                await self._advance_phase(
                    BinderPhase.READY,
                    data={"url": url, "token": self.token_store.value, "roomId": self._confirmed_room},
                )
            return

        if self._composed_url is not None or self._phase == BinderPhase.READY:
            self._composed_url = None
            await self._advance_phase(BinderPhase.LOADING, data={"missing": self.missing_steps()})
            self._start_stall_watch()

    async def _advance_phase(
        self,
        phase: BinderPhase,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        self._phase = phase
        await self._broadcast(DisplayEvent(type="state", phase=phase, data=data or {}, error=error))

    async def _notify(self, severity: Severity, message: str, *, detail: Optional[str] = None) -> None:
        notification = Notification(severity, message, detail)
        self.notifications.append(notification)
        await self._broadcast(
            DisplayEvent(
                type="notification",
                phase=self._phase,
                data={"severity": severity.value, "message": message, "detail": detail},
            )
        )

    async def _broadcast(self, event: DisplayEvent) -> None:
        """Broadcast event to all display subscribers, dropping the oldest when full."""
        for queue in list(self._subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = ["SessionBinder", "compose_registration_url", "open_registration_session"]
