"""Real-time room channel: one websocket per session with room-scoped delivery."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, AsyncIterator, Optional, Protocol, Set

import websockets

from ..config import Settings
from ..logging_config import short_token
from ..room_ids import device_room_id
from ..state import DEVICE_EVENTS, ChannelEvent, decode_message, encode_message

logger = logging.getLogger(__name__)

TokenHandler = Callable[[str, str], Any]
DeviceHandler = Callable[[ChannelEvent, str], Any]
RoomHandler = Callable[[Optional[str]], Any]
ConnectionHandler = Callable[[bool], Any]
ErrorHandler = Callable[[dict[str, Any]], Any]
Unsubscribe = Callable[[], None]


class ChannelSocket(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[ChannelSocket]]


class RoomChannel:
    """Owns the connection, the room membership and the token event stream.

    ``_current_room`` is the authoritative room cell. It changes only when a
    join/leave acknowledgment arrives or the connection drops, and every event
    handler reads it at delivery time, never from a captured copy.
    """

    def __init__(self, settings: Settings, *, connector: Optional[Connector] = None) -> None:
        self.settings = settings
        self._connector = connector or self._default_connector
        self._conn: Optional[ChannelSocket] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._connect_lock = asyncio.Lock()
        self._current_room: Optional[str] = None
        self._pending_joins: Set[str] = set()

        self._token_handlers: list[TokenHandler] = []
        self._device_handlers: list[DeviceHandler] = []
        self._room_handlers: list[RoomHandler] = []
        self._connection_handlers: list[ConnectionHandler] = []
        self._error_handlers: list[ErrorHandler] = []

    # ------------------------------------------------------------ state

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def current_room(self) -> Optional[str]:
        return self._current_room

    # ------------------------------------------------------------ connection

    async def connect(self) -> bool:
        """Open the connection once; later calls are no-ops while it is up."""
        async with self._connect_lock:
            if self._conn is not None:
                return True
            uri = self.settings.ws_url
            try:
                logger.info("Connecting to room channel %s", uri)
                self._conn = await self._connector(uri)
            except Exception as e:
                logger.error("Failed to connect to room channel: %s", e)
                return False
            self._listener_task = asyncio.create_task(self._listen(self._conn), name="room-channel-listener")
        await self._notify(self._connection_handlers, True)
        return True

    async def disconnect(self) -> None:
        task = self._listener_task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during listener task cleanup: %s", e)
        self._listener_task = None
        await self._mark_closed()

    # ------------------------------------------------------------ rooms

    async def join_room(self, room_id: str, *, token: Optional[str] = None) -> bool:
        data: dict[str, Any] = {"roomId": room_id}
        if token:
            data["token"] = token
        self._pending_joins.add(room_id)
        sent = await self._send(ChannelEvent.JOIN_ROOM, data)
        if not sent:
            self._pending_joins.discard(room_id)
        return sent

    async def leave_room(self, room_id: str) -> bool:
        self._pending_joins.discard(room_id)
        return await self._send(ChannelEvent.LEAVE_ROOM, {"roomId": room_id})

    async def join_device_doctor_room(
        self,
        device_id: str,
        doctor_id: str,
        *,
        screen_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[str]:
        """Join this display's own room; returns the room id when the join was sent."""
        room_id = device_room_id(device_id, doctor_id, screen_id)
        if await self.join_room(room_id, token=token):
            return room_id
        return None

    # ------------------------------------------------------------ commands

    async def generate(self, room_id: Optional[str] = None) -> bool:
        data = {"roomId": room_id} if room_id else {}
        return await self._send(ChannelEvent.GENERATE_QR, data)

    async def consume(self, token_value: str, room_id: Optional[str] = None) -> bool:
        data: dict[str, Any] = {"tokenId": token_value}
        if room_id:
            data["roomId"] = room_id
        logger.info("room_channel.consume: %s (room=%s)", short_token(token_value), room_id)
        return await self._send(ChannelEvent.CONSUME_QR, data)

    # ------------------------------------------------------------ subscriptions

    def on_token_update(self, callback: TokenHandler) -> Unsubscribe:
        return self._subscribe(self._token_handlers, callback)

    def on_device_event(self, callback: DeviceHandler) -> Unsubscribe:
        return self._subscribe(self._device_handlers, callback)

    def on_room_change(self, callback: RoomHandler) -> Unsubscribe:
        return self._subscribe(self._room_handlers, callback)

    def on_connection_change(self, callback: ConnectionHandler) -> Unsubscribe:
        return self._subscribe(self._connection_handlers, callback)

    def on_error(self, callback: ErrorHandler) -> Unsubscribe:
        return self._subscribe(self._error_handlers, callback)

    # ------------------------------------------------------------ incoming

    async def handle_message(self, event: str, data: dict[str, Any]) -> None:
        """Apply one server event to local state and fan it out."""
        if event == ChannelEvent.ROOM_JOINED.value:
            room_id = data.get("roomId")
            if not room_id or room_id not in self._pending_joins:
                logger.debug("Ignoring unrequested join ack for %s", room_id)
                return
            self._pending_joins.discard(room_id)
            self._current_room = room_id
            logger.info("Joined room %s", room_id)
            await self._notify(self._room_handlers, room_id)
            return

        if event == ChannelEvent.ROOM_LEFT.value:
            room_id = data.get("roomId")
            # a late leave ack must not clear a room joined after it
            if room_id and room_id == self._current_room:
                self._current_room = None
                logger.info("Left room %s", room_id)
                await self._notify(self._room_handlers, None)
            return

        if event == ChannelEvent.NEW_QR.value:
            value = data.get("qr")
            room_id = data.get("roomId")
            if not value or not room_id or room_id != self._current_room:
                logger.debug(
                    "Discarding token update %s for room %s (current=%s)",
                    short_token(value),
                    room_id,
                    self._current_room,
                )
                return
            await self._notify(self._token_handlers, value, room_id)
            return

        if event in {e.value for e in DEVICE_EVENTS}:
            device_id = data.get("deviceId")
            if device_id:
                await self._notify(self._device_handlers, ChannelEvent(event), device_id)
            return

        if event == ChannelEvent.ERROR.value:
            logger.warning("Room channel error: %s", data)
            await self._notify(self._error_handlers, data)
            return

        logger.debug("Unhandled channel event %s", event)

    async def _listen(self, conn: ChannelSocket) -> None:
        try:
            async for message in conn:
                try:
                    event, data = decode_message(message)
                except ValueError:
                    logger.warning("Invalid frame from room channel: %s", message)
                    continue

                if event == ChannelEvent.PING.value:
                    await self._send(ChannelEvent.PONG, {})
                    continue

                await self.handle_message(event, data)
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Room channel closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Room channel closed: %s", exc)
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Room channel listener crashed")
        finally:
            if self._conn is conn:
                self._listener_task = None
                await self._mark_closed()

    # ------------------------------------------------------------ internals

    async def _send(self, event: ChannelEvent, data: dict[str, Any]) -> bool:
        conn = self._conn
        if conn is None:
            logger.debug("Dropping %s - room channel not connected", event.value)
            return False
        try:
            await conn.send(encode_message(event, data))
            return True
        except websockets.ConnectionClosed:
            logger.warning("Cannot send %s - connection closed", event.value)
        except Exception as e:
            logger.error("Failed to send %s: %s", event.value, e)
        return False

    async def _mark_closed(self) -> None:
        conn = self._conn
        if conn is None:
            return
        self._conn = None
        had_room = self._current_room is not None
        self._current_room = None
        self._pending_joins.clear()
        try:
            await conn.close()
        except Exception as e:
            logger.warning("Error closing room channel: %s", e)
        if had_room:
            await self._notify(self._room_handlers, None)
        await self._notify(self._connection_handlers, False)

    @staticmethod
    def _subscribe(handlers: list, callback: Callable[..., Any]) -> Unsubscribe:
        handlers.append(callback)

        def unsubscribe() -> None:
            if callback in handlers:
                handlers.remove(callback)

        return unsubscribe

    @staticmethod
    async def _notify(handlers: list, *args: Any) -> None:
        for handler in list(handlers):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("Error in room channel handler: %s", e)

    async def _default_connector(self, uri: str) -> ChannelSocket:
        return await websockets.connect(
            uri,
            open_timeout=self.settings.channel.connect_timeout_seconds,
            ping_interval=None,
            ping_timeout=None,
        )


__all__ = ["ChannelSocket", "Connector", "RoomChannel"]
