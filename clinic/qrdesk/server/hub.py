"""Real-time channel hub: websocket connections, room commands and pushes."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect

from ..config import ChannelSettings
from ..logging_config import short_token
from ..room_ids import parse_device_room
from ..state import ChannelEvent, decode_message, encode_message
from .errors import DeskError
from .rooms import RoomRegistry
from .tokens import TokenManager, TokenRecord

logger = logging.getLogger(__name__)


class TextSocket(Protocol):
    async def send_text(self, data: str) -> None: ...


@dataclass
class Connection:
    socket: TextSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Hub:
    """Routes channel commands to the token manager and fans events out to rooms."""

    def __init__(
        self,
        tokens: TokenManager,
        rooms: Optional[RoomRegistry] = None,
        settings: Optional[ChannelSettings] = None,
    ) -> None:
        self.tokens = tokens
        self.rooms = rooms or RoomRegistry()
        self.settings = settings or ChannelSettings()
        self._connections: Dict[str, Connection] = {}
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="hub-heartbeat")

    async def stop(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None

    def register(self, socket: TextSocket) -> Connection:
        conn = Connection(socket=socket)
        self._connections[conn.id] = conn
        logger.info("hub: connection %s opened (%d live)", conn.id, len(self._connections))
        return conn

    def unregister(self, conn: Connection) -> None:
        self._connections.pop(conn.id, None)
        rooms = self.rooms.drop(conn.id)
        logger.info("hub: connection %s closed, left %d room(s)", conn.id, len(rooms))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one websocket connection until the peer goes away."""
        await websocket.accept()
        conn = self.register(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event, data = decode_message(raw)
                except ValueError as exc:
                    logger.warning("hub: malformed frame from %s: %s", conn.id, exc)
                    continue
                await self.dispatch(conn, event, data)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.error("hub: unexpected error on %s: %s", conn.id, exc)
        finally:
            self.unregister(conn)

    # ------------------------------------------------------------ commands

    async def dispatch(self, conn: Connection, event: str, data: Dict[str, Any]) -> None:
        try:
            if event == ChannelEvent.JOIN_ROOM.value:
                await self._on_join(conn, data)
            elif event == ChannelEvent.LEAVE_ROOM.value:
                await self._on_leave(conn, data)
            elif event == ChannelEvent.GENERATE_QR.value:
                await self._on_generate(conn, data)
            elif event == ChannelEvent.CONSUME_QR.value:
                await self._on_consume(conn, data)
            elif event == ChannelEvent.PONG.value:
                return
            else:
                logger.debug("hub: ignoring unknown event %r from %s", event, conn.id)
        except DeskError as exc:
            await self.send(conn, ChannelEvent.ERROR, {"code": exc.code, "msg": exc.msg, "event": event})
        except Exception as exc:
            logger.exception("hub: error handling %s from %s: %s", event, conn.id, exc)
            await self.send(conn, ChannelEvent.ERROR, {"code": "internal_error", "msg": "Internal error", "event": event})

    async def _on_join(self, conn: Connection, data: Dict[str, Any]) -> None:
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            await self.send(conn, ChannelEvent.ERROR, {"code": "room_required", "msg": "roomId is required", "event": "JOIN_ROOM"})
            return

        self.rooms.join(conn.id, room_id)
        # acknowledgment goes out before any token for this room
        await self.send(conn, ChannelEvent.ROOM_JOINED, {"roomId": room_id})

        record: Optional[TokenRecord] = None
        offered = data.get("token")
        if isinstance(offered, str) and offered:
            record = await self.tokens.bind(offered, room_id)
        if record is None:
            record = await self.tokens.current(room_id)
        # only a display offers a token; a patient rejoining an abandoned room gets none minted
        if record is None and offered:
            device_room = parse_device_room(room_id)
            if device_room is not None:
                record = await self.tokens.generate(
                    room_id,
                    device_id=device_room.device_id,
                    doctor_id=device_room.doctor_id,
                )
        if record is not None:
            await self.send(conn, ChannelEvent.NEW_QR, {"qr": record.value, "roomId": room_id})

    async def _on_leave(self, conn: Connection, data: Dict[str, Any]) -> None:
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            return
        self.rooms.leave(conn.id, room_id)
        await self.send(conn, ChannelEvent.ROOM_LEFT, {"roomId": room_id})

    async def _on_generate(self, conn: Connection, data: Dict[str, Any]) -> None:
        room_id = data.get("roomId") or self.rooms.last_joined(conn.id)
        device_room = parse_device_room(room_id) if room_id else None
        record = await self.tokens.generate(
            room_id,
            device_id=device_room.device_id if device_room else None,
            doctor_id=device_room.doctor_id if device_room else None,
        )
        if room_id:
            await self.publish_token(record)
        else:
            await self.send(conn, ChannelEvent.NEW_QR, {"qr": record.value, "roomId": None})

    async def _on_consume(self, conn: Connection, data: Dict[str, Any]) -> None:
        token_id = data.get("tokenId")
        if not isinstance(token_id, str) or not token_id:
            await self.send(conn, ChannelEvent.ERROR, {"code": "token_required", "msg": "tokenId is required", "event": "CONSUME_QR"})
            return
        result = await self.tokens.consume(token_id, data.get("roomId") or None)
        if result.successor.room_id:
            await self.publish_token(result.successor)
        else:
            logger.info("hub: consumed %s without a room; successor not pushed", short_token(token_id))

    # ------------------------------------------------------------ fan-out

    async def publish_token(self, record: TokenRecord) -> int:
        if not record.room_id:
            return 0
        return await self.emit_room(record.room_id, ChannelEvent.NEW_QR, {"qr": record.value, "roomId": record.room_id})

    async def emit_room(self, room_id: str, event: ChannelEvent, data: Dict[str, Any]) -> int:
        members = self.rooms.members(room_id)
        for conn_id in members:
            conn = self._connections.get(conn_id)
            if conn is not None:
                await self.send(conn, event, data)
        return len(members)

    async def broadcast(self, event: ChannelEvent, data: Dict[str, Any]) -> None:
        for conn in list(self._connections.values()):
            await self.send(conn, event, data)

    async def send(self, conn: Connection, event: ChannelEvent, data: Dict[str, Any]) -> None:
        message = encode_message(event, data)
        try:
            async with conn.send_lock:
                await conn.socket.send_text(message)
        except Exception as exc:
            logger.debug("hub: send %s to %s failed (client gone?): %s", event.value, conn.id, exc)

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.settings.ping_interval_seconds)
                try:
                    await self.broadcast(ChannelEvent.PING, {})
                except Exception as exc:
                    logger.warning("hub: heartbeat failed: %s", exc)
        except asyncio.CancelledError:
            raise


__all__ = ["Connection", "Hub"]
