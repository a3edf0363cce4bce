"""Token lifecycle endpoints."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...logging_config import short_token
from ..desk import Desk, get_desk
from ..schemas import ConsumeResponse, QRData, TokenEnvelope, TokenInfo, ValidateResponse
from ..tokens import TokenRecord

logger = logging.getLogger(__name__)

router = APIRouter()


def _qr_data(record: TokenRecord) -> QRData:
    return QRData(
        token=record.value,
        valid=record.valid,
        created_at=record.created_at,
        room_id=record.room_id,
    )


def _token_info(record: TokenRecord) -> TokenInfo:
    return TokenInfo(
        token=record.value,
        valid=record.valid,
        created_at=record.created_at,
        room_id=record.room_id,
        device_id=record.device_id,
        doctor_id=record.doctor_id,
        expires_at=record.expires_at,
    )


@router.get("/generate", response_model=QRData)
async def generate_qr(
    device_id: Optional[str] = Query(None, alias="deviceId"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    room_id: Optional[str] = Query(None, alias="roomId"),
    desk: Desk = Depends(get_desk),
):
    record = await desk.tokens.generate(room_id, device_id=device_id, doctor_id=doctor_id)
    if record.room_id:
        await desk.hub.publish_token(record)
    return _qr_data(record)


@router.get("/current", response_model=QRData)
async def current_qr(
    room_id: Optional[str] = Query(None, alias="roomId"),
    desk: Desk = Depends(get_desk),
):
    record = await desk.tokens.current(room_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No current token")
    return _qr_data(record)


@router.get("/validate/{token_id}", response_model=ValidateResponse)
async def validate_qr(token_id: str, desk: Desk = Depends(get_desk)):
    record = await desk.tokens.validate(token_id)
    return ValidateResponse(
        msg="Token is valid",
        valid=True,
        token=TokenEnvelope(token_info=_token_info(record)),
    )


@router.post("/consume/{token_id}", response_model=ConsumeResponse)
async def consume_qr(
    token_id: str,
    room_id: Optional[str] = Query(None, alias="roomId"),
    desk: Desk = Depends(get_desk),
):
    result = await desk.tokens.consume(token_id, room_id or None)
    pushed = await desk.hub.publish_token(result.successor)
    logger.info("qr.consume: %s consumed over HTTP, successor pushed to %d member(s)", short_token(token_id), pushed)
    return ConsumeResponse(
        msg="Token consumed",
        consumed=_qr_data(result.consumed),
        next=_qr_data(result.successor),
    )
