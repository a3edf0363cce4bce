"""Device-doctor mapping endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from ...logging_config import short_token
from ...state import ChannelEvent
from ..auth import UserPrincipal, get_current_user
from ..desk import Desk, get_desk
from ..errors import MappingNotFound
from ..mappings import DeviceDoctorMapping
from ..schemas import MappingCreate, MappingList, MappingOut, MappingResult

logger = logging.getLogger(__name__)

router = APIRouter()


def _mapping_out(mapping: DeviceDoctorMapping) -> MappingOut:
    return MappingOut.model_validate(mapping)


@router.post("", response_model=MappingResult, status_code=201)
async def create_mapping(
    payload: MappingCreate,
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    mapping = await desk.mappings.create(payload.device_id, payload.doctor_id, payload.notes)
    # first token of the session; bound to the display's room when it joins
    token = await desk.tokens.generate(device_id=payload.device_id, doctor_id=payload.doctor_id)
    await desk.hub.broadcast(ChannelEvent.DEVICE_IN_USE, {"deviceId": payload.device_id})
    logger.info(
        "mappings.create by %s: device %s, first token %s",
        current_user.username,
        payload.device_id,
        short_token(token.value),
    )
    return MappingResult(mapping=_mapping_out(mapping), qr_token=token.value)


@router.get("", response_model=MappingList)
async def list_mappings(
    active_only: bool = Query(False, alias="activeOnly"),
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    mappings = await desk.mappings.all(active_only=active_only)
    return MappingList(mappings=[_mapping_out(m) for m in mappings])


@router.get("/device/{device_id}", response_model=MappingResult)
async def current_mapping(
    device_id: str,
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    mapping = await desk.mappings.active_for(device_id)
    if mapping is None:
        raise MappingNotFound("No active mapping for device", details={"deviceId": device_id})
    return MappingResult(mapping=_mapping_out(mapping))


@router.delete("/{device_id}", response_model=MappingResult)
async def end_mapping(
    device_id: str,
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    mapping = await desk.mappings.end(device_id)
    await desk.hub.broadcast(ChannelEvent.DEVICE_AVAILABLE, {"deviceId": device_id})
    return MappingResult(mapping=_mapping_out(mapping))
