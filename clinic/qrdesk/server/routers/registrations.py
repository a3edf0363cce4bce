"""Registration endpoints: patient submissions by token, staff review and doctor advice."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth import UserPrincipal, get_current_user
from ..desk import Desk, get_desk
from ..registrations import page_count
from ..schemas import (
    AdviceUpdate,
    Pagination,
    RegistrationData,
    RegistrationList,
    RegistrationOut,
    RegistrationResponse,
)

router = APIRouter()


async def _listing(
    desk: Desk,
    *,
    page: int,
    limit: int,
    search: str,
    status: str,
    doctor_id: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> RegistrationList:
    items, total = await desk.registrations.list(
        page=page,
        limit=limit,
        search=search,
        status=status,
        doctor_id=doctor_id,
        start_date=start_date,
        end_date=end_date,
    )
    return RegistrationList(
        registrations=[r.to_out() for r in items],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/token/{token_id}", response_model=RegistrationOut)
async def get_by_token(token_id: str, desk: Desk = Depends(get_desk)):
    registration = await desk.registrations.get_by_token(token_id)
    return registration.to_out()


@router.put("/token/{token_id}", response_model=RegistrationResponse)
async def update_by_token(token_id: str, payload: RegistrationData, desk: Desk = Depends(get_desk)):
    registration = await desk.registrations.update_by_token(token_id, payload)
    return RegistrationResponse(msg="Registration information updated successfully", registration=registration.to_out())


@router.get("", response_model=RegistrationList)
async def list_registrations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str = Query("", description="Search by name, contact, email or symptoms"),
    status: str = Query("", description="Filter: pending, reviewed"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    return await _listing(
        desk,
        page=page,
        limit=limit,
        search=search,
        status=status,
        doctor_id=None,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/doctor/{doctor_id}", response_model=RegistrationList)
async def list_for_doctor(
    doctor_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str = Query(""),
    status: str = Query(""),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    return await _listing(
        desk,
        page=page,
        limit=limit,
        search=search,
        status=status,
        doctor_id=doctor_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/{registration_id}", response_model=RegistrationOut)
async def get_registration(
    registration_id: str,
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    registration = await desk.registrations.get(registration_id)
    return registration.to_out()


@router.put("/{registration_id}/advice", response_model=RegistrationResponse)
async def set_advice(
    registration_id: str,
    payload: AdviceUpdate,
    desk: Desk = Depends(get_desk),
    current_user: UserPrincipal = Depends(get_current_user),
):
    registration = await desk.registrations.set_advice(registration_id, payload.advice, current_user)
    return RegistrationResponse(msg="Doctor advice saved", registration=registration.to_out())


@router.post("/{token_id}", response_model=RegistrationResponse, status_code=201)
async def create_registration(token_id: str, payload: RegistrationData, desk: Desk = Depends(get_desk)):
    # the token must still be usable; consumption is signalled separately
    record = await desk.tokens.validate(token_id)
    registration = await desk.registrations.create(record, payload)
    return RegistrationResponse(
        msg="Registration successful! You will be called shortly.",
        registration=registration.to_out(),
    )
