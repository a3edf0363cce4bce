"""Staff session endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from ..auth import UserPrincipal, bearer_token, get_current_user
from ..desk import Desk, get_desk
from ..errors import NotAuthenticated
from ..schemas import LoginRequest, LoginResponse, UserOut

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_out(principal: UserPrincipal) -> UserOut:
    return UserOut(id=principal.id, username=principal.username, role=principal.role)


@router.post("/login", response_model=LoginResponse)
async def login(payload: LoginRequest, desk: Desk = Depends(get_desk)):
    result = desk.sessions.login(payload.username.strip(), payload.password)
    if result is None:
        logger.warning("auth.login: rejected credentials for %r", payload.username)
        raise NotAuthenticated("Invalid username or password")
    principal, token = result
    return LoginResponse(user=_user_out(principal), access_token=token)


@router.post("/refresh", response_model=LoginResponse)
async def refresh(request: Request, desk: Desk = Depends(get_desk)):
    token = bearer_token(request)
    result = desk.sessions.refresh(token) if token else None
    if result is None:
        raise NotAuthenticated("Session expired")
    principal, new_token = result
    return LoginResponse(user=_user_out(principal), access_token=new_token)


@router.post("/logout")
async def logout(request: Request, desk: Desk = Depends(get_desk)):
    token = bearer_token(request)
    if token:
        desk.sessions.logout(token)
    return {"msg": "Logged out"}


@router.get("/me", response_model=UserOut)
async def me(current_user: UserPrincipal = Depends(get_current_user)):
    return _user_out(current_user)


@router.get("/doctors", response_model=list[UserOut])
async def doctors(desk: Desk = Depends(get_desk), current_user: UserPrincipal = Depends(get_current_user)):
    return [_user_out(p) for p in desk.sessions.doctors()]
