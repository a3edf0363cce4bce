"""Wire schemas for the REST surface (camelCase on the wire)."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------- tokens

class TokenInfo(CamelModel):
    token: str
    valid: bool
    created_at: datetime
    room_id: Optional[str] = None
    device_id: Optional[str] = None
    doctor_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class QRData(CamelModel):
    token: str
    valid: bool
    created_at: datetime
    room_id: Optional[str] = None


class TokenEnvelope(CamelModel):
    token_info: TokenInfo


class ValidateResponse(CamelModel):
    msg: str
    valid: bool
    token: Optional[TokenEnvelope] = None


class ConsumeResponse(CamelModel):
    msg: str
    consumed: QRData
    next: QRData


# ---------------------------------------------------------------- mappings

class MappingCreate(CamelModel):
    device_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    notes: str = ""


class MappingOut(CamelModel):
    id: str
    device_id: str
    doctor_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    is_active: bool
    notes: str = ""


class MappingResult(CamelModel):
    mapping: MappingOut
    qr_token: Optional[str] = None


class MappingList(CamelModel):
    mappings: list[MappingOut]


# ---------------------------------------------------------------- registrations

class RegistrationData(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    dob: Optional[date] = None
    age: Optional[int] = Field(None, ge=0, description="Age in days")
    sex: Optional[str] = None
    address: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    allergies: Optional[str] = None
    current_medical_illness: Optional[str] = None
    symptoms: Optional[str] = None


class RegistrationOut(RegistrationData):
    id: str
    token_id: str
    device_id: Optional[str] = None
    doctor_id: Optional[str] = None
    doctor_advice: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class RegistrationResponse(CamelModel):
    msg: str
    registration: RegistrationOut


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class RegistrationList(CamelModel):
    registrations: list[RegistrationOut]
    pagination: Pagination


class AdviceUpdate(CamelModel):
    advice: str = Field(..., max_length=20000)


# ---------------------------------------------------------------- auth

class LoginRequest(CamelModel):
    username: str
    password: str


class UserOut(CamelModel):
    id: str
    username: str
    role: str


class LoginResponse(CamelModel):
    user: UserOut
    access_token: str
