# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from tripdesk_server.models import AuthProvider, Role, UserStatus


# Requests
class EmailRequest(BaseModel):
    email: EmailStr


class VerifyRegistrationRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=6, max_length=6)
    first_name: str = Field(min_length=2)
    last_name: str = Field(min_length=2)
    phone: str | None = None


class VerifyCodeRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=6, max_length=6)


class UpgradeGuestRequest(BaseModel):
    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str | None = None


class GoogleAuthRequest(BaseModel):
    id_token: str = Field(min_length=1)


# Responses
class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    phone: str | None = None
    is_guest: bool
    is_email_verified: bool
    is_phone_verified: bool
    role: Role
    auth_provider: AuthProvider
    status: UserStatus
    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class GuestUserResponse(BaseModel):
    id: int
    email: str
    is_guest: bool
    token: str


class CodeSentData(BaseModel):
    expires_at: datetime


class Envelope(BaseModel):
    """Success envelope shared by the auth endpoints."""

    status: str = "success"
    message: str
    token: str | None = None
    data: dict[str, Any] | None = None
