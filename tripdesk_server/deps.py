# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""FastAPI dependencies for the process-wide collaborators built at startup."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk_server.database import get_db
from tripdesk_server.services.accounts import AccountRepository
from tripdesk_server.services.code_store import CodeStore
from tripdesk_server.services.devices import DeviceTracker
from tripdesk_server.services.email import Mailer
from tripdesk_server.services.google import GoogleVerifier
from tripdesk_server.services.otp import AuthService


def get_code_store(request: Request) -> CodeStore:
    return request.app.state.code_store


def get_google_verifier(request: Request) -> GoogleVerifier | None:
    return request.app.state.google_verifier


def get_mailer() -> Mailer:
    return Mailer()


async def get_auth_service(
    db: AsyncSession = Depends(get_db),
    codes: CodeStore = Depends(get_code_store),
    mailer: Mailer = Depends(get_mailer),
    google: GoogleVerifier | None = Depends(get_google_verifier),
) -> AuthService:
    """Per-request service over the shared code store."""
    return AuthService(AccountRepository(db), codes, mailer, google=google)


async def get_device_tracker(
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
) -> DeviceTracker:
    return DeviceTracker(db, mailer)
