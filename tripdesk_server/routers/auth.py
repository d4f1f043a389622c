# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, Request, Response

from tripdesk_server.api.schemas import (
    CodeSentData,
    EmailRequest,
    Envelope,
    GoogleAuthRequest,
    GuestUserResponse,
    UpgradeGuestRequest,
    UserResponse,
    VerifyCodeRequest,
    VerifyRegistrationRequest,
)
from tripdesk_server.auth import clear_session_cookie, get_current_user, set_session_cookie
from tripdesk_server.deps import get_auth_service, get_device_tracker
from tripdesk_server.models import User
from tripdesk_server.rate_limit import rate_limit_auth_dep
from tripdesk_server.services.devices import DeviceInfo, DeviceTracker
from tripdesk_server.services.otp import AuthResult, AuthService

router = APIRouter(prefix="/auth", tags=["auth"])


def _user_data(user: User) -> dict:
    return {"user": UserResponse.model_validate(user).model_dump(mode="json")}


def _code_sent(message: str, expires_at) -> Envelope:
    return Envelope(message=message, data=CodeSentData(expires_at=expires_at).model_dump(mode="json"))


def _signed_in(request: Request, response: Response, result: AuthResult, message: str) -> Envelope:
    set_session_cookie(request, response, result.token)
    return Envelope(message=message, token=result.token, data=_user_data(result.user))


async def _signed_in_tracked(
    request: Request,
    response: Response,
    result: AuthResult,
    message: str,
    devices: DeviceTracker,
) -> Envelope:
    """Sign in, then record the device and warn the user when it is new."""
    envelope = _signed_in(request, response, result, message)
    await devices.check_and_track(result.user, DeviceInfo.from_request(request))
    return envelope


@router.post("/register-otp", response_model=Envelope, dependencies=[Depends(rate_limit_auth_dep)])
async def register_otp(
    data: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> Envelope:
    """Send a registration code to the email."""
    expires_at = await service.request_registration_code(data.email)
    return _code_sent("OTP sent to your email for verification", expires_at)


@router.post("/verify-otp", response_model=Envelope, dependencies=[Depends(rate_limit_auth_dep)])
async def verify_otp(
    data: VerifyRegistrationRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    devices: DeviceTracker = Depends(get_device_tracker),
) -> Envelope:
    """Verify a registration code; creates the account or upgrades a guest."""
    result = await service.verify_registration_code(
        data.email, data.otp, data.first_name, data.last_name, data.phone
    )
    return await _signed_in_tracked(request, response, result, "Registration successful.", devices)


@router.post("/login-otp", response_model=Envelope, dependencies=[Depends(rate_limit_auth_dep)])
async def login_otp(
    data: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> Envelope:
    """Send a login code. Responds the same whether or not the account exists."""
    expires_at = await service.request_login_code(data.email)
    return _code_sent("OTP sent to your email for login", expires_at)


@router.post("/verify-login-otp", response_model=Envelope, dependencies=[Depends(rate_limit_auth_dep)])
async def verify_login_otp(
    data: VerifyCodeRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    devices: DeviceTracker = Depends(get_device_tracker),
) -> Envelope:
    result = await service.verify_login_code(data.email, data.otp)
    return await _signed_in_tracked(request, response, result, "Login successful.", devices)


@router.post("/google", response_model=Envelope)
async def google_auth(
    data: GoogleAuthRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
    devices: DeviceTracker = Depends(get_device_tracker),
) -> Envelope:
    result = await service.google_auth(data.id_token)
    return await _signed_in_tracked(
        request, response, result, "Google authentication successful.", devices
    )


@router.post("/guest", response_model=Envelope)
async def create_guest(
    data: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> Envelope:
    """Send a guest checkout code."""
    expires_at = await service.request_guest_code(data.email)
    return _code_sent("OTP sent to email for guest account creation", expires_at)


@router.post("/verify-guest", response_model=Envelope)
async def verify_guest(
    data: VerifyCodeRequest,
    service: AuthService = Depends(get_auth_service),
) -> Envelope:
    """Verify a guest code. The token rides inside the user object; no cookie is set."""
    result = await service.verify_guest_code(data.email, data.otp)
    guest = GuestUserResponse(
        id=result.user.id,
        email=result.user.email,
        is_guest=result.user.is_guest,
        token=result.token,
    )
    return Envelope(message="Guest account created successfully", data={"user": guest.model_dump()})


@router.post("/upgrade-guest", response_model=Envelope)
async def upgrade_guest(
    data: UpgradeGuestRequest,
    request: Request,
    response: Response,
    service: AuthService = Depends(get_auth_service),
) -> Envelope:
    result = await service.upgrade_guest(data.email, data.first_name, data.last_name, data.phone)
    return _signed_in(
        request, response, result, "Guest account upgraded to full user account successfully"
    )


@router.post("/logout", response_model=Envelope)
async def logout(response: Response) -> Envelope:
    clear_session_cookie(response)
    return Envelope(message="Logged out successfully")


@router.get("/me", response_model=Envelope)
async def get_me(user: User = Depends(get_current_user)) -> Envelope:
    """Get current user profile."""
    return Envelope(message="Current user", data=_user_data(user))
