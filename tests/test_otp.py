# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""One-time code flows: registration, login, guests, upgrade and Google sign-in."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from tripdesk_server.auth import decode_token
from tripdesk_server.errors import (
    AlreadyRegistered,
    GoogleAuthFailed,
    GoogleAuthUnavailable,
    NotFound,
    OtpExpiredOrInvalid,
    OtpInvalid,
    UserNotFound,
)
from tripdesk_server.models import AuthProvider
from tripdesk_server.services.email import EmailKind
from tripdesk_server.services.google import GoogleVerifier
from tripdesk_server.services.otp import (
    AuthService,
    OtpPurpose,
    generate_code,
    hash_code,
)

pytestmark = pytest.mark.anyio

EMAIL = "a@x.com"


def _wrong(code: str) -> str:
    return "100000" if code != "100000" else "100001"


async def _register(service, mailer, email=EMAIL, first="Jane", last="Doe"):
    await service.request_registration_code(email)
    return await service.verify_registration_code(email, mailer.last_code(email), first, last)


def test_generate_code_is_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6 and code.isdigit()
        assert 100000 <= int(code) <= 999999


def test_hash_code_keeps_leading_zeros():
    assert hash_code("000123") != hash_code("123")
    assert len(hash_code("000123")) == 64


async def test_request_returns_expiry_and_stores_only_hash(service, mailer, shared_tier, clock):
    expires_at = await service.request_registration_code(EMAIL)
    assert expires_at == datetime.fromtimestamp(clock() + 900, timezone.utc)
    code = mailer.last_code(EMAIL)
    stored, _ = shared_tier.data[OtpPurpose.REGISTER.key(EMAIL)]
    assert stored == hash_code(code)
    assert mailer.sent[-1][1] is EmailKind.REGISTRATION_CODE


async def test_registration_code_is_single_use(service, mailer):
    await service.request_registration_code(EMAIL)
    code = mailer.last_code(EMAIL)
    result = await service.verify_registration_code(EMAIL, code, "Jane", "Doe")
    assert result.user.email == EMAIL
    assert result.user.name == "Jane Doe"
    assert result.user.is_guest is False
    assert result.user.is_email_verified is True
    assert result.user.auth_provider is AuthProvider.EMAIL
    assert decode_token(result.token)["sub"] == str(result.user.id)

    with pytest.raises(OtpExpiredOrInvalid):
        await service.verify_registration_code(EMAIL, code, "Jane", "Doe")


async def test_wrong_code_does_not_consume(service, mailer):
    await service.request_registration_code(EMAIL)
    code = mailer.last_code(EMAIL)
    with pytest.raises(OtpInvalid):
        await service.verify_registration_code(EMAIL, _wrong(code), "Jane", "Doe")
    result = await service.verify_registration_code(EMAIL, code, "Jane", "Doe")
    assert result.user.id is not None


async def test_verify_without_request(service):
    with pytest.raises(OtpExpiredOrInvalid):
        await service.verify_login_code(EMAIL, "123456")


async def test_new_request_invalidates_previous_code(service, mailer):
    await service.request_registration_code(EMAIL)
    first = mailer.last_code(EMAIL)
    await service.request_registration_code(EMAIL)
    second = mailer.last_code(EMAIL)
    if first != second:
        with pytest.raises(OtpInvalid):
            await service.verify_registration_code(EMAIL, first, "Jane", "Doe")
    await service.verify_registration_code(EMAIL, second, "Jane", "Doe")


async def test_code_expires_after_ttl(service, mailer, clock):
    await service.request_registration_code(EMAIL)
    clock.advance(900)
    with pytest.raises(OtpExpiredOrInvalid):
        await service.verify_registration_code(EMAIL, mailer.last_code(EMAIL), "Jane", "Doe")


async def test_code_valid_just_before_expiry(service, mailer, clock):
    await service.request_login_code(EMAIL)
    assert mailer.sent == []
    await _register(service, mailer)
    await service.request_login_code(EMAIL)
    clock.advance(899)
    result = await service.verify_login_code(EMAIL, mailer.last_code(EMAIL))
    assert result.user.email == EMAIL


async def test_login_for_unknown_email_looks_like_success(service, mailer, code_store, clock):
    expires_at = await service.request_login_code("nobody@x.com")
    assert expires_at == datetime.fromtimestamp(clock() + 900, timezone.utc)
    assert mailer.sent == []
    assert await code_store.get(OtpPurpose.LOGIN.key("nobody@x.com")) is None


async def test_login_flow_updates_last_login(service, mailer, clock):
    registered = await _register(service, mailer)
    clock.advance(3600)
    await service.request_login_code(EMAIL)
    assert mailer.sent[-1][1] is EmailKind.LOGIN_CODE
    assert mailer.sent[-1][2]["name"] == "Jane Doe"
    result = await service.verify_login_code(EMAIL, mailer.last_code(EMAIL))
    assert result.user.id == registered.user.id
    last_login = result.user.last_login_at.replace(tzinfo=timezone.utc)
    assert abs(last_login.timestamp() - clock()) < 1


async def test_login_verify_rechecks_account(service, mailer, code_store):
    await code_store.put(OtpPurpose.LOGIN.key(EMAIL), hash_code("123456"), 900)
    with pytest.raises(UserNotFound):
        await service.verify_login_code(EMAIL, "123456")


async def test_guest_then_register_upgrades_same_account(service, mailer):
    await service.request_guest_code(EMAIL)
    assert mailer.sent[-1][1] is EmailKind.GUEST_CODE
    guest = await service.verify_guest_code(EMAIL, mailer.last_code(EMAIL))
    assert guest.user.is_guest is True
    assert guest.user.is_email_verified is True
    assert guest.token
    assert mailer.sent[-1][1] is EmailKind.GUEST_WELCOME

    result = await _register(service, mailer, first="Jane", last="Doe")
    assert result.user.id == guest.user.id
    assert result.user.is_guest is False
    assert result.user.name == "Jane Doe"


async def test_guest_may_request_again(service, mailer):
    await service.request_guest_code(EMAIL)
    first = await service.verify_guest_code(EMAIL, mailer.last_code(EMAIL))
    welcome_count = sum(1 for _, kind, _ in mailer.sent if kind is EmailKind.GUEST_WELCOME)
    await service.request_guest_code(EMAIL)
    second = await service.verify_guest_code(EMAIL, mailer.last_code(EMAIL))
    assert second.user.id == first.user.id
    assert sum(1 for _, kind, _ in mailer.sent if kind is EmailKind.GUEST_WELCOME) == welcome_count


async def test_registered_email_cannot_register_or_become_guest(service, mailer):
    await _register(service, mailer)
    with pytest.raises(AlreadyRegistered):
        await service.request_registration_code(EMAIL)
    with pytest.raises(AlreadyRegistered):
        await service.request_guest_code(EMAIL)


async def test_guest_verify_rejects_registered_email(service, mailer, code_store):
    await _register(service, mailer)
    await code_store.put(OtpPurpose.GUEST.key(EMAIL), hash_code("654321"), 900)
    with pytest.raises(AlreadyRegistered):
        await service.verify_guest_code(EMAIL, "654321")


async def test_emails_are_normalised(service, mailer):
    await service.request_registration_code("  Jane@X.com ")
    code = mailer.last_code("jane@x.com")
    result = await service.verify_registration_code("JANE@x.com", code, "Jane", "Doe")
    assert result.user.email == "jane@x.com"


async def test_full_flow_with_shared_tier_down(service, mailer, shared_tier):
    shared_tier.down = True
    await service.request_registration_code(EMAIL)
    code = mailer.last_code(EMAIL)
    result = await service.verify_registration_code(EMAIL, code, "Jane", "Doe")
    assert result.user.email == EMAIL
    with pytest.raises(OtpExpiredOrInvalid):
        await service.verify_registration_code(EMAIL, code, "Jane", "Doe")


async def test_concurrent_verification_succeeds_once(service, mailer):
    await _register(service, mailer)
    await service.request_login_code(EMAIL)
    code = mailer.last_code(EMAIL)
    results = await asyncio.gather(
        service.verify_code(OtpPurpose.LOGIN, EMAIL, code),
        service.verify_code(OtpPurpose.LOGIN, EMAIL, code),
        return_exceptions=True,
    )
    assert results.count(None) == 1
    assert sum(isinstance(r, OtpExpiredOrInvalid) for r in results) == 1


async def test_mail_failure_does_not_block_request(accounts, code_store, clock):
    class BrokenMailer:
        async def send(self, to, kind, **context):
            raise OSError("smtp down")

    service = AuthService(accounts, code_store, BrokenMailer(), clock=clock)
    expires_at = await service.request_guest_code(EMAIL)
    assert expires_at > datetime.fromtimestamp(clock(), timezone.utc)
    assert await code_store.get(OtpPurpose.GUEST.key(EMAIL)) is not None


async def test_upgrade_guest(service, mailer):
    await service.request_guest_code(EMAIL)
    guest = await service.verify_guest_code(EMAIL, mailer.last_code(EMAIL))
    result = await service.upgrade_guest(EMAIL, "Jane", "Doe", "+2348000000000")
    assert result.user.id == guest.user.id
    assert result.user.is_guest is False
    assert result.user.phone == "+2348000000000"
    assert decode_token(result.token)["sub"] == str(guest.user.id)


async def test_upgrade_guest_errors(service, mailer):
    with pytest.raises(NotFound):
        await service.upgrade_guest(EMAIL, "Jane", "Doe")
    await _register(service, mailer)
    with pytest.raises(AlreadyRegistered):
        await service.upgrade_guest(EMAIL, "Jane", "Doe")


def _google(claims: dict | None, status_code: int = 200) -> GoogleVerifier:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["id_token"] == "id-token"
        return httpx.Response(status_code, json=claims or {"error": "invalid_token"})

    return GoogleVerifier("client-123", transport=httpx.MockTransport(handler))


GOOGLE_CLAIMS = {
    "aud": "client-123",
    "iss": "https://accounts.google.com",
    "sub": "g-1",
    "email": "g@x.com",
    "email_verified": "true",
    "given_name": "Grace",
    "family_name": "Hopper",
}


async def test_google_auth_creates_account(accounts, code_store, mailer, clock):
    service = AuthService(accounts, code_store, mailer, google=_google(GOOGLE_CLAIMS), clock=clock)
    result = await service.google_auth("id-token")
    assert result.user.email == "g@x.com"
    assert result.user.name == "Grace Hopper"
    assert result.user.google_id == "g-1"
    assert result.user.auth_provider is AuthProvider.GOOGLE
    assert decode_token(result.token)["sub"] == str(result.user.id)


async def test_google_auth_updates_guest_in_place(accounts, code_store, mailer, clock):
    service = AuthService(accounts, code_store, mailer, google=_google(GOOGLE_CLAIMS), clock=clock)
    await service.request_guest_code("g@x.com")
    guest = await service.verify_guest_code("g@x.com", mailer.last_code("g@x.com"))
    result = await service.google_auth("id-token")
    assert result.user.id == guest.user.id
    assert result.user.is_guest is False


async def test_google_auth_rejects_other_audience(accounts, code_store, mailer):
    claims = {**GOOGLE_CLAIMS, "aud": "someone-else"}
    service = AuthService(accounts, code_store, mailer, google=_google(claims))
    with pytest.raises(GoogleAuthFailed):
        await service.google_auth("id-token")


async def test_google_auth_rejected_token(accounts, code_store, mailer):
    service = AuthService(accounts, code_store, mailer, google=_google(None, status_code=400))
    with pytest.raises(GoogleAuthFailed):
        await service.google_auth("id-token")


async def test_google_auth_unconfigured(service):
    with pytest.raises(GoogleAuthUnavailable):
        await service.google_auth("id-token")


async def test_token_iat_follows_clock(service, mailer, clock):
    clock.advance(timedelta(minutes=5).total_seconds())
    result = await _register(service, mailer)
    assert decode_token(result.token)["iat"] == int(clock())


async def test_code_reissued_during_outage_replaces_earlier_one(service, mailer, shared_tier):
    await service.request_registration_code(EMAIL)
    first = mailer.last_code(EMAIL)
    shared_tier.down = True
    await service.request_registration_code(EMAIL)
    second = mailer.last_code(EMAIL)
    shared_tier.down = False

    if first != second:
        with pytest.raises(OtpInvalid):
            await service.verify_registration_code(EMAIL, first, "Jane", "Doe")
    result = await service.verify_registration_code(EMAIL, second, "Jane", "Doe")
    assert result.user.email == EMAIL
    with pytest.raises(OtpExpiredOrInvalid):
        await service.verify_registration_code(EMAIL, first, "Jane", "Doe")
