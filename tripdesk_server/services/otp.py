# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
One-time code authentication: registration, login and guest accounts.

Each (purpose, email) pair has at most one live code. Requesting a code
overwrites the previous one; a successful verification consumes it; otherwise
it expires with the store's TTL. Only the SHA-256 of a code is stored.
"""

import enum
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tripdesk_server.auth import sign_token
from tripdesk_server.config import settings
from tripdesk_server.errors import (
    AlreadyRegistered,
    GoogleAuthFailed,
    GoogleAuthUnavailable,
    NotFound,
    OtpExpiredOrInvalid,
    OtpInvalid,
    UserNotFound,
)
from tripdesk_server.models import AuthProvider, User, UserStatus
from tripdesk_server.services.accounts import AccountRepository
from tripdesk_server.services.code_store import Clock, CodeStore
from tripdesk_server.services.email import EmailKind, Mailer
from tripdesk_server.services.google import GoogleTokenError, GoogleVerifier

logger = logging.getLogger(__name__)


class OtpPurpose(str, enum.Enum):
    REGISTER = "register"
    LOGIN = "login"
    GUEST = "guest"

    def key(self, email: str) -> str:
        return f"{self.value}_otp_{email}"


_CODE_EMAILS = {
    OtpPurpose.REGISTER: EmailKind.REGISTRATION_CODE,
    OtpPurpose.LOGIN: EmailKind.LOGIN_CODE,
    OtpPurpose.GUEST: EmailKind.GUEST_CODE,
}


def generate_code() -> str:
    """Uniformly random 6-digit code in 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class AuthResult:
    user: User
    token: str


class AuthService:
    """Drives the code flows and the account changes that follow them."""

    def __init__(
        self,
        accounts: AccountRepository,
        codes: CodeStore,
        mailer: Mailer,
        google: GoogleVerifier | None = None,
        clock: Clock = time.time,
        ttl_seconds: int | None = None,
    ):
        self.accounts = accounts
        self.codes = codes
        self.mailer = mailer
        self.google = google
        self._clock = clock
        self.ttl_seconds = ttl_seconds or settings.otp_ttl_seconds

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    def _issue(self, user: User) -> AuthResult:
        return AuthResult(user=user, token=sign_token(user.id, now=self._now()))

    async def _notify(self, to: str, kind: EmailKind, **context) -> None:
        try:
            await self.mailer.send(to, kind, **context)
        except Exception as e:
            logger.error("Email %s to %s failed: %s", kind.value, to, e)

    # Code lifecycle

    async def request_code(self, purpose: OtpPurpose, email: str) -> datetime:
        """Issue, store and email a fresh code. Returns when it expires."""
        email = normalize_email(email)
        expires_at = self._now() + timedelta(seconds=self.ttl_seconds)
        user = await self.accounts.find_by_email(email)

        if purpose in (OtpPurpose.REGISTER, OtpPurpose.GUEST) and user and not user.is_guest:
            raise AlreadyRegistered()
        if purpose is OtpPurpose.LOGIN and user is None:
            # Same response as a real send so callers cannot probe for accounts
            logger.info("Login code requested for unknown email: %s", email)
            return expires_at

        code = generate_code()
        key = purpose.key(email)
        outcome = await self.codes.put(key, hash_code(code), self.ttl_seconds)
        logger.info("Issued %s code for %s (%s)", purpose.value, email, outcome.value)

        context = {"code": code}
        if user is not None and user.name:
            context["name"] = user.name
        await self._notify(email, _CODE_EMAILS[purpose], **context)
        return expires_at

    async def verify_code(self, purpose: OtpPurpose, email: str, code: str) -> None:
        """
        Check a submitted code and consume it.

        Raises OtpExpiredOrInvalid when no live code exists (or a concurrent
        verification consumed it first) and OtpInvalid on mismatch, in which
        case the stored code stays usable until it expires.
        """
        key = purpose.key(normalize_email(email))
        stored = await self.codes.get(key)
        if stored is None:
            logger.warning("No live %s code for %s", purpose.value, key)
            raise OtpExpiredOrInvalid()
        if not hmac.compare_digest(hash_code(code), stored):
            logger.warning("Wrong %s code submitted for %s", purpose.value, key)
            raise OtpInvalid()
        if not await self.codes.consume(key, stored):
            raise OtpExpiredOrInvalid()
        logger.info("Consumed %s code for %s", purpose.value, key)

    # Registration

    async def request_registration_code(self, email: str) -> datetime:
        return await self.request_code(OtpPurpose.REGISTER, email)

    async def verify_registration_code(
        self,
        email: str,
        code: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
    ) -> AuthResult:
        """Create the account, or upgrade a guest with the same email in place."""
        email = normalize_email(email)
        await self.verify_code(OtpPurpose.REGISTER, email, code)

        user = await self.accounts.find_by_email(email)
        if user and not user.is_guest:
            raise AlreadyRegistered("User with this email already exists.")
        if user:
            user = await self._upgrade(user, first_name, last_name, phone)
            logger.info("Guest user upgraded to regular user: %s", email)
        else:
            user = await self.accounts.create(
                email=email,
                name=f"{first_name} {last_name}",
                phone=phone,
                is_guest=False,
                is_email_verified=True,
                auth_provider=AuthProvider.EMAIL,
                status=UserStatus.ACTIVE,
                last_login_at=self._now(),
            )
            logger.info("New user created after code verification: %s", email)
        return self._issue(user)

    async def _upgrade(
        self, user: User, first_name: str, last_name: str, phone: str | None
    ) -> User:
        fields = {
            "name": f"{first_name} {last_name}",
            "is_guest": False,
            "is_email_verified": True,
            "last_login_at": self._now(),
        }
        if phone is not None:
            fields["phone"] = phone
        return await self.accounts.update(user, **fields)

    # Login

    async def request_login_code(self, email: str) -> datetime:
        return await self.request_code(OtpPurpose.LOGIN, email)

    async def verify_login_code(self, email: str, code: str) -> AuthResult:
        email = normalize_email(email)
        await self.verify_code(OtpPurpose.LOGIN, email, code)
        user = await self.accounts.find_by_email(email)
        if user is None:
            raise UserNotFound()
        user = await self.accounts.update(user, last_login_at=self._now())
        logger.info("User logged in via code: %s", email)
        return self._issue(user)

    # Guests

    async def request_guest_code(self, email: str) -> datetime:
        return await self.request_code(OtpPurpose.GUEST, email)

    async def verify_guest_code(self, email: str, code: str) -> AuthResult:
        """Create the guest account on first verification; re-verifying reuses it."""
        email = normalize_email(email)
        await self.verify_code(OtpPurpose.GUEST, email, code)

        user = await self.accounts.find_by_email(email)
        if user and not user.is_guest:
            raise AlreadyRegistered("User already exists with this email. Please login instead.")
        if user is None:
            user = await self.accounts.create(
                email=email,
                is_guest=True,
                is_email_verified=True,
                auth_provider=AuthProvider.OTP,
                status=UserStatus.ACTIVE,
            )
            logger.info("Guest user created: %s", email)
            await self._notify(email, EmailKind.GUEST_WELCOME, name="Guest")
        return self._issue(user)

    async def upgrade_guest(
        self,
        email: str,
        first_name: str,
        last_name: str,
        phone: str | None = None,
    ) -> AuthResult:
        """Turn an existing guest into a full account. No code step."""
        email = normalize_email(email)
        user = await self.accounts.find_by_email(email)
        if user is None:
            raise NotFound()
        if not user.is_guest:
            raise AlreadyRegistered("User is already a registered user")
        user = await self._upgrade(user, first_name, last_name, phone)
        logger.info("Guest user upgraded to registered user: %s", email)
        return self._issue(user)

    # Google

    async def google_auth(self, id_token: str) -> AuthResult:
        """Sign in with a Google ID token, creating or updating the account by email."""
        if self.google is None:
            raise GoogleAuthUnavailable()
        try:
            claims = await self.google.verify(id_token)
        except GoogleTokenError as e:
            logger.warning("Google authentication failed: %s", e)
            raise GoogleAuthFailed() from e

        email = normalize_email(claims["email"])
        given = " ".join(p for p in (claims.get("given_name"), claims.get("family_name")) if p)
        name = claims.get("name") or given or None
        fields = {
            "is_email_verified": True,
            "is_guest": False,
            "auth_provider": AuthProvider.GOOGLE,
            "google_id": claims.get("sub"),
            "last_login_at": self._now(),
        }
        user = await self.accounts.find_by_email(email)
        if user:
            user = await self.accounts.update(user, name=name or user.name, **fields)
        else:
            user = await self.accounts.create(
                email=email, name=name, status=UserStatus.ACTIVE, **fields
            )
        logger.info("User authenticated via Google: %s", email)
        return self._issue(user)
