# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Google ID token verification via the tokeninfo endpoint."""

import logging
from typing import Any

import httpx

from tripdesk_server.config import settings

logger = logging.getLogger(__name__)

TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
VALID_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


class GoogleTokenError(Exception):
    """The ID token was rejected or could not be checked."""


class GoogleVerifier:
    """Checks Google-issued ID tokens for one OAuth client id."""

    def __init__(self, client_id: str, transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self._transport = transport

    async def verify(self, id_token: str) -> dict[str, Any]:
        """
        Return the token claims (email, name, given_name, family_name, sub).
        Raises GoogleTokenError if Google rejects the token, the audience or
        issuer is wrong, or the email is missing or unverified.
        """
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                r = await client.get(TOKENINFO_URL, params={"id_token": id_token})
                r.raise_for_status()
                claims = r.json()
        except httpx.HTTPError as e:
            logger.debug("Google tokeninfo failed: %s", e)
            raise GoogleTokenError("Google rejected the token") from e

        if claims.get("aud") != self.client_id:
            raise GoogleTokenError("Token was issued for another client")
        if claims.get("iss") not in VALID_ISSUERS:
            raise GoogleTokenError("Unexpected token issuer")
        if not claims.get("email"):
            raise GoogleTokenError("Token carries no email")
        if str(claims.get("email_verified", "false")).lower() != "true":
            raise GoogleTokenError("Google email not verified")
        return claims


def build_google_verifier() -> GoogleVerifier | None:
    """Verifier for the configured client id, or None when sign-in is disabled."""
    if not settings.google_client_id:
        logger.info("GOOGLE_CLIENT_ID not set - Google sign-in disabled")
        return None
    return GoogleVerifier(settings.google_client_id)
