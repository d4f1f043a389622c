# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
New-device detection for sign-ins.

Each sign-in is fingerprinted from the user agent, accept-language and client
address. An unseen fingerprint is recorded and the account owner is emailed.
Tracking never blocks a sign-in: failures are logged and treated as a known
device.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripdesk_server.models import User, UserDevice
from tripdesk_server.rate_limit import client_address
from tripdesk_server.services.code_store import Clock
from tripdesk_server.services.email import EmailKind, Mailer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str
    accept_language: str
    ip: str

    @classmethod
    def from_request(cls, request: Request) -> "DeviceInfo":
        return cls(
            user_agent=request.headers.get("user-agent", ""),
            accept_language=request.headers.get("accept-language", ""),
            ip=client_address(request),
        )

    @property
    def fingerprint(self) -> str:
        data = "|".join((self.user_agent, self.accept_language, self.ip))
        return hashlib.sha256(data.encode("utf-8")).hexdigest()


class DeviceTracker:
    """Records sign-in devices and emails the user about new ones."""

    def __init__(self, db: AsyncSession, mailer: Mailer, clock: Clock = time.time):
        self.db = db
        self.mailer = mailer
        self._clock = clock

    async def _record(self, user_id: int, device: DeviceInfo, now: datetime) -> bool:
        """Upsert the device row. True when it was already known."""
        result = await self.db.execute(
            select(UserDevice).where(
                UserDevice.user_id == user_id,
                UserDevice.fingerprint == device.fingerprint,
            )
        )
        known = result.scalar_one_or_none()
        if known:
            known.last_used_at = now
        else:
            self.db.add(
                UserDevice(
                    user_id=user_id,
                    fingerprint=device.fingerprint,
                    user_agent=device.user_agent[:512] or "Unknown",
                    ip=device.ip[:64] or "0.0.0.0",
                    last_used_at=now,
                )
            )
        await self.db.commit()
        return known is not None

    async def check_and_track(self, user: User, device: DeviceInfo) -> bool:
        """Returns whether the device was already known for the user."""
        user_id, email, name = user.id, user.email, user.name
        now = datetime.fromtimestamp(self._clock(), timezone.utc)
        try:
            known = await self._record(user_id, device, now)
        except Exception as e:
            await self.db.rollback()
            logger.error("Error tracking device for user %s: %s", user_id, e)
            return True
        if known:
            return True

        logger.info("New device login for user: %s", user_id)
        context = {
            "time": now.strftime("%Y-%m-%d %H:%M UTC"),
            "device": device.user_agent or "Unknown device",
            "ip": device.ip or "Unknown IP",
        }
        if name:
            context["name"] = name
        try:
            await self.mailer.send(email, EmailKind.NEW_DEVICE_LOGIN, **context)
        except Exception as e:
            logger.error("New device email to %s failed: %s", email, e)
        return False
