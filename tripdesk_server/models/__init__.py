# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from tripdesk_server.models.base import Base
from tripdesk_server.models.device import UserDevice
from tripdesk_server.models.user import AuthProvider, Role, User, UserStatus

__all__ = [
    "Base",
    "User",
    "UserDevice",
    "Role",
    "AuthProvider",
    "UserStatus",
]
