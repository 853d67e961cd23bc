"""Authorization adapters — implement AuthorizationPort."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forgeflow.data.db import ProfileDB

logger = logging.getLogger(__name__)


class StaticAuthorization:
    """Fixed answer; for local runs and tests."""

    def __init__(self, granted: bool = True) -> None:
        self.granted = granted

    async def is_granted(self) -> bool:
        return self.granted

    async def request(self) -> bool:
        return self.granted


class ProfileAuthorization:
    """Opt-in flag stored on the player profile (toggled by /notify)."""

    def __init__(self, profiles: ProfileDB, profile_id: int) -> None:
        self._profiles = profiles
        self._profile_id = profile_id

    async def is_granted(self) -> bool:
        profile = self._profiles.get_profile(self._profile_id)
        return profile is not None and profile.notifications_enabled

    async def request(self) -> bool:
        self._profiles.get_or_create(self._profile_id)
        self._profiles.set_notifications_enabled(self._profile_id, True)
        return True

    async def revoke(self) -> None:
        self._profiles.get_or_create(self._profile_id)
        self._profiles.set_notifications_enabled(self._profile_id, False)
