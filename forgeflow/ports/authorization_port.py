"""Authorization port — whether the user lets us deliver notifications.

"Denied" is a valid steady state, never an error.
"""

from __future__ import annotations

from typing import Protocol


class AuthorizationPort(Protocol):
    async def is_granted(self) -> bool: ...

    async def request(self) -> bool: ...
