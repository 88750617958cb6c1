"""
Current-user providers.

The engine never manages credentials; it only asks who is acting.
"""

from abc import ABC, abstractmethod
from typing import Optional


class IdentityProvider(ABC):
    """Source of the authenticated user id for the current request"""

    @abstractmethod
    async def current_user_id(self) -> Optional[str]:
        """Return the acting user's id, or None when nobody is signed in"""


class StaticIdentityProvider(IdentityProvider):
    """Fixed identity for scripts and tests"""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    async def current_user_id(self) -> Optional[str]:
        return self.user_id
