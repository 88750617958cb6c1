"""
Leaderboard service - top win streaks and top wins.
"""

from dataclasses import dataclass
from typing import List
import logging

from sqlalchemy import select

from dapaint.constants import LeaderboardConstants
from dapaint.database.models import User
from dapaint.services.base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class LeaderboardEntry:
    rank: int
    user_id: str
    display_name: str
    current_streak: int
    longest_streak: int
    wins: int
    losses: int


class LeaderboardService(BaseService):
    """Service for leaderboard queries over active users."""

    def __init__(self, session_factory):
        super().__init__(session_factory)

    async def top_win_streaks(self, limit: int = LeaderboardConstants.DEFAULT_LIMIT) -> List[LeaderboardEntry]:
        """Users ranked by current streak, then longest streak."""
        return await self._ranked(
            [User.current_streak.desc(), User.longest_streak.desc(), User.username],
            limit
        )

    async def top_wins(self, limit: int = LeaderboardConstants.DEFAULT_LIMIT) -> List[LeaderboardEntry]:
        """Users ranked by total wins, then current streak."""
        return await self._ranked(
            [User.wins.desc(), User.current_streak.desc(), User.username],
            limit
        )

    async def _ranked(self, order_by, limit: int) -> List[LeaderboardEntry]:
        limit = max(1, min(limit, LeaderboardConstants.MAX_LIMIT))
        async with self.get_session() as session:
            result = await session.execute(
                select(User)
                .where(User.is_active.is_(True))
                .order_by(*order_by)
                .limit(limit)
            )
            users = result.scalars().all()

        entries = [
            LeaderboardEntry(
                rank=index,
                user_id=user.id,
                display_name=user.name,
                current_streak=user.current_streak,
                longest_streak=user.longest_streak,
                wins=user.wins,
                losses=user.losses
            )
            for index, user in enumerate(users, start=1)
        ]
        logger.debug(f"Leaderboard query returned {len(entries)} entries")
        return entries
