"""
Score Ledger - win-streak progression

Reads and writes the per-user running score: current streak, longest streak,
wins and losses. Every update is a single UPDATE computed in SQL from the
row's own values, so concurrent outcomes for the same user never lose writes.

Outcome policy:
- Decisive: winner streak +1 (longest follows it up), wins +1;
  loser streak reset to 0, losses +1.
- Draw: both streaks -1 floored at 0, nothing else changes.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, List
from contextlib import asynccontextmanager
from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from dapaint.database.models import User
from dapaint.utils.match_exceptions import MatchValidationError
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class UserScore:
    """Snapshot of one user's running score"""
    user_id: str
    current_streak: int
    longest_streak: int
    wins: int
    losses: int


class ScoreLedger:
    """
    Applies match outcomes to user scores.
    """

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_transaction_context(self, session: Optional[AsyncSession] = None):
        """Use the caller's session, or open a transaction that commits on exit"""
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    async def get_score(self, user_id: str, session: Optional[AsyncSession] = None) -> Optional[UserScore]:
        """Read a user's score, or None for an unknown user"""
        async with self._get_transaction_context(session) as s:
            result = await s.execute(
                select(
                    User.id, User.current_streak, User.longest_streak, User.wins, User.losses
                ).where(User.id == user_id)
            )
            row = result.one_or_none()
            if row is None:
                return None
            return UserScore(*row)

    async def apply_outcome(
        self,
        winner_id: str,
        loser_id: str,
        is_draw: bool = False,
        session: Optional[AsyncSession] = None
    ) -> None:
        """
        Apply a two-party outcome.

        With is_draw the two ids are interchangeable: both lose one streak
        point (never below zero) and no other field changes.

        Raises:
            MatchValidationError: If winner and loser are the same user
        """
        if winner_id == loser_id:
            raise MatchValidationError("outcome", "Winner and loser must be different users")

        async with self._get_transaction_context(session) as s:
            if is_draw:
                await self._apply_draw([winner_id, loser_id], s)
                self.logger.info(f"Draw applied: {winner_id} and {loser_id} each lost a streak point")
                return

            await self._apply_wins([winner_id], s)
            await self._apply_losses([loser_id], s)
            self.logger.info(f"Outcome applied: winner {winner_id}, loser {loser_id}")

    async def apply_team_outcome(
        self,
        winner_ids: Iterable[str],
        loser_ids: Iterable[str],
        session: Optional[AsyncSession] = None
    ) -> None:
        """Apply a decisive outcome to whole rosters (or any subset of them)"""
        winners = list(dict.fromkeys(winner_ids))
        losers = list(dict.fromkeys(loser_ids))
        if set(winners) & set(losers):
            raise MatchValidationError("outcome", "A user cannot both win and lose the same match")
        if not winners and not losers:
            return

        async with self._get_transaction_context(session) as s:
            await self._apply_wins(winners, s)
            await self._apply_losses(losers, s)
            self.logger.info(f"Team outcome applied: winners {winners}, losers {losers}")

    async def apply_draw(self, user_ids: Iterable[str], session: Optional[AsyncSession] = None) -> None:
        """Apply the draw penalty to any number of users (integrity repairs)"""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return
        async with self._get_transaction_context(session) as s:
            await self._apply_draw(ids, s)
            self.logger.info(f"Draw applied to {ids}")

    async def _apply_wins(self, user_ids: List[str], session: AsyncSession) -> None:
        if not user_ids:
            return
        next_streak = User.current_streak + 1
        result = await session.execute(
            update(User)
            .where(User.id.in_(user_ids))
            .values(
                current_streak=next_streak,
                # SET expressions read the pre-update row on every backend
                longest_streak=case(
                    (User.longest_streak > next_streak, User.longest_streak),
                    else_=next_streak
                ),
                wins=User.wins + 1
            )
            .execution_options(synchronize_session=False)
        )
        self._check_rowcount(result.rowcount, user_ids, "win")

    async def _apply_losses(self, user_ids: List[str], session: AsyncSession) -> None:
        if not user_ids:
            return
        result = await session.execute(
            update(User)
            .where(User.id.in_(user_ids))
            .values(current_streak=0, losses=User.losses + 1)
            .execution_options(synchronize_session=False)
        )
        self._check_rowcount(result.rowcount, user_ids, "loss")

    async def _apply_draw(self, user_ids: List[str], session: AsyncSession) -> None:
        result = await session.execute(
            update(User)
            .where(User.id.in_(user_ids))
            .values(
                # GREATEST(0, current_streak - 1)
                current_streak=case(
                    (User.current_streak > 0, User.current_streak - 1),
                    else_=0
                )
            )
            .execution_options(synchronize_session=False)
        )
        self._check_rowcount(result.rowcount, user_ids, "draw")

    def _check_rowcount(self, rowcount: int, user_ids: List[str], outcome: str) -> None:
        if rowcount != len(user_ids):
            self.logger.warning(
                f"Applied {outcome} to {rowcount} of {len(user_ids)} users {user_ids}; "
                f"missing profiles need reconciliation"
            )
