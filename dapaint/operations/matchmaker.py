"""
Matchmaker - joining matches

Decides whether a user may join a match and performs the join. The join
itself is one conditional write (see MatchStore.claim_foe_slot and
MatchStore.insert_team_member), so the open-slot check, the score gate and
the one-active-match rule are enforced by the same statement that seats the
user. Two concurrent joiners for one slot get exactly one success.

Refusals are returned as JoinResult values with a display-ready message;
only a missing user id or profile is raised.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError

from dapaint.config import Config
from dapaint.database.match_store import MatchStore
from dapaint.database.models import Match, MatchType, Side
from dapaint.utils.clock import time_until, within_hours
from dapaint.utils.match_exceptions import NotAuthenticatedError, MatchValidationError
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


class JoinFailure(Enum):
    """Why a join was refused"""
    ALREADY_ACTIVE = "already_active"          # Exclusivity conflict
    NO_LONGER_JOINABLE = "no_longer_joinable"  # Lost the race, full, or unbalanced side
    SCORE_MISMATCH = "score_mismatch"          # Streak differs from required_score
    NOT_FOUND = "not_found"


@dataclass
class JoinResult:
    """Result of a join attempt"""
    success: bool
    message: str
    should_remove_from_current: Optional[bool] = None
    current_match: Optional[Match] = None
    reason: Optional[JoinFailure] = None
    side: Optional[Side] = None


class Matchmaker:
    """
    Join workflow for pairwise and team matches.
    """

    def __init__(self, database, store: Optional[MatchStore] = None):
        self.db = database
        self.store = store or MatchStore(database)
        self.logger = logger

    async def join(
        self,
        match_id: int,
        user_id: str,
        display_name: str,
        team: Optional[Side] = None,
        now: Optional[datetime] = None
    ) -> JoinResult:
        """
        Join a match as its foe (pairwise) or as a roster member (team).

        Args:
            match_id: Match to join
            user_id: Joining user
            display_name: Name shown to the other party
            team: Side (or side name) to join in a team match; the smaller side when omitted
            now: Reference time for the forfeit-window wording

        Returns:
            JoinResult; on refusal `reason` says why and, for exclusivity
            conflicts, `should_remove_from_current` says whether leaving the
            current match would delete it rather than forfeit it

        Raises:
            NotAuthenticatedError: If user_id is empty
            MatchValidationError: If the user has no profile
        """
        if not user_id:
            raise NotAuthenticatedError()
        team = Side(team) if team else None

        # 1. Exclusivity, explained in terms of the user's current role
        current = await self.store.get_active_match(user_id)
        if current:
            return self._exclusivity_conflict(current, user_id, now)

        # 2. Cheap prechecks for a precise message; the write re-checks everything
        user = await self.db.get_user(user_id)
        if not user:
            raise MatchValidationError("user_id", "User profile not found.")

        match = await self.store.get_match(match_id)
        if not match or not match.is_active:
            return JoinResult(
                success=False,
                message="This DaPaint is no longer available.",
                reason=JoinFailure.NOT_FOUND
            )
        if match.required_score != user.current_streak:
            return JoinResult(
                success=False,
                message=(
                    f"This DaPaint requires a winstreak of exactly {match.required_score}. "
                    f"Yours is {user.current_streak}."
                ),
                reason=JoinFailure.SCORE_MISMATCH
            )

        name = display_name or user.name

        # 3. Atomic conditional write
        if match.match_type == MatchType.PAIRWISE:
            return await self._join_pairwise(match, user_id, name)
        return await self._join_team(match, user_id, name, team)

    async def _join_pairwise(self, match: Match, user_id: str, display_name: str) -> JoinResult:
        async with self.db.transaction() as session:
            claimed = await self.store.claim_foe_slot(match.id, user_id, display_name, session)

        if not claimed:
            self.logger.info(f"User {user_id} lost the foe slot of match {match.id}")
            return self._stale_slot()

        self.logger.info(f"User {user_id} joined match {match.id} as foe")
        return JoinResult(
            success=True,
            message=f"You joined \"{match.title}\" against {match.display_name_for(Side.HOST)}!",
            side=Side.FOE
        )

    async def _join_team(
        self,
        match: Match,
        user_id: str,
        display_name: str,
        team: Optional[Side]
    ) -> JoinResult:
        try:
            async with self.db.transaction() as session:
                # Row lock serializes roster writers where the backend supports it
                await self.store.get_match(match.id, session=session, lock=True)
                side = team or self._pick_side(await self.store.side_counts(match.id, session=session))
                inserted = await self.store.insert_team_member(
                    match.id, user_id, display_name, side, session
                )
        except IntegrityError:
            # Same user raced into the same match twice
            self.logger.info(f"Duplicate roster row rejected for user {user_id} in match {match.id}")
            return self._stale_slot()

        if not inserted:
            self.logger.info(f"User {user_id} could not join the {side.value} side of match {match.id}")
            return self._stale_slot()

        self.logger.info(f"User {user_id} joined match {match.id} on the {side.value} side")
        return JoinResult(
            success=True,
            message=f"You joined the {match.display_name_for(side).lower()} in \"{match.title}\"!",
            side=side
        )

    @staticmethod
    def _pick_side(counts) -> Side:
        """Smaller side first; the foe side on a tie"""
        if counts[Side.HOST] < counts[Side.FOE]:
            return Side.HOST
        return Side.FOE

    @staticmethod
    def _stale_slot() -> JoinResult:
        return JoinResult(
            success=False,
            message="This DaPaint is no longer available. Someone else may have joined first.",
            reason=JoinFailure.NO_LONGER_JOINABLE
        )

    def _exclusivity_conflict(self, current: Match, user_id: str, now: Optional[datetime]) -> JoinResult:
        """Role-specific refusal for a user who already holds an active match"""
        in_window = within_hours(current.starts_at, Config.FORFEIT_WINDOW_HOURS, now)
        hours_left = max(0, int(time_until(current.starts_at, now).total_seconds() // 3600))
        title = current.title
        side = current.side_of(user_id)

        if current.host_id == user_id:
            if current.has_opponent and in_window:
                message = (
                    f"You're hosting \"{title}\" starting in {hours_left}h. Leaving now = FORFEIT. "
                    f"You must complete or forfeit this DaPaint first."
                )
                remove = False
            elif current.has_opponent:
                message = f"You're hosting \"{title}\". Leaving now will delete it. Continue?"
                remove = True
            else:
                message = f"You're hosting \"{title}\" with no foe yet. Leaving now will delete it. Continue?"
                remove = True
        elif current.match_type == MatchType.PAIRWISE and side == Side.FOE:
            if in_window:
                message = (
                    f"You're in \"{title}\" starting in {hours_left}h. Leaving now = FORFEIT. "
                    f"Complete this DaPaint first."
                )
                remove = False
            else:
                message = f"You're in \"{title}\". Leave or complete it first before joining another."
                remove = True
        else:
            if current.has_opponent and in_window:
                message = (
                    f"You're in team DaPaint \"{title}\" starting in {hours_left}h. "
                    f"Leaving now = FORFEIT. Complete this DaPaint first."
                )
            else:
                message = f"You're in team DaPaint \"{title}\". Leave or complete it first before joining another."
            # Leaving a team never deletes the match
            remove = False

        self.logger.info(f"User {user_id} refused join: already in active match {current.id}")
        return JoinResult(
            success=False,
            message=message,
            should_remove_from_current=remove,
            current_match=current,
            reason=JoinFailure.ALREADY_ACTIVE
        )
