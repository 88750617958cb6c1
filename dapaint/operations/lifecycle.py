"""
Lifecycle Resolver - leaving, forfeiting and deleting matches

Leaving an active match has one of three consequences, keyed on the acting
user's role, whether an opponent is present and whether the match starts
within the forfeit window (inclusive):

    Host,   no opponent            -> delete match and roster
    Host,   opponent, in window    -> forfeit, opponent side wins
    Host,   opponent, outside      -> delete match and roster
    Member, opponent, in window    -> forfeit, opposing side wins
    Member, otherwise              -> plain departure (no score change)

Match state is committed first; score updates follow with retry so a
completed match never stays without its score effect.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dapaint.config import Config
from dapaint.database.match_store import MatchStore
from dapaint.database.models import Match, MatchType
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.services.base import BaseService
from dapaint.utils.clock import within_hours
from dapaint.utils.match_exceptions import (
    NotAuthenticatedError, MatchNotFoundError, NotAParticipantError,
    MatchStateError, ScoreUpdateError
)
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class LeaveResult:
    """Result of leaving a match"""
    forfeited: bool
    deleted: bool
    winner_name: Optional[str] = None


class LifecycleResolver(BaseService):
    """
    Leave workflow: delete, forfeit or plain departure.
    """

    def __init__(
        self,
        database,
        store: Optional[MatchStore] = None,
        ledger: Optional[ScoreLedger] = None
    ):
        super().__init__(database.session_factory)
        self.db = database
        self.store = store or MatchStore(database)
        self.ledger = ledger or ScoreLedger(database)
        self.logger = logger

    async def leave(
        self,
        match_id: int,
        acting_user_id: str,
        now: Optional[datetime] = None
    ) -> LeaveResult:
        """
        Leave an active match.

        Raises:
            NotAuthenticatedError: If acting_user_id is empty
            MatchNotFoundError: If the match does not exist
            NotAParticipantError: If the user is not host, foe or roster member
            MatchStateError: If the match is no longer active
            ScoreUpdateError: If a forfeit's score update keeps failing
        """
        if not acting_user_id:
            raise NotAuthenticatedError()

        winners: List[str] = []
        async with self.db.transaction() as session:
            match = await self.store.get_match(match_id, session=session, lock=True)
            if not match:
                raise MatchNotFoundError(match_id)
            if not match.is_active:
                raise MatchStateError(match_id, "This DaPaint is already completed.")

            side = match.side_of(acting_user_id)
            if side is None:
                raise NotAParticipantError(acting_user_id, match_id)

            is_host = match.host_id == acting_user_id
            in_window = within_hours(match.starts_at, Config.FORFEIT_WINDOW_HOURS, now)
            has_opponent = match.has_opponent

            if is_host and not (has_opponent and in_window):
                await self.store.delete_match(match_id, session)
                self.logger.info(
                    f"Host {acting_user_id} withdrew from match {match_id}: deleted "
                    f"(opponent={has_opponent}, in_window={in_window})"
                )
                return LeaveResult(forfeited=False, deleted=True)

            if not (has_opponent and in_window):
                await self._depart(match, acting_user_id, session)
                return LeaveResult(forfeited=False, deleted=False)

            winning_side = side.opposite
            winners = match.user_ids_on(winning_side)
            winner_name = match.display_name_for(winning_side)
            completed = await self.store.complete_match(
                match_id, winning_side, session, now=now, record_claims=True
            )
            if not completed:
                raise MatchStateError(match_id, "This DaPaint is already completed.")

        self.logger.info(
            f"User {acting_user_id} forfeited match {match_id}; {winning_side.value} side wins"
        )
        await self._apply_forfeit_scores(match, winners, acting_user_id)
        return LeaveResult(forfeited=True, deleted=False, winner_name=winner_name)

    async def _depart(self, match: Match, user_id: str, session) -> None:
        """Plain departure: free the seat, leave scores alone"""
        if match.match_type == MatchType.PAIRWISE:
            left = await self.store.clear_foe(match.id, user_id, session)
        else:
            left = await self.store.remove_participant(match.id, user_id, session)
        if not left:
            raise MatchStateError(match.id, "You are no longer in this DaPaint.")
        self.logger.info(f"User {user_id} left match {match.id}")

    async def _apply_forfeit_scores(self, match: Match, winners: List[str], loser_id: str) -> None:
        async def apply_forfeit_outcome():
            if match.match_type == MatchType.PAIRWISE:
                await self.ledger.apply_outcome(winners[0], loser_id)
            else:
                # Only the acting user takes the loss
                await self.ledger.apply_team_outcome(winners, [loser_id])

        try:
            await self.execute_with_retry(apply_forfeit_outcome)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Score update for forfeited match {match.id} failed; match stays completed",
                exc_info=True
            )
            raise ScoreUpdateError(match.id, Config.SCORE_UPDATE_MAX_RETRIES) from e
