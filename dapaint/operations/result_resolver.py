"""
Result Resolver - self-reported outcomes

Records "I won" / "I lost" claims with a proof link during the result window
(starts_at to starts_at + RESULT_WINDOW_HOURS) and completes the match once
the claims agree:

- Pairwise: both sides have claimed the same winner.
- Team: at least one member of each side has submitted and every submission
  names the same winning side.

Conflicting claims leave the match active and are logged as disputed for
manual review. settle_expired() is the primitive an external sweep calls
once the window has elapsed with claims from only one side.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError

from dapaint.config import Config
from dapaint.database.match_store import MatchStore
from dapaint.database.models import Match, MatchType, Side
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.services.base import BaseService
from dapaint.utils.clock import ensure_utc, utc_now
from dapaint.utils.match_exceptions import (
    NotAuthenticatedError, MatchNotFoundError, MatchValidationError,
    NotAParticipantError, MatchStateError, ScoreUpdateError
)
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class SubmissionResult:
    """Result of a claim submission or settlement attempt"""
    completed: bool
    message: str
    disputed: bool = False
    winning_side: Optional[Side] = None


def validate_proof_reference(proof_reference: Optional[str]) -> str:
    """Return the trimmed proof URL, or raise MatchValidationError"""
    value = (proof_reference or "").strip()
    if not value:
        raise MatchValidationError("proof_reference", "A proof link is required to submit a result.")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise MatchValidationError("proof_reference", "Proof must be a valid http(s) link.")
    return value


class ResultResolver(BaseService):
    """
    Result submission and settlement.
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

    async def submit_result(
        self,
        match_id: int,
        user_id: str,
        claimed_won: bool,
        proof_reference: str,
        now: Optional[datetime] = None
    ) -> SubmissionResult:
        """
        Record the user's claim and complete the match if the claims agree.

        Raises:
            NotAuthenticatedError: If user_id is empty
            MatchValidationError: If the proof reference is missing or malformed
            MatchNotFoundError: If the match does not exist
            NotAParticipantError: If the user is not a party to the match
            MatchStateError: If the match is not active, the window is not
                open, or the user already submitted
            ScoreUpdateError: If the score update keeps failing after completion
        """
        if not user_id:
            raise NotAuthenticatedError()
        proof_url = validate_proof_reference(proof_reference)
        now = ensure_utc(now) if now else utc_now()

        async with self.db.transaction() as session:
            match = await self._load_active(match_id, session)
            side = match.side_of(user_id)
            if side is None:
                raise NotAParticipantError(user_id, match_id)
            if not match.has_opponent:
                raise MatchStateError(match_id, "This DaPaint has no opponent yet.")
            self._check_window(match, now)

            claimed_winner = side if claimed_won else side.opposite

            if match.match_type == MatchType.PAIRWISE:
                recorded = await self.store.record_pairwise_claim(
                    match_id, side, claimed_winner, proof_url, session, now=now
                )
                if not recorded:
                    raise MatchStateError(match_id, "You already submitted a result for this DaPaint.")
                claims = {
                    Side.HOST: match.host_claim,
                    Side.FOE: match.foe_claim,
                    side: claimed_winner
                }
                outcome = self._reconcile({s: [c] for s, c in claims.items() if c is not None})
            else:
                recorded = await self.store.record_team_claim(
                    match_id, user_id, claimed_winner, proof_url, session, now=now
                )
                if not recorded:
                    raise MatchStateError(match_id, "You already submitted a result for this DaPaint.")
                outcome = self._reconcile(self._team_claims(match, user_id, claimed_winner))

            self.logger.info(
                f"User {user_id} claimed {claimed_winner.value} side won match {match_id}"
            )

            if outcome == "disputed":
                self.logger.warning(f"Disputed result for match {match_id}: claims disagree")
                return SubmissionResult(
                    completed=False,
                    disputed=True,
                    message="Your result was recorded, but it conflicts with your opponent's. It will be reviewed."
                )
            if outcome is None:
                return SubmissionResult(
                    completed=False,
                    message="Your result was recorded. Waiting for the other side."
                )

            completed = await self.store.complete_match(match_id, outcome, session, now=now)
            if not completed:
                raise MatchStateError(match_id, "This DaPaint is already completed.")

        self.logger.info(f"Match {match_id} completed by agreement; {outcome.value} side won")
        await self._apply_scores(match, outcome)
        return SubmissionResult(
            completed=True,
            winning_side=outcome,
            message=f"Result confirmed. {match.display_name_for(outcome)} won!"
        )

    async def settle_expired(
        self,
        match_id: int,
        now: Optional[datetime] = None
    ) -> SubmissionResult:
        """
        Settle a match whose result window has elapsed.

        If only one side submitted claims and they agree, that claim stands.
        Matches with no claims or disputed claims are left untouched for the
        caller to handle.

        Raises:
            MatchNotFoundError: If the match does not exist
            MatchStateError: If the match is not active or its window is still open
        """
        now = ensure_utc(now) if now else utc_now()

        async with self.db.transaction() as session:
            match = await self._load_active(match_id, session)
            window_end = ensure_utc(match.starts_at) + timedelta(hours=Config.RESULT_WINDOW_HOURS)
            if now <= window_end:
                raise MatchStateError(match_id, "The result window is still open.")

            if match.match_type == MatchType.PAIRWISE:
                claims = {
                    s: [c] for s, c in ((Side.HOST, match.host_claim), (Side.FOE, match.foe_claim))
                    if c is not None
                }
            else:
                claims = self._team_claims(match)

            if len(claims) != 1 or not match.has_opponent:
                self.logger.info(
                    f"Match {match_id} not settled by default: claims from {len(claims)} sides"
                )
                return SubmissionResult(
                    completed=False,
                    message="This DaPaint needs manual review."
                )

            values = set(next(iter(claims.values())))
            if len(values) != 1:
                self.logger.warning(f"Disputed result for match {match_id}: one side disagrees with itself")
                return SubmissionResult(
                    completed=False,
                    disputed=True,
                    message="This DaPaint needs manual review."
                )

            winning_side = values.pop()
            completed = await self.store.complete_match(match_id, winning_side, session, now=now)
            if not completed:
                raise MatchStateError(match_id, "This DaPaint is already completed.")

        self.logger.info(f"Match {match_id} settled by default; {winning_side.value} side won")
        await self._apply_scores(match, winning_side)
        return SubmissionResult(
            completed=True,
            winning_side=winning_side,
            message=f"Result settled. {match.display_name_for(winning_side)} won!"
        )

    async def _load_active(self, match_id: int, session) -> Match:
        match = await self.store.get_match(match_id, session=session, lock=True)
        if not match:
            raise MatchNotFoundError(match_id)
        if not match.is_active:
            raise MatchStateError(match_id, "This DaPaint is already completed.")
        return match

    def _check_window(self, match: Match, now: datetime) -> None:
        starts_at = ensure_utc(match.starts_at)
        if now < starts_at:
            raise MatchStateError(match.id, "Results can be submitted once the DaPaint starts.")
        if now > starts_at + timedelta(hours=Config.RESULT_WINDOW_HOURS):
            raise MatchStateError(match.id, "The result window for this DaPaint has closed.")

    @staticmethod
    def _team_claims(
        match: Match,
        user_id: Optional[str] = None,
        claimed_winner: Optional[Side] = None
    ) -> Dict[Side, list]:
        """Submitted winner sides grouped by the submitter's side"""
        claims: Dict[Side, list] = {}
        for participant in match.participants:
            if participant.user_id == user_id:
                # The in-memory row predates this request's write
                claims.setdefault(participant.team, []).append(claimed_winner)
            elif participant.result_submitted:
                claims.setdefault(participant.team, []).append(participant.submitted_winner_side)
        return claims

    @staticmethod
    def _reconcile(claims: Dict[Side, list]):
        """
        Winning side when both sides have claimed and all claims agree,
        "disputed" when any claims disagree, otherwise None.
        """
        values = {claim for side_claims in claims.values() for claim in side_claims}
        if len(values) > 1:
            return "disputed"
        if len(claims) < 2:
            return None
        return values.pop()

    async def _apply_scores(self, match: Match, winning_side: Side) -> None:
        winners = match.user_ids_on(winning_side)
        losers = match.user_ids_on(winning_side.opposite)

        async def apply_match_outcome():
            if match.match_type == MatchType.PAIRWISE:
                await self.ledger.apply_outcome(winners[0], losers[0])
            else:
                await self.ledger.apply_team_outcome(winners, losers)

        try:
            await self.execute_with_retry(apply_match_outcome)
        except SQLAlchemyError as e:
            self.logger.error(
                f"Score update for completed match {match.id} failed; match stays completed",
                exc_info=True
            )
            raise ScoreUpdateError(match.id, Config.SCORE_UPDATE_MAX_RETRIES) from e
