"""
Match Operations - public entry points of the match engine

One facade over the engine's components for the surrounding application:

- create_match / can_edit / edit_match: host-side match management
- join_match:        Matchmaker
- leave_match:       LifecycleResolver
- submit_result:     ResultResolver
- get_feed_matches:  FeedSelector
- get_active_match:  MatchStore active-match query
- switch_team / get_team_composition: team roster management

Operations that act "as the current user" ask the IdentityProvider and
raise NotAuthenticatedError when nobody is signed in.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from dapaint.constants import MatchConstants
from dapaint.database.match_store import MatchStore
from dapaint.database.models import Match, MatchParticipant, MatchStatus, MatchType, Side
from dapaint.operations.feed_selector import FeedMode, FeedSelector
from dapaint.operations.identity import IdentityProvider
from dapaint.operations.lifecycle import LeaveResult, LifecycleResolver
from dapaint.operations.matchmaker import JoinResult, Matchmaker
from dapaint.operations.result_resolver import ResultResolver, SubmissionResult
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.utils.clock import ensure_utc, utc_now
from dapaint.utils.match_exceptions import (
    NotAuthenticatedError, MatchNotFoundError, MatchValidationError,
    ExclusivityConflictError, NotAParticipantError, MatchStateError
)
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class MatchDetails:
    """Host-supplied fields for creating or editing a match"""
    title: str
    how_winner_is_determined: str
    location: str
    city: str
    postal_code: str
    starts_at: datetime
    match_type: Union[MatchType, str] = MatchType.PAIRWISE
    max_participants: int = MatchConstants.PAIRWISE_MAX_PARTICIPANTS
    description: Optional[str] = None
    rules: Optional[str] = None
    ticket_price_cents: int = 0


@dataclass
class TeamComposition:
    """Current rosters of a team match"""
    host_team: List[MatchParticipant] = field(default_factory=list)
    foe_team: List[MatchParticipant] = field(default_factory=list)

    @property
    def is_even(self) -> bool:
        return len(self.host_team) == len(self.foe_team)


class MatchOperations:
    """
    Facade wiring the match engine components together.
    """

    def __init__(self, database, identity: IdentityProvider):
        """
        Initialize MatchOperations.

        Args:
            database: Initialized Database instance
            identity: Provider of the acting user's id
        """
        self.db = database
        self.identity = identity
        self.store = MatchStore(database)
        self.ledger = ScoreLedger(database)
        self.matchmaker = Matchmaker(database, store=self.store)
        self.lifecycle = LifecycleResolver(database, store=self.store, ledger=self.ledger)
        self.results = ResultResolver(database, store=self.store, ledger=self.ledger)
        self.feed = FeedSelector(database, store=self.store)
        self.logger = logger

    async def _require_user_id(self) -> str:
        user_id = await self.identity.current_user_id()
        if not user_id:
            raise NotAuthenticatedError()
        return user_id

    # ============================================================================
    # Creation and edits
    # ============================================================================

    async def create_match(self, details: MatchDetails, now: Optional[datetime] = None) -> Match:
        """
        Create a scheduled match hosted by the current user.

        required_score is stamped from the host's current streak.

        Raises:
            NotAuthenticatedError: If nobody is signed in
            MatchValidationError: If any field is missing or invalid
            ExclusivityConflictError: If the host is already in an active match
        """
        user_id = await self._require_user_id()
        match_type = self._parse_match_type(details.match_type)
        values = self._validate_details(details, match_type, now)

        async with self.db.transaction() as session:
            host = await self.db.get_user(user_id, session=session)
            if not host:
                raise MatchValidationError("user_id", "User profile not found.")

            current = await self.store.get_active_match(user_id, session=session)
            if current:
                raise ExclusivityConflictError(user_id, current.id)

            values['match_type'] = match_type
            match = await self.store.create_match(host, values, session=session)

        return await self.store.get_match(match.id)

    async def can_edit(self, match_id: int) -> bool:
        """True while nobody but the host has joined"""
        match = await self.store.get_match(match_id)
        if not match or not match.is_active:
            return False
        if match.match_type == MatchType.PAIRWISE:
            return match.foe_id is None
        return len(match.participants) <= 1

    async def edit_match(
        self,
        match_id: int,
        details: MatchDetails,
        now: Optional[datetime] = None
    ) -> Match:
        """
        Update the descriptive fields of the current user's match.

        The match type and required score never change.

        Raises:
            NotAuthenticatedError: If nobody is signed in
            MatchNotFoundError: If the match does not exist
            MatchStateError: If the user is not the host or someone has joined
            MatchValidationError: If any field is missing or invalid
        """
        user_id = await self._require_user_id()
        match = await self.store.get_match(match_id)
        if not match:
            raise MatchNotFoundError(match_id)
        if match.host_id != user_id:
            raise MatchStateError(match_id, "Only the host can edit this DaPaint.")
        if not await self.can_edit(match_id):
            raise MatchStateError(match_id, "This DaPaint can't be edited once someone has joined.")

        values = self._validate_details(details, match.match_type, now)

        async with self.db.transaction() as session:
            updated = await self.store.update_details(match_id, values, session=session)
        if not updated:
            raise MatchStateError(match_id, "This DaPaint is already completed.")

        self.logger.info(f"Host {user_id} edited match {match_id}")
        return await self.store.get_match(match_id)

    @staticmethod
    def _parse_match_type(value: Union[MatchType, str]) -> MatchType:
        try:
            return MatchType(value)
        except ValueError:
            raise MatchValidationError("match_type", "Match type must be 1v1 or team.")

    @staticmethod
    def _validate_details(
        details: MatchDetails,
        match_type: MatchType,
        now: Optional[datetime]
    ) -> Dict[str, Any]:
        """Check host-supplied fields and return column values"""
        required = {
            'title': details.title,
            'how_winner_is_determined': details.how_winner_is_determined,
            'location': details.location,
            'city': details.city,
            'postal_code': details.postal_code,
        }
        for name, value in required.items():
            if not value or not str(value).strip():
                raise MatchValidationError(name, f"{name.replace('_', ' ').capitalize()} is required.")

        title = details.title.strip()
        if len(title) > MatchConstants.MAX_TITLE_LENGTH:
            raise MatchValidationError(
                "title", f"Title must be at most {MatchConstants.MAX_TITLE_LENGTH} characters."
            )

        postal_code = details.postal_code.strip().upper()
        if len(postal_code) > MatchConstants.MAX_POSTAL_CODE_LENGTH:
            raise MatchValidationError("postal_code", "Postal code is too long.")

        if details.starts_at is None:
            raise MatchValidationError("starts_at", "Start time is required.")
        starts_at = ensure_utc(details.starts_at)
        reference = ensure_utc(now) if now else utc_now()
        if starts_at <= reference:
            raise MatchValidationError("starts_at", "Start time must be in the future.")

        if details.ticket_price_cents is None or details.ticket_price_cents < 0:
            raise MatchValidationError("ticket_price_cents", "Ticket price can't be negative.")

        if match_type == MatchType.PAIRWISE:
            if details.max_participants != MatchConstants.PAIRWISE_MAX_PARTICIPANTS:
                raise MatchValidationError("max_participants", "A 1v1 DaPaint has exactly 2 participants.")
        else:
            size = details.max_participants
            if (
                size < MatchConstants.TEAM_MIN_PARTICIPANTS
                or size > MatchConstants.TEAM_MAX_PARTICIPANTS
                or size % 2
            ):
                raise MatchValidationError(
                    "max_participants",
                    f"Team DaPaints need an even number of participants between "
                    f"{MatchConstants.TEAM_MIN_PARTICIPANTS} and {MatchConstants.TEAM_MAX_PARTICIPANTS}."
                )

        return {
            'title': title,
            'description': details.description,
            'how_winner_is_determined': details.how_winner_is_determined.strip(),
            'rules': details.rules,
            'location': details.location.strip(),
            'city': details.city.strip(),
            'postal_code': postal_code,
            'starts_at': starts_at,
            'max_participants': details.max_participants,
            'ticket_price_cents': details.ticket_price_cents,
        }

    # ============================================================================
    # Membership and outcomes
    # ============================================================================

    async def join_match(
        self,
        match_id: int,
        user_id: str,
        display_name: str,
        team: Optional[Side] = None,
        now: Optional[datetime] = None
    ) -> JoinResult:
        """Join a match; refusals come back inside the JoinResult"""
        return await self.matchmaker.join(match_id, user_id, display_name, team=team, now=now)

    async def leave_match(self, match_id: int, now: Optional[datetime] = None) -> LeaveResult:
        """Leave a match as the current user"""
        user_id = await self._require_user_id()
        return await self.lifecycle.leave(match_id, user_id, now=now)

    async def get_active_match(self, user_id: str) -> Optional[Match]:
        """The user's one active match, or None"""
        if not user_id:
            raise NotAuthenticatedError()
        return await self.store.get_active_match(user_id)

    async def get_feed_matches(
        self,
        user_id: str,
        mode: Union[FeedMode, str] = FeedMode.STRICT,
        limit: Optional[int] = None
    ) -> List[Match]:
        """Joinable matches visible to the user under one feed mode"""
        return await self.feed.get_feed(user_id, FeedMode(mode), limit=limit)

    async def submit_result(
        self,
        match_id: int,
        claimed_won: bool,
        proof_reference: str,
        now: Optional[datetime] = None
    ) -> SubmissionResult:
        """Submit the current user's claim for a match"""
        user_id = await self._require_user_id()
        return await self.results.submit_result(match_id, user_id, claimed_won, proof_reference, now=now)

    # ============================================================================
    # Team rosters
    # ============================================================================

    async def get_team_composition(self, match_id: int) -> TeamComposition:
        """
        Raises:
            MatchNotFoundError: If the match does not exist
            MatchStateError: If the match is not a team match
        """
        match = await self.store.get_match(match_id)
        if not match:
            raise MatchNotFoundError(match_id)
        if match.match_type != MatchType.TEAM:
            raise MatchStateError(match_id, "This is not a team DaPaint.")

        participants = await self.store.list_participants(match_id)
        return TeamComposition(
            host_team=[p for p in participants if p.team == Side.HOST],
            foe_team=[p for p in participants if p.team == Side.FOE]
        )

    async def switch_team(self, match_id: int) -> Side:
        """
        Move the current user to the other side of a scheduled team match.

        Allowed only while the destination side is smaller than the user's
        current side. The host never switches.

        Returns:
            The user's new side

        Raises:
            NotAuthenticatedError: If nobody is signed in
            MatchNotFoundError: If the match does not exist
            NotAParticipantError: If the user has no roster row
            MatchStateError: If the switch is not allowed right now
        """
        user_id = await self._require_user_id()

        async with self.db.transaction() as session:
            match = await self.store.get_match(match_id, session=session, lock=True)
            if not match:
                raise MatchNotFoundError(match_id)
            if match.match_type != MatchType.TEAM:
                raise MatchStateError(match_id, "This is not a team DaPaint.")
            if match.status != MatchStatus.SCHEDULED:
                raise MatchStateError(match_id, "Teams are locked once a DaPaint is underway.")
            if match.host_id == user_id:
                raise MatchStateError(match_id, "The host can't switch teams.")

            current_side = match.side_of(user_id)
            if current_side is None:
                raise NotAParticipantError(user_id, match_id)

            switched = await self.store.switch_team(match_id, user_id, current_side, session)
            if not switched:
                raise MatchStateError(match_id, "You can only switch to the smaller team.")

        new_side = current_side.opposite
        self.logger.info(f"User {user_id} switched to the {new_side.value} side of match {match_id}")
        return new_side
