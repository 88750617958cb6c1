"""
Match Store Module

Data access for Match and MatchParticipant rows. Every method is session-aware:
pass the session of an enclosing db.transaction() to compose several calls into
one unit of work, or omit it to run in a short-lived session of its own.

Membership writes (claim_foe_slot, insert_team_member, switch_team) are single
conditional statements. The "is the slot still open" check lives in the WHERE
clause of the write itself, so two concurrent joiners can never both succeed:
the loser simply sees rowcount == 0.
"""

from datetime import datetime
from typing import List, Dict, Optional, Any, Sequence
from contextlib import asynccontextmanager
from sqlalchemy import select, update, insert, and_, or_, literal, func, delete as sql_delete
from sqlalchemy.orm import selectinload, aliased
from sqlalchemy.ext.asyncio import AsyncSession

from dapaint.database.models import (
    Match, MatchParticipant, MatchStatus, MatchType, Side, User,
    ACTIVE_MATCH_STATUSES
)
from dapaint.utils.clock import ensure_utc, utc_now
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


class MatchStore:
    """
    CRUD and query operations over matches and their team rosters.
    """

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new session.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            # If no session is provided, we create one and manage its lifecycle
            async with self.db.get_session() as new_session:
                yield new_session

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_match(
        self,
        match_id: int,
        session: Optional[AsyncSession] = None,
        lock: bool = False
    ) -> Optional[Match]:
        """
        Load a match with its participants.

        Args:
            match_id: Match to load
            session: Optional existing database session
            lock: Take a row lock (SELECT ... FOR UPDATE) where the backend supports it

        Returns:
            Match or None if it does not exist
        """
        async with self._get_session_context(session) as s:
            query = (
                select(Match)
                .options(selectinload(Match.participants))
                .where(Match.id == match_id)
                .execution_options(populate_existing=True)
            )
            if lock:
                # NOTE: On SQLite, with_for_update() is a no-op; atomicity of the
                # membership writes comes from their conditional WHERE clauses.
                query = query.with_for_update()
            result = await s.execute(query)
            return result.scalar_one_or_none()

    async def list_participants(
        self,
        match_id: int,
        session: Optional[AsyncSession] = None
    ) -> List[MatchParticipant]:
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(MatchParticipant)
                .where(MatchParticipant.match_id == match_id)
                .order_by(MatchParticipant.joined_at, MatchParticipant.id)
            )
            return list(result.scalars().all())

    async def get_active_match(
        self,
        user_id: str,
        session: Optional[AsyncSession] = None
    ) -> Optional[Match]:
        """
        Get the user's one active match, if any.

        Looks at matches the user hosts or is the foe of and at team matches
        the user has a roster row in. More than one hit means the exclusivity
        rule was broken somewhere: the most recently created match wins across
        both roles and a warning is logged for out-of-band reconciliation.
        """
        async with self._get_session_context(session) as s:
            as_party = await s.execute(
                select(Match)
                .options(selectinload(Match.participants))
                .where(
                    or_(Match.host_id == user_id, Match.foe_id == user_id),
                    Match.status.in_(ACTIVE_MATCH_STATUSES)
                )
                .order_by(Match.created_at.desc(), Match.id.desc())
            )
            party_matches = list(as_party.scalars().unique().all())

            as_member = await s.execute(
                select(Match)
                .join(MatchParticipant, MatchParticipant.match_id == Match.id)
                .options(selectinload(Match.participants))
                .where(
                    MatchParticipant.user_id == user_id,
                    Match.status.in_(ACTIVE_MATCH_STATUSES)
                )
                .order_by(Match.created_at.desc(), Match.id.desc())
            )
            member_matches = list(as_member.scalars().unique().all())

        distinct_ids = {m.id for m in party_matches} | {m.id for m in member_matches}
        if len(distinct_ids) > 1:
            self.logger.warning(
                f"Data Integrity Violation: User {user_id} is in {len(distinct_ids)} active "
                f"matches {sorted(distinct_ids)}. This violates the exclusivity constraint."
            )

        merged = {m.id: m for m in party_matches + member_matches}
        if not merged:
            return None
        return max(merged.values(), key=lambda m: (ensure_utc(m.created_at), m.id))

    async def find_feed_candidates(
        self,
        viewer_id: str,
        statuses: Sequence[MatchStatus],
        required_score: Optional[int] = None,
        same_postal_code: Optional[str] = None,
        other_postal_code: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> List[Match]:
        """
        Query joinable-looking matches for a viewer, newest first.

        Pairwise matches with a foe and matches the viewer hosts or is the foe
        of are filtered here; team roster checks need the participants and are
        left to the caller.

        Args:
            viewer_id: User looking at the feed
            statuses: Match statuses to include
            required_score: Exact required_score to match, or None for any
            same_postal_code: Keep matches whose postal code, or whose host's
                postal code, equals this value
            other_postal_code: Drop matches whose postal code equals this value
        """
        async with self._get_session_context(session) as s:
            host = aliased(User)
            query = (
                select(Match)
                .join(host, host.id == Match.host_id)
                .options(selectinload(Match.participants))
                .where(
                    Match.status.in_(statuses),
                    Match.host_id != viewer_id,
                    or_(Match.foe_id.is_(None), Match.foe_id != viewer_id),
                    or_(Match.match_type == MatchType.TEAM, Match.foe_id.is_(None))
                )
            )
            if required_score is not None:
                query = query.where(Match.required_score == required_score)
            if same_postal_code:
                query = query.where(
                    or_(Match.postal_code == same_postal_code, host.postal_code == same_postal_code)
                )
            if other_postal_code:
                query = query.where(Match.postal_code != other_postal_code)

            query = query.order_by(Match.created_at.desc(), Match.id.desc())
            result = await s.execute(query)
            return list(result.scalars().unique().all())

    async def side_counts(
        self,
        match_id: int,
        session: Optional[AsyncSession] = None
    ) -> Dict[Side, int]:
        """Number of roster rows on each side of a team match"""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                select(MatchParticipant.team, func.count(MatchParticipant.id))
                .where(MatchParticipant.match_id == match_id)
                .group_by(MatchParticipant.team)
            )
            counts = {side: 0 for side in Side}
            for team, count in result.all():
                counts[team] = count
            return counts

    # ============================================================================
    # Creation and edits
    # ============================================================================

    async def create_match(
        self,
        host: User,
        values: Dict[str, Any],
        session: Optional[AsyncSession] = None
    ) -> Match:
        """
        Insert a scheduled match for a host.

        required_score is stamped from the host's current streak here and
        nowhere else. Team matches also seat the host on the host side.
        """
        async with self._get_session_context(session) as s:
            match = Match(
                host_id=host.id,
                host_display_name=host.name,
                foe_id=None,
                foe_display_name=None,
                required_score=host.current_streak,
                status=MatchStatus.SCHEDULED,
                **values
            )
            s.add(match)
            await s.flush()  # Get match ID

            if match.match_type == MatchType.TEAM:
                s.add(MatchParticipant(
                    match_id=match.id,
                    user_id=host.id,
                    team=Side.HOST,
                    display_name=host.name
                ))
                await s.flush()

            self.logger.info(
                f"Created {match.match_type.value} match {match.id} for host {host.id} "
                f"at required score {match.required_score}"
            )
            return match

    async def update_details(
        self,
        match_id: int,
        values: Dict[str, Any],
        session: Optional[AsyncSession] = None
    ) -> bool:
        """Update descriptive fields of an active match"""
        async with self._get_session_context(session) as s:
            result = await s.execute(
                update(Match)
                .where(Match.id == match_id, Match.status.in_(ACTIVE_MATCH_STATUSES))
                .values(updated_at=utc_now(), **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ============================================================================
    # Membership (conditional writes)
    # ============================================================================

    def _busy_elsewhere(self, user_id: str):
        """EXISTS clause: the user already holds a place in some active match"""
        other = aliased(Match)
        as_party = (
            select(other.id)
            .where(
                or_(other.host_id == user_id, other.foe_id == user_id),
                other.status.in_(ACTIVE_MATCH_STATUSES)
            )
            .exists()
        )
        roster_match = aliased(Match)
        as_member = (
            select(MatchParticipant.id)
            .join(roster_match, roster_match.id == MatchParticipant.match_id)
            .where(
                MatchParticipant.user_id == user_id,
                roster_match.status.in_(ACTIVE_MATCH_STATUSES)
            )
            .exists()
        )
        return or_(as_party, as_member)

    def _current_score(self, user_id: str):
        return select(User.current_streak).where(User.id == user_id).scalar_subquery()

    def _side_count(self, match_id: int, side: Side):
        return (
            select(func.count(MatchParticipant.id))
            .where(MatchParticipant.match_id == match_id, MatchParticipant.team == side)
            .scalar_subquery()
        )

    async def claim_foe_slot(
        self,
        match_id: int,
        user_id: str,
        display_name: str,
        session: AsyncSession
    ) -> bool:
        """
        Seat a foe in a pairwise match as one compare-and-set.

        Succeeds only while the slot is empty, the match is active, the joiner
        is not the host, the joiner's current streak equals required_score and
        the joiner holds no other active place.

        Returns:
            True if this call claimed the slot, False if any precondition failed
        """
        result = await session.execute(
            update(Match)
            .where(
                Match.id == match_id,
                Match.match_type == MatchType.PAIRWISE,
                Match.status.in_(ACTIVE_MATCH_STATUSES),
                Match.foe_id.is_(None),
                Match.host_id != user_id,
                Match.required_score == self._current_score(user_id),
                ~self._busy_elsewhere(user_id)
            )
            .values(foe_id=user_id, foe_display_name=display_name, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def insert_team_member(
        self,
        match_id: int,
        user_id: str,
        display_name: str,
        side: Side,
        session: AsyncSession
    ) -> bool:
        """
        Add a roster row to a team match as one conditional INSERT ... SELECT.

        The row is written only if the joining side is strictly smaller than the
        other side (or both are empty), the roster is below max_participants,
        the joiner's streak equals required_score and the joiner holds no other
        active place.

        Returns:
            True if the row was inserted
        """
        joining = self._side_count(match_id, side)
        opposing = self._side_count(match_id, side.opposite)
        team_type = MatchParticipant.__table__.c.team.type

        gate = (
            select(
                literal(match_id),
                literal(user_id),
                literal(side, team_type),
                literal(display_name),
                literal(False),
                literal(utc_now(), MatchParticipant.__table__.c.joined_at.type)
            )
            .select_from(Match)
            .where(
                Match.id == match_id,
                Match.match_type == MatchType.TEAM,
                Match.status.in_(ACTIVE_MATCH_STATUSES),
                Match.host_id != user_id,
                Match.required_score == self._current_score(user_id),
                or_(joining < opposing, and_(joining == 0, opposing == 0)),
                (joining + opposing) < Match.max_participants,
                ~self._busy_elsewhere(user_id)
            )
        )
        result = await session.execute(
            insert(MatchParticipant).from_select(
                ['match_id', 'user_id', 'team', 'display_name', 'result_submitted', 'joined_at'],
                gate
            )
        )
        return result.rowcount == 1

    async def switch_team(
        self,
        match_id: int,
        user_id: str,
        from_side: Side,
        session: AsyncSession
    ) -> bool:
        """Move a non-host roster row to the other side if that side is smaller"""
        to_side = from_side.opposite
        result = await session.execute(
            update(MatchParticipant)
            .where(
                MatchParticipant.match_id == match_id,
                MatchParticipant.user_id == user_id,
                MatchParticipant.team == from_side,
                self._side_count(match_id, to_side) < self._side_count(match_id, from_side)
            )
            .values(team=to_side)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def clear_foe(self, match_id: int, user_id: str, session: AsyncSession) -> bool:
        """Vacate the foe slot of an active pairwise match held by user_id"""
        result = await session.execute(
            update(Match)
            .where(
                Match.id == match_id,
                Match.foe_id == user_id,
                Match.status.in_(ACTIVE_MATCH_STATUSES)
            )
            .values(foe_id=None, foe_display_name=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def remove_participant(self, match_id: int, user_id: str, session: AsyncSession) -> bool:
        result = await session.execute(
            sql_delete(MatchParticipant)
            .where(MatchParticipant.match_id == match_id, MatchParticipant.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_match(self, match_id: int, session: AsyncSession) -> bool:
        """Delete a match, removing its roster rows first"""
        await session.execute(
            sql_delete(MatchParticipant)
            .where(MatchParticipant.match_id == match_id)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            sql_delete(Match)
            .where(Match.id == match_id)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount == 1
        if deleted:
            self.logger.info(f"Deleted match {match_id}")
        return deleted

    # ============================================================================
    # Outcomes
    # ============================================================================

    async def complete_match(
        self,
        match_id: int,
        winning_side: Optional[Side],
        session: AsyncSession,
        now: Optional[datetime] = None,
        record_claims: bool = False
    ) -> bool:
        """
        Move an active match to completed.

        Args:
            winning_side: Side that won, or None for a draw
            record_claims: Also stamp both claims with winning_side (forfeits)

        Returns:
            True if this call completed the match, False if it was no longer active
        """
        values = {
            'status': MatchStatus.COMPLETED,
            'winning_side': winning_side,
            'completed_at': now or utc_now(),
            'updated_at': utc_now()
        }
        if record_claims:
            values['host_claim'] = winning_side
            values['foe_claim'] = winning_side

        result = await session.execute(
            update(Match)
            .where(Match.id == match_id, Match.status.in_(ACTIVE_MATCH_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_pairwise_claim(
        self,
        match_id: int,
        side: Side,
        claimed_winner: Side,
        proof_url: str,
        session: AsyncSession,
        now: Optional[datetime] = None
    ) -> bool:
        """Write one side's claim of a pairwise match if that side has not claimed yet"""
        submitted_at = now or utc_now()
        if side == Side.HOST:
            claim_column = Match.host_claim
            values = {'host_claim': claimed_winner, 'host_proof_url': proof_url, 'host_submitted_at': submitted_at}
        else:
            claim_column = Match.foe_claim
            values = {'foe_claim': claimed_winner, 'foe_proof_url': proof_url, 'foe_submitted_at': submitted_at}

        result = await session.execute(
            update(Match)
            .where(
                Match.id == match_id,
                Match.status.in_(ACTIVE_MATCH_STATUSES),
                claim_column.is_(None)
            )
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_team_claim(
        self,
        match_id: int,
        user_id: str,
        claimed_winner: Side,
        proof_url: str,
        session: AsyncSession,
        now: Optional[datetime] = None
    ) -> bool:
        """Write one roster member's claim if that member has not submitted yet"""
        result = await session.execute(
            update(MatchParticipant)
            .where(
                MatchParticipant.match_id == match_id,
                MatchParticipant.user_id == user_id,
                MatchParticipant.result_submitted == False  # noqa: E712
            )
            .values(
                result_submitted=True,
                submitted_winner_side=claimed_winner,
                proof_url=proof_url,
                submitted_at=now or utc_now()
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
