"""
Administrative Operations Module - data-integrity audit and repair

The join and leave workflows keep every user in at most one active match.
Rows written before those guarantees existed, or by hand, can still break
the rule. This module finds such users and repairs them:

- find_violations(): users who are host, foe or roster member of more than
  one active match
- repair_violations(): keep each user's newest active match and resolve the
  older ones:
    * hosted match with no opponent -> deleted
    * pairwise match with a foe     -> foe cleared, completed as a draw,
                                       draw penalty for host and former foe
    * hosted team match with opponents -> completed as a draw, draw penalty
                                          for the whole roster
    * team roster row               -> removed

Repairs are the only path that completes a match as a draw.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from contextlib import asynccontextmanager
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

from dapaint.database.match_store import MatchStore
from dapaint.database.models import (
    Match, MatchType, ACTIVE_MATCH_STATUSES
)
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.utils.clock import utc_now
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class IntegrityViolation:
    """A user holding places in several active matches, newest first"""
    user_id: str
    match_ids: List[int]


@dataclass
class RepairAction:
    """One change made (or planned, on a dry run) by the repair"""
    user_id: str
    match_id: int
    action: str  # deleted | drawn | left


@dataclass
class RepairReport:
    dry_run: bool
    violations: List[IntegrityViolation] = field(default_factory=list)
    actions: List[RepairAction] = field(default_factory=list)


class IntegrityOperations:
    """
    Audit and repair of the one-active-match rule.
    """

    def __init__(
        self,
        database,
        store: Optional[MatchStore] = None,
        ledger: Optional[ScoreLedger] = None
    ):
        """Initialize with database instance"""
        self.db = database
        self.store = store or MatchStore(database)
        self.ledger = ledger or ScoreLedger(database)
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new session.
        """
        if session:
            yield session
        else:
            async with self.db.get_session() as new_session:
                yield new_session

    async def _active_matches_by_user(self, session: AsyncSession) -> Dict[str, List[Match]]:
        """Every active match each user holds a place in, newest first"""
        result = await session.execute(
            select(Match)
            .options(selectinload(Match.participants))
            .where(Match.status.in_(ACTIVE_MATCH_STATUSES))
            .order_by(Match.created_at.desc(), Match.id.desc())
            .execution_options(populate_existing=True)
        )
        by_user: Dict[str, List[Match]] = {}
        for match in result.scalars().unique().all():
            members = {match.host_id}
            if match.foe_id:
                members.add(match.foe_id)
            members.update(p.user_id for p in match.participants)
            for user_id in members:
                by_user.setdefault(user_id, []).append(match)
        return by_user

    async def find_violations(self, session: Optional[AsyncSession] = None) -> List[IntegrityViolation]:
        """List users who are in more than one active match"""
        async with self._get_session_context(session) as s:
            by_user = await self._active_matches_by_user(s)

        violations = [
            IntegrityViolation(user_id=user_id, match_ids=[m.id for m in matches])
            for user_id, matches in sorted(by_user.items())
            if len(matches) > 1
        ]
        for violation in violations:
            self.logger.warning(
                f"Data Integrity Violation: User {violation.user_id} is in "
                f"{len(violation.match_ids)} active matches {violation.match_ids}"
            )
        return violations

    async def repair_violations(
        self,
        dry_run: bool = True,
        now: Optional[datetime] = None
    ) -> RepairReport:
        """
        Keep each violating user's newest active match and resolve the rest.

        Args:
            dry_run: Report the planned actions without writing anything
            now: Completion timestamp for drawn matches

        Returns:
            RepairReport listing violations found and actions taken
        """
        report = RepairReport(dry_run=dry_run)
        now = now or utc_now()

        async with self.db.transaction() as session:
            by_user = await self._active_matches_by_user(session)
            handled: Dict[int, str] = {}

            for user_id in sorted(by_user):
                matches = by_user[user_id]
                if len(matches) < 2:
                    continue
                report.violations.append(
                    IntegrityViolation(user_id=user_id, match_ids=[m.id for m in matches])
                )
                # Matches already deleted or drawn for another user are no longer active
                remaining = [m for m in matches if m.id not in handled]
                if len(remaining) < 2:
                    continue
                keep, older = remaining[0], remaining[1:]
                self.logger.info(f"User {user_id}: keeping match {keep.id}")

                for match in older:
                    action = await self._resolve(match, user_id, session, dry_run, now)
                    if action != "left":
                        handled[match.id] = action
                    report.actions.append(RepairAction(user_id=user_id, match_id=match.id, action=action))

            if dry_run:
                await session.rollback()

        self.logger.info(
            f"Integrity repair {'planned' if dry_run else 'applied'}: "
            f"{len(report.violations)} violations, {len(report.actions)} actions"
        )
        return report

    async def _resolve(
        self,
        match: Match,
        user_id: str,
        session: AsyncSession,
        dry_run: bool,
        now: datetime
    ) -> str:
        """Resolve one older match for a violating user; returns the action name"""
        is_party = user_id in (match.host_id, match.foe_id)

        if not is_party:
            if not dry_run:
                await self.store.remove_participant(match.id, user_id, session)
            self.logger.info(f"Removed user {user_id} from team match {match.id}")
            return "left"

        if match.host_id == user_id and not match.has_opponent:
            if not dry_run:
                await self.store.delete_match(match.id, session)
            self.logger.info(f"Deleted unmatched match {match.id} hosted by {user_id}")
            return "deleted"

        if match.match_type == MatchType.PAIRWISE:
            penalized = [match.host_id, match.foe_id]
            if not dry_run:
                await self.store.clear_foe(match.id, match.foe_id, session)
        else:
            penalized = [p.user_id for p in match.participants]

        if not dry_run:
            await self.store.complete_match(match.id, None, session, now=now)
            await self.ledger.apply_draw(penalized, session=session)
        self.logger.info(f"Completed match {match.id} as a draw; streak penalty for {penalized}")
        return "drawn"
