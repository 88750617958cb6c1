"""
Feed Selector - joinable matches visible to a user

Read-only. Three visibility policies, all newest first and all excluding the
viewer's own matches, matches the viewer already plays in, and matches that
are already full:

- strict:  scheduled, same required score, viewer's postal code (match or host);
           no postal filter when the viewer has none
- explore: scheduled, same required score, other postal codes only
- lucky:   any active status, any score, other postal codes only
"""

from enum import Enum
from typing import List, Optional

from dapaint.config import Config
from dapaint.database.match_store import MatchStore
from dapaint.database.models import Match, MatchStatus, Side, ACTIVE_MATCH_STATUSES, TeamKind
from dapaint.utils.match_exceptions import NotAuthenticatedError
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


class FeedMode(Enum):
    """Feed visibility policy"""
    STRICT = "strict"
    EXPLORE = "explore"
    LUCKY = "lucky"


class FeedSelector:
    """
    Feed queries over MatchStore.
    """

    def __init__(self, database, store: Optional[MatchStore] = None):
        self.db = database
        self.store = store or MatchStore(database)
        self.logger = logger

    async def get_feed(
        self,
        user_id: str,
        mode: FeedMode = FeedMode.STRICT,
        limit: Optional[int] = None
    ) -> List[Match]:
        """
        Joinable matches for a viewer under one visibility policy.

        Args:
            user_id: Viewer
            mode: Visibility policy
            limit: Maximum matches to return (Config.FEED_PAGE_SIZE by default)

        Raises:
            NotAuthenticatedError: If user_id is empty
        """
        if not user_id:
            raise NotAuthenticatedError()
        mode = FeedMode(mode)
        limit = limit or Config.FEED_PAGE_SIZE

        viewer = await self.db.get_user(user_id)
        if not viewer:
            self.logger.warning(f"Feed requested for unknown user {user_id}")
            return []
        postal_code = viewer.postal_code

        if mode == FeedMode.STRICT:
            candidates = await self.store.find_feed_candidates(
                user_id,
                statuses=[MatchStatus.SCHEDULED],
                required_score=viewer.current_streak,
                same_postal_code=postal_code
            )
        elif mode == FeedMode.EXPLORE:
            candidates = await self.store.find_feed_candidates(
                user_id,
                statuses=[MatchStatus.SCHEDULED],
                required_score=viewer.current_streak,
                other_postal_code=postal_code
            )
        else:
            candidates = await self.store.find_feed_candidates(
                user_id,
                statuses=list(ACTIVE_MATCH_STATUSES),
                other_postal_code=postal_code
            )

        # Roster checks need participants, so no SQL limit above
        visible = [m for m in candidates if self._is_open_to(m, user_id)]
        self.logger.debug(
            f"{mode.value} feed for user {user_id}: {len(visible)} of {len(candidates)} candidates"
        )
        return visible[:limit]

    @staticmethod
    def _is_open_to(match: Match, user_id: str) -> bool:
        kind = match.kind
        if not isinstance(kind, TeamKind):
            # Pairwise foe presence is filtered in SQL
            return True
        if any(p.user_id == user_id for p in kind.participants):
            return False
        if len(kind.participants) >= match.max_participants:
            return False
        counts = kind.counts()
        if counts[Side.HOST] == counts[Side.FOE] and counts[Side.HOST] > 0:
            return False
        return True
