"""
Shared fixtures: a fresh file-backed SQLite database per test, plus user and
match factories. A file (not :memory:) lets concurrent sessions contend for
the same rows.
"""

import itertools
import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault('LOG_TO_FILE', 'false')

from dapaint.database.database import Database  # noqa: E402
from dapaint.database.models import (  # noqa: E402
    Match, MatchParticipant, MatchStatus, MatchType, Side
)
from dapaint.operations.identity import StaticIdentityProvider  # noqa: E402
from dapaint.operations.match_operations import MatchDetails, MatchOperations  # noqa: E402

NOW = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'dapaint_test.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(streak: int = 0, postal_code: str = "10001", username: str = None):
        n = next(counter)
        return await db.create_user(
            username or f"user{n}",
            display_name=(username or f"User {n}"),
            postal_code=postal_code,
            current_streak=streak
        )
    return _make


@pytest.fixture
def ops_for(db):
    def _ops(user):
        return MatchOperations(db, StaticIdentityProvider(user.id if user else None))
    return _ops


def match_details(
    starts_in: timedelta = timedelta(hours=72),
    match_type: MatchType = MatchType.PAIRWISE,
    max_participants: int = None,
    postal_code: str = "10001",
    title: str = "Pushup duel",
    now: datetime = NOW
) -> MatchDetails:
    if max_participants is None:
        max_participants = 2 if match_type == MatchType.PAIRWISE else 6
    return MatchDetails(
        title=title,
        how_winner_is_determined="Most pushups in two minutes",
        location="Central Park",
        city="New York",
        postal_code=postal_code,
        starts_at=now + starts_in,
        match_type=match_type,
        max_participants=max_participants
    )


@pytest.fixture
def make_match(ops_for):
    async def _make(host, **kwargs):
        return await ops_for(host).create_match(match_details(**kwargs), now=NOW)
    return _make


@pytest.fixture
def seed_participant(db):
    """Insert a roster row directly, bypassing the join rules"""
    async def _seed(match_id: int, user, side: Side):
        async with db.transaction() as session:
            session.add(MatchParticipant(
                match_id=match_id, user_id=user.id, team=side, display_name=user.name
            ))
    return _seed


@pytest.fixture
def insert_match(db):
    """Insert a match row directly, bypassing creation checks"""
    async def _insert(host, foe=None, created_at: datetime = None, **overrides):
        values = dict(
            host_id=host.id,
            host_display_name=host.name,
            foe_id=foe.id if foe else None,
            foe_display_name=foe.name if foe else None,
            title="Legacy DaPaint",
            how_winner_is_determined="Judges decide",
            location="Gym",
            city="New York",
            postal_code="10001",
            match_type=MatchType.PAIRWISE,
            max_participants=2,
            required_score=host.current_streak,
            starts_at=NOW + timedelta(hours=72),
            status=MatchStatus.SCHEDULED,
            created_at=created_at or NOW,
        )
        values.update(overrides)
        async with db.transaction() as session:
            match = Match(**values)
            session.add(match)
            await session.flush()
            return match.id
    return _insert
