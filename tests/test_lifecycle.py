from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from dapaint.database.match_store import MatchStore
from dapaint.database.models import MatchStatus, MatchType, Side
from dapaint.operations.lifecycle import LifecycleResolver
from dapaint.operations.matchmaker import Matchmaker
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.utils.match_exceptions import (
    MatchNotFoundError, MatchStateError, NotAParticipantError, ScoreUpdateError
)

from conftest import NOW


async def seated_match(db, make_user, make_match, starts_in, streak=3):
    host = await make_user(streak=streak)
    foe = await make_user(streak=streak)
    match = await make_match(host, starts_in=starts_in)
    result = await Matchmaker(db).join(match.id, foe.id, foe.name, now=NOW)
    assert result.success
    return host, foe, match


async def test_host_leaving_outside_window_deletes(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=72))

    result = await LifecycleResolver(db).leave(match.id, host.id, now=NOW)

    assert result.deleted and not result.forfeited
    store = MatchStore(db)
    assert await store.get_match(match.id) is None
    assert await store.get_active_match(foe.id) is None
    ledger = ScoreLedger(db)
    assert (await ledger.get_score(host.id)).current_streak == 3
    assert (await ledger.get_score(foe.id)).current_streak == 3


async def test_host_leaving_inside_window_forfeits(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=10))

    result = await LifecycleResolver(db).leave(match.id, host.id, now=NOW)

    assert result.forfeited and not result.deleted
    assert result.winner_name == foe.name
    ledger = ScoreLedger(db)
    assert (await ledger.get_score(foe.id)).current_streak == 4
    assert (await ledger.get_score(host.id)).current_streak == 0
    stored = await MatchStore(db).get_match(match.id)
    assert stored.status == MatchStatus.COMPLETED
    assert stored.winning_side == Side.FOE


@pytest.mark.parametrize("starts_in, forfeits", [
    (timedelta(hours=48, minutes=1), False),
    (timedelta(hours=48), True),
    (timedelta(hours=47, minutes=59), True),
])
async def test_forfeit_window_boundary(db, make_user, make_match, starts_in, forfeits):
    host, foe, match = await seated_match(db, make_user, make_match, starts_in)

    result = await LifecycleResolver(db).leave(match.id, host.id, now=NOW)

    assert result.forfeited is forfeits
    assert result.deleted is not forfeits


@pytest.mark.parametrize("starts_in", [timedelta(hours=1), timedelta(hours=200)])
async def test_host_without_opponent_always_deletes(db, make_user, make_match, starts_in):
    host = await make_user()
    match = await make_match(host, starts_in=starts_in)

    result = await LifecycleResolver(db).leave(match.id, host.id, now=NOW)

    assert result.deleted
    assert await MatchStore(db).get_match(match.id) is None


async def test_foe_leaving_outside_window_departs(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=72))

    result = await LifecycleResolver(db).leave(match.id, foe.id, now=NOW)

    assert not result.forfeited and not result.deleted
    stored = await MatchStore(db).get_match(match.id)
    assert stored.foe_id is None and stored.foe_display_name is None
    assert stored.is_active


async def test_foe_leaving_inside_window_forfeits_to_host(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=3))

    result = await LifecycleResolver(db).leave(match.id, foe.id, now=NOW)

    assert result.forfeited
    assert result.winner_name == host.name
    ledger = ScoreLedger(db)
    host_score = await ledger.get_score(host.id)
    assert (host_score.current_streak, host_score.wins) == (4, 1)
    assert (await ledger.get_score(foe.id)).losses == 1


async def test_host_leaving_team_match_deletes_roster(db, make_user, make_match):
    host = await make_user()
    match = await make_match(host, match_type=MatchType.TEAM, starts_in=timedelta(hours=72))
    member = await make_user()
    await Matchmaker(db).join(match.id, member.id, member.name, now=NOW)

    result = await LifecycleResolver(db).leave(match.id, host.id, now=NOW)

    assert result.deleted
    store = MatchStore(db)
    assert await store.list_participants(match.id) == []
    assert await store.get_active_match(member.id) is None


async def test_team_member_departure_removes_roster_row(db, make_user, make_match):
    host = await make_user()
    match = await make_match(host, match_type=MatchType.TEAM, starts_in=timedelta(hours=72))
    member = await make_user()
    await Matchmaker(db).join(match.id, member.id, member.name, now=NOW)

    result = await LifecycleResolver(db).leave(match.id, member.id, now=NOW)

    assert not result.forfeited and not result.deleted
    participants = await MatchStore(db).list_participants(match.id)
    assert [p.user_id for p in participants] == [host.id]


async def test_team_forfeit_opposing_side_wins(db, make_user, make_match, seed_participant):
    host = await make_user(streak=1)
    match = await make_match(host, match_type=MatchType.TEAM, starts_in=timedelta(hours=5))
    teammate = await make_user(streak=1)
    foe_a = await make_user(streak=1)
    foe_b = await make_user(streak=1)
    await seed_participant(match.id, teammate, Side.HOST)
    await seed_participant(match.id, foe_a, Side.FOE)
    await seed_participant(match.id, foe_b, Side.FOE)

    result = await LifecycleResolver(db).leave(match.id, foe_a.id, now=NOW)

    assert result.forfeited
    assert result.winner_name == "Host team"
    ledger = ScoreLedger(db)
    assert (await ledger.get_score(host.id)).current_streak == 2
    assert (await ledger.get_score(teammate.id)).current_streak == 2
    assert (await ledger.get_score(foe_a.id)).current_streak == 0
    # Only the acting user takes the loss
    foe_b_score = await ledger.get_score(foe_b.id)
    assert (foe_b_score.current_streak, foe_b_score.losses) == (1, 0)


async def test_leave_errors(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=5))
    outsider = await make_user()
    resolver = LifecycleResolver(db)

    with pytest.raises(MatchNotFoundError):
        await resolver.leave(9999, host.id, now=NOW)
    with pytest.raises(NotAParticipantError):
        await resolver.leave(match.id, outsider.id, now=NOW)

    await resolver.leave(match.id, host.id, now=NOW)
    with pytest.raises(MatchStateError):
        await resolver.leave(match.id, foe.id, now=NOW)


class FailingLedger:
    def __init__(self):
        self.calls = 0

    async def apply_outcome(self, winner_id, loser_id, is_draw=False, session=None):
        self.calls += 1
        raise OperationalError("UPDATE users", {}, Exception("database is locked"))


async def test_score_update_is_retried_then_reported(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match, timedelta(hours=5))
    ledger = FailingLedger()
    resolver = LifecycleResolver(db, ledger=ledger)

    with pytest.raises(ScoreUpdateError):
        await resolver.leave(match.id, host.id, now=NOW)

    assert ledger.calls == 3
    stored = await MatchStore(db).get_match(match.id)
    assert stored.status == MatchStatus.COMPLETED


async def test_active_match_prefers_newest_across_roles(db, make_user, insert_match, seed_participant, caplog):
    user = await make_user()
    hosted = await insert_match(user, created_at=NOW - timedelta(days=2))
    team_host = await make_user()
    team = await insert_match(team_host, match_type=MatchType.TEAM, max_participants=4, created_at=NOW)
    await seed_participant(team, team_host, Side.HOST)
    await seed_participant(team, user, Side.FOE)

    with caplog.at_level("WARNING", logger="dapaint.database.match_store"):
        active = await MatchStore(db).get_active_match(user.id)

    assert active.id == team
    assert any(
        r.levelname == "WARNING" and f"[{hosted}, {team}]" in r.getMessage()
        for r in caplog.records
    )


async def test_active_match_newest_party_match_beats_older_roster_row(
    db, make_user, insert_match, seed_participant
):
    user = await make_user()
    team_host = await make_user()
    team = await insert_match(team_host, match_type=MatchType.TEAM, max_participants=4,
                              created_at=NOW - timedelta(days=1))
    await seed_participant(team, user, Side.HOST)
    hosted = await insert_match(user, created_at=NOW)

    active = await MatchStore(db).get_active_match(user.id)

    assert active.id == hosted
