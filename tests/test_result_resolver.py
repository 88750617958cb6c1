from datetime import timedelta

import pytest

from dapaint.database.match_store import MatchStore
from dapaint.database.models import MatchStatus, MatchType, Side
from dapaint.operations.matchmaker import Matchmaker
from dapaint.operations.result_resolver import ResultResolver, validate_proof_reference
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.utils.match_exceptions import (
    MatchStateError, MatchValidationError, NotAParticipantError
)

from conftest import NOW

START = timedelta(hours=72)
DURING = NOW + START + timedelta(hours=2)
PROOF = "https://videos.example.com/clip/42"


async def seated_match(db, make_user, make_match):
    host = await make_user(streak=2)
    foe = await make_user(streak=2)
    match = await make_match(host, starts_in=START)
    assert (await Matchmaker(db).join(match.id, foe.id, foe.name, now=NOW)).success
    return host, foe, match


@pytest.mark.parametrize("proof", ["", "   ", None, "ftp://example.com/x", "not a link", "https://"])
def test_invalid_proof_references_are_rejected(proof):
    with pytest.raises(MatchValidationError):
        validate_proof_reference(proof)


def test_proof_reference_is_trimmed():
    assert validate_proof_reference("  http://example.com/a  ") == "http://example.com/a"


async def test_agreeing_claims_complete_the_match(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    resolver = ResultResolver(db)

    first = await resolver.submit_result(match.id, host.id, True, PROOF, now=DURING)
    assert not first.completed

    second = await resolver.submit_result(match.id, foe.id, False, PROOF, now=DURING)
    assert second.completed
    assert second.winning_side == Side.HOST

    ledger = ScoreLedger(db)
    assert (await ledger.get_score(host.id)).current_streak == 3
    assert (await ledger.get_score(foe.id)).current_streak == 0
    stored = await MatchStore(db).get_match(match.id)
    assert stored.status == MatchStatus.COMPLETED
    assert stored.host_proof_url == PROOF


async def test_conflicting_claims_stay_active(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    resolver = ResultResolver(db)

    await resolver.submit_result(match.id, host.id, True, PROOF, now=DURING)
    result = await resolver.submit_result(match.id, foe.id, True, PROOF, now=DURING)

    assert result.disputed and not result.completed
    assert (await MatchStore(db).get_match(match.id)).is_active
    assert (await ScoreLedger(db).get_score(host.id)).current_streak == 2


async def test_each_side_submits_once(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    resolver = ResultResolver(db)

    await resolver.submit_result(match.id, host.id, True, PROOF, now=DURING)
    with pytest.raises(MatchStateError):
        await resolver.submit_result(match.id, host.id, False, PROOF, now=DURING)


async def test_result_window(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    resolver = ResultResolver(db)

    with pytest.raises(MatchStateError):
        await resolver.submit_result(match.id, host.id, True, PROOF, now=NOW)
    with pytest.raises(MatchStateError):
        await resolver.submit_result(
            match.id, host.id, True, PROOF, now=NOW + START + timedelta(hours=24, minutes=1)
        )
    # Closing edge is inclusive
    result = await resolver.submit_result(
        match.id, host.id, True, PROOF, now=NOW + START + timedelta(hours=24)
    )
    assert not result.completed


async def test_outsiders_cannot_submit(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    outsider = await make_user()

    with pytest.raises(NotAParticipantError):
        await ResultResolver(db).submit_result(match.id, outsider.id, True, PROOF, now=DURING)


async def test_team_claims_settle_whole_rosters(db, make_user, make_match, seed_participant):
    host = await make_user(streak=1)
    match = await make_match(host, match_type=MatchType.TEAM, starts_in=START)
    teammate, foe_a, foe_b = [await make_user(streak=1) for _ in range(3)]
    await seed_participant(match.id, teammate, Side.HOST)
    await seed_participant(match.id, foe_a, Side.FOE)
    await seed_participant(match.id, foe_b, Side.FOE)
    resolver = ResultResolver(db)

    pending = await resolver.submit_result(match.id, host.id, True, PROOF, now=DURING)
    assert not pending.completed
    pending = await resolver.submit_result(match.id, teammate.id, True, PROOF, now=DURING)
    assert not pending.completed

    done = await resolver.submit_result(match.id, foe_a.id, False, PROOF, now=DURING)

    assert done.completed and done.winning_side == Side.HOST
    ledger = ScoreLedger(db)
    for user in (host, teammate):
        assert (await ledger.get_score(user.id)).current_streak == 2
    for user in (foe_a, foe_b):
        score = await ledger.get_score(user.id)
        assert (score.current_streak, score.losses) == (0, 1)


async def test_team_disagreement_is_disputed(db, make_user, make_match, seed_participant):
    host = await make_user()
    match = await make_match(host, match_type=MatchType.TEAM, starts_in=START)
    foe = await make_user()
    await seed_participant(match.id, foe, Side.FOE)
    resolver = ResultResolver(db)

    await resolver.submit_result(match.id, host.id, True, PROOF, now=DURING)
    result = await resolver.submit_result(match.id, foe.id, True, PROOF, now=DURING)

    assert result.disputed
    assert (await MatchStore(db).get_match(match.id)).is_active


async def test_settle_expired_applies_the_only_claim(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)
    resolver = ResultResolver(db)
    await resolver.submit_result(match.id, foe.id, True, PROOF, now=DURING)

    with pytest.raises(MatchStateError):
        await resolver.settle_expired(match.id, now=DURING)

    result = await resolver.settle_expired(match.id, now=NOW + START + timedelta(hours=25))

    assert result.completed and result.winning_side == Side.FOE
    assert (await ScoreLedger(db).get_score(foe.id)).current_streak == 3
    assert (await ScoreLedger(db).get_score(host.id)).current_streak == 0


async def test_settle_expired_leaves_unclaimed_matches(db, make_user, make_match):
    host, foe, match = await seated_match(db, make_user, make_match)

    result = await ResultResolver(db).settle_expired(match.id, now=NOW + START + timedelta(hours=25))

    assert not result.completed
    assert (await MatchStore(db).get_match(match.id)).is_active
