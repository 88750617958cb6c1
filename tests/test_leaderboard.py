from sqlalchemy import update

from dapaint.database.models import User
from dapaint.operations.score_ledger import ScoreLedger
from dapaint.services.leaderboard import LeaderboardService


async def test_top_win_streaks_orders_by_current_streak(db, make_user):
    low = await make_user(streak=1)
    high = await make_user(streak=5)
    mid = await make_user(streak=3)

    entries = await LeaderboardService(db.session_factory).top_win_streaks(limit=2)

    assert [(e.rank, e.user_id) for e in entries] == [(1, high.id), (2, mid.id)]
    assert low.id not in [e.user_id for e in entries]


async def test_top_wins_and_inactive_users_hidden(db, make_user):
    a = await make_user()
    b = await make_user()
    c = await make_user()
    ledger = ScoreLedger(db)
    await ledger.apply_outcome(a.id, b.id)
    await ledger.apply_outcome(a.id, c.id)
    await ledger.apply_outcome(c.id, b.id)
    async with db.transaction() as session:
        await session.execute(update(User).where(User.id == c.id).values(is_active=False))

    entries = await LeaderboardService(db.session_factory).top_wins()

    assert [e.user_id for e in entries] == [a.id, b.id]
    assert entries[0].wins == 2
