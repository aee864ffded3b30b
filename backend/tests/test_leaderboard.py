import pytest

from partyhub import db
from partyhub.errors import ValidationError
from partyhub.models import Participant, ScoreEntry
from partyhub.services.quiz.leaderboard import LeaderboardAggregator, LogEntry, Standings
from partyhub.services.quiz.scoring import Outcome, ScoreDelta


def test_ties_broken_by_time_total_was_reached():
    log = [
        LogEntry(1, participant_id=2, points=10, at=200.0),
        LogEntry(2, participant_id=1, points=10, at=100.0),
        LogEntry(3, participant_id=3, points=10, at=100.0),
    ]
    ranked = Standings.from_log(log).rank()
    assert [r.participant_id for r in ranked] == [1, 3, 2]
    assert [r.rank for r in ranked] == [1, 2, 3]


def test_zero_point_entries_do_not_move_reached_at():
    standings = Standings()
    standings.apply(1, 10, 100.0)
    standings.apply(2, 10, 150.0)
    standings.apply(1, 0, 300.0)
    assert [r.participant_id for r in standings.rank()] == [1, 2]


def test_as_of_reconstructs_earlier_standings():
    log = [
        LogEntry(1, 1, 10, 100.0),
        LogEntry(2, 2, 10, 100.0),
        LogEntry(3, 2, 10, 200.0),
    ]
    before = Standings.from_log(log, as_of=150.0)
    after = Standings.from_log(log)
    assert before.totals() == {1: 10, 2: 10}
    assert after.totals() == {1: 10, 2: 20}


def _deltas(round_id, points):
    return [ScoreDelta(pid, round_id, pts, Outcome.CORRECT if pts > 0 else Outcome.INCORRECT)
            for pid, pts in points.items()]


def test_apply_deltas_is_idempotent(flask_app, players):
    board = LeaderboardAggregator()
    a, b, _ = players
    applied = board.apply_deltas(_deltas(7, {a.id: 10, b.id: -5}), at=100.0)
    db.session.commit()
    assert len(applied) == 2
    again = board.apply_deltas(_deltas(7, {a.id: 10, b.id: -5}), at=120.0)
    db.session.commit()
    assert again == []
    assert board.standings().totals() == {a.id: 10, b.id: -5}
    assert board.is_consistent()


def test_rank_includes_display_fields(flask_app, players):
    board = LeaderboardAggregator()
    a, b, c = players
    board.apply_deltas(_deltas(1, {a.id: 10, b.id: 20, c.id: 0}), at=50.0)
    db.session.commit()
    rows = board.rank(limit=2)
    assert [r['display_name'] for r in rows] == ['Bob', 'Alice']
    assert rows[0]['total'] == 20
    assert rows[0]['rank'] == 1


def test_adjustment_enters_the_log(flask_app, players, admin):
    board = LeaderboardAggregator()
    entry = board.adjust(players[2].id, 15, admin_id=admin.id, reason='costume bonus', at=300.0)
    assert entry.kind == 'adjustment'
    assert db.session.get(Participant, players[2].id).score == 15
    history = board.history(players[2].id)
    assert history[0]['reason'] == 'costume bonus'
    assert board.rank()[0]['participant_id'] == players[2].id


@pytest.mark.parametrize('points, reason', [(0, 'x'), (True, 'x'), ('5', 'x'), (5, ''), (5, None)])
def test_adjustment_validation(flask_app, players, admin, points, reason):
    with pytest.raises(ValidationError):
        LeaderboardAggregator().adjust(players[0].id, points, admin_id=admin.id, reason=reason, at=1.0)


def test_adjustment_for_unknown_participant(flask_app, admin):
    with pytest.raises(ValidationError):
        LeaderboardAggregator().adjust(9999, 5, admin_id=admin.id, reason='typo', at=1.0)


def test_rebuild_repairs_drifted_cache(flask_app, players):
    board = LeaderboardAggregator()
    a, b, _ = players
    board.apply_deltas(_deltas(3, {a.id: 10, b.id: 20}), at=10.0)
    db.session.commit()

    # Someone edited the cached column by hand
    db.session.get(Participant, a.id).score = 999
    db.session.commit()
    assert not board.is_consistent()

    assert board.rebuild() == {a.id: 10, b.id: 20}
    assert board.is_consistent()
    assert db.session.get(Participant, a.id).score == 10


def test_history_is_newest_first_and_skips_voided(flask_app, players, admin):
    board = LeaderboardAggregator()
    a = players[0]
    board.adjust(a.id, 5, admin_id=admin.id, reason='first', at=10.0)
    board.adjust(a.id, 7, admin_id=admin.id, reason='second', at=20.0)
    assert [h['reason'] for h in board.history(a.id)] == ['second', 'first']

    board.reset()
    db.session.commit()
    assert board.history(a.id) == []
    assert ScoreEntry.query.filter_by(voided=True).count() == 2
