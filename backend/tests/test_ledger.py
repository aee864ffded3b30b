import threading
import time

import pytest

from partyhub import db
from partyhub.errors import DeadlineExceeded, DuplicateSubmission, RoundNotOpen, ValidationError
from partyhub.models import Submission
from partyhub.services.quiz import ledger


def _open_round(machine, round_def, opened_at=1000.0):
    machine.arm(round_def, now=opened_at - 5)
    return machine.open(now=opened_at)


def test_submission_records_server_elapsed_time(machine, players, round_def):
    rnd = _open_round(machine, round_def)
    submission = machine.submit(players[0].id, 'B', now=1004.25)
    assert submission.round_id == rnd.id
    assert submission.elapsed_sec == 4.25
    assert submission.submitted_at == 1004.25


def test_first_write_wins(machine, players, round_def):
    rnd = _open_round(machine, round_def)
    machine.submit(players[0].id, 'A', now=1001.0)
    with pytest.raises(DuplicateSubmission):
        machine.submit(players[0].id, 'B', now=1002.0)
    rows = Submission.query.filter_by(round_id=rnd.id).all()
    assert len(rows) == 1
    assert rows[0].option == 'A'


def test_deadline_is_exclusive(machine, players, round_def):
    _open_round(machine, round_def)
    machine.submit(players[0].id, 'B', now=1029.9)
    with pytest.raises(DeadlineExceeded):
        machine.submit(players[1].id, 'B', now=1030.0)


def test_duplicate_after_deadline_reports_deadline_first(machine, players, round_def):
    _open_round(machine, round_def)
    machine.submit(players[0].id, 'A', now=1001.0)
    with pytest.raises(DeadlineExceeded):
        machine.submit(players[0].id, 'B', now=1031.0)


def test_no_round_open(machine, players, round_def):
    with pytest.raises(RoundNotOpen):
        machine.submit(players[0].id, 'A', now=1000.0)
    machine.arm(round_def, now=1000.0)
    with pytest.raises(RoundNotOpen):
        machine.submit(players[0].id, 'A', now=1001.0)


def test_submission_for_a_stale_round_id(machine, players, round_def):
    rnd = _open_round(machine, round_def)
    with pytest.raises(RoundNotOpen):
        machine.submit(players[0].id, 'A', now=1001.0, round_id=rnd.id + 1)


def test_unknown_option_rejected(machine, players, round_def):
    _open_round(machine, round_def)
    with pytest.raises(ValidationError):
        machine.submit(players[0].id, 'E', now=1001.0)


def test_blank_option_stored_as_no_answer(machine, players, round_def):
    rnd = _open_round(machine, round_def)
    machine.submit(players[0].id, '', now=1001.0)
    machine.submit(players[1].id, None, now=1002.0)
    answers = ledger.answers_for_round(rnd.id)
    assert [a.option for a in answers] == [None, None]


def test_void_all_hides_rows_from_round_slice(machine, players, round_def):
    rnd = _open_round(machine, round_def)
    machine.submit(players[0].id, 'B', now=1001.0)
    assert ledger.void_all() == 1
    db.session.commit()
    assert ledger.for_round(rnd.id) == []


def test_racing_submissions_accept_exactly_one(flask_app, machine, players, round_def):
    rnd = _open_round(machine, round_def, opened_at=time.time())
    pid = players[0].id
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(option):
        with flask_app.app_context():
            barrier.wait()
            try:
                machine.submit(pid, option)
                outcomes.append('accepted')
            except DuplicateSubmission:
                outcomes.append('duplicate')

    threads = [threading.Thread(target=attempt, args=(option,)) for option in ('A', 'C')]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ['accepted', 'duplicate']
    assert Submission.query.filter_by(round_id=rnd.id, participant_id=pid).count() == 1
