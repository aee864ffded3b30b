import pytest
from sqlalchemy.exc import OperationalError

from partyhub import db
from partyhub.errors import StorageError
from partyhub.models import Participant
from partyhub.storage import request_key, with_storage_retry


def _locked():
    return OperationalError('UPDATE round SET status=?', {}, Exception('database is locked'))


def test_retry_then_success(flask_app):
    calls = []

    @with_storage_retry
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _locked()
        return 'ok'

    assert flaky() == 'ok'
    assert len(calls) == 3


def test_gives_up_after_configured_attempts(flask_app):
    flask_app.config['STORAGE_RETRY_ATTEMPTS'] = 2
    calls = []

    @with_storage_retry
    def down():
        calls.append(1)
        raise _locked()

    with pytest.raises(StorageError) as excinfo:
        down()
    assert len(calls) == 2
    assert excinfo.value.details == {'attempts': 2}
    assert excinfo.value.status_code == 503


def test_storage_error_surfaces_as_503(client, monkeypatch):
    def down(self, *args, **kwargs):
        raise _locked()

    monkeypatch.setattr('partyhub.services.quiz.leaderboard.LeaderboardAggregator.rank', down)
    res = client.get('/api/quiz/leaderboard')
    assert res.status_code == 503
    assert res.get_json()['reason'] == 'storage_error'


def test_committed_write_is_not_run_again(flask_app):
    calls = []

    @with_storage_retry
    def create_then_fail():
        calls.append(1)
        db.session.add(Participant(display_name=f'P{len(calls)}', created_at=0.0))
        db.session.commit()
        raise _locked()

    with pytest.raises(StorageError) as excinfo:
        create_then_fail()
    assert len(calls) == 1
    assert excinfo.value.details['committed'] is True
    assert excinfo.value.details['request_key']
    assert Participant.query.count() == 1


def test_replay_safe_view_reruns_with_the_same_request_key(flask_app):
    keys = []

    @with_storage_retry(replay_after_commit=True)
    def create_once():
        keys.append(request_key())
        if Participant.query.filter_by(external_id=request_key()).first() is None:
            db.session.add(Participant(external_id=request_key(), display_name='Once', created_at=0.0))
            db.session.commit()
        if len(keys) == 1:
            raise _locked()
        return 'ok'

    assert create_once() == 'ok'
    assert len(keys) == 2
    assert keys[0] == keys[1]
    assert Participant.query.count() == 1


def test_each_call_gets_a_fresh_request_key(flask_app):
    @with_storage_retry
    def current_key():
        return request_key()

    assert current_key() != current_key()
