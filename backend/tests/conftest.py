import os
import sys
import pytest
from flask import g

# Ensure the backend root (containing the `partyhub` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from partyhub import create_app, db, socketio
from partyhub.models import Participant
from partyhub.services.quiz.rounds import get_round_machine


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    BCRYPT_LOG_ROUNDS = 4
    LOG_LEVEL = 'DEBUG'
    ROUND_MIN_TIME_LIMIT_SEC = 5
    ROUND_MAX_TIME_LIMIT_SEC = 300
    ROUND_SUMMARY_GRACE_SEC = 10
    ENGINE_LOCK_TIMEOUT_SEC = 1
    LOTTERY_EXCLUSION_POLICY = 'all_time'
    LOTTERY_WEIGHTING_ENABLED = False
    LOTTERY_MAX_WEIGHT = 5
    STORAGE_RETRY_ATTEMPTS = 3
    STORAGE_RETRY_BACKOFF_SEC = 0
    BROADCAST_REPLAY_SIZE = 20
    ADMIN_USERNAME = 'admin'
    ADMIN_PASSWORD = 'test-pass'
    IDENTITY_STATIC_CODES = {
        'code-alice': {'external_id': 'ext-alice', 'display_name': 'Alice'},
        'code-bob': {'external_id': 'ext-bob', 'display_name': 'Bob'},
        'code-carol': {'external_id': 'ext-carol', 'display_name': 'Carol', 'avatar_url': 'https://cdn.test/carol.png'},
    }


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)

    # The fixture keeps one app context open across requests, so Flask reuses
    # its `g` for every test-client request; drop Flask-Login's cached user so
    # each request resolves the user from its own client's session.
    @application.before_request
    def _reset_login_cache():
        g.pop('_login_user', None)

    with application.app_context():
        # Ensure models are imported so tables are created
        import partyhub.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def machine(flask_app):
    return get_round_machine()


@pytest.fixture()
def admin(flask_app):
    user = Participant(display_name='admin', is_admin=True, is_playing=False, created_at=0.0)
    user.set_password('test-pass')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def players(flask_app):
    # Joined long before any round the tests open
    people = [
        Participant(external_id=f'ext-{name.lower()}', display_name=name, created_at=0.0)
        for name in ('Alice', 'Bob', 'Carol')
    ]
    db.session.add_all(people)
    db.session.commit()
    return people


@pytest.fixture()
def round_def():
    return {
        'question_ref': 'q-capital-of-france',
        'options': ['A', 'B', 'C', 'D'],
        'correct_option': 'B',
        'base_score': 10,
        'penalty_enabled': True,
        'penalty_score': 5,
        'timeout_penalty_enabled': True,
        'timeout_penalty_score': 10,
        'time_limit_sec': 30,
    }


@pytest.fixture()
def admin_client(flask_app, admin):
    test_client = flask_app.test_client()
    res = test_client.post('/auth/admin/login', json={'username': 'admin', 'password': 'test-pass'})
    assert res.status_code == 200
    return test_client


@pytest.fixture()
def login_player(flask_app):
    def _login(code):
        test_client = flask_app.test_client()
        res = test_client.post('/auth/login', json={'code': code})
        assert res.status_code in (200, 201)
        return test_client, res.get_json()
    return _login
