from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from partyhub.errors import ValidationError
from partyhub.main import admin_required
from partyhub.services.quiz.leaderboard import LeaderboardAggregator
from partyhub.services.quiz.rounds import get_round_machine
from partyhub.storage import request_key, with_storage_retry

quiz = Blueprint('quiz', __name__)


def _int_arg(name, default=None, minimum=None, maximum=None):
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


@quiz.route('/rounds', methods=['POST'])
@admin_required
@with_storage_retry
def arm_round():
    data = request.get_json(silent=True) or {}
    rnd = get_round_machine().arm(data)
    return jsonify(rnd.to_dict(reveal=True)), 201


@quiz.route('/rounds/open', methods=['POST'])
@admin_required
@with_storage_retry
def open_round():
    rnd = get_round_machine().open()
    return jsonify(rnd.to_dict())


@quiz.route('/rounds/close', methods=['POST'])
@admin_required
@with_storage_retry(replay_after_commit=True)
def close_round():
    data = request.get_json(silent=True) or {}
    summary = get_round_machine().close(data.get('round_id'), reason='admin')
    return jsonify(summary)


@quiz.route('/rounds/<int:round_id>/ack', methods=['POST'])
@admin_required
@with_storage_retry
def acknowledge_round(round_id):
    released = get_round_machine().acknowledge(round_id)
    return jsonify({'round_id': round_id, 'released': released})


@quiz.route('/state', methods=['GET'])
@with_storage_retry(replay_after_commit=True)
def get_state():
    machine = get_round_machine()
    # Lazy deadline enforcement in case a countdown was lost
    machine.tick()
    payload = machine.snapshot()
    # Include configured limits so clients can render countdowns
    cfg = current_app.config
    payload['limits'] = {
        'min_time_limit_sec': int(cfg.get('ROUND_MIN_TIME_LIMIT_SEC', 5)),
        'max_time_limit_sec': int(cfg.get('ROUND_MAX_TIME_LIMIT_SEC', 300)),
    }
    return jsonify(payload)


@quiz.route('/rounds/<int:round_id>/stats', methods=['GET'])
@with_storage_retry
def round_stats(round_id):
    return jsonify(get_round_machine().statistics(round_id))


@quiz.route('/answer', methods=['POST'])
@login_required
@with_storage_retry(replay_after_commit=True)
def submit_answer():
    data = request.get_json(silent=True) or {}
    if 'option' not in data:
        return jsonify({'error': 'option is required (null for no answer)'}), 400
    round_id = data.get('round_id')
    if round_id is not None and not isinstance(round_id, int):
        return jsonify({'error': 'round_id must be an integer'}), 400
    if current_user.is_admin:
        return jsonify({'error': 'Admins cannot answer'}), 403
    # Any client-side timing in the payload is ignored; elapsed time is server computed
    submission = get_round_machine().submit(current_user.id, data.get('option'), round_id=round_id,
                                            request_key=request_key())
    return jsonify(submission.to_dict()), 201


@quiz.route('/leaderboard', methods=['GET'])
@with_storage_retry
def get_leaderboard():
    as_of = request.args.get('as_of')
    try:
        as_of = float(as_of) if as_of is not None else None
    except ValueError:
        raise ValidationError('as_of must be a timestamp')
    limit = _int_arg('limit', default=None, minimum=1, maximum=500)
    standings = LeaderboardAggregator().rank(as_of=as_of, limit=limit)
    return jsonify({'as_of': as_of, 'standings': standings})


@quiz.route('/history', methods=['GET'])
@login_required
@with_storage_retry
def score_history():
    limit = _int_arg('limit', default=50, minimum=1, maximum=200)
    offset = _int_arg('offset', default=0, minimum=0)
    history = LeaderboardAggregator().history(current_user.id, limit=limit, offset=offset)
    return jsonify({'participant_id': current_user.id, 'total': current_user.score, 'history': history})


@quiz.route('/scores/adjust', methods=['POST'])
@admin_required
@with_storage_retry(replay_after_commit=True)
def adjust_score():
    data = request.get_json(silent=True) or {}
    entry = LeaderboardAggregator().adjust(
        data.get('participant_id'),
        data.get('points'),
        admin_id=current_user.id,
        reason=data.get('reason'),
        at=get_round_machine().clock.now(),
        request_key=request_key(),
    )
    return jsonify(entry.to_dict()), 201


@quiz.route('/scores/reset', methods=['POST'])
@admin_required
@with_storage_retry
def reset_scores():
    result = get_round_machine().reset_scores(admin_id=current_user.id)
    return jsonify(result)
