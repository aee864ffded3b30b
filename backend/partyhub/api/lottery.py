from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from partyhub import db
from partyhub.main import admin_required
from partyhub.services.lottery import LotteryEngine
from partyhub.storage import request_key, with_storage_retry

lottery = Blueprint('lottery', __name__)


def _engine():
    return LotteryEngine(db.session, broadcaster=current_app.extensions['broadcaster'])


@lottery.route('/draw', methods=['POST'])
@admin_required
@with_storage_retry(replay_after_commit=True)
def draw_lottery():
    data = request.get_json(silent=True) or {}
    # Every draw carries a key so a retried request cannot produce a second winner
    outcome = _engine().draw(
        seed=data.get('seed'),
        draw_key=data.get('draw_key') or request_key(),
        admin_id=current_user.id,
        notes=data.get('notes'),
    )
    payload = outcome.record.to_dict()
    payload['replayed'] = outcome.replayed
    return jsonify(payload), 200 if outcome.replayed else 201


@lottery.route('/reset', methods=['POST'])
@admin_required
@with_storage_retry
def reset_lottery():
    return jsonify(_engine().reset(admin_id=current_user.id))


@lottery.route('/history', methods=['GET'])
@with_storage_retry
def draw_history():
    try:
        limit = min(200, max(1, int(request.args.get('limit', 50))))
        offset = max(0, int(request.args.get('offset', 0)))
    except ValueError:
        return jsonify({'error': 'limit and offset must be integers'}), 400
    payload = _engine().history(limit=limit, offset=offset)
    current = _engine().current_draw()
    payload['current_draw'] = current.to_dict() if current else None
    return jsonify(payload)


@lottery.route('/eligibility', methods=['GET'])
@login_required
@with_storage_retry
def check_eligibility():
    return jsonify(_engine().check_eligibility(current_user.id))


@lottery.route('/config', methods=['GET'])
@admin_required
@with_storage_retry
def get_config():
    engine = _engine()
    payload = engine.state().to_dict()
    payload['pool_size'] = len(engine.pool())
    return jsonify(payload)


@lottery.route('/config', methods=['POST'])
@admin_required
@with_storage_retry(replay_after_commit=True)
def update_config():
    data = request.get_json(silent=True) or {}
    state = _engine().configure(
        exclusion_policy=data.get('exclusion_policy'),
        weighting_enabled=data.get('weighting_enabled'),
        max_weight=data.get('max_weight'),
        clear_max_weight='max_weight' in data and data['max_weight'] is None,
    )
    return jsonify(state.to_dict())
