from functools import wraps

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_user, logout_user, login_required, current_user
from partyhub import db
from partyhub.identity import get_identity_provider
from partyhub.models import Participant
from partyhub.storage import with_storage_retry

main = Blueprint('main', __name__)


def admin_required(view):
    @wraps(view)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Admin only', 'reason': 'forbidden'}), 403
        return view(*args, **kwargs)
    return wrapper


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the PartyHub live event server!'})

@main.route('/auth/login', methods=['POST'])
@with_storage_retry(replay_after_commit=True)
def login():
    """Exchange an identity-provider auth code for a participant session."""
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code:
        return jsonify({'error': 'Auth code is required'}), 400

    identity = get_identity_provider().exchange(code)
    participant = Participant.query.filter_by(external_id=identity.external_id).first()
    created = participant is None
    if created:
        participant = Participant(external_id=identity.external_id, display_name=identity.display_name)
    participant.display_name = identity.display_name
    participant.avatar_url = identity.avatar_url
    db.session.add(participant)
    db.session.commit()

    login_user(participant, remember=True)
    current_app.logger.info(f"[login] participant={participant.id} new={created}")
    return jsonify(participant.to_dict()), 201 if created else 200

@main.route('/auth/admin/login', methods=['POST'])
@with_storage_retry
def admin_login():
    data = request.get_json(silent=True) or {}
    admin = Participant.query.filter_by(display_name=data.get('username'), is_admin=True).first()
    if admin and admin.check_password(data.get('password') or ''):
        login_user(admin, remember=True)
        current_app.logger.info(f"[admin-login] admin={admin.id}")
        return jsonify(admin.to_dict())
    return jsonify({'error': 'Invalid username or password'}), 401

@main.route('/auth/me')
@login_required
def me():
    return jsonify(current_user.to_dict())

@main.route('/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out successfully.'})
