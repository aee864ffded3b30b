from flask_socketio import join_room, leave_room, emit
from flask import current_app
from flask_login import current_user
from partyhub import socketio
from partyhub.errors import EngineError
from partyhub.services.broadcast import NAMESPACE, ROOM
from partyhub.services.quiz.rounds import get_round_machine


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_join_event(data=None):
    """Join the live event room and catch up.

    Recent envelopes are re-sent on every join; clients dedupe on
    idempotency_key, so a reconnecting phone never misses a round result.
    """
    join_room(ROOM)
    emit('joined', {'room': ROOM})
    emit('state_sync', get_round_machine().snapshot())
    for envelope in current_app.extensions['broadcaster'].recent():
        emit(envelope['event'], envelope)


def handle_leave_event(data=None):
    leave_room(ROOM)
    emit('left', {'room': ROOM})


def handle_ack_round(data):
    """Host display acknowledges a round summary: closed -> idle."""
    round_id = (data or {}).get('round_id')
    if not getattr(current_user, 'is_authenticated', False) or not current_user.is_admin:
        emit('error', {'message': 'Admin only', 'reason': 'forbidden'})
        return
    if not isinstance(round_id, int):
        emit('error', {'message': 'round_id is required'})
        return
    try:
        released = get_round_machine().acknowledge(round_id)
    except EngineError as exc:
        emit('error', exc.to_dict())
        return
    emit('round_released', {'round_id': round_id, 'released': released})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'join_event': handle_join_event,
        'leave_event': handle_leave_event,
        'ack_round': handle_ack_round,
        'ping': handle_ping,
    }
    for name, handler in handlers.items():
        socketio.on_event(name, handler, namespace=NAMESPACE)

    if testing:
        # Test-only mirror on default namespace
        for name, handler in handlers.items():
            socketio.on_event(name, handler, namespace='/')
