"""Outbound real-time events.

The engine only knows it emits three event kinds with idempotency keys;
Socket.IO is the current transport. Delivery is at-least-once: recent
envelopes are replayed to clients that (re)join, and subscribers dedupe on
``idempotency_key``.
"""

import time
from collections import deque
from typing import Any, Deque, Dict, List

ROOM = 'event:live'
NAMESPACE = '/ws'

ROUND_OPENED = 'round.opened'
ROUND_CLOSED = 'round.closed'
LOTTERY_DRAWN = 'lottery.drawn'


class EventBroadcaster:
    def __init__(self, socketio, replay_size: int = 20):
        self._socketio = socketio
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=replay_size)

    def emit(self, kind: str, key: str, data: Dict[str, Any]) -> Dict[str, Any]:
        envelope = {
            'event': kind,
            'idempotency_key': key,
            'emitted_at': time.time(),
            'data': data,
        }
        self._recent.append(envelope)
        self._socketio.emit(kind, envelope, to=ROOM, namespace=NAMESPACE)
        return envelope

    def recent(self) -> List[Dict[str, Any]]:
        return list(self._recent)

    def round_opened(self, rnd) -> Dict[str, Any]:
        return self.emit(ROUND_OPENED, f"{ROUND_OPENED}:{rnd.id}", {
            'round_id': rnd.id,
            'deadline': rnd.deadline_at,
            'round': rnd.to_dict(),
        })

    def round_closed(self, rnd, summary: Dict[str, Any]) -> Dict[str, Any]:
        return self.emit(ROUND_CLOSED, f"{ROUND_CLOSED}:{rnd.id}", {
            'round_id': rnd.id,
            'summary': summary,
        })

    def lottery_drawn(self, record) -> Dict[str, Any]:
        return self.emit(LOTTERY_DRAWN, f"{LOTTERY_DRAWN}:{record.id}", {
            'draw_id': record.id,
            'winner': record.winner.to_dict() if record.winner else {'id': record.winner_id},
            'pool_size': record.pool_size,
            'drawn_at': record.drawn_at,
        })
