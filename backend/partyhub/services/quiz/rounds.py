"""Round lifecycle: idle -> armed -> open -> grading -> closed -> idle.

A single ``RoundStateMachine`` per app owns every transition. Transitions
and ledger appends are serialized through its lock; the store provides the
atomic primitives (conditional status UPDATE, unique submission key).
"""

import json
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import update

from partyhub import db
from partyhub.errors import (
    ConflictError,
    ConflictingRound,
    EngineBusy,
    InvariantViolation,
    RoundNotOpen,
    ValidationError,
)
from partyhub.models import Participant, Round, Submission
from . import ledger
from .leaderboard import LeaderboardAggregator
from .scoring import RoundConfig, grade, summarize, validate_round_config
from .timer import Clock

LIVE_STATUSES = ('open', 'grading')


def get_round_machine() -> 'RoundStateMachine':
    return current_app.extensions['round_machine']


class RoundStateMachine:
    def __init__(self, broadcaster, timer, clock: Optional[Clock] = None, app=None):
        self.broadcaster = broadcaster
        self.timer = timer
        self.clock = clock or Clock()
        self._lock = threading.RLock()
        self._lock_timeout = 5.0
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self._lock_timeout = float(app.config.get('ENGINE_LOCK_TIMEOUT_SEC', 5))
        app.extensions['round_machine'] = self

    @contextmanager
    def _owner(self):
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise EngineBusy()
        try:
            yield
        finally:
            self._lock.release()

    def _now(self, now: Optional[float]) -> float:
        return self.clock.now() if now is None else now

    # ---- Queries ----

    def current_round(self) -> Optional[Round]:
        return Round.query.filter_by(status='open').order_by(Round.opened_at.desc()).first()

    def pending_round(self) -> Optional[Round]:
        return Round.query.filter_by(status='armed').order_by(Round.id.desc()).first()

    def state(self) -> str:
        if Round.query.filter_by(status='open').count():
            return 'open'
        if Round.query.filter_by(status='grading').count():
            return 'grading'
        if Round.query.filter(Round.status == 'closed', Round.released_at.is_(None)).count():
            return 'closed'
        if Round.query.filter_by(status='armed').count():
            return 'armed'
        return 'idle'

    def snapshot(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self._now(now)
        current = self.current_round()
        latest = current or Round.query.filter(Round.status != 'armed').order_by(Round.id.desc()).first()
        pending = self.pending_round()
        payload = {
            'state': self.state(),
            'server_time': now,
            'round': latest.to_dict() if latest else None,
            'pending_round_id': pending.id if pending else None,
            'remaining_sec': None,
        }
        if current is not None:
            payload['remaining_sec'] = max(0.0, round(current.deadline_at - now, 3))
        return payload

    def statistics(self, round_id: int) -> Dict[str, Any]:
        rnd = db.get_or_404(Round, round_id)
        if rnd.status == 'closed':
            return rnd.summary_dict or {}
        counts: Dict[str, int] = {option: 0 for option in rnd.option_list}
        no_answer = 0
        for submission in ledger.for_round(rnd.id):
            if submission.option is None:
                no_answer += 1
            else:
                counts[submission.option] = counts.get(submission.option, 0) + 1
        # Correctness stays hidden until grading
        return {
            'round_id': rnd.id,
            'status': rnd.status,
            'total_submissions': sum(counts.values()) + no_answer,
            'option_counts': counts,
            'no_answer_count': no_answer,
        }

    # ---- Transitions ----

    def arm(self, data: Dict[str, Any], now: Optional[float] = None) -> Round:
        cfg = current_app.config
        config = validate_round_config(
            data,
            int(cfg.get('ROUND_MIN_TIME_LIMIT_SEC', 5)),
            int(cfg.get('ROUND_MAX_TIME_LIMIT_SEC', 300)),
        )
        now = self._now(now)
        with self._owner():
            # Only one pending round; an unopened one is simply replaced
            discarded = Round.query.filter_by(status='armed').delete(synchronize_session=False)
            rnd = Round(
                question_ref=config.question_ref,
                options=json.dumps(list(config.options)),
                correct_option=config.correct_option,
                base_score=config.base_score,
                penalty_enabled=config.penalty.is_enabled,
                penalty_score=config.penalty.amount,
                timeout_penalty_enabled=config.timeout_penalty.is_enabled,
                timeout_penalty_score=config.timeout_penalty.amount,
                time_limit_sec=config.time_limit_sec,
                status='armed',
                armed_at=now,
            )
            db.session.add(rnd)
            db.session.commit()
        current_app.logger.info(
            f"[round-arm] round={rnd.id} question={rnd.question_ref} limit={rnd.time_limit_sec}s discarded={discarded}"
        )
        return rnd

    def open(self, now: Optional[float] = None) -> Round:
        now = self._now(now)
        with self._owner():
            if self.current_round() is not None:
                raise ConflictingRound()
            rnd = self.pending_round()
            if rnd is None:
                raise ConflictError('No round is armed')
            claimed = db.session.execute(
                update(Round)
                .where(Round.id == rnd.id, Round.status == 'armed')
                .values(status='open', opened_at=now, deadline_at=now + rnd.time_limit_sec)
            ).rowcount
            db.session.commit()
            if not claimed:
                raise ConflictError('Round was not armed', round_id=rnd.id)
            open_count = Round.query.filter_by(status='open').count()
            if open_count > 1:
                raise InvariantViolation('more than one round is open', open_rounds=open_count)
            db.session.refresh(rnd)
        current_app.logger.info(f"[round-open] round={rnd.id} deadline={rnd.deadline_at}")
        self.broadcaster.round_opened(rnd)
        self.timer.schedule_deadline(
            current_app._get_current_object(), rnd.id, rnd.deadline_at - now, self.fire_deadline
        )
        return rnd

    def submit(self, participant_id: int, option: Optional[str], now: Optional[float] = None,
               round_id: Optional[int] = None, request_key: Optional[str] = None) -> Submission:
        now = self._now(now)
        with self._owner():
            # A repeated request returns the answer it already recorded
            existing = ledger.find_by_key(participant_id, request_key)
            if existing is not None:
                return existing
            rnd = self.current_round()
            if rnd is None or (round_id is not None and round_id != rnd.id):
                raise RoundNotOpen(round_id=round_id)
            return ledger.append(participant_id, rnd.id, option, now, request_key=request_key)

    def close(self, round_id: Optional[int] = None, reason: str = 'admin',
              now: Optional[float] = None) -> Dict[str, Any]:
        """Close a round and grade it. A second close of the same round is a no-op."""
        now = self._now(now)
        with self._owner():
            if round_id is None:
                current = self.current_round()
                if current is None:
                    raise RoundNotOpen()
                round_id = current.id
            claimed = db.session.execute(
                update(Round)
                .where(Round.id == round_id, Round.status == 'open')
                .values(status='grading', closed_at=now, close_reason=reason)
            ).rowcount
            db.session.commit()
            rnd = db.session.get(Round, round_id)
            if rnd is None:
                raise RoundNotOpen(round_id=round_id)
            db.session.refresh(rnd)
            if not claimed:
                if rnd.status == 'closed':
                    current_app.logger.info(f"[round-close-noop] round={round_id} trigger={reason} already closed")
                    return rnd.summary_dict or {}
                if rnd.status != 'grading':
                    raise RoundNotOpen(round_id=round_id)
                # Status 'grading' under the owner lock means an earlier pass died midway
                current_app.logger.warning(f"[round-regrade] round={round_id} trigger={reason}")
            return self._grade(rnd)

    def _eligible_ids(self, closed_at: float) -> List[int]:
        rows = (
            db.session.query(Participant.id)
            .filter(
                Participant.is_playing.is_(True),
                Participant.is_admin.is_(False),
                Participant.created_at <= closed_at,
            )
            .all()
        )
        return [r[0] for r in rows]

    def _grade(self, rnd: Round) -> Dict[str, Any]:
        try:
            config = RoundConfig.from_round(rnd)
            answers = ledger.answers_for_round(rnd.id)
            deltas = grade(config, answers, self._eligible_ids(rnd.closed_at))
            board = LeaderboardAggregator()
            board.apply_deltas(deltas, at=rnd.closed_at)
            summary = summarize(config, answers, deltas)
            summary['close_reason'] = rnd.close_reason
            summary['leaderboard'] = board.rank(limit=10)
            rnd.summary = json.dumps(summary)
            rnd.status = 'closed'
            db.session.commit()
        except Exception:
            # Leave the round in 'grading'; the same pass can be re-run safely
            db.session.rollback()
            current_app.logger.exception(f"[round-grade-failed] round={rnd.id}")
            raise
        current_app.logger.info(
            f"[round-closed] round={rnd.id} reason={rnd.close_reason} deltas={len(deltas)} submissions={len(answers)}"
        )
        self.broadcaster.round_closed(rnd, summary)
        self.timer.schedule_release(
            current_app._get_current_object(),
            rnd.id,
            float(current_app.config.get('ROUND_SUMMARY_GRACE_SEC', 10)),
            self.release,
        )
        return summary

    def fire_deadline(self, round_id: int) -> Optional[Dict[str, Any]]:
        rnd = db.session.get(Round, round_id)
        if rnd is None or rnd.status not in LIVE_STATUSES + ('closed',):
            current_app.logger.info(f"[timer-abort] round={round_id} not live")
            return None
        return self.close(round_id, reason='deadline')

    def release(self, round_id: int, now: Optional[float] = None) -> bool:
        """closed -> idle, on acknowledgement or after the grace period."""
        now = self._now(now)
        with self._owner():
            released = db.session.execute(
                update(Round)
                .where(Round.id == round_id, Round.status == 'closed', Round.released_at.is_(None))
                .values(released_at=now)
            ).rowcount
            db.session.commit()
        if released:
            current_app.logger.info(f"[round-release] round={round_id}")
        return bool(released)

    def acknowledge(self, round_id: int, now: Optional[float] = None) -> bool:
        rnd = db.session.get(Round, round_id)
        if rnd is None:
            raise ValidationError('Unknown round', round_id=round_id)
        if rnd.status != 'closed':
            raise ConflictError('Round summary is not ready', round_id=round_id, status=rnd.status)
        return self.release(round_id, now)

    def tick(self, now: Optional[float] = None) -> List[int]:
        """Close open rounds whose deadline passed and release stale summaries."""
        now = self._now(now)
        closed = []
        expired = Round.query.filter(Round.status == 'open', Round.deadline_at <= now).all()
        for rnd in expired:
            self.close(rnd.id, reason='deadline', now=now)
            closed.append(rnd.id)
        grace = float(current_app.config.get('ROUND_SUMMARY_GRACE_SEC', 10))
        stale = Round.query.filter(
            Round.status == 'closed', Round.released_at.is_(None), Round.closed_at <= now - grace
        ).all()
        for rnd in stale:
            self.release(rnd.id, now)
        return closed

    def recover(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Consistency re-check: recompute round status from the ledger."""
        now = self._now(now)
        report: Dict[str, Any] = {'regraded': [], 'closed': [], 'released': [], 'errors': [], 'rebuilt': False}
        with self._owner():
            for rnd in Round.query.filter_by(status='grading').all():
                try:
                    self.close(rnd.id, reason='recovery', now=now)
                    report['regraded'].append(rnd.id)
                except Exception as exc:
                    report['errors'].append({'round_id': rnd.id, 'error': str(exc)})

            open_rounds = Round.query.filter_by(status='open').order_by(Round.opened_at.desc(), Round.id.desc()).all()
            # Keep only the newest open round, and only if it is still within its deadline
            for index, rnd in enumerate(open_rounds):
                if index == 0 and rnd.deadline_at > now:
                    continue
                try:
                    self.close(rnd.id, reason='recovery' if index else 'deadline', now=now)
                    report['closed'].append(rnd.id)
                except Exception as exc:
                    report['errors'].append({'round_id': rnd.id, 'error': str(exc)})

            grace = float(current_app.config.get('ROUND_SUMMARY_GRACE_SEC', 10))
            for rnd in Round.query.filter(
                Round.status == 'closed', Round.released_at.is_(None), Round.closed_at <= now - grace
            ).all():
                if self.release(rnd.id, now):
                    report['released'].append(rnd.id)

            board = LeaderboardAggregator()
            if not board.is_consistent():
                board.rebuild()
                report['rebuilt'] = True
        current_app.logger.warning(f"[engine-recheck] {report}")
        return report

    def reset_scores(self, admin_id: Optional[int] = None, now: Optional[float] = None) -> Dict[str, int]:
        now = self._now(now)
        with self._owner():
            if Round.query.filter(Round.status.in_(LIVE_STATUSES)).count():
                raise ConflictingRound('Cannot reset scores while a round is live')
            submissions = ledger.void_all()
            entries = LeaderboardAggregator().reset()
            db.session.commit()
        current_app.logger.warning(
            f"[scores-reset] admin={admin_id} submissions_voided={submissions} entries_voided={entries}"
        )
        return {'submissions_voided': submissions, 'entries_voided': entries}
