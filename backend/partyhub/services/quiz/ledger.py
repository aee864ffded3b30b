from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from partyhub import db
from partyhub.errors import DeadlineExceeded, DuplicateSubmission, RoundNotOpen, ValidationError
from partyhub.models import Round, Submission
from .scoring import Answer, is_no_answer


def find_by_key(participant_id: int, request_key: Optional[str]) -> Optional[Submission]:
    if not request_key:
        return None
    return Submission.query.filter_by(participant_id=participant_id, request_key=request_key, voided=False).first()


def append(participant_id: int, round_id: int, option: Optional[str], now: float,
           request_key: Optional[str] = None) -> Submission:
    """Record one answer; first write wins.

    Elapsed time is computed from the server clock; anything the client
    reports about timing is ignored.
    """
    rnd = db.session.get(Round, round_id)
    if rnd is None or rnd.status != 'open':
        raise RoundNotOpen(round_id=round_id)
    if now >= rnd.opened_at + rnd.time_limit_sec:
        raise DeadlineExceeded(round_id=round_id, deadline=rnd.deadline_at)

    if is_no_answer(option):
        option = None
    elif option not in rnd.option_list:
        raise ValidationError('Unknown option', option=option)

    submission = Submission(
        participant_id=participant_id,
        round_id=rnd.id,
        option=option,
        submitted_at=now,
        elapsed_sec=round(now - rnd.opened_at, 3),
        request_key=request_key,
    )
    db.session.add(submission)
    try:
        db.session.commit()
    except IntegrityError:
        # The unique (participant, round) constraint is the insert-if-absent primitive
        db.session.rollback()
        current_app.logger.info(f"[answer-duplicate] round={round_id} participant={participant_id}")
        raise DuplicateSubmission(round_id=round_id)

    current_app.logger.info(
        f"[answer] round={round_id} participant={participant_id} option={option} elapsed={submission.elapsed_sec}s"
    )
    return submission


def for_round(round_id: int) -> List[Submission]:
    return (
        Submission.query.filter_by(round_id=round_id, voided=False)
        .order_by(Submission.participant_id)
        .all()
    )


def answers_for_round(round_id: int) -> List[Answer]:
    return [
        Answer(participant_id=s.participant_id, option=s.option, elapsed_sec=s.elapsed_sec)
        for s in for_round(round_id)
    ]


def void_all() -> int:
    """Soft-delete every submission (full administrative reset)."""
    return Submission.query.filter_by(voided=False).update({'voided': True}, synchronize_session=False)
