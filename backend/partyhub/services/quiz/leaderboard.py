"""Running totals and rankings.

Totals are a fold over the score_entry log. ``Participant.score`` is only a
cache of that fold and is rebuilt from the log whenever it drifts.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from partyhub import db
from partyhub.errors import ValidationError
from partyhub.models import Participant, Round, ScoreEntry
from .scoring import ScoreDelta


@dataclass(frozen=True)
class LogEntry:
    seq: int
    participant_id: int
    points: int
    at: float


@dataclass(frozen=True)
class Ranked:
    rank: int
    participant_id: int
    total: int
    reached_at: Optional[float]


class Standings:
    """Incremental totals with a stable ranking.

    Entries must be applied in (at, seq) order. ``reached_at`` is the time the
    participant's current total was first attained, used as the first
    tie-break; participant id breaks any remaining tie.
    """

    def __init__(self) -> None:
        self._totals: Dict[int, int] = {}
        self._reached_at: Dict[int, float] = {}

    def apply(self, participant_id: int, points: int, at: float) -> None:
        if participant_id not in self._totals:
            self._totals[participant_id] = 0
            self._reached_at[participant_id] = at
        if points:
            self._totals[participant_id] += points
            self._reached_at[participant_id] = at

    def total(self, participant_id: int) -> int:
        return self._totals.get(participant_id, 0)

    def totals(self) -> Dict[int, int]:
        return dict(self._totals)

    def rank(self) -> List[Ranked]:
        order = sorted(
            self._totals,
            key=lambda pid: (-self._totals[pid], self._reached_at[pid], pid),
        )
        return [Ranked(i + 1, pid, self._totals[pid], self._reached_at[pid]) for i, pid in enumerate(order)]

    @classmethod
    def from_log(cls, entries: Iterable[LogEntry], as_of: Optional[float] = None) -> 'Standings':
        standings = cls()
        for entry in sorted(entries, key=lambda e: (e.at, e.seq)):
            if as_of is not None and entry.at > as_of:
                continue
            standings.apply(entry.participant_id, entry.points, entry.at)
        return standings


class LeaderboardAggregator:
    """Store-backed aggregator over the score_entry log."""

    def __init__(self, session=None):
        self._session = session or db.session

    def _log(self) -> List[LogEntry]:
        rows = (
            self._session.query(ScoreEntry.id, ScoreEntry.participant_id, ScoreEntry.points, ScoreEntry.created_at)
            .filter(ScoreEntry.voided.is_(False))
            .all()
        )
        return [LogEntry(seq=r[0], participant_id=r[1], points=r[2], at=r[3]) for r in rows]

    def apply_deltas(self, deltas: Sequence[ScoreDelta], at: float) -> List[ScoreEntry]:
        """Append round deltas that are not yet in the log and update cached totals.

        Re-applying the same round is a no-op, which is what makes a replayed
        grading pass safe. The caller owns the commit.
        """
        round_ids = {d.round_id for d in deltas}
        existing = set()
        if round_ids:
            existing = {
                (pid, rid)
                for pid, rid in self._session.query(ScoreEntry.participant_id, ScoreEntry.round_id)
                .filter(ScoreEntry.round_id.in_(round_ids))
                .all()
            }
        applied = []
        for delta in deltas:
            if (delta.participant_id, delta.round_id) in existing:
                continue
            entry = ScoreEntry(
                participant_id=delta.participant_id,
                round_id=delta.round_id,
                points=delta.points,
                outcome=delta.outcome.value,
                kind='round',
                created_at=at,
            )
            self._session.add(entry)
            self._bump_cache(delta.participant_id, delta.points, at)
            applied.append(entry)
        return applied

    def adjust(self, participant_id: int, points: int, admin_id: int, reason: str, at: float,
               request_key: Optional[str] = None) -> ScoreEntry:
        """Append a manual score delta.

        ``request_key`` makes the call idempotent: a second call with the same
        key returns the first entry and leaves the totals alone.
        """
        if isinstance(points, bool) or not isinstance(points, int) or points == 0:
            raise ValidationError('points must be a non-zero integer')
        if not reason or not str(reason).strip():
            raise ValidationError('an adjustment needs a reason')
        if not isinstance(participant_id, int) or self._session.get(Participant, participant_id) is None:
            raise ValidationError('Unknown participant', participant_id=participant_id)
        existing = self._adjustment_for_key(request_key)
        if existing is not None:
            return existing
        entry = ScoreEntry(
            participant_id=participant_id,
            points=points,
            outcome='adjustment',
            kind='adjustment',
            admin_id=admin_id,
            reason=str(reason).strip(),
            created_at=at,
            request_key=request_key,
        )
        self._session.add(entry)
        self._bump_cache(participant_id, points, at)
        try:
            self._session.commit()
        except IntegrityError:
            # Lost a race against the same request; the unique key kept one entry
            self._session.rollback()
            existing = self._adjustment_for_key(request_key)
            if existing is None:
                raise
            return existing
        current_app.logger.info(
            f"[score-adjust] participant={participant_id} points={points} admin={admin_id} reason={entry.reason!r}"
        )
        return entry

    def _adjustment_for_key(self, request_key: Optional[str]) -> Optional[ScoreEntry]:
        if not request_key:
            return None
        return self._session.query(ScoreEntry).filter_by(request_key=request_key).first()

    def _bump_cache(self, participant_id: int, points: int, at: float) -> None:
        participant = self._session.get(Participant, participant_id)
        if participant is None:
            return
        if participant.score_reached_at is None:
            participant.score_reached_at = at
        if points:
            participant.score = (participant.score or 0) + points
            participant.score_reached_at = at

    def standings(self, as_of: Optional[float] = None) -> Standings:
        return Standings.from_log(self._log(), as_of=as_of)

    def rank(self, as_of: Optional[float] = None, limit: Optional[int] = None) -> List[dict]:
        ranked = self.standings(as_of).rank()
        if limit is not None:
            ranked = ranked[:limit]
        names = {
            p.id: p
            for p in self._session.query(Participant).filter(Participant.id.in_([r.participant_id for r in ranked])).all()
        } if ranked else {}
        return [
            {
                'rank': r.rank,
                'participant_id': r.participant_id,
                'display_name': names[r.participant_id].display_name if r.participant_id in names else None,
                'avatar_url': names[r.participant_id].avatar_url if r.participant_id in names else None,
                'total': r.total,
                'reached_at': r.reached_at,
            }
            for r in ranked
        ]

    def cached_totals(self) -> Dict[int, int]:
        rows = (
            self._session.query(Participant.id, Participant.score)
            .filter(or_(Participant.score != 0, Participant.score_reached_at.isnot(None)))
            .all()
        )
        return {pid: score for pid, score in rows}

    def is_consistent(self) -> bool:
        return self.cached_totals() == self.standings().totals()

    def rebuild(self) -> Dict[int, int]:
        """Recompute every cached total from the full log."""
        log = self._log()
        standings = Standings.from_log(log)
        reached = {}
        for entry in sorted(log, key=lambda e: (e.at, e.seq)):
            if entry.participant_id not in reached or entry.points:
                reached[entry.participant_id] = entry.at
        totals = standings.totals()
        for participant in self._session.query(Participant).all():
            participant.score = totals.get(participant.id, 0)
            participant.score_reached_at = reached.get(participant.id)
        self._session.commit()
        current_app.logger.info(f"[leaderboard-rebuild] participants={len(totals)}")
        return totals

    def history(self, participant_id: int, limit: int = 50, offset: int = 0) -> List[dict]:
        entries = (
            self._session.query(ScoreEntry)
            .filter(ScoreEntry.participant_id == participant_id, ScoreEntry.voided.is_(False))
            .order_by(ScoreEntry.created_at.desc(), ScoreEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        history = []
        for entry in entries:
            item = entry.to_dict()
            if entry.round_id is not None:
                rnd = self._session.get(Round, entry.round_id)
                item['question_ref'] = rnd.question_ref if rnd else None
            history.append(item)
        return history

    def reset(self) -> int:
        """Void the whole log and zero the cache. The caller owns the commit."""
        voided = (
            self._session.query(ScoreEntry)
            .filter(ScoreEntry.voided.is_(False))
            .update({'voided': True}, synchronize_session=False)
        )
        self._session.query(Participant).update({'score': 0, 'score_reached_at': None}, synchronize_session=False)
        return voided
