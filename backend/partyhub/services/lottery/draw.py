"""Fair lottery draws over the participants eligible at draw time.

A draw snapshots the pool, picks with a seeded generator and stores both the
seed and the pool on the DrawRecord, so any past draw can be re-derived.
"""

import json
import random
import secrets
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from partyhub.errors import DrawConflict, EmptyPoolError, ValidationError
from partyhub.models import ContentItem, DrawRecord, LotteryExclusion, LotteryState, Participant

EXCLUSION_POLICIES = ('all_time', 'current', 'none')


@dataclass(frozen=True)
class EligibilityFact:
    participant_id: int
    content_count: int


@dataclass(frozen=True)
class PoolEntry:
    participant_id: int
    content_count: int
    weight: int

    def to_dict(self):
        return {
            'participant_id': self.participant_id,
            'content_count': self.content_count,
            'weight': self.weight,
        }


@dataclass
class DrawOutcome:
    record: DrawRecord
    pool: List[PoolEntry]
    # True when a committed draw was returned for a repeated draw_key
    replayed: bool = False


def eligible_pool(facts: Iterable[EligibilityFact], excluded: Iterable[int] = (),
                  weighted: bool = False, max_weight: Optional[int] = None) -> List[PoolEntry]:
    """Build the pool from content facts, ordered by participant id.

    Weight is 1 per entrant, or the content count (capped at ``max_weight``)
    in weighted mode.
    """
    blocked = set(excluded)
    pool = []
    for fact in facts:
        if fact.content_count < 1 or fact.participant_id in blocked:
            continue
        weight = 1
        if weighted:
            weight = fact.content_count if not max_weight else min(fact.content_count, max_weight)
        pool.append(PoolEntry(fact.participant_id, fact.content_count, weight))
    return sorted(pool, key=lambda e: e.participant_id)


def pick_winner(pool: Sequence[PoolEntry], seed: str, weighted: bool = False) -> PoolEntry:
    """Same pool and seed always pick the same winner."""
    if not pool:
        raise EmptyPoolError()
    entries = sorted(pool, key=lambda e: e.participant_id)
    rng = random.Random(seed)
    if weighted:
        return rng.choices(entries, weights=[e.weight for e in entries], k=1)[0]
    return rng.choice(entries)


class LotteryEngine:
    def __init__(self, session, broadcaster=None):
        self._session = session
        self._broadcaster = broadcaster

    # --- state and configuration ---

    def state(self) -> LotteryState:
        """The single lottery state row, created from config defaults on first use."""
        state = self._session.get(LotteryState, 1)
        if state is None:
            cfg = current_app.config
            state = LotteryState(
                id=1,
                exclusion_policy=cfg.get('LOTTERY_EXCLUSION_POLICY', 'all_time'),
                weighting_enabled=bool(cfg.get('LOTTERY_WEIGHTING_ENABLED', False)),
                max_weight=cfg.get('LOTTERY_MAX_WEIGHT') or None,
                epoch=0,
                updated_at=time.time(),
            )
            self._session.add(state)
            self._session.commit()
        return state

    def configure(self, exclusion_policy: Optional[str] = None, weighting_enabled: Optional[bool] = None,
                  max_weight: Optional[int] = None, clear_max_weight: bool = False) -> LotteryState:
        """Update the draw policy.

        A policy change does not rewrite the current exclusion set; it only
        governs how later draws update it. ``max_weight=0`` removes the cap.
        """
        state = self.state()
        if exclusion_policy is not None:
            if exclusion_policy not in EXCLUSION_POLICIES:
                raise ValidationError('Unknown exclusion policy', allowed=list(EXCLUSION_POLICIES))
            state.exclusion_policy = exclusion_policy
        if weighting_enabled is not None:
            if not isinstance(weighting_enabled, bool):
                raise ValidationError('weighting_enabled must be a boolean')
            state.weighting_enabled = weighting_enabled
        if clear_max_weight:
            state.max_weight = None
        elif max_weight is not None:
            if isinstance(max_weight, bool) or not isinstance(max_weight, int) or max_weight < 0:
                raise ValidationError('max_weight must be a non-negative integer')
            state.max_weight = max_weight or None
        state.updated_at = time.time()
        self._session.commit()
        current_app.logger.info(f"[lottery-config] {state.to_dict()}")
        return state

    # --- eligibility ---

    def eligibility_facts(self) -> List[EligibilityFact]:
        # Recomputed on every call; content visibility changes outside the engine
        rows = (
            self._session.query(ContentItem.participant_id, func.count(ContentItem.id))
            .join(Participant, Participant.id == ContentItem.participant_id)
            .filter(ContentItem.is_public.is_(True), ContentItem.is_deleted.is_(False))
            .group_by(ContentItem.participant_id)
            .all()
        )
        return [EligibilityFact(pid, count) for pid, count in rows]

    def exclusion_set(self) -> Set[int]:
        return {row[0] for row in self._session.query(LotteryExclusion.participant_id).all()}

    def pool(self) -> List[PoolEntry]:
        state = self.state()
        return eligible_pool(self.eligibility_facts(), self.exclusion_set(),
                             weighted=state.weighting_enabled, max_weight=state.max_weight)

    def check_eligibility(self, participant_id: int) -> dict:
        count = (
            self._session.query(func.count(ContentItem.id))
            .filter(
                ContentItem.participant_id == participant_id,
                ContentItem.is_public.is_(True),
                ContentItem.is_deleted.is_(False),
            )
            .scalar()
        ) or 0
        excluded = participant_id in self.exclusion_set()
        reason = None
        if count < 1:
            reason = 'no_public_content'
        elif excluded:
            reason = 'already_won'
        return {
            'participant_id': participant_id,
            'content_count': count,
            'excluded': excluded,
            'eligible': reason is None,
            'reason': reason,
        }

    # --- draws ---

    def current_draw(self) -> Optional[DrawRecord]:
        state = self.state()
        if state.current_draw_id is not None:
            return self._session.get(DrawRecord, state.current_draw_id)
        return None

    def draw(self, seed: Optional[str] = None, draw_key: Optional[str] = None, admin_id: Optional[int] = None,
             notes: Optional[str] = None, now: Optional[float] = None) -> DrawOutcome:
        """Pick one winner and commit the draw.

        The record, the exclusion update and the current-draw pointer go in
        one transaction. Repeating a ``draw_key`` returns the committed draw
        instead of picking again. A seed is generated when none is given.
        """
        if draw_key:
            existing = self._session.query(DrawRecord).filter_by(draw_key=draw_key).first()
            if existing is not None:
                return self._replay(existing)

        now = time.time() if now is None else now
        state = self.state()
        facts = self.eligibility_facts()
        excluded = self.exclusion_set()
        pool = eligible_pool(facts, excluded, weighted=state.weighting_enabled, max_weight=state.max_weight)
        if not pool:
            current_app.logger.info(f"[lottery-empty] eligible={len(facts)} excluded={len(excluded)}")
            raise EmptyPoolError(eligible=len(facts), excluded=len(excluded))

        seed = str(seed) if seed is not None else secrets.token_hex(16)
        winner = pick_winner(pool, seed, weighted=state.weighting_enabled)
        last_sequence = self._session.query(func.max(DrawRecord.sequence)).scalar() or 0

        record = DrawRecord(
            sequence=last_sequence + 1,
            epoch=state.epoch,
            winner_id=winner.participant_id,
            drawn_at=now,
            rng_seed=seed,
            weighted=state.weighting_enabled,
            pool_size=len(pool),
            pool_snapshot=json.dumps([e.to_dict() for e in pool]),
            draw_key=draw_key,
            admin_id=admin_id,
            notes=notes,
        )
        try:
            self._session.add(record)
            self._session.flush()
            self._apply_exclusion(state, record, now)
            state.current_draw_id = record.id
            state.updated_at = now
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            if draw_key:
                existing = self._session.query(DrawRecord).filter_by(draw_key=draw_key).first()
                if existing is not None:
                    return self._replay(existing)
            raise DrawConflict()

        total_weight = sum(e.weight for e in pool)
        current_app.logger.info(
            f"[lottery-draw] draw={record.id} seq={record.sequence} winner={winner.participant_id} "
            f"pool={len(pool)} weight={winner.weight}/{total_weight} policy={state.exclusion_policy}"
        )
        if self._broadcaster is not None:
            self._broadcaster.lottery_drawn(record)
        return DrawOutcome(record=record, pool=pool)

    def _apply_exclusion(self, state, record, now):
        if state.exclusion_policy == 'none':
            return
        if state.exclusion_policy == 'current':
            self._session.query(LotteryExclusion).delete(synchronize_session=False)
        self._session.add(LotteryExclusion(
            participant_id=record.winner_id,
            draw_id=record.id,
            epoch=record.epoch,
            added_at=now,
        ))

    def _replay(self, record):
        current_app.logger.info(f"[lottery-replay] draw={record.id} key={record.draw_key}")
        pool = [PoolEntry(**entry) for entry in json.loads(record.pool_snapshot)]
        if self._broadcaster is not None:
            # Same idempotency key as the original event
            self._broadcaster.lottery_drawn(record)
        return DrawOutcome(record=record, pool=pool, replayed=True)

    def reset(self, admin_id: Optional[int] = None, now: Optional[float] = None) -> dict:
        """Clear the exclusion set. DrawRecords are permanent."""
        now = time.time() if now is None else now
        state = self.state()
        cleared = self._session.query(LotteryExclusion).delete(synchronize_session=False)
        state.epoch += 1
        state.current_draw_id = None
        state.updated_at = now
        self._session.commit()
        current_app.logger.warning(f"[lottery-reset] admin={admin_id} cleared={cleared} epoch={state.epoch}")
        return {'cleared': cleared, 'epoch': state.epoch}

    def history(self, limit: int = 50, offset: int = 0) -> dict:
        query = self._session.query(DrawRecord)
        total = query.count()
        records = query.order_by(DrawRecord.sequence.desc()).offset(offset).limit(limit).all()
        return {
            'history': [r.to_dict() for r in records],
            'total': total,
            'limit': limit,
            'offset': offset,
            'has_more': total > offset + limit,
        }
