from partyhub import db, bcrypt
from flask_login import UserMixin
import json
import time


class Participant(UserMixin, db.Model):
    __tablename__ = 'participant'
    id = db.Column(db.Integer, primary_key=True)
    # Opaque id handed out by the identity provider; admins may have none
    external_id = db.Column(db.String(128), unique=True, nullable=True, index=True)
    display_name = db.Column(db.String(128), nullable=False)
    avatar_url = db.Column(db.String(512), nullable=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    password_hash = db.Column(db.String(256), nullable=True)
    is_playing = db.Column(db.Boolean, default=True, nullable=False)
    # Cached running total, always re-derivable from score_entry
    score = db.Column(db.Integer, default=0, nullable=False)
    score_reached_at = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.Float, default=time.time, nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        if not self.password_hash:
            return False
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'display_name': self.display_name,
            'avatar_url': self.avatar_url,
            'is_admin': self.is_admin,
            'score': self.score,
        }


class Round(db.Model):
    __tablename__ = 'round'
    id = db.Column(db.Integer, primary_key=True)
    question_ref = db.Column(db.String(128), nullable=False)
    options = db.Column(db.Text, nullable=False)  # JSON-encoded list of option labels
    correct_option = db.Column(db.String(64), nullable=False)
    base_score = db.Column(db.Integer, nullable=False)
    penalty_enabled = db.Column(db.Boolean, default=False, nullable=False)
    penalty_score = db.Column(db.Integer, nullable=True)
    timeout_penalty_enabled = db.Column(db.Boolean, default=False, nullable=False)
    timeout_penalty_score = db.Column(db.Integer, nullable=True)
    time_limit_sec = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), default='armed', nullable=False, index=True)  # armed, open, grading, closed
    armed_at = db.Column(db.Float, nullable=False)
    opened_at = db.Column(db.Float, nullable=True)
    deadline_at = db.Column(db.Float, nullable=True)
    closed_at = db.Column(db.Float, nullable=True)
    close_reason = db.Column(db.String(16), nullable=True)  # deadline, admin, recovery
    released_at = db.Column(db.Float, nullable=True)
    summary = db.Column(db.Text, nullable=True)  # JSON-encoded round summary

    submissions = db.relationship('Submission', back_populates='round', lazy='dynamic')

    @property
    def option_list(self):
        return json.loads(self.options) if self.options else []

    @property
    def summary_dict(self):
        return json.loads(self.summary) if self.summary else None

    def to_dict(self, reveal=False):
        payload = {
            'id': self.id,
            'question_ref': self.question_ref,
            'options': self.option_list,
            'base_score': self.base_score,
            'time_limit_sec': self.time_limit_sec,
            'status': self.status,
            'opened_at': self.opened_at,
            'deadline': self.deadline_at,
            'closed_at': self.closed_at,
            'close_reason': self.close_reason,
        }
        # The answer stays hidden until the round has been graded
        if reveal or self.status == 'closed':
            payload['correct_option'] = self.correct_option
            payload['summary'] = self.summary_dict
        return payload


class Submission(db.Model):
    __tablename__ = 'submission'
    __table_args__ = (
        db.UniqueConstraint('participant_id', 'round_id', name='uq_submission_participant_round'),
    )
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False, index=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=False, index=True)
    option = db.Column(db.String(64), nullable=True)  # NULL means "no answer"
    submitted_at = db.Column(db.Float, nullable=False)
    elapsed_sec = db.Column(db.Float, nullable=False)
    voided = db.Column(db.Boolean, default=False, nullable=False)
    # Idempotency key of the request that wrote the row
    request_key = db.Column(db.String(64), nullable=True, index=True)

    participant = db.relationship('Participant')
    round = db.relationship('Round', back_populates='submissions')

    def to_dict(self):
        return {
            'id': self.id,
            'participant_id': self.participant_id,
            'round_id': self.round_id,
            'option': self.option,
            'submitted_at': self.submitted_at,
            'elapsed_sec': self.elapsed_sec,
        }


class ScoreEntry(db.Model):
    """One persisted score delta: a graded round outcome or an admin adjustment."""
    __tablename__ = 'score_entry'
    __table_args__ = (
        db.UniqueConstraint('participant_id', 'round_id', name='uq_score_entry_participant_round'),
    )
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False, index=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=True)
    points = db.Column(db.Integer, nullable=False)
    outcome = db.Column(db.String(16), nullable=False)
    kind = db.Column(db.String(16), default='round', nullable=False)  # round, adjustment
    admin_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.Float, nullable=False, index=True)
    voided = db.Column(db.Boolean, default=False, nullable=False)
    request_key = db.Column(db.String(64), unique=True, nullable=True)

    round = db.relationship('Round')

    def to_dict(self):
        return {
            'id': self.id,
            'participant_id': self.participant_id,
            'round_id': self.round_id,
            'points': self.points,
            'outcome': self.outcome,
            'kind': self.kind,
            'admin_id': self.admin_id,
            'reason': self.reason,
            'created_at': self.created_at,
        }


class ContentItem(db.Model):
    """Externally managed media; only its visibility matters to the lottery."""
    __tablename__ = 'content_item'
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False, index=True)
    is_public = db.Column(db.Boolean, default=True, nullable=False)
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.Float, default=time.time, nullable=False)


class LotteryState(db.Model):
    __tablename__ = 'lottery_state'
    id = db.Column(db.Integer, primary_key=True)
    exclusion_policy = db.Column(db.String(16), default='all_time', nullable=False)  # all_time, current, none
    weighting_enabled = db.Column(db.Boolean, default=False, nullable=False)
    max_weight = db.Column(db.Integer, nullable=True)
    epoch = db.Column(db.Integer, default=0, nullable=False)
    current_draw_id = db.Column(db.Integer, db.ForeignKey('draw_record.id', name='fk_lottery_state_current_draw_id', use_alter=True), nullable=True)
    updated_at = db.Column(db.Float, default=time.time, nullable=False)

    def to_dict(self):
        return {
            'exclusion_policy': self.exclusion_policy,
            'weighting_enabled': self.weighting_enabled,
            'max_weight': self.max_weight,
            'epoch': self.epoch,
            'current_draw_id': self.current_draw_id,
        }


class LotteryExclusion(db.Model):
    __tablename__ = 'lottery_exclusion'
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False, unique=True)
    draw_id = db.Column(db.Integer, db.ForeignKey('draw_record.id'), nullable=False)
    epoch = db.Column(db.Integer, nullable=False)
    added_at = db.Column(db.Float, nullable=False)


class DrawRecord(db.Model):
    __tablename__ = 'draw_record'
    id = db.Column(db.Integer, primary_key=True)
    sequence = db.Column(db.Integer, unique=True, nullable=False)
    epoch = db.Column(db.Integer, nullable=False)
    winner_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False, index=True)
    drawn_at = db.Column(db.Float, nullable=False)
    rng_seed = db.Column(db.String(64), nullable=False)
    weighted = db.Column(db.Boolean, default=False, nullable=False)
    pool_size = db.Column(db.Integer, nullable=False)
    pool_snapshot = db.Column(db.Text, nullable=False)  # JSON-encoded list of pool entries
    draw_key = db.Column(db.String(64), unique=True, nullable=True)
    admin_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    winner = db.relationship('Participant')

    def to_dict(self, include_pool=False):
        payload = {
            'id': self.id,
            'sequence': self.sequence,
            'epoch': self.epoch,
            'winner': self.winner.to_dict() if self.winner else {'id': self.winner_id},
            'drawn_at': self.drawn_at,
            'weighted': self.weighted,
            'pool_size': self.pool_size,
            'admin_id': self.admin_id,
            'notes': self.notes,
        }
        if include_pool:
            payload['pool'] = json.loads(self.pool_snapshot)
            payload['rng_seed'] = self.rng_seed
        return payload
