"""create participant, round, submission, score_entry, content and lottery tables

Revision ID: 3c9a7e21b0d4
Revises:
Create Date: 2025-10-02 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c9a7e21b0d4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'participant' not in existing_tables:
        op.create_table(
            'participant',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('external_id', sa.String(length=128), nullable=True),
            sa.Column('display_name', sa.String(length=128), nullable=False),
            sa.Column('avatar_url', sa.String(length=512), nullable=True),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('password_hash', sa.String(length=256), nullable=True),
            sa.Column('is_playing', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('score_reached_at', sa.Float(), nullable=True),
            sa.Column('created_at', sa.Float(), nullable=False),
        )
        op.create_index('ix_participant_external_id', 'participant', ['external_id'], unique=True)

    if 'round' not in existing_tables:
        op.create_table(
            'round',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('question_ref', sa.String(length=128), nullable=False),
            sa.Column('options', sa.Text(), nullable=False),
            sa.Column('correct_option', sa.String(length=64), nullable=False),
            sa.Column('base_score', sa.Integer(), nullable=False),
            sa.Column('penalty_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('penalty_score', sa.Integer(), nullable=True),
            sa.Column('timeout_penalty_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('timeout_penalty_score', sa.Integer(), nullable=True),
            sa.Column('time_limit_sec', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='armed'),
            sa.Column('armed_at', sa.Float(), nullable=False),
            sa.Column('opened_at', sa.Float(), nullable=True),
            sa.Column('deadline_at', sa.Float(), nullable=True),
            sa.Column('closed_at', sa.Float(), nullable=True),
            sa.Column('close_reason', sa.String(length=16), nullable=True),
            sa.Column('released_at', sa.Float(), nullable=True),
            sa.Column('summary', sa.Text(), nullable=True),
        )
        op.create_index('ix_round_status', 'round', ['status'])

    if 'submission' not in existing_tables:
        op.create_table(
            'submission',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('participant_id', sa.Integer(), sa.ForeignKey('participant.id'), nullable=False),
            sa.Column('round_id', sa.Integer(), sa.ForeignKey('round.id'), nullable=False),
            sa.Column('option', sa.String(length=64), nullable=True),
            sa.Column('submitted_at', sa.Float(), nullable=False),
            sa.Column('elapsed_sec', sa.Float(), nullable=False),
            sa.Column('voided', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint('participant_id', 'round_id', name='uq_submission_participant_round'),
        )
        op.create_index('ix_submission_participant_id', 'submission', ['participant_id'])
        op.create_index('ix_submission_round_id', 'submission', ['round_id'])

    if 'score_entry' not in existing_tables:
        op.create_table(
            'score_entry',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('participant_id', sa.Integer(), sa.ForeignKey('participant.id'), nullable=False),
            sa.Column('round_id', sa.Integer(), sa.ForeignKey('round.id'), nullable=True),
            sa.Column('points', sa.Integer(), nullable=False),
            sa.Column('outcome', sa.String(length=16), nullable=False),
            sa.Column('kind', sa.String(length=16), nullable=False, server_default='round'),
            sa.Column('admin_id', sa.Integer(), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.Float(), nullable=False),
            sa.Column('voided', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint('participant_id', 'round_id', name='uq_score_entry_participant_round'),
        )
        op.create_index('ix_score_entry_participant_id', 'score_entry', ['participant_id'])
        op.create_index('ix_score_entry_created_at', 'score_entry', ['created_at'])

    if 'content_item' not in existing_tables:
        op.create_table(
            'content_item',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('participant_id', sa.Integer(), sa.ForeignKey('participant.id'), nullable=False),
            sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.Float(), nullable=False),
        )
        op.create_index('ix_content_item_participant_id', 'content_item', ['participant_id'])

    if 'draw_record' not in existing_tables:
        op.create_table(
            'draw_record',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('sequence', sa.Integer(), nullable=False, unique=True),
            sa.Column('epoch', sa.Integer(), nullable=False),
            sa.Column('winner_id', sa.Integer(), sa.ForeignKey('participant.id'), nullable=False),
            sa.Column('drawn_at', sa.Float(), nullable=False),
            sa.Column('rng_seed', sa.String(length=64), nullable=False),
            sa.Column('weighted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('pool_size', sa.Integer(), nullable=False),
            sa.Column('pool_snapshot', sa.Text(), nullable=False),
            sa.Column('draw_key', sa.String(length=64), nullable=True, unique=True),
            sa.Column('admin_id', sa.Integer(), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
        )
        op.create_index('ix_draw_record_winner_id', 'draw_record', ['winner_id'])

    if 'lottery_state' not in existing_tables:
        op.create_table(
            'lottery_state',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('exclusion_policy', sa.String(length=16), nullable=False, server_default='all_time'),
            sa.Column('weighting_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('max_weight', sa.Integer(), nullable=True),
            sa.Column('epoch', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('current_draw_id', sa.Integer(),
                      sa.ForeignKey('draw_record.id', name='fk_lottery_state_current_draw_id'), nullable=True),
            sa.Column('updated_at', sa.Float(), nullable=False),
        )

    if 'lottery_exclusion' not in existing_tables:
        op.create_table(
            'lottery_exclusion',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('participant_id', sa.Integer(), sa.ForeignKey('participant.id'), nullable=False, unique=True),
            sa.Column('draw_id', sa.Integer(), sa.ForeignKey('draw_record.id'), nullable=False),
            sa.Column('epoch', sa.Integer(), nullable=False),
            sa.Column('added_at', sa.Float(), nullable=False),
        )


def downgrade():
    for table in (
        'lottery_exclusion',
        'lottery_state',
        'draw_record',
        'content_item',
        'score_entry',
        'submission',
        'round',
        'participant',
    ):
        op.drop_table(table)
