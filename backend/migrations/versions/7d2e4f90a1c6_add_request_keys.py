"""add request_key to submission and score_entry

Revision ID: 7d2e4f90a1c6
Revises: 3c9a7e21b0d4
Create Date: 2025-10-14 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7d2e4f90a1c6'
down_revision = '3c9a7e21b0d4'
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    cols = {c['name'] for c in insp.get_columns('submission')}
    with op.batch_alter_table('submission') as batch_op:
        if 'request_key' not in cols:
            batch_op.add_column(sa.Column('request_key', sa.String(length=64), nullable=True))
            batch_op.create_index('ix_submission_request_key', ['request_key'])
    cols = {c['name'] for c in insp.get_columns('score_entry')}
    with op.batch_alter_table('score_entry') as batch_op:
        if 'request_key' not in cols:
            batch_op.add_column(sa.Column('request_key', sa.String(length=64), nullable=True))
            batch_op.create_unique_constraint('uq_score_entry_request_key', ['request_key'])


def downgrade():
    with op.batch_alter_table('score_entry') as batch_op:
        batch_op.drop_constraint('uq_score_entry_request_key', type_='unique')
        batch_op.drop_column('request_key')
    with op.batch_alter_table('submission') as batch_op:
        batch_op.drop_index('ix_submission_request_key')
        batch_op.drop_column('request_key')
