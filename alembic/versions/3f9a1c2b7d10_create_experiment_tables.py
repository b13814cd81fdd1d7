"""create_experiment_tables

Revision ID: 3f9a1c2b7d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9a1c2b7d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create experiments, experiment_assignments and interaction_events."""
    experiment_status = postgresql.ENUM(
        'draft', 'active', 'paused', 'completed', name='experiment_status', create_type=False
    )
    experiment_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'experiments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('experiment_type', sa.String(64), nullable=True),
        sa.Column('status', experiment_status, nullable=False, server_default='draft'),
        sa.Column('variants', postgresql.JSONB(), nullable=False),
        sa.Column('targeting_rules', postgresql.JSONB(), nullable=True),
        sa.Column('primary_metric', sa.String(64), nullable=False),
        sa.Column('secondary_metrics', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('min_sample_size', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('confidence_level', sa.Float(), nullable=False, server_default='0.95'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('results', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('name', name='uq_experiments_name'),
        sa.CheckConstraint(
            "(status = 'completed') = (results IS NOT NULL)",
            name='ck_experiments_results_iff_completed',
        ),
    )
    op.create_index('ix_experiments_status', 'experiments', ['status'])
    op.create_index('ix_experiments_status_created', 'experiments', ['status', 'created_at'])

    op.create_table(
        'experiment_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'experiment_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('experiments.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('variant', sa.String(100), nullable=False),
        sa.Column('request_metadata', postgresql.JSONB(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            '(user_id IS NULL) <> (session_id IS NULL)',
            name='ck_assignments_single_unit',
        ),
    )
    # Scoped uniqueness: one assignment per (experiment, user) and per (experiment, session)
    op.create_index(
        'uq_assignments_experiment_user',
        'experiment_assignments',
        ['experiment_id', 'user_id'],
        unique=True,
        postgresql_where=sa.text('user_id IS NOT NULL'),
    )
    op.create_index(
        'uq_assignments_experiment_session',
        'experiment_assignments',
        ['experiment_id', 'session_id'],
        unique=True,
        postgresql_where=sa.text('session_id IS NOT NULL'),
    )
    op.create_index(
        'ix_assignments_experiment_variant', 'experiment_assignments', ['experiment_id', 'variant']
    )

    op.create_table(
        'interaction_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_kind', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('product_id', sa.String(255), nullable=True),
        sa.Column('seller_id', sa.String(255), nullable=True),
        sa.Column('addon_id', sa.String(255), nullable=True),
        sa.Column('properties', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_events_kind_created', 'interaction_events', ['event_kind', 'created_at'])
    op.create_index(
        'ix_events_product_kind_created',
        'interaction_events',
        ['product_id', 'event_kind', 'created_at'],
    )
    op.create_index(
        'ix_events_seller_kind_created',
        'interaction_events',
        ['seller_id', 'event_kind', 'created_at'],
    )
    op.create_index('ix_events_user_created', 'interaction_events', ['user_id', 'created_at'])
    op.create_index('ix_events_created', 'interaction_events', ['created_at'])


def downgrade() -> None:
    """Drop all experiment and event tables."""
    op.drop_table('interaction_events')
    op.drop_table('experiment_assignments')
    op.drop_table('experiments')
    sa.Enum(name='experiment_status').drop(op.get_bind(), checkfirst=True)
