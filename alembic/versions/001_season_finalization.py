"""Season finalization tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TOKEN_AMOUNT = sa.Numeric(precision=78, scale=0)


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE executionstatus AS ENUM ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED')")
    op.execute("CREATE TYPE paymentstatus AS ENUM ('SUBMITTED', 'SUCCEEDED', 'FAILED')")

    # Cached ledger data
    op.create_table('seasons_cache',
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False, comment='Season start'),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False, comment='Season end'),
        sa.Column('total_votes', TOKEN_AMOUNT, nullable=False, comment='Season vote total reported by the ledger'),
        sa.Column('total_voters', sa.Integer(), nullable=False),
        sa.Column('finalized', sa.Boolean(), nullable=False, comment='Season closed on-chain'),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True, comment='Last successful ledger read'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('season_number')
    )

    op.create_table('content_votes_cache',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('content_id', sa.BigInteger(), nullable=False),
        sa.Column('total_votes', TOKEN_AMOUNT, nullable=False),
        sa.Column('voter_count', sa.Integer(), nullable=False),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('season_number', 'content_id', name='uq_content_votes_season_content')
    )
    op.create_index('idx_content_votes_season', 'content_votes_cache', ['season_number'])

    op.create_table('voter_votes_cache',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('content_id', sa.BigInteger(), nullable=False),
        sa.Column('voter_address', sa.String(length=42), nullable=False, comment='Voter wallet address'),
        sa.Column('votes', TOKEN_AMOUNT, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('season_number', 'content_id', 'voter_address', name='uq_voter_votes_season_content_voter')
    )
    op.create_index('idx_voter_votes_season_content', 'voter_votes_cache', ['season_number', 'content_id'])

    # Wizard progress
    op.create_table('wizard_progress',
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('current_step', sa.Integer(), nullable=False, comment='Step the wizard is positioned at (1-5)'),
        sa.Column('steps', sa.JSON(), nullable=False, comment='Full step array with per-step status'),
        sa.Column('step_data', sa.JSON(), nullable=False, comment='Output of completed steps keyed by step name'),
        sa.Column('approved_by', sa.String(length=100), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False, comment='Row version, bumped on every update'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('season_number')
    )

    # Distribution
    op.create_table('execution_progress',
        sa.Column('distribution_id', sa.String(length=64), nullable=False),
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('status', postgresql.ENUM(name='executionstatus', create_type=False), nullable=False),
        sa.Column('total_recipients', sa.Integer(), nullable=False),
        sa.Column('processed', sa.Integer(), nullable=False),
        sa.Column('successful', sa.Integer(), nullable=False),
        sa.Column('failed', sa.Integer(), nullable=False),
        sa.Column('total_amount', TOKEN_AMOUNT, nullable=False),
        sa.Column('distributed_amount', TOKEN_AMOUNT, nullable=False),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('total_batches', sa.Integer(), nullable=False),
        sa.Column('completed_batches', sa.Integer(), nullable=False, comment='Index of the next batch to run'),
        sa.Column('transaction_records', sa.JSON(), nullable=False),
        sa.Column('error_details', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('distribution_id')
    )
    op.create_index('idx_execution_progress_season_status', 'execution_progress', ['season_number', 'status'])

    op.create_table('payment_attempts',
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('distribution_id', sa.String(length=64), nullable=False),
        sa.Column('batch_index', sa.Integer(), nullable=False),
        sa.Column('recipient', sa.String(length=42), nullable=False),
        sa.Column('amount', TOKEN_AMOUNT, nullable=False),
        sa.Column('status', postgresql.ENUM(name='paymentstatus', create_type=False), nullable=False),
        sa.Column('reference', sa.String(length=100), nullable=True, comment='Transaction hash or transport reference'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('idempotency_key')
    )
    op.create_index('idx_payment_attempts_distribution', 'payment_attempts', ['distribution_id', 'batch_index'])

    # Finalized snapshots
    op.create_table('finalized_seasons',
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_votes', TOKEN_AMOUNT, nullable=False),
        sa.Column('total_content', sa.Integer(), nullable=False),
        sa.Column('snapshot_hash', sa.String(length=64), nullable=False, comment='SHA-256 of ordered content_id:rank:votes triples'),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('rewards_distributed', sa.Boolean(), nullable=False),
        sa.Column('distribution_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('season_number')
    )

    op.create_table('finalized_leaderboard_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('season_number', sa.Integer(), nullable=False),
        sa.Column('content_id', sa.BigInteger(), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('total_votes', TOKEN_AMOUNT, nullable=False),
        sa.Column('percentage_of_total', sa.Float(), nullable=False),
        sa.Column('creator_address', sa.String(length=42), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=True),
        sa.ForeignKeyConstraint(['season_number'], ['finalized_seasons.season_number'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('season_number', 'rank', name='uq_finalized_entries_season_rank'),
        sa.UniqueConstraint('season_number', 'content_id', name='uq_finalized_entries_season_content')
    )
    op.create_index('idx_finalized_entries_season', 'finalized_leaderboard_entries', ['season_number'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('idx_finalized_entries_season', table_name='finalized_leaderboard_entries')
    op.drop_index('idx_payment_attempts_distribution', table_name='payment_attempts')
    op.drop_index('idx_execution_progress_season_status', table_name='execution_progress')
    op.drop_index('idx_voter_votes_season_content', table_name='voter_votes_cache')
    op.drop_index('idx_content_votes_season', table_name='content_votes_cache')

    # Drop tables
    op.drop_table('finalized_leaderboard_entries')
    op.drop_table('finalized_seasons')
    op.drop_table('payment_attempts')
    op.drop_table('execution_progress')
    op.drop_table('wizard_progress')
    op.drop_table('voter_votes_cache')
    op.drop_table('content_votes_cache')
    op.drop_table('seasons_cache')

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS executionstatus")
