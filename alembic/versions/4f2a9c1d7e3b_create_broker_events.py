"""create_broker_events

Revision ID: 4f2a9c1d7e3b
Revises:
Create Date: 2026-10-18 09:12:41.302118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f2a9c1d7e3b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the broker event audit table"""
    op.create_table(
        'broker_events',
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('request_id', sa.String(length=66), nullable=True),
        sa.Column('agreement_id', sa.String(length=66), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index('ix_broker_events_event_id', 'broker_events', ['event_id'])
    op.create_index('ix_broker_events_event_type', 'broker_events', ['event_type'])
    op.create_index('ix_broker_events_request_id', 'broker_events', ['request_id'])
    op.create_index('ix_broker_events_agreement_id', 'broker_events', ['agreement_id'])
    op.create_index('ix_broker_events_correlation_id', 'broker_events', ['correlation_id'])


def downgrade() -> None:
    """Drop the broker event audit table"""
    op.drop_index('ix_broker_events_correlation_id', table_name='broker_events')
    op.drop_index('ix_broker_events_agreement_id', table_name='broker_events')
    op.drop_index('ix_broker_events_request_id', table_name='broker_events')
    op.drop_index('ix_broker_events_event_type', table_name='broker_events')
    op.drop_index('ix_broker_events_event_id', table_name='broker_events')
    op.drop_table('broker_events')
