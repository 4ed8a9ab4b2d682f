"""add_refund_gateway_request_id

Revision ID: b7c2e91f4a10
Revises: a3f91c27d5e0
Create Date: 2026-10-19 15:42:37.901144

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7c2e91f4a10'
down_revision: Union[str, Sequence[str], None] = 'a3f91c27d5e0'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column('refund_requests', sa.Column('gateway_request_id', sa.String(length=64), nullable=True))
    op.add_column(
        'refund_requests',
        sa.Column('needs_manual_retry', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_unique_constraint(
        'uq_refund_requests_gateway_request_id', 'refund_requests', ['gateway_request_id']
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_constraint('uq_refund_requests_gateway_request_id', 'refund_requests', type_='unique')
    op.drop_column('refund_requests', 'needs_manual_retry')
    op.drop_column('refund_requests', 'gateway_request_id')
