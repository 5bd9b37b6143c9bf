"""Remember which expected log a missed-log strike covers

Revision ID: 0002_missed_log_expected_at
Revises: 0001_initial
Create Date: 2026-10-17 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_missed_log_expected_at"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "strikes",
        sa.Column("missed_log_expected_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_strikes_missed_log_session",
        "strikes",
        ["user_id", "session_id", "missed_log_expected_at"],
        unique=False,
        postgresql_where=sa.text("reason = 'missed_hourly_log'"),
    )


def downgrade() -> None:
    op.drop_index("ix_strikes_missed_log_session", table_name="strikes")
    op.drop_column("strikes", "missed_log_expected_at")
