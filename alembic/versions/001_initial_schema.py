"""
Initial database schema: subscriptions, runs.

Revision ID: 001
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    """Create initial tables."""
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("access_key", sa.String(64), nullable=False),
        sa.Column("institution_key", sa.String(50), nullable=False),
        sa.Column("course_key", sa.String(50), nullable=False),
        sa.Column("section_key", sa.String(50), nullable=True),
        sa.Column("term_key", sa.String(20), nullable=False),
        sa.Column("contact", sa.String(255), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        # weak pointer to runs.id, kept consistent by the store (no FK, avoids a table cycle)
        sa.Column("last_run_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_access_key", "subscriptions", ["access_key"], unique=True)
    op.create_index("ix_subscriptions_enabled", "subscriptions", ["enabled"])

    op.create_table(
        "runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("source_data", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("notification_sent", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_runs_subscription_id", "runs", ["subscription_id"])
    op.create_index("ix_runs_timestamp", "runs", ["timestamp"])

def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_runs_timestamp", table_name="runs")
    op.drop_index("ix_runs_subscription_id", table_name="runs")
    op.drop_table("runs")
    op.drop_index("ix_subscriptions_enabled", table_name="subscriptions")
    op.drop_index("ix_subscriptions_access_key", table_name="subscriptions")
    op.drop_table("subscriptions")
