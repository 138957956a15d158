"""Create image optimization tables."""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_create_image_optimization_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "image_optimization_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("url", sa.String(length=2000), nullable=False),
        sa.Column("format", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("secret", sa.String(length=32), nullable=True),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("job_id", sa.String(length=255), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "modified_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("postponed_until", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_image_optimization_jobs_url_format", "image_optimization_jobs", ["url", "format"])
    op.create_index("ix_image_optimization_jobs_status", "image_optimization_jobs", ["status"])
    op.create_index("ix_image_optimization_jobs_job_id", "image_optimization_jobs", ["job_id"])

    op.create_table(
        "image_optimization_control_state",
        sa.Column("key", sa.String(length=191), primary_key=True),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )


def downgrade() -> None:
    op.drop_table("image_optimization_control_state")
    op.drop_index("ix_image_optimization_jobs_job_id", table_name="image_optimization_jobs")
    op.drop_index("ix_image_optimization_jobs_status", table_name="image_optimization_jobs")
    op.drop_index("ix_image_optimization_jobs_url_format", table_name="image_optimization_jobs")
    op.drop_table("image_optimization_jobs")
