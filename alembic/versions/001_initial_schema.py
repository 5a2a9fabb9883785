"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    publishing_mode_enum = sa.Enum("central", "user", name="publishingmode")
    build_platform_enum = sa.Enum("android", "ios", name="buildplatform")
    build_job_status_enum = sa.Enum("queued", "running", "succeeded", "failed", name="buildjobstatus")

    # Apps table (the subset of app configuration the build core reads)
    op.create_table(
        "apps",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False, index=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("website_url", sa.String(512), nullable=False),
        sa.Column("theme_color", sa.String(16), nullable=False, server_default="#2563EB"),
        sa.Column("icon_glyph", sa.String(16), nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("package_name", sa.String(255), nullable=True),
        sa.Column("bundle_id", sa.String(255), nullable=True),
        sa.Column("version_code", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_version_code", sa.Integer(), nullable=True),
        sa.Column("publishing_mode", publishing_mode_enum, nullable=False, server_default="central"),
        sa.Column("artifact_path", sa.String(512), nullable=True),
        sa.Column("artifact_mime", sa.String(128), nullable=True),
        sa.Column("artifact_size", sa.Integer(), nullable=True),
        sa.Column("build_logs", sa.Text(), nullable=True),
        sa.Column("build_error", sa.Text(), nullable=True),
        sa.Column("last_build_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # Build jobs table
    op.create_table(
        "build_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("app_id", sa.String(36), nullable=False, index=True),
        sa.Column("platform", build_platform_enum, nullable=False),
        sa.Column("status", build_job_status_enum, nullable=False, index=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("lock_token", sa.String(128), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("validation_json", sa.JSON(), nullable=True),
        sa.Column("remote_run_id", sa.String(64), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_build_jobs_app_platform", "build_jobs", ["app_id", "platform"])

    # Lock leases table (database lock backend)
    op.create_table(
        "lock_leases",
        sa.Column("name", sa.String(200), primary_key=True),
        sa.Column("token", sa.String(128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )

    # Publisher accounts table
    op.create_table(
        "publisher_accounts",
        sa.Column("owner_id", sa.String(36), primary_key=True),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("connected_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("publisher_accounts")
    op.drop_table("lock_leases")
    op.drop_index("ix_build_jobs_app_platform", table_name="build_jobs")
    op.drop_table("build_jobs")
    op.drop_table("apps")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS buildjobstatus")
    op.execute("DROP TYPE IF EXISTS buildplatform")
    op.execute("DROP TYPE IF EXISTS publishingmode")
