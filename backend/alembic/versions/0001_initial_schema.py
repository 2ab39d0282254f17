"""initial schema: tenants, assets, render jobs

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

tenant_role = sa.Enum("owner", "admin", "member", name="tenantrole")
brand_role = sa.Enum("manager", "contributor", "viewer", name="brandrole")
render_job_status = sa.Enum(
    "queued", "processing", "completed", "failed", "dead_letter", "skipped", name="renderjobstatus"
)
render_batch_status = sa.Enum("running", "completed", "failed", name="renderbatchstatus")


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        _created_at(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "tenants",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        _created_at(),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "brands",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_brands_tenant_slug"),
    )
    op.create_index("ix_brands_tenant_id", "brands", ["tenant_id"])

    op.create_table(
        "tenant_memberships",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", tenant_role, nullable=False),
        sa.UniqueConstraint("user_id", "tenant_id", name="uq_tenant_memberships_user_tenant"),
    )
    op.create_index("ix_tenant_memberships_user_id", "tenant_memberships", ["user_id"])
    op.create_index("ix_tenant_memberships_tenant_id", "tenant_memberships", ["tenant_id"])

    op.create_table(
        "brand_memberships",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", _uuid(), sa.ForeignKey("brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", brand_role, nullable=False),
        sa.UniqueConstraint("user_id", "brand_id", name="uq_brand_memberships_user_brand"),
    )
    op.create_index("ix_brand_memberships_user_id", "brand_memberships", ["user_id"])
    op.create_index("ix_brand_memberships_brand_id", "brand_memberships", ["brand_id"])

    op.create_table(
        "assets",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("tenant_id", _uuid(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", _uuid(), sa.ForeignKey("brands.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.Column("mime_type", sa.String(length=120), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("storage_root_path", sa.String(length=512), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("pdf_page_count", sa.Integer(), nullable=True),
        sa.Column("pdf_unsupported_large", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pdf_pages_rendered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("full_pdf_extraction_batch_id", _uuid(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_assets_tenant_id", "assets", ["tenant_id"])
    op.create_index("ix_assets_brand_id", "assets", ["brand_id"])

    op.create_table(
        "render_batches",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("asset_id", _uuid(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", render_batch_status, nullable=False, server_default="running"),
        sa.Column("requested_by_user_id", _uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _created_at(),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_render_batches_asset_id", "render_batches", ["asset_id"])
    op.create_index("ix_render_batches_status", "render_batches", ["status"])

    op.create_table(
        "render_jobs",
        sa.Column("id", _uuid(), primary_key=True, nullable=False),
        sa.Column("asset_id", _uuid(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("batch_id", _uuid(), sa.ForeignKey("render_batches.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", render_job_status, nullable=False, server_default="queued"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("storage_key", sa.String(length=512), nullable=True),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_render_jobs_asset_id", "render_jobs", ["asset_id"])
    op.create_index("ix_render_jobs_batch_id", "render_jobs", ["batch_id"])
    op.create_index("ix_render_jobs_status", "render_jobs", ["status"])
    op.create_index("ix_render_jobs_next_retry_at", "render_jobs", ["next_retry_at"])


def downgrade() -> None:
    op.drop_table("render_jobs")
    op.drop_table("render_batches")
    op.drop_table("assets")
    op.drop_table("brand_memberships")
    op.drop_table("tenant_memberships")
    op.drop_table("brands")
    op.drop_table("tenants")
    op.drop_table("users")
    bind = op.get_bind()
    for enum_type in (render_job_status, render_batch_status, brand_role, tenant_role):
        enum_type.drop(bind, checkfirst=True)
