"""Initial schema for the CapMesh metadata store

Revision ID: 20261019_000000
Revises: None
Create Date: 2026-10-19 00:00:00.000000

Creates the linker tables:
- Capability definitions and capability providers
- Provider performance samples
- Audit events
- Round-robin rotation pointers
- File metadata

Structured columns are stored as JSON text so the schema is portable between
PostgreSQL and SQLite.

Revision format: YYYYMMDD_HHMMSS_description

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all linker tables."""

    op.create_table(
        "cm_capabilities",
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("alternatives", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
        sa.Index("ix_cm_capabilities_category", "category"),
    )

    op.create_table(
        "cm_capability_providers",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("capability_name", sa.String(256), nullable=False),
        sa.Column("provider_files", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("interface_spec", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("compatible_with", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("depends_on", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("stability_rating", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("performance_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("lazy_init", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_capacity", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_cm_capability_providers_capability_name", "capability_name"),
        sa.Index("ix_cm_capability_providers_status", "status"),
    )

    op.create_table(
        "cm_provider_performance",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("response_time_ms", sa.Float(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_cm_provider_performance_provider_id", "provider_id"),
        sa.Index("ix_cm_provider_performance_recorded_at", "recorded_at"),
    )

    op.create_table(
        "cm_audit_events",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_cm_audit_events_kind", "kind"),
        sa.Index("ix_cm_audit_events_created_at", "created_at"),
    )

    op.create_table(
        "cm_rotation_pointers",
        sa.Column("capability", sa.String(256), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("capability"),
    )

    op.create_table(
        "cm_files",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("file_id", sa.String(256), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("client_id", sa.String(128), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_cm_files_file_id", "file_id"),
        sa.Index("ix_cm_files_client_id", "client_id"),
    )


def downgrade() -> None:
    """Drop all tables created in upgrade."""
    op.drop_table("cm_files")
    op.drop_table("cm_rotation_pointers")
    op.drop_table("cm_audit_events")
    op.drop_table("cm_provider_performance")
    op.drop_table("cm_capability_providers")
    op.drop_table("cm_capabilities")
