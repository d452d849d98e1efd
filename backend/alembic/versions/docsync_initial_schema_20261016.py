"""Create catalog, snapshot and sync run tables

Revision ID: docsync_initial_schema_20261016
Revises:
Create Date: 2026-10-16
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "docsync_initial_schema_20261016"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("remote_created_at", sa.String(length=64), nullable=True),
        sa.Column("remote_updated_at", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_tenant_id", "tenants", ["tenant_id"], unique=True)
    op.create_index("ix_tenants_external_id", "tenants", ["external_id"])

    op.create_table(
        "projects",
        sa.Column("tenant_id", sa.String(length=64), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("folder_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "recipes",
        sa.Column("tenant_id", sa.String(length=64), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("folder_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("raw_json", sa.Text(), nullable=False),
        sa.Column("remote_created_at", sa.String(length=64), nullable=True),
        sa.Column("remote_updated_at", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_recipes_tenant_project", "recipes", ["tenant_id", "project_id"])

    op.create_table(
        "recipe_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("recipe_id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("content_hash", sa.String(length=80), nullable=False),
        sa.Column("raw_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("recipe_id", name="uq_recipe_snapshots_recipe"),
    )
    op.create_index("ix_recipe_snapshots_recipe_id", "recipe_snapshots", ["recipe_id"])
    op.create_index("ix_recipe_snapshots_tenant_id", "recipe_snapshots", ["tenant_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tenants_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recipes_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recipes_changed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recipes_documented", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])
    op.create_index("ix_sync_runs_finished_at", "sync_runs", ["finished_at"])

    op.create_table(
        "sync_lease",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("sync_lease")
    op.drop_index("ix_sync_runs_finished_at", table_name="sync_runs")
    op.drop_index("ix_sync_runs_status", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_recipe_snapshots_tenant_id", table_name="recipe_snapshots")
    op.drop_index("ix_recipe_snapshots_recipe_id", table_name="recipe_snapshots")
    op.drop_table("recipe_snapshots")
    op.drop_index("idx_recipes_tenant_project", table_name="recipes")
    op.drop_table("recipes")
    op.drop_table("projects")
    op.drop_index("ix_tenants_external_id", table_name="tenants")
    op.drop_index("ix_tenants_tenant_id", table_name="tenants")
    op.drop_table("tenants")
