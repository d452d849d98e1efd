"""Add documentation table with quality score

Revision ID: docsync_documentation_20261016
Revises: docsync_initial_schema_20261016
Create Date: 2026-10-16
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "docsync_documentation_20261016"
down_revision: Union[str, Sequence[str], None] = "docsync_initial_schema_20261016"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "documentation",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("recipe_id", sa.Integer(), nullable=True),
        sa.Column("content_md", sa.Text(), nullable=False),
        sa.Column("content_html", sa.Text(), nullable=True),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_documentation_tenant_project", "documentation", ["tenant_id", "project_id"])
    op.create_index("ix_documentation_recipe_id", "documentation", ["recipe_id"])


def downgrade() -> None:
    op.drop_index("ix_documentation_recipe_id", table_name="documentation")
    op.drop_index("idx_documentation_tenant_project", table_name="documentation")
    op.drop_table("documentation")
