from sqlalchemy import Column, String, DateTime, Float, Integer, Text, UniqueConstraint, Index
from sqlalchemy.sql import func

from docsync.models_sqlalchemy import Base


class Tenant(Base):
    """Managed customer account on the Workato workspace."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=False)
    # String form of id, used as the tenant key everywhere else.
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    external_id = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=False)

    remote_created_at = Column(String(64), nullable=True)
    remote_updated_at = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Project(Base):
    __tablename__ = "projects"

    tenant_id = Column(String(64), primary_key=True)
    id = Column(Integer, primary_key=True, autoincrement=False)
    folder_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Recipe(Base):
    """Latest fetched state of a recipe. Identity is (tenant_id, id)."""

    __tablename__ = "recipes"
    __table_args__ = (
        Index("idx_recipes_tenant_project", "tenant_id", "project_id"),
    )

    tenant_id = Column(String(64), primary_key=True)
    id = Column(Integer, primary_key=True, autoincrement=False)
    project_id = Column(Integer, nullable=True)
    folder_id = Column(Integer, nullable=True)
    name = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    # Full API payload as JSON text.
    raw_json = Column(Text, nullable=False)

    remote_created_at = Column(String(64), nullable=True)
    remote_updated_at = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class RecipeSnapshot(Base):
    """Content hash committed after the recipe's project was published.

    One row per recipe; the row is replaced on every successful publish.
    """

    __tablename__ = "recipe_snapshots"
    __table_args__ = (
        UniqueConstraint("recipe_id", name="uq_recipe_snapshots_recipe"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipe_id = Column(Integer, nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    content_hash = Column(String(80), nullable=False)
    raw_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DocumentationRecord(Base):
    """Last published documentation of a project, or of a single recipe.

    Project documentation has ``recipe_id`` NULL; recipe documentation may
    carry both ids.
    """

    __tablename__ = "documentation"
    __table_args__ = (
        Index("idx_documentation_tenant_project", "tenant_id", "project_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    project_id = Column(Integer, nullable=True)
    recipe_id = Column(Integer, nullable=True, index=True)
    content_md = Column(Text, nullable=False)
    content_html = Column(Text, nullable=True)
    # 1-5 from quality assessment; NULL when not assessed.
    quality_score = Column(Float, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SyncRun(Base):
    """One execution of the documentation pipeline."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(String(32), nullable=False, index=True)  # running, completed, partial, error, stale
    phase = Column(String(32), nullable=False)  # STARTED, FETCHING, ... FINISHED

    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True, index=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    tenants_processed = Column(Integer, nullable=False, server_default="0")
    recipes_fetched = Column(Integer, nullable=False, server_default="0")
    recipes_changed = Column(Integer, nullable=False, server_default="0")
    recipes_documented = Column(Integer, nullable=False, server_default="0")

    errors = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)


class SyncLease(Base):
    """Single-row claim serialising pipeline runs.

    ``run_id`` is the run currently holding the lease, or NULL when free.
    """

    __tablename__ = "sync_lease"

    name = Column(String(64), primary_key=True)
    run_id = Column(Integer, nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
