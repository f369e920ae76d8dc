"""Tenancy schema: principals, organisations, projects, memberships, invitations, audit, RLS.

Revision ID: 0001_tenancy_schema
Revises:
Create Date: 2026-09-01 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from tenantgate.authz import policy_sql

revision: str = "0001_tenancy_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid(name: str, *args, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # -----------------------------------------------------------------------
    # 1. Principals and tenants
    # -----------------------------------------------------------------------

    op.create_table(
        "users",
        _uuid("id", primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("system_role", sa.Text(), nullable=False, server_default="user"),
        sa.Column("password_hash", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("system_role IN ('system_admin', 'user')", name="ck_users_system_role"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "organisations",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organisations_name", "organisations", ["name"])
    op.create_index("ix_organisations_slug", "organisations", ["slug"], unique=True)

    op.create_table(
        "org_memberships",
        _uuid("id", primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=False),
        _uuid("org_id", sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("role", sa.Text(), nullable=False, server_default="member"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("invited_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_org_memberships_role"),
    )
    op.create_index("ix_org_memberships_user_id", "org_memberships", ["user_id"])
    op.create_index("ix_org_memberships_org_id", "org_memberships", ["org_id"])
    op.create_index(
        "uq_org_memberships_active", "org_memberships", ["user_id", "org_id"],
        unique=True, postgresql_where=sa.text("is_active"),
    )

    # -----------------------------------------------------------------------
    # 2. Projects and project teams
    # -----------------------------------------------------------------------

    op.create_table(
        "projects",
        _uuid("id", primary_key=True),
        _uuid("org_id", sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("reference", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        _uuid("created_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_projects_org_id", "projects", ["org_id"])
    op.create_index(
        "uq_projects_org_reference", "projects", ["org_id", "reference"],
        unique=True, postgresql_where=sa.text("NOT is_deleted"),
    )

    op.create_table(
        "project_memberships",
        _uuid("id", primary_key=True),
        _uuid("user_id", sa.ForeignKey("users.id"), nullable=False),
        _uuid("project_id", sa.ForeignKey("projects.id"), nullable=False),
        _uuid("org_id", sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("role", sa.Text(), nullable=False, server_default="viewer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        _uuid("added_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "role IN ('admin', 'supplier_pm', 'customer_pm', 'contributor', 'viewer')",
            name="ck_project_memberships_role",
        ),
    )
    op.create_index("ix_project_memberships_user_id", "project_memberships", ["user_id"])
    op.create_index("ix_project_memberships_project_id", "project_memberships", ["project_id"])
    op.create_index("ix_project_memberships_org_id", "project_memberships", ["org_id"])
    op.create_index(
        "uq_project_memberships_active", "project_memberships", ["user_id", "project_id"],
        unique=True, postgresql_where=sa.text("is_active"),
    )

    # -----------------------------------------------------------------------
    # 3. Invitations and audit
    # -----------------------------------------------------------------------

    op.create_table(
        "org_invitations",
        _uuid("id", primary_key=True),
        _uuid("org_id", sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False, server_default="member"),
        sa.Column("token", sa.Text(), nullable=False, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("project_assignments", postgresql.JSONB(), nullable=False, server_default="[]"),
        _uuid("invited_by", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        _uuid("accepted_by", sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_org_invitations_org_id", "org_invitations", ["org_id"])
    op.create_index("ix_org_invitations_email", "org_invitations", ["email"])
    op.create_index("ix_org_invitations_token", "org_invitations", ["token"], unique=True)
    op.create_index(
        "uq_org_invitations_pending_email", "org_invitations", ["org_id", "email"],
        unique=True, postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "audit_log",
        _uuid("id", primary_key=True),
        _uuid("org_id", sa.ForeignKey("organisations.id"), nullable=True),
        _uuid("project_id", sa.ForeignKey("projects.id"), nullable=True),
        _uuid("actor_id", sa.ForeignKey("users.id"), nullable=True),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("target_type", sa.Text(), nullable=True),
        _uuid("target_id", nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("impersonating", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_audit_log_org_id", "audit_log", ["org_id"])
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])

    # -----------------------------------------------------------------------
    # 4. Decision procedure, membership triggers and row-level security
    # -----------------------------------------------------------------------

    for statement in policy_sql.render_all():
        op.execute(statement)


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    for statement in policy_sql.render_drop_all():
        op.execute(statement)

    for table in (
        "audit_log",
        "org_invitations",
        "project_memberships",
        "projects",
        "org_memberships",
        "organisations",
        "users",
    ):
        op.drop_table(table)
