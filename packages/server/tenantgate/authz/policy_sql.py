"""
PostgreSQL row-level security generated from the shared permission tables.

``render_all()`` returns the statements the migration executes: helper
functions, ``tg_decide`` (the decision procedure in PL/pgSQL, with its grant
rows rendered from ``ORG_TABLE`` / ``PROJECT_TABLE``), membership triggers and
policies for the core tables. Entity services register their own tables with
``render_entity_policies``.

Policies bind every database role except the table owner, so the service
must connect as a non-owner role; the SECURITY DEFINER helpers run as the
owner and read the membership tables unfiltered. The calling principal is
taken from the ``app.current_user_id`` setting (see
``tenantgate.core.database.set_rls_principal``).
"""

from __future__ import annotations

from typing import Optional

from tenantgate_shared.permissions import (
    ORG_ADMIN_ROLES,
    ORG_TABLE,
    PROJECT_TABLE,
    iter_allowed_triples,
)
from tenantgate_shared.schemas.common import (
    OrgAction,
    OrgResource,
    ProjectAction,
    ProjectListing,
    ProjectResource,
)

HELPER_FUNCTIONS = (
    "tg_current_user_id()",
    "tg_current_user_email()",
    "tg_is_system_admin()",
    "tg_org_role(uuid)",
    "tg_project_available(uuid, uuid)",
    "tg_project_role(uuid, uuid)",
    "tg_org_has_members(uuid)",
    "tg_has_pending_invitation(uuid)",
    "tg_invited_to_project(uuid)",
    "tg_decide(uuid, uuid, text, text)",
)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_list(values) -> str:
    return ", ".join(_quote(v) for v in sorted(values))


def _values_rows(triples) -> str:
    rows = sorted(triples)
    return ",\n        ".join(f"({_quote(r)}, {_quote(a)}, {_quote(role)})" for r, a, role in rows)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def render_helper_functions() -> list[str]:
    return [
        """
CREATE OR REPLACE FUNCTION tg_current_user_id() RETURNS uuid
LANGUAGE sql STABLE AS $$
  SELECT NULLIF(current_setting('app.current_user_id', true), '')::uuid
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_current_user_email() RETURNS text
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT lower(email) FROM users WHERE id = tg_current_user_id()
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_is_system_admin() RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT EXISTS (
    SELECT 1 FROM users
    WHERE id = tg_current_user_id() AND system_role = 'system_admin'
  )
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_org_role(p_org_id uuid) RETURNS text
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT m.role
  FROM org_memberships m
  JOIN organisations o ON o.id = m.org_id
  WHERE m.user_id = tg_current_user_id()
    AND m.org_id = p_org_id
    AND m.is_active
    AND o.is_active
    AND NOT o.is_deleted
  LIMIT 1
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_project_available(p_org_id uuid, p_project_id uuid) RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT EXISTS (
    SELECT 1 FROM projects p
    WHERE p.id = p_project_id AND p.org_id = p_org_id AND NOT p.is_deleted
  )
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_project_role(p_org_id uuid, p_project_id uuid) RETURNS text
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT pm.role
  FROM project_memberships pm
  JOIN projects p ON p.id = pm.project_id
  WHERE pm.user_id = tg_current_user_id()
    AND pm.project_id = p_project_id
    AND pm.is_active
    AND p.org_id = p_org_id
    AND NOT p.is_deleted
  LIMIT 1
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_org_has_members(p_org_id uuid) RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT EXISTS (SELECT 1 FROM org_memberships WHERE org_id = p_org_id AND is_active)
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_has_pending_invitation(p_org_id uuid) RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT EXISTS (
    SELECT 1 FROM org_invitations
    WHERE org_id = p_org_id
      AND lower(email) = tg_current_user_email()
      AND status IN ('pending', 'accepted')
  )
$$;
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_invited_to_project(p_project_id uuid) RETURNS boolean
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
  SELECT EXISTS (
    SELECT 1 FROM org_invitations
    WHERE lower(email) = tg_current_user_email()
      AND status IN ('pending', 'accepted')
      AND project_assignments @> jsonb_build_array(
            jsonb_build_object('project_id', p_project_id::text))
  )
$$;
""".strip(),
    ]


def render_decide_function() -> str:
    """``tg_decide(org, project, resource, action)``: the decision procedure in PL/pgSQL."""
    org_resources = _in_list(r.value for r in OrgResource)
    admin_roles = _in_list(r.value for r in ORG_ADMIN_ROLES)
    org_rows = _values_rows(iter_allowed_triples(ORG_TABLE))
    project_rows = _values_rows(iter_allowed_triples(PROJECT_TABLE))
    return f"""
CREATE OR REPLACE FUNCTION tg_decide(
  p_org_id uuid, p_project_id uuid, p_resource text, p_action text
) RETURNS boolean
LANGUAGE plpgsql STABLE SECURITY DEFINER SET search_path = public AS $$
DECLARE
  v_org_role text;
  v_project_role text;
BEGIN
  IF tg_is_system_admin() THEN
    RETURN TRUE;
  END IF;

  v_org_role := tg_org_role(p_org_id);
  IF v_org_role IS NULL THEN
    RETURN FALSE;
  END IF;

  IF p_resource IN ({org_resources}) THEN
    RETURN EXISTS (
      SELECT 1 FROM (VALUES
        {org_rows}
      ) AS g(resource, action, role)
      WHERE g.resource = p_resource AND g.action = p_action AND g.role = v_org_role
    );
  END IF;

  IF p_resource = {_quote(ProjectListing.PROJECT.value)} THEN
    IF p_action <> {_quote(ProjectAction.VIEW.value)}
       OR NOT tg_project_available(p_org_id, p_project_id) THEN
      RETURN FALSE;
    END IF;
    RETURN v_org_role IN ({admin_roles})
        OR tg_project_role(p_org_id, p_project_id) IS NOT NULL;
  END IF;

  v_project_role := tg_project_role(p_org_id, p_project_id);
  IF v_project_role IS NULL THEN
    RETURN FALSE;
  END IF;

  RETURN EXISTS (
    SELECT 1 FROM (VALUES
        {project_rows}
    ) AS g(resource, action, role)
    WHERE g.resource = p_resource AND g.action = p_action AND g.role = v_project_role
  );
END
$$;
""".strip()


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

def render_triggers() -> list[str]:
    return [
        """
CREATE OR REPLACE FUNCTION tg_require_org_membership() RETURNS trigger
LANGUAGE plpgsql SECURITY DEFINER SET search_path = public AS $$
DECLARE
  v_org_id uuid;
BEGIN
  IF NOT NEW.is_active THEN
    RETURN NEW;
  END IF;
  SELECT org_id INTO v_org_id FROM projects WHERE id = NEW.project_id;
  IF v_org_id IS NULL THEN
    RAISE EXCEPTION 'project % does not exist', NEW.project_id
      USING ERRCODE = 'foreign_key_violation';
  END IF;
  IF NEW.org_id IS DISTINCT FROM v_org_id THEN
    RAISE EXCEPTION 'project membership org_id must match the project''s organisation'
      USING ERRCODE = 'check_violation';
  END IF;
  PERFORM 1 FROM org_memberships
    WHERE user_id = NEW.user_id AND org_id = v_org_id AND is_active
    FOR SHARE;
  IF NOT FOUND THEN
    RAISE EXCEPTION 'user % has no active membership in organisation %', NEW.user_id, v_org_id
      USING ERRCODE = 'check_violation';
  END IF;
  RETURN NEW;
END
$$;
""".strip(),
        "DROP TRIGGER IF EXISTS trg_project_memberships_require_org ON project_memberships;",
        """
CREATE TRIGGER trg_project_memberships_require_org
  BEFORE INSERT OR UPDATE OF is_active, user_id, project_id, org_id ON project_memberships
  FOR EACH ROW EXECUTE FUNCTION tg_require_org_membership();
""".strip(),
        """
CREATE OR REPLACE FUNCTION tg_project_org_immutable() RETURNS trigger
LANGUAGE plpgsql AS $$
BEGIN
  IF NEW.org_id IS DISTINCT FROM OLD.org_id THEN
    RAISE EXCEPTION 'a project cannot move to another organisation'
      USING ERRCODE = 'check_violation';
  END IF;
  RETURN NEW;
END
$$;
""".strip(),
        "DROP TRIGGER IF EXISTS trg_projects_org_immutable ON projects;",
        """
CREATE TRIGGER trg_projects_org_immutable
  BEFORE UPDATE OF org_id ON projects
  FOR EACH ROW EXECUTE FUNCTION tg_project_org_immutable();
""".strip(),
    ]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def _policy(
    table: str,
    name: str,
    command: str,
    using: Optional[str] = None,
    check: Optional[str] = None,
) -> list[str]:
    parts = [f"CREATE POLICY {name} ON {table} FOR {command}"]
    if using is not None:
        parts.append(f"USING ({using})")
    if check is not None:
        parts.append(f"WITH CHECK ({check})")
    return [f"DROP POLICY IF EXISTS {name} ON {table};", "\n  ".join(parts) + ";"]


def _decide(org: str, project: str, resource, action) -> str:
    return f"tg_decide({org}, {project}, {_quote(resource.value)}, {_quote(action.value)})"


def _enable(table: str) -> str:
    return f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;"


def render_core_policies() -> list[str]:
    me = "tg_current_user_id()"
    statements: list[str] = []

    # organisations
    t = "organisations"
    statements.append(_enable(t))
    statements += _policy(t, "organisations_select", "SELECT",
                          using=_decide("id", "NULL", OrgResource.ORGANISATION, OrgAction.VIEW))
    statements += _policy(t, "organisations_insert", "INSERT", check=f"{me} IS NOT NULL")
    statements += _policy(t, "organisations_update", "UPDATE", using=" OR ".join([
        _decide("id", "NULL", OrgResource.ORGANISATION, OrgAction.EDIT),
        _decide("id", "NULL", OrgResource.SETTINGS, OrgAction.EDIT),
        _decide("id", "NULL", OrgResource.BILLING, OrgAction.EDIT),
        _decide("id", "NULL", OrgResource.ORGANISATION, OrgAction.DELETE),
    ]))
    statements += _policy(t, "organisations_delete", "DELETE",
                          using=_decide("id", "NULL", OrgResource.ORGANISATION, OrgAction.DELETE))

    # org_memberships
    t = "org_memberships"
    statements.append(_enable(t))
    statements += _policy(t, "org_memberships_select", "SELECT", using=(
        f"user_id = {me} OR "
        + _decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.VIEW)
    ))
    statements += _policy(t, "org_memberships_insert", "INSERT", check=(
        _decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.INVITE)
        + f" OR (user_id = {me} AND (NOT tg_org_has_members(org_id)"
        " OR tg_has_pending_invitation(org_id)))"
    ))
    statements += _policy(t, "org_memberships_update", "UPDATE", using=(
        f"user_id = {me} OR "
        + _decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.MANAGE) + " OR "
        + _decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.REMOVE)
    ))
    statements += _policy(t, "org_memberships_delete", "DELETE", using="tg_is_system_admin()")

    # projects
    t = "projects"
    statements.append(_enable(t))
    statements += _policy(t, "projects_select", "SELECT", using=(
        _decide("org_id", "id", ProjectListing.PROJECT, ProjectAction.VIEW)
        + " OR tg_invited_to_project(id)"
    ))
    statements += _policy(t, "projects_insert", "INSERT",
                          check=_decide("org_id", "NULL", OrgResource.ORG_PROJECTS, OrgAction.CREATE))
    statements += _policy(t, "projects_update", "UPDATE", using=(
        _decide("org_id", "NULL", OrgResource.ORG_PROJECTS, OrgAction.EDIT) + " OR "
        + _decide("org_id", "NULL", OrgResource.ORG_PROJECTS, OrgAction.DELETE) + " OR "
        + _decide("org_id", "id", ProjectResource.PROJECT_SETTINGS, ProjectAction.EDIT)
    ))
    statements += _policy(t, "projects_delete", "DELETE",
                          using=_decide("org_id", "NULL", OrgResource.ORG_PROJECTS, OrgAction.DELETE))

    # project_memberships
    t = "project_memberships"
    staff = _decide("org_id", "NULL", OrgResource.ORG_PROJECTS, OrgAction.MANAGE)
    statements.append(_enable(t))
    statements += _policy(t, "project_memberships_select", "SELECT", using=(
        f"user_id = {me} OR {staff} OR "
        + _decide("org_id", "project_id", ProjectResource.TEAM, ProjectAction.VIEW)
    ))
    statements += _policy(t, "project_memberships_insert", "INSERT", check=(
        f"{staff} OR "
        + _decide("org_id", "project_id", ProjectResource.TEAM, ProjectAction.CREATE)
        + f" OR (user_id = {me} AND tg_invited_to_project(project_id))"
    ))
    statements += _policy(t, "project_memberships_update", "UPDATE", using=(
        f"user_id = {me} OR {staff} OR "
        + _decide("org_id", "project_id", ProjectResource.TEAM, ProjectAction.EDIT)
        + " OR "
        + _decide("org_id", "project_id", ProjectResource.TEAM, ProjectAction.DELETE)
    ))
    statements += _policy(t, "project_memberships_delete", "DELETE", using="tg_is_system_admin()")

    # org_invitations
    t = "org_invitations"
    statements.append(_enable(t))
    statements += _policy(t, "org_invitations_all", "ALL",
                          using=_decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.INVITE)
                          + " OR lower(email) = tg_current_user_email()")

    # audit_log: append-only from the service's point of view
    t = "audit_log"
    statements.append(_enable(t))
    statements += _policy(t, "audit_log_select", "SELECT",
                          using=_decide("org_id", "NULL", OrgResource.MEMBERS, OrgAction.MANAGE))
    statements += _policy(t, "audit_log_insert", "INSERT", check=f"{me} IS NOT NULL")

    return statements


def render_entity_policies(
    table: str,
    resource: ProjectResource,
    *,
    org_column: str = "org_id",
    project_column: str = "project_id",
) -> list[str]:
    """RLS for a project-scoped business table: view/create/edit/delete map to SQL commands."""
    statements = [_enable(table)]
    commands = (
        ("select", "SELECT", "using", ProjectAction.VIEW),
        ("insert", "INSERT", "check", ProjectAction.CREATE),
        ("update", "UPDATE", "using", ProjectAction.EDIT),
        ("delete", "DELETE", "using", ProjectAction.DELETE),
    )
    for suffix, command, clause, action in commands:
        predicate = _decide(org_column, project_column, resource, action)
        statements += _policy(table, f"{table}_{suffix}", command, **{clause: predicate})
    return statements


def render_all() -> list[str]:
    return [
        *render_helper_functions(),
        render_decide_function(),
        *render_triggers(),
        *render_core_policies(),
    ]


def render_drop_all() -> list[str]:
    statements = []
    for table in ("audit_log", "org_invitations", "project_memberships", "projects",
                  "org_memberships", "organisations"):
        statements.append(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY;")
    statements += [
        "DROP TRIGGER IF EXISTS trg_projects_org_immutable ON projects;",
        "DROP TRIGGER IF EXISTS trg_project_memberships_require_org ON project_memberships;",
        "DROP FUNCTION IF EXISTS tg_project_org_immutable();",
        "DROP FUNCTION IF EXISTS tg_require_org_membership();",
    ]
    statements += [f"DROP FUNCTION IF EXISTS {fn} CASCADE;" for fn in reversed(HELPER_FUNCTIONS)]
    return statements
