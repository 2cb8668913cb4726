"""
auth/rbac.py -- Role directory: roles, their permission sets, and account assignments.

Permissions granted to an account are the union of its assigned roles'
permission sets. Access tokens embed that union at issuance, so a change
made here reaches an already-issued access token only when the account next
logs in or refreshes.

System roles (the four seeded by ensure_default_roles) cannot be deleted.
Their permission sets may still be edited by an operator with system:settings.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import BadRequest, Conflict, NotFound
from auth.models import Permission, Role
from auth.store import account_roles, as_utc, roles, utcnow

logger = logging.getLogger("gatekeeper.auth.rbac")

# ---------------------------------------------------------------------------
# Seeded roles
# ---------------------------------------------------------------------------

MEMBER_PERMISSIONS = [Permission.read_product, Permission.create_order, Permission.read_order]

STAFF_PERMISSIONS = [
    Permission.read_product,
    Permission.read_order,
    Permission.update_order,
    Permission.manage_order_status,
    Permission.read_customer,
    Permission.view_inventory,
    Permission.view_transactions,
    Permission.view_sales_reports,
    Permission.list_users,
    Permission.view_user_details,
    Permission.view_user_roles,
    Permission.view_user_devices,
]

MANAGER_PERMISSIONS = [
    Permission.create_product,
    Permission.read_product,
    Permission.update_product,
    Permission.manage_categories,
    Permission.manage_collections,
    Permission.create_order,
    Permission.read_order,
    Permission.update_order,
    Permission.manage_order_status,
    Permission.process_refunds,
    Permission.create_customer,
    Permission.read_customer,
    Permission.update_customer,
    Permission.view_customer_history,
    Permission.manage_inventory,
    Permission.view_inventory,
    Permission.adjust_stock,
    Permission.view_stock_history,
    Permission.process_payments,
    Permission.view_transactions,
    Permission.manage_payment_methods,
    Permission.view_sales_reports,
    Permission.view_customer_reports,
    Permission.view_inventory_reports,
    Permission.export_reports,
    Permission.list_users,
    Permission.view_user_details,
    Permission.view_user_roles,
    Permission.manage_user_status,
    Permission.view_user_devices,
]

SYSTEM_ADMIN = "System Admin"
STORE_MANAGER = "Store Manager"
STAFF = "Staff"
MEMBER = "Member"


def default_roles() -> list[Role]:
    return [
        Role(SYSTEM_ADMIN, "Full system access with all permissions", list(Permission), is_system=True),
        Role(STORE_MANAGER, "Manages store operations and staff", list(MANAGER_PERMISSIONS), is_system=True),
        Role(STAFF, "Regular store staff member", list(STAFF_PERMISSIONS), is_system=True),
        Role(MEMBER, "Regular customer account", list(MEMBER_PERMISSIONS), is_system=True),
    ]


class RoleDirectory:
    """Repository and evaluator for roles and role assignments."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_default_roles(self) -> int:
        """Insert any missing seeded roles. Existing roles are left untouched.

        Returns the number of roles created. Safe to call on every startup.
        """
        created = 0
        for role in default_roles():
            if self.get_role_by_name(role.name) is not None:
                continue
            try:
                self.create_role(role)
                created += 1
            except Conflict:
                # Another worker seeded it between the check and the insert.
                continue
        if created:
            logger.info("Seeded %d default role(s)", created)
        return created

    def create_role(self, role: Role) -> Role:
        """Insert a role. Raises Conflict on a duplicate name."""
        now = utcnow()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    roles.insert().values(
                        name=role.name,
                        description=role.description,
                        permissions=_dump_permissions(role.permissions),
                        is_system=1 if role.is_system else 0,
                        created_at=now,
                    )
                )
                role.id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict(f"Role '{role.name}' already exists.") from exc
        role.created_at = now
        return role

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.name == name)).fetchone()
        return _row_to_role(row) if row else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_permissions(self, role_id: int, permissions: list[Permission]) -> Role:
        with self.engine.begin() as conn:
            result = conn.execute(
                roles.update().where(roles.c.id == role_id).values(permissions=_dump_permissions(permissions))
            )
        if result.rowcount == 0:
            raise NotFound("Role not found.")
        role = self.get_role(role_id)
        logger.info("Role permissions updated: role=%s count=%d", role.name, len(role.permissions))
        return role

    def delete_role(self, role_id: int) -> None:
        """Delete a non-system role and its assignments."""
        role = self.get_role(role_id)
        if role is None:
            raise NotFound("Role not found.")
        if role.is_system:
            raise BadRequest("System roles cannot be deleted.")
        with self.engine.begin() as conn:
            conn.execute(account_roles.delete().where(account_roles.c.role_id == role_id))
            conn.execute(roles.delete().where(roles.c.id == role_id))
        logger.info("Role deleted: %s", role.name)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign(self, account_id: str, role_id: int) -> bool:
        """Attach a role. Returns False if the account already holds it."""
        if self.get_role(role_id) is None:
            raise NotFound("Role not found.")
        try:
            with self.engine.begin() as conn:
                conn.execute(account_roles.insert().values(account_id=account_id, role_id=role_id, created_at=utcnow()))
        except IntegrityError:
            return False
        return True

    def assign_by_name(self, account_id: str, role_name: str) -> Role:
        role = self.get_role_by_name(role_name)
        if role is None:
            raise NotFound(f"Role '{role_name}' not found.")
        self.assign(account_id, role.id)
        return role

    def unassign(self, account_id: str, role_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                account_roles.delete().where(
                    (account_roles.c.account_id == account_id) & (account_roles.c.role_id == role_id)
                )
            )
        return result.rowcount > 0

    def roles_for_account(self, account_id: str) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(roles)
                .join(account_roles, account_roles.c.role_id == roles.c.id)
                .where(account_roles.c.account_id == account_id)
                .order_by(roles.c.id)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def permissions_for_account(self, account_id: str) -> list[Permission]:
        """Union of all assigned roles' permissions, in declaration order."""
        return union_permissions(self.roles_for_account(account_id))

    def has_permission(self, account_id: str, permission: Permission) -> bool:
        return permission in self.permissions_for_account(account_id)

    def has_any_permission(self, account_id: str, permissions: list[Permission]) -> bool:
        granted = set(self.permissions_for_account(account_id))
        return any(p in granted for p in permissions)

    def has_all_permissions(self, account_id: str, permissions: list[Permission]) -> bool:
        granted = set(self.permissions_for_account(account_id))
        return all(p in granted for p in permissions)


def union_permissions(role_list: list[Role]) -> list[Permission]:
    granted: set[Permission] = set()
    for role in role_list:
        granted.update(role.permissions)
    return [p for p in Permission if p in granted]


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _dump_permissions(permissions: list[Permission]) -> str:
    return json.dumps(sorted({p.value for p in permissions}))


def _row_to_role(row) -> Role:
    try:
        tags = json.loads(row.permissions or "[]")
    except ValueError:
        logger.warning("Role %s has an unreadable permission list", row.name)
        tags = []
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        permissions=Permission.parse(tags),
        is_system=bool(row.is_system),
        created_at=as_utc(row.created_at),
    )
