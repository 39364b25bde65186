from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portal.logging import get_logger
from portal.storage import seed
from portal.storage.errors import ConstraintViolation, StorageError, StorageResult
from portal.storage.models import (
    EmailVerificationToken,
    Module,
    OrganizationEmployee,
    OrganizationRule,
    PasswordResetToken,
    PermissionDetail,
    PermissionLevel,
    RefreshToken,
    Role,
    SubModule,
    User,
)

_REQUIRED_TABLES = [
    "portal_user",
    "role",
    "module",
    "sub_module",
    "permission_level",
    "permission",
    "role_permission",
    "user_role",
    "organization_rule",
    "organization_employee",
    "refresh_token",
    "email_verification_token",
    "password_reset_token",
]

_PERMISSION_DETAIL_SQL = """
    SELECT p.id, p.code, p.name, p.description, p.sub_module_id, p.level_id,
           m.code AS module_code, m.name AS module_name, m.display_order AS module_order,
           s.name AS sub_module_name, s.display_order AS sub_module_order,
           l.name AS level_name, l.level
    FROM permission p
    JOIN sub_module s ON s.id = p.sub_module_id
    JOIN module m ON m.id = s.module_id
    JOIN permission_level l ON l.id = p.level_id
"""

_PERMISSION_ORDER_SQL = " ORDER BY m.display_order, s.display_order, l.level, p.id"


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class PostgresStore:
    """PostgreSQL-backed credential and RBAC store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.supports_pending = True
        self._verify_required_schema()
        self._ensure_default_rbac()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            pending_col = conn.execute(
                """
                SELECT 1 AS present
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = 'portal_user' AND column_name = 'is_pending'
                """
            ).fetchone()
        self.supports_pending = bool(pending_col)
        if not self.supports_pending:
            self.logger.warning(
                "postgres_pending_state_unsupported",
                message="portal_user.is_pending missing; registrations skip email verification",
            )

    def _ensure_default_rbac(self) -> None:
        """Seed the role/permission catalogue into an empty database."""

        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM role").fetchone()
            if row and row["n"]:
                return
            for m in seed.MODULES:
                conn.execute(
                    """
                    INSERT INTO module (id, code, name, description, icon, display_order, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING
                    """,
                    (m.id, m.code, m.name, m.description, m.icon, m.display_order, m.is_active),
                )
            for s in seed.SUB_MODULES:
                conn.execute(
                    """
                    INSERT INTO sub_module (id, module_id, code, name, description, display_order, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING
                    """,
                    (s.id, s.module_id, s.code, s.name, s.description, s.display_order, s.is_active),
                )
            for lv in seed.PERMISSION_LEVELS:
                conn.execute(
                    """
                    INSERT INTO permission_level (id, level, code, name, description)
                    VALUES (%s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING
                    """,
                    (lv.id, lv.level, lv.code, lv.name, lv.description),
                )
            for p in seed.PERMISSIONS:
                conn.execute(
                    """
                    INSERT INTO permission (id, code, name, sub_module_id, level_id, description)
                    VALUES (%s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING
                    """,
                    (p.id, p.code, p.name, p.sub_module_id, p.level_id, p.description),
                )
            for r in seed.ROLES:
                conn.execute(
                    """
                    INSERT INTO role (id, code, name, description, is_active)
                    VALUES (%s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING
                    """,
                    (r.id, r.code, r.name, r.description, r.is_active),
                )
            for role_id, perm_ids in seed.ROLE_PERMISSIONS.items():
                for pid in perm_ids:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (role_id, pid),
                    )
        self.logger.info("postgres_rbac_seeded", roles=len(seed.ROLES))

    # users
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            department=row.get("department"),
            tenant_id=row.get("tenant_id") or "00",
            is_active=bool(row.get("is_active")),
            is_email_verified=bool(row.get("is_email_verified")),
            is_pending=bool(row.get("is_pending", False)),
            created_at=_parse_ts(row.get("created_at")),
            last_login_at=_parse_ts(row.get("last_login_at")),
        )

    def _visibility_clause(self, include_pending: bool) -> str:
        if include_pending and self.supports_pending:
            return "(is_active OR is_pending)"
        return "is_active"

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        department: Optional[str] = None,
        tenant_id: str = "00",
        pending: bool = False,
    ) -> User:
        if pending and not self.supports_pending:
            raise StorageError("pending verification state unsupported", operation="create_user")
        user = User.new(
            username,
            email,
            password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            department=department,
            tenant_id=tenant_id,
            pending=pending,
        )
        columns = [
            "id", "username", "email", "password_hash", "first_name", "last_name",
            "phone", "department", "tenant_id", "is_active", "is_email_verified", "created_at",
        ]
        values: List[Any] = [
            user.id, user.username, user.email, user.password_hash, user.first_name,
            user.last_name, user.phone, user.department, user.tenant_id, user.is_active,
            user.is_email_verified, user.created_at,
        ]
        if self.supports_pending:
            columns.append("is_pending")
            values.append(user.is_pending)
        sql = "INSERT INTO portal_user ({}) VALUES ({})".format(
            ", ".join(columns), ", ".join(["%s"] * len(columns))
        )
        try:
            with self._connect() as conn:
                conn.execute(sql, values)
        except errors.UniqueViolation as exc:
            field_name = "email" if "email" in str(exc) else "username"
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        except errors.UndefinedColumn as exc:
            raise StorageError(str(exc), operation="create_user") from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM portal_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(
        self, username: str, tenant_id: Optional[str] = None, *, include_pending: bool = False
    ) -> Optional[User]:
        clauses = ["lower(username) = lower(%s)", self._visibility_clause(include_pending)]
        params: List[Any] = [username]
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        sql = "SELECT * FROM portal_user WHERE {} ORDER BY created_at LIMIT 1".format(
            " AND ".join(clauses)
        )
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str, *, include_pending: bool = False) -> Optional[User]:
        sql = "SELECT * FROM portal_user WHERE lower(email) = lower(%s) AND {} ORDER BY created_at LIMIT 1".format(
            self._visibility_clause(include_pending)
        )
        with self._connect() as conn:
            row = conn.execute(sql, (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def user_exists(
        self, username: str, email: str, tenant_id: str, *, include_pending: bool = False
    ) -> bool:
        sql = """
            SELECT 1 AS found FROM portal_user
            WHERE ((lower(username) = lower(%s) AND tenant_id = %s) OR lower(email) = lower(%s))
              AND {}
            LIMIT 1
        """.format(self._visibility_clause(include_pending))
        with self._connect() as conn:
            row = conn.execute(sql, (username, tenant_id, email)).fetchone()
        return row is not None

    def list_users(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    "SELECT * FROM portal_user WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM portal_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def update_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE portal_user SET last_login_at = now() WHERE id = %s", (user_id,))

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE portal_user SET password_hash = %s WHERE id = %s", (password_hash, user_id)
            )

    def verify_user_email(self, user_id: str) -> None:
        extra = ", is_pending = FALSE" if self.supports_pending else ""
        with self._connect() as conn:
            conn.execute(
                f"UPDATE portal_user SET is_active = TRUE, is_email_verified = TRUE{extra} WHERE id = %s",
                (user_id,),
            )

    def deactivate_user(self, user_id: str) -> None:
        extra = ", is_pending = FALSE" if self.supports_pending else ""
        with self._connect() as conn:
            conn.execute(f"UPDATE portal_user SET is_active = FALSE{extra} WHERE id = %s", (user_id,))

    # refresh tokens
    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            tenant_id=row["tenant_id"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            created_by_ip=row.get("created_by_ip"),
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            replaced_by_token=row.get("replaced_by_token"),
        )

    def create_refresh_token(
        self,
        user_id: str,
        tenant_id: str,
        token: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, tenant_id, expires_at, created_by_ip)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, user_id, tenant_id, expires_at, created_by_ip),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token owner missing", {"user_id": user_id})
        return self._row_to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.*, row_to_json(u) AS owner
                FROM refresh_token t
                LEFT JOIN portal_user u ON u.id = t.user_id
                WHERE t.token = %s
                """,
                (token,),
            ).fetchone()
        if not row:
            return None
        record = self._row_to_refresh_token(row)
        if row.get("owner"):
            record.user = self._row_to_user(row["owner"])
        return record

    def revoke_refresh_token(
        self,
        token: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = now(), revoked_by_ip = %s, replaced_by_token = %s
                WHERE token = %s AND revoked_at IS NULL
                """,
                (revoked_by_ip, replaced_by_token, token),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        revoked_by_ip: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = now(), revoked_by_ip = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > now()
                  AND token IS DISTINCT FROM %s
                """,
                (revoked_by_ip, user_id, except_token),
            )
            return cur.rowcount

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._row_to_refresh_token(r) for r in rows]

    # single-use tokens
    def _create_single_use(
        self, table: str, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> Dict[str, Any]:
        with self._connect() as conn:
            return conn.execute(
                f"""
                INSERT INTO {table} (token, user_id, username, email, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (token, user_id, username, email.lower(), expires_at),
            ).fetchone()

    def _get_single_use(self, table: str, token: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return conn.execute(f"SELECT * FROM {table} WHERE token = %s", (token,)).fetchone()

    def _mark_single_use(self, table: str, token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {table} SET is_used = TRUE, used_at = now() WHERE token = %s AND NOT is_used",
                (token,),
            )

    @staticmethod
    def _row_to_single_use(model, row: Dict[str, Any]):
        return model(
            token=row["token"],
            user_id=str(row["user_id"]),
            username=row["username"],
            email=row["email"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            is_used=bool(row["is_used"]),
            used_at=row.get("used_at"),
        )

    def create_email_verification_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        row = self._create_single_use(
            "email_verification_token", user_id, username, email, token, expires_at
        )
        return self._row_to_single_use(EmailVerificationToken, row)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        row = self._get_single_use("email_verification_token", token)
        return self._row_to_single_use(EmailVerificationToken, row) if row else None

    def mark_email_verification_token_used(self, token: str) -> None:
        self._mark_single_use("email_verification_token", token)

    def create_password_reset_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        row = self._create_single_use(
            "password_reset_token", user_id, username, email, token, expires_at
        )
        return self._row_to_single_use(PasswordResetToken, row)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        row = self._get_single_use("password_reset_token", token)
        return self._row_to_single_use(PasswordResetToken, row) if row else None

    def mark_password_reset_token_used(self, token: str) -> None:
        self._mark_single_use("password_reset_token", token)

    def invalidate_password_reset_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE password_reset_token SET is_used = TRUE, used_at = now() WHERE user_id = %s AND NOT is_used",
                (user_id,),
            )
            return cur.rowcount

    # rbac
    def _degradable_read(self, operation: str, sql: str, params: Iterable[Any]) -> StorageResult[List[Dict[str, Any]]]:
        try:
            with self._connect() as conn:
                return StorageResult.success(conn.execute(sql, tuple(params)).fetchall())
        except psycopg.Error as exc:
            self.logger.warning("postgres_degradable_read_failed", operation=operation, error=str(exc))
            return StorageResult.failure(StorageError(str(exc), operation=operation))

    def get_user_role_ids(self, user_id: str) -> StorageResult[List[int]]:
        result = self._degradable_read(
            "get_user_role_ids",
            """
            SELECT r.id FROM user_role ur JOIN role r ON r.id = ur.role_id
            WHERE ur.user_id = %s AND r.is_active ORDER BY r.id
            """,
            (user_id,),
        )
        if not result.ok:
            return StorageResult.failure(result.error)
        return StorageResult.success([row["id"] for row in result.value])

    def get_user_roles(self, user_id: str) -> StorageResult[List[str]]:
        result = self._degradable_read(
            "get_user_roles",
            """
            SELECT r.code FROM user_role ur JOIN role r ON r.id = ur.role_id
            WHERE ur.user_id = %s AND r.is_active ORDER BY r.id
            """,
            (user_id,),
        )
        if not result.ok:
            return StorageResult.failure(result.error)
        return StorageResult.success([row["code"] for row in result.value])

    def get_user_permissions(self, user_id: str) -> StorageResult[List[str]]:
        result = self._degradable_read(
            "get_user_permissions",
            _PERMISSION_DETAIL_SQL
            + """
            WHERE p.id IN (
                SELECT rp.permission_id FROM user_role ur
                JOIN role r ON r.id = ur.role_id AND r.is_active
                JOIN role_permission rp ON rp.role_id = r.id
                WHERE ur.user_id = %s
            )
            """
            + _PERMISSION_ORDER_SQL,
            (user_id,),
        )
        if not result.ok:
            return StorageResult.failure(result.error)
        return StorageResult.success([row["code"] for row in result.value])

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY id").fetchall()
        return [Role(**row) for row in rows]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return Role(**row) if row else None

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE code = %s", (code,)).fetchone()
        return Role(**row) if row else None

    def list_permissions(self) -> List[PermissionDetail]:
        with self._connect() as conn:
            rows = conn.execute(_PERMISSION_DETAIL_SQL + _PERMISSION_ORDER_SQL).fetchall()
        return [PermissionDetail(**row) for row in rows]

    def list_permission_levels(self) -> List[PermissionLevel]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission_level ORDER BY level").fetchall()
        return [PermissionLevel(**row) for row in rows]

    def list_modules(self) -> List[Module]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM module ORDER BY display_order, id").fetchall()
        return [Module(**row) for row in rows]

    def list_sub_modules(self) -> List[SubModule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sub_module ORDER BY module_id, display_order, id"
            ).fetchall()
        return [SubModule(**row) for row in rows]

    def get_role_permission_ids(self, role_id: int) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT permission_id FROM role_permission WHERE role_id = %s ORDER BY permission_id",
                (role_id,),
            ).fetchall()
        return [row["permission_id"] for row in rows]

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        ids = sorted(set(permission_ids))
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
                for pid in ids:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, pid),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown role or permission", {"role_id": role_id})

    def set_user_roles(self, user_id: str, role_ids: Iterable[int]) -> None:
        ids = sorted(set(role_ids))
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
                for rid in ids:
                    conn.execute(
                        "INSERT INTO user_role (user_id, role_id) VALUES (%s, %s)", (user_id, rid)
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown user or role", {"user_id": user_id})

    # organization rules
    def list_organization_rules(self, *, include_inactive: bool = False) -> List[OrganizationRule]:
        where = "" if include_inactive else "WHERE is_active"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM organization_rule {where} ORDER BY priority DESC, id"
            ).fetchall()
        return [OrganizationRule(**row) for row in rows]

    def get_organization_rule(self, rule_id: int) -> Optional[OrganizationRule]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_rule WHERE id = %s", (rule_id,)
            ).fetchone()
        return OrganizationRule(**row) if row else None

    def create_organization_rule(
        self,
        email_pattern: str,
        department_code: str,
        department_name: str,
        default_role_id: int,
        priority: int = 0,
    ) -> OrganizationRule:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO organization_rule (email_pattern, department_code, department_name, default_role_id, priority)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email_pattern, department_code, department_name, default_role_id, priority),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role missing", {"role_id": default_role_id})
        return OrganizationRule(**row)

    def update_organization_rule(self, rule_id: int, **changes: Any) -> Optional[OrganizationRule]:
        allowed = [
            "email_pattern",
            "department_code",
            "department_name",
            "default_role_id",
            "priority",
            "is_active",
        ]
        updates = {k: v for k, v in changes.items() if k in allowed and v is not None}
        if not updates:
            return self.get_organization_rule(rule_id)
        assignments = ", ".join(f"{k} = %s" for k in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE organization_rule SET {assignments} WHERE id = %s RETURNING *",
                    (*updates.values(), rule_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role missing", {"role_id": updates.get("default_role_id")})
        return OrganizationRule(**row) if row else None

    def deactivate_organization_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE organization_rule SET is_active = FALSE WHERE id = %s", (rule_id,)
            )
            return cur.rowcount > 0

    # organization directory
    def add_employee(self, employee: OrganizationEmployee) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO organization_employee (email, first_name, last_name, department, position, title, phone)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET first_name = EXCLUDED.first_name, last_name = EXCLUDED.last_name,
                    department = EXCLUDED.department, position = EXCLUDED.position,
                    title = EXCLUDED.title, phone = EXCLUDED.phone
                """,
                (
                    employee.email.lower(),
                    employee.first_name,
                    employee.last_name,
                    employee.department,
                    employee.position,
                    employee.title,
                    employee.phone,
                ),
            )

    def get_employee_by_email(self, email: str) -> StorageResult[Optional[OrganizationEmployee]]:
        result = self._degradable_read(
            "get_employee_by_email",
            "SELECT * FROM organization_employee WHERE email = lower(%s)",
            (email,),
        )
        if not result.ok:
            return StorageResult.failure(result.error)
        rows = result.value
        return StorageResult.success(OrganizationEmployee(**rows[0]) if rows else None)
