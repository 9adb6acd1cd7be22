from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessiongate.logging import get_logger
from sessiongate.storage.models import Identity, Role

logger = get_logger(__name__)

# One identity table per role
ROLE_TABLES: Dict[Role, str] = {
    Role.SUPER_ADMIN: "super_admin_account",
    Role.ADMIN: "admin_account",
    Role.STAFF: "staff_account",
    Role.USER: "app_user",
}

# Order in which login looks a username up
_LOGIN_ORDER = (Role.SUPER_ADMIN, Role.ADMIN, Role.STAFF, Role.USER)


class PostgresIdentityStore:
    """Read-only identity lookup over the relational system of record.

    Each table carries ``id``, ``name``, ``username``, ``email``,
    ``password_hash`` and ``is_active``; staff capabilities live in
    ``staff_permission(staff_id, permission_key)``.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=True,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against unknown usernames so timing does not reveal which exist
        self._dummy_hash = self._pwd_hasher.hash("sessiongate-dummy-password")

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _permissions(self, conn, role: Role, identity_id: str) -> FrozenSet[str]:
        if role is not Role.STAFF:
            return frozenset()
        rows = conn.execute(
            "SELECT permission_key FROM staff_permission WHERE staff_id = %s",
            (identity_id,),
        ).fetchall()
        return frozenset(str(row["permission_key"]) for row in rows)

    def _to_identity(self, conn, role: Role, row: dict) -> Identity:
        identity_id = str(row["id"])
        return Identity(
            id=identity_id,
            role=role,
            name=row.get("name") or "",
            username=row.get("username") or "",
            email=row.get("email") or "",
            permissions=self._permissions(conn, role, identity_id),
            is_active=bool(row.get("is_active", True)),
        )

    def get_identity(self, role: Role, identity_id: str) -> Optional[Identity]:
        role = Role(role)
        query = sql.SQL(
            "SELECT id, name, username, email, is_active FROM {} WHERE id = %s"
        ).format(sql.Identifier(ROLE_TABLES[role]))
        with self._connect() as conn:
            row = conn.execute(query, (identity_id,)).fetchone()
            if not row:
                return None
            return self._to_identity(conn, role, row)

    def authenticate(self, username: str, password: str) -> Optional[Identity]:
        login = username.strip().lower()
        with self._connect() as conn:
            for role in _LOGIN_ORDER:
                query = sql.SQL(
                    "SELECT id, name, username, email, is_active, password_hash FROM {} "
                    "WHERE lower(username) = %s OR lower(email) = %s LIMIT 1"
                ).format(sql.Identifier(ROLE_TABLES[role]))
                row = conn.execute(query, (login, login)).fetchone()
                if not row:
                    continue
                if not self._verify_password(row.get("password_hash"), password):
                    logger.info("identity_password_mismatch", role=role.value)
                    return None
                return self._to_identity(conn, role, row)
        self._verify_password(self._dummy_hash, password)
        return None

    def _verify_password(self, pwd_hash: Optional[str], password: str) -> bool:
        if not pwd_hash:
            return False
        try:
            return self._pwd_hasher.verify(pwd_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False
