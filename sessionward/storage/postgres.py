from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionward.logging import get_logger, token_prefix
from sessionward.storage.common import (
    SecretCipher,
    generate_opaque_token,
    normalize_code_set,
    normalize_email,
    token_fingerprint,
)
from sessionward.storage.errors import (
    ConstraintViolation,
    StorageUnavailable,
    TokenExpired,
    TokenNotFound,
)
from sessionward.storage.models import (
    PRINCIPAL_MUTABLE_FIELDS,
    IssuedToken,
    Principal,
    Role,
    TwoFactorCredential,
)
from sessionward.timeutil import Clock, as_utc, utc_now

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT '{}',
        tenant_id TEXT NOT NULL DEFAULT 'public',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_token (
        token_hash TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_subject_idx ON refresh_token (subject_id)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_hash TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_credential (
        subject_id TEXT PRIMARY KEY REFERENCES principal (id) ON DELETE CASCADE,
        secret_encrypted TEXT NOT NULL,
        recovery_codes TEXT[] NOT NULL DEFAULT '{}',
        enabled_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

REQUIRED_TABLES = (
    "principal",
    "auth_role",
    "one_time_token",
    "refresh_token",
    "token_blacklist",
    "two_factor_credential",
)


class PostgresStore:
    """Postgres-backed store; single-use redemption relies on ``DELETE ... RETURNING``."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._clock: Clock = clock or utc_now
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the session tables if missing, then verify they resolve."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self._verify_required_schema()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        last_login = row.get("last_login_at")
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            roles=list(row.get("roles") or []),
            tenant_id=row.get("tenant_id") or "public",
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            created_at=as_utc(row["created_at"]) if row.get("created_at") else utc_now(),
            last_login_at=as_utc(last_login) if last_login else None,
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            permissions=list(row.get("permissions") or []),
            created_at=as_utc(row["created_at"]) if row.get("created_at") else utc_now(),
        )

    # ------------------------------------------------------------------
    # principals
    # ------------------------------------------------------------------
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[str],
        tenant_id: str = "public",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> Principal:
        principal_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO principal (id, email, password_hash, roles, tenant_id, is_active, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        principal_id,
                        normalize_email(email),
                        password_hash,
                        list(dict.fromkeys(roles)),
                        tenant_id,
                        is_active,
                        email_verified,
                        self._clock(),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._principal_from_row(row)

    def get_principal_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]:
        unknown = set(patch) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        if not patch:
            return self.get_principal_by_id(principal_id)
        if "email" in patch:
            patch["email"] = normalize_email(patch["email"])
        if "roles" in patch:
            patch["roles"] = list(dict.fromkeys(patch["roles"]))
        columns = sorted(patch)
        query = sql.SQL("UPDATE principal SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(col)) for col in columns
            )
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    query, [patch[col] for col in columns] + [principal_id]
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._principal_from_row(row) if row else None

    def delete_principal(self, principal_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE subject_id = %s", (principal_id,))
            conn.execute("DELETE FROM one_time_token WHERE subject_id = %s", (principal_id,))
            row = conn.execute(
                "DELETE FROM principal WHERE id = %s RETURNING id", (principal_id,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------
    def create_role(self, name: str, permissions: Iterable[str] = ()) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_role (id, name, permissions, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, list(dict.fromkeys(permissions)), self._clock()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM auth_role ORDER BY name").fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_role
                    SET name = COALESCE(%s, name),
                        permissions = COALESCE(%s, permissions)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        name,
                        list(dict.fromkeys(permissions)) if permissions is not None else None,
                        role_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_role WHERE id = %s RETURNING id", (role_id,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # one-time and refresh tokens
    # ------------------------------------------------------------------
    def issue_one_time_token(
        self, subject_id: str, purpose: str, ttl: timedelta
    ) -> IssuedToken:
        token = generate_opaque_token()
        expires_at = self._clock() + ttl
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_token (token_hash, subject_id, purpose, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (token_fingerprint(token), subject_id, purpose, expires_at),
            )
        return IssuedToken(token=token, expires_at=expires_at)

    def redeem_one_time_token(self, token: str, purpose: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM one_time_token
                WHERE token_hash = %s AND purpose = %s
                RETURNING subject_id, expires_at
                """,
                (token_fingerprint(token), purpose),
            ).fetchone()
        if not row:
            raise TokenNotFound(purpose)
        if self._clock() >= as_utc(row["expires_at"]):
            self.logger.info(
                "one_time_token_expired", purpose=purpose, token_prefix=token_prefix(token)
            )
            raise TokenExpired(purpose)
        return str(row["subject_id"])

    def store_refresh_token(
        self, subject_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (token_hash, subject_id, expires_at)
                VALUES (%s, %s, %s)
                """,
                (token_fingerprint(token), subject_id, expires_at),
            )

    def redeem_refresh_token(self, token: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE token_hash = %s
                RETURNING subject_id, expires_at
                """,
                (token_fingerprint(token),),
            ).fetchone()
        if not row:
            raise TokenNotFound("refresh")
        if self._clock() >= as_utc(row["expires_at"]):
            raise TokenExpired("refresh")
        return str(row["subject_id"])

    def rotate_refresh_token(
        self, token: str, subject_id: str, replacement: str, expires_at: datetime
    ) -> str:
        # One transaction: a failed insert rolls the delete back
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE token_hash = %s
                RETURNING subject_id, expires_at
                """,
                (token_fingerprint(token),),
            ).fetchone()
            if not row:
                raise TokenNotFound("refresh")
            stored_subject = str(row["subject_id"])
            expired = self._clock() >= as_utc(row["expires_at"])
            if not expired and stored_subject == subject_id:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, subject_id, expires_at)
                    VALUES (%s, %s, %s)
                    """,
                    (token_fingerprint(replacement), subject_id, expires_at),
                )
        if expired:
            raise TokenExpired("refresh")
        return stored_subject

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING token_hash",
                (token_fingerprint(token),),
            ).fetchone()
        return row is not None

    def delete_all_refresh_tokens_for(self, subject_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE subject_id = %s", (subject_id,)
            )
            return cur.rowcount or 0

    # ------------------------------------------------------------------
    # blacklist
    # ------------------------------------------------------------------
    def blacklist(self, token: str, ttl: timedelta) -> None:
        if ttl.total_seconds() <= 0:
            return
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_blacklist (token_hash, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token_hash) DO UPDATE SET expires_at = EXCLUDED.expires_at
                """,
                (token_fingerprint(token), self._clock() + ttl),
            )

    def is_blacklisted(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM token_blacklist WHERE token_hash = %s AND expires_at > %s",
                (token_fingerprint(token), self._clock()),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # second factor
    # ------------------------------------------------------------------
    def get_two_factor(self, subject_id: str) -> Optional[TwoFactorCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_credential WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        if not row:
            return None
        enabled_at = row.get("enabled_at")
        return TwoFactorCredential(
            subject_id=str(row["subject_id"]),
            secret=self._cipher.decrypt(row["secret_encrypted"]),
            recovery_codes=list(row.get("recovery_codes") or []),
            enabled_at=as_utc(enabled_at) if enabled_at else None,
        )

    def set_two_factor(
        self, subject_id: str, secret: str, recovery_codes: Iterable[str]
    ) -> TwoFactorCredential:
        codes = normalize_code_set(recovery_codes)
        enabled_at = self._clock()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_credential (subject_id, secret_encrypted, recovery_codes, enabled_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (subject_id) DO UPDATE
                    SET secret_encrypted = EXCLUDED.secret_encrypted,
                        recovery_codes = EXCLUDED.recovery_codes,
                        enabled_at = EXCLUDED.enabled_at
                    """,
                    (subject_id, self._cipher.encrypt(secret), codes, enabled_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("principal not found for mfa", {"subject_id": subject_id})
        return TwoFactorCredential(
            subject_id=subject_id, secret=secret, recovery_codes=codes, enabled_at=enabled_at
        )

    def swap_recovery_codes(
        self, subject_id: str, expected: Iterable[str], replacement: Iterable[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET recovery_codes = %s
                WHERE subject_id = %s AND recovery_codes = %s
                RETURNING subject_id
                """,
                (normalize_code_set(replacement), subject_id, normalize_code_set(expected)),
            ).fetchone()
        return row is not None

    def clear_two_factor(self, subject_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM two_factor_credential WHERE subject_id = %s", (subject_id,)
            )

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._clock()
        removed = 0
        with self._connect() as conn:
            for table in ("one_time_token", "refresh_token", "token_blacklist"):
                cur = conn.execute(
                    sql.SQL("DELETE FROM {} WHERE expires_at <= %s").format(
                        sql.Identifier(table)
                    ),
                    (cutoff,),
                )
                removed += cur.rowcount or 0
        return removed
