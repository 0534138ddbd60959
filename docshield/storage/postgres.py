from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from docshield.logging import get_logger
from docshield.storage.common import (
    build_secret_cipher,
    deserialize_login_attempts,
    deserialize_two_factor,
    serialize_login_attempts,
    serialize_two_factor,
)
from docshield.storage.errors import ConstraintViolation
from docshield.storage.models import (
    CREDIT_REQUEST_PENDING,
    USER_SORT_FIELDS,
    Activity,
    CreditRequest,
    DeviceInfo,
    Document,
    Session,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        username TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        credits INTEGER NOT NULL DEFAULT 20 CHECK (credits >= 0),
        last_credit_reset TIMESTAMPTZ NOT NULL DEFAULT now(),
        total_scans INTEGER NOT NULL DEFAULT 0,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token_hash TEXT,
        verification_expires TIMESTAMPTZ,
        reset_token_hash TEXT,
        reset_expires TIMESTAMPTZ,
        login_attempts JSONB NOT NULL DEFAULT '{}'::jsonb,
        two_factor JSONB NOT NULL DEFAULT '{}'::jsonb,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        token_class TEXT NOT NULL DEFAULT 'session',
        device_info JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_token_idx ON auth_session (token_hash)",
    """
    CREATE TABLE IF NOT EXISTS credit_request (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        requested_credits INTEGER NOT NULL CHECK (requested_credits >= 1),
        reason TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        admin_id UUID,
        admin_note TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        processed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_activity (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        file_type TEXT NOT NULL DEFAULT 'text/plain',
        file_size INTEGER NOT NULL DEFAULT 0,
        analysis TEXT,
        status TEXT NOT NULL DEFAULT 'uploaded',
        views INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "auth_session",
    "credit_request",
    "user_activity",
    "document",
)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class PostgresStore:
    """Postgres-backed store for users, sessions, credits and documents."""

    def __init__(self, dsn: str, fs_root: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""
        missing: list[str] = []
        with self._connect() as conn:
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS name", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("name"):
                    missing.append(table)
        if missing:
            self.logger.error("postgres_schema_missing", tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            username=row.get("username"),
            role=row.get("role", "user"),
            credits=int(row.get("credits", 0)),
            last_credit_reset=row.get("last_credit_reset") or utcnow(),
            total_scans=int(row.get("total_scans", 0)),
            is_verified=bool(row.get("is_verified", False)),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires=row.get("verification_expires"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires=row.get("reset_expires"),
            login_attempts=deserialize_login_attempts(_json(row.get("login_attempts"))),
            two_factor=deserialize_two_factor(_json(row.get("two_factor")), self._mfa_cipher),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            token_class=row.get("token_class", "session"),
            device_info=DeviceInfo.from_dict(_json(row.get("device_info"))),
            is_active=bool(row.get("is_active", False)),
            last_activity=row.get("last_activity") or utcnow(),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _credit_request_from_row(row: Dict[str, Any]) -> CreditRequest:
        return CreditRequest(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            requested_credits=int(row["requested_credits"]),
            reason=row.get("reason") or "",
            status=row.get("status", CREDIT_REQUEST_PENDING),
            admin_id=str(row["admin_id"]) if row.get("admin_id") else None,
            admin_note=row.get("admin_note"),
            created_at=row.get("created_at") or utcnow(),
            processed_at=row.get("processed_at"),
        )

    @staticmethod
    def _document_from_row(row: Dict[str, Any]) -> Document:
        return Document(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            content=row.get("content") or "",
            file_type=row.get("file_type", "text/plain"),
            file_size=int(row.get("file_size", 0)),
            analysis=row.get("analysis"),
            status=row.get("status", "uploaded"),
            views=int(row.get("views", 0)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users / credentials
    def create_user(
        self,
        email: str,
        name: str,
        *,
        username: Optional[str] = None,
        role: str = "user",
        credits: int = 20,
        is_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, username, role, credits, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        name,
                        username or normalized.split("@", 1)[0],
                        role,
                        credits,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", ((email or "").strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE verification_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE reset_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = %s LIMIT 1",
                ((username or "").strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def search_users(
        self,
        query: Optional[str] = None,
        *,
        sort_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[List[User], int]:
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"unsupported sort field: {sort_by}")
        needle = (query or "").strip().lower()
        pattern = "%" + needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        where = "WHERE (%s = '' OR lower(coalesce(username, '')) LIKE %s OR email LIKE %s)"
        params: tuple[Any, ...] = (needle, pattern, pattern)
        direction = "DESC" if descending else "ASC"
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM app_user {where}", params).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user {where} "
                f"ORDER BY {sort_by} {direction} NULLS LAST, id LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._user_from_row(row) for row in rows], int(total["n"]) if total else 0

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM app_user").fetchone()
        return int(row["n"]) if row else 0

    def top_users_by_scans(self, limit: int = 5) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY total_scans DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user: User) -> User:
        """Persist profile, token, lockout and two-factor fields.

        The credit balance, reset marker and scan count are left untouched.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, name = %s, username = %s, role = %s, is_verified = %s,
                        verification_token_hash = %s, verification_expires = %s,
                        reset_token_hash = %s, reset_expires = %s,
                        login_attempts = %s, two_factor = %s, last_login = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        user.email,
                        user.name,
                        user.username,
                        user.role,
                        user.is_verified,
                        user.verification_token_hash,
                        user.verification_expires,
                        user.reset_token_hash,
                        user.reset_expires,
                        json.dumps(serialize_login_attempts(user.login_attempts)),
                        json.dumps(serialize_two_factor(user.two_factor, self._mfa_cipher)),
                        user.last_login,
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return self._user_from_row(row)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # credits
    def reset_daily_credits(
        self, user_id: str, daily_limit: int, now: datetime
    ) -> Optional[User]:
        """Refill the balance when ``now`` falls on a later UTC date than the last reset."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET credits = %s, last_credit_reset = %s
                WHERE id = %s
                  AND (last_credit_reset AT TIME ZONE 'UTC')::date <> (%s::timestamptz AT TIME ZONE 'UTC')::date
                """,
                (daily_limit, now, user_id, now),
            )
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def decrement_credits_if_positive(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET credits = credits - 1 WHERE id = %s AND credits > 0 RETURNING credits",
                (user_id,),
            ).fetchone()
        return int(row["credits"]) if row else None

    def refund_credit(self, user_id: str, cap: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET credits = GREATEST(credits, LEAST(credits + 1, %s)) WHERE id = %s RETURNING credits",
                (cap, user_id),
            ).fetchone()
        return int(row["credits"]) if row else None

    def set_credits(
        self, user_id: str, credits: int, *, last_credit_reset: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET credits = %s, last_credit_reset = COALESCE(%s, last_credit_reset)
                WHERE id = %s
                RETURNING *
                """,
                (max(0, credits), last_credit_reset, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_total_scans(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET total_scans = total_scans + 1 WHERE id = %s", (user_id,)
            )

    # sessions
    def create_session(
        self,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
        token_class: str = "session",
        device_info: Optional[DeviceInfo] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            token_hash,
            ttl,
            session_id=session_id,
            token_class=token_class,
            device_info=device_info,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token_hash, token_class, device_info, is_active, last_activity, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.token_hash,
                        sess.token_class,
                        json.dumps(sess.device_info.to_dict()),
                        sess.is_active,
                        sess.last_activity,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session(
        self, token_hash: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE token_hash = %s AND user_id = %s AND is_active AND expires_at > %s
                """,
                (token_hash, user_id, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE id = %s", (now, session_id)
            )

    def extend_session(
        self,
        session_id: str,
        ttl: timedelta,
        now: datetime,
        *,
        token_hash: Optional[str] = None,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET expires_at = %s, last_activity = %s, token_hash = COALESCE(%s, token_hash)
                WHERE id = %s AND is_active AND expires_at > %s
                RETURNING *
                """,
                (now + ttl, now, token_hash, session_id, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_session_by_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE token_hash = %s AND is_active",
                (token_hash,),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
            return cur.rowcount

    # activity
    def log_activity(
        self, user_id: str, action: str, details: Optional[Dict] = None
    ) -> Activity:
        activity = Activity(
            id=str(uuid.uuid4()), user_id=user_id, action=action, details=dict(details or {})
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO user_activity (id, user_id, action, details, created_at) VALUES (%s, %s, %s, %s, %s)",
                (
                    activity.id,
                    activity.user_id,
                    activity.action,
                    json.dumps(activity.details),
                    activity.timestamp,
                ),
            )
        return activity

    def list_activities(self, user_id: str, limit: int = 50) -> List[Activity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_activity WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [
            Activity(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                action=row["action"],
                details=_json(row.get("details")) or {},
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    # credit requests
    def create_credit_request(
        self, user_id: str, requested_credits: int, reason: str
    ) -> CreditRequest:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO credit_request (id, user_id, requested_credits, reason)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, requested_credits, reason),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._credit_request_from_row(row)

    def get_credit_request(self, request_id: str) -> Optional[CreditRequest]:
        try:
            uuid.UUID(str(request_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credit_request WHERE id = %s", (request_id,)
            ).fetchone()
        return self._credit_request_from_row(row) if row else None

    def list_credit_requests(
        self, *, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CreditRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM credit_request {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [self._credit_request_from_row(row) for row in rows]

    def count_credit_requests_by_status(self) -> Dict[str, int]:
        counts = {"pending": 0, "approved": 0, "rejected": 0}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM credit_request GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    def process_credit_request(
        self,
        request_id: str,
        *,
        status: str,
        admin_id: str,
        admin_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CreditRequest]:
        """Resolve a pending request; approval credits the user in the same transaction."""
        if self.get_credit_request(request_id) is None:
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM credit_request WHERE id = %s FOR UPDATE", (request_id,)
                ).fetchone()
                if not row:
                    return None
                if row["status"] != CREDIT_REQUEST_PENDING:
                    raise ConstraintViolation(
                        "request has already been processed",
                        {"request_id": request_id, "status": row["status"]},
                    )
                if status == "approved":
                    conn.execute(
                        "UPDATE app_user SET credits = credits + %s WHERE id = %s",
                        (row["requested_credits"], row["user_id"]),
                    )
                updated = conn.execute(
                    """
                    UPDATE credit_request
                    SET status = %s, admin_id = %s, admin_note = %s, processed_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status, admin_id, admin_note, now or utcnow(), request_id),
                ).fetchone()
        return self._credit_request_from_row(updated)

    # documents
    def create_document(
        self,
        user_id: str,
        title: str,
        content: str,
        *,
        file_type: str = "text/plain",
    ) -> Document:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO document (id, user_id, title, content, file_type, file_size)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        title,
                        content,
                        file_type,
                        len(content.encode("utf-8")),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._document_from_row(row)

    def get_document(self, document_id: str) -> Optional[Document]:
        try:
            uuid.UUID(str(document_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM document WHERE id = %s", (document_id,)).fetchone()
        return self._document_from_row(row) if row else None

    def list_documents(self, user_id: str, limit: int = 100) -> List[Document]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM document WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [self._document_from_row(row) for row in rows]

    def list_recent_documents(self, limit: int = 100) -> List[Document]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM document ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._document_from_row(row) for row in rows]

    def count_documents(self, *, since: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if since is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM document").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM document WHERE created_at >= %s", (since,)
                ).fetchone()
        return int(row["n"]) if row else 0

    def update_document(
        self,
        document_id: str,
        *,
        analysis: Optional[str] = None,
        status: Optional[str] = None,
        increment_views: bool = False,
    ) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE document
                SET analysis = COALESCE(%s, analysis),
                    status = COALESCE(%s, status),
                    views = views + %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (analysis, status, 1 if increment_views else 0, document_id),
            ).fetchone()
        return self._document_from_row(row) if row else None

    def delete_document(self, document_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM document WHERE id = %s", (document_id,))
            return cur.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Remove the user; dependent rows go with it through ON DELETE CASCADE."""
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0
