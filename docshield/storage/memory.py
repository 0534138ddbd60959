from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

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
    utc_date,
    utcnow,
)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Credit mutations go through the dedicated atomic helpers; ``update_user``
    never writes the balance so a stale user object cannot clobber it.
    """

    def __init__(self, fs_root: str, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.credit_requests: Dict[str, CreditRequest] = {}
        self.activities: List[Activity] = []
        self.documents: Dict[str, Document] = {}
        # RLock for all data operations; nested acquisitions happen when a
        # mutation persists state.
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

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
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                username=username or normalized.split("@", 1)[0],
                role=role,
                credits=credits,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.verification_token_hash and u.verification_token_hash == token_hash
                ),
                None,
            )

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.reset_token_hash and u.reset_token_hash == token_hash
                ),
                None,
            )

    def get_user_by_username(self, username: str) -> Optional[User]:
        wanted = (username or "").strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if (u.username or "").lower() == wanted), None
            )

    def search_users(
        self,
        query: Optional[str] = None,
        *,
        sort_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[List[User], int]:
        """Case-insensitive substring match on username or email, with the total match count."""
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"unsupported sort field: {sort_by}")
        needle = (query or "").strip().lower()
        with self._data_lock:
            matched = [
                u
                for u in self.users.values()
                if not needle or needle in (u.username or "").lower() or needle in u.email
            ]
        # None sorts last whichever way the list is ordered
        present = [u for u in matched if getattr(u, sort_by) is not None]
        missing = [u for u in matched if getattr(u, sort_by) is None]
        present.sort(key=lambda u: getattr(u, sort_by), reverse=descending)
        ordered = present + missing
        return ordered[offset : offset + limit], len(matched)

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def top_users_by_scans(self, limit: int = 5) -> List[User]:
        with self._data_lock:
            ranked = sorted(self.users.values(), key=lambda u: u.total_scans, reverse=True)
            return ranked[:limit]

    def update_user(self, user: User) -> User:
        """Persist profile, token, lockout and two-factor fields.

        The credit balance, reset marker and scan count are left untouched.
        """
        with self._data_lock:
            stored = self.users.get(user.id)
            if not stored:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            if stored is not user:
                if user.email != stored.email and any(
                    other.email == user.email for other in self.users.values() if other.id != user.id
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                for attr in (
                    "email",
                    "name",
                    "username",
                    "role",
                    "is_verified",
                    "verification_token_hash",
                    "verification_expires",
                    "reset_token_hash",
                    "reset_expires",
                    "login_attempts",
                    "two_factor",
                    "last_login",
                ):
                    setattr(stored, attr, getattr(user, attr))
            self._persist_state()
            return stored

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # credits
    def reset_daily_credits(
        self, user_id: str, daily_limit: int, now: datetime
    ) -> Optional[User]:
        """Refill the balance when ``now`` falls on a later UTC date than the last reset."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if utc_date(user.last_credit_reset) != utc_date(now):
                user.credits = daily_limit
                user.last_credit_reset = now
                self._persist_state()
            return user

    def decrement_credits_if_positive(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.credits <= 0:
                return None
            user.credits -= 1
            self._persist_state()
            return user.credits

    def refund_credit(self, user_id: str, cap: int) -> Optional[int]:
        """Give one credit back without lifting the balance above ``cap``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.credits = max(user.credits, min(user.credits + 1, cap))
            self._persist_state()
            return user.credits

    def set_credits(
        self, user_id: str, credits: int, *, last_credit_reset: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.credits = max(0, credits)
            if last_credit_reset is not None:
                user.last_credit_reset = last_credit_reset
            self._persist_state()
            return user

    def increment_total_scans(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.total_scans += 1
            self._persist_state()

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                token_hash,
                ttl,
                session_id=session_id,
                token_class=token_class,
                device_info=device_info,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_active_session(
        self, token_hash: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.token_hash == token_hash
                    and sess.user_id == user_id
                    and sess.is_valid(now)
                ):
                    return sess
            return None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity = now
            self._persist_state()

    def extend_session(
        self,
        session_id: str,
        ttl: timedelta,
        now: datetime,
        *,
        token_hash: Optional[str] = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid(now):
                return None
            sess.extend(ttl, now)
            if token_hash:
                sess.token_hash = token_hash
            self._persist_state()
            return sess

    def deactivate_session_by_token(self, token_hash: str) -> bool:
        with self._data_lock:
            changed = False
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and sess.is_active:
                    sess.is_active = False
                    changed = True
            if changed:
                self._persist_state()
            return changed

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                count += 1
            if count:
                self._persist_state()
            return count

    # activity
    def log_activity(
        self, user_id: str, action: str, details: Optional[Dict] = None
    ) -> Activity:
        with self._data_lock:
            activity = Activity(
                id=str(uuid.uuid4()),
                user_id=user_id,
                action=action,
                details=dict(details or {}),
            )
            self.activities.append(activity)
            self._persist_state()
            return activity

    def list_activities(self, user_id: str, limit: int = 50) -> List[Activity]:
        with self._data_lock:
            results = [a for a in self.activities if a.user_id == user_id]
            results.sort(key=lambda a: a.timestamp, reverse=True)
            return results[:limit]

    # credit requests
    def create_credit_request(
        self, user_id: str, requested_credits: int, reason: str
    ) -> CreditRequest:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            req = CreditRequest(
                id=str(uuid.uuid4()),
                user_id=user_id,
                requested_credits=requested_credits,
                reason=reason,
            )
            self.credit_requests[req.id] = req
            self._persist_state()
            return req

    def get_credit_request(self, request_id: str) -> Optional[CreditRequest]:
        with self._data_lock:
            return self.credit_requests.get(request_id)

    def list_credit_requests(
        self, *, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CreditRequest]:
        with self._data_lock:
            results = [
                r
                for r in self.credit_requests.values()
                if (not user_id or r.user_id == user_id) and (not status or r.status == status)
            ]
            return sorted(results, key=lambda r: r.created_at, reverse=True)

    def count_credit_requests_by_status(self) -> Dict[str, int]:
        with self._data_lock:
            counts = {"pending": 0, "approved": 0, "rejected": 0}
            for req in self.credit_requests.values():
                counts[req.status] = counts.get(req.status, 0) + 1
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
        """Resolve a pending request; approval credits the user in the same critical section."""
        with self._data_lock:
            req = self.credit_requests.get(request_id)
            if not req:
                return None
            if req.status != CREDIT_REQUEST_PENDING:
                raise ConstraintViolation(
                    "request has already been processed",
                    {"request_id": request_id, "status": req.status},
                )
            if status == "approved":
                user = self.users.get(req.user_id)
                if not user:
                    raise ConstraintViolation(
                        "user does not exist", {"user_id": req.user_id}
                    )
                user.credits += req.requested_credits
            req.status = status
            req.admin_id = admin_id
            req.admin_note = admin_note
            req.processed_at = now or utcnow()
            self._persist_state()
            return req

    # documents
    def create_document(
        self,
        user_id: str,
        title: str,
        content: str,
        *,
        file_type: str = "text/plain",
    ) -> Document:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            doc = Document(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                content=content,
                file_type=file_type,
                file_size=len(content.encode("utf-8")),
            )
            self.documents[doc.id] = doc
            self._persist_state()
            return doc

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._data_lock:
            return self.documents.get(document_id)

    def list_documents(self, user_id: str, limit: int = 100) -> List[Document]:
        with self._data_lock:
            results = [d for d in self.documents.values() if d.user_id == user_id]
            results.sort(key=lambda d: d.created_at, reverse=True)
            return results[:limit]

    def list_recent_documents(self, limit: int = 100) -> List[Document]:
        with self._data_lock:
            results = sorted(
                self.documents.values(), key=lambda d: d.created_at, reverse=True
            )
            return results[:limit]

    def count_documents(self, *, since: Optional[datetime] = None) -> int:
        with self._data_lock:
            if since is None:
                return len(self.documents)
            return sum(1 for d in self.documents.values() if d.created_at >= since)

    def update_document(
        self,
        document_id: str,
        *,
        analysis: Optional[str] = None,
        status: Optional[str] = None,
        increment_views: bool = False,
    ) -> Optional[Document]:
        with self._data_lock:
            doc = self.documents.get(document_id)
            if not doc:
                return None
            if analysis is not None:
                doc.analysis = analysis
            if status is not None:
                doc.status = status
            if increment_views:
                doc.views += 1
            doc.updated_at = utcnow()
            self._persist_state()
            return doc

    def delete_document(self, document_id: str) -> bool:
        with self._data_lock:
            if self.documents.pop(document_id, None) is None:
                return False
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        """Remove the user with their credentials, sessions, documents, requests and activity."""
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.sessions = {k: s for k, s in self.sessions.items() if s.user_id != user_id}
            self.documents = {k: d for k, d in self.documents.items() if d.user_id != user_id}
            self.credit_requests = {
                k: r for k, r in self.credit_requests.items() if r.user_id != user_id
            }
            self.activities = [a for a in self.activities if a.user_id != user_id]
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {
                        "user_id": user_id,
                        "password_hash": creds[0],
                        "password_algo": creds[1],
                    }
                    for user_id, creds in self.credentials.items()
                ],
                "sessions": [self._serialize_session(s) for s in self.sessions.values()],
                "credit_requests": [
                    self._serialize_credit_request(r) for r in self.credit_requests.values()
                ],
                "activities": [self._serialize_activity(a) for a in self.activities],
                "documents": [self._serialize_document(d) for d in self.documents.values()],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credit_requests = {
            r["id"]: self._deserialize_credit_request(r)
            for r in data.get("credit_requests", [])
        }
        self.activities = [
            self._deserialize_activity(a) for a in data.get("activities", [])
        ]
        self.documents = {
            d["id"]: self._deserialize_document(d) for d in data.get("documents", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "username": user.username,
            "role": user.role,
            "credits": user.credits,
            "last_credit_reset": self._serialize_datetime(user.last_credit_reset),
            "total_scans": user.total_scans,
            "is_verified": user.is_verified,
            "verification_token_hash": user.verification_token_hash,
            "verification_expires": self._serialize_datetime(user.verification_expires),
            "reset_token_hash": user.reset_token_hash,
            "reset_expires": self._serialize_datetime(user.reset_expires),
            "login_attempts": serialize_login_attempts(user.login_attempts),
            "two_factor": serialize_two_factor(user.two_factor, self._mfa_cipher),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            username=data.get("username"),
            role=data.get("role", "user"),
            credits=int(data.get("credits", 0)),
            last_credit_reset=self._deserialize_datetime(data.get("last_credit_reset"))
            or utcnow(),
            total_scans=int(data.get("total_scans", 0)),
            is_verified=bool(data.get("is_verified", False)),
            verification_token_hash=data.get("verification_token_hash"),
            verification_expires=self._deserialize_datetime(data.get("verification_expires")),
            reset_token_hash=data.get("reset_token_hash"),
            reset_expires=self._deserialize_datetime(data.get("reset_expires")),
            login_attempts=deserialize_login_attempts(data.get("login_attempts")),
            two_factor=deserialize_two_factor(data.get("two_factor"), self._mfa_cipher),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "token_class": session.token_class,
            "device_info": session.device_info.to_dict(),
            "is_active": session.is_active,
            "last_activity": self._serialize_datetime(session.last_activity),
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            token_class=data.get("token_class", "session"),
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            is_active=bool(data.get("is_active", False)),
            last_activity=self._deserialize_datetime(data.get("last_activity")) or utcnow(),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_credit_request(self, req: CreditRequest) -> dict:
        return {
            "id": req.id,
            "user_id": req.user_id,
            "requested_credits": req.requested_credits,
            "reason": req.reason,
            "status": req.status,
            "admin_id": req.admin_id,
            "admin_note": req.admin_note,
            "created_at": self._serialize_datetime(req.created_at),
            "processed_at": self._serialize_datetime(req.processed_at),
        }

    def _deserialize_credit_request(self, data: dict) -> CreditRequest:
        return CreditRequest(
            id=data["id"],
            user_id=data["user_id"],
            requested_credits=int(data["requested_credits"]),
            reason=data.get("reason", ""),
            status=data.get("status", CREDIT_REQUEST_PENDING),
            admin_id=data.get("admin_id"),
            admin_note=data.get("admin_note"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            processed_at=self._deserialize_datetime(data.get("processed_at")),
        )

    def _serialize_activity(self, activity: Activity) -> dict:
        return {
            "id": activity.id,
            "user_id": activity.user_id,
            "action": activity.action,
            "details": activity.details,
            "timestamp": self._serialize_datetime(activity.timestamp),
        }

    def _deserialize_activity(self, data: dict) -> Activity:
        return Activity(
            id=data["id"],
            user_id=data["user_id"],
            action=data["action"],
            details=data.get("details") or {},
            timestamp=self._deserialize_datetime(data.get("timestamp")) or utcnow(),
        )

    def _serialize_document(self, doc: Document) -> dict:
        return {
            "id": doc.id,
            "user_id": doc.user_id,
            "title": doc.title,
            "content": doc.content,
            "file_type": doc.file_type,
            "file_size": doc.file_size,
            "analysis": doc.analysis,
            "status": doc.status,
            "views": doc.views,
            "created_at": self._serialize_datetime(doc.created_at),
            "updated_at": self._serialize_datetime(doc.updated_at),
        }

    def _deserialize_document(self, data: dict) -> Document:
        return Document(
            id=data["id"],
            user_id=data["user_id"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            file_type=data.get("file_type", "text/plain"),
            file_size=int(data.get("file_size", 0)),
            analysis=data.get("analysis"),
            status=data.get("status", "uploaded"),
            views=int(data.get("views", 0)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
