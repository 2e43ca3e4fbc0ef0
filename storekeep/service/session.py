from __future__ import annotations

import secrets
import threading
import time
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from starlette.responses import Response

from storekeep.config import Settings
from storekeep.logging import get_logger

logger = get_logger(__name__)

SESSION_ATTRIBUTE_KEYS = ("username", "role", "EmployeeId", "EmployeeLocationId")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionAttributes:
    """Per-session identity values written once a principal is fully signed in."""

    username: str
    role: str
    employee_id: int
    employee_location_id: int

    def as_session_values(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "role": self.role,
            "EmployeeId": self.employee_id,
            "EmployeeLocationId": self.employee_location_id,
        }

    @classmethod
    def from_session_values(
        cls, values: Optional[Mapping[str, Any]]
    ) -> Optional["SessionAttributes"]:
        if not values or any(key not in values for key in SESSION_ATTRIBUTE_KEYS):
            return None
        return cls(
            username=str(values["username"]),
            role=str(values["role"]),
            employee_id=int(values["EmployeeId"]),
            employee_location_id=int(values["EmployeeLocationId"]),
        )


@dataclass(frozen=True)
class PendingTwoFactor:
    user_id: str
    remember_me: bool
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())


@dataclass
class BrowserSession:
    id: str
    csrf_token: str
    created_at: datetime = field(default_factory=_utcnow)
    user_id: Optional[str] = None
    persistent: bool = False
    attributes: Optional[SessionAttributes] = None
    pending_two_factor: Optional[PendingTwoFactor] = None
    recovery_email: Optional[str] = None

    @classmethod
    def new(cls) -> "BrowserSession":
        return cls(id=secrets.token_urlsafe(32), csrf_token=secrets.token_urlsafe(32))

    def to_dict(self) -> Dict[str, Any]:
        pending = self.pending_two_factor
        return {
            "id": self.id,
            "csrf_token": self.csrf_token,
            "created_at": self.created_at.isoformat(),
            "user_id": self.user_id,
            "persistent": self.persistent,
            "attributes": self.attributes.as_session_values() if self.attributes else None,
            "pending_two_factor": (
                {
                    "user_id": pending.user_id,
                    "remember_me": pending.remember_me,
                    "expires_at": pending.expires_at.isoformat(),
                }
                if pending
                else None
            ),
            "recovery_email": self.recovery_email,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BrowserSession":
        pending = data.get("pending_two_factor")
        return cls(
            id=data["id"],
            csrf_token=data["csrf_token"],
            created_at=datetime.fromisoformat(data["created_at"]),
            user_id=data.get("user_id"),
            persistent=bool(data.get("persistent", False)),
            attributes=SessionAttributes.from_session_values(data.get("attributes")),
            pending_two_factor=(
                PendingTwoFactor(
                    user_id=pending["user_id"],
                    remember_me=bool(pending.get("remember_me", False)),
                    expires_at=datetime.fromisoformat(pending["expires_at"]),
                )
                if pending
                else None
            ),
            recovery_email=data.get("recovery_email"),
        )


class SessionContext:
    """Mutable per-request handle over a browser session.

    Routes and services change the session only through these methods; the
    session manager writes the result and the cookies once the response is ready.
    """

    def __init__(
        self,
        session: BrowserSession,
        *,
        is_new: bool,
        had_cookie: bool = False,
        remembered_client_token: Optional[str] = None,
    ) -> None:
        self.session = session
        self.is_new = is_new
        self.had_cookie = had_cookie
        self.dirty = False
        self.rotated_from: Optional[str] = None
        self.remembered_client_token = remembered_client_token
        self.new_remembered_client: Optional[Tuple[str, int]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id

    @property
    def is_authenticated(self) -> bool:
        return self.session.user_id is not None

    @property
    def attributes(self) -> Optional[SessionAttributes]:
        return self.session.attributes

    @property
    def pending_two_factor(self) -> Optional[PendingTwoFactor]:
        return self.session.pending_two_factor

    def _replace(self, session: BrowserSession) -> None:
        if self.rotated_from is None and not self.is_new:
            self.rotated_from = self.session.id
        self.session = session
        self.dirty = True

    def sign_in(
        self,
        user_id: str,
        attributes: Optional[SessionAttributes],
        *,
        persistent: bool,
    ) -> None:
        """Establish the principal and its attributes in one step under a fresh session id."""
        fresh = BrowserSession.new()
        fresh.user_id = user_id
        fresh.persistent = persistent
        fresh.attributes = attributes
        self._replace(fresh)

    def begin_two_factor(self, user_id: str, *, remember_me: bool, expires_at: datetime) -> None:
        fresh = BrowserSession.new()
        fresh.pending_two_factor = PendingTwoFactor(
            user_id=user_id, remember_me=remember_me, expires_at=expires_at
        )
        self._replace(fresh)

    def clear_two_factor(self) -> None:
        if self.session.pending_two_factor is not None:
            self.session = replace(self.session, pending_two_factor=None)
            self.dirty = True

    def sign_out(self) -> None:
        """Drop the principal, its attributes and every other value held in the session."""
        if not self.is_new and self.rotated_from is None:
            self.rotated_from = self.session.id
        self.session = BrowserSession.new()
        self.is_new = True
        self.dirty = False

    def antiforgery_token(self) -> str:
        if self.is_new:
            self.dirty = True
        return self.session.csrf_token

    def validate_antiforgery(self, token: Optional[str]) -> bool:
        if self.is_new or not token:
            return False
        return secrets.compare_digest(self.session.csrf_token, token)

    def mark_recovery_verified(self, email: str) -> None:
        self.session.recovery_email = email.strip().lower()
        self.dirty = True

    def recovery_verified_for(self, email: str) -> bool:
        stored = self.session.recovery_email
        return bool(stored and email and stored == email.strip().lower())

    def clear_recovery(self) -> None:
        if self.session.recovery_email is not None:
            self.session.recovery_email = None
            self.dirty = True

    def remember_client(self, token: str, days: int) -> None:
        self.new_remembered_client = (token, days)
        self.remembered_client_token = token


current_session_var: ContextVar[Optional[SessionContext]] = ContextVar(
    "current_session", default=None
)


def get_session_context() -> SessionContext:
    ctx = current_session_var.get()
    if ctx is None:
        raise RuntimeError("no browser session bound to the current request")
    return ctx


def get_session_attributes() -> Optional[SessionAttributes]:
    """Session attributes of the current request, or None when not signed in."""
    ctx = current_session_var.get()
    if ctx is None:
        return None
    return ctx.attributes


class SessionBackend(Protocol):
    async def get_browser_session(self, session_id: str) -> Optional[dict]: ...

    async def save_browser_session(
        self, session_id: str, payload: dict, ttl_seconds: int
    ) -> None: ...

    async def delete_browser_session(self, session_id: str) -> None: ...

    async def purge_expired(self) -> int: ...


class MemorySessionStore:
    """Process-local session backend with per-entry expiry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[dict, float]] = {}

    def _purge_locked(self, now: float) -> int:
        stale = [sid for sid, (_, expires) in self._entries.items() if expires <= now]
        for sid in stale:
            self._entries.pop(sid, None)
        return len(stale)

    async def get_browser_session(self, session_id: str) -> Optional[dict]:
        now = time.monotonic()
        with self._lock:
            self._purge_locked(now)
            entry = self._entries.get(session_id)
            return dict(entry[0]) if entry else None

    async def save_browser_session(
        self, session_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._entries[session_id] = (dict(payload), time.monotonic() + max(1, ttl_seconds))

    async def delete_browser_session(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    async def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(time.monotonic())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SessionManager:
    def __init__(self, backend: SessionBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    @property
    def cookie_name(self) -> str:
        return self.settings.session_cookie_name

    @property
    def remembered_client_cookie_name(self) -> str:
        return f"{self.settings.session_cookie_name}_2fa"

    def _ttl_seconds(self, session: BrowserSession) -> int:
        if session.persistent:
            return self.settings.remember_me_days * 86400
        return self.settings.session_idle_minutes * 60

    async def load(self, cookies: Mapping[str, str]) -> SessionContext:
        session_id = cookies.get(self.cookie_name)
        remembered = cookies.get(self.remembered_client_cookie_name)
        if session_id:
            payload = await self.backend.get_browser_session(session_id)
            if payload:
                try:
                    session = BrowserSession.from_dict(payload)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("browser_session_corrupt", error=str(exc))
                else:
                    return SessionContext(
                        session,
                        is_new=False,
                        had_cookie=True,
                        remembered_client_token=remembered,
                    )
        return SessionContext(
            BrowserSession.new(),
            is_new=True,
            had_cookie=bool(session_id),
            remembered_client_token=remembered,
        )

    async def commit(self, ctx: SessionContext, response: Response) -> None:
        if ctx.rotated_from:
            await self.backend.delete_browser_session(ctx.rotated_from)
        session = ctx.session
        secure = self.settings.session_cookie_secure
        if ctx.dirty or not ctx.is_new:
            ttl = self._ttl_seconds(session)
            await self.backend.save_browser_session(session.id, session.to_dict(), ttl)
            response.set_cookie(
                self.cookie_name,
                session.id,
                max_age=ttl if session.persistent else None,
                httponly=True,
                secure=secure,
                samesite="lax",
                path="/",
            )
        elif ctx.had_cookie:
            response.delete_cookie(
                self.cookie_name, path="/", httponly=True, secure=secure, samesite="lax"
            )
        if ctx.new_remembered_client:
            token, days = ctx.new_remembered_client
            response.set_cookie(
                self.remembered_client_cookie_name,
                token,
                max_age=int(timedelta(days=days).total_seconds()),
                httponly=True,
                secure=secure,
                samesite="lax",
                path="/",
            )

    async def sweep(self) -> int:
        removed = await self.backend.purge_expired()
        if removed:
            logger.info("browser_sessions_swept", removed=removed)
        return removed
