from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from storekeep.config import Settings
from storekeep.logging import get_logger
from storekeep.storage.errors import ConstraintViolation
from storekeep.storage.models import RememberedClient, Role, User

logger = get_logger(__name__)

_USER_NAME_CHARS = re.compile(r"^[a-zA-Z0-9\-._@+]+$")


class IdentityStore(Protocol):
    def create_user(
        self,
        user_name: str,
        email: str,
        *,
        name: Optional[str] = None,
        phone: str = "",
        location_id: Optional[int] = None,
        is_active: bool = True,
        security_question: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_name(self, user_name: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_security_question(self, user_id: str, question: str, answer: str) -> None: ...

    def get_security_answer(self, user_id: str) -> Optional[str]: ...

    def set_two_factor_secret(self, user_id: str, secret: str) -> None: ...

    def get_two_factor_secret(self, user_id: str) -> Optional[str]: ...

    def add_remembered_client(
        self, token_digest: str, user_id: str, expires_at: datetime
    ) -> RememberedClient: ...

    def get_remembered_client(self, token_digest: str) -> Optional[RememberedClient]: ...

    def revoke_remembered_clients(self, user_id: str) -> int: ...

    def create_role(self, name: str) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def rename_role(self, role_id: str, name: str) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def add_user_to_role(self, user_id: str, role_id: str) -> None: ...

    def get_user_role_names(self, user_id: str) -> List[str]: ...


class SignInResult(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_TWO_FACTOR = "requires_two_factor"
    LOCKED_OUT = "locked_out"
    NOT_ALLOWED = "not_allowed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdentityError:
    code: str
    description: str


@dataclass
class IdentityResult:
    succeeded: bool
    errors: List[IdentityError] = field(default_factory=list)

    @classmethod
    def success(cls) -> "IdentityResult":
        return cls(succeeded=True)

    @classmethod
    def failed(cls, *errors: IdentityError) -> "IdentityResult":
        return cls(succeeded=False, errors=list(errors))

    @property
    def messages(self) -> List[str]:
        return [error.description for error in self.errors]


class IdentityService:
    """Credential, lockout, two-factor and role-membership provider.

    The auth flow treats this as an opaque identity provider: it never touches
    password hashes, failure counters or two-factor secrets directly.
    """

    def __init__(self, store: IdentityStore, settings: Settings) -> None:
        self.store: IdentityStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # lookups
    def find_by_name(self, user_name: str) -> Optional[User]:
        if not user_name:
            return None
        return self.store.get_user_by_name(user_name)

    def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return self.store.get_user_by_email(email)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    # policy
    def validate_password(self, password: str) -> List[IdentityError]:
        s = self.settings
        password = password or ""
        errors: List[IdentityError] = []
        if len(password) < s.password_required_length:
            errors.append(
                IdentityError(
                    "PasswordTooShort",
                    f"Passwords must be at least {s.password_required_length} characters.",
                )
            )
        if s.password_require_non_alphanumeric and all(c.isalnum() for c in password):
            errors.append(
                IdentityError(
                    "PasswordRequiresNonAlphanumeric",
                    "Passwords must have at least one non alphanumeric character.",
                )
            )
        if s.password_require_digit and not any("0" <= c <= "9" for c in password):
            errors.append(
                IdentityError(
                    "PasswordRequiresDigit",
                    "Passwords must have at least one digit ('0'-'9').",
                )
            )
        if s.password_require_lowercase and not any("a" <= c <= "z" for c in password):
            errors.append(
                IdentityError(
                    "PasswordRequiresLower",
                    "Passwords must have at least one lowercase ('a'-'z').",
                )
            )
        if s.password_require_uppercase and not any("A" <= c <= "Z" for c in password):
            errors.append(
                IdentityError(
                    "PasswordRequiresUpper",
                    "Passwords must have at least one uppercase ('A'-'Z').",
                )
            )
        return errors

    def _validate_user(
        self, user_name: str, email: str, *, exclude_id: Optional[str] = None
    ) -> List[IdentityError]:
        errors: List[IdentityError] = []
        if not user_name or not _USER_NAME_CHARS.match(user_name):
            errors.append(
                IdentityError(
                    "InvalidUserName",
                    f"Username '{user_name}' is invalid, can only contain letters or digits.",
                )
            )
        else:
            existing = self.store.get_user_by_name(user_name)
            if existing and existing.id != exclude_id:
                errors.append(
                    IdentityError("DuplicateUserName", f"Username '{user_name}' is already taken.")
                )
        local, _, domain = (email or "").partition("@")
        if not local or not domain:
            errors.append(IdentityError("InvalidEmail", f"Email '{email}' is invalid."))
        else:
            existing = self.store.get_user_by_email(email)
            if existing and existing.id != exclude_id:
                errors.append(IdentityError("DuplicateEmail", f"Email '{email}' is already taken."))
        return errors

    # users
    def create_user(
        self,
        user_name: str,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: str = "",
        location_id: Optional[int] = None,
        is_active: bool = True,
        security_question: Optional[str] = None,
        security_answer: Optional[str] = None,
    ) -> Tuple[IdentityResult, Optional[User]]:
        errors = self._validate_user(user_name, email) + self.validate_password(password)
        if errors:
            self.logger.info(
                "user_create_rejected",
                user_name=user_name,
                codes=[e.code for e in errors],
            )
            return IdentityResult.failed(*errors), None
        try:
            user = self.store.create_user(
                user_name,
                email,
                name=name,
                phone=phone,
                location_id=location_id,
                is_active=is_active,
            )
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field")
            if field_name == "email":
                error = IdentityError("DuplicateEmail", f"Email '{email}' is already taken.")
            else:
                error = IdentityError(
                    "DuplicateUserName", f"Username '{user_name}' is already taken."
                )
            return IdentityResult.failed(error), None
        self.save_password(user.id, password)
        if security_question and security_answer:
            self.store.set_security_question(user.id, security_question, security_answer)
        self.logger.info("user_created", user_id=user.id, user_name=user_name)
        return IdentityResult.success(), self.store.get_user(user.id)

    def set_active(self, user: User, is_active: bool) -> User:
        updated = self.store.update_user(user.id, is_active=is_active)
        return updated or user

    def set_security_question(self, user: User, question: str, answer: str) -> None:
        self.store.set_security_question(user.id, question, answer)

    def get_security_answer(self, user: User) -> Optional[str]:
        return self.store.get_security_answer(user.id)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            return False

    def reset_password(self, user: User, new_password: str) -> IdentityResult:
        errors = self.validate_password(new_password)
        if errors:
            return IdentityResult.failed(*errors)
        self.save_password(user.id, new_password)
        self.store.update_user(user.id, access_failed_count=0, lockout_end=None)
        self.logger.info("password_reset", user_id=user.id)
        return IdentityResult.success()

    # lockout
    def is_locked_out(self, user: User) -> bool:
        return user.is_locked_out(self._now())

    def _record_access_failure(self, user: User) -> bool:
        """Count a failed attempt; returns True when this failure locks the account."""
        count = user.access_failed_count + 1
        if count >= self.settings.lockout_max_failed_attempts:
            lockout_end = self._now() + timedelta(minutes=self.settings.lockout_minutes)
            self.store.update_user(user.id, access_failed_count=0, lockout_end=lockout_end)
            self.logger.warning(
                "account_locked_out", user_id=user.id, lockout_end=lockout_end.isoformat()
            )
            return True
        self.store.update_user(user.id, access_failed_count=count)
        return False

    def _reset_access_failures(self, user: User) -> None:
        if user.access_failed_count or user.lockout_end:
            self.store.update_user(user.id, access_failed_count=0, lockout_end=None)

    def check_password_sign_in(
        self,
        user: User,
        password: str,
        *,
        remembered_client_token: Optional[str] = None,
    ) -> SignInResult:
        if self.is_locked_out(user):
            return SignInResult.LOCKED_OUT
        if not self.verify_password(user.id, password):
            if self._record_access_failure(user):
                return SignInResult.LOCKED_OUT
            return SignInResult.FAILED
        self._reset_access_failures(user)
        if user.two_factor_enabled and not self.is_client_remembered(
            user, remembered_client_token
        ):
            return SignInResult.REQUIRES_TWO_FACTOR
        return SignInResult.SUCCEEDED

    # two-factor
    def set_two_factor_enabled(self, user: User, enabled: bool) -> User:
        updated = self.store.update_user(user.id, two_factor_enabled=enabled)
        if not enabled:
            self.store.revoke_remembered_clients(user.id)
        return updated or user

    def _two_factor_secret(self, user_id: str) -> str:
        secret = self.store.get_two_factor_secret(user_id)
        if not secret:
            secret = base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
            self.store.set_two_factor_secret(user_id, secret)
        return secret

    def _generate_totp(
        self, secret: str, timestamp: float, *, interval: int, digits: int = 6
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except ValueError:
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha256).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    def _verify_totp(self, secret: str, code: str, *, window: int = 1) -> bool:
        interval = self.settings.two_factor_code_interval_seconds
        now = time.time()
        for offset in range(-window, window + 1):
            generated = self._generate_totp(secret, now + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def generate_two_factor_code(self, user: User) -> str:
        secret = self._two_factor_secret(user.id)
        return self._generate_totp(
            secret, time.time(), interval=self.settings.two_factor_code_interval_seconds
        )

    def two_factor_sign_in(self, user: User, code: str) -> SignInResult:
        if self.is_locked_out(user):
            return SignInResult.LOCKED_OUT
        if not user.two_factor_enabled:
            return SignInResult.NOT_ALLOWED
        secret = self.store.get_two_factor_secret(user.id)
        if not secret or not code or not self._verify_totp(secret, code):
            if self._record_access_failure(user):
                return SignInResult.LOCKED_OUT
            return SignInResult.FAILED
        self._reset_access_failures(user)
        return SignInResult.SUCCEEDED

    # remembered 2fa clients
    def _client_digest(self, token: str) -> str:
        return hmac.new(
            self.settings.secret_key.encode(), token.encode(), hashlib.sha256
        ).hexdigest()

    def remember_client(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(days=self.settings.remember_client_days)
        self.store.add_remembered_client(self._client_digest(token), user.id, expires_at)
        self.logger.info("two_factor_client_remembered", user_id=user.id)
        return token

    def is_client_remembered(self, user: User, token: Optional[str]) -> bool:
        if not token:
            return False
        record = self.store.get_remembered_client(self._client_digest(token))
        if not record or record.user_id != user.id:
            return False
        return record.expires_at > self._now()

    def forget_clients(self, user: User) -> int:
        return self.store.revoke_remembered_clients(user.id)

    # roles
    def get_roles(self, user: User) -> List[str]:
        return self.store.get_user_role_names(user.id)

    def add_to_role(self, user: User, role_name: str) -> IdentityResult:
        role = self.store.get_role_by_name(role_name)
        if not role:
            return IdentityResult.failed(
                IdentityError("InvalidRoleName", f"Role {role_name} does not exist.")
            )
        try:
            self.store.add_user_to_role(user.id, role.id)
        except ConstraintViolation:
            return IdentityResult.failed(
                IdentityError("UserAlreadyInRole", f"User already in role '{role_name}'.")
            )
        return IdentityResult.success()

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def find_role_by_id(self, role_id: str) -> Optional[Role]:
        return self.store.get_role(role_id)

    def find_role_by_name(self, name: str) -> Optional[Role]:
        return self.store.get_role_by_name(name)

    def _validate_role_name(
        self, name: Optional[str], *, exclude_id: Optional[str] = None
    ) -> List[IdentityError]:
        if not name or not name.strip():
            return [IdentityError("InvalidRoleName", f"Role name '{name or ''}' is invalid.")]
        existing = self.store.get_role_by_name(name)
        if existing and existing.id != exclude_id:
            return [IdentityError("DuplicateRoleName", f"Role name '{name}' is already taken.")]
        return []

    def create_role(self, name: Optional[str]) -> Tuple[IdentityResult, Optional[Role]]:
        errors = self._validate_role_name(name)
        if errors:
            return IdentityResult.failed(*errors), None
        try:
            role = self.store.create_role(name)
        except ConstraintViolation:
            return (
                IdentityResult.failed(
                    IdentityError("DuplicateRoleName", f"Role name '{name}' is already taken.")
                ),
                None,
            )
        return IdentityResult.success(), role

    def update_role(self, role: Role, name: Optional[str]) -> IdentityResult:
        errors = self._validate_role_name(name, exclude_id=role.id)
        if errors:
            return IdentityResult.failed(*errors)
        try:
            self.store.rename_role(role.id, name)
        except ConstraintViolation:
            return IdentityResult.failed(
                IdentityError("DuplicateRoleName", f"Role name '{name}' is already taken.")
            )
        return IdentityResult.success()

    def delete_role(self, role: Role) -> IdentityResult:
        if not self.store.delete_role(role.id):
            return IdentityResult.failed(
                IdentityError("RoleNotFound", f"Role '{role.name}' was not found.")
            )
        return IdentityResult.success()
