from __future__ import annotations

import asyncio
import hmac
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Type
from urllib.parse import urlencode

from storekeep.config import Settings
from storekeep.logging import get_logger
from storekeep.service.dashboard import DEFAULT_ROLE, dashboard_for
from storekeep.service.email import EmailService
from storekeep.service.errors import (
    AccountLocked,
    AuthenticationRejected,
    ForbiddenError,
    ServiceError,
    TwoFactorDeliveryFailure,
    ValidationError,
)
from storekeep.service.identity import IdentityService, SignInResult
from storekeep.service.session import SessionAttributes, SessionContext
from storekeep.storage.models import User

logger = get_logger(__name__)

LOGIN_REJECTED = "Invalid login attempt or user is inactive."
LOGIN_FAILED = "Invalid login attempt."
LOGIN_LOCKED = "User account is locked out."
TWO_FACTOR_SEND_FAILED = "Failed to send 2FA code. Please try again later."
TWO_FACTOR_INACTIVE = "User is inactive."
TWO_FACTOR_LOCKED = "User is locked out."
TWO_FACTOR_NOT_ENABLED = "2FA is not enabled for this user."
TWO_FACTOR_INVALID = "Invalid 2FA code."
NO_ACTIVE_USER = "No active user found with that email address."
QUESTION_NOT_SET = "Security question not set for this account. Contact support."
ANSWER_NOT_SET = "Invalid email or security answer not set."
ANSWER_INCORRECT = "Incorrect security answer."
RESET_NO_USER = "No user found with that email address."
RESET_NOT_VERIFIED = "Answer the security question before choosing a new password."
RESET_MISMATCH = "The password and confirmation password do not match."
REGISTRATION_DISABLED = "Registration is disabled."

_INT32_PATTERN = re.compile(r"^\s*[+-]?\d+\s*$")
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


def parse_employee_id(user_id: str) -> int:
    """User ids that are not 32-bit integers map to employee 1."""
    if user_id and _INT32_PATTERN.match(user_id):
        value = int(user_id)
        if _INT32_MIN <= value <= _INT32_MAX:
            return value
    return 1


def is_local_url(url: Optional[str]) -> bool:
    if not url:
        return False
    if url.startswith("~/"):
        # "~/" is app-relative; what follows must still be a path, not a host
        url = url[1:]
    if not url.startswith("/"):
        return False
    return not (url.startswith("//") or url.startswith("/\\"))


def safe_return_url(url: Optional[str], fallback: str = "/") -> str:
    if not is_local_url(url):
        return fallback
    return "/" + url[2:] if url.startswith("~/") else url


class AuthFlowService:
    """Login, two-factor, logout, registration and security-question recovery flows."""

    def __init__(
        self, identity: IdentityService, email: EmailService, settings: Settings
    ) -> None:
        self.identity = identity
        self.email = email
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def ensure_active(
        self,
        user: Optional[User],
        *,
        entry_point: str,
        message: str,
        error_cls: Type[ServiceError] = AuthenticationRejected,
    ) -> User:
        """Reject unknown and deactivated users at an authentication entry point."""
        if user is None or not user.is_active:
            logger.warning(
                "auth_gate_rejected",
                entry_point=entry_point,
                user_id=user.id if user else None,
                reason="unknown_user" if user is None else "inactive",
            )
            raise error_cls(message)
        return user

    def build_session_attributes(self, user: User) -> SessionAttributes:
        roles = self.identity.get_roles(user)
        return SessionAttributes(
            username=user.name if user.name is not None else user.user_name,
            role=roles[0] if roles else DEFAULT_ROLE,
            employee_id=parse_employee_id(user.id),
            employee_location_id=user.location_id or 0,
        )

    async def login(
        self,
        session: SessionContext,
        user_name: str,
        password: str,
        *,
        remember_me: bool = False,
        return_url: Optional[str] = None,
    ) -> str:
        """Verify credentials and return the redirect target for the next step."""
        user_name = (user_name or "").strip()
        user = self.identity.find_by_name(user_name)
        user = self.ensure_active(user, entry_point="login", message=LOGIN_REJECTED)

        result = self.identity.check_password_sign_in(
            user, password, remembered_client_token=session.remembered_client_token
        )
        if result is SignInResult.SUCCEEDED:
            attributes = self.build_session_attributes(user)
            session.sign_in(user.id, attributes, persistent=remember_me)
            target = dashboard_for(attributes.role)
            logger.info(
                "login_succeeded", username=user.user_name, role=attributes.role, target=target
            )
            return target

        if result is SignInResult.REQUIRES_TWO_FACTOR:
            code = self.identity.generate_two_factor_code(user)
            sent = await asyncio.to_thread(self.email.send_two_factor_code, user.email, code)
            if not sent:
                logger.error("two_factor_delivery_failed", username=user.user_name)
                raise TwoFactorDeliveryFailure(TWO_FACTOR_SEND_FAILED)
            session.begin_two_factor(
                user.id,
                remember_me=remember_me,
                expires_at=self._now()
                + timedelta(minutes=self.settings.two_factor_pending_minutes),
            )
            logger.info("login_two_factor_required", username=user.user_name)
            query = {"rememberMe": "true" if remember_me else "false"}
            if return_url:
                query["returnUrl"] = return_url
            return f"/Auth/LoginWith2fa?{urlencode(query)}"

        if result is SignInResult.LOCKED_OUT:
            logger.warning("login_locked_out", username=user.user_name)
            raise AccountLocked(LOGIN_LOCKED)

        logger.warning("login_failed", username=user.user_name)
        raise AuthenticationRejected(LOGIN_FAILED)

    def pending_two_factor_user(self, session: SessionContext) -> Optional[User]:
        pending = session.pending_two_factor
        if pending is None:
            return None
        if pending.is_expired(self._now()):
            session.clear_two_factor()
            return None
        return self.identity.find_by_id(pending.user_id)

    async def complete_two_factor(
        self,
        session: SessionContext,
        code: str,
        *,
        remember_machine: bool = False,
        return_url: Optional[str] = None,
    ) -> str:
        pending = session.pending_two_factor
        user = self.pending_two_factor_user(session)
        if user is None or pending is None:
            logger.warning("two_factor_no_pending_principal")
            raise AuthenticationRejected(TWO_FACTOR_INVALID)

        result = self.identity.two_factor_sign_in(user, code)
        if result is SignInResult.SUCCEEDED:
            try:
                self.ensure_active(user, entry_point="two_factor", message=TWO_FACTOR_INACTIVE)
            except AuthenticationRejected:
                session.sign_out()
                raise
            attributes = self.build_session_attributes(user)
            session.sign_in(user.id, attributes, persistent=pending.remember_me)
            if remember_machine:
                token = self.identity.remember_client(user)
                session.remember_client(token, self.settings.remember_client_days)
            target = safe_return_url(return_url)
            logger.info("two_factor_succeeded", username=user.user_name, target=target)
            return target

        if result is SignInResult.LOCKED_OUT:
            logger.warning("two_factor_locked_out", username=user.user_name)
            raise AccountLocked(TWO_FACTOR_LOCKED)
        if result is SignInResult.NOT_ALLOWED:
            logger.warning("two_factor_not_enabled", username=user.user_name)
            raise AuthenticationRejected(TWO_FACTOR_NOT_ENABLED)
        logger.warning("two_factor_invalid_code", username=user.user_name)
        raise AuthenticationRejected(TWO_FACTOR_INVALID)

    def logout(self, session: SessionContext) -> str:
        attributes = session.attributes
        logger.info(
            "logout", username=attributes.username if attributes else None, user_id=session.user_id
        )
        session.sign_out()
        return "/Auth/Login"

    def register(
        self,
        session: SessionContext,
        *,
        user_name: str,
        email: str,
        password: str,
        security_question: Optional[str] = None,
        security_answer: Optional[str] = None,
    ) -> str:
        if not self.settings.allow_registration:
            raise ForbiddenError(REGISTRATION_DISABLED)
        result, user = self.identity.create_user(
            user_name,
            email,
            password,
            name=user_name,
            phone="",
            location_id=None,
            is_active=True,
            security_question=security_question,
            security_answer=security_answer,
        )
        if not result.succeeded or user is None:
            messages = result.messages
            logger.info("registration_rejected", username=user_name, errors=len(messages))
            raise ValidationError(messages[0], detail={"errors": messages})
        # principal only; attributes are written by the login flow
        session.sign_in(user.id, None, persistent=False)
        logger.info("registration_succeeded", username=user_name, user_id=user.id)
        return "/Home/Index"

    def forgot_password(self, email: str) -> str:
        user = self.identity.find_by_email(email)
        self.ensure_active(user, entry_point="forgot_password", message=NO_ACTIVE_USER)
        logger.info("forgot_password_started", email=email)
        return f"/Auth/SecurityQuestion?{urlencode({'email': email})}"

    def security_question(self, email: str) -> str:
        user = self.identity.find_by_email(email)
        answer = self.identity.get_security_answer(user) if user else None
        if user is None or not user.security_question or not answer:
            logger.warning("security_question_missing", email=email)
            raise ValidationError(QUESTION_NOT_SET)
        return user.security_question

    def verify_security_answer(
        self, session: SessionContext, email: str, answer: str
    ) -> str:
        user = self.identity.find_by_email(email)
        stored = self.identity.get_security_answer(user) if user else None
        if user is None or not stored:
            logger.warning("security_answer_unavailable", email=email)
            raise ValidationError(ANSWER_NOT_SET)
        self.ensure_active(user, entry_point="security_answer", message=NO_ACTIVE_USER)
        # case-insensitive, whitespace is significant
        if not hmac.compare_digest(
            (answer or "").lower().encode(), stored.lower().encode()
        ):
            logger.warning("security_answer_incorrect", email=email)
            raise AuthenticationRejected(ANSWER_INCORRECT)
        session.mark_recovery_verified(email)
        logger.info("security_answer_verified", email=email)
        return f"/Auth/ResetPassword?{urlencode({'email': email})}"

    def reset_password(
        self,
        session: SessionContext,
        email: str,
        new_password: str,
        confirm_password: Optional[str] = None,
    ) -> str:
        user = self.identity.find_by_email(email)
        if user is None:
            logger.warning("reset_password_unknown_email", email=email)
            raise ValidationError(RESET_NO_USER)
        if not session.recovery_verified_for(email):
            logger.warning("reset_password_not_verified", email=email)
            raise ForbiddenError(RESET_NOT_VERIFIED)
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError(RESET_MISMATCH)
        result = self.identity.reset_password(user, new_password)
        if not result.succeeded:
            messages = result.messages
            logger.info("reset_password_rejected", email=email, errors=len(messages))
            raise ValidationError(messages[0], detail={"errors": messages})
        session.clear_recovery()
        self.identity.forget_clients(user)
        logger.info("reset_password_succeeded", email=email)
        return "/Auth/ResetPasswordConfirmation"
