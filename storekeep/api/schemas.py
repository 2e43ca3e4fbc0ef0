from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "locked",
    "delivery_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"The {label} field is required.")
    return value


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")


def _validate_email(value: Optional[str]) -> str:
    value = _require_text(value, "Email")
    normalized = _normalize_unicode(value.strip())
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValueError("The Email field is not a valid e-mail address.")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("The Email field is not a valid e-mail address.")
    return normalized


def _required(alias: Optional[str] = None):
    # validate_default so a missing key reports "required" instead of passing as None
    return Field(None, alias=alias, validate_default=True)


class FormModel(BaseModel):
    """Form bodies accept camelCase names as well as snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LoginForm(FormModel):
    username: Optional[str] = _required()
    password: Optional[str] = _required()
    remember_me: bool = Field(False, alias="rememberMe")
    return_url: Optional[str] = Field(None, alias="returnUrl")

    @field_validator("username")
    @classmethod
    def _username_required(cls, value: Optional[str]) -> str:
        return _require_text(value, "Username")

    @field_validator("password")
    @classmethod
    def _password_required(cls, value: Optional[str]) -> str:
        return _require_text(value, "Password")


class LoginWith2faForm(FormModel):
    code: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("code", "twoFactorCode"),
        validate_default=True,
    )
    remember_me: bool = Field(False, alias="rememberMe")
    remember_machine: bool = Field(False, alias="rememberMachine")
    return_url: Optional[str] = Field(None, alias="returnUrl")

    @field_validator("code")
    @classmethod
    def _code_shape(cls, value: Optional[str]) -> str:
        value = _require_text(value, "Authenticator code")
        if not 6 <= len(value) <= 7:
            raise ValueError(
                "The Authenticator code must be at least 6 and at max 7 characters long."
            )
        return value.replace(" ", "").replace("-", "")


class RegisterForm(FormModel):
    username: Optional[str] = _required()
    email: Optional[str] = _required()
    password: Optional[str] = _required()
    security_question: Optional[str] = Field(None, alias="securityQuestion")
    security_answer: Optional[str] = Field(None, alias="securityAnswer")

    @field_validator("username")
    @classmethod
    def _username_required(cls, value: Optional[str]) -> str:
        return _require_text(value, "Username").strip()

    @field_validator("email")
    @classmethod
    def _email_valid(cls, value: Optional[str]) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password_required(cls, value: Optional[str]) -> str:
        return _require_text(value, "Password")

    @model_validator(mode="after")
    def _question_pair(self) -> "RegisterForm":
        has_question = bool(self.security_question and self.security_question.strip())
        has_answer = bool(self.security_answer)
        if has_question != has_answer:
            raise ValueError(
                "Provide both a security question and an answer, or leave both empty."
            )
        return self


class ForgotPasswordForm(FormModel):
    email: Optional[str] = _required()

    @field_validator("email")
    @classmethod
    def _email_valid(cls, value: Optional[str]) -> str:
        return _validate_email(value)


class SecurityQuestionForm(FormModel):
    email: Optional[str] = _required()
    answer: Optional[str] = _required()

    @field_validator("email")
    @classmethod
    def _email_valid(cls, value: Optional[str]) -> str:
        return _validate_email(value)

    @field_validator("answer")
    @classmethod
    def _answer_required(cls, value: Optional[str]) -> str:
        # returned verbatim; surrounding whitespace is part of the answer
        return _require_text(value, "Answer")


class ResetPasswordForm(FormModel):
    email: Optional[str] = _required()
    new_password: Optional[str] = _required("newPassword")
    confirm_password: Optional[str] = Field(None, alias="confirmPassword")

    @field_validator("email")
    @classmethod
    def _email_valid(cls, value: Optional[str]) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _password_required(cls, value: Optional[str]) -> str:
        return _require_text(value, "New password")


class RoleForm(FormModel):
    """Role name is checked by the identity provider so its messages surface unchanged."""

    id: Optional[str] = None
    name: Optional[str] = None
