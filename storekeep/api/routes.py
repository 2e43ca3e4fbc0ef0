from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Header, Query, Request

from storekeep.api.schemas import (
    ForgotPasswordForm,
    LoginForm,
    LoginWith2faForm,
    RegisterForm,
    ResetPasswordForm,
    RoleForm,
    SecurityQuestionForm,
)
from storekeep.api.views import bind_form, redirect, render, render_error
from storekeep.logging import get_logger
from storekeep.service.dashboard import ADMIN_ROLE
from storekeep.service.errors import (
    ForbiddenError,
    LoginRequired,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from storekeep.service.runtime import check_rate_limit, get_runtime
from storekeep.service.session import (
    SessionContext,
    get_session_attributes,
    get_session_context,
)

logger = get_logger(__name__)

router = APIRouter()

FormBody = Optional[Dict[str, Any]]


def _echo(payload: FormBody, **aliases: str) -> Dict[str, Any]:
    """Echo non-secret form values back into a view model; keys are camelCase=snake_case."""
    data = payload or {}
    return {camel: data.get(camel, data.get(snake)) for camel, snake in aliases.items()}


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0])
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": window_seconds})


def _login_url(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return f"/Auth/Login?{urlencode({'returnUrl': target})}"


def _check_antiforgery(token: Optional[str]) -> SessionContext:
    session = get_session_context()
    if not session.validate_antiforgery(token):
        logger.warning("antiforgery_rejected", has_token=bool(token))
        raise ForbiddenError("missing or invalid anti-forgery token")
    return session


async def require_antiforgery(
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> SessionContext:
    return _check_antiforgery(x_csrf_token)


async def require_signed_in(request: Request) -> SessionContext:
    session = get_session_context()
    if not session.is_authenticated:
        raise LoginRequired(_login_url(request))
    return session


def require_role(role_name: str):
    async def _require_role(request: Request) -> SessionContext:
        session = await require_signed_in(request)
        runtime = get_runtime()
        user = runtime.auth.ensure_active(
            runtime.identity.find_by_id(session.user_id),
            entry_point=f"require_role:{role_name}",
            message=f"{role_name} role required",
            error_cls=ForbiddenError,
        )
        roles = runtime.identity.get_roles(user)
        if role_name not in roles:
            logger.warning("role_required", role=role_name, user_id=session.user_id)
            raise ForbiddenError(f"{role_name} role required")
        return session

    return _require_role


require_admin = require_role(ADMIN_ROLE)


async def require_admin_form(
    request: Request,
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> SessionContext:
    await require_admin(request)
    return _check_antiforgery(x_csrf_token)


# -- authentication -------------------------------------------------------


@router.get("/Auth/Login", tags=["auth"])
async def login_page(return_url: Optional[str] = Query(None, alias="returnUrl")):
    session = get_session_context()
    return render(
        "Auth/Login",
        model={"username": "", "rememberMe": False, "returnUrl": return_url},
        view_data={"ReturnUrl": return_url},
        session=session,
    )


@router.post("/Auth/ValidateLogin", tags=["auth"])
async def validate_login(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    model = _echo(body, username="username", rememberMe="remember_me", returnUrl="return_url")
    view_data = {"ReturnUrl": model["returnUrl"]}
    try:
        form = bind_form(LoginForm, body)
    except ValidationError as exc:
        logger.info("login_form_invalid", fields=sorted(exc.detail.get("fields", {})))
        return render_error("Auth/Login", exc, model=model, view_data=view_data, session=session)

    await _enforce_rate_limit(
        runtime,
        f"login:{form.username.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
    )
    try:
        target = await runtime.auth.login(
            session,
            form.username,
            form.password,
            remember_me=form.remember_me,
            return_url=form.return_url,
        )
    except ServiceError as exc:
        return render_error("Auth/Login", exc, model=model, view_data=view_data, session=session)
    return redirect(target)


@router.get("/Auth/LoginWith2fa", tags=["auth"])
async def login_with_2fa_page(
    remember_me: bool = Query(False, alias="rememberMe"),
    return_url: Optional[str] = Query(None, alias="returnUrl"),
):
    runtime = get_runtime()
    session = get_session_context()
    if runtime.auth.pending_two_factor_user(session) is None:
        logger.info("two_factor_page_without_pending_principal")
        return redirect("/Auth/Login")
    return render(
        "Auth/LoginWith2fa",
        model={"rememberMe": remember_me, "rememberMachine": False, "returnUrl": return_url},
        view_data={"ReturnUrl": return_url},
        session=session,
    )


@router.post("/Auth/LoginWith2fa", tags=["auth"])
async def login_with_2fa(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    model = _echo(
        body,
        rememberMe="remember_me",
        rememberMachine="remember_machine",
        returnUrl="return_url",
    )
    view_data = {"ReturnUrl": model["returnUrl"]}
    try:
        form = bind_form(LoginWith2faForm, body)
    except ValidationError as exc:
        return render_error(
            "Auth/LoginWith2fa", exc, model=model, view_data=view_data, session=session
        )

    pending = session.pending_two_factor
    await _enforce_rate_limit(
        runtime,
        f"2fa:{pending.user_id if pending else session.session.id}",
        runtime.settings.login_rate_limit_per_minute,
    )
    try:
        target = await runtime.auth.complete_two_factor(
            session,
            form.code,
            remember_machine=form.remember_machine,
            return_url=form.return_url,
        )
    except ServiceError as exc:
        return render_error(
            "Auth/LoginWith2fa", exc, model=model, view_data=view_data, session=session
        )
    return redirect(target)


@router.post("/Auth/Logout", tags=["auth"])
async def logout(session: SessionContext = Depends(require_antiforgery)):
    runtime = get_runtime()
    return redirect(runtime.auth.logout(session))


@router.get("/Auth/Register", tags=["auth"])
async def register_page():
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("Registration is disabled.")
    return render(
        "Auth/Register",
        model={"username": "", "email": "", "securityQuestion": ""},
        session=get_session_context(),
    )


@router.post("/Auth/Register", tags=["auth"])
async def register(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("Registration is disabled.")
    model = _echo(body, username="username", email="email", securityQuestion="security_question")
    try:
        form = bind_form(RegisterForm, body)
        target = runtime.auth.register(
            session,
            user_name=form.username,
            email=form.email,
            password=form.password,
            security_question=form.security_question,
            security_answer=form.security_answer,
        )
    except ValidationError as exc:
        return render_error("Auth/Register", exc, model=model, session=session)
    return redirect(target)


# -- password recovery ----------------------------------------------------


@router.get("/Auth/ForgotPassword", tags=["recovery"])
async def forgot_password_page():
    return render("Auth/ForgotPassword", model={"email": ""}, session=get_session_context())


@router.post("/Auth/ForgotPassword", tags=["recovery"])
async def forgot_password(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    model = _echo(body, email="email")
    try:
        form = bind_form(ForgotPasswordForm, body)
    except ValidationError as exc:
        return render_error("Auth/ForgotPassword", exc, model=model, session=session)

    await _enforce_rate_limit(
        runtime, f"recovery:{form.email.lower()}", runtime.settings.recovery_rate_limit_per_minute
    )
    try:
        target = runtime.auth.forgot_password(form.email)
    except ServiceError as exc:
        return render_error("Auth/ForgotPassword", exc, model=model, session=session)
    return redirect(target)


@router.get("/Auth/ForgotPasswordConfirmation", tags=["recovery"])
async def forgot_password_confirmation():
    return render("Auth/ForgotPasswordConfirmation", session=get_session_context())


@router.get("/Auth/SecurityQuestion", tags=["recovery"])
async def security_question_page(email: Optional[str] = Query(None)):
    runtime = get_runtime()
    session = get_session_context()
    try:
        question = runtime.auth.security_question(email or "")
    except ServiceError as exc:
        return render_error(
            "Auth/ForgotPassword", exc, model={"email": email}, session=session
        )
    return render(
        "Auth/SecurityQuestion",
        model={"email": email, "securityQuestion": question, "answer": ""},
        session=session,
    )


@router.post("/Auth/SecurityQuestion", tags=["recovery"])
async def security_question(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    model = _echo(body, email="email")
    email = model["email"] if isinstance(model["email"], str) else ""
    user = runtime.identity.find_by_email(email)
    model["securityQuestion"] = user.security_question if user else None
    try:
        form = bind_form(SecurityQuestionForm, body)
    except ValidationError as exc:
        return render_error("Auth/SecurityQuestion", exc, model=model, session=session)

    await _enforce_rate_limit(
        runtime, f"recovery:{form.email.lower()}", runtime.settings.recovery_rate_limit_per_minute
    )
    try:
        target = runtime.auth.verify_security_answer(session, form.email, form.answer)
    except ServiceError as exc:
        return render_error("Auth/SecurityQuestion", exc, model=model, session=session)
    return redirect(target)


@router.get("/Auth/ResetPassword", tags=["recovery"])
async def reset_password_page(email: Optional[str] = Query(None)):
    return render("Auth/ResetPassword", model={"email": email}, session=get_session_context())


@router.post("/Auth/ResetPassword", tags=["recovery"])
async def reset_password(body: FormBody = Body(None)):
    runtime = get_runtime()
    session = get_session_context()
    model = _echo(body, email="email")
    try:
        form = bind_form(ResetPasswordForm, body)
    except ValidationError as exc:
        return render_error("Auth/ResetPassword", exc, model=model, session=session)

    await _enforce_rate_limit(
        runtime, f"recovery:{form.email.lower()}", runtime.settings.recovery_rate_limit_per_minute
    )
    try:
        target = runtime.auth.reset_password(
            session, form.email, form.new_password, form.confirm_password
        )
    except ServiceError as exc:
        return render_error("Auth/ResetPassword", exc, model=model, session=session)
    return redirect(target)


@router.get("/Auth/ResetPasswordConfirmation", tags=["recovery"])
async def reset_password_confirmation():
    return render("Auth/ResetPasswordConfirmation", session=get_session_context())


# -- role administration --------------------------------------------------


def _role_model(role) -> Dict[str, Any]:
    return {"id": role.id, "name": role.name}


@router.get("/Roles", tags=["roles"])
async def roles_index(session: SessionContext = Depends(require_admin)):
    runtime = get_runtime()
    roles = [_role_model(role) for role in runtime.roles.list_roles()]
    return render("Roles/Index", model={"roles": roles}, session=session)


@router.get("/Roles/Create", tags=["roles"])
async def roles_create_page(session: SessionContext = Depends(require_admin)):
    return render("Roles/Create", model={"name": ""}, session=session)


@router.post("/Roles/Create", tags=["roles"])
async def roles_create(
    body: FormBody = Body(None), session: SessionContext = Depends(require_admin_form)
):
    runtime = get_runtime()
    model = _echo(body, name="name")
    actor = session.attributes.username if session.attributes else session.user_id
    try:
        form = bind_form(RoleForm, body)
        runtime.roles.create_role(form.name, actor=actor)
    except ValidationError as exc:
        return render_error("Roles/Create", exc, model=model, session=session)
    return redirect("/Roles")


@router.get("/Roles/Edit/{role_id}", tags=["roles"])
async def roles_edit_page(role_id: str, session: SessionContext = Depends(require_admin)):
    runtime = get_runtime()
    role = runtime.roles.get_role(role_id)
    return render("Roles/Edit", model=_role_model(role), session=session)


@router.post("/Roles/Edit/{role_id}", tags=["roles"])
async def roles_edit(
    role_id: str,
    body: FormBody = Body(None),
    session: SessionContext = Depends(require_admin_form),
):
    runtime = get_runtime()
    model = {"id": role_id, **_echo(body, name="name")}
    actor = session.attributes.username if session.attributes else session.user_id
    try:
        form = bind_form(RoleForm, body)
    except ValidationError as exc:
        return render_error("Roles/Edit", exc, model=model, session=session)
    try:
        runtime.roles.rename_role(role_id, form.name, body_id=form.id, actor=actor)
    except ValidationError as exc:
        return render_error("Roles/Edit", exc, model=model, session=session)
    return redirect("/Roles")


@router.get("/Roles/Delete/{role_id}", tags=["roles"])
async def roles_delete_page(role_id: str, session: SessionContext = Depends(require_admin)):
    runtime = get_runtime()
    role = runtime.roles.get_role(role_id)
    return render("Roles/Delete", model=_role_model(role), session=session)


@router.post("/Roles/Delete/{role_id}", tags=["roles"])
async def roles_delete(role_id: str, session: SessionContext = Depends(require_admin_form)):
    runtime = get_runtime()
    actor = session.attributes.username if session.attributes else session.user_id
    runtime.roles.delete_role(role_id, actor=actor)
    return redirect("/Roles")


# -- dashboards -----------------------------------------------------------


def _attribute_view_data() -> Dict[str, Any]:
    attributes = get_session_attributes()
    return {
        "username": attributes.username if attributes else None,
        "role": attributes.role if attributes else None,
        "session": attributes.as_session_values() if attributes else {},
    }


@router.get("/AdminDashboard/Index", tags=["dashboard"])
async def admin_dashboard(session: SessionContext = Depends(require_admin)):
    return render("AdminDashboard/Index", view_data=_attribute_view_data(), session=session)


@router.get("/ManagerDashboard/Index", tags=["dashboard"])
async def manager_dashboard(session: SessionContext = Depends(require_signed_in)):
    runtime = get_runtime()
    attributes = get_session_attributes()
    location_id = attributes.employee_location_id if attributes else 0
    rows = runtime.dashboard.my_inventory(location_id)
    return render(
        "ManagerDashboard/Index",
        model={"locationId": location_id, "inventory": [row.to_dict() for row in rows]},
        view_data=_attribute_view_data(),
        session=session,
    )


@router.get("/", tags=["home"])
@router.get("/Home/Index", tags=["home"])
async def home():
    return render("Home/Index", view_data=_attribute_view_data(), session=get_session_context())
