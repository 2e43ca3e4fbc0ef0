from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from storekeep.api.schemas import Envelope, ErrorBody
from storekeep.service.errors import ServiceError, ValidationError
from storekeep.service.session import SessionContext

FORM_INVALID = "Form validation failed. Please check your input."

FormT = TypeVar("FormT", bound=BaseModel)


def _view_data(
    view: str,
    model: Optional[Mapping[str, Any]],
    view_data: Optional[Mapping[str, Any]],
    session: Optional[SessionContext],
) -> Dict[str, Any]:
    return {
        "view": view,
        "model": dict(model or {}),
        "view_data": dict(view_data or {}),
        "antiforgery_token": session.antiforgery_token() if session is not None else None,
    }


def render(
    view: str,
    *,
    model: Optional[Mapping[str, Any]] = None,
    view_data: Optional[Mapping[str, Any]] = None,
    session: Optional[SessionContext] = None,
    status_code: int = 200,
) -> JSONResponse:
    envelope = Envelope(status="ok", data=_view_data(view, model, view_data, session))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def render_error(
    view: str,
    exc: ServiceError,
    *,
    model: Optional[Mapping[str, Any]] = None,
    view_data: Optional[Mapping[str, Any]] = None,
    session: Optional[SessionContext] = None,
) -> JSONResponse:
    """Re-render a form view with the error as a model-level message."""
    details = {
        "errors": exc.messages,
        "fields": dict(exc.detail.get("fields") or {}),
    }
    envelope = Envelope(
        status="error",
        data=_view_data(view, model, view_data, session),
        error=ErrorBody(code=exc.error_code, message=exc.message, details=details),
    )
    return JSONResponse(status_code=exc.status_code, content=envelope.model_dump())


def redirect(url: str, status_code: int = 303) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status_code)


def _error_message(error: Mapping[str, Any]) -> str:
    if error.get("type") == "value_error":
        ctx = error.get("ctx") or {}
        if "error" in ctx:
            return str(ctx["error"])
    return str(error.get("msg", "invalid value"))


def bind_form(form_cls: Type[FormT], payload: Optional[Mapping[str, Any]]) -> FormT:
    """Validate a JSON form body, turning pydantic errors into a form-level failure."""
    try:
        return form_cls.model_validate(dict(payload or {}))
    except PydanticValidationError as exc:
        fields: Dict[str, List[str]] = {}
        model_errors: List[str] = []
        for error in exc.errors():
            loc = error.get("loc") or ()
            message = _error_message(error)
            if loc:
                fields.setdefault(str(loc[0]), []).append(message)
            else:
                model_errors.append(message)
        raise ValidationError(
            FORM_INVALID, detail={"errors": model_errors, "fields": fields}
        ) from exc
