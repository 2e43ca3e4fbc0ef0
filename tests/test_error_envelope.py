import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from storekeep import app as app_module
from storekeep.api.error_handling import register_exception_handlers
from storekeep.api.schemas import Envelope, ErrorBody
from storekeep.service.errors import ConflictError, LoginRequired, ServerError
from storekeep.storage.errors import ConstraintViolation


def _build_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("duplicate thing", detail={"field": "name"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("user name already exists", {"field": "user_name"})

    @app.get("/login-required")
    async def login_required():
        raise LoginRequired("/Auth/Login?returnUrl=%2Fsecret")

    @app.get("/server")
    async def server():
        raise ServerError("backend unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.get("/typed")
    async def typed(count: int):
        return {"count": count}

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False, follow_redirects=False)


class TestEnvelopeModels:
    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValueError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_has_request_id(self):
        envelope = Envelope(status="ok", data={"x": 1})
        assert envelope.request_id


class TestErrorHandlers:
    def test_service_error(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "duplicate thing",
            "details": {"field": "name"},
        }

    def test_constraint_violation(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "user_name"}

    def test_login_required_redirects(self, client):
        response = client.get("/login-required")
        assert response.status_code == 302
        assert response.headers["location"] == "/Auth/Login?returnUrl=%2Fsecret"

    def test_server_error(self, client):
        response = client.get("/server")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_unhandled_exception_is_enveloped(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_request_validation(self, client):
        response = client.get("/typed", params={"count": "many"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_route(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAppWiring:
    def test_security_and_correlation_headers(self):
        client = TestClient(app_module.app)
        response = client.get("/Auth/Login", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_healthz(self):
        client = TestClient(app_module.app)
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["checks"]["email"]["status"] == "dev_mode"
