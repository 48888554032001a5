from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from fixerauth import app as app_module
from fixerauth.api.error_handling import register_exception_handlers
from fixerauth.api.routes import _http_error
from fixerauth.service.errors import NotFoundError, ServerError
from fixerauth.storage.errors import DuplicateEmail


def _app_with(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


def test_service_error_envelope():
    response = _app_with(NotFoundError("user not found")).get("/boom")

    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"] == {"code": "not_found", "message": "user not found", "details": {}}
    assert body["request_id"]


def test_constraint_violation_is_conflict():
    response = _app_with(DuplicateEmail("tech@homefixer.test")).get("/boom")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"
    assert response.json()["error"]["details"] == {"field": "email"}


def test_http_error_helper_envelope():
    response = _app_with(_http_error("rate_limited", "rate limit exceeded", 429)).get("/boom")

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "rate_limited"
    assert response.json()["error"]["message"] == "rate limit exceeded"


def test_plain_http_exception_falls_back():
    response = _app_with(HTTPException(status_code=403, detail="nope")).get("/boom")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"
    assert response.json()["error"]["message"] == "nope"


def test_server_error_and_uncaught():
    assert _app_with(ServerError("user directory unavailable")).get("/boom").status_code == 500

    response = _app_with(RuntimeError("kaboom")).get("/boom")
    assert response.status_code == 500
    assert response.json()["error"] == {
        "code": "server_error",
        "message": "internal server error",
        "details": None,
    }


def test_healthz_reports_components():
    client = TestClient(app_module.app)

    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "MemoryStore"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"]["status"] == "healthy"
    assert body["version"] == app_module.__version__


def test_response_headers():
    client = TestClient(app_module.app)

    response = client.post(
        "/v1/auth/validate",
        headers={"Authorization": "Bearer nope", "X-Request-ID": "req-123"},
    )

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["API-Version"] == app_module.__version__


def test_lifespan_runs_without_sweep():
    # SWEEP_INTERVAL_SECONDS=0 in tests; startup and shutdown must still succeed
    with TestClient(app_module.app) as client:
        assert client.get("/healthz").status_code == 200
