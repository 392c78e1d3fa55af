"""Error responses share one envelope:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tokengate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from tokengate.api.schemas import Envelope, ErrorBody
from tokengate.service.errors import (
    EmailConflictError,
    ServiceError,
    StoreUnavailableError,
)
from tokengate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_known_code(self):
        error = ErrorBody(code="invalid_token", message="invalid token")

        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize("status", sorted(_STATUS_TO_CODE))
    def test_every_mapped_status_has_a_valid_code(self, status):
        ErrorBody(code=_error_code_for_status(status), message="x")

    def test_unmapped_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"


def test_envelope_generates_request_id():
    first = Envelope(status="ok")
    second = Envelope(status="ok")

    assert first.request_id and first.request_id != second.request_id


def test_service_error_subclasses_carry_status_and_default_message():
    error = EmailConflictError()

    assert error.status_code == 409
    assert error.error_code == "email_conflict"
    assert error.message == "email is linked to a different external account"
    assert ServiceError("custom", status_code=418, error_code="conflict").status_code == 418


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service")
    async def service_failure():
        raise EmailConflictError(detail={"provider": "google"})

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailableError()

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("connection refused")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


def _assert_envelope(response, status, code):
    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["request_id"]
    return body


def test_service_error_envelope(client):
    body = _assert_envelope(client.get("/service"), 409, "email_conflict")

    assert body["error"]["details"] == {"provider": "google"}


def test_unavailable_envelope(client):
    _assert_envelope(client.get("/unavailable"), 503, "unavailable")


def test_stray_constraint_violation_is_conflict(client):
    body = _assert_envelope(client.get("/constraint"), 409, "conflict")

    assert body["error"]["details"] == {"field": "email"}


def test_store_outage_is_unavailable(client):
    _assert_envelope(client.get("/store-down"), 503, "unavailable")


def test_unhandled_exception_hides_details(client):
    body = _assert_envelope(client.get("/boom"), 500, "server_error")

    assert "unexpected" not in body["error"]["message"]


def test_unknown_route_is_not_found(client):
    _assert_envelope(client.get("/missing"), 404, "not_found")


def test_wrong_method(client):
    _assert_envelope(client.post("/service"), 405, "method_not_allowed")
