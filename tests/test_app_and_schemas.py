import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from identitykit import app as app_module
from identitykit.api import schemas


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module so CORS settings are re-read from the environment."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        importlib.reload(app_module)


def test_security_headers_and_cors(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_lifespan_builds_and_releases_runtime(fresh_app):
    from identitykit.service import runtime as runtime_module

    with TestClient(fresh_app) as client:
        assert client.get("/healthz").status_code == 200
        assert runtime_module.runtime is not None
    assert runtime_module.runtime is None


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_email_is_normalized():
    request = schemas.LoginRequest(email="  Foo.Bar@Example.COM ", password="x")
    assert request.email == "foo.bar@example.com"


def test_email_strips_zero_width_characters():
    request = schemas.ForgotPasswordRequest(email="a\u200b@x.com")
    assert request.email == "a@x.com"


@pytest.mark.parametrize("email", ["plain", "a@b", "a b@x.com", "@x.com"])
def test_invalid_emails_are_rejected(email):
    with pytest.raises(ValidationError):
        schemas.ForgotPasswordRequest(email=email)


@pytest.mark.parametrize("password", ["Abc12345!", "zZ9@zzzz", "Passw0rd$Long"])
def test_strong_passwords_pass(password):
    assert schemas.ResetPasswordRequest(new_password=password).new_password == password


@pytest.mark.parametrize(
    "password",
    [
        "Ab1!",  # too short
        "abc12345!",  # no uppercase
        "ABC12345!",  # no lowercase
        "Abcdefgh!",  # no digit
        "Abc123456",  # no special
        "Abc12345!#",  # '#' is outside the allowed alphabet
    ],
)
def test_weak_passwords_fail(password):
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(
            email="a@x.com", password=password, first_name="A", last_name="B"
        )


def test_login_does_not_apply_strength_rules():
    assert schemas.LoginRequest(email="a@x.com", password="weak").password == "weak"


def test_names_are_required_and_trimmed():
    request = schemas.RegisterRequest(
        email="a@x.com", password="Abc12345!", first_name="  Ada ", last_name="Lovelace"
    )
    assert request.first_name == "Ada"

    with pytest.raises(ValidationError):
        schemas.RegisterRequest(
            email="a@x.com", password="Abc12345!", first_name="   ", last_name="L"
        )
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(
            email="a@x.com", password="Abc12345!", first_name="x" * 101, last_name="L"
        )
