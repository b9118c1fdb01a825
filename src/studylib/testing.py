"""Pytest fixtures for testing against the studylib API.

Usage in conftest.py:
    pytest_plugins = ["studylib.testing"]

The fixtures expect the database to be reset between tests (see the project's
own tests/conftest.py for an autouse fixture doing that).

Available fixtures:
    - api_client: FastAPI TestClient with the app lifespan running
    - register_user: Factory registering a user through the API
    - alice, bob: Registered students ({"id", "token", "headers", "user"})
    - admin: A registered user promoted to admin
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, Generator

import pytest
from fastapi.testclient import TestClient

from . import db
from .api import app

_counter = itertools.count()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    """TestClient with startup/shutdown run (presence registry available).

    Example:
        def test_health(api_client):
            assert api_client.get("/health").status_code == 200
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def register_user(api_client: TestClient) -> Callable[..., dict[str, Any]]:
    """Factory registering users through POST /api/auth/register.

    Example:
        def test_users(register_user):
            carol = register_user("Carol")
            assert carol["user"]["name"] == "Carol"
    """

    def _register(name: str | None = None, password: str = "password123", **extra) -> dict:
        n = next(_counter)
        name = name or f"User {n}"
        email = extra.pop("email", f"{name.split()[0].lower()}{n}@example.com")
        response = api_client.post(
            "/api/auth/register", json={"name": name, "email": email, "password": password}
        )
        assert response.status_code == 201, response.text
        data = response.json()
        return {
            "id": data["user"]["id"],
            "token": data["token"],
            "headers": auth_headers(data["token"]),
            "user": data["user"],
            "password": password,
        }

    return _register


@pytest.fixture
def alice(register_user) -> dict[str, Any]:
    return register_user("Alice")


@pytest.fixture
def bob(register_user) -> dict[str, Any]:
    return register_user("Bob")


@pytest.fixture
def admin(register_user) -> dict[str, Any]:
    """A registered user with the admin role.

    Tokens carry the role claim, but admin checks read the stored role, so the
    token issued at registration works after promotion.
    """
    registered = register_user("Admin")
    db.set_user_role(registered["id"], "admin")
    return registered
