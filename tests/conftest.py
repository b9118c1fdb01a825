"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["STUDYLIB_DB"] = ":memory:"
os.environ["STUDYLIB_JWT_SECRET"] = "test-signing-secret-0123456789abcdef0123456789abcdef"
os.environ["STUDYLIB_ENV"] = "development"
os.environ["STUDYLIB_AUTO_VERIFY"] = "true"
# Keep a developer's own config file out of the tests
os.environ["STUDYLIB_CONFIG"] = "/nonexistent/studylib/config.yaml"
# Hashing at production strength makes every registration slow
os.environ["STUDYLIB_PASSWORD_ITERATIONS"] = "1000"


import pytest
from studylib import config, db
from studylib.cache import token_blacklist
from studylib.metrics import metrics

pytest_plugins = ["studylib.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database and process-wide state before each test function.

    For in-memory shared cache databases, we need a full reset_db() to clear
    all tables, since close_db() doesn't destroy the shared cache.
    """
    config.reset_config()
    token_blacklist.clear()
    metrics.reset()

    db.reset_db(db.get_connection())
    yield
    db.close_db()
    config.reset_config()
