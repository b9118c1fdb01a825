"""CLI for studylib administration.

Server settings come from ~/.config/studylib/config.yaml (or $STUDYLIB_CONFIG)
and STUDYLIB_* environment variables; see ``studylib.config``.

Commands that touch users work directly against the configured database, so
run them on the host that serves it.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import sys
from pathlib import Path

import cyclopts
import httpx

from . import db
from .auth import MIN_PASSWORD_LENGTH, hash_password
from .config import ServerConfig, StudylibConfigError, get_config, get_config_path
from .errors import Conflict

app = cyclopts.App(
    name="studylib",
    help="Student library messaging and presence service",
)

db_app = cyclopts.App(name="db", help="Database management")
admin_app = cyclopts.App(name="admin", help="User administration")
config_app = cyclopts.App(name="config", help="Server configuration")

app.command(db_app)
app.command(admin_app)
app.command(config_app)


def print_json(data):
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _read_password(password: str | None) -> str:
    if password is None:
        password = getpass.getpass("Password: ")
        if getpass.getpass("Repeat password: ") != password:
            _fail("Passwords do not match")
    if len(password) < MIN_PASSWORD_LENGTH:
        _fail(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


def _require_user_by_email(email: str) -> dict:
    user = db.get_user_by_email(email)
    if user is None:
        _fail(f"No user with email {email}")
    return user  # type: ignore[return-value]


# --- Config ---


@config_app.command
def show():
    """Show the effective configuration (secrets masked)."""
    try:
        config = get_config()
    except StudylibConfigError as e:
        _fail(str(e))
    print(f"Config file: {get_config_path()}")
    print_json(config.to_dict())


@config_app.command(name="init")
def config_init(*, path: Path | None = None, force: bool = False):
    """Write a config file with a freshly generated signing secret."""
    target = path or get_config_path()
    if target.exists() and not force:
        _fail(f"{target} already exists (use --force to overwrite)")

    from .auth import generate_secret

    written = ServerConfig(db_path="studylib.db", jwt_secret=generate_secret()).save(target)
    print(f"Wrote {written}")


# --- Database ---


@db_app.command(name="init")
def db_init():
    """Create tables and apply pending migrations."""
    db.init_db()
    print(f"Database: {get_config().db_path}")
    print(f"Schema version: {db.get_schema_version()}")


# --- Users ---


@admin_app.command
def create(email: str, name: str, *, password: str | None = None):
    """Create a verified admin user."""
    db.init_db()
    try:
        user = db.create_user(
            name=name,
            email=email,
            password_hash=hash_password(_read_password(password)),
            role="admin",
            is_verified=True,
        )
    except Conflict as e:
        _fail(e.message)
    print(f"Created admin {user['email']} ({user['id']})")


@admin_app.command(name="reset-password")
def reset_password(email: str, *, password: str | None = None):
    """Set a new password for a user."""
    db.init_db()
    user = _require_user_by_email(email)
    db.set_password_hash(user["id"], hash_password(_read_password(password)))
    print(f"Password updated for {user['email']}")


@admin_app.command
def promote(email: str, *, role: str = "admin"):
    """Change a user's role (student or admin)."""
    if role not in db.USER_ROLES:
        _fail(f"role must be one of {', '.join(db.USER_ROLES)}")
    db.init_db()
    user = _require_user_by_email(email)
    db.set_user_role(user["id"], role)
    print(f"{user['email']} is now {role}")


# --- Server ---


@app.command
def health(url: str = "http://localhost:8000", *, timeout: float = 10.0):
    """Check that a running server answers /health."""
    try:
        response = httpx.get(f"{url.rstrip('/')}/health", timeout=timeout)
    except httpx.HTTPError as e:
        _fail(f"Cannot reach {url}: {e}")

    if response.status_code != 200:
        _fail(f"{url} answered {response.status_code}: {response.text}")
    print_json(response.json())


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    db_path: str | None = None,
):
    """Run the studylib server.

    Without a configured signing secret, a random one is generated at startup
    and issued tokens stop working when the server restarts.
    """
    import uvicorn

    if db_path:
        os.environ["STUDYLIB_DB"] = db_path

    try:
        config = get_config()
    except StudylibConfigError as e:
        _fail(str(e))

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.has_generated_secret:
        print("WARNING: No STUDYLIB_JWT_SECRET configured. Tokens will not survive a restart.")

    uvicorn.run(
        "studylib.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    app()
