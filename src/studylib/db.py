"""Database layer for studylib.

Users and messages are kept in SQLite. Structured fields (message
attachments) are stored as JSON text, so a row reads like a document.

Connection Management:
    # Thread-local connection configured from ServerConfig.db_path
    init_db()
    user = create_user(...)

    # Scoped connection
    with scoped_connection("/path/to/studylib.db") as conn:
        init_db_with_conn(conn)
        user = create_user(..., conn=conn)

Flag updates (read, edited, deleted) are single conditional UPDATE
statements, so concurrent requests can never move a flag backwards.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .config import get_config
from .conversation import ConversationKey
from .errors import Conflict
from .metrics import timed_db_operation, timed_operation

logger = logging.getLogger(__name__)

USER_ROLES = ("student", "admin")
USER_STATUSES = ("online", "offline", "away")
MESSAGE_TYPES = ("text", "image", "file", "system")

# Thread-local storage for per-thread connections
# (FastAPI runs sync handlers and executor jobs on worker threads)
_local = threading.local()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Connection Management ---


def _configure(conn: sqlite3.Connection, wal: bool) -> sqlite3.Connection:
    if wal:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Optional explicit database path. If given, a new connection is
                 returned and the caller owns it. If None, the calling thread's
                 connection is returned, created from ServerConfig.db_path.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            return _configure(sqlite3.connect(":memory:", check_same_thread=False), wal=False)
        return _configure(sqlite3.connect(str(db_path), check_same_thread=False), wal=True)

    if getattr(_local, "conn", None) is None:
        path = get_config().db_path
        if path == ":memory:":
            # Shared cache so every thread sees the same in-memory database
            conn = sqlite3.connect(
                f"file:studylib_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure(conn, wal=False)
        else:
            _local.conn = _configure(sqlite3.connect(path, check_same_thread=False), wal=True)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the calling thread's connection."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Use the provided connection or fall back to the thread-local one."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict]:
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('student', 'admin')),
        is_verified INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        bio TEXT NOT NULL DEFAULT '',
        avatar_url TEXT,
        status TEXT NOT NULL DEFAULT 'offline' CHECK (status IN ('online', 'offline', 'away')),
        last_seen TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_users_name ON users(name);

    -- Exactly one addressing mode: a direct pair or a room
    CREATE TABLE IF NOT EXISTS messages (
        mid TEXT PRIMARY KEY,
        sender_id TEXT NOT NULL REFERENCES users(id),
        recipient_id TEXT REFERENCES users(id),
        room TEXT,
        peer_low TEXT,
        peer_high TEXT,
        body TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        attachment JSON,
        is_read INTEGER NOT NULL DEFAULT 0,
        read_at TIMESTAMP,
        is_edited INTEGER NOT NULL DEFAULT 0,
        edited_at TIMESTAMP,
        is_deleted INTEGER NOT NULL DEFAULT 0,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CHECK ((recipient_id IS NULL) != (room IS NULL)),
        CHECK ((recipient_id IS NULL) = (peer_low IS NULL))
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(peer_low, peer_high, mid) WHERE peer_low IS NOT NULL;
    CREATE INDEX IF NOT EXISTS idx_messages_room
        ON messages(room, mid) WHERE room IS NOT NULL;
    CREATE INDEX IF NOT EXISTS idx_messages_unread
        ON messages(recipient_id, is_read) WHERE is_read = 0;
"""


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version. Returns 0 if no migrations were applied."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return column in [row[1] for row in cursor.fetchall()]


def _migrate_001_add_presence(conn: sqlite3.Connection) -> None:
    """Migration 001: presence status and last_seen on users."""
    if not _column_exists(conn, "users", "status"):
        conn.execute("ALTER TABLE users ADD COLUMN status TEXT NOT NULL DEFAULT 'offline'")
    if not _column_exists(conn, "users", "last_seen"):
        conn.execute("ALTER TABLE users ADD COLUMN last_seen TIMESTAMP")
    conn.commit()


def _migrate_002_add_attachments(conn: sqlite3.Connection) -> None:
    """Migration 002: attachment metadata on messages."""
    if not _column_exists(conn, "messages", "attachment"):
        conn.execute("ALTER TABLE messages ADD COLUMN attachment JSON")
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add presence status to users", _migrate_001_add_presence),
    (2, "Add attachment metadata to messages", _migrate_002_add_attachments),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run pending migrations. Returns the versions that were applied."""
    conn = _get_conn(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e
            conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (version, description),
            )
            conn.commit()
            applied.append(version)
            logger.info(f"Applied migration {version}: {description}")

    return applied


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize schema on an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize schema on the thread-local connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop and recreate every table (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- User Operations ---

_USER_COLUMNS = (
    "id, name, email, role, is_verified, is_active, bio, avatar_url, status, "
    "last_seen, created_at, updated_at"
)


def _user_from_row(row: dict | None) -> dict | None:
    if row is None:
        return None
    row["is_verified"] = bool(row["is_verified"])
    row["is_active"] = bool(row["is_active"])
    return row


def create_user(
    name: str,
    email: str,
    password_hash: str,
    role: str = "student",
    is_verified: bool = False,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user. Raises Conflict if the email is taken."""
    conn = _get_conn(conn)
    user_id = str(make_uuid7())
    now = _now()

    try:
        conn.execute(
            """INSERT INTO users
               (id, name, email, password_hash, role, is_verified, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_id, name, email.lower(), password_hash, role, int(is_verified), now, now),
        )
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "users.email" in str(e):
            raise Conflict("A user with this email already exists") from e
        raise

    user = get_user(user_id, conn=conn)
    assert user is not None
    return user


def get_user(user_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by id (without credentials)."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    return _user_from_row(_row_to_dict(cursor.fetchone()))


def get_user_by_email(email: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by email, including the password hash (for login)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE email = ?", (email.lower(),)
    )
    return _user_from_row(_row_to_dict(cursor.fetchone()))


def get_password_hash(user_id: str, conn: sqlite3.Connection | None = None) -> str | None:
    conn = _get_conn(conn)
    row = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
    return row["password_hash"] if row else None


def _user_filters(
    search: str | None,
    role: str | None,
    is_active: bool | None,
    is_verified: bool | None,
    exclude_id: str | None,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if search:
        clauses.append("(name LIKE ? OR email LIKE ?)")
        params.extend([f"%{search}%", f"%{search.lower()}%"])
    if role:
        clauses.append("role = ?")
        params.append(role)
    if is_active is not None:
        clauses.append("is_active = ?")
        params.append(int(is_active))
    if is_verified is not None:
        clauses.append("is_verified = ?")
        params.append(int(is_verified))
    if exclude_id:
        clauses.append("id != ?")
        params.append(exclude_id)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def list_users(
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    is_verified: bool | None = None,
    exclude_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List users ordered by name."""
    conn = _get_conn(conn)
    where, params = _user_filters(search, role, is_active, is_verified, exclude_id)
    cursor = conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users {where} ORDER BY name, id LIMIT ? OFFSET ?",
        (*params, limit, offset),
    )
    return [_user_from_row(row) for row in _rows_to_dicts(cursor.fetchall())]  # type: ignore[misc]


def count_users(
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    is_verified: bool | None = None,
    exclude_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    conn = _get_conn(conn)
    where, params = _user_filters(search, role, is_active, is_verified, exclude_id)
    return conn.execute(f"SELECT COUNT(*) FROM users {where}", tuple(params)).fetchone()[0]


def _update_user(user_id: str, fields: dict[str, Any], conn: sqlite3.Connection) -> bool:
    assignments = ", ".join(f"{column} = ?" for column in fields)
    cursor = conn.execute(
        f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), _now(), user_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def update_user_profile(
    user_id: str,
    name: str | None = None,
    bio: str | None = None,
    avatar_url: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Update the given profile fields. Fields left as None are unchanged."""
    conn = _get_conn(conn)
    fields = {
        k: v for k, v in {"name": name, "bio": bio, "avatar_url": avatar_url}.items() if v is not None
    }
    if not fields:
        return get_user(user_id, conn=conn) is not None
    return _update_user(user_id, fields, conn)


def set_user_status(
    user_id: str,
    status: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Set presence status and stamp last_seen."""
    if status not in USER_STATUSES:
        raise ValueError(f"Unknown status: {status}")
    conn = _get_conn(conn)
    return _update_user(user_id, {"status": status, "last_seen": _now()}, conn)


def set_user_role(user_id: str, role: str, conn: sqlite3.Connection | None = None) -> bool:
    if role not in USER_ROLES:
        raise ValueError(f"Unknown role: {role}")
    return _update_user(user_id, {"role": role}, _get_conn(conn))


def set_user_verified(user_id: str, verified: bool, conn: sqlite3.Connection | None = None) -> bool:
    return _update_user(user_id, {"is_verified": int(verified)}, _get_conn(conn))


def set_user_active(user_id: str, active: bool, conn: sqlite3.Connection | None = None) -> bool:
    """Activate or soft-deactivate a user. Deactivated users also go offline."""
    fields: dict[str, Any] = {"is_active": int(active)}
    if not active:
        fields["status"] = "offline"
    return _update_user(user_id, fields, _get_conn(conn))


def set_password_hash(
    user_id: str, password_hash: str, conn: sqlite3.Connection | None = None
) -> bool:
    return _update_user(user_id, {"password_hash": password_hash}, _get_conn(conn))


def touch_last_seen(user_id: str, conn: sqlite3.Connection | None = None) -> bool:
    return _update_user(user_id, {"last_seen": _now()}, _get_conn(conn))


def user_stats(conn: sqlite3.Connection | None = None) -> dict[str, int]:
    """Counts for the admin overview."""
    conn = _get_conn(conn)
    row = conn.execute("""
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(is_active), 0) AS active,
            COALESCE(SUM(is_verified), 0) AS verified,
            COALESCE(SUM(role = 'admin'), 0) AS admins
        FROM users
    """).fetchone()
    return dict(row)


# --- Message Operations ---

_MESSAGE_SELECT = """
    SELECT m.*,
           s.name AS sender_name, s.avatar_url AS sender_avatar_url, s.status AS sender_status,
           r.name AS recipient_name, r.avatar_url AS recipient_avatar_url,
           r.status AS recipient_status
    FROM messages m
    JOIN users s ON s.id = m.sender_id
    LEFT JOIN users r ON r.id = m.recipient_id
"""


def _message_from_row(row: dict) -> dict:
    """Shape a joined message row into the message document."""
    recipient = None
    if row["recipient_id"] is not None:
        recipient = {
            "id": row["recipient_id"],
            "name": row["recipient_name"],
            "avatar_url": row["recipient_avatar_url"],
            "status": row["recipient_status"],
        }
    return {
        "mid": row["mid"],
        "sender": {
            "id": row["sender_id"],
            "name": row["sender_name"],
            "avatar_url": row["sender_avatar_url"],
            "status": row["sender_status"],
        },
        "recipient": recipient,
        "room": row["room"],
        "body": row["body"],
        "message_type": row["message_type"],
        "attachment": json.loads(row["attachment"]) if row["attachment"] else None,
        "is_read": bool(row["is_read"]),
        "read_at": row["read_at"],
        "is_edited": bool(row["is_edited"]),
        "edited_at": row["edited_at"],
        "is_deleted": bool(row["is_deleted"]),
        "deleted_at": row["deleted_at"],
        "created_at": row["created_at"],
    }


def insert_message(
    sender_id: str,
    body: str,
    recipient_id: str | None = None,
    room: str | None = None,
    message_type: str = "text",
    attachment: dict[str, Any] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Insert one message and return it with sender/recipient display fields.

    Exactly one of ``recipient_id`` and ``room`` must be given. Room messages
    are stored as read, since read tracking only applies to direct messages.
    """
    if (recipient_id is None) == (room is None):
        raise ValueError("A message needs exactly one of recipient_id or room")
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type: {message_type}")

    conn = _get_conn(conn)
    key = ConversationKey.of(sender_id, recipient_id) if recipient_id else None
    mid = str(make_uuid7())

    conn.execute(
        """INSERT INTO messages
           (mid, sender_id, recipient_id, room, peer_low, peer_high, body, message_type,
            attachment, is_read, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            mid,
            sender_id,
            recipient_id,
            room,
            key.low if key else None,
            key.high if key else None,
            body,
            message_type,
            json.dumps(attachment) if attachment else None,
            int(room is not None),
            _now(),
        ),
    )
    conn.commit()

    message = get_message(mid, conn=conn)
    assert message is not None
    return message


def get_message(mid: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(f"{_MESSAGE_SELECT} WHERE m.mid = ?", (mid,))
    row = _row_to_dict(cursor.fetchone())
    return _message_from_row(row) if row else None


def update_message_body(
    mid: str, sender_id: str, body: str, conn: sqlite3.Connection | None = None
) -> bool:
    """Edit a live message owned by ``sender_id``. Returns False if nothing matched."""
    conn = _get_conn(conn)
    with timed_db_operation("update_message_body"):
        cursor = conn.execute(
            """UPDATE messages SET body = ?, is_edited = 1, edited_at = ?
               WHERE mid = ? AND sender_id = ? AND is_deleted = 0""",
            (body, _now(), mid, sender_id),
        )
        conn.commit()
    return cursor.rowcount > 0


def soft_delete_message(
    mid: str, sender_id: str, tombstone: str, conn: sqlite3.Connection | None = None
) -> bool:
    """Replace the body with ``tombstone`` and flag the message deleted.

    Deleting an already-deleted message keeps its original deleted_at.
    """
    conn = _get_conn(conn)
    with timed_db_operation("soft_delete_message"):
        cursor = conn.execute(
            """UPDATE messages
               SET body = ?, is_deleted = 1, deleted_at = COALESCE(deleted_at, ?)
               WHERE mid = ? AND sender_id = ?""",
            (tombstone, _now(), mid, sender_id),
        )
        conn.commit()
    return cursor.rowcount > 0


def mark_conversation_read(
    key: ConversationKey, reader_id: str, conn: sqlite3.Connection | None = None
) -> int:
    """Mark every unread message addressed to ``reader_id`` in a conversation read.

    Returns the number of messages that changed.
    """
    conn = _get_conn(conn)
    with timed_db_operation("mark_conversation_read"):
        cursor = conn.execute(
            """UPDATE messages SET is_read = 1, read_at = ?
               WHERE peer_low = ? AND peer_high = ? AND recipient_id = ? AND is_read = 0""",
            (_now(), key.low, key.high, reader_id),
        )
        conn.commit()
    return cursor.rowcount


def get_conversation_messages(
    key: ConversationKey,
    limit: int = 50,
    offset: int = 0,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Non-deleted messages of a conversation, a page from the newest, oldest first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""{_MESSAGE_SELECT}
            WHERE m.peer_low = ? AND m.peer_high = ? AND m.is_deleted = 0
            ORDER BY m.mid DESC LIMIT ? OFFSET ?""",
        (key.low, key.high, limit, offset),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    return [_message_from_row(row) for row in reversed(rows)]


def count_conversation_messages(key: ConversationKey, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    return conn.execute(
        """SELECT COUNT(*) FROM messages
           WHERE peer_low = ? AND peer_high = ? AND is_deleted = 0""",
        (key.low, key.high),
    ).fetchone()[0]


def get_room_messages(
    room: str,
    limit: int = 50,
    offset: int = 0,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Non-deleted messages of a room, a page from the newest, oldest first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""{_MESSAGE_SELECT}
            WHERE m.room = ? AND m.is_deleted = 0
            ORDER BY m.mid DESC LIMIT ? OFFSET ?""",
        (room, limit, offset),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    return [_message_from_row(row) for row in reversed(rows)]


def count_room_messages(room: str, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    return conn.execute(
        "SELECT COUNT(*) FROM messages WHERE room = ? AND is_deleted = 0", (room,)
    ).fetchone()[0]


def count_unread(
    user_id: str,
    counterpart_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Unread, non-deleted direct messages addressed to ``user_id``."""
    conn = _get_conn(conn)
    query = "SELECT COUNT(*) FROM messages WHERE recipient_id = ? AND is_read = 0 AND is_deleted = 0"
    params: list[Any] = [user_id]
    if counterpart_id:
        query += " AND sender_id = ?"
        params.append(counterpart_id)
    return conn.execute(query, tuple(params)).fetchone()[0]


@timed_operation("list_conversations")
def list_conversations(user_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Group the user's direct messages by counterpart.

    Each entry holds the counterpart's display fields, the most recent
    non-deleted message and the number of unread messages from that
    counterpart. Deactivated counterparts are left out. Most recent first.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""{_MESSAGE_SELECT}
            WHERE m.recipient_id IS NOT NULL AND m.is_deleted = 0
            AND (m.sender_id = ? OR m.recipient_id = ?)
            AND (CASE WHEN m.sender_id = ? THEN r.is_active ELSE s.is_active END) = 1
            ORDER BY m.mid DESC""",
        (user_id, user_id, user_id),
    )

    conversations: dict[str, dict] = {}
    for row in _rows_to_dicts(cursor.fetchall()):
        message = _message_from_row(row)
        outgoing = message["sender"]["id"] == user_id
        counterpart = message["recipient"] if outgoing else message["sender"]

        entry = conversations.get(counterpart["id"])
        if entry is None:
            # Rows arrive newest first, so the first one seen is the latest
            entry = conversations[counterpart["id"]] = {
                "user": counterpart,
                "last_message": message,
                "unread_count": 0,
            }
        if not outgoing and not message["is_read"]:
            entry["unread_count"] += 1

    return list(conversations.values())


def message_stats(conn: sqlite3.Connection | None = None) -> dict[str, int]:
    conn = _get_conn(conn)
    row = conn.execute("""
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(recipient_id IS NOT NULL), 0) AS direct,
            COALESCE(SUM(room IS NOT NULL), 0) AS room,
            COALESCE(SUM(is_deleted), 0) AS deleted
        FROM messages
    """).fetchone()
    return dict(row)
