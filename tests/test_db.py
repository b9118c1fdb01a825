"""Tests for the database layer."""

import sqlite3

import pytest

from studylib import db
from studylib.conversation import ConversationKey
from studylib.errors import Conflict


@pytest.fixture
def alice():
    return db.create_user("Alice Smith", "Alice@Example.com", "hash-a")


@pytest.fixture
def bob():
    return db.create_user("Bob Jones", "bob@example.com", "hash-b")


class TestUsers:
    def test_create_user_defaults(self, alice):
        assert len(alice["id"]) == 36
        assert alice["email"] == "alice@example.com"
        assert alice["role"] == "student"
        assert alice["is_verified"] is False
        assert alice["is_active"] is True
        assert alice["status"] == "offline"
        assert "password_hash" not in alice

    def test_duplicate_email_conflicts(self, alice):
        with pytest.raises(Conflict):
            db.create_user("Other", "ALICE@example.com", "x")

    def test_get_user_by_email_includes_hash(self, alice):
        user = db.get_user_by_email("alice@EXAMPLE.com")
        assert user["id"] == alice["id"]
        assert user["password_hash"] == "hash-a"

    def test_get_missing_user(self):
        assert db.get_user("missing") is None
        assert db.get_password_hash("missing") is None

    def test_update_profile_partial(self, alice):
        assert db.update_user_profile(alice["id"], bio="Reads a lot") is True

        user = db.get_user(alice["id"])
        assert user["bio"] == "Reads a lot"
        assert user["name"] == "Alice Smith"

    def test_update_profile_missing_user(self):
        assert db.update_user_profile("missing", name="X") is False

    def test_set_status_stamps_last_seen(self, alice):
        db.set_user_status(alice["id"], "away")

        user = db.get_user(alice["id"])
        assert user["status"] == "away"
        assert user["last_seen"] is not None

    def test_set_status_rejects_unknown(self, alice):
        with pytest.raises(ValueError):
            db.set_user_status(alice["id"], "busy")

    def test_deactivate_sets_offline(self, alice):
        db.set_user_status(alice["id"], "online")
        db.set_user_active(alice["id"], False)

        user = db.get_user(alice["id"])
        assert user["is_active"] is False
        assert user["status"] == "offline"

    def test_list_and_count_with_filters(self, alice, bob):
        db.set_user_role(bob["id"], "admin")

        assert db.count_users() == 2
        assert [u["id"] for u in db.list_users(role="admin")] == [bob["id"]]
        assert [u["id"] for u in db.list_users(search="smith")] == [alice["id"]]
        assert [u["id"] for u in db.list_users(exclude_id=alice["id"])] == [bob["id"]]
        assert db.count_users(is_verified=True) == 0

    def test_list_users_paginates_by_name(self, alice, bob):
        assert [u["name"] for u in db.list_users(limit=1)] == ["Alice Smith"]
        assert [u["name"] for u in db.list_users(limit=1, offset=1)] == ["Bob Jones"]

    def test_user_stats(self, alice, bob):
        db.set_user_verified(alice["id"], True)
        db.set_user_role(bob["id"], "admin")

        assert db.user_stats() == {"total": 2, "active": 2, "verified": 1, "admins": 1}


class TestMessages:
    def test_insert_direct_sets_conversation_columns(self, alice, bob):
        message = db.insert_message(alice["id"], "hi", recipient_id=bob["id"])
        key = ConversationKey.of(alice["id"], bob["id"])

        row = db.get_connection().execute(
            "SELECT peer_low, peer_high FROM messages WHERE mid = ?", (message["mid"],)
        ).fetchone()
        assert (row["peer_low"], row["peer_high"]) == key

    def test_room_messages_are_stored_read(self, alice):
        message = db.insert_message(alice["id"], "hi", room="general")
        assert message["is_read"] is True

    def test_insert_requires_one_address(self, alice, bob):
        with pytest.raises(ValueError):
            db.insert_message(alice["id"], "hi")
        with pytest.raises(ValueError):
            db.insert_message(alice["id"], "hi", recipient_id=bob["id"], room="general")

    def test_check_constraint_rejects_both_addresses(self, alice, bob):
        conn = db.get_connection()
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """INSERT INTO messages (mid, sender_id, recipient_id, room, peer_low, peer_high, body)
                   VALUES ('m1', ?, ?, 'general', ?, ?, 'x')""",
                (alice["id"], bob["id"], alice["id"], bob["id"]),
            )
        conn.rollback()

    def test_check_constraint_rejects_no_address(self, alice):
        conn = db.get_connection()
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO messages (mid, sender_id, body) VALUES ('m1', ?, 'x')",
                (alice["id"],),
            )
        conn.rollback()

    def test_mids_sort_by_creation(self, alice, bob):
        mids = [db.insert_message(alice["id"], str(i), recipient_id=bob["id"])["mid"] for i in range(5)]
        assert mids == sorted(mids)

    def test_update_body_requires_owner(self, alice, bob):
        message = db.insert_message(alice["id"], "hi", recipient_id=bob["id"])

        assert db.update_message_body(message["mid"], bob["id"], "x") is False
        assert db.update_message_body(message["mid"], alice["id"], "hello") is True
        assert db.get_message(message["mid"])["body"] == "hello"

    def test_mark_conversation_read_counts_changes(self, alice, bob):
        key = ConversationKey.of(alice["id"], bob["id"])
        db.insert_message(alice["id"], "1", recipient_id=bob["id"])
        db.insert_message(alice["id"], "2", recipient_id=bob["id"])

        assert db.mark_conversation_read(key, bob["id"]) == 2
        assert db.mark_conversation_read(key, bob["id"]) == 0

    def test_db_operations_are_timed(self, alice, bob):
        from studylib.metrics import metrics

        key = ConversationKey.of(alice["id"], bob["id"])
        db.mark_conversation_read(key, bob["id"])
        db.list_conversations(alice["id"])

        operations = metrics.to_dict()["db_operations"]
        assert operations["mark_conversation_read"]["count"] == 1
        assert operations["list_conversations"]["count"] == 1

    def test_message_stats(self, alice, bob):
        m = db.insert_message(alice["id"], "hi", recipient_id=bob["id"])
        db.insert_message(alice["id"], "hi all", room="general")
        db.soft_delete_message(m["mid"], alice["id"], "gone")

        assert db.message_stats() == {"total": 2, "direct": 1, "room": 1, "deleted": 1}


class TestScopedConnection:
    def test_file_database(self, tmp_path):
        path = tmp_path / "studylib.db"
        with db.scoped_connection(path) as conn:
            db.init_db_with_conn(conn)
            user = db.create_user("Dana", "dana@example.com", "h", conn=conn)

        with db.scoped_connection(path) as conn:
            assert db.get_user(user["id"], conn=conn)["name"] == "Dana"
