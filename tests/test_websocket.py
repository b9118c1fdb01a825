"""Tests for the real-time websocket channel."""

import pytest
from fastapi import WebSocketDisconnect

from studylib import db


def connect(client, user):
    return client.websocket_connect(f"/ws?token={user['token']}")


def join(ws):
    ws.send_json({"event": "join"})
    frame = ws.receive_json()
    assert frame["event"] == "joined", frame
    return frame["data"]


class TestConnect:
    def test_missing_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 1008

    def test_bad_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc.value.code == 1008

    def test_revoked_token_rejected(self, api_client, alice):
        api_client.post("/api/auth/logout", headers=alice["headers"])
        with pytest.raises(WebSocketDisconnect):
            with connect(api_client, alice):
                pass

    def test_join_acks_and_sets_status(self, api_client, alice):
        with connect(api_client, alice) as ws:
            data = join(ws)

            assert data["user_id"] == alice["id"]
            assert data["online_users"] == [alice["id"]]
            assert db.get_user(alice["id"])["status"] == "online"

    def test_join_with_foreign_user_id(self, api_client, alice, bob):
        with connect(api_client, alice) as ws:
            ws.send_json({"event": "join", "user_id": bob["id"]})
            frame = ws.receive_json()
            assert frame["event"] == "error"


class TestFrames:
    def test_unknown_event(self, api_client, alice):
        with connect(api_client, alice) as ws:
            ws.send_json({"event": "dance"})
            assert ws.receive_json()["event"] == "error"

    def test_invalid_json(self, api_client, alice):
        with connect(api_client, alice) as ws:
            ws.send_text("{nope")
            frame = ws.receive_json()
            assert frame["event"] == "error"

            # The socket stays usable after a protocol error
            join(ws)

    def test_events_before_join_rejected(self, api_client, alice, bob):
        with connect(api_client, alice) as ws:
            ws.send_json({"event": "typing", "to": bob["id"]})
            frame = ws.receive_json()
            assert frame == {"event": "error", "data": {"message": "Send a join event first"}}


class TestPresence:
    def test_online_and_offline_announcements(self, api_client, alice, bob):
        with connect(api_client, alice) as alice_ws:
            join(alice_ws)

            with connect(api_client, bob) as bob_ws:
                data = join(bob_ws)
                assert sorted(data["online_users"]) == sorted([alice["id"], bob["id"]])
                assert alice_ws.receive_json() == {
                    "event": "userOnline",
                    "data": {"user_id": bob["id"]},
                }

                bob_ws.close()
                assert alice_ws.receive_json() == {
                    "event": "userOffline",
                    "data": {"user_id": bob["id"]},
                }

    def test_chat_users_shows_online_flag(self, api_client, alice, bob):
        with connect(api_client, bob) as ws:
            join(ws)
            users = api_client.get("/api/chat/users", headers=alice["headers"]).json()["users"]

        assert [u["is_online"] for u in users if u["id"] == bob["id"]] == [True]


class TestMessaging:
    def test_send_direct_over_socket(self, api_client, alice, bob):
        with connect(api_client, alice) as alice_ws, connect(api_client, bob) as bob_ws:
            join(alice_ws)
            join(bob_ws)
            alice_ws.receive_json()  # userOnline for bob

            bob_ws.send_json({"event": "sendMessage", "to": alice["id"], "body": "hi alice"})

            incoming = alice_ws.receive_json()
            assert incoming["event"] == "newMessage"
            assert incoming["data"]["body"] == "hi alice"
            assert incoming["data"]["sender"]["id"] == bob["id"]

            ack = bob_ws.receive_json()
            assert ack["event"] == "messageSent"
            assert ack["data"]["delivered"] is True
            assert ack["data"]["message"]["mid"] == incoming["data"]["mid"]

    def test_send_to_offline_user_is_stored(self, api_client, alice, bob):
        with connect(api_client, alice) as ws:
            join(ws)
            ws.send_json({"event": "sendMessage", "to": bob["id"], "body": "later"})
            ack = ws.receive_json()

        assert ack["data"]["delivered"] is False
        assert db.count_unread(bob["id"]) == 1

    def test_send_invalid_message_answers_error(self, api_client, alice, bob):
        with connect(api_client, alice) as ws:
            join(ws)
            ws.send_json({"event": "sendMessage", "to": bob["id"], "body": ""})
            frame = ws.receive_json()

        assert frame["event"] == "error"
        assert frame["data"]["errors"][0]["field"] == "body"

    def test_room_message_broadcast(self, api_client, alice, bob):
        with connect(api_client, alice) as alice_ws, connect(api_client, bob) as bob_ws:
            join(alice_ws)
            join(bob_ws)
            alice_ws.receive_json()  # userOnline for bob

            alice_ws.send_json({"event": "sendMessage", "room": "general", "body": "hello room"})

            frame = bob_ws.receive_json()
            assert frame["event"] == "room-message"
            assert frame["data"]["room"] == "general"
            assert alice_ws.receive_json()["event"] == "messageSent"

    def test_typing(self, api_client, alice, bob):
        with connect(api_client, alice) as alice_ws, connect(api_client, bob) as bob_ws:
            join(alice_ws)
            join(bob_ws)

            bob_ws.send_json({"event": "typing", "to": alice["id"], "is_typing": True})

            frames = [alice_ws.receive_json(), alice_ws.receive_json()]
            assert frames[0]["event"] == "userOnline"
            assert frames[1] == {
                "event": "userTyping",
                "data": {"user_id": bob["id"], "is_typing": True},
            }

    def test_rest_send_routes_to_socket(self, api_client, alice, bob):
        with connect(api_client, bob) as ws:
            join(ws)
            api_client.post(
                "/api/messages", json={"to": bob["id"], "body": "via rest"}, headers=alice["headers"]
            )
            frame = ws.receive_json()

        assert frame["event"] == "newMessage"
        assert frame["data"]["body"] == "via rest"

    def test_edit_and_delete_are_routed(self, api_client, alice, bob):
        message = api_client.post(
            "/api/messages", json={"to": bob["id"], "body": "draft"}, headers=alice["headers"]
        ).json()

        with connect(api_client, bob) as ws:
            join(ws)
            api_client.put(
                f"/api/messages/{message['mid']}", json={"body": "final"}, headers=alice["headers"]
            )
            edited = ws.receive_json()
            api_client.delete(f"/api/messages/{message['mid']}", headers=alice["headers"])
            deleted = ws.receive_json()

        assert edited["event"] == "messageEdited"
        assert edited["data"]["body"] == "final"
        assert deleted["event"] == "messageDeleted"
        assert deleted["data"]["body"] == "This message was deleted"

    def test_read_receipt_routed_to_sender(self, api_client, alice, bob):
        with connect(api_client, alice) as ws:
            join(ws)
            api_client.post(
                "/api/messages", json={"to": bob["id"], "body": "ping"}, headers=alice["headers"]
            )
            api_client.put(f"/api/messages/read/{alice['id']}", headers=bob["headers"])
            frame = ws.receive_json()

        assert frame == {"event": "messagesRead", "data": {"reader_id": bob["id"], "count": 1}}

    def test_latest_connection_receives(self, api_client, alice, bob):
        with connect(api_client, bob) as first, connect(api_client, bob) as second:
            join(first)
            join(second)

            api_client.post(
                "/api/messages", json={"to": bob["id"], "body": "which one?"}, headers=alice["headers"]
            )
            frame = second.receive_json()
            assert frame["event"] == "newMessage"

            # The superseded socket closing must not take the user offline
            first.close()
            users = api_client.get("/api/chat/users", headers=alice["headers"]).json()["users"]
            assert [u["is_online"] for u in users if u["id"] == bob["id"]] == [True]


class TestSessionRevocation:
    def assert_closed(self, ws):
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == 1008

    def test_logout_closes_open_socket(self, api_client, alice, bob):
        with connect(api_client, bob) as bob_ws:
            join(bob_ws)
            with connect(api_client, alice) as alice_ws:
                join(alice_ws)
                assert bob_ws.receive_json()["event"] == "userOnline"

                api_client.post("/api/auth/logout", headers=alice["headers"])
                alice_ws.send_json({"event": "sendMessage", "to": bob["id"], "body": "after logout"})
                self.assert_closed(alice_ws)

            assert bob_ws.receive_json() == {"event": "userOffline", "data": {"user_id": alice["id"]}}

        assert db.count_unread(bob["id"]) == 0

    def test_account_deletion_takes_user_offline(self, api_client, alice, bob):
        with connect(api_client, bob) as bob_ws:
            join(bob_ws)
            with connect(api_client, alice) as alice_ws:
                join(alice_ws)
                assert bob_ws.receive_json()["event"] == "userOnline"

                response = api_client.delete("/api/users/account", headers=alice["headers"])
                assert response.status_code == 200
                assert bob_ws.receive_json() == {
                    "event": "userOffline",
                    "data": {"user_id": alice["id"]},
                }
                assert not api_client.app.state.presence.is_online(alice["id"])

                alice_ws.send_json({"event": "sendMessage", "to": bob["id"], "body": "still here"})
                self.assert_closed(alice_ws)

        assert db.count_unread(bob["id"]) == 0

    def test_admin_deactivation_closes_socket(self, api_client, admin, bob):
        with connect(api_client, bob) as ws:
            join(ws)

            response = api_client.put(
                f"/api/admin/users/{bob['id']}/status",
                json={"is_active": False},
                headers=admin["headers"],
            )
            assert response.status_code == 200
            assert not api_client.app.state.presence.is_online(bob["id"])

            ws.send_json({"event": "typing", "to": admin["id"], "is_typing": True})
            self.assert_closed(ws)

