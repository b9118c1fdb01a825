"""Tests for conversation keys."""

import pytest

from studylib.conversation import ConversationKey


class TestConversationKey:
    def test_key_is_symmetric(self):
        assert ConversationKey.of("alice", "bob") == ConversationKey.of("bob", "alice")

    def test_key_is_sorted(self):
        key = ConversationKey.of("zed", "amy")
        assert key.low == "amy"
        assert key.high == "zed"

    def test_uuid7_ids_sort_lexicographically(self):
        a = "01961234-0000-7000-8000-000000000002"
        b = "01961234-0000-7000-8000-000000000001"
        assert ConversationKey.of(a, b) == (b, a)

    def test_includes(self):
        key = ConversationKey.of("alice", "bob")
        assert key.includes("alice")
        assert key.includes("bob")
        assert not key.includes("carol")

    def test_other(self):
        key = ConversationKey.of("alice", "bob")
        assert key.other("alice") == "bob"
        assert key.other("bob") == "alice"

    def test_other_rejects_outsider(self):
        with pytest.raises(ValueError):
            ConversationKey.of("alice", "bob").other("carol")

    @pytest.mark.parametrize("a,b", [("", "bob"), ("alice", ""), (None, "bob")])
    def test_empty_participants_rejected(self, a, b):
        with pytest.raises(ValueError):
            ConversationKey.of(a, b)

    def test_usable_as_dict_key(self):
        seen = {ConversationKey.of("a", "b"): 1}
        assert seen[ConversationKey.of("b", "a")] == 1
