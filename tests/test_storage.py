"""
Tests for duo_relay.core.storage - users, contacts and messages
"""

import pytest
from pathlib import Path

from duo_relay.core.errors import Conflict, InvalidArgument, NotFound
from duo_relay.core.rooms import room_id
from duo_relay.core.storage import ChatStorage


class TestUsers:
    def test_create_user_normalizes_name(self, storage: ChatStorage):
        user = storage.create_user("  Alice ", "a.png")

        assert user.username == "alice"
        assert user.avatar == "a.png"
        assert len(user.invite_code) == 8
        assert storage.get_user(user.id) == user

    @pytest.mark.parametrize("name", ["", "ab", "x" * 31, "   "])
    def test_create_user_rejects_bad_length(self, storage: ChatStorage, name):
        with pytest.raises(InvalidArgument):
            storage.create_user(name)

    def test_create_user_name_collision_is_conflict(self, storage: ChatStorage):
        storage.create_user("alice")
        with pytest.raises(Conflict):
            storage.create_user("ALICE")

    def test_get_or_create_is_idempotent(self, storage: ChatStorage):
        first, created = storage.get_or_create_user("alice", "first.png")
        again, created_again = storage.get_or_create_user("Alice", "second.png")

        assert created is True
        assert created_again is False
        assert again.id == first.id
        # Existing record comes back unchanged
        assert again.avatar == "first.png"

    def test_get_unknown_user(self, storage: ChatStorage):
        assert storage.get_user("does-not-exist") is None
        assert storage.get_user("") is None

    def test_invite_code_lookup(self, storage: ChatStorage):
        user = storage.create_user("alice")
        assert storage.get_user_by_invite_code(user.invite_code.upper()).id == user.id
        assert storage.get_user_by_invite_code("deadbeef0") is None

    def test_search_users_substring_excludes_searcher(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        storage.create_user("malik")
        storage.create_user("bob")

        results = storage.search_users("LI", exclude_id=alice.id)

        assert [u.username for u in results] == ["malik"]

    def test_search_users_treats_wildcards_literally(self, storage: ChatStorage):
        storage.create_user("ann_lee")
        storage.create_user("annalee")

        results = storage.search_users("n_l")

        assert [u.username for u in results] == ["ann_lee"]

    def test_search_users_requires_query(self, storage: ChatStorage):
        with pytest.raises(InvalidArgument):
            storage.search_users("  ")

    def test_search_users_limit(self, storage: ChatStorage):
        for i in range(5):
            storage.create_user(f"user{i}")
        assert len(storage.search_users("user", limit=3)) == 3


class TestContacts:
    def test_add_contact_is_bidirectional(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        bob = storage.create_user("bob")

        friend, created = storage.add_contact(alice.id, bob.id)

        assert created is True
        assert friend.id == bob.id
        assert storage.get_contact_ids(alice.id) == [bob.id]
        assert storage.get_contact_ids(bob.id) == [alice.id]
        assert storage.are_contacts(alice.id, bob.id)
        assert storage.are_contacts(bob.id, alice.id)

    def test_add_contact_twice_succeeds_silently(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        bob = storage.create_user("bob")
        storage.add_contact(alice.id, bob.id)

        _, created = storage.add_contact(alice.id, bob.id)
        _, created_reverse = storage.add_contact(bob.id, alice.id)

        assert created is False
        assert created_reverse is False
        assert storage.get_contact_ids(alice.id) == [bob.id]
        assert storage.get_contact_ids(bob.id) == [alice.id]

    def test_add_self_is_rejected(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        with pytest.raises(InvalidArgument):
            storage.add_contact(alice.id, alice.id)

    def test_add_unknown_contact(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        with pytest.raises(NotFound):
            storage.add_contact(alice.id, "ghost")

    def test_remove_contact_is_asymmetric(self, storage: ChatStorage):
        """Removal only drops the initiator's edge; the other side keeps theirs."""
        alice = storage.create_user("alice")
        bob = storage.create_user("bob")
        storage.add_contact(alice.id, bob.id)

        removed = storage.remove_contact(alice.id, bob.id)

        assert removed is True
        assert storage.get_contact_ids(alice.id) == []
        assert storage.get_contact_ids(bob.id) == [alice.id]
        assert not storage.are_contacts(alice.id, bob.id)
        assert not storage.are_contacts(bob.id, alice.id)

    def test_readd_after_removal_restores_mutual_edge(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        bob = storage.create_user("bob")
        storage.add_contact(alice.id, bob.id)
        storage.remove_contact(alice.id, bob.id)

        _, created = storage.add_contact(alice.id, bob.id)

        assert created is True
        assert storage.are_contacts(alice.id, bob.id)

    def test_remove_unknown_user(self, storage: ChatStorage):
        alice = storage.create_user("alice")
        with pytest.raises(NotFound):
            storage.remove_contact(alice.id, "ghost")


class TestMessages:
    def test_append_message_is_unread(self, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)

        msg = storage.append_message(rid, users.alice.id, users.bob.id, "  hi  ")

        assert msg.id is not None
        assert msg.text == "hi"
        assert msg.read is False
        assert msg.read_at is None
        assert storage.get_history(rid) == [msg]

    def test_created_at_is_strictly_increasing(self, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)
        stamps = [
            storage.append_message(rid, users.alice.id, users.bob.id, f"m{i}").created_at
            for i in range(20)
        ]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    def test_monotonic_clock_survives_reopen(self, db_path: Path, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)
        last = storage.append_message(rid, users.alice.id, users.bob.id, "before")

        reopened = ChatStorage(str(db_path))
        nxt = reopened.append_message(rid, users.alice.id, users.bob.id, "after")

        assert nxt.created_at > last.created_at

    @pytest.mark.parametrize("text", ["", "   ", "x" * 5001])
    def test_append_message_rejects_bad_text(self, storage: ChatStorage, users, text):
        rid = room_id(users.alice.id, users.bob.id)
        with pytest.raises(InvalidArgument):
            storage.append_message(rid, users.alice.id, users.bob.id, text)
        assert storage.get_history(rid) == []

    def test_message_length_is_configurable(self, db_path: Path, users):
        small = ChatStorage(str(db_path), max_message_length=3)
        rid = room_id(users.alice.id, users.bob.id)
        with pytest.raises(InvalidArgument):
            small.append_message(rid, users.alice.id, users.bob.id, "four")

    def test_history_is_oldest_first_and_paginated(self, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)
        sent = [
            storage.append_message(rid, users.alice.id, users.bob.id, f"m{i}")
            for i in range(5)
        ]

        page = storage.get_history(rid, limit=2)
        assert [m.text for m in page] == ["m3", "m4"]

        older = storage.get_history(rid, limit=2, before=page[0].created_at)
        assert [m.text for m in older] == ["m1", "m2"]

        oldest = storage.get_history(rid, limit=10, before=sent[1].created_at)
        assert [m.text for m in oldest] == ["m0"]

    def test_history_rejects_non_positive_limit(self, storage: ChatStorage):
        with pytest.raises(InvalidArgument):
            storage.get_history("a_b", limit=0)

    def test_mark_read_only_touches_recipient_in_room(self, storage: ChatStorage, users):
        alice, bob, carol = users.alice, users.bob, users.carol
        storage.add_contact(bob.id, carol.id)
        ab = room_id(alice.id, bob.id)
        bc = room_id(bob.id, carol.id)

        to_bob = storage.append_message(ab, alice.id, bob.id, "for bob")
        to_alice = storage.append_message(ab, bob.id, alice.id, "for alice")
        other_room = storage.append_message(bc, carol.id, bob.id, "other room")

        assert storage.mark_read(ab, bob.id) == 1

        by_id = {m.id: m for m in storage.get_history(ab) + storage.get_history(bc)}
        assert by_id[to_bob.id].read is True
        assert by_id[to_bob.id].read_at is not None
        assert by_id[to_alice.id].read is False
        assert by_id[other_room.id].read is False

    def test_mark_read_never_unreads_or_restamps(self, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)
        msg = storage.append_message(rid, users.alice.id, users.bob.id, "hi")
        storage.mark_read(rid, users.bob.id)
        [first] = storage.get_history(rid)

        assert storage.mark_read(rid, users.bob.id) == 0
        [again] = storage.get_history(rid)
        assert again.id == msg.id
        assert again.read is True
        assert again.read_at == first.read_at

    def test_mark_read_with_no_matches(self, storage: ChatStorage):
        assert storage.mark_read("nobody_here", "nobody") == 0


class TestContactSummaries:
    def test_sorted_by_recent_activity_with_silent_contacts_last(self, storage: ChatStorage):
        me = storage.create_user("me_user")
        names = ["zed", "amy", "kim", "bea"]
        others = {n: storage.create_user(n) for n in names}
        for u in others.values():
            storage.add_contact(me.id, u.id)

        storage.append_message(room_id(me.id, others["kim"].id), others["kim"].id, me.id, "old")
        storage.append_message(room_id(me.id, others["zed"].id), me.id, others["zed"].id, "new")

        summaries = storage.list_contact_summaries(me.id)

        assert [s.username for s in summaries] == ["zed", "kim", "amy", "bea"]

    def test_preview_and_unread_count(self, storage: ChatStorage, users):
        alice, bob = users.alice, users.bob
        rid = room_id(alice.id, bob.id)
        storage.append_message(rid, bob.id, alice.id, "one")
        storage.append_message(rid, bob.id, alice.id, "two")
        storage.append_message(rid, alice.id, bob.id, "reply")

        [summary] = storage.list_contact_summaries(alice.id)

        assert summary.id == bob.id
        assert summary.unread_count == 2
        assert summary.last_message.text == "reply"
        assert summary.last_message.from_username == "alice"
        assert summary.last_message.read is False

    def test_unknown_user(self, storage: ChatStorage):
        with pytest.raises(NotFound):
            storage.list_contact_summaries("ghost")


class TestLookups:
    def test_get_user_by_username(self, storage: ChatStorage, users):
        assert storage.get_user_by_username(" BOB ").id == users.bob.id
        assert storage.get_user_by_username("nobody") is None

    def test_has_contact_is_directional(self, storage: ChatStorage, users):
        storage.remove_contact(users.alice.id, users.bob.id)
        assert not storage.has_contact(users.alice.id, users.bob.id)
        assert storage.has_contact(users.bob.id, users.alice.id)

    def test_last_message_and_unread_count(self, storage: ChatStorage, users):
        rid = room_id(users.alice.id, users.bob.id)
        assert storage.get_last_message(rid) is None
        assert storage.count_unread(rid, users.bob.id) == 0

        storage.append_message(rid, users.alice.id, users.bob.id, "first")
        latest = storage.append_message(rid, users.alice.id, users.bob.id, "second")

        last = storage.get_last_message(rid)
        assert last.text == "second"
        assert last.timestamp == latest.created_at
        assert last.from_username == "alice"
        assert storage.count_unread(rid, users.bob.id) == 2
        assert storage.count_unread(rid, users.alice.id) == 0
