"""Tests for reply chain flattening."""

import pytest

from slackpuppet.store import SlackStore
from slackpuppet.threads import ThreadTracker


@pytest.fixture
def store(tmp_path):
    s = SlackStore(str(tmp_path / "threads.db"))
    s.init()
    yield s
    s.close()


class TestThreadTracker:
    def test_walk_to_root(self):
        t = ThreadTracker()
        assert t.record_reply("b", "a")
        assert t.record_reply("c", "b")
        assert t.record_reply("d", "c")
        assert t.walk("d") == ["c", "b", "a"]
        assert t.get_root("d") == "a"
        assert t.get_root("a") == "a"
        assert t.walk("a") == []

    def test_latest_follows_newest_reply(self):
        t = ThreadTracker()
        t.record_reply("b", "a")
        assert t.latest_in_thread("a") == "b"
        t.record_reply("c", "b")
        assert t.latest_in_thread("a") == "c"
        t.record_reply("x", "a")
        assert t.latest_in_thread("a") == "x"
        assert t.latest_in_thread("nobody") is None

    def test_existing_links_not_overwritten(self):
        t = ThreadTracker()
        t.record_reply("b", "a")
        assert not t.record_reply("b", "z")
        assert t.get_root("b") == "a"

    def test_rejects_self_and_cycles(self):
        t = ThreadTracker()
        assert not t.record_reply("a", "a")
        assert not t.record_reply("", "a")
        t.record_reply("b", "a")
        # a root that already leads a thread cannot become a reply
        assert not t.record_reply("a", "b")
        assert t.walk("b") == ["a"]

    def test_writes_through_to_store(self, store):
        t = ThreadTracker(store)
        t.record_reply("b", "a")
        t.record_reply("c", "b")
        assert store.get_thread_parent("c") == "b"
        assert store.get_first_thread_event("c") == "a"
        assert store.get_last_thread_event("a") == "c"
        t.forget("c")
        assert store.get_thread_parent("c") is None


class TestThreadsAfterRestart:
    def test_chain_read_back_from_store(self, store):
        before = ThreadTracker(store)
        before.record_reply("b", "a")
        before.record_reply("c", "b")

        after = ThreadTracker(store)
        assert after.get_root("c") == "a"
        assert after.walk("c") == ["b", "a"]
        assert after.latest_in_thread("a") == "c"

    def test_new_reply_extends_stored_thread(self, store):
        ThreadTracker(store).record_reply("b", "a")

        after = ThreadTracker(store)
        assert not after.record_reply("b", "z")
        assert after.record_reply("c", "b")
        assert after.latest_in_thread("a") == "c"
        assert store.get_last_thread_event("a") == "c"
