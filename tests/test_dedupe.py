"""Tests for the echo deduplicator."""

from slackpuppet.dedupe import Deduplicator, file_fingerprint

KEY = (1, "C1")


class TestDeduplicator:
    def test_echo_during_send_matches_fingerprint(self):
        d = Deduplicator()
        d.lock(KEY, "U0", "hello")
        assert d.dedupe(KEY, "U0", "1.0", "hello")
        assert d.is_idle(KEY)
        # the send returning afterwards must not resurrect the entry
        d.unlock(KEY, "1.0")
        assert d.is_idle(KEY)

    def test_echo_after_send_matches_event_id(self):
        d = Deduplicator()
        d.lock(KEY, "U0", "hello")
        d.unlock(KEY, "1.0")
        assert not d.dedupe(KEY, "U0", "2.0", "hello")
        assert d.dedupe(KEY, "U0", "1.0", "changed by slack")
        assert d.is_idle(KEY)

    def test_other_sender_passes(self):
        d = Deduplicator()
        d.lock(KEY, "U0", "hello")
        assert not d.dedupe(KEY, "U9", "1.0", "hello")
        assert not d.is_idle(KEY)

    def test_failed_send_goes_idle(self):
        d = Deduplicator()
        d.lock(KEY, "U0", "hello")
        d.unlock(KEY)
        assert d.is_idle(KEY)
        assert not d.dedupe(KEY, "U0", None, "hello")

    def test_keys_are_independent(self):
        d = Deduplicator()
        d.lock(KEY, "U0", "hello")
        assert not d.dedupe((1, "C2"), "U0", "1.0", "hello")
        assert not d.dedupe((2, "C1"), "U0", "1.0", "hello")

    def test_file_fingerprint(self):
        assert file_fingerprint("cat.png") == "file:cat.png"
