import logging
from dataclasses import dataclass
from typing import Dict, Hashable, Optional

logger = logging.getLogger(__name__)


def file_fingerprint(filename: str) -> str:
    return "file:" + filename


@dataclass
class _Entry:
    sender: str
    fingerprint: str
    event_id: Optional[str] = None  # set once the send call returned

    @property
    def resolved(self) -> bool:
        return self.event_id is not None


class Deduplicator:
    """Drops Slack's echo of messages the bridge itself just sent.

    Per key (puppet id, room id): idle -> locked(sender, fingerprint) ->
    resolved(sender, event id) -> idle. A locked entry matches on fingerprint,
    which covers the echo arriving before the send call returns; a resolved
    entry matches on event id.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}

    def lock(self, key: Hashable, sender: str, fingerprint: str):
        self._entries[key] = _Entry(sender=sender, fingerprint=fingerprint)

    def unlock(self, key: Hashable, event_id: Optional[str] = None):
        entry = self._entries.get(key)
        if not entry or entry.resolved:
            return
        if event_id:
            entry.event_id = event_id
        else:
            # the send failed, nothing will echo
            del self._entries[key]

    def dedupe(self, key: Hashable, sender: str, event_id: Optional[str], fingerprint: str) -> bool:
        entry = self._entries.get(key)
        if not entry or entry.sender != sender:
            return False
        if entry.resolved:
            matched = event_id is not None and event_id == entry.event_id
        else:
            matched = fingerprint == entry.fingerprint
        if matched:
            logger.debug(f"🔁 Dropping echo in {key} (event {event_id})")
            del self._entries[key]
        return matched

    def is_idle(self, key: Hashable) -> bool:
        return key not in self._entries
