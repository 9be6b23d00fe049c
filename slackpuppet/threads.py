import logging
from typing import Dict, List, Optional

from .store import SlackStore

logger = logging.getLogger(__name__)


class ThreadTracker:
    """Flattens reply chains onto Slack's single level of threading.

    `parents` maps a reply to what it replied to, `latest` maps a thread root
    to its most recent reply. Both only ever grow.
    """

    def __init__(self, store: Optional[SlackStore] = None):
        self.parents: Dict[str, str] = {}
        self.latest: Dict[str, str] = {}
        self.store = store

    def record_reply(self, event_id: str, parent_id: str) -> bool:
        """Remember that `event_id` replied to `parent_id`; only for fresh ids."""
        if not event_id or not parent_id or event_id == parent_id:
            return False
        if self._parent(event_id) is not None or self.latest_in_thread(event_id) is not None:
            logger.debug(f"Not overwriting thread link for {event_id}")
            return False
        if event_id in self.walk(parent_id):
            return False
        self.parents[event_id] = parent_id
        root = self.get_root(event_id)
        self.latest[root] = event_id
        if self.store:
            self.store.set_first_thread_event(event_id, parent_id)
            self.store.set_last_thread_event(root, event_id)
        return True

    def _parent(self, event_id: str) -> Optional[str]:
        parent = self.parents.get(event_id)
        if parent is None and self.store:
            # links from before a restart only live in the store
            parent = self.store.get_thread_parent(event_id)
            if parent is not None:
                self.parents[event_id] = parent
        return parent

    def walk(self, event_id: str) -> List[str]:
        """Ancestors of `event_id`, nearest first, ending at the root."""
        chain = []
        seen = {event_id}
        current = self._parent(event_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self._parent(current)
        return chain

    def get_root(self, event_id: str) -> str:
        chain = self.walk(event_id)
        return chain[-1] if chain else event_id

    def latest_in_thread(self, root: str) -> Optional[str]:
        latest = self.latest.get(root)
        if latest is None and self.store:
            latest = self.store.get_last_thread_event(root)
            if latest is not None:
                self.latest[root] = latest
        return latest

    def forget(self, event_id: str):
        if self.store:
            self.store.remove(event_id)
