import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, TypeVar

from .config import FETCH_LOCK_TIMEOUT
from .models import RemoteBot, RemoteChannel, RemoteTeam, RemoteUser

logger = logging.getLogger(__name__)

T = TypeVar("T")

# -----------------------------
# Fetch lock (single-flight)
# -----------------------------


@dataclass
class _LockEntry:
    token: int
    timer: asyncio.TimerHandle
    released: asyncio.Event


class FetchLock:
    """At most one in-flight fetch per `(kind, key)`.

    A holder gets a token from `acquire` and must hand it back to `release`;
    a release with a stale token is ignored. Entries expire on their own after
    `timeout` seconds so a stuck fetch cannot starve other callers. Waiters are
    woken as soon as the entry is released or expires.
    """

    def __init__(self, timeout: float = FETCH_LOCK_TIMEOUT):
        self.timeout = timeout
        self._last_token = 0
        self._locks: Dict[Tuple[str, str], _LockEntry] = {}

    def acquire(self, kind: str, key: str) -> Optional[int]:
        """Take the lock, returning its token, or None if someone holds it."""
        if (kind, key) in self._locks:
            return None
        self._last_token += 1
        token = self._last_token
        loop = asyncio.get_running_loop()
        self._locks[(kind, key)] = _LockEntry(
            token=token,
            timer=loop.call_later(self.timeout, self._expire, kind, key, token),
            released=asyncio.Event(),
        )
        return token

    def release(self, kind: str, key: str, token: int) -> bool:
        entry = self._locks.get((kind, key))
        if not entry or entry.token != token:
            return False
        entry.timer.cancel()
        del self._locks[(kind, key)]
        entry.released.set()
        return True

    def is_alive(self, kind: str, key: str) -> bool:
        return (kind, key) in self._locks

    async def wait(self, kind: str, key: str):
        """Block until the current holder of `(kind, key)` lets go."""
        entry = self._locks.get((kind, key))
        if not entry:
            return
        try:
            await asyncio.wait_for(entry.released.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for {kind} fetch lock on {key}")

    def _expire(self, kind: str, key: str, token: int):
        entry = self._locks.get((kind, key))
        if entry and entry.token == token:
            logger.warning(f"⏱️ Fetch lock for {kind} {key} expired")
            del self._locks[(kind, key)]
            entry.released.set()

    def clear(self):
        for entry in self._locks.values():
            entry.timer.cancel()
            entry.released.set()
        self._locks.clear()

# -----------------------------
# Entity cache
# -----------------------------


def _find(table: Dict[str, T], key: str, *name_attrs: str) -> Optional[T]:
    found = table.get(key)
    if found is not None:
        return found
    # name lookup is only a fallback; first match wins
    for item in table.values():
        for attr in name_attrs:
            if getattr(item, attr, None) == key:
                return item
    return None


class EntityCache:
    """Users, bots, channels and teams known for one Slack account."""

    def __init__(self):
        self.users: Dict[str, RemoteUser] = {}
        self.bots: Dict[str, RemoteBot] = {}
        self.channels: Dict[str, RemoteChannel] = {}
        self.teams: Dict[str, RemoteTeam] = {}

    def find_user(self, key: str) -> Optional[RemoteUser]:
        return _find(self.users, key, "name", "display_name")

    def find_bot(self, key: str) -> Optional[RemoteBot]:
        return _find(self.bots, key, "name")

    def find_channel(self, key: str) -> Optional[RemoteChannel]:
        return _find(self.channels, key, "name")

    def find_team(self, key: str) -> Optional[RemoteTeam]:
        return _find(self.teams, key, "name")

    def update_user(self, user: RemoteUser) -> RemoteUser:
        known = self.users.get(user.id)
        if known is None:
            self.users[user.id] = user
            return user
        known.update_from(user)
        return known

    def update_bot(self, bot: RemoteBot) -> RemoteBot:
        known = self.bots.get(bot.id)
        if known is None:
            self.bots[bot.id] = bot
            return bot
        known.update_from(bot)
        return known

    def update_channel(self, channel: RemoteChannel) -> RemoteChannel:
        known = self.channels.get(channel.id)
        if known is None:
            self.channels[channel.id] = channel
            known = channel
        else:
            known.update_from(channel)
        if known.team_id and not known.is_direct and known.team_id in self.teams:
            self.teams[known.team_id].channel_ids.add(known.id)
        return known

    def update_team(self, team: RemoteTeam) -> RemoteTeam:
        known = self.teams.get(team.id)
        if known is None:
            team.channel_ids.update(
                c.id for c in self.channels.values()
                if c.team_id == team.id and not c.is_direct
            )
            self.teams[team.id] = team
            return team
        known.name = team.name or known.name
        known.icon_url = team.icon_url or known.icon_url
        known.domain = team.domain or known.domain
        return known
