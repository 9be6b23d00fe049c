"""Pytest configuration and shared fixtures."""

import asyncio
import re
from unittest.mock import AsyncMock

import pytest

from slackpuppet.client import SlackClient
from slackpuppet.console import ConsoleHost
from slackpuppet.host import RoomRef, UserRef


class FakeWebSocket:
    """Stands in for a websockets connection: yields queued frames until closed."""

    def __init__(self, frames=()):
        self.frames = asyncio.Queue()
        for frame in frames:
            self.frames.put_nowait(frame)
        self.closed = False

    def push(self, frame):
        self.frames.put_nowait(frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def close(self):
        self.closed = True
        self.frames.put_nowait(None)


_USER_RE = re.compile(r'^@_slack_(\d+)_([A-Za-z0-9]+):localhost$')
_ROOM_RE = re.compile(r'^[#!]_slack_(\d+)_([A-Za-z0-9]+):localhost$')


def _user_parts(mxid):
    m = _USER_RE.match(mxid)
    return UserRef(int(m.group(1)), m.group(2)) if m else None


def _room_parts(mxid):
    m = _ROOM_RE.match(mxid)
    return RoomRef(int(m.group(1)), m.group(2)) if m else None


@pytest.fixture
def host():
    """A PuppetHost mock with deterministic ghost ids."""
    host = AsyncMock(spec=ConsoleHost)
    host.get_mxid_for_user.side_effect = lambda u: f"@_slack_{u.puppet_id}_{u.user_id}:localhost"
    host.get_mxid_for_room.side_effect = lambda r: f"#_slack_{r.puppet_id}_{r.room_id}:localhost"
    host.get_user_parts.side_effect = _user_parts
    host.get_room_parts.side_effect = _room_parts
    host.upload_content.return_value = "mxc://localhost/abc"
    return host


@pytest.fixture
def web():
    return AsyncMock()


@pytest.fixture
def client(web):
    c = SlackClient("xoxp-test", reconnect_delay=0.01, lock_timeout=1, web_client=web)
    c.self_user = {"id": "U0", "name": "me"}
    return c


def drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture(name="drain")
def drain_fixture():
    return drain
