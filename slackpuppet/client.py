import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiohttp
import websockets
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from .cache import EntityCache, FetchLock
from .config import (
    FETCH_LOCK_TIMEOUT,
    HELLO_TIMEOUT,
    LIST_PAGE_SIZE,
    RECONNECT_DELAY,
    SELF_SENT_MARKER,
    WS_PING_INTERVAL,
    WS_PING_TIMEOUT,
)
from .errors import DeliveryError, LookupFailure, TransportError
from .models import (
    Authenticated,
    ClientEvent,
    Connected,
    Disconnected,
    EntityUpdated,
    MessageDeleted,
    MessageEdited,
    MessageReceived,
    PresenceChanged,
    ReactionChanged,
    RemoteBot,
    RemoteChannel,
    RemoteTeam,
    RemoteUser,
    Typing,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _slack_error(e: SlackApiError) -> str:
    try:
        return e.response["error"]
    except Exception:
        return str(e)


def _file_share_ts(ret: Any, channel: str) -> Optional[str]:
    f = ret.get("file") or (ret.get("files") or [{}])[0]
    shares = f.get("shares") or {}
    for scope in ("public", "private"):
        for share in (shares.get(scope) or {}).get(channel) or []:
            if share.get("ts"):
                return share["ts"]
    return None

# -----------------------------
# SlackClient
# -----------------------------


class SlackClient:
    """One live Slack connection plus the entity cache for that account.

    Everything the connection reports is turned into a `ClientEvent` and put on
    `self.events`; the owner drains that queue. Lookups go through the cache and
    the fetch lock, outbound calls go straight to the Web API.
    """

    def __init__(
            self,
            token: str,
            reconnect_delay: float = RECONNECT_DELAY,
            lock_timeout: float = FETCH_LOCK_TIMEOUT,
            web_client: Optional[AsyncWebClient] = None):
        self.token = token
        self.web = web_client or AsyncWebClient(token=token)
        self.ws = None
        self.session: Optional[aiohttp.ClientSession] = None
        self.connected = False
        # set by disconnect() so a closing socket is not mistaken for a drop
        self.stopped = False

        self.events: asyncio.Queue = asyncio.Queue()
        self.cache = EntityCache()
        self.locks = FetchLock(timeout=lock_timeout)

        self.self_user: Dict[str, Any] = {}
        self.team: Dict[str, Any] = {}

        self.read_task: Optional[asyncio.Task] = None
        self.reconnect_task: Optional[asyncio.Task] = None
        self.reconnect_delay = reconnect_delay
        self.reconnect_attempts = 0

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "message": self._on_message,
            "channel_joined": self._on_channel_joined,
            "group_joined": self._on_channel_joined,
            "mpim_joined": self._on_channel_joined,
            "im_created": self._on_channel_joined,
            "channel_rename": self._on_channel_rename,
            "group_rename": self._on_channel_rename,
            "team_join": self._on_team_join,
            "user_change": self._on_user_change,
            "bot_added": self._on_bot_change,
            "bot_changed": self._on_bot_change,
            "user_typing": self._on_typing,
            "presence_change": self._on_presence_change,
            "reaction_added": self._on_reaction,
            "reaction_removed": self._on_reaction,
            "goodbye": self._on_goodbye,
            "error": self._on_error,
        }

    @property
    def self_user_id(self) -> Optional[str]:
        return self.self_user.get("id")

    def _emit(self, event: ClientEvent):
        self.events.put_nowait(event)

    # -------- connection lifecycle --------
    async def connect(self):
        """Open the RTM socket; returns once Slack says hello."""
        if self.connected:
            return
        self.stopped = False
        logger.info("Connecting to Slack RTM")
        try:
            start = await self.web.rtm_connect()
        except SlackApiError as e:
            raise TransportError(
                f"Slack refused the connection: {_slack_error(e)}") from e
        except Exception as e:
            raise TransportError(f"Could not reach Slack: {e}") from e

        self.self_user = dict(start.get("self") or {})
        self.team = dict(start.get("team") or {})
        logger.info(
            f"Logged in as {self.self_user.get('name')} of team {self.team.get('name')}")

        try:
            self.ws = await websockets.connect(
                start["url"], ping_interval=WS_PING_INTERVAL, ping_timeout=WS_PING_TIMEOUT)
            await asyncio.wait_for(self._wait_for_hello(), timeout=HELLO_TIMEOUT)
        except TransportError:
            await self._close_ws()
            raise
        except Exception as e:
            await self._close_ws()
            raise TransportError(f"Slack RTM handshake failed: {e}") from e

        self.connected = True
        self.read_task = asyncio.create_task(self.read_loop())
        logger.info("✅ Connected to Slack")
        # only announce the account once the socket is actually up
        self._emit(Authenticated(self_user=dict(self.self_user), team=dict(self.team)))
        self._emit(Connected())

    async def _wait_for_hello(self):
        async for raw in self.ws:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            kind = data.get("type")
            if kind == "hello":
                return
            if kind == "error":
                err = data.get("error") or {}
                raise TransportError(f"Slack RTM error: {err.get('msg', err)}")
            await self.feed_event(data)
        raise TransportError("Slack closed the socket before saying hello")

    async def disconnect(self):
        logger.info("Disconnecting from Slack")
        self.stopped = True
        self.connected = False
        for task in (self.reconnect_task, self.read_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self._close_ws()
        if self.session and not self.session.closed:
            await self.session.close()
        self.locks.clear()

    async def _close_ws(self):
        if self.ws:
            try:
                await self.ws.close()
            except Exception:
                logger.debug("Error closing Slack websocket", exc_info=True)
            self.ws = None

    async def read_loop(self):
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug(f"📨 Raw non-JSON data: {raw}")
                    continue
                await self.feed_event(data)
        except Exception as e:
            logger.error(f"Slack read loop error: {e}")
        finally:
            await self.handle_connection_lost()

    async def handle_connection_lost(self):
        self.connected = False
        if self.stopped:
            logger.debug("Slack socket closed after disconnect(), not reconnecting")
            self._emit(Disconnected(intentional=True))
            return
        logger.warning("🔴 Lost connection to Slack")
        self._emit(Disconnected(intentional=False))
        self.schedule_reconnect()

    def schedule_reconnect(self):
        """Queue a single reconnect attempt after `reconnect_delay` seconds."""
        if self.stopped:
            return
        if self.reconnect_task and not self.reconnect_task.done():
            return
        logger.info(f"Reconnecting to Slack in {self.reconnect_delay}s")
        self.reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        if self.stopped:
            return
        self.reconnect_attempts += 1
        try:
            await self.connect()
        except Exception as e:
            # no retry loop: the next drop schedules the next attempt
            logger.warning(f"❌ Failed to reconnect to Slack: {e}")

    # -------- inbound events --------
    async def feed_event(self, data: Dict[str, Any]):
        """Handle one raw Slack event, from the RTM socket or an Events API callback."""
        if data.get("type") == "event_callback":
            data = data.get("event") or {}
        kind = data.get("type")
        handler = self._handlers.get(kind)
        if not handler:
            logger.debug(f"Ignoring Slack event type={kind}")
            return
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Error handling Slack {kind} event: {e}")

    async def _on_message(self, data: Dict[str, Any]):
        subtype = data.get("subtype")
        if subtype == "message_changed":
            self._emit(MessageEdited(data))
        elif subtype == "message_deleted":
            self._emit(MessageDeleted(data))
        else:
            self._emit(MessageReceived(data))

    async def _on_channel_joined(self, data: Dict[str, Any]):
        payload = data.get("channel")
        if not isinstance(payload, dict):
            return
        if payload.get("id") in self.cache.channels:
            return
        chan = self.cache.update_channel(RemoteChannel.from_payload(payload))
        self._emit(EntityUpdated(chan, added=True))

    async def _on_channel_rename(self, data: Dict[str, Any]):
        payload = data.get("channel")
        if not isinstance(payload, dict):
            return
        chan = self.cache.update_channel(RemoteChannel.from_payload(payload))
        self._emit(EntityUpdated(chan))

    async def _on_team_join(self, data: Dict[str, Any]):
        user = self.cache.update_user(RemoteUser.from_payload(data.get("user") or {}))
        self._emit(EntityUpdated(user, added=True))

    async def _on_user_change(self, data: Dict[str, Any]):
        user = self.cache.update_user(RemoteUser.from_payload(data.get("user") or {}))
        self._emit(EntityUpdated(user))

    async def _on_bot_change(self, data: Dict[str, Any]):
        bot = self.cache.update_bot(RemoteBot.from_payload(data.get("bot") or {}))
        self._emit(EntityUpdated(bot))

    async def _on_typing(self, data: Dict[str, Any]):
        self._emit(Typing(data))

    async def _on_presence_change(self, data: Dict[str, Any]):
        users = list(data.get("users") or [])
        if data.get("user"):
            users.append(data["user"])
        self._emit(PresenceChanged(users=tuple(users), presence=data.get("presence", "")))

    async def _on_reaction(self, data: Dict[str, Any]):
        self._emit(ReactionChanged(data, added=data.get("type") == "reaction_added"))

    async def _on_goodbye(self, data: Dict[str, Any]):
        logger.info("Slack said goodbye, socket will close")

    async def _on_error(self, data: Dict[str, Any]):
        logger.error(f"Slack RTM error: {data.get('error')}")

    # -------- cached lookups --------
    async def _fetch_once(
            self,
            kind: str,
            key: str,
            lookup: Callable[[str], Optional[T]],
            fetch: Callable[[str], Awaitable[T]]) -> Optional[T]:
        while True:
            found = lookup(key)
            if found is not None:
                return found
            token = self.locks.acquire(kind, key)
            if token is not None:
                break
            await self.locks.wait(kind, key)
        try:
            return await fetch(key)
        except LookupFailure as e:
            logger.debug(f"Could not fetch {kind} info for {key}: {e}")
            return None
        finally:
            self.locks.release(kind, key, token)

    async def _lookup_call(self, method: str, field: str, **kwargs) -> Dict[str, Any]:
        try:
            ret = await getattr(self.web, method)(**kwargs)
        except SlackApiError as e:
            raise LookupFailure(_slack_error(e)) from e
        except Exception as e:
            raise LookupFailure(str(e)) from e
        payload = ret.get(field)
        if not payload:
            raise LookupFailure(f"{method} returned no {field}")
        return payload

    async def _fetch_user(self, user_id: str) -> RemoteUser:
        payload = await self._lookup_call("users_info", "user", user=user_id)
        user = self.cache.update_user(RemoteUser.from_payload(payload))
        self._emit(EntityUpdated(user))
        return user

    async def _fetch_bot(self, bot_id: str) -> RemoteBot:
        payload = await self._lookup_call("bots_info", "bot", bot=bot_id)
        bot = self.cache.update_bot(RemoteBot.from_payload(payload))
        self._emit(EntityUpdated(bot))
        return bot

    async def _fetch_room(self, channel_id: str) -> RemoteChannel:
        payload = await self._lookup_call("conversations_info", "channel", channel=channel_id)
        chan = self.cache.update_channel(RemoteChannel.from_payload(payload))
        self._emit(EntityUpdated(chan))
        return chan

    async def _fetch_team(self, team_id: str) -> RemoteTeam:
        payload = await self._lookup_call("team_info", "team", team=team_id)
        return self.cache.update_team(RemoteTeam.from_payload(payload))

    async def get_user_by_id(self, user_id: str) -> Optional[RemoteUser]:
        return await self._fetch_once("user", user_id, self.cache.find_user, self._fetch_user)

    async def get_bot_by_id(self, bot_id: str) -> RemoteBot:
        bot = await self._fetch_once("bot", bot_id, self.cache.find_bot, self._fetch_bot)
        return bot or RemoteBot.unknown(bot_id)

    async def get_room_by_id(self, channel_id: str) -> Optional[RemoteChannel]:
        return await self._fetch_once("chan", channel_id, self.cache.find_channel, self._fetch_room)

    async def get_channel_by_id(self, channel_id: str) -> Optional[RemoteChannel]:
        chan = await self.get_room_by_id(channel_id)
        if not chan or chan.is_direct:
            return None
        return chan

    async def get_team_by_id(self, team_id: str) -> Optional[RemoteTeam]:
        return await self._fetch_once("team", team_id, self.cache.find_team, self._fetch_team)

    async def get_room_for_user(self, user_id: str) -> Optional[str]:
        try:
            ret = await self.web.conversations_open(users=user_id)
        except SlackApiError as e:
            logger.warning(f"Could not open a DM with {user_id}: {_slack_error(e)}")
            return None
        payload = ret.get("channel") or {}
        if not payload.get("id"):
            return None
        payload.setdefault("is_im", True)
        payload.setdefault("user", user_id)
        self.cache.update_channel(RemoteChannel.from_payload(payload))
        return payload["id"]

    async def _paginate(self, method: str, field: str, **kwargs) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor = None
        while True:
            if cursor:
                kwargs["cursor"] = cursor
            ret = await getattr(self.web, method)(limit=LIST_PAGE_SIZE, **kwargs)
            items.extend(ret.get(field) or [])
            cursor = (ret.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return items

    async def list_users(self) -> List[RemoteUser]:
        try:
            for member in await self._paginate("users_list", "members"):
                if member.get("deleted"):
                    continue
                self.cache.update_user(RemoteUser.from_payload(member))
        except SlackApiError as e:
            logger.warning(f"Could not list Slack users: {_slack_error(e)}")
        return list(self.cache.users.values())

    async def list_channels(self) -> List[RemoteChannel]:
        try:
            for payload in await self._paginate(
                    "conversations_list", "channels",
                    types="public_channel,private_channel,mpim", exclude_archived=True):
                self.cache.update_channel(RemoteChannel.from_payload(payload))
        except SlackApiError as e:
            logger.warning(f"Could not list Slack channels: {_slack_error(e)}")
        return [c for c in self.cache.channels.values() if not c.is_direct]

    async def get_channel_members(self, channel_id: str) -> Optional[List[str]]:
        try:
            return await self._paginate("conversations_members", "members", channel=channel_id)
        except SlackApiError as e:
            logger.warning(f"Could not list members of {channel_id}: {_slack_error(e)}")
            return None

    # -------- outbound --------
    async def _api(self, method: str, **kwargs) -> Any:
        try:
            return await getattr(self.web, method)(**kwargs)
        except SlackApiError as e:
            code = _slack_error(e)
            raise DeliveryError(f"Slack {method} failed: {code}", code) from e

    async def send_message(
            self,
            text: str,
            channel: str,
            thread_ts: Optional[str] = None,
            emote: bool = False) -> Optional[str]:
        if emote:
            ret = await self._api("chat_meMessage", channel=channel, text=text)
        else:
            kwargs = {"channel": channel, "text": text}
            if thread_ts:
                kwargs["thread_ts"] = thread_ts
            ret = await self._api("chat_postMessage", **kwargs)
        return ret.get("ts")

    async def edit_message(self, text: str, channel: str, ts: str) -> Optional[str]:
        ret = await self._api("chat_update", channel=channel, ts=ts, text=text)
        return ret.get("ts")

    async def delete_message(self, channel: str, ts: str):
        await self._api("chat_delete", channel=channel, ts=ts)

    async def send_reaction(self, channel: str, ts: str, name: str):
        await self._api("reactions_add", channel=channel, timestamp=ts, name=name)

    async def remove_reaction(self, channel: str, ts: str, name: str):
        await self._api("reactions_remove", channel=channel, timestamp=ts, name=name)

    async def send_file_message(
            self,
            url: str,
            filename: str,
            channel: str,
            thread_ts: Optional[str] = None) -> Optional[str]:
        """Upload the file at `url` to `channel`; returns the share ts if known."""
        data = await self.download_file(url, authorized=False)
        kwargs = {
            "channel": channel,
            "file": data,
            "filename": filename,
            "title": SELF_SENT_MARKER + filename,
        }
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        ret = await self._api("files_upload_v2", **kwargs)
        return _file_share_ts(ret, channel)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def download_file(self, url: str, authorized: bool = True) -> bytes:
        session = await self._get_session()
        headers = {"Authorization": f"Bearer {self.token}"} if authorized else {}
        async with session.get(url, headers=headers) as resp:
            if resp.status != 200:
                raise DeliveryError(f"Failed to download {url}: HTTP {resp.status}")
            return await resp.read()
