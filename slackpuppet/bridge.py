import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import emoji

from .client import SlackClient
from .config import MATRIX_TO_LINK, RECONNECT_DELAY, SELF_SENT_MARKER
from .dedupe import Deduplicator, file_fingerprint
from .errors import TransportError
from .host import (
    ListEntry,
    MatrixEvent,
    MatrixFile,
    MessageContent,
    PuppetHost,
    ReceiveParams,
    RemoteGroupParams,
    RemoteRoomParams,
    RemoteUserParams,
    RoomRef,
    UserRef,
)
from .matrix_parser import MatrixParserOpts, parse_matrix_message
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
from .slack_parser import Mention, SlackParserOpts, is_noop_edit, parse_slack_message
from .store import SlackStore
from .threads import ThreadTracker

logger = logging.getLogger(__name__)


def reaction_to_unicode(name: str) -> str:
    """Slack reaction name -> unicode emoji; custom emoji stay `:name:`."""
    name = name.split("::", 1)[0]  # drop skin tone
    return emoji.emojize(f":{name}:", language="alias")


def reaction_to_shortcode(reaction: str) -> str:
    return emoji.demojize(reaction, language="alias").strip(":")


def reaction_fingerprint(ts: str, name: str) -> str:
    return f"reaction:{ts}:{name}"


@dataclass
class PuppetSession:
    puppet_id: int
    client: SlackClient
    data: Dict[str, Any]
    client_stopped: bool = False
    consumer: Optional[asyncio.Task] = field(default=None, repr=False)


class SlackBridge:
    """Owns one session per bridged Slack account and routes events both ways."""

    def __init__(
            self,
            host: PuppetHost,
            store: Optional[SlackStore] = None,
            reconnect_delay: float = RECONNECT_DELAY,
            client_factory: Optional[Callable[[str], SlackClient]] = None):
        self.host = host
        self.store = store
        self.puppets: Dict[int, PuppetSession] = {}
        self.dedupe = Deduplicator()
        self.threads = ThreadTracker(store)
        self.client_factory = client_factory or (
            lambda token: SlackClient(token, reconnect_delay=reconnect_delay))
        self._event_handlers = {
            Authenticated: self.on_authenticated,
            Connected: self.on_connected,
            Disconnected: self.on_disconnected,
            MessageReceived: self.handle_slack_message,
            MessageEdited: self.handle_slack_edit,
            MessageDeleted: self.handle_slack_delete,
            EntityUpdated: self.on_entity_updated,
            Typing: self.on_typing,
            PresenceChanged: self.on_presence_changed,
            ReactionChanged: self.handle_slack_reaction,
        }

    # -------- session lifecycle --------
    async def new_puppet(self, puppet_id: int, data: Dict[str, Any]):
        logger.info(f"Adding new puppet: puppet_id={puppet_id}")
        if puppet_id in self.puppets:
            await self.stop_client(puppet_id)
            await self.remove_puppet(puppet_id)
        self.puppets[puppet_id] = PuppetSession(
            puppet_id=puppet_id,
            client=self.client_factory(data["token"]),
            data=data,
        )
        await self.start_client(puppet_id)

    async def start_client(self, puppet_id: int):
        p = self.puppets.get(puppet_id)
        if not p:
            return
        p.client_stopped = False
        if p.consumer is None or p.consumer.done():
            p.consumer = asyncio.create_task(self._consume(p))
        try:
            await p.client.connect()
        except TransportError as e:
            logger.warning(f"❌ Failed to connect puppet {puppet_id}: {e}")
            await self.host.send_status_message(puppet_id, f"Failed to connect to Slack: {e}")
            p.client.schedule_reconnect()
            raise

    async def stop_client(self, puppet_id: int):
        p = self.puppets.get(puppet_id)
        if not p:
            return
        p.client_stopped = True
        await p.client.disconnect()

    async def remove_puppet(self, puppet_id: int):
        logger.info(f"Removing puppet: puppet_id={puppet_id}")
        p = self.puppets.pop(puppet_id, None)
        if p and p.consumer and not p.consumer.done():
            p.consumer.cancel()
            try:
                await p.consumer
            except asyncio.CancelledError:
                pass

    async def delete_puppet(self, puppet_id: int):
        logger.info(f"Got signal to quit puppet: puppet_id={puppet_id}")
        await self.stop_client(puppet_id)
        await self.remove_puppet(puppet_id)
        if self.store:
            self.store.delete_token(puppet_id)

    async def close(self):
        for puppet_id in list(self.puppets):
            await self.stop_client(puppet_id)
            await self.remove_puppet(puppet_id)

    async def _consume(self, p: PuppetSession):
        while True:
            event = await p.client.events.get()
            try:
                await self.handle_client_event(p, event)
            except Exception as e:
                logger.error(
                    f"Error handling {type(event).__name__} for puppet {p.puppet_id}: {e}")

    async def handle_client_event(self, p: PuppetSession, event: ClientEvent):
        handler = self._event_handlers.get(type(event))
        if handler:
            await handler(p, event)

    # -------- parameter builders --------
    def get_user_params(self, puppet_id: int, user: Union[RemoteUser, RemoteBot]) -> RemoteUserParams:
        return RemoteUserParams(
            puppet_id=puppet_id,
            user_id=user.id,
            name=user.display_name,
            avatar_url=user.avatar_url,
        )

    async def get_room_params(self, puppet_id: int, chan: RemoteChannel) -> RemoteRoomParams:
        if chan.is_direct:
            return RemoteRoomParams(puppet_id=puppet_id, room_id=chan.id, is_direct=True)
        params = RemoteRoomParams(
            puppet_id=puppet_id,
            room_id=chan.id,
            name=chan.name,
            topic=chan.topic,
        )
        p = self.puppets.get(puppet_id)
        team_id = chan.team_id or (p and (p.data.get("team") or {}).get("id"))
        if p and team_id:
            team = await p.client.get_team_by_id(team_id)
            if team:
                params.name += f" - {team.name}"
                params.avatar_url = team.icon_url
                params.group_id = team.id
        return params

    def get_group_params(self, puppet_id: int, team: RemoteTeam) -> RemoteGroupParams:
        return RemoteGroupParams(
            puppet_id=puppet_id,
            group_id=team.id,
            name=team.name,
            avatar_url=team.icon_url,
            room_ids=sorted(team.channel_ids),
        )

    def get_send_params(self, puppet_id: int, data: Dict[str, Any]) -> ReceiveParams:
        user_id = data.get("user") or data.get("bot_id")
        event_id = data.get("ts")
        for key in ("message", "previous_message"):
            sub = data.get(key)
            if sub:
                user_id = user_id or sub.get("user") or sub.get("bot_id")
                event_id = event_id or sub.get("ts")
        return ReceiveParams(
            room=RoomRef(puppet_id, data.get("channel")),
            user=UserRef(puppet_id, user_id),
            event_id=event_id,
        )

    def _slack_parser_opts(self, p: PuppetSession) -> SlackParserOpts:
        async def resolve_user(user_id: str) -> Optional[Mention]:
            user = await p.client.get_user_by_id(user_id)
            if not user:
                return None
            mxid = await self.host.get_mxid_for_user(UserRef(p.puppet_id, user_id))
            return Mention(user.display_name, MATRIX_TO_LINK + mxid)

        async def resolve_channel(channel_id: str) -> Optional[Mention]:
            chan = await p.client.get_channel_by_id(channel_id)
            if not chan:
                return None
            mxid = await self.host.get_mxid_for_room(RoomRef(p.puppet_id, channel_id))
            return Mention(chan.name, MATRIX_TO_LINK + mxid)

        async def upload_file(url: str) -> Optional[str]:
            data = await p.client.download_file(url, authorized=False)
            return await self.host.upload_content(data)

        # usergroups are not looked up, the handle Slack sends is shown instead
        return SlackParserOpts(
            resolve_user=resolve_user,
            resolve_channel=resolve_channel,
            upload_file=upload_file,
        )

    # -------- Slack -> Matrix --------
    async def on_authenticated(self, p: PuppetSession, event: Authenticated):
        p.data.setdefault("team", {}).update(event.team)
        p.data.setdefault("self", {}).update(event.self_user)
        user_id = event.self_user.get("id")
        if user_id:
            await self.host.set_user_id(p.puppet_id, user_id)
        await self.host.set_puppet_data(p.puppet_id, p.data)
        if self.store and user_id:
            self.store.set_token(p.puppet_id, p.data["token"], event.team.get("id", ""), user_id)

    async def on_connected(self, p: PuppetSession, event: Connected):
        logger.info(f"✅ Puppet {p.puppet_id} connected to Slack")

    async def on_disconnected(self, p: PuppetSession, event: Disconnected):
        if event.intentional or p.client_stopped:
            return
        logger.info(f"🔴 Lost connection for puppet {p.puppet_id}, reconnecting in a minute")
        await self.host.send_status_message(
            p.puppet_id, "Lost connection to Slack, reconnecting in a minute...")

    async def on_entity_updated(self, p: PuppetSession, event: EntityUpdated):
        entity = event.entity
        if isinstance(entity, (RemoteUser, RemoteBot)):
            await self.host.update_user(self.get_user_params(p.puppet_id, entity))
        elif isinstance(entity, RemoteChannel):
            logger.debug(f"Updating room {entity.id} (added={event.added})")
            await self.host.update_room(await self.get_room_params(p.puppet_id, entity))
        elif isinstance(entity, RemoteTeam):
            await self.host.update_group(self.get_group_params(p.puppet_id, entity))

    async def on_typing(self, p: PuppetSession, event: Typing):
        # Slack never sends a typing-stopped event, the host times the indicator out
        await self.host.set_user_typing(self.get_send_params(p.puppet_id, event.data), True)

    async def on_presence_changed(self, p: PuppetSession, event: PresenceChanged):
        presence = "online" if event.presence == "active" else "offline"
        for user_id in event.users:
            await self.host.set_user_presence(UserRef(p.puppet_id, user_id), presence)

    async def _deliver(self, params: ReceiveParams, content: MessageContent, reply_to: Optional[str]):
        if reply_to:
            await self.host.send_reply(params, reply_to, content)
        else:
            await self.host.send_message(params, content)

    async def handle_slack_message(self, p: PuppetSession, event: MessageReceived):
        data = event.data
        params = self.get_send_params(p.puppet_id, data)
        key = (p.puppet_id, params.room.room_id)
        text = data.get("text") or ""
        files = data.get("files") or []
        fingerprint = text
        if not text and files:
            fingerprint = file_fingerprint(files[0].get("name") or "")
        if self.dedupe.dedupe(key, params.user.user_id, params.event_id, fingerprint):
            return
        logger.debug(f"Received message subtype={data.get('subtype')} files={len(files)}")

        thread_ts = data.get("thread_ts")
        reply_to = None
        if thread_ts and thread_ts != params.event_id:
            reply_to = self.threads.latest_in_thread(thread_ts) or thread_ts

        opts = self._slack_parser_opts(p)
        has_content = text or data.get("attachments") or data.get("blocks")
        if has_content and not text.startswith(SELF_SENT_MARKER):
            body, formatted = await parse_slack_message(
                opts, text, data.get("attachments"), data.get("blocks"))
            if body or formatted:
                await self._deliver(params, MessageContent(
                    body=body,
                    formatted_body=formatted,
                    emote=data.get("subtype") == "me_message",
                ), reply_to)

        for f in files:
            if (f.get("title") or "").startswith(SELF_SENT_MARKER):
                continue  # we uploaded this one
            url = f.get("url_private") or ""
            try:
                blob = await p.client.download_file(url)
                await self.host.send_file(params, blob, f.get("name") or "file")
            except Exception as e:
                logger.warning(f"Could not bridge Slack file {url}: {e}")
                await self.host.send_message(params, MessageContent(body=f"sent a file: {url}", emote=True))
            comment = f.get("initial_comment")
            if isinstance(comment, dict):
                comment = comment.get("comment")
            if comment:
                body, formatted = await parse_slack_message(opts, comment)
                await self.host.send_message(params, MessageContent(body=body, formatted_body=formatted))

        if reply_to and params.event_id:
            self.threads.record_reply(params.event_id, thread_ts)

    async def handle_slack_edit(self, p: PuppetSession, event: MessageEdited):
        data = event.data
        params = self.get_send_params(p.puppet_id, data)
        message = data.get("message") or {}
        if is_noop_edit(event.old_text, event.new_text):
            logger.debug(f"Dropping no-op edit in {params.room.room_id}")
            return
        key = (p.puppet_id, params.room.room_id)
        if self.dedupe.dedupe(key, params.user.user_id, message.get("ts"), event.new_text):
            return
        body, formatted = await parse_slack_message(
            self._slack_parser_opts(p), event.new_text,
            message.get("attachments"), message.get("blocks"))
        original_ts = (data.get("previous_message") or {}).get("ts") or message.get("ts")
        logger.info(f"✏️ Slack edit of {original_ts} in {params.room.room_id}")
        await self.host.send_edit(params, original_ts, MessageContent(body=body, formatted_body=formatted))

    async def handle_slack_delete(self, p: PuppetSession, event: MessageDeleted):
        params = self.get_send_params(p.puppet_id, event.data)
        ts = event.deleted_ts
        if not ts:
            return
        logger.info(f"🗑️ Slack delete of {ts} in {params.room.room_id}")
        await self.host.send_redact(params, ts)
        self.threads.forget(ts)

    async def handle_slack_reaction(self, p: PuppetSession, event: ReactionChanged):
        data = event.data
        item = data.get("item") or {}
        if item.get("type", "message") != "message":
            return
        ts = item.get("ts")
        name = data.get("reaction") or ""
        params = ReceiveParams(
            room=RoomRef(p.puppet_id, item.get("channel")),
            user=UserRef(p.puppet_id, data.get("user")),
            event_id=ts,
        )
        fingerprint = reaction_fingerprint(ts, name)
        key = (p.puppet_id, params.room.room_id)
        if self.dedupe.dedupe(key, params.user.user_id, fingerprint, fingerprint):
            return
        reaction = reaction_to_unicode(name)
        if event.added:
            await self.host.send_reaction(params, ts, reaction)
        else:
            await self.host.remove_reaction(params, ts, reaction)

    # -------- Matrix -> Slack --------
    async def _send_locked(
            self,
            p: PuppetSession,
            room: RoomRef,
            fingerprint: str,
            send: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        key = (room.puppet_id, room.room_id)
        self.dedupe.lock(key, p.client.self_user_id, fingerprint)
        ts = None
        try:
            ts = await send()
        finally:
            self.dedupe.unlock(key, ts)
        return ts

    def _matrix_opts(self, puppet_id: int) -> MatrixParserOpts:
        return MatrixParserOpts(puppet_id=puppet_id, host=self.host)

    async def handle_matrix_message(self, room: RoomRef, event: MatrixEvent):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        msg = await parse_matrix_message(event.content, self._matrix_opts(room.puppet_id))
        emote = event.content.get("msgtype") == "m.emote"
        ts = await self._send_locked(
            p, room, msg, lambda: p.client.send_message(msg, room.room_id, emote=emote))
        if ts:
            await self.host.record_event(room.puppet_id, event.event_id, ts)

    async def handle_matrix_edit(self, room: RoomRef, event_id: str, event: MatrixEvent):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        content = event.content.get("m.new_content") or event.content
        msg = await parse_matrix_message(content, self._matrix_opts(room.puppet_id))
        ts = await self._send_locked(
            p, room, msg, lambda: p.client.edit_message(msg, room.room_id, event_id))
        if ts:
            await self.host.record_event(room.puppet_id, event.event_id, ts)

    async def handle_matrix_reply(self, room: RoomRef, event_id: str, event: MatrixEvent):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        msg = await parse_matrix_message(event.content, self._matrix_opts(room.puppet_id))
        root = self.threads.get_root(event_id)
        ts = await self._send_locked(
            p, room, msg, lambda: p.client.send_message(msg, room.room_id, thread_ts=root))
        if ts:
            await self.host.record_event(room.puppet_id, event.event_id, ts)
            self.threads.record_reply(ts, event_id)

    async def handle_matrix_redact(self, room: RoomRef, event_id: str):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        await p.client.delete_message(room.room_id, event_id)
        self.threads.forget(event_id)

    async def _react(self, room: RoomRef, event_id: str, reaction: str, added: bool):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        name = reaction_to_shortcode(reaction)
        fingerprint = reaction_fingerprint(event_id, name)
        send = p.client.send_reaction if added else p.client.remove_reaction

        async def do_send():
            await send(room.room_id, event_id, name)
            return fingerprint

        await self._send_locked(p, room, fingerprint, do_send)

    async def handle_matrix_reaction(self, room: RoomRef, event_id: str, reaction: str):
        await self._react(room, event_id, reaction, added=True)

    async def handle_matrix_remove_reaction(self, room: RoomRef, event_id: str, reaction: str):
        await self._react(room, event_id, reaction, added=False)

    async def handle_matrix_file(self, room: RoomRef, file: MatrixFile):
        p = self.puppets.get(room.puppet_id)
        if not p:
            return
        ts = await self._send_locked(
            p, room, file_fingerprint(file.filename),
            lambda: p.client.send_file_message(file.url, file.filename, room.room_id))
        if ts:
            await self.host.record_event(room.puppet_id, file.event_id, ts)

    # -------- host hooks --------
    async def create_user(self, user: UserRef) -> Optional[RemoteUserParams]:
        p = self.puppets.get(user.puppet_id)
        if not p:
            return None
        logger.info(f"Received create request for user puppet_id={user.puppet_id} user_id={user.user_id}")
        found = await p.client.get_user_by_id(user.user_id)
        if not found:
            found = await p.client.get_bot_by_id(user.user_id)
        return self.get_user_params(user.puppet_id, found)

    async def create_room(self, room: RoomRef) -> Optional[RemoteRoomParams]:
        p = self.puppets.get(room.puppet_id)
        if not p:
            return None
        logger.info(f"Received create request for room puppet_id={room.puppet_id} room_id={room.room_id}")
        chan = await p.client.get_room_by_id(room.room_id)
        if not chan:
            return None
        return await self.get_room_params(room.puppet_id, chan)

    async def create_group(self, puppet_id: int, group_id: str) -> Optional[RemoteGroupParams]:
        p = self.puppets.get(puppet_id)
        if not p:
            return None
        team = await p.client.get_team_by_id(group_id)
        if not team:
            return None
        return self.get_group_params(puppet_id, team)

    async def get_dm_room(self, user: UserRef) -> Optional[str]:
        p = self.puppets.get(user.puppet_id)
        if not p:
            return None
        return await p.client.get_room_for_user(user.user_id)

    async def list_users(self, puppet_id: int) -> List[ListEntry]:
        p = self.puppets.get(puppet_id)
        if not p:
            return []
        return [ListEntry(id=u.id, name=u.display_name) for u in await p.client.list_users()]

    async def list_rooms(self, puppet_id: int) -> List[ListEntry]:
        p = self.puppets.get(puppet_id)
        if not p:
            return []
        return [ListEntry(id=c.id, name=c.name) for c in await p.client.list_channels()]

    async def get_user_ids_in_room(self, room: RoomRef) -> Optional[Set[str]]:
        p = self.puppets.get(room.puppet_id)
        if not p:
            return None
        members = await p.client.get_channel_members(room.room_id)
        return set(members) if members is not None else None

    async def get_desc(self, puppet_id: int, data: Dict[str, Any]) -> str:
        s = "Slack"
        if data.get("team"):
            s += f" on `{data['team'].get('name')}`"
        if data.get("self"):
            s += f" as `{data['self'].get('name')}`"
        return s

    async def get_data_from_str(self, s: str) -> Dict[str, Any]:
        if not s or not s.strip():
            return {"success": False, "error": "Please specify a token to link!"}
        return {"success": True, "data": {"token": s.strip()}}
