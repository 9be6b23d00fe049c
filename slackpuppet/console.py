import hashlib
import logging
import re
from typing import Any, Dict, Optional

from .host import (
    MessageContent,
    ReceiveParams,
    RemoteGroupParams,
    RemoteRoomParams,
    RemoteUserParams,
    RoomRef,
    UserRef,
)

logger = logging.getLogger(__name__)


class ConsoleHost:
    """A puppet host that only logs what would have gone to Matrix.

    Ghost users and rooms get deterministic ids of the form
    `@_slack_<puppet>_<id>:<domain>` / `#_slack_<puppet>_<id>:<domain>`.
    """

    def __init__(self, domain: str = "localhost"):
        self.domain = domain
        self.puppet_data: Dict[int, Dict[str, Any]] = {}
        self.events: Dict[str, str] = {}
        self._user_re = re.compile(rf'^@_slack_(\d+)_([A-Za-z0-9]+):{re.escape(domain)}$')
        self._room_re = re.compile(rf'^[#!]_slack_(\d+)_([A-Za-z0-9]+):{re.escape(domain)}$')

    async def get_mxid_for_user(self, user: UserRef) -> str:
        return f"@_slack_{user.puppet_id}_{user.user_id}:{self.domain}"

    async def get_mxid_for_room(self, room: RoomRef) -> str:
        return f"#_slack_{room.puppet_id}_{room.room_id}:{self.domain}"

    async def get_user_parts(self, mxid: str) -> Optional[UserRef]:
        m = self._user_re.match(mxid)
        return UserRef(int(m.group(1)), m.group(2)) if m else None

    async def get_room_parts(self, mxid: str) -> Optional[RoomRef]:
        m = self._room_re.match(mxid)
        return RoomRef(int(m.group(1)), m.group(2)) if m else None

    async def send_message(self, params: ReceiveParams, content: MessageContent):
        prefix = "* " if content.emote else ""
        logger.info(f"[{params.room.room_id}] <{params.user.user_id}> {prefix}{content.body}")

    async def send_reply(self, params: ReceiveParams, reply_to: str, content: MessageContent):
        logger.info(f"[{params.room.room_id}] <{params.user.user_id}> (re {reply_to}) {content.body}")

    async def send_edit(self, params: ReceiveParams, event_id: str, content: MessageContent):
        logger.info(f"✏️ [{params.room.room_id}] {event_id} -> {content.body}")

    async def send_redact(self, params: ReceiveParams, event_id: str):
        logger.info(f"🗑️ [{params.room.room_id}] {event_id}")

    async def send_reaction(self, params: ReceiveParams, event_id: str, reaction: str):
        logger.info(f"[{params.room.room_id}] {params.user.user_id} reacted {reaction} to {event_id}")

    async def remove_reaction(self, params: ReceiveParams, event_id: str, reaction: str):
        logger.info(f"[{params.room.room_id}] {params.user.user_id} removed {reaction} from {event_id}")

    async def send_file(self, params: ReceiveParams, data: bytes, filename: str):
        logger.info(f"[{params.room.room_id}] <{params.user.user_id}> file {filename} ({len(data)} bytes)")

    async def update_user(self, user: RemoteUserParams):
        logger.debug(f"User {user.user_id}: {user.name}")

    async def update_room(self, room: RemoteRoomParams):
        logger.debug(f"Room {room.room_id}: {room.name or 'DM'}")

    async def update_group(self, group: RemoteGroupParams):
        logger.debug(f"Group {group.group_id}: {group.name} ({len(group.room_ids)} rooms)")

    async def set_user_typing(self, params: ReceiveParams, typing: bool):
        logger.debug(f"[{params.room.room_id}] {params.user.user_id} typing={typing}")

    async def set_user_presence(self, user: UserRef, presence: str):
        logger.debug(f"{user.user_id} is {presence}")

    async def set_user_id(self, puppet_id: int, user_id: str):
        logger.info(f"Puppet {puppet_id} is Slack user {user_id}")

    async def set_puppet_data(self, puppet_id: int, data: Dict[str, Any]):
        self.puppet_data[puppet_id] = data

    async def send_status_message(self, puppet_id: int, message: str):
        logger.warning(f"Status for puppet {puppet_id}: {message}")

    async def record_event(self, puppet_id: int, matrix_event_id: str, remote_event_id: str):
        self.events[matrix_event_id] = remote_event_id

    async def upload_content(self, data: bytes, filename: Optional[str] = None) -> str:
        digest = hashlib.sha256(data).hexdigest()[:24]
        return f"mxc://{self.domain}/{digest}"
