from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

# -----------------------------
# Parameter records passed to and from the puppet host
# -----------------------------


@dataclass
class RoomRef:
    puppet_id: int
    room_id: str


@dataclass
class UserRef:
    puppet_id: int
    user_id: str


@dataclass
class ReceiveParams:
    """Where an inbound Slack event lands: room, author and Slack ts."""
    room: RoomRef
    user: UserRef
    event_id: Optional[str] = None


@dataclass
class MessageContent:
    body: str
    formatted_body: Optional[str] = None
    emote: bool = False


@dataclass
class RemoteUserParams:
    puppet_id: int
    user_id: str
    name: str = ""
    avatar_url: str = ""


@dataclass
class RemoteRoomParams:
    puppet_id: int
    room_id: str
    name: str = ""
    topic: str = ""
    avatar_url: str = ""
    is_direct: bool = False
    group_id: Optional[str] = None


@dataclass
class RemoteGroupParams:
    puppet_id: int
    group_id: str
    name: str = ""
    avatar_url: str = ""
    room_ids: List[str] = field(default_factory=list)


@dataclass
class ListEntry:
    id: str
    name: str


@dataclass
class MatrixEvent:
    event_id: str
    sender: str
    content: Dict[str, Any]


@dataclass
class MatrixFile:
    event_id: str
    sender: str
    url: str
    filename: str

# -----------------------------
# Host interface
# -----------------------------


class PuppetHost(Protocol):
    """The Matrix side of the bridge, as far as this package needs it."""

    # identity
    async def get_mxid_for_user(self, user: UserRef) -> str: ...

    async def get_mxid_for_room(self, room: RoomRef) -> str: ...

    async def get_user_parts(self, mxid: str) -> Optional[UserRef]: ...

    async def get_room_parts(self, mxid: str) -> Optional[RoomRef]: ...

    # delivery
    async def send_message(self, params: ReceiveParams, content: MessageContent): ...

    async def send_reply(self, params: ReceiveParams, reply_to: str, content: MessageContent): ...

    async def send_edit(self, params: ReceiveParams, event_id: str, content: MessageContent): ...

    async def send_redact(self, params: ReceiveParams, event_id: str): ...

    async def send_reaction(self, params: ReceiveParams, event_id: str, reaction: str): ...

    async def remove_reaction(self, params: ReceiveParams, event_id: str, reaction: str): ...

    async def send_file(self, params: ReceiveParams, data: bytes, filename: str): ...

    async def update_user(self, user: RemoteUserParams): ...

    async def update_room(self, room: RemoteRoomParams): ...

    async def update_group(self, group: RemoteGroupParams): ...

    async def set_user_typing(self, params: ReceiveParams, typing: bool): ...

    async def set_user_presence(self, user: UserRef, presence: str): ...

    async def set_user_id(self, puppet_id: int, user_id: str): ...

    async def set_puppet_data(self, puppet_id: int, data: Dict[str, Any]): ...

    async def send_status_message(self, puppet_id: int, message: str): ...

    async def record_event(self, puppet_id: int, matrix_event_id: str, remote_event_id: str): ...

    # media
    async def upload_content(self, data: bytes, filename: Optional[str] = None) -> str: ...
