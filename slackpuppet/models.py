from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple, Union

# -----------------------------
# Slack entities
# -----------------------------


def pick_image_key(images: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the highest resolution `image_*` key of a profile/icons dict.

    `image_original` always wins, then the numerically largest size.
    Keys with a non-numeric suffix sort last.
    """
    if not images:
        return None

    def rank(key: str):
        suffix = key[len("image_"):]
        if suffix == "original":
            return (0, 0)
        if suffix.isdigit():
            return (1, -int(suffix))
        return (2, 0)

    keys = [k for k in images if k.startswith("image_") and images[k]]
    if not keys:
        return None
    return min(keys, key=rank)


def pick_image_url(images: Optional[Dict[str, Any]]) -> str:
    key = pick_image_key(images)
    return images[key] if key else ""


@dataclass
class RemoteUser:
    id: str
    name: str = ""
    display_name: str = ""
    avatar_url: str = ""
    team_id: Optional[str] = None
    is_bot: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RemoteUser":
        profile = data.get("profile") or {}
        display = (
            profile.get("display_name")
            or profile.get("real_name")
            or data.get("real_name")
            or data.get("name")
            or data.get("id", "")
        )
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            display_name=display,
            avatar_url=pick_image_url(profile),
            team_id=data.get("team_id") or profile.get("team"),
            is_bot=bool(data.get("is_bot")),
        )

    def update_from(self, other: "RemoteUser"):
        self.name = other.name or self.name
        self.display_name = other.display_name or self.display_name
        self.avatar_url = other.avatar_url or self.avatar_url
        self.team_id = other.team_id or self.team_id
        self.is_bot = other.is_bot


@dataclass
class RemoteBot:
    id: str
    name: str = ""
    avatar_url: str = ""
    team_id: Optional[str] = None
    app_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RemoteBot":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            avatar_url=pick_image_url(data.get("icons")),
            team_id=data.get("team_id"),
            app_id=data.get("app_id"),
        )

    @classmethod
    def unknown(cls, bot_id: str) -> "RemoteBot":
        return cls(id=bot_id, name="unknown")

    @property
    def display_name(self) -> str:
        return self.name

    def update_from(self, other: "RemoteBot"):
        self.name = other.name or self.name
        self.avatar_url = other.avatar_url or self.avatar_url
        self.team_id = other.team_id or self.team_id
        self.app_id = other.app_id or self.app_id


@dataclass
class RemoteChannel:
    id: str
    name: str = ""
    topic: str = ""
    is_direct: bool = False
    team_id: Optional[str] = None
    user: Optional[str] = None  # DM peer

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RemoteChannel":
        if data.get("is_im"):
            return cls(
                id=data.get("id", ""),
                is_direct=True,
                team_id=data.get("context_team_id") or data.get("team_id"),
                user=data.get("user"),
            )
        topic = data.get("topic")
        if isinstance(topic, dict):
            topic = topic.get("value", "")
        return cls(
            id=data.get("id", ""),
            name=data.get("name", "") or "",
            topic=topic or "",
            team_id=data.get("context_team_id") or (data.get("shared_team_ids") or [None])[0],
        )

    def update_from(self, other: "RemoteChannel"):
        if other.name and other.name != self.name:
            self.name = other.name
        self.topic = other.topic or self.topic
        self.team_id = other.team_id or self.team_id
        self.user = other.user or self.user


@dataclass
class RemoteTeam:
    id: str
    name: str = ""
    icon_url: str = ""
    domain: str = ""
    channel_ids: Set[str] = field(default_factory=set)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RemoteTeam":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            icon_url=pick_image_url(data.get("icon")),
            domain=data.get("domain", ""),
        )


RemoteEntity = Union[RemoteUser, RemoteBot, RemoteChannel, RemoteTeam]

# -----------------------------
# Message content variants
# -----------------------------


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class AttachmentContent:
    pretext: str = ""
    author_name: str = ""
    author_link: str = ""
    title: str = ""
    title_link: str = ""
    text: str = ""
    fields: Tuple[Tuple[str, str], ...] = ()
    actions: Tuple[str, ...] = ()
    footer: str = ""
    color: str = ""
    image_url: str = ""
    fallback: str = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "AttachmentContent":
        actions = data.get("actions")
        if not isinstance(actions, list):
            actions = []
        return cls(
            pretext=data.get("pretext") or "",
            author_name=data.get("author_name") or "",
            author_link=data.get("author_link") or "",
            title=data.get("title") or "",
            title_link=data.get("title_link") or "",
            text=data.get("text") or "",
            fields=tuple(
                (f.get("title") or "", f.get("value") or "")
                for f in data.get("fields") or []
            ),
            actions=tuple(a.get("text") or "" for a in actions),
            footer=data.get("footer") or "",
            color=data.get("color") or "",
            image_url=data.get("image_url") or "",
            fallback=data.get("fallback") or "",
        )


@dataclass(frozen=True)
class BlockContent:
    block_type: str
    text: str = ""
    image_url: str = ""
    alt_text: str = ""

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "BlockContent":
        kind = data.get("type", "")
        if kind == "image":
            return cls(kind, image_url=data.get("image_url", ""),
                       alt_text=data.get("alt_text", ""))
        if kind == "context":
            parts = [_block_text(e) for e in data.get("elements") or []]
            return cls(kind, text=" ".join(p for p in parts if p))
        if kind == "rich_text":
            return cls(kind, text=_rich_text(data.get("elements") or []))
        return cls(kind, text=_block_text(data.get("text")))


ContentBlock = Union[TextContent, AttachmentContent, BlockContent]


def _block_text(obj: Any) -> str:
    if isinstance(obj, dict):
        return obj.get("text") or ""
    if isinstance(obj, str):
        return obj
    return ""


def _rich_text(elements) -> str:
    out = []
    for el in elements:
        kind = el.get("type")
        if kind in ("rich_text_section", "rich_text_preformatted", "rich_text_quote"):
            out.append(_rich_text(el.get("elements") or []))
        elif kind == "rich_text_list":
            out.append("\n".join(_rich_text([e]) for e in el.get("elements") or []))
        elif kind == "text":
            out.append(el.get("text", ""))
        elif kind == "link":
            out.append(el.get("text") or el.get("url", ""))
        elif kind == "user":
            out.append(f"<@{el.get('user_id', '')}>")
        elif kind == "channel":
            out.append(f"<#{el.get('channel_id', '')}>")
        elif kind == "emoji":
            out.append(f":{el.get('name', '')}:")
        elif kind == "broadcast":
            out.append(f"<!{el.get('range', 'here')}>")
    return "".join(out)


def content_from_message(data: Dict[str, Any]) -> Tuple[ContentBlock, ...]:
    """Split a Slack message payload into its content variants, in order."""
    blocks = []
    if data.get("text"):
        blocks.append(TextContent(data["text"]))
    for att in data.get("attachments") or []:
        blocks.append(AttachmentContent.from_payload(att))
    for block in data.get("blocks") or []:
        blocks.append(BlockContent.from_payload(block))
    return tuple(blocks)

# -----------------------------
# Client events
# -----------------------------


@dataclass(frozen=True)
class ClientEvent:
    pass


@dataclass(frozen=True)
class Authenticated(ClientEvent):
    self_user: Dict[str, Any]
    team: Dict[str, Any]


@dataclass(frozen=True)
class Connected(ClientEvent):
    pass


@dataclass(frozen=True)
class Disconnected(ClientEvent):
    intentional: bool = False


@dataclass(frozen=True)
class MessageReceived(ClientEvent):
    data: Dict[str, Any]


@dataclass(frozen=True)
class MessageEdited(ClientEvent):
    data: Dict[str, Any]

    @property
    def new_text(self) -> str:
        return (self.data.get("message") or {}).get("text") or ""

    @property
    def old_text(self) -> str:
        return (self.data.get("previous_message") or {}).get("text") or ""


@dataclass(frozen=True)
class MessageDeleted(ClientEvent):
    data: Dict[str, Any]

    @property
    def deleted_ts(self) -> Optional[str]:
        return self.data.get("deleted_ts") or (self.data.get("previous_message") or {}).get("ts")


@dataclass(frozen=True)
class EntityUpdated(ClientEvent):
    entity: RemoteEntity
    added: bool = False


@dataclass(frozen=True)
class Typing(ClientEvent):
    data: Dict[str, Any]


@dataclass(frozen=True)
class PresenceChanged(ClientEvent):
    users: Tuple[str, ...]
    presence: str


@dataclass(frozen=True)
class ReactionChanged(ClientEvent):
    data: Dict[str, Any]
    added: bool = True
