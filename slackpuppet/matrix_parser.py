import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .config import LIST_BULLET_POINTS, LIST_INDENT, MATRIX_TO_LINK
from .errors import TranslationFailure
from .host import PuppetHost

logger = logging.getLogger(__name__)

# -----------------------------
# Matrix HTML -> node tree
# -----------------------------


class NodeKind(enum.Enum):
    ROOT = "root"
    TEXT = "text"
    EMPHASIS = "emphasis"
    STRONG = "strong"
    STRIKE = "strike"
    CODE = "code"
    PRE = "pre"
    LINK = "link"
    IMAGE = "image"
    BREAK = "break"
    PARAGRAPH = "paragraph"
    BLOCKQUOTE = "blockquote"
    UNORDERED_LIST = "unordered_list"
    ORDERED_LIST = "ordered_list"
    LIST_ITEM = "list_item"
    HEADING = "heading"
    RULE = "rule"
    SPOILER = "spoiler"
    REPLY = "reply"
    CONTAINER = "container"


_TAG_KINDS = {
    "em": NodeKind.EMPHASIS,
    "i": NodeKind.EMPHASIS,
    "strong": NodeKind.STRONG,
    "b": NodeKind.STRONG,
    "del": NodeKind.STRIKE,
    "s": NodeKind.STRIKE,
    "strike": NodeKind.STRIKE,
    "code": NodeKind.CODE,
    "pre": NodeKind.PRE,
    "a": NodeKind.LINK,
    "img": NodeKind.IMAGE,
    "br": NodeKind.BREAK,
    "p": NodeKind.PARAGRAPH,
    "blockquote": NodeKind.BLOCKQUOTE,
    "ul": NodeKind.UNORDERED_LIST,
    "ol": NodeKind.ORDERED_LIST,
    "li": NodeKind.LIST_ITEM,
    "hr": NodeKind.RULE,
    "mx-reply": NodeKind.REPLY,
}


@dataclass(frozen=True)
class Node:
    kind: NodeKind
    text: str = ""
    attrs: Tuple[Tuple[str, str], ...] = ()
    children: Tuple["Node", ...] = ()

    def attr(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for key, value in self.attrs:
            if key == name:
                return value
        return default


def _attrs(tag: Tag) -> Tuple[Tuple[str, str], ...]:
    out = []
    for key, value in tag.attrs.items():
        if isinstance(value, list):
            value = " ".join(value)
        out.append((key, value))
    return tuple(out)


def _convert(element) -> Optional[Node]:
    if isinstance(element, Comment):
        return None
    if isinstance(element, NavigableString):
        text = str(element)
        # newlines between block tags are layout, not content
        if text == "\n":
            return None
        return Node(NodeKind.TEXT, text=text)
    if not isinstance(element, Tag):
        return None

    name = element.name.lower()
    attrs = _attrs(element)
    if name in ("code", "pre"):
        # inner <code> of a <pre> goes away with the tags
        return Node(_TAG_KINDS[name], text=element.get_text(), attrs=attrs)

    kind = _TAG_KINDS.get(name, NodeKind.CONTAINER)
    if name in ("h1", "h2", "h3", "h4", "h5", "h6"):
        kind = NodeKind.HEADING
        attrs = attrs + (("level", name[1]),)
    elif name == "span" and element.has_attr("data-mx-spoiler"):
        kind = NodeKind.SPOILER
    children = tuple(n for n in (_convert(c) for c in element.children) if n is not None)
    return Node(kind, attrs=attrs, children=children)


def build_tree(formatted_body: str) -> Node:
    """Parse Matrix `formatted_body` HTML into an immutable node tree."""
    try:
        soup = BeautifulSoup(formatted_body, "html.parser")
    except Exception as e:
        raise TranslationFailure(f"could not parse HTML: {e}") from e
    children = tuple(n for n in (_convert(c) for c in soup.children) if n is not None)
    return Node(NodeKind.ROOT, children=children)

# -----------------------------
# node tree -> Slack mrkdwn
# -----------------------------


def slack_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


@dataclass
class MatrixParserOpts:
    puppet_id: int
    host: PuppetHost


class SlackMarkupVisitor:
    """Renders a node tree as Slack mrkdwn for one puppet."""

    def __init__(self, opts: MatrixParserOpts):
        self.opts = opts
        self.list_depth = 0
        self._dispatch = {
            NodeKind.ROOT: self.visit_children,
            NodeKind.CONTAINER: self.visit_children,
            NodeKind.TEXT: self.visit_text,
            NodeKind.EMPHASIS: self.visit_emphasis,
            NodeKind.STRONG: self.visit_strong,
            NodeKind.STRIKE: self.visit_strike,
            NodeKind.CODE: self.visit_code,
            NodeKind.PRE: self.visit_pre,
            NodeKind.LINK: self.visit_link,
            NodeKind.IMAGE: self.visit_image,
            NodeKind.BREAK: self.visit_break,
            NodeKind.PARAGRAPH: self.visit_paragraph,
            NodeKind.BLOCKQUOTE: self.visit_blockquote,
            NodeKind.UNORDERED_LIST: self.visit_unordered_list,
            NodeKind.ORDERED_LIST: self.visit_ordered_list,
            NodeKind.LIST_ITEM: self.visit_list_item,
            NodeKind.HEADING: self.visit_heading,
            NodeKind.RULE: self.visit_rule,
            NodeKind.SPOILER: self.visit_spoiler,
            NodeKind.REPLY: self.visit_reply,
        }

    async def visit(self, node: Node) -> str:
        return await self._dispatch[node.kind](node)

    async def visit_children(self, node: Node) -> str:
        out = ""
        for child in node.children:
            out += await self.visit(child)
        return out

    async def visit_text(self, node: Node) -> str:
        return slack_escape(node.text)

    async def visit_emphasis(self, node: Node) -> str:
        return f"_{await self.visit_children(node)}_"

    async def visit_strong(self, node: Node) -> str:
        return f"*{await self.visit_children(node)}*"

    async def visit_strike(self, node: Node) -> str:
        return f"~{await self.visit_children(node)}~"

    async def visit_code(self, node: Node) -> str:
        return f"`{slack_escape(node.text)}`"

    async def visit_pre(self, node: Node) -> str:
        text = node.text
        if not text.startswith("\n"):
            text = "\n" + text
        return f"```{slack_escape(text)}```"

    async def visit_link(self, node: Node) -> str:
        href = node.attr("href") or ""
        if href.startswith(MATRIX_TO_LINK):
            pill = await self._pill(unquote(href[len(MATRIX_TO_LINK):]))
            if pill:
                return pill
        content = await self.visit_children(node)
        if not href or content == slack_escape(href):
            return content
        return f"<{href}|{content}>"

    async def _pill(self, target: str) -> str:
        target = target.split("?", 1)[0]
        host = self.opts.host
        try:
            if target.startswith("@"):
                user = await host.get_user_parts(target)
                if user and user.puppet_id == self.opts.puppet_id:
                    return f"<@{user.user_id}>"
            elif target[:1] in ("#", "!"):
                room = await host.get_room_parts(target)
                if room and room.puppet_id == self.opts.puppet_id:
                    return f"<#{room.room_id}>"
        except Exception as e:
            logger.warning(f"Could not resolve Matrix pill {target}: {e}")
        return ""

    async def visit_image(self, node: Node) -> str:
        name = node.attr("alt") or node.attr("title") or ""
        src = node.attr("src")
        return f"<{src}|{slack_escape(name)}>" if src else slack_escape(name)

    async def visit_break(self, node: Node) -> str:
        return "\n"

    async def visit_paragraph(self, node: Node) -> str:
        return f"{await self.visit_children(node)}\n"

    async def visit_blockquote(self, node: Node) -> str:
        inner = (await self.visit_children(node)).strip("\n")
        return "\n".join("> " + line for line in inner.split("\n")) + "\n\n"

    async def _list_entries(self, node: Node):
        self.list_depth += 1
        try:
            return [
                await self.visit(child) for child in node.children
                if child.kind == NodeKind.LIST_ITEM
            ]
        finally:
            self.list_depth -= 1

    def _wrap_list(self, lines) -> str:
        msg = "\n".join(lines)
        if self.list_depth == 0:
            return f"\n{msg}\n\n"
        return f"\n{msg}"

    async def visit_unordered_list(self, node: Node) -> str:
        entries = await self._list_entries(node)
        bullet = LIST_BULLET_POINTS[self.list_depth % len(LIST_BULLET_POINTS)]
        indent = LIST_INDENT * self.list_depth
        return self._wrap_list(f"{indent}{bullet} {e}" for e in entries)

    async def visit_ordered_list(self, node: Node) -> str:
        entries = await self._list_entries(node)
        start = node.attr("start") or ""
        first = int(start) if start.isdigit() else 1
        indent = LIST_INDENT * self.list_depth
        return self._wrap_list(f"{indent}{n}. {e}" for n, e in enumerate(entries, first))

    async def visit_list_item(self, node: Node) -> str:
        return (await self.visit_children(node)).strip("\n")

    async def visit_heading(self, node: Node) -> str:
        level = int(node.attr("level", "1"))
        return f"*{'#' * level} {await self.visit_children(node)}*\n"

    async def visit_rule(self, node: Node) -> str:
        return "\n----------\n"

    async def visit_spoiler(self, node: Node) -> str:
        content = await self.visit_children(node)
        reason = node.attr("data-mx-spoiler")
        if reason:
            return f"(Spoiler for {slack_escape(reason)}: {content})"
        return f"(Spoiler: {content})"

    async def visit_reply(self, node: Node) -> str:
        return ""


async def parse_matrix_message(content: Dict[str, Any], opts: MatrixParserOpts) -> str:
    """Render a Matrix message content dict as Slack mrkdwn."""
    body = content.get("body") or ""
    formatted = content.get("formatted_body")
    if not formatted:
        return slack_escape(body)
    try:
        tree = build_tree(formatted)
        reply = await SlackMarkupVisitor(opts).visit(tree)
    except TranslationFailure as e:
        logger.warning(f"Falling back to plain body: {e}")
        return slack_escape(body)
    return reply.rstrip().lstrip("\n")
