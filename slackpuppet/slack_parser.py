import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .config import ATTACHMENT_BULLET, ATTACHMENT_COLORS, SELF_SENT_MARKER
from .errors import TranslationFailure
from .models import (
    AttachmentContent,
    BlockContent,
    ContentBlock,
    TextContent,
    content_from_message,
)

logger = logging.getLogger(__name__)

# -----------------------------
# Slack mrkdwn -> (plain, HTML)
# -----------------------------


@dataclass
class Mention:
    """A resolved Slack entity: what to show and where the pill points."""
    name: str
    link: str = ""


Resolver = Callable[[str], Awaitable[Optional[Mention]]]


@dataclass
class SlackParserOpts:
    resolve_user: Resolver
    resolve_channel: Resolver
    resolve_usergroup: Optional[Resolver] = None
    # Slack file url -> Matrix content url
    upload_file: Optional[Callable[[str], Awaitable[Optional[str]]]] = None


@dataclass
class _Line:
    text: str
    bullet: bool = False
    color: str = ""
    image_url: str = ""
    image_alt: str = ""


_TOKEN_RE = re.compile(r'<([^<>\n]+)>')
_PRE_RE = re.compile(r'```\n?(.*?)```', re.DOTALL)
_CODE_RE = re.compile(r'`([^`\n]+)`')
_PLACEHOLDER_RE = re.compile('\ue000(\\d+)\ue001')
_CODE_PLACEHOLDER_RE = re.compile('\ue002(\\d+)\ue003')
_QUOTE_RE = re.compile(r'^&gt;\s?(.*)$')

_BOLD_RE = re.compile(r'(?<![\w*])\*(?=\S)([^*\n]+?)(?<=\S)\*(?![\w*])')
_ITALIC_RE = re.compile(r'(?<![\w_])_(?=\S)([^_\n]+?)(?<=\S)_(?![\w_])')
_STRIKE_RE = re.compile(r'(?<![\w~])~(?=\S)([^~\n]+?)(?<=\S)~(?![\w~])')

_BROADCASTS = ("channel", "here", "everyone")


def _slack_unescape(text: str) -> str:
    return text.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")


def _color(value: str) -> str:
    value = ATTACHMENT_COLORS.get(value, value)
    if value and not value.startswith("#") and re.fullmatch(r'[0-9a-fA-F]{3,8}', value):
        value = "#" + value
    return value


def _pill(mention: Mention, text: str) -> str:
    if not mention.link:
        return html.escape(text)
    return f'<a href="{html.escape(mention.link)}">{html.escape(text)}</a>'


async def _call_resolver(resolver: Optional[Resolver], key: str, what: str) -> Optional[Mention]:
    if not resolver:
        return None
    try:
        return await resolver(key)
    except Exception as e:
        logger.warning(f"Could not resolve Slack {what} {key}: {e}")
        return None


async def _resolve_token(opts: SlackParserOpts, inner: str) -> Tuple[str, str]:
    """Render one `<...>` reference as a (plain, html) pair."""
    target, _, label = inner.partition("|")
    label = _slack_unescape(label)

    if target.startswith("@"):
        user_id = target[1:]
        mention = await _call_resolver(opts.resolve_user, user_id, "user")
        if mention:
            return mention.name, _pill(mention, mention.name)
        fallback = label or user_id
        return fallback, html.escape(fallback)

    if target.startswith("#"):
        channel_id = target[1:]
        mention = await _call_resolver(opts.resolve_channel, channel_id, "channel")
        if mention:
            name = "#" + mention.name
            return name, _pill(mention, name)
        fallback = "#" + label if label else channel_id
        return fallback, html.escape(fallback)

    if target.startswith("!"):
        command = target[1:]
        if command in _BROADCASTS:
            return "@room", "@room"
        if command.startswith("subteam^"):
            group_id = command[len("subteam^"):]
            mention = await _call_resolver(opts.resolve_usergroup, group_id, "usergroup")
            if mention:
                return mention.name, _pill(mention, mention.name)
            fallback = label or group_id
            return fallback, html.escape(fallback)
        fallback = label or command
        return fallback, html.escape(fallback)

    url = _slack_unescape(target)
    if not label or label == url or url.split(":", 1)[-1] == label:
        plain = label or url
    else:
        plain = f"{label} ({url})"
    return plain, f'<a href="{html.escape(url)}">{html.escape(label or url)}</a>'


def _html_lines(escaped: str) -> str:
    chunks: List[Tuple[str, str]] = []
    quote: List[str] = []

    def flush():
        if quote:
            chunks.append(("block", "<blockquote>" + "<br>".join(quote) + "</blockquote>"))
            quote.clear()

    for line in escaped.split("\n"):
        m = _QUOTE_RE.match(line)
        if m:
            quote.append(m.group(1))
            continue
        flush()
        chunks.append(("line", line))
    flush()

    out = ""
    prev = None
    for kind, chunk in chunks:
        if prev == "line" and kind == "line":
            out += "<br>"
        out += chunk
        prev = kind
    return out


async def render_mrkdwn(opts: SlackParserOpts, text: str) -> Tuple[str, str]:
    """Render one chunk of Slack mrkdwn to (plain, html)."""
    code: List[Tuple[str, str]] = []
    tokens: List[Tuple[str, str]] = []

    def _protect_pre(m):
        code.append(("pre", m.group(1)))
        return f"\ue002{len(code) - 1}\ue003"

    def _protect_code(m):
        code.append(("code", m.group(1)))
        return f"\ue002{len(code) - 1}\ue003"

    try:
        text = _PRE_RE.sub(_protect_pre, text)
        text = _CODE_RE.sub(_protect_code, text)

        # resolve in order of appearance, one at a time
        pos = 0
        parts = []
        for m in _TOKEN_RE.finditer(text):
            parts.append(text[pos:m.start()])
            tokens.append(await _resolve_token(opts, m.group(1)))
            parts.append(f"\ue000{len(tokens) - 1}\ue001")
            pos = m.end()
        parts.append(text[pos:])
        text = _slack_unescape("".join(parts))

        plain = _PLACEHOLDER_RE.sub(lambda m: tokens[int(m.group(1))][0], text)
        plain = _CODE_PLACEHOLDER_RE.sub(
            lambda m: _plain_code(*code[int(m.group(1))]), plain)

        formatted = html.escape(text, quote=False)
        formatted = _BOLD_RE.sub(r'<strong>\1</strong>', formatted)
        formatted = _ITALIC_RE.sub(r'<em>\1</em>', formatted)
        formatted = _STRIKE_RE.sub(r'<del>\1</del>', formatted)
        formatted = _html_lines(formatted)
        formatted = _PLACEHOLDER_RE.sub(lambda m: tokens[int(m.group(1))][1], formatted)
        formatted = _CODE_PLACEHOLDER_RE.sub(
            lambda m: _html_code(*code[int(m.group(1))]), formatted)
    except (IndexError, ValueError, re.error) as e:
        raise TranslationFailure(f"bad mrkdwn: {e}") from e
    return plain, formatted


def _plain_code(kind: str, body: str) -> str:
    body = _slack_unescape(body)
    return f"```\n{body}```" if kind == "pre" else f"`{body}`"


def _html_code(kind: str, body: str) -> str:
    body = html.escape(_slack_unescape(body), quote=False)
    if kind == "pre":
        return f"<pre><code>{body}</code></pre>"
    return f"<code>{body}</code>"

# -----------------------------
# Attachments and blocks
# -----------------------------


def _attachment_lines(att: AttachmentContent) -> List[_Line]:
    lines = []
    if att.pretext:
        lines.append(_Line(att.pretext))
    color = _color(att.color)
    items = []
    if att.author_name:
        items.append(f"<{att.author_link}|{att.author_name}>" if att.author_link else att.author_name)
    if att.title:
        items.append(f"*<{att.title_link}|{att.title}>*" if att.title_link else f"*{att.title}*")
    if att.text:
        items.append(att.text)
    for title, value in att.fields:
        if title:
            items.append(f"*{title}*")
        if value:
            items.append(value)
    if att.actions:
        items.append("Actions (Unsupported): " + " ".join(f"[{a}]" for a in att.actions))
    if att.footer:
        items.append(f"_{att.footer}_")
    if not items and not att.image_url and att.fallback:
        items.append(att.fallback)
    lines.extend(_Line(item, bullet=True, color=color) for item in items)
    if att.image_url:
        lines.append(_Line("", bullet=True, color=color,
                           image_url=att.image_url, image_alt=att.title or "image"))
    return lines


def _block_lines(block: BlockContent) -> List[_Line]:
    if block.image_url:
        return [_Line("", image_url=block.image_url, image_alt=block.alt_text or "image")]
    if not block.text:
        return []
    if block.block_type == "header":
        return [_Line(f"*{block.text}*")]
    return [_Line(block.text)]


async def _render_image(opts: SlackParserOpts, line: _Line) -> Tuple[str, str]:
    src = ""
    if opts.upload_file:
        try:
            src = await opts.upload_file(line.image_url) or ""
        except Exception as e:
            logger.warning(f"Could not upload attachment image {line.image_url}: {e}")
    if src:
        return line.image_url, f'<img src="{html.escape(src)}" alt="{html.escape(line.image_alt)}">'
    url = html.escape(line.image_url)
    return line.image_url, f'<a href="{url}">{url}</a>'


async def _render_line(opts: SlackParserOpts, line: _Line) -> Tuple[str, str]:
    if line.image_url:
        plain, formatted = await _render_image(opts, line)
    else:
        try:
            plain, formatted = await render_mrkdwn(opts, line.text.strip())
        except TranslationFailure as e:
            logger.warning(f"Sending Slack text literally: {e}")
            plain, formatted = line.text, html.escape(line.text)
    if not line.bullet:
        return plain, formatted
    # the accent color only ever shows up in the HTML variant
    bullet = ATTACHMENT_BULLET
    if line.color:
        bullet = f'<font color="{html.escape(line.color)}">{ATTACHMENT_BULLET}</font>'
    return f"{ATTACHMENT_BULLET} {plain}", f"{bullet} {formatted}"


def _text_lines(content: TextContent) -> List[_Line]:
    return [_Line(content.text)] if content.text.strip() else []


# one rendering rule per content variant
_CONTENT_LINES: Dict[type, Callable[[Any], List[_Line]]] = {
    TextContent: _text_lines,
    AttachmentContent: _attachment_lines,
    BlockContent: _block_lines,
}


def content_lines(contents: Sequence[ContentBlock]) -> List[_Line]:
    """Lay out a message's content variants; blocks only when nothing else rendered."""
    lines: List[_Line] = []
    for content in contents:
        if not isinstance(content, BlockContent):
            lines.extend(_CONTENT_LINES[type(content)](content))
    # blocks are what Slack's text is a fallback for
    if not lines:
        for content in contents:
            if isinstance(content, BlockContent):
                lines.extend(_CONTENT_LINES[BlockContent](content))
    return lines


async def parse_slack_message(
        opts: SlackParserOpts,
        text: str,
        attachments: Optional[Sequence[Dict[str, Any]]] = None,
        blocks: Optional[Sequence[Dict[str, Any]]] = None) -> Tuple[str, str]:
    """Turn a Slack message into a Matrix (body, formatted_body) pair."""
    lines = content_lines(content_from_message(
        {"text": text, "attachments": attachments, "blocks": blocks}))

    plain_lines = []
    html_lines = []
    for line in lines:
        plain, formatted = await _render_line(opts, line)
        if not plain.strip() and not formatted.strip():
            continue
        plain_lines.append(plain)
        html_lines.append(formatted)
    return "\n".join(plain_lines).strip(), "<br>".join(html_lines)


def is_noop_edit(old_text: Optional[str], new_text: Optional[str]) -> bool:
    new_text = new_text or ""
    return new_text == (old_text or "") or new_text.startswith(SELF_SENT_MARKER)
