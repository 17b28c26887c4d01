# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""MIME parsing and normalization of inbound mail.

:func:`parse` decodes the raw bytes delivered by the receiving service into a
:class:`~inbound_relay.models.CanonicalEmail`. Parsing is best effort: a
message with structural defects (broken multipart boundaries, undecodable
charsets, malformed headers) still yields a canonical email, flagged with
``parse_success=False`` and the reasons in ``parse_error``. Only input that
is not MIME at all raises :class:`~inbound_relay.errors.ParseError`.

HTML bodies are sanitized before they leave this module; the unsanitized
markup is available only inside ``raw``.

Example:
    Normalizing a received message::

        email = parse(raw_bytes)
        email.from_.addresses[0].address   # "alice@example.com"
        email.headers["content-type"].params["boundary"]
"""

from __future__ import annotations

import hashlib
import re
from datetime import timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Iterator

from .errors import ParseError
from .logger import get_logger
from .models import (
    AddressEntry,
    AddressGroup,
    AttachmentInfo,
    CanonicalEmail,
    HeaderEntry,
    HeaderValue,
    OutboundAttachment,
    Priority,
    StructuredHeader,
)

logger = get_logger("Parser")

ADDRESS_HEADERS = {"from", "to", "cc", "bcc", "reply-to", "sender", "resent-from", "resent-to"}
ALWAYS_LIST_HEADERS = {"received"}

_MSGID_RE = re.compile(r"<[^<>\s]+>")

# --- HTML sanitization -------------------------------------------------------

_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.I | re.S)
_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style\s*>", re.I | re.S)
_STRAY_SCRIPT_RE = re.compile(r"</?(?:script|style)\b[^>]*>", re.I)
_BLOCKED_TAG_RE = re.compile(r"</?(?:form|iframe|embed|object|meta|base|link)\b[^>]*>", re.I)
_TAG_RE = re.compile(r"<([a-zA-Z][a-zA-Z0-9]*)\b[^>]*>")
_EVENT_ATTR_RE = re.compile(r"""\s+on\w+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)""", re.I)
_XMLNS_ATTR_RE = re.compile(r"""\s+xml(?:ns)?(?::[\w-]+)?\s*=\s*(?:"[^"]*"|'[^']*')""", re.I)
_SCRIPT_PROTOCOL_RE = re.compile(r"(?:java|vb)script\s*:", re.I)
_DATA_URL_RE = re.compile(r"""(\s(?:src|href)\s*=\s*["']?)data:(?!image/)""", re.I)


def _clean_tag(match: re.Match) -> str:
    tag = match.group(0)
    tag = _EVENT_ATTR_RE.sub("", tag)
    tag = _XMLNS_ATTR_RE.sub("", tag)
    tag = _SCRIPT_PROTOCOL_RE.sub("", tag)
    if match.group(1).lower() != "img":
        tag = _DATA_URL_RE.sub(r"\1", tag)
    return tag


def sanitize_html(html: str | None) -> str:
    """Strip active content from an HTML body.

    Removes comments, ``script``/``style`` elements, ``form``, ``iframe``,
    ``embed``, ``object``, ``meta``, ``base`` and ``link`` tags, event-handler
    attributes, ``xmlns`` attributes, ``javascript:``/``vbscript:`` URLs and
    ``data:`` URLs outside images.

    Args:
        html: Markup to clean; None and "" return "".

    Returns:
        The sanitized markup.
    """
    if not html:
        return ""
    cleaned = _COMMENT_RE.sub("", html)
    cleaned = _SCRIPT_RE.sub("", cleaned)
    cleaned = _STYLE_RE.sub("", cleaned)
    cleaned = _STRAY_SCRIPT_RE.sub("", cleaned)
    cleaned = _BLOCKED_TAG_RE.sub("", cleaned)
    return _TAG_RE.sub(_clean_tag, cleaned)


# --- Header helpers ----------------------------------------------------------


def clean_message_id(value: str | None) -> str:
    """Return a message id without angle brackets and surrounding spaces."""
    if not value:
        return ""
    return value.strip().strip("<>").strip()


def parse_references(value: str | list[str] | None) -> list[str]:
    """Split a ``References`` value into ``<id>`` tokens.

    Accepts the raw header text or an already split sequence.
    """
    if not value:
        return []
    if isinstance(value, list):
        value = " ".join(value)
    found = _MSGID_RE.findall(value)
    if found:
        return found
    return [token for token in re.split(r"[\s,]+", value) if token]


def _address_group(header) -> AddressGroup:
    entries = []
    for group in header.groups:
        for address in group.addresses:
            entries.append(AddressEntry(name=address.display_name or None, address=address.addr_spec))
    return AddressGroup(display_text=str(header), addresses=entries)


def _header_value(name: str, header) -> HeaderValue:
    if name in ADDRESS_HEADERS:
        return _address_group(header)
    if name == "content-type":
        return StructuredHeader(value=header.content_type, params=dict(header.params))
    if name == "content-disposition" and header.content_disposition:
        return StructuredHeader(value=header.content_disposition, params=dict(header.params))
    return str(header)


def _collect_headers(msg: EmailMessage, problems: list[str]) -> dict[str, HeaderEntry]:
    headers: dict[str, HeaderEntry] = {}
    names = dict.fromkeys(key.lower() for key in msg.keys())
    for name in names:
        values: list[HeaderValue] = []
        for header in msg.get_all(name, []):
            try:
                values.append(_header_value(name, header))
            except (ValueError, TypeError, AttributeError, IndexError) as exc:
                problems.append(f"header {name}: {exc}")
                values.append(str(header))
        if len(values) == 1 and name not in ALWAYS_LIST_HEADERS:
            headers[name] = values[0]
        else:
            headers[name] = values
    return headers


def _priority(msg: EmailMessage) -> Priority | None:
    x_priority = msg.get("x-priority")
    if x_priority:
        digits = re.match(r"\s*(\d)", str(x_priority))
        if digits:
            level = int(digits.group(1))
            if level <= 2:
                return Priority.HIGH
            if level >= 4:
                return Priority.LOW
            return Priority.NORMAL
    for name in ("importance", "priority"):
        value = str(msg.get(name, "")).strip().lower()
        if value in ("high", "urgent"):
            return Priority.HIGH
        if value in ("low", "non-urgent"):
            return Priority.LOW
        if value == "normal":
            return Priority.NORMAL
    return None


def _synthetic_message_id(msg: EmailMessage) -> str:
    """Derive a stable id from the identifying headers of a message."""
    seed = "".join(str(msg.get(name, "")) for name in ("from", "to", "subject", "date"))
    digest = hashlib.sha256(seed.encode("utf-8", errors="replace")).hexdigest()[:16]
    return f"<synthetic-{digest}@inbound-relay.generated>"


# --- Body walking ------------------------------------------------------------


def _leaves(part: EmailMessage) -> Iterator[EmailMessage]:
    """Yield non-container parts; attached messages are yielded whole."""
    if part.get_content_type() == "message/rfc822":
        yield part
        return
    if part.is_multipart():
        for sub in part.get_payload():
            yield from _leaves(sub)
        return
    yield part


def _decode_text(part: EmailMessage, problems: list[str]) -> str:
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        text = payload.decode(charset)
    except LookupError:
        problems.append(f"unknown charset {charset}")
        text = payload.decode("utf-8", errors="replace")
    except UnicodeDecodeError:
        problems.append(f"undecodable {charset} content")
        text = payload.decode(charset, errors="replace")
    return text.replace("\r\n", "\n")


def _is_body_part(part: EmailMessage) -> bool:
    return (
        part.get_content_type() in ("text/plain", "text/html")
        and part.get_content_disposition() != "attachment"
        and part.get_filename() is None
    )


def _part_bytes(part: EmailMessage) -> bytes:
    if part.get_content_type() == "message/rfc822":
        inner = part.get_payload()
        return bytes(inner[0]) if inner else b""
    return part.get_payload(decode=True) or b""


def parse(raw: bytes) -> CanonicalEmail:
    """Decode raw MIME bytes into a canonical email.

    Args:
        raw: The message exactly as delivered by the receiving service.

    Returns:
        The canonical email. ``parse_success`` is False when the message
        was only partially understood; ``parse_error`` lists the reasons.

    Raises:
        ParseError: If ``raw`` is empty or carries no header block at all.
    """
    if not isinstance(raw, (bytes, bytearray)):
        raise ParseError(f"raw message must be bytes, not {type(raw).__name__}")
    if not raw.strip():
        raise ParseError("empty message")

    msg = BytesParser(policy=policy.default).parsebytes(bytes(raw))
    if not msg.keys():
        raise ParseError("no header block found")

    problems: list[str] = []
    headers = _collect_headers(msg, problems)

    def group(name: str) -> AddressGroup | None:
        value = headers.get(name)
        if isinstance(value, list):
            value = next((item for item in value if isinstance(item, AddressGroup)), None)
        return value if isinstance(value, AddressGroup) else None

    date = None
    date_header = msg.get("date")
    if date_header is not None:
        date = getattr(date_header, "datetime", None)
        if date is None:
            problems.append("invalid date header")
        elif date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)

    message_id = str(msg.get("message-id", "")).strip()
    if not message_id:
        message_id = _synthetic_message_id(msg)

    in_reply_to = None
    if msg.get("in-reply-to"):
        ids = parse_references(str(msg["in-reply-to"]))
        in_reply_to = ids[0] if ids else None

    text_body: str | None = None
    html_body: str | None = None
    attachments: list[AttachmentInfo] = []
    for part in _leaves(msg):
        content_type = part.get_content_type()
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if _is_body_part(part):
            text = _decode_text(part, problems)
            if content_type == "text/plain":
                text_body = text if text_body is None else f"{text_body}\n{text}"
            else:
                html_body = text if html_body is None else f"{html_body}\n{text}"
            continue
        content_id = part.get("content-id")
        attachments.append(
            AttachmentInfo(
                filename=filename,
                content_type=content_type,
                size_bytes=len(_part_bytes(part)),
                content_id=clean_message_id(str(content_id)) if content_id else None,
                disposition=disposition,
            )
        )

    for part in msg.walk():
        for defect in part.defects:
            problems.append(type(defect).__name__)

    parse_error = "; ".join(dict.fromkeys(problems)) or None
    if parse_error:
        logger.warning(f"Partially parsed message {message_id}: {parse_error}")

    return CanonicalEmail(
        message_id=message_id,
        from_=group("from"),
        to=group("to"),
        cc=group("cc"),
        bcc=group("bcc"),
        reply_to=group("reply-to"),
        subject=str(msg.get("subject", "")),
        date=date,
        text_body=text_body,
        html_body=sanitize_html(html_body) if html_body is not None else None,
        attachments=attachments,
        headers=headers,
        in_reply_to=in_reply_to,
        references=parse_references(str(msg.get("references", ""))),
        priority=_priority(msg),
        parse_success=parse_error is None,
        parse_error=parse_error,
        raw=bytes(raw).decode("utf-8", errors="replace"),
    )


def extract_attachments(raw: bytes | str) -> list[OutboundAttachment]:
    """Recover attachment contents from a stored raw message.

    The canonical email keeps only attachment metadata; callers that need
    the bytes (e.g. when forwarding) re-read them from ``raw``.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="replace")
    msg = BytesParser(policy=policy.default).parsebytes(raw)
    found: list[OutboundAttachment] = []
    for part in _leaves(msg):
        if _is_body_part(part):
            continue
        content_id = part.get("content-id")
        found.append(
            OutboundAttachment.from_bytes(
                part.get_filename() or "attachment",
                _part_bytes(part),
                content_type=part.get_content_type(),
                content_id=clean_message_id(str(content_id)) if content_id else None,
            )
        )
    return found
