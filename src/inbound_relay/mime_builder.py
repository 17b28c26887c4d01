# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""RFC 2822 message construction for outbound and forwarded mail.

The builder turns an :class:`~inbound_relay.models.OutboundMessage` into the
raw byte stream handed to the transport. The MIME structure follows the
content shape:

- attachments present: ``multipart/mixed`` wrapping either the single body
  part or a nested ``multipart/alternative`` when both text and HTML exist;
- no attachments, both bodies: ``multipart/alternative``;
- a single body: a flat ``text/plain`` or ``text/html`` message;
- no body at all: a ``text/plain`` placeholder part.

Bodies are quoted-printable, attachments base64 wrapped at 76 characters.
Boundaries are produced by the stdlib generator, which draws a random token
per multipart and re-draws it if the token occurs in the enclosed content.

Example:
    Building a message with an attachment::

        message = OutboundMessage(
            from_addr="Support <support@example.com>",
            to=["user@example.org"],
            subject="Invoice",
            text="Please find the invoice attached.",
            attachments=[OutboundAttachment.from_bytes("invoice.pdf", data, "application/pdf")],
        )
        raw = build(message)
"""

from __future__ import annotations

import quopri
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage, MIMEPart
from email.utils import format_datetime, make_msgid, parseaddr

from .errors import InvalidInput
from .models import OutboundAttachment, OutboundMessage

PLACEHOLDER_BODY = "[No content]"
PREAMBLE = "This is a multi-part message in MIME format."
STRUCTURAL_HEADERS = {"content-type", "content-transfer-encoding", "mime-version"}

# CRLF line endings and 78-character lines; base64 bodies wrap at 76.
SMTP_POLICY = policy.SMTP


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _sender_domain(sender: str) -> str:
    _, address = parseaddr(sender)
    if "@" in address:
        return address.rsplit("@", 1)[1].strip() or "localhost"
    return "localhost"


def _fill_text(part: MIMEPart, body: str, subtype: str) -> None:
    """Store ``body`` in ``part`` as quoted-printable UTF-8 text.

    The payload is encoded directly instead of through ``set_content`` so
    that the decoded body is byte-identical to the input (``set_content``
    appends a trailing newline).
    """
    encoded = quopri.encodestring(_normalize_newlines(body).encode("utf-8"))
    part["Content-Type"] = f'text/{subtype}; charset="utf-8"'
    part["Content-Transfer-Encoding"] = "quoted-printable"
    part.set_payload(encoded.decode("ascii"))


def _text_part(body: str, subtype: str) -> MIMEPart:
    part = MIMEPart(policy=SMTP_POLICY)
    _fill_text(part, body, subtype)
    return part


def _attachment_part(attachment: OutboundAttachment) -> MIMEPart:
    maintype, _, subtype = attachment.content_type.partition("/")
    if not maintype or not subtype:
        maintype, subtype = "application", "octet-stream"
    part = MIMEPart(policy=SMTP_POLICY)
    disposition = "inline" if attachment.content_id else "attachment"
    cid = None
    if attachment.content_id:
        cid = attachment.content_id.strip()
        if not cid.startswith("<"):
            cid = f"<{cid}>"
    part.set_content(
        attachment.data,
        maintype=maintype,
        subtype=subtype,
        disposition=disposition,
        filename=attachment.filename,
        cid=cid,
    )
    return part


def _multipart(subtype: str, parts: list[MIMEPart]) -> MIMEPart:
    container = MIMEPart(policy=SMTP_POLICY)
    container["Content-Type"] = f"multipart/{subtype}"
    for part in parts:
        container.attach(part)
    return container


def _body_parts(message: OutboundMessage) -> list[MIMEPart]:
    parts = []
    if message.text is not None:
        parts.append(_text_part(message.text, "plain"))
    if message.html is not None:
        parts.append(_text_part(message.html, "html"))
    return parts


def build_message(message: OutboundMessage, *, now: datetime | None = None) -> EmailMessage:
    """Assemble the :class:`EmailMessage` tree for ``message``.

    Headers are written in a fixed order: From, To, Cc, Reply-To, Subject,
    Message-ID, In-Reply-To, References, Date, MIME-Version, Content-Type,
    then caller-supplied headers. A ``Message-ID`` among the custom headers
    replaces the generated one; custom headers never alter the MIME
    structure headers.

    Args:
        message: The outbound message description.
        now: Timestamp for the ``Date`` header; defaults to the current UTC time.

    Returns:
        The message tree, ready to be serialized.

    Raises:
        InvalidInput: If the message has no ``To`` recipient.
    """
    if not message.to:
        raise InvalidInput("at least one 'to' recipient is required")

    custom_names = {name.lower() for name in message.headers}
    root = EmailMessage(policy=SMTP_POLICY)
    root["From"] = message.from_addr
    root["To"] = ", ".join(message.to)
    if message.cc:
        root["Cc"] = ", ".join(message.cc)
    if message.reply_to:
        root["Reply-To"] = message.reply_to
    root["Subject"] = message.subject
    if "message-id" not in custom_names:
        root["Message-ID"] = make_msgid(domain=_sender_domain(message.from_addr))
    if message.in_reply_to:
        root["In-Reply-To"] = message.in_reply_to
    if message.references:
        root["References"] = " ".join(message.references)
    root["Date"] = format_datetime(now or datetime.now(timezone.utc))
    root["MIME-Version"] = "1.0"

    bodies = _body_parts(message)
    attachments = [_attachment_part(att) for att in message.attachments]

    if attachments:
        if len(bodies) == 2:
            first = _multipart("alternative", bodies)
        elif bodies:
            first = bodies[0]
        else:
            first = _text_part(PLACEHOLDER_BODY, "plain")
        root["Content-Type"] = "multipart/mixed"
        root.preamble = PREAMBLE
        root.attach(first)
        for part in attachments:
            root.attach(part)
    elif len(bodies) == 2:
        root["Content-Type"] = "multipart/alternative"
        root.preamble = PREAMBLE
        for part in bodies:
            root.attach(part)
    elif message.text is not None:
        _fill_text(root, message.text, "plain")
    elif message.html is not None:
        _fill_text(root, message.html, "html")
    else:
        _fill_text(root, PLACEHOLDER_BODY, "plain")

    for name, value in message.headers.items():
        if name.lower() in STRUCTURAL_HEADERS:
            continue
        if name in root:
            root.replace_header(name, value)
        else:
            root[name] = value
    return root


def build(message: OutboundMessage, *, now: datetime | None = None) -> bytes:
    """Encode ``message`` as raw RFC 2822 bytes with CRLF line endings.

    Raises:
        InvalidInput: If the message has no ``To`` recipient.
    """
    return build_message(message, now=now).as_bytes(policy=SMTP_POLICY)
