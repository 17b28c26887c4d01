# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Forwarding of received emails to email and email-group endpoints.

The forwarded message is rebuilt from the canonical email rather than
relayed verbatim: it is sent from the endpoint's configured address (or the
address the email was received on), carries the original sender in
``Reply-To`` and keeps the threading headers so that replies land in the
original conversation.
"""

from __future__ import annotations

import re
from email.utils import formataddr
from html import unescape

from .logger import get_logger
from .mime_builder import SMTP_POLICY, build_message
from .models import (
    CanonicalEmail,
    EmailForwardEndpoint,
    EmailGroupEndpoint,
    OutboundMessage,
    SendResult,
)
from .parser import extract_attachments
from .transport import Transport

NO_CONTENT_TEXT = "[This email has no text content]"

_BREAK_RE = re.compile(r"<br\s*/?>", re.I)
_PARAGRAPH_END_RE = re.compile(r"</p>", re.I)
_TAG_RE = re.compile(r"<[^>]*>")


def html_to_text(html: str) -> str:
    """Rough plain-text rendering used when a message has only HTML."""
    text = _BREAK_RE.sub("\n", html)
    text = _PARAGRAPH_END_RE.sub("\n\n", text)
    text = _TAG_RE.sub("", text)
    return unescape(text.replace("&nbsp;", " ")).strip()


def forward_recipients(endpoint: EmailForwardEndpoint | EmailGroupEndpoint) -> list[str]:
    if isinstance(endpoint, EmailGroupEndpoint):
        return list(endpoint.recipients)
    return [endpoint.forward_to]


class EmailForwarder:
    """Rebuilds and sends received emails through an outbound transport."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.logger = get_logger("Forwarder")

    def compose(
        self,
        email: CanonicalEmail,
        endpoint: EmailForwardEndpoint | EmailGroupEndpoint,
        *,
        recipient: str,
    ) -> OutboundMessage:
        """Build the outbound message forwarding ``email`` to ``endpoint``."""
        from_address = endpoint.from_address or recipient
        sender = formataddr((endpoint.sender_name, from_address)) if endpoint.sender_name else from_address

        text = email.text_body
        if not text and email.html_body:
            text = html_to_text(email.html_body)
        if not text and not email.html_body:
            text = NO_CONTENT_TEXT

        references = list(email.references)
        if email.message_id not in references:
            references.append(email.message_id)

        attachments = []
        if endpoint.include_attachments and email.attachments and email.raw:
            attachments = extract_attachments(email.raw)

        return OutboundMessage(
            from_addr=sender,
            to=forward_recipients(endpoint),
            reply_to=email.sender_address or from_address,
            subject=f"{endpoint.subject_prefix}{email.subject or 'No Subject'}",
            text=text,
            html=email.html_body or None,
            attachments=attachments,
            in_reply_to=email.message_id,
            references=references,
        )

    async def forward(
        self,
        email: CanonicalEmail,
        endpoint: EmailForwardEndpoint | EmailGroupEndpoint,
        *,
        recipient: str,
    ) -> SendResult:
        """Forward ``email`` to every address of ``endpoint``."""
        message = self.compose(email, endpoint, recipient=recipient)
        built = build_message(message)
        to = message.envelope_recipients()
        self.logger.info(f"Forwarding {email.message_id} to {len(to)} recipient(s) via endpoint {endpoint.id}")
        return await self.transport.send(
            built.as_bytes(policy=SMTP_POLICY),
            sender=endpoint.from_address or recipient,
            recipients=to,
            message_id=str(built["Message-ID"]),
        )
