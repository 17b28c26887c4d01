# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Webhook payload dialects.

:func:`adapt` maps a canonical email and a delivery event onto the payload
shape selected by the endpoint format:

- ``inbound``: the native JSON envelope ``{event, timestamp, email, endpoint}``
  carrying the full canonical email (``parsedData``) and the sanitized
  content (``cleanedContent``);
- ``discord``: an incoming-webhook message with one embed;
- ``slack``: an incoming-webhook message with one attachment.

Discord and Slack payloads are summaries: fields those platforms cannot show
are dropped. Every payload travels with the same delivery headers; endpoint
custom headers are merged last and may override them, except
``Content-Type``.

:func:`build_test_email` produces a synthetic email by building and parsing
a real MIME message, so test deliveries carry exactly the field set and
header taxonomy of production traffic.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .mime_builder import build
from .models import CanonicalEmail, OutboundMessage, WebhookEndpoint, WebhookFormat
from .parser import parse, sanitize_html
from .signing import SIGNATURE_HEADER, sign_payload

EMAIL_RECEIVED = "email.received"
USER_AGENT = "InboundEmail-Webhook/1.0"
ICON_URL = "https://inbound.new/favicon.ico"
FOOTER_TEXT = "Inbound Email Service"

DISCORD_DESCRIPTION_LIMIT = 2000
DISCORD_FIELD_LIMIT = 1024
DISCORD_TITLE_LIMIT = 256
SLACK_TEXT_LIMIT = 1000

DISCORD_BLUE = 0x0099FF
DISCORD_GREEN = 0x00FF00
SLACK_BLUE = "#0099ff"
SLACK_GREEN = "good"

TEST_SENDER = "test@example.com"
TEST_RECIPIENT = "test@yourdomain.com"
TEST_SUBJECT = "Test Email - Inbound Email Service"
TEST_TEXT = "This is a test email from the Inbound Email service to verify webhook functionality."
TEST_HTML = (
    "<p>This is a test email from the <strong>Inbound Email service</strong> "
    "to verify webhook functionality.</p>"
)


@dataclass
class AdaptedPayload:
    """Serialized payload ready for dispatch."""

    body: bytes
    headers: dict[str, str]
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _sender_text(email: CanonicalEmail) -> str:
    if email.from_ is not None:
        return email.from_.display_text or ", ".join(email.from_.emails())
    return ""


def _recipient_text(email: CanonicalEmail, recipient: str | None) -> str:
    if email.to is not None and email.to.addresses:
        return ", ".join(entry.address for entry in email.to.addresses)
    return recipient or ""


def _attachment_names(email: CanonicalEmail) -> str:
    return ", ".join(att.filename or "Unknown" for att in email.attachments)


def native_payload(
    event: str,
    email: CanonicalEmail,
    endpoint: WebhookEndpoint,
    *,
    timestamp: str,
    email_id: str,
    recipient: str | None,
) -> dict[str, Any]:
    parsed = email.to_wire()
    return {
        "event": event,
        "timestamp": timestamp,
        "email": {
            "id": email_id,
            "messageId": email.message_id,
            "from": parsed["from"],
            "to": parsed["to"],
            "recipient": recipient or (email.to.first_address if email.to else None),
            "subject": email.subject,
            "receivedAt": parsed["date"],
            "parsedData": parsed,
            "cleanedContent": {
                "html": sanitize_html(email.html_body) if email.html_body is not None else None,
                "text": email.text_body,
                "hasHtml": bool(email.html_body),
                "hasText": bool(email.text_body),
                "attachments": parsed["attachments"],
                "headers": parsed["headers"],
            },
        },
        "endpoint": {"id": endpoint.id, "name": endpoint.name, "type": endpoint.type},
    }


def discord_payload(
    email: CanonicalEmail,
    *,
    timestamp: str,
    recipient: str | None,
    test: bool = False,
) -> dict[str, Any]:
    fields = [
        {"name": "From", "value": _truncate(_sender_text(email) or "Unknown", DISCORD_FIELD_LIMIT), "inline": True},
        {"name": "To", "value": _truncate(_recipient_text(email, recipient) or "Unknown", DISCORD_FIELD_LIMIT), "inline": True},
    ]
    if email.attachments:
        fields.append({"name": "Attachments", "value": _truncate(_attachment_names(email), DISCORD_FIELD_LIMIT), "inline": False})
    fields.append({"name": "Message ID", "value": _truncate(f"`{email.message_id}`", DISCORD_FIELD_LIMIT), "inline": False})

    description = _truncate(email.text_body, DISCORD_DESCRIPTION_LIMIT) if email.text_body else "No content"
    return {
        "content": "📧 **Test Email Received**" if test else "📧 **New Email Received**",
        "embeds": [
            {
                "title": _truncate(email.subject or "No Subject", DISCORD_TITLE_LIMIT),
                "description": description,
                "color": DISCORD_GREEN if test else DISCORD_BLUE,
                "timestamp": timestamp,
                "footer": {"text": f"{FOOTER_TEXT} - Test" if test else FOOTER_TEXT, "icon_url": ICON_URL},
                "fields": fields,
            }
        ],
    }


def slack_payload(
    email: CanonicalEmail,
    *,
    timestamp: str,
    recipient: str | None,
    test: bool = False,
) -> dict[str, Any]:
    fields = [
        {"title": "From", "value": _sender_text(email) or "Unknown", "short": True},
        {"title": "To", "value": _recipient_text(email, recipient) or "Unknown", "short": True},
    ]
    if email.attachments:
        fields.append({"title": "Attachments", "value": _attachment_names(email), "short": False})
    fields.append({"title": "Message ID", "value": email.message_id, "short": False})

    epoch = int(datetime.fromisoformat(timestamp.replace("Z", "+00:00")).timestamp())
    prefix = "Test email" if test else "New email"
    return {
        "text": "📧 *Test Email Received*" if test else "📧 *New Email Received*",
        "username": "Inbound Email",
        "icon_url": ICON_URL,
        "attachments": [
            {
                "fallback": f"{prefix}: {email.subject}",
                "color": SLACK_GREEN if test else SLACK_BLUE,
                "title": email.subject or "No Subject",
                "text": _truncate(email.text_body, SLACK_TEXT_LIMIT) if email.text_body else "No content",
                "fields": fields,
                "footer": f"{FOOTER_TEXT} - Test" if test else FOOTER_TEXT,
                "ts": epoch,
            }
        ],
    }


def delivery_headers(
    event: str,
    email: CanonicalEmail,
    endpoint: WebhookEndpoint,
    *,
    body: bytes,
    timestamp: str,
    email_id: str,
    test: bool = False,
) -> dict[str, str]:
    """Build the HTTP headers accompanying a payload.

    Generated headers come first; endpoint custom headers are merged after
    them and win on conflicts, except for ``Content-Type``.
    """
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Event": event,
        "X-Endpoint-ID": endpoint.id,
        "X-Webhook-Timestamp": timestamp,
        "X-Email-ID": email_id,
        "X-Message-ID": email.message_id,
    }
    if test:
        headers["X-Test-Request"] = "true"
        headers["X-Webhook-Format"] = endpoint.format.value
    if endpoint.signing_secret:
        headers[SIGNATURE_HEADER] = sign_payload(body, endpoint.signing_secret)

    existing = {name.lower(): name for name in headers}
    for name, value in endpoint.custom_headers.items():
        if name.lower() == "content-type":
            continue
        # Replace case-insensitively so the override does not duplicate a header.
        original = existing.get(name.lower())
        if original is not None:
            del headers[original]
        headers[name] = str(value)
        existing[name.lower()] = name
    return headers


def adapt(
    event: str,
    email: CanonicalEmail,
    endpoint: WebhookEndpoint,
    *,
    email_id: str | None = None,
    recipient: str | None = None,
    timestamp: str | None = None,
    test: bool = False,
) -> AdaptedPayload:
    """Map ``email`` onto the payload dialect of ``endpoint``.

    Args:
        event: Delivery event name, e.g. ``email.received``.
        email: The canonical email.
        endpoint: Destination; its ``format`` selects the dialect.
        email_id: Relay-side id of the stored email; defaults to the message id.
        recipient: Address the email was received for.
        timestamp: ISO 8601 event time; defaults to now.
        test: Produce the test variant of the payload and headers.

    Returns:
        The serialized body with its delivery headers.
    """
    ts = timestamp or _utc_now_iso()
    identifier = email_id or email.message_id
    if endpoint.format == WebhookFormat.DISCORD:
        payload = discord_payload(email, timestamp=ts, recipient=recipient, test=test)
    elif endpoint.format == WebhookFormat.SLACK:
        payload = slack_payload(email, timestamp=ts, recipient=recipient, test=test)
    else:
        payload = native_payload(
            event, email, endpoint, timestamp=ts, email_id=identifier, recipient=recipient
        )
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    headers = delivery_headers(
        event, email, endpoint, body=body, timestamp=ts, email_id=identifier, test=test
    )
    return AdaptedPayload(body=body, headers=headers, payload=payload, timestamp=ts)


def build_test_email(
    *,
    from_addr: str = TEST_SENDER,
    to: list[str] | None = None,
    subject: str = TEST_SUBJECT,
    text: str | None = TEST_TEXT,
    html: str | None = TEST_HTML,
) -> CanonicalEmail:
    """Synthesize a canonical email shaped exactly like received traffic."""
    message = OutboundMessage(
        from_addr=from_addr,
        to=to or [TEST_RECIPIENT],
        subject=subject,
        text=text,
        html=html,
        headers={"X-Test-Request": "true"},
    )
    return parse(build(message))
