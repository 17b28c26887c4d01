# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Builder output read back by the parser."""

from datetime import datetime, timezone

from inbound_relay.mime_builder import build
from inbound_relay.models import OutboundAttachment, OutboundMessage
from inbound_relay.parser import extract_attachments, parse

NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


def test_bodies_survive_exactly():
    """Text with long lines, non-ASCII and '=' signs decodes to the input."""
    text = "Prezzo: 10 € = dieci euro\n" + "lunga " * 40 + "\nfine"
    html = "<p>Ciao <b>Mondo</b> = 100%</p>"
    email = parse(build(OutboundMessage(from_addr="a@example.com", to=["b@example.org"],
                                        subject="Prova", text=text, html=html), now=NOW))
    assert email.text_body == text
    assert email.html_body == html


def test_headers_and_attachments_survive():
    """Addresses, threading headers and attachments are preserved."""
    payload = bytes(range(256))
    message = OutboundMessage(
        from_addr="Sender Name <sender@example.com>",
        to=["one@example.org", "two@example.org"],
        cc=["three@example.org"],
        subject="Quarterly report",
        text="See attached",
        in_reply_to="<prev@example.com>",
        references=["<root@example.com>", "<prev@example.com>"],
        attachments=[OutboundAttachment.from_bytes("data.bin", payload)],
    )
    raw = build(message, now=NOW)
    email = parse(raw)

    assert email.parse_success is True
    assert email.from_.addresses[0].name == "Sender Name"
    assert email.to.emails() == ["one@example.org", "two@example.org"]
    assert email.cc.emails() == ["three@example.org"]
    assert email.in_reply_to == "<prev@example.com>"
    assert email.references == ["<root@example.com>", "<prev@example.com>"]
    assert email.date == NOW
    assert email.attachments[0].filename == "data.bin"
    assert email.attachments[0].size_bytes == 256
    assert extract_attachments(raw)[0].data == payload
