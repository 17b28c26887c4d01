# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for RFC 2822 message construction."""

import base64
import re
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser

import pytest

from inbound_relay.errors import InvalidInput
from inbound_relay.mime_builder import PLACEHOLDER_BODY, build, build_message
from inbound_relay.models import OutboundAttachment, OutboundMessage

NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


def _message(**kwargs) -> OutboundMessage:
    data = {"from_addr": "Sender <sender@example.com>", "to": ["rcpt@example.org"], "subject": "Subject"}
    data.update(kwargs)
    return OutboundMessage(**data)


def _reparse(raw: bytes):
    return BytesParser(policy=policy.default).parsebytes(raw)


class TestStructure:
    """MIME structure follows the content shape."""

    def test_text_only_is_flat(self):
        """A single text body produces a non-multipart text/plain message."""
        msg = _reparse(build(_message(text="hello"), now=NOW))
        assert not msg.is_multipart()
        assert msg.get_content_type() == "text/plain"

    def test_html_only_is_flat_html(self):
        """A single HTML body produces text/html."""
        msg = _reparse(build(_message(html="<p>hi</p>"), now=NOW))
        assert msg.get_content_type() == "text/html"

    def test_text_and_html_is_alternative(self):
        """Both bodies produce multipart/alternative with plain first."""
        msg = _reparse(build(_message(text="hi", html="<p>hi</p>"), now=NOW))
        assert msg.get_content_type() == "multipart/alternative"
        assert [part.get_content_type() for part in msg.iter_parts()] == ["text/plain", "text/html"]

    def test_attachments_wrap_alternative_in_mixed(self):
        """Attachments with two bodies nest the alternative inside mixed."""
        attachment = OutboundAttachment.from_bytes("a.bin", b"\x00\x01\x02", "application/octet-stream")
        msg = _reparse(build(_message(text="hi", html="<b>hi</b>", attachments=[attachment]), now=NOW))
        assert msg.get_content_type() == "multipart/mixed"
        parts = list(msg.iter_parts())
        assert parts[0].get_content_type() == "multipart/alternative"
        assert parts[1].get_filename() == "a.bin"
        assert parts[1].get_content() == b"\x00\x01\x02"

    def test_no_body_gets_placeholder(self):
        """A message without bodies carries a placeholder text part."""
        msg = _reparse(build(_message(), now=NOW))
        assert msg.get_content().strip() == PLACEHOLDER_BODY

    def test_inline_attachment_with_content_id(self):
        """An attachment with a content id is inline and keeps its Content-ID."""
        attachment = OutboundAttachment.from_bytes("logo.png", b"\x89PNG", "image/png", content_id="logo@x")
        msg = _reparse(build(_message(html='<img src="cid:logo@x">', attachments=[attachment]), now=NOW))
        part = list(msg.iter_parts())[1]
        assert part.get_content_disposition() == "inline"
        assert part["Content-ID"] == "<logo@x>"


class TestHeaders:
    """Header order, generation and overrides."""

    def test_header_order(self):
        """Standard headers appear in the documented order."""
        raw = build(
            _message(cc=["cc@example.org"], reply_to="reply@example.com", text="x",
                     in_reply_to="<p@x>", references=["<r@x>", "<p@x>"]),
            now=NOW,
        )
        head = raw.split(b"\r\n\r\n", 1)[0].decode()
        names = [line.split(":", 1)[0] for line in head.split("\r\n") if line and not line[0].isspace()]
        expected = ["From", "To", "Cc", "Reply-To", "Subject", "Message-ID", "In-Reply-To",
                    "References", "Date", "MIME-Version", "Content-Type"]
        assert names[: len(expected)] == expected

    def test_message_id_uses_sender_domain(self):
        """The generated Message-ID carries the sender's domain."""
        msg = build_message(_message(text="x"), now=NOW)
        assert re.fullmatch(r"<[^@]+@example\.com>", msg["Message-ID"])

    def test_custom_message_id_replaces_generated(self):
        """A Message-ID among custom headers is used as is."""
        msg = build_message(_message(text="x", headers={"Message-ID": "<fixed@example.com>"}), now=NOW)
        assert msg.get_all("Message-ID") == ["<fixed@example.com>"]

    def test_custom_headers_cannot_change_structure(self):
        """Content-Type among custom headers is ignored."""
        msg = build_message(_message(text="x", headers={"Content-Type": "text/html", "X-Tag": "1"}), now=NOW)
        assert msg.get_content_type() == "text/plain"
        assert msg["X-Tag"] == "1"

    def test_date_uses_given_time(self):
        """The Date header reflects the ``now`` argument."""
        msg = _reparse(build(_message(text="x"), now=NOW))
        assert msg["Date"].datetime == NOW

    def test_bcc_never_in_headers(self):
        """Bcc recipients are envelope-only."""
        message = _message(text="x", bcc=["hidden@example.org"])
        raw = build(message, now=NOW)
        assert b"hidden@example.org" not in raw
        assert "hidden@example.org" in message.envelope_recipients()

    def test_non_ascii_subject_is_encoded(self):
        """Non-ASCII subjects are RFC 2047 encoded and decode back."""
        raw = build(_message(subject="Fattura n° 12 è pronta", text="x"), now=NOW)
        assert b"=?utf-8?" in raw.lower()
        assert _reparse(raw)["Subject"] == "Fattura n° 12 è pronta"


class TestEncoding:
    """Body and line encoding."""

    def test_crlf_line_endings(self):
        """Every line ends with CRLF."""
        raw = build(_message(text="one\ntwo\r\nthree"), now=NOW)
        assert b"\n" not in raw.replace(b"\r\n", b"")

    def test_lines_within_limit(self):
        """No line exceeds 998 characters, long bodies included."""
        raw = build(_message(text="x" * 5000, html="<p>" + "y" * 5000 + "</p>"), now=NOW)
        assert max(len(line) for line in raw.split(b"\r\n")) <= 998

    def test_base64_attachment_wraps_at_76(self):
        """Base64 attachment lines are at most 76 characters."""
        attachment = OutboundAttachment.from_bytes("blob.bin", bytes(range(256)) * 20)
        raw = build(_message(text="x", attachments=[attachment]), now=NOW)
        body = raw.split(b'filename="blob.bin"', 1)[1].split(b"\r\n\r\n", 1)[1].split(b"\r\n--", 1)[0]
        lines = [line for line in body.split(b"\r\n") if line]
        assert lines and all(len(line) <= 76 for line in lines)
        assert base64.b64decode(b"".join(lines)) == bytes(range(256)) * 20

    def test_text_body_is_quoted_printable(self):
        """Text bodies use quoted-printable."""
        msg = _reparse(build(_message(text="caffè"), now=NOW))
        assert msg["Content-Transfer-Encoding"] == "quoted-printable"


class TestValidation:
    """Input validation."""

    def test_missing_to_raises(self):
        """A message without To recipients is rejected before building."""
        with pytest.raises(InvalidInput):
            build(_message(to=[]), now=NOW)

    def test_comma_separated_addresses_accepted(self):
        """Address fields accept a comma-separated string."""
        message = OutboundMessage(from_addr="a@example.com", to="b@example.org, c@example.org")
        assert message.to == ["b@example.org", "c@example.org"]

    def test_invalid_base64_attachment_rejected(self):
        """Attachment content must be valid base64."""
        with pytest.raises(ValueError):
            OutboundAttachment(filename="x", content_base64="not base64!!")
