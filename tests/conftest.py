"""Shared fixtures for the inbound relay test suite."""

from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from inbound_relay.core import InboundRelayCore
from inbound_relay.dispatch import RetryPolicy
from inbound_relay.mime_builder import build
from inbound_relay.models import OutboundMessage, SendResult
from inbound_relay.prometheus import RelayMetrics

FIXED_NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


class DummyTransport:
    """Transport capturing sends; fails while ``fail_with`` is set."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: str | None = None
        self.fail_for: set[str] = set()

    async def send(self, raw, *, sender, recipients, message_id=None):
        if self.fail_with or any(rcpt in self.fail_for for rcpt in recipients):
            return SendResult(success=False, error=self.fail_with or "mailbox unavailable")
        self.sent.append({"raw": raw, "sender": sender, "recipients": list(recipients), "message_id": message_id})
        return SendResult(success=True, provider_message_id=message_id)


def make_raw(**kwargs) -> bytes:
    """Build raw MIME bytes; defaults give a simple text message."""
    data = {
        "from_addr": "Alice <alice@example.com>",
        "to": ["support@example.com"],
        "subject": "Hello",
        "text": "Hi there",
    }
    data.update(kwargs)
    now = data.pop("now", None)
    return build(OutboundMessage(**data), now=now)


@pytest.fixture
def raw_factory():
    return make_raw


@pytest.fixture
def transport():
    return DummyTransport()


@pytest_asyncio.fixture
async def core(tmp_path, transport):
    relay = InboundRelayCore(
        db_path=str(tmp_path / "relay.db"),
        transport=transport,
        metrics=RelayMetrics(),
        retry_policy=RetryPolicy(base_delay=0, max_delay=0),
        own_addresses=["support@example.com"],
    )
    await relay.init()
    try:
        yield relay
    finally:
        await relay.stop()
