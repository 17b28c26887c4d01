"""Inbound email relay: MIME normalization, threading and webhook delivery.

This package turns raw inbound email into structured deliveries with
features including:

- RFC 2822 message construction for outbound and forwarded mail
- MIME parsing into a canonical email with sanitized HTML
- Conversation threading with confidence scoring
- Webhook payloads in native, Discord and Slack dialects
- HTTP dispatch with timeouts, signing and retry with backoff
- Scheduled sends with idempotency keys and a cron-style processor

Example:
    Running the relay behind the FastAPI application::

        from inbound_relay.core import InboundRelayCore
        from inbound_relay.api import create_app

        core = InboundRelayCore(db_path="/data/relay.db")
        app = create_app(core, api_token="secret")

Authors:
    Softwell S.r.l.
"""

__version__ = "0.4.0"
