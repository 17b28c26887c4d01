# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the inbound relay.

This module provides the InboundRelayCore class, the central coordinator
between the components of the relay:

- Parsing of received raw mail into canonical emails, stored for threading
- Routing of each email to the endpoint configured for its recipient
  (exact address first, then the ``@domain`` catch-all)
- Webhook delivery with retry, or forwarding through the outbound transport
- Delivery tracking and Prometheus metrics
- Scheduled sends, delegated to :class:`~inbound_relay.scheduler.ScheduledSendEngine`

Example:
    Running the relay::

        from inbound_relay.core import InboundRelayCore

        core = InboundRelayCore(db_path="/data/inbound_relay.db")
        await core.start()

        await core.add_endpoint({"id": "ops", "type": "webhook", "url": "https://hooks.example.com/in"})
        await core.add_route("support@example.com", "ops")
        result = await core.receive(raw_bytes, recipient="support@example.com")

        await core.stop()
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from .config_loader import RelaySettings
from .conversation import group_threads, normalize_subject
from .dispatch import DispatchClient, RetryPolicy, deliver, deliver_with_retry
from .errors import InvalidInput, NotFound
from .formats import EMAIL_RECEIVED, adapt, build_test_email
from .forwarder import EmailForwarder, forward_recipients
from .logger import get_logger
from .models import (
    ENDPOINT_ADAPTER,
    CanonicalEmail,
    DeliveryResult,
    EmailForwardEndpoint,
    EmailGroupEndpoint,
    Endpoint,
    ReceiveResult,
    Thread,
    WebhookEndpoint,
    WebhookFormat,
)
from .parser import parse
from .persistence import Persistence
from .prometheus import RelayMetrics
from .scheduler import ScheduledSendEngine
from .transport import SMTPTransport, Transport, UnconfiguredTransport


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class InboundRelayCore:
    """Central coordinator of the relay service.

    Attributes:
        persistence: SQLite storage for endpoints, routes, emails and sends.
        metrics: Prometheus collector.
        dispatch: Shared HTTP client for webhook deliveries.
        transport: Outbound transport for forwards and scheduled sends.
        forwarder: Rebuilds received emails for email endpoints.
        scheduler: Scheduled-send engine.
        own_addresses: Addresses treated as the mailbox owner when threading.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/inbound_relay.db",
        transport: Transport | None = None,
        metrics: RelayMetrics | None = None,
        logger=None,
        dispatch: DispatchClient | None = None,
        max_concurrency: int = 10,
        retry_policy: RetryPolicy | None = None,
        signing_secret: str | None = None,
        default_timeout: int | None = None,
        own_addresses: Iterable[str] = (),
        scheduler_active: bool = False,
        scheduler_interval: float = 60.0,
        scheduler_batch_size: int = 50,
        min_lead_seconds: int = 60,
    ):
        """Initialize the relay.

        Args:
            db_path: SQLite database path.
            transport: Outbound transport; sends fail when omitted.
            metrics: Prometheus collector; a private registry is used when omitted.
            logger: Custom logger instance.
            dispatch: HTTP client; one is created from ``max_concurrency`` when omitted.
            max_concurrency: Maximum webhook requests in flight.
            retry_policy: Backoff schedule between webhook attempts.
            signing_secret: Secret given to webhook endpoints created without one.
            default_timeout: Timeout given to webhook endpoints created without one.
            own_addresses: Mailbox owner addresses for thread direction.
            scheduler_active: Start the scheduled-send timer in :meth:`start`.
            scheduler_interval: Seconds between scheduled-send runs.
            scheduler_batch_size: Maximum scheduled sends per run.
            min_lead_seconds: Minimum scheduling lead time.
        """
        self.logger = logger or get_logger("InboundRelay")
        self.persistence = Persistence(db_path or ":memory:")
        self.metrics = metrics or RelayMetrics()
        self.dispatch = dispatch or DispatchClient(max_concurrency=max_concurrency)
        self.retry_policy = retry_policy or RetryPolicy()
        self.transport: Transport = transport or UnconfiguredTransport()
        self.forwarder = EmailForwarder(self.transport)
        self.signing_secret = signing_secret
        self.default_timeout = default_timeout
        self.own_addresses = {address.lower() for address in own_addresses}
        self.scheduler_active = scheduler_active
        self.scheduler = ScheduledSendEngine(
            self.persistence,
            self.transport,
            metrics=self.metrics,
            batch_size=scheduler_batch_size,
            interval_seconds=scheduler_interval,
            min_lead=timedelta(seconds=min_lead_seconds),
        )

    @classmethod
    def from_settings(cls, settings: RelaySettings, **overrides: Any) -> InboundRelayCore:
        """Build a core from loaded settings."""
        transport: Transport | None = None
        if settings.smtp_host:
            transport = SMTPTransport(
                settings.smtp_host,
                settings.smtp_port,
                settings.smtp_user,
                settings.smtp_password,
                use_tls=settings.smtp_use_tls,
            )
        kwargs: dict[str, Any] = dict(
            db_path=settings.db_path,
            transport=transport,
            max_concurrency=settings.max_concurrency,
            retry_policy=RetryPolicy(settings.retry_base_delay, settings.retry_max_delay),
            signing_secret=settings.signing_secret,
            default_timeout=settings.default_timeout,
            own_addresses=settings.own_addresses,
            scheduler_active=settings.scheduler_active,
            scheduler_interval=settings.scheduler_interval,
            scheduler_batch_size=settings.scheduler_batch_size,
            min_lead_seconds=settings.min_lead_seconds,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialize storage and, when active, the scheduled-send timer."""
        await self.init()
        if self.scheduler_active:
            await self.scheduler.start()
        self.logger.info("Inbound relay started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.dispatch.close()

    # ----------------------------------------------------------------- endpoints
    async def add_endpoint(self, data: dict[str, Any] | Endpoint) -> Endpoint:
        """Create or replace an endpoint.

        Raises:
            pydantic.ValidationError: If ``data`` is not a valid endpoint.
        """
        if isinstance(data, dict):
            data = dict(data)
            data.setdefault("type", "webhook")
            if data["type"] == "webhook" and self.default_timeout and "timeout_seconds" not in data:
                data["timeout_seconds"] = self.default_timeout
            endpoint = ENDPOINT_ADAPTER.validate_python(data)
        else:
            endpoint = data
        if isinstance(endpoint, WebhookEndpoint) and endpoint.signing_secret is None and self.signing_secret:
            endpoint = endpoint.model_copy(update={"signing_secret": self.signing_secret})
        await self.persistence.add_endpoint(
            {
                "id": endpoint.id,
                "type": endpoint.type,
                "name": endpoint.name,
                "active": endpoint.active,
                "config": endpoint.model_dump(mode="json"),
            }
        )
        self.logger.info(f"Endpoint {endpoint.id} ({endpoint.type}) saved")
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> Endpoint:
        row = await self.persistence.get_endpoint(endpoint_id)
        if row is None:
            raise NotFound(f"Endpoint '{endpoint_id}' not found")
        return ENDPOINT_ADAPTER.validate_python(row["config"])

    async def list_endpoints(self) -> list[Endpoint]:
        rows = await self.persistence.list_endpoints()
        return [ENDPOINT_ADAPTER.validate_python(row["config"]) for row in rows]

    async def delete_endpoint(self, endpoint_id: str) -> None:
        if not await self.persistence.delete_endpoint(endpoint_id):
            raise NotFound(f"Endpoint '{endpoint_id}' not found")

    async def add_route(self, address: str, endpoint_id: str) -> dict[str, str]:
        """Route a recipient address, or ``@domain`` for a catch-all, to an endpoint.

        Raises:
            InvalidInput: If ``address`` has no ``@``.
            NotFound: If the endpoint does not exist.
        """
        address = (address or "").strip().lower()
        if "@" not in address or address.endswith("@"):
            raise InvalidInput(f"Invalid route address: '{address}'")
        await self.get_endpoint(endpoint_id)
        await self.persistence.add_route(address, endpoint_id)
        return {"address": address, "endpoint_id": endpoint_id}

    async def list_routes(self) -> list[dict[str, Any]]:
        return await self.persistence.list_routes()

    async def delete_route(self, address: str) -> None:
        if not await self.persistence.delete_route(address):
            raise NotFound(f"Route '{address.strip().lower()}' not found")

    # ------------------------------------------------------------------- inbound
    async def receive(self, raw: bytes, recipient: str | None = None) -> ReceiveResult:
        """Accept one inbound email: parse, store, route and deliver it.

        Args:
            raw: The message as received.
            recipient: Address the message was received for; defaults to the
                first ``To`` address.

        Returns:
            The stored email id and the outcome of the routed delivery.

        Raises:
            ParseError: If ``raw`` is not a MIME message at all.
        """
        email = parse(raw)
        recipient = (recipient or (email.to.first_address if email.to else None) or "").strip() or None
        endpoint_id = await self.persistence.resolve_route(recipient) if recipient else None
        email_id = uuid.uuid4().hex

        await self.persistence.insert_email(
            {
                "id": email_id,
                "message_id": email.message_id,
                "recipient": recipient,
                "subject_key": normalize_subject(email.subject),
                "in_reply_to": email.in_reply_to,
                "references": email.references,
                "endpoint_id": endpoint_id,
                "received_at": _utc_now_iso(),
                "email": email.to_wire(),
            }
        )
        self.metrics.inc_received(email.parse_success)
        self.logger.info(f"Received {email.message_id} for {recipient or '-'} as {email_id}")

        result = ReceiveResult(
            email_id=email_id,
            message_id=email.message_id,
            parse_success=email.parse_success,
            parse_error=email.parse_error,
            endpoint_id=endpoint_id,
        )
        if endpoint_id is None:
            self.logger.info(f"No route for {recipient or '-'}; email {email_id} stored only")
            return result

        endpoint = await self.get_endpoint(endpoint_id)
        if not endpoint.active:
            self.logger.info(f"Endpoint {endpoint_id} is inactive; email {email_id} not delivered")
            return result

        if isinstance(endpoint, WebhookEndpoint):
            delivery = await self._deliver_webhook(email, endpoint, email_id=email_id, recipient=recipient)
            result.delivery_type = "webhook"
            result.delivered = delivery.success
            result.error = delivery.error
        else:
            sent, error = await self._forward(email, endpoint, email_id=email_id, recipient=recipient or "")
            result.delivery_type = "email_forward"
            result.delivered = sent
            result.error = error
        return result

    async def _deliver_webhook(
        self,
        email: CanonicalEmail,
        endpoint: WebhookEndpoint,
        *,
        email_id: str,
        recipient: str | None,
    ) -> DeliveryResult:
        adapted = adapt(EMAIL_RECEIVED, email, endpoint, email_id=email_id, recipient=recipient)
        delivery = await deliver_with_retry(self.dispatch, endpoint, adapted, policy=self.retry_policy)
        outcome = "success" if delivery.success else "failed"
        await self.persistence.record_delivery(
            {
                "id": uuid.uuid4().hex,
                "email_id": email_id,
                "endpoint_id": endpoint.id,
                "delivery_type": "webhook",
                "status": outcome,
                "attempts": delivery.attempts,
                "response_data": {
                    "url": endpoint.url,
                    "status_code": delivery.status_code,
                    "response_body": delivery.response_body_excerpt,
                    "elapsed_ms": delivery.elapsed_ms,
                    "error": delivery.error,
                    "error_kind": delivery.error_kind.value if delivery.error_kind else None,
                },
            }
        )
        self.metrics.observe_delivery(endpoint.id, outcome, delivery.elapsed_ms)
        if delivery.success:
            self.logger.info(
                f"Delivered {email_id} to {endpoint.id}: HTTP {delivery.status_code} "
                f"in {delivery.elapsed_ms}ms ({delivery.attempts} attempt(s))"
            )
        else:
            self.logger.warning(
                f"Delivery of {email_id} to {endpoint.id} failed after {delivery.attempts} attempt(s): {delivery.error}"
            )
        return delivery

    async def _forward(
        self,
        email: CanonicalEmail,
        endpoint: EmailForwardEndpoint | EmailGroupEndpoint,
        *,
        email_id: str,
        recipient: str,
    ) -> tuple[bool, str | None]:
        sent = await self.forwarder.forward(email, endpoint, recipient=recipient)
        outcome = "success" if sent.success else "failed"
        await self.persistence.record_delivery(
            {
                "id": uuid.uuid4().hex,
                "email_id": email_id,
                "endpoint_id": endpoint.id,
                "delivery_type": "email_forward",
                "status": outcome,
                "attempts": 1,
                "response_data": {
                    "recipients": forward_recipients(endpoint),
                    "provider_message_id": sent.provider_message_id,
                    "error": sent.error,
                },
            }
        )
        self.metrics.observe_delivery(endpoint.id, outcome)
        if not sent.success:
            self.logger.warning(f"Forward of {email_id} via {endpoint.id} failed: {sent.error}")
        return sent.success, sent.error

    async def test_endpoint(self, endpoint_id: str, webhook_format: WebhookFormat | str | None = None) -> DeliveryResult:
        """Deliver a synthetic test email to a webhook endpoint, once.

        Args:
            endpoint_id: The endpoint to test.
            webhook_format: Payload dialect to use instead of the endpoint's own.

        Raises:
            NotFound: Unknown endpoint.
            InvalidInput: The endpoint is not a webhook.
        """
        endpoint = await self.get_endpoint(endpoint_id)
        if not isinstance(endpoint, WebhookEndpoint):
            raise InvalidInput(f"Endpoint '{endpoint_id}' is not a webhook endpoint")
        if webhook_format:
            endpoint = endpoint.model_copy(update={"format": WebhookFormat(webhook_format)})
        email = build_test_email()
        adapted = adapt(EMAIL_RECEIVED, email, endpoint, test=True)
        result = await deliver(self.dispatch, endpoint, adapted)
        self.logger.info(
            f"Test delivery to {endpoint.id} ({endpoint.format.value}): "
            f"{'ok' if result.success else result.error}"
        )
        return result

    # ------------------------------------------------------------------ emails
    async def get_email(self, email_id: str) -> CanonicalEmail:
        row = await self.persistence.get_email(email_id)
        if row is None:
            raise NotFound(f"Email '{email_id}' not found")
        return CanonicalEmail.model_validate(row["email"])

    async def thread_for(self, email_id: str) -> Thread:
        """Rebuild the conversation containing a stored email.

        Raises:
            NotFound: Unknown email id.
        """
        rows = await self.persistence.list_emails_for_thread(email_id)
        if not rows:
            raise NotFound(f"Email '{email_id}' not found")
        target = next(row for row in rows if row["id"] == email_id)
        emails = [CanonicalEmail.model_validate(row["email"]) for row in rows]
        for thread in group_threads(emails, self.own_addresses):
            if target["message_id"] in thread.message_ids:
                return thread
        raise NotFound(f"Email '{email_id}' not found")

    async def list_deliveries(self, email_id: str | None = None, endpoint_id: str | None = None) -> list[dict[str, Any]]:
        return await self.persistence.list_deliveries(email_id=email_id, endpoint_id=endpoint_id)
