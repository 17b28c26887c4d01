# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""End-to-end tests of the receive pipeline through InboundRelayCore."""

import json

import pytest
from aioresponses import aioresponses
from pydantic import ValidationError
from yarl import URL

from inbound_relay.errors import InvalidInput, NotFound, ParseError
from inbound_relay.models import EmailForwardEndpoint, WebhookEndpoint
from inbound_relay.signing import SIGNATURE_HEADER, verify_signature

HOOK = "https://hooks.example.com/in"


def _sent_json(m, url=HOOK, index=0):
    call = m.requests[("POST", URL(url))][index]
    return json.loads(call.kwargs["data"]), call.kwargs["headers"]


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_webhook_defaults(self, core):
        endpoint = await core.add_endpoint({"id": "ops", "url": HOOK})
        assert isinstance(endpoint, WebhookEndpoint)
        assert (await core.get_endpoint("ops")).url == HOOK

    @pytest.mark.asyncio
    async def test_default_secret_and_timeout_applied(self, core):
        core.signing_secret = "shared"
        core.default_timeout = 12
        endpoint = await core.add_endpoint({"id": "ops", "url": HOOK})
        assert endpoint.signing_secret == "shared"
        assert endpoint.timeout_seconds == 12
        own = await core.add_endpoint({"id": "own", "url": HOOK, "signing_secret": "mine", "timeout_seconds": 3})
        assert (own.signing_secret, own.timeout_seconds) == ("mine", 3)

    @pytest.mark.asyncio
    async def test_invalid_endpoint(self, core):
        with pytest.raises(ValidationError):
            await core.add_endpoint({"id": "bad id", "url": HOOK})
        with pytest.raises(ValidationError):
            await core.add_endpoint({"id": "grp", "type": "email_group", "recipients": []})

    @pytest.mark.asyncio
    async def test_delete_unknown(self, core):
        with pytest.raises(NotFound):
            await core.delete_endpoint("missing")

    @pytest.mark.asyncio
    async def test_route_validation(self, core):
        await core.add_endpoint({"id": "ops", "url": HOOK})
        assert await core.add_route(" Support@Example.com ", "ops") == {
            "address": "support@example.com",
            "endpoint_id": "ops",
        }
        with pytest.raises(InvalidInput):
            await core.add_route("support", "ops")
        with pytest.raises(InvalidInput):
            await core.add_route("support@", "ops")
        with pytest.raises(NotFound):
            await core.add_route("sales@example.com", "missing")

    @pytest.mark.asyncio
    async def test_delete_route(self, core):
        await core.add_endpoint({"id": "ops", "url": HOOK})
        await core.add_route("support@example.com", "ops")
        await core.delete_route("Support@Example.com")
        assert await core.list_routes() == []
        with pytest.raises(NotFound):
            await core.delete_route("support@example.com")


class TestReceive:
    @pytest.mark.asyncio
    async def test_webhook_delivery(self, core, raw_factory):
        """A routed email is stored, posted and recorded."""
        await core.add_endpoint({"id": "ops", "url": HOOK, "signing_secret": "s3"})
        await core.add_route("support@example.com", "ops")
        with aioresponses() as m:
            m.post(HOOK, status=200, body="thanks")
            result = await core.receive(raw_factory())
            payload, headers = _sent_json(m)

        assert result.delivered is True
        assert result.delivery_type == "webhook"
        assert result.endpoint_id == "ops"
        assert payload["event"] == "email.received"
        assert payload["email"]["id"] == result.email_id
        assert payload["email"]["recipient"] == "support@example.com"
        assert payload["email"]["subject"] == "Hello"
        assert headers["X-Email-ID"] == result.email_id
        body = m.requests[("POST", URL(HOOK))][0].kwargs["data"]
        ok, _ = verify_signature(body, headers[SIGNATURE_HEADER], "s3")
        assert ok is True

        deliveries = await core.list_deliveries(email_id=result.email_id)
        assert deliveries[0]["status"] == "success"
        assert deliveries[0]["delivery_type"] == "webhook"
        assert deliveries[0]["response_data"]["status_code"] == 200
        assert deliveries[0]["response_data"]["response_body"] == "thanks"
        assert (await core.get_email(result.email_id)).subject == "Hello"

    @pytest.mark.asyncio
    async def test_failed_webhook_is_recorded(self, core, raw_factory):
        await core.add_endpoint({"id": "ops", "url": HOOK, "retry_attempts": 1})
        await core.add_route("support@example.com", "ops")
        with aioresponses() as m:
            m.post(HOOK, status=503)
            m.post(HOOK, status=503)
            result = await core.receive(raw_factory())
        assert result.delivered is False
        assert result.error == "HTTP 503"
        delivery = (await core.list_deliveries(endpoint_id="ops"))[0]
        assert delivery["status"] == "failed"
        assert delivery["attempts"] == 2
        assert core.metrics.registry.get_sample_value(
            "irl_deliveries_total", {"endpoint_id": "ops", "outcome": "failed"}
        ) == 1

    @pytest.mark.asyncio
    async def test_catch_all_route(self, core, raw_factory):
        await core.add_endpoint({"id": "ops", "url": HOOK})
        await core.add_route("@example.com", "ops")
        with aioresponses() as m:
            m.post(HOOK, status=204)
            result = await core.receive(raw_factory(to=["sales@example.com"]))
        assert result.endpoint_id == "ops"
        assert result.delivered is True

    @pytest.mark.asyncio
    async def test_explicit_recipient_wins(self, core, raw_factory):
        await core.add_endpoint({"id": "ops", "url": HOOK})
        await core.add_route("alias@example.net", "ops")
        with aioresponses() as m:
            m.post(HOOK, status=200)
            result = await core.receive(raw_factory(), recipient="alias@example.net")
        assert result.endpoint_id == "ops"

    @pytest.mark.asyncio
    async def test_unrouted_email_is_stored_only(self, core, raw_factory):
        result = await core.receive(raw_factory())
        assert result.endpoint_id is None
        assert result.delivered is None
        assert (await core.get_email(result.email_id)).subject == "Hello"
        assert await core.list_deliveries(email_id=result.email_id) == []
        assert core.metrics.registry.get_sample_value("irl_received_total", {"parse_success": "true"}) == 1

    @pytest.mark.asyncio
    async def test_inactive_endpoint_skipped(self, core, raw_factory):
        await core.add_endpoint({"id": "ops", "url": HOOK, "active": False})
        await core.add_route("support@example.com", "ops")
        result = await core.receive(raw_factory())
        assert result.endpoint_id == "ops"
        assert result.delivered is None

    @pytest.mark.asyncio
    async def test_forward_endpoint(self, core, raw_factory, transport):
        await core.add_endpoint(EmailForwardEndpoint(id="fw", forward_to="team@example.org"))
        await core.add_route("support@example.com", "fw")
        result = await core.receive(raw_factory())
        assert result.delivery_type == "email_forward"
        assert result.delivered is True
        assert transport.sent[0]["recipients"] == ["team@example.org"]
        delivery = (await core.list_deliveries(email_id=result.email_id))[0]
        assert delivery["response_data"]["recipients"] == ["team@example.org"]

    @pytest.mark.asyncio
    async def test_forward_failure(self, core, raw_factory, transport):
        transport.fail_with = "relay down"
        await core.add_endpoint({"id": "fw", "type": "email", "forward_to": "team@example.org"})
        await core.add_route("support@example.com", "fw")
        result = await core.receive(raw_factory())
        assert result.delivered is False
        assert result.error == "relay down"

    @pytest.mark.asyncio
    async def test_not_mime(self, core):
        with pytest.raises(ParseError):
            await core.receive(b"")

    @pytest.mark.asyncio
    async def test_get_unknown_email(self, core):
        with pytest.raises(NotFound):
            await core.get_email("missing")


class TestThreads:
    @pytest.mark.asyncio
    async def test_reply_joins_thread(self, core, raw_factory):
        first = await core.receive(raw_factory(headers={"Message-ID": "<root@example.com>"}))
        await core.receive(raw_factory(subject="Something else", headers={"Message-ID": "<other@example.com>"}))
        reply = await core.receive(
            raw_factory(
                from_addr="support@example.com",
                to=["alice@example.com"],
                subject="Re: Hello",
                text="Answer\n\n> Hi there",
                headers={"Message-ID": "<reply@example.com>"},
                in_reply_to="<root@example.com>",
                references=["<root@example.com>"],
            ),
            recipient="alice@example.com",
        )
        thread = await core.thread_for(reply.email_id)
        assert thread.message_ids == ["<root@example.com>", "<reply@example.com>"]
        assert thread.thread_id == "<root@example.com>"
        assert thread.messages[1].type.value == "outbound"
        assert (await core.thread_for(first.email_id)).message_ids == thread.message_ids

    @pytest.mark.asyncio
    async def test_unknown_email(self, core):
        with pytest.raises(NotFound):
            await core.thread_for("missing")


class TestEndpointCheck:
    @pytest.mark.asyncio
    async def test_test_delivery_is_marked(self, core):
        await core.add_endpoint({"id": "ops", "url": HOOK, "retry_attempts": 5})
        with aioresponses() as m:
            m.post(HOOK, status=500)
            result = await core.test_endpoint("ops", webhook_format="slack")
            calls = m.requests[("POST", URL(HOOK))]
        assert result.success is False
        assert len(calls) == 1
        headers = calls[0].kwargs["headers"]
        assert headers["X-Test-Request"] == "true"
        assert headers["X-Webhook-Format"] == "slack"
        assert await core.list_deliveries(endpoint_id="ops") == []

    @pytest.mark.asyncio
    async def test_forward_endpoint_cannot_be_tested(self, core):
        await core.add_endpoint({"id": "fw", "type": "email", "forward_to": "team@example.org"})
        with pytest.raises(InvalidInput):
            await core.test_endpoint("fw")
