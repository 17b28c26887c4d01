# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from inbound_relay import __version__
from inbound_relay.cli import main, run_async
from inbound_relay.models import OutboundAttachment


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, tmp_path):
    """Invoke the CLI against a private database and an empty configuration."""
    base = ["--config", str(tmp_path / "absent.ini"), "--db", str(tmp_path / "cli.db")]

    def _invoke(*args, **kwargs):
        return runner.invoke(main, [*base, *args], **kwargs)

    return _invoke


@pytest.fixture
def eml(tmp_path, raw_factory):
    path = tmp_path / "message.eml"
    path.write_bytes(raw_factory(attachments=[OutboundAttachment.from_bytes("notes.txt", b"abc", "text/plain")]))
    return path


class TestHelperFunctions:
    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestMessageCommands:
    def test_parse_summary(self, invoke, eml):
        result = invoke("parse", str(eml))
        assert result.exit_code == 0
        assert "Hello" in result.output
        assert "notes.txt" in result.output

    def test_parse_json(self, invoke, eml):
        result = invoke("parse", str(eml), "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["subject"] == "Hello"
        assert data["attachments"][0]["filename"] == "notes.txt"
        assert "raw" not in data

    def test_parse_escapes_markup_in_fields(self, invoke, tmp_path, raw_factory):
        """Bracketed text in the message is printed, not read as markup."""
        path = tmp_path / "alert.eml"
        path.write_bytes(
            raw_factory(
                subject="Alert [/red] closed",
                attachments=[OutboundAttachment.from_bytes("[bold]x.txt", b"abc", "text/plain")],
            )
        )
        result = invoke("parse", str(path))
        assert result.exit_code == 0, result.output
        assert "Alert [/red] closed" in result.output
        assert "[bold]x.txt" in result.output

    def test_parse_not_mime(self, invoke, tmp_path):
        path = tmp_path / "empty.eml"
        path.write_bytes(b"")
        result = invoke("parse", str(path))
        assert result.exit_code == 1
        assert "empty message" in result.output

    def test_build_to_file(self, invoke, tmp_path):
        out = tmp_path / "out.eml"
        description = json.dumps({"from": "a@example.com", "to": "b@example.org", "subject": "Built", "text": "x"})
        result = invoke("build", "-", "-o", str(out), input=description)
        assert result.exit_code == 0
        assert b"Subject: Built\r\n" in out.read_bytes()

    def test_build_rejects_missing_to(self, invoke):
        result = invoke("build", "-", input=json.dumps({"from": "a@example.com", "subject": "x"}))
        assert result.exit_code == 1


class TestEndpointCommands:
    def test_add_and_list(self, invoke):
        result = invoke(
            "endpoints", "add", "ops", "--url", "https://hooks.example.com/in", "--format", "slack",
            "--header", "X-Team: support", "--retries", "1",
        )
        assert result.exit_code == 0, result.output
        assert "Endpoint 'ops' (webhook) saved." in result.output

        invoke("endpoints", "add", "grp", "--recipient", "a@example.org", "--recipient", "b@example.org")
        listed = invoke("endpoints", "list", "--json")
        data = {item["id"]: item for item in json.loads(listed.output)}
        assert data["ops"]["format"] == "slack"
        assert data["ops"]["custom_headers"] == {"X-Team": "support"}
        assert data["ops"]["retry_attempts"] == 1
        assert data["grp"]["recipients"] == ["a@example.org", "b@example.org"]

    def test_add_requires_target(self, invoke):
        result = invoke("endpoints", "add", "ops")
        assert result.exit_code == 1
        assert "--url" in result.output

    def test_bad_header(self, invoke):
        result = invoke("endpoints", "add", "ops", "--url", "https://x", "--header", "broken")
        assert result.exit_code == 1

    def test_invalid_values_exit_1(self, invoke):
        result = invoke("endpoints", "add", "ops", "--url", "https://x", "--timeout", "0")
        assert result.exit_code == 1


class TestRouteCommands:
    def test_route_and_receive(self, invoke, eml):
        """An email for a route to a forward endpoint without SMTP fails to deliver."""
        invoke("endpoints", "add", "fw", "--forward-to", "team@example.org")
        added = invoke("routes", "add", "Support@Example.com", "fw")
        assert added.exit_code == 0
        assert "support@example.com -> fw" in added.output

        listed = invoke("routes", "list")
        assert "support@example.com" in listed.output

        received = invoke("receive", str(eml))
        assert received.exit_code == 1
        assert '"delivered": false' in received.output

    def test_unrouted_receive(self, invoke, eml):
        result = invoke("receive", str(eml), "-r", "nobody@example.net")
        assert result.exit_code == 0
        assert '"delivered": null' in result.output

    def test_route_to_missing_endpoint(self, invoke):
        result = invoke("routes", "add", "support@example.com", "missing")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestScheduleCommands:
    def test_add_list_cancel(self, invoke):
        added = invoke(
            "schedule", "add", "--from", "news@example.com", "--to", "reader@example.org",
            "-s", "Digest", "--text", "Weekly", "--at", "in 2 hours",
        )
        assert added.exit_code == 0, added.output
        listed = json.loads(invoke("schedule", "list", "--json").output)
        assert listed[0]["status"] == "scheduled"
        schedule_id = listed[0]["id"]

        cancelled = invoke("schedule", "cancel", schedule_id)
        assert cancelled.exit_code == 0
        assert f"Scheduled send {schedule_id} cancelled." in cancelled.output

        again = invoke("schedule", "cancel", schedule_id)
        assert again.exit_code == 1

    def test_unparseable_time(self, invoke):
        result = invoke("schedule", "add", "--from", "a@example.com", "--to", "b@example.org", "--at", "yesterday")
        assert result.exit_code == 1
        assert "Unable to parse date" in result.output

    def test_empty_list(self, invoke):
        result = invoke("schedule", "list")
        assert "No scheduled sends." in result.output

    def test_process_due_with_nothing_due(self, invoke):
        result = invoke("process-due")
        assert result.exit_code == 0
        assert "Processed 0: sent=0, failed=0" in result.output
