# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for settings loading from config.ini and IRL_* variables."""

from inbound_relay.config_loader import RelaySettings, load_settings
from inbound_relay.core import InboundRelayCore
from inbound_relay.transport import SMTPTransport, UnconfiguredTransport


def test_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "absent.ini", env={})
    assert settings == RelaySettings()


def test_file_values(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /tmp/relay.db

[server]
port = 9000
api_token = secret
own_addresses = Support@Example.com, sales@example.com

[dispatch]
max_concurrency = 4
retry_base_delay = 0.5

[scheduler]
active = yes
batch_size = 10

[smtp]
host = smtp.example.com
use_tls = off
""")
    settings = load_settings(config_file, env={})
    assert settings.db_path == "/tmp/relay.db"
    assert settings.http_port == 9000
    assert settings.api_token == "secret"
    assert settings.own_addresses == ("support@example.com", "sales@example.com")
    assert settings.max_concurrency == 4
    assert settings.retry_base_delay == 0.5
    assert settings.scheduler_active is True
    assert settings.scheduler_batch_size == 10
    assert settings.smtp_host == "smtp.example.com"
    assert settings.smtp_use_tls is False


def test_environment_fallbacks(tmp_path):
    env = {
        "IRL_DB_PATH": "/var/lib/relay.db",
        "IRL_PORT": "8081",
        "IRL_API_TOKEN": "  ",
        "IRL_SIGNING_SECRET": "whsec",
        "IRL_SCHEDULER_ACTIVE": "true",
        "IRL_MIN_LEAD_SECONDS": "120",
    }
    settings = load_settings(tmp_path / "absent.ini", env=env)
    assert settings.db_path == "/var/lib/relay.db"
    assert settings.http_port == 8081
    assert settings.api_token is None
    assert settings.signing_secret == "whsec"
    assert settings.scheduler_active is True
    assert settings.min_lead_seconds == 120


def test_file_wins_over_environment(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[server]\nport = 7000\n")
    settings = load_settings(config_file, env={"IRL_PORT": "8081"})
    assert settings.http_port == 7000


def test_config_path_from_environment(tmp_path):
    config_file = tmp_path / "other.ini"
    config_file.write_text("[dispatch]\ndefault_timeout = 5\n")
    settings = load_settings(env={"IRL_CONFIG": str(config_file)})
    assert settings.default_timeout == 5


def test_core_from_settings(tmp_path):
    """SMTP settings select the transport; the rest reaches the core."""
    without_smtp = InboundRelayCore.from_settings(RelaySettings(db_path=str(tmp_path / "a.db")))
    assert isinstance(without_smtp.transport, UnconfiguredTransport)

    settings = RelaySettings(
        db_path=str(tmp_path / "b.db"),
        smtp_host="smtp.example.com",
        signing_secret="whsec",
        own_addresses=("support@example.com",),
        min_lead_seconds=300,
    )
    core = InboundRelayCore.from_settings(settings)
    assert isinstance(core.transport, SMTPTransport)
    assert core.signing_secret == "whsec"
    assert core.own_addresses == {"support@example.com"}
    assert core.scheduler.min_lead.total_seconds() == 300
