# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the inbound relay.

Settings are read from an INI file (default: ``config.ini``, overridden by
``IRL_CONFIG``) with environment variables as fallbacks. A value present in
the file wins over the environment.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/inbound_relay.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [dispatch]
        max_concurrency = 10
        default_timeout = 30
        signing_secret = whsec_...
        retry_base_delay = 1.0
        retry_max_delay = 30.0

        [scheduler]
        active = true
        interval_seconds = 60
        batch_size = 50
        min_lead_seconds = 60

        [smtp]
        host = smtp.example.com
        port = 587
        user = relay@example.com
        password = secret
        use_tls = true

    Loading settings::

        settings = load_settings()
        settings.db_path
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .logger import get_logger

logger = get_logger("Config")


@dataclass
class RelaySettings:
    """Runtime settings of the relay service.

    Attributes:
        db_path: SQLite database path.
        http_host: Bind address of the API server.
        http_port: Port of the API server.
        api_token: Value expected in ``X-API-Token``; None disables the check.
        max_concurrency: Maximum webhook requests in flight.
        default_timeout: Timeout applied to endpoints created without one.
        signing_secret: Default HMAC secret for endpoints created without one.
        retry_base_delay: First backoff ceiling in seconds.
        retry_max_delay: Maximum backoff ceiling in seconds.
        scheduler_active: Whether the internal scheduled-send timer runs.
        scheduler_interval: Seconds between scheduled-send runs.
        scheduler_batch_size: Maximum items per run.
        min_lead_seconds: Minimum scheduling lead time.
        smtp_host: Outbound SMTP server; None disables sending.
        smtp_port: Outbound SMTP port.
        smtp_user: SMTP login.
        smtp_password: SMTP password.
        smtp_use_tls: Implicit TLS on 465, STARTTLS elsewhere.
        own_addresses: Mailbox addresses treated as outbound in threads.
    """

    db_path: str = "/data/inbound_relay.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None

    max_concurrency: int = 10
    default_timeout: int = 30
    signing_secret: str | None = None
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    scheduler_active: bool = False
    scheduler_interval: float = 60.0
    scheduler_batch_size: int = 50
    min_lead_seconds: int = 60

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True

    own_addresses: tuple[str, ...] = ()


def load_settings(config_path: str | Path | None = None, env: Mapping[str, str] | None = None) -> RelaySettings:
    """Load configuration from an INI file with environment variables as fallbacks.

    Environment variables (all prefixed with IRL_):
      IRL_CONFIG - Path to config.ini file (default: config.ini)
      IRL_DB_PATH, IRL_HOST, IRL_PORT, IRL_API_TOKEN
      IRL_MAX_CONCURRENCY, IRL_DEFAULT_TIMEOUT, IRL_SIGNING_SECRET,
      IRL_RETRY_BASE_DELAY, IRL_RETRY_MAX_DELAY
      IRL_SCHEDULER_ACTIVE, IRL_SCHEDULER_INTERVAL, IRL_SCHEDULER_BATCH_SIZE,
      IRL_MIN_LEAD_SECONDS
      IRL_SMTP_HOST, IRL_SMTP_PORT, IRL_SMTP_USER, IRL_SMTP_PASSWORD, IRL_SMTP_USE_TLS
      IRL_OWN_ADDRESSES - Comma-separated mailbox addresses

    Args:
        config_path: INI file; defaults to ``IRL_CONFIG`` or ``config.ini``.
        env: Environment mapping; defaults to ``os.environ``.
    """
    env = os.environ if env is None else env
    path = Path(config_path or env.get("IRL_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    read = parser.read(path)
    if read:
        logger.debug(f"Loaded configuration from {path}")

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or value == "":
            return default
        return float(value)

    defaults = RelaySettings()
    token = get("server", "api_token", env.get("IRL_API_TOKEN"))
    token = (token.strip() or None) if isinstance(token, str) else None
    own = get("server", "own_addresses", env.get("IRL_OWN_ADDRESSES")) or ""

    return RelaySettings(
        db_path=os.path.expanduser(get("storage", "db_path", env.get("IRL_DB_PATH", defaults.db_path))),
        http_host=get("server", "host", env.get("IRL_HOST", defaults.http_host)),
        http_port=get_int("server", "port", env.get("IRL_PORT"), defaults.http_port),
        api_token=token,
        max_concurrency=get_int("dispatch", "max_concurrency", env.get("IRL_MAX_CONCURRENCY"), defaults.max_concurrency),
        default_timeout=get_int("dispatch", "default_timeout", env.get("IRL_DEFAULT_TIMEOUT"), defaults.default_timeout),
        signing_secret=get("dispatch", "signing_secret", env.get("IRL_SIGNING_SECRET")) or None,
        retry_base_delay=get_float("dispatch", "retry_base_delay", env.get("IRL_RETRY_BASE_DELAY"), defaults.retry_base_delay),
        retry_max_delay=get_float("dispatch", "retry_max_delay", env.get("IRL_RETRY_MAX_DELAY"), defaults.retry_max_delay),
        scheduler_active=get_bool("scheduler", "active", env.get("IRL_SCHEDULER_ACTIVE"), defaults.scheduler_active),
        scheduler_interval=get_float("scheduler", "interval_seconds", env.get("IRL_SCHEDULER_INTERVAL"), defaults.scheduler_interval),
        scheduler_batch_size=get_int("scheduler", "batch_size", env.get("IRL_SCHEDULER_BATCH_SIZE"), defaults.scheduler_batch_size),
        min_lead_seconds=get_int("scheduler", "min_lead_seconds", env.get("IRL_MIN_LEAD_SECONDS"), defaults.min_lead_seconds),
        smtp_host=get("smtp", "host", env.get("IRL_SMTP_HOST")) or None,
        smtp_port=get_int("smtp", "port", env.get("IRL_SMTP_PORT"), defaults.smtp_port),
        smtp_user=get("smtp", "user", env.get("IRL_SMTP_USER")) or None,
        smtp_password=get("smtp", "password", env.get("IRL_SMTP_PASSWORD")) or None,
        smtp_use_tls=get_bool("smtp", "use_tls", env.get("IRL_SMTP_USE_TLS"), defaults.smtp_use_tls),
        own_addresses=tuple(address.strip().lower() for address in own.split(",") if address.strip()),
    )
