# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound SMTP transport.

Used by scheduled sends and by email-forward endpoints. Each send opens a
connection, authenticates when credentials are configured, hands over the
built message and closes. Failures are reported in the returned
:class:`~inbound_relay.models.SendResult` rather than raised, so batch
processors can record them per item.

TLS behavior follows the port:

- port 465 with ``use_tls``: implicit TLS;
- any other port with ``use_tls``: STARTTLS;
- ``use_tls=False``: plain SMTP.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import aiosmtplib

from .logger import get_logger
from .models import SendResult

CONNECT_TIMEOUT = 15.0


class Transport(Protocol):
    async def send(self, raw: bytes, *, sender: str, recipients: list[str], message_id: str | None = None) -> SendResult:
        ...


class SMTPTransport:
    """aiosmtplib-backed transport.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        user: Login user, or None for unauthenticated relays.
        password: Login password.
        use_tls: Whether to encrypt (implicit TLS on 465, STARTTLS elsewhere).
        timeout: Per-command timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.logger = get_logger("SMTPTransport")

    def _client(self) -> aiosmtplib.SMTP:
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout)
        if self.use_tls:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=self.timeout)
        return aiosmtplib.SMTP(hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=self.timeout)

    async def _connect(self) -> aiosmtplib.SMTP:
        smtp = self._client()

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=CONNECT_TIMEOUT)
        return smtp

    async def send(
        self,
        raw: bytes,
        *,
        sender: str,
        recipients: list[str],
        message_id: str | None = None,
    ) -> SendResult:
        """Send pre-built MIME bytes.

        Args:
            raw: Serialized message, e.g. from :func:`inbound_relay.mime_builder.build`.
            sender: Envelope sender.
            recipients: Envelope recipients, Bcc included.
            message_id: Message-ID of ``raw``, reported back as the provider id.

        Returns:
            The send outcome.
        """
        if not recipients:
            return SendResult(success=False, error="no recipients")
        try:
            smtp = await self._connect()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.warning(f"SMTP connection to {self.host}:{self.port} failed: {exc}")
            return SendResult(success=False, error=f"connection failed: {exc}")
        try:
            refused, response = await smtp.sendmail(sender, recipients, raw)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.warning(f"SMTP send of {message_id or '-'} failed: {exc}")
            return SendResult(success=False, error=str(exc))
        finally:
            try:
                await smtp.quit()
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
                self.logger.debug("SMTP quit failed; connection dropped")
        if refused:
            self.logger.info(f"SMTP server refused recipients: {', '.join(refused)}")
        self.logger.debug(f"SMTP accepted {message_id or '-'}: {response}")
        return SendResult(success=True, provider_message_id=message_id)


class UnconfiguredTransport:
    """Stand-in used when no SMTP server is configured; every send fails."""

    async def send(
        self,
        raw: bytes,
        *,
        sender: str,
        recipients: list[str],
        message_id: str | None = None,
    ) -> SendResult:
        return SendResult(success=False, error="no outbound SMTP server configured")
