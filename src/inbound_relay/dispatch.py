# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP delivery of adapted payloads to webhook endpoints.

:func:`deliver` performs exactly one POST and never raises for
network-level failures: the outcome is always a
:class:`~inbound_relay.models.DeliveryResult` whose ``error_kind``
distinguishes a timeout from a non-2xx answer and from a connection failure.

:class:`DispatchClient` owns the shared aiohttp session, bounds the number of
in-flight requests with a semaphore, and serializes deliveries per endpoint so
a slow destination never receives concurrent posts from the relay.

:func:`deliver_with_retry` layers bounded retries on top, with exponential
backoff and full jitter. Client errors (4xx) are final except 408 and 429.
A retry chain holds its endpoint for its whole length, so events reach one
endpoint in the order their chains started.

Example:
    Delivering to an endpoint::

        async with DispatchClient(max_concurrency=20) as client:
            result = await deliver_with_retry(client, endpoint, adapted)
            if not result.success:
                print(result.error_kind, result.error)
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass

import aiohttp

from .formats import AdaptedPayload
from .logger import get_logger
from .models import DeliveryErrorKind, DeliveryResult, WebhookEndpoint

RESPONSE_EXCERPT_LIMIT = 1000
RESPONSE_READ_LIMIT = 4096
RETRYABLE_CLIENT_STATUSES = {408, 429}

logger = get_logger("Dispatch")


class DispatchClient:
    """Shared HTTP session with global and per-endpoint concurrency limits.

    Attributes:
        max_concurrency: Maximum number of requests in flight.
    """

    def __init__(self, *, max_concurrency: int = 10, session: aiohttp.ClientSession | None = None):
        self.max_concurrency = max(1, int(max_concurrency))
        self._session = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._endpoint_locks: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> DispatchClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def endpoint_lock(self, endpoint_id: str) -> asyncio.Lock:
        lock = self._endpoint_locks.get(endpoint_id)
        if lock is None:
            lock = self._endpoint_locks[endpoint_id] = asyncio.Lock()
        return lock

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def post(
        self, endpoint: WebhookEndpoint, payload: AdaptedPayload, *, lock_held: bool = False
    ) -> DeliveryResult:
        """POST ``payload`` once within a global slot.

        The endpoint lock is taken for the attempt unless the caller already
        holds it for a whole retry chain.
        """
        if lock_held:
            async with self._semaphore:
                return await _post_once(self.session, endpoint, payload)
        async with self.endpoint_lock(endpoint.id):
            async with self._semaphore:
                return await _post_once(self.session, endpoint, payload)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _read_excerpt(resp: aiohttp.ClientResponse) -> str:
    chunks = bytearray()
    while len(chunks) < RESPONSE_READ_LIMIT:
        chunk = await resp.content.read(RESPONSE_READ_LIMIT - len(chunks))
        if not chunk:
            break
        chunks += chunk
    try:
        return bytes(chunks).decode(resp.charset or "utf-8", errors="replace")
    except LookupError:
        return bytes(chunks).decode("utf-8", errors="replace")


async def _post_once(
    session: aiohttp.ClientSession,
    endpoint: WebhookEndpoint,
    payload: AdaptedPayload,
) -> DeliveryResult:
    started = time.monotonic()
    timeout = aiohttp.ClientTimeout(total=endpoint.timeout_seconds)
    try:
        async with session.post(
            endpoint.url,
            data=payload.body,
            headers=payload.headers,
            timeout=timeout,
        ) as resp:
            body = await _read_excerpt(resp)
            status = resp.status
    except asyncio.TimeoutError:
        elapsed = _elapsed_ms(started)
        logger.warning(f"Webhook {endpoint.id} timed out after {endpoint.timeout_seconds}s")
        return DeliveryResult(
            success=False,
            elapsed_ms=elapsed,
            error=f"Request timeout after {endpoint.timeout_seconds}s",
            error_kind=DeliveryErrorKind.TIMEOUT,
        )
    except aiohttp.ClientError as exc:
        elapsed = _elapsed_ms(started)
        logger.warning(f"Webhook {endpoint.id} network error: {exc}")
        return DeliveryResult(
            success=False,
            elapsed_ms=elapsed,
            error=str(exc) or type(exc).__name__,
            error_kind=DeliveryErrorKind.NETWORK,
        )

    elapsed = _elapsed_ms(started)
    excerpt = body[:RESPONSE_EXCERPT_LIMIT]
    if 200 <= status < 300:
        logger.debug(f"Webhook {endpoint.id} delivered: HTTP {status} in {elapsed}ms")
        return DeliveryResult(
            success=True,
            status_code=status,
            response_body_excerpt=excerpt,
            elapsed_ms=elapsed,
        )
    logger.warning(f"Webhook {endpoint.id} rejected delivery: HTTP {status}")
    return DeliveryResult(
        success=False,
        status_code=status,
        response_body_excerpt=excerpt,
        elapsed_ms=elapsed,
        error=f"HTTP {status}",
        error_kind=DeliveryErrorKind.HTTP,
    )


async def deliver(
    client: DispatchClient | aiohttp.ClientSession,
    endpoint: WebhookEndpoint,
    payload: AdaptedPayload,
) -> DeliveryResult:
    """Make one delivery attempt.

    Args:
        client: A :class:`DispatchClient`, or a bare aiohttp session when no
            concurrency limits are wanted.
        endpoint: Destination; supplies the URL and the timeout.
        payload: Body and headers produced by :func:`inbound_relay.formats.adapt`.

    Returns:
        The attempt outcome. Never raises for timeouts, HTTP errors or
        connection failures.
    """
    if isinstance(client, DispatchClient):
        return await client.post(endpoint, payload)
    return await _post_once(client, endpoint, payload)


@dataclass
class RetryPolicy:
    """Backoff schedule: ``uniform(0, min(max_delay, base_delay * 2**n))``."""

    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, retry_number: int, rng: random.Random | None = None) -> float:
        ceiling = min(self.max_delay, self.base_delay * (2 ** retry_number))
        return (rng or random).uniform(0, ceiling)


def is_retryable(result: DeliveryResult) -> bool:
    if result.success:
        return False
    if result.error_kind != DeliveryErrorKind.HTTP or result.status_code is None:
        return True
    if 400 <= result.status_code < 500:
        return result.status_code in RETRYABLE_CLIENT_STATUSES
    return True


async def deliver_with_retry(
    client: DispatchClient | aiohttp.ClientSession,
    endpoint: WebhookEndpoint,
    payload: AdaptedPayload,
    *,
    policy: RetryPolicy | None = None,
    sleep=asyncio.sleep,
) -> DeliveryResult:
    """Deliver with up to ``endpoint.retry_attempts`` retries.

    With a :class:`DispatchClient` the endpoint lock is held for the whole
    chain, so a later delivery to the same endpoint starts only after this
    one has succeeded or given up.

    Returns the last attempt's result with ``attempts`` set to the number of
    attempts made.
    """
    policy = policy or RetryPolicy()
    if isinstance(client, DispatchClient):
        async with client.endpoint_lock(endpoint.id):
            return await _retry_chain(
                lambda: client.post(endpoint, payload, lock_held=True), endpoint, policy, sleep
            )
    return await _retry_chain(lambda: _post_once(client, endpoint, payload), endpoint, policy, sleep)


async def _retry_chain(attempt_once, endpoint: WebhookEndpoint, policy: RetryPolicy, sleep) -> DeliveryResult:
    max_attempts = 1 + endpoint.retry_attempts
    attempt = 0
    while True:
        attempt += 1
        result = await attempt_once()
        result.attempts = attempt
        if attempt >= max_attempts or not is_retryable(result):
            return result
        wait = policy.delay(attempt - 1)
        logger.info(
            f"Retrying webhook {endpoint.id} in {wait:.2f}s "
            f"(attempt {attempt}/{max_attempts}, {result.error})"
        )
        await sleep(wait)
