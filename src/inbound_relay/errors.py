# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy shared by the relay components.

Every error raised by the relay derives from :class:`RelayError`. Components
that must never block the caller (the parser, the dispatch primitive, the
scheduled-send batch processor) record these errors in their typed results
instead of propagating them.

Classes:
    - ParseError: raw input is not MIME at all.
    - InvalidInput: bad parameters to the builder or the scheduler.
    - TooSoon: a scheduled time earlier than the minimum lead time.
    - InvalidState: a scheduled-send transition from the wrong state.
    - NotFound: unknown scheduled send, endpoint or email id.
    - DeliveryTimeout / DeliveryHTTPError: a failed webhook attempt.
    - StorageConflict: a unique-key race in the store.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


class ParseError(RelayError):
    """Raised when raw bytes cannot be read as a MIME message."""


class InvalidInput(RelayError):
    """Raised when caller parameters are rejected before any side effect."""


class TooSoon(RelayError):
    """Raised when a scheduled time falls before now plus the minimum lead time."""

    def __init__(self, message: str, *, earliest: object = None):
        super().__init__(message)
        self.earliest = earliest


class NotFound(RelayError):
    """Raised when a referenced record does not exist."""


class InvalidState(RelayError):
    """Raised when a state transition is attempted from the wrong state."""

    def __init__(self, message: str, *, status: str | None = None):
        super().__init__(message)
        self.status = status


class StorageConflict(RelayError):
    """Raised when a unique key is already taken in the store."""


class DeliveryError(RelayError):
    """Base class for failed webhook delivery attempts.

    Attributes:
        status_code: HTTP status of the response, or None when no response
            was received.
        elapsed_ms: Time spent on the attempt in milliseconds.
    """

    def __init__(self, message: str, *, status_code: int | None = None, elapsed_ms: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.elapsed_ms = elapsed_ms


class DeliveryTimeout(DeliveryError):
    """The destination did not answer within the endpoint timeout."""


class DeliveryHTTPError(DeliveryError):
    """The destination answered with a non-2xx status or the connection failed."""
