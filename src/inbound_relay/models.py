# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models shared by the relay pipeline.

This module defines the data model used throughout the application for
validation, serialization and type safety. Models describing a received
email serialize with camelCase keys (``messageId``, ``textBody``) because
they travel verbatim inside native webhook payloads; configuration models
(endpoints, scheduled sends) keep snake_case keys like the rest of the API.

Models:
    - AddressEntry / AddressGroup: normalized address headers
    - StructuredHeader: header value carrying sub-parameters
    - AttachmentInfo: metadata of a received attachment
    - CanonicalEmail: the normalized representation of one email
    - ThreadMessage / Thread: threaded view of related emails
    - WebhookEndpoint / EmailForwardEndpoint / EmailGroupEndpoint: destinations
    - OutboundMessage / OutboundAttachment: input of the MIME builder
    - ScheduleRequest / ScheduledSend: deferred send intents
    - DeliveryResult / BatchResult / SendResult / ReceiveResult: typed operation outcomes
"""

from __future__ import annotations

import base64
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .errors import DeliveryHTTPError, DeliveryTimeout


class WireModel(BaseModel):
    """Base for models whose JSON form uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump the model as JSON-compatible data with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Canonical email
# ---------------------------------------------------------------------------


class AddressEntry(WireModel):
    """One mailbox of an address header."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    address: str


class AddressGroup(WireModel):
    """Normalized address header.

    Attributes:
        display_text: The decoded header text as received (``text`` on the wire).
        addresses: Parsed mailboxes in header order.
    """

    model_config = ConfigDict(extra="forbid")

    display_text: Annotated[str, Field(default="", alias="text")]
    addresses: Annotated[list[AddressEntry], Field(default_factory=list)]

    @classmethod
    def from_addresses(cls, values: list[str] | str | None) -> AddressGroup | None:
        """Build a group from plain ``addr@domain`` strings."""
        if not values:
            return None
        if isinstance(values, str):
            values = [values]
        return cls(
            display_text=", ".join(values),
            addresses=[AddressEntry(address=value) for value in values],
        )

    def emails(self) -> list[str]:
        """Return the lower-cased addresses of the group."""
        return [entry.address.lower() for entry in self.addresses if entry.address]

    @property
    def first_address(self) -> str | None:
        return self.addresses[0].address if self.addresses else None


class StructuredHeader(WireModel):
    """Header value with sub-parameters, e.g. ``Content-Type; boundary=...``."""

    model_config = ConfigDict(extra="forbid")

    value: str
    params: Annotated[dict[str, str], Field(default_factory=dict)]


HeaderValue = Union[str, AddressGroup, StructuredHeader]
HeaderEntry = Union[HeaderValue, list[HeaderValue]]


class AttachmentInfo(WireModel):
    """Metadata of an attachment found in a received message."""

    filename: str | None = None
    content_type: str = "application/octet-stream"
    size_bytes: int = 0
    content_id: str | None = None
    disposition: str | None = None


class Priority(str, Enum):
    """Normalized message priority."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class CanonicalEmail(WireModel):
    """Normalized representation of one email.

    ``message_id`` is assigned once by the parser and cannot be reassigned.
    ``text_body`` and ``html_body`` keep the absence state found in the
    source message: neither is synthesized from the other.
    """

    message_id: Annotated[str, Field(frozen=True)]
    from_: Annotated[AddressGroup | None, Field(default=None, alias="from")]
    to: AddressGroup | None = None
    cc: AddressGroup | None = None
    bcc: AddressGroup | None = None
    reply_to: AddressGroup | None = None
    subject: str = ""
    date: datetime | None = None
    text_body: str | None = None
    html_body: str | None = None
    attachments: Annotated[list[AttachmentInfo], Field(default_factory=list)]
    headers: Annotated[dict[str, HeaderEntry], Field(default_factory=dict)]
    in_reply_to: str | None = None
    references: Annotated[list[str], Field(default_factory=list)]
    priority: Priority | None = None
    parse_success: bool = True
    parse_error: str | None = None
    raw: str | None = None

    def participants(self) -> set[str]:
        """Lower-cased addresses found in From, To and Cc."""
        found: set[str] = set()
        for group in (self.from_, self.to, self.cc):
            if group is not None:
                found.update(group.emails())
        return found

    @property
    def sender_address(self) -> str | None:
        return self.from_.first_address if self.from_ else None


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ThreadingMethod(str, Enum):
    """Heuristic that attached a message to its thread.

    Attributes:
        SINGLE: A message with no link to any other; it is its own thread.
        MESSAGE_ID: Linked through ``In-Reply-To``.
        REFERENCES: Linked through the ``References`` chain only.
        SUBJECT: Normalized subject plus participant overlap.
        MERGED: Unrelated groups merged because the caller supplied them as
            one conversation.
    """

    SINGLE = "single"
    MESSAGE_ID = "message-id"
    REFERENCES = "references"
    SUBJECT = "subject"
    MERGED = "merged"


class ExtractedContent(WireModel):
    """Message content with quoted replies removed."""

    text: str | None = None
    html: str | None = None


class ThreadMessage(CanonicalEmail):
    """A canonical email annotated with its place in a thread."""

    type: MessageDirection = MessageDirection.INBOUND
    thread_position: int = 1
    extracted_new_content: Annotated[ExtractedContent, Field(default_factory=ExtractedContent)]
    is_read: bool = False


class Thread(WireModel):
    """Ordered, never empty sequence of related messages."""

    thread_id: str
    messages: Annotated[list[ThreadMessage], Field(min_length=1)]
    confidence: Confidence
    threading_method: ThreadingMethod

    @property
    def message_ids(self) -> list[str]:
        return [message.message_id for message in self.messages]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class WebhookFormat(str, Enum):
    """Payload dialects accepted by webhook endpoints.

    Attributes:
        INBOUND: Native JSON payload mirroring the canonical email.
        DISCORD: Discord incoming-webhook message with one embed.
        SLACK: Slack incoming-webhook message with one attachment.
    """

    INBOUND = "inbound"
    DISCORD = "discord"
    SLACK = "slack"


class EndpointBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str,
        Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_.-]+$",
              description="Unique endpoint identifier")
    ]
    name: Annotated[str, Field(default="", max_length=255, description="Human-readable name")]
    active: Annotated[bool, Field(default=True, description="Whether the endpoint receives deliveries")]


class WebhookEndpoint(EndpointBase):
    """HTTP destination receiving adapted payloads."""

    type: Literal["webhook"] = "webhook"
    url: Annotated[str, Field(min_length=1, description="Destination URL")]
    format: Annotated[WebhookFormat, Field(default=WebhookFormat.INBOUND)]
    timeout_seconds: Annotated[
        int,
        Field(default=30, ge=1, le=300, description="Per-request timeout in seconds")
    ]
    retry_attempts: Annotated[
        int,
        Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    ]
    custom_headers: Annotated[dict[str, str], Field(default_factory=dict)]
    signing_secret: Annotated[
        str | None,
        Field(default=None, description="HMAC secret for X-Webhook-Signature")
    ]


class ForwardOptions(EndpointBase):
    include_attachments: Annotated[bool, Field(default=True)]
    subject_prefix: Annotated[str, Field(default="Fwd: ")]
    sender_name: Annotated[str | None, Field(default=None)]
    from_address: Annotated[
        str | None,
        Field(default=None, description="Envelope sender; defaults to the original recipient")
    ]


class EmailForwardEndpoint(ForwardOptions):
    """Forward every received email to one address."""

    type: Literal["email"] = "email"
    forward_to: Annotated[str, Field(min_length=3)]


class EmailGroupEndpoint(ForwardOptions):
    """Forward every received email to a set of addresses."""

    type: Literal["email_group"] = "email_group"
    recipients: Annotated[list[str], Field(min_length=1)]

    @field_validator("recipients")
    @classmethod
    def unique_recipients(cls, v: list[str]) -> list[str]:
        """Drop case-insensitive duplicates, keeping the first spelling."""
        seen: set[str] = set()
        unique: list[str] = []
        for address in v:
            key = address.strip().lower()
            if key and key not in seen:
                seen.add(key)
                unique.append(address.strip())
        if not unique:
            raise ValueError("recipients must contain at least one address")
        return unique


Endpoint = Annotated[
    Union[WebhookEndpoint, EmailForwardEndpoint, EmailGroupEndpoint],
    Field(discriminator="type"),
]
ENDPOINT_ADAPTER: TypeAdapter[Endpoint] = TypeAdapter(Endpoint)


# ---------------------------------------------------------------------------
# Outbound messages and scheduled sends
# ---------------------------------------------------------------------------


class OutboundAttachment(BaseModel):
    """Attachment handed to the MIME builder.

    Content is carried base64-encoded so that the model round-trips through
    JSON storage unchanged.
    """

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(min_length=1)]
    content_base64: str
    content_type: str = "application/octet-stream"
    content_id: str | None = None

    @field_validator("content_base64")
    @classmethod
    def valid_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except ValueError as exc:
            raise ValueError("content_base64 is not valid base64") from exc
        return v

    @classmethod
    def from_bytes(
        cls,
        filename: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        content_id: str | None = None,
    ) -> OutboundAttachment:
        return cls(
            filename=filename,
            content_base64=base64.b64encode(data).decode("ascii"),
            content_type=content_type,
            content_id=content_id,
        )

    @property
    def data(self) -> bytes:
        return base64.b64decode(self.content_base64)


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class OutboundMessage(BaseModel):
    """Parameters of a message to build with :func:`inbound_relay.mime_builder.build`.

    Address fields accept either a list or a comma-separated string.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    from_addr: Annotated[str, Field(alias="from", min_length=1)]
    to: Annotated[list[str], Field(default_factory=list)]
    cc: Annotated[list[str], Field(default_factory=list)]
    bcc: Annotated[list[str], Field(default_factory=list)]
    reply_to: str | None = None
    subject: str = ""
    text: str | None = None
    html: str | None = None
    attachments: Annotated[list[OutboundAttachment], Field(default_factory=list)]
    headers: Annotated[dict[str, str], Field(default_factory=dict)]
    in_reply_to: str | None = None
    references: Annotated[list[str], Field(default_factory=list)]

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def split_addresses(cls, v: Any) -> Any:
        return _as_list(v)

    def envelope_recipients(self) -> list[str]:
        """All recipients, Bcc included, in header order."""
        return [*self.to, *self.cc, *self.bcc]


class ScheduleStatus(str, Enum):
    """Lifecycle of a scheduled send.

    ``processing`` is held only while the background processor owns the item;
    ``sent``, ``cancelled`` and ``failed`` are terminal.
    """

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ScheduleRequest(OutboundMessage):
    """Deferred send request: an outbound message plus timing.

    Attributes:
        scheduled_at: ISO 8601 timestamp or natural-language expression
            such as ``"in 5 minutes"`` or ``"tomorrow at 9am"``.
        timezone: IANA zone used for wall-clock expressions and display.
        idempotency_key: Caller token; repeated submissions return the
            existing record.
    """

    scheduled_at: str | datetime
    timezone: str = "UTC"
    idempotency_key: Annotated[str | None, Field(default=None, max_length=256)]

    def message(self) -> OutboundMessage:
        data = self.model_dump(exclude={"scheduled_at", "timezone", "idempotency_key"})
        return OutboundMessage.model_validate(data)


class ScheduledSend(BaseModel):
    """Persisted outbound-send intent."""

    id: str
    idempotency_key: str | None = None
    message: OutboundMessage
    scheduled_at: datetime
    timezone: str = "UTC"
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    attempts: int = 0
    created_at: datetime
    updated_at: datetime | None = None
    sent_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_reason: str | None = None
    provider_message_id: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class DeliveryErrorKind(str, Enum):
    TIMEOUT = "timeout"
    HTTP = "http"
    NETWORK = "network"


class DeliveryResult(BaseModel):
    """Outcome of a single webhook attempt (or of a retry chain).

    Attributes:
        success: True for a 2xx response.
        status_code: Response status, None when no response was received.
        response_body_excerpt: First 1000 characters of the response body.
        elapsed_ms: Wall time of the (last) attempt.
        error: Human-readable failure reason.
        error_kind: ``timeout``, ``http`` (non-2xx) or ``network``.
        attempts: Number of attempts that produced this result.
    """

    success: bool
    status_code: int | None = None
    response_body_excerpt: str = ""
    elapsed_ms: int = 0
    error: str | None = None
    error_kind: DeliveryErrorKind | None = None
    attempts: int = 1

    @property
    def timed_out(self) -> bool:
        return self.error_kind == DeliveryErrorKind.TIMEOUT

    def raise_for_error(self) -> None:
        """Raise DeliveryTimeout or DeliveryHTTPError when the attempt failed."""
        if self.success:
            return
        if self.timed_out:
            raise DeliveryTimeout(self.error or "timeout", elapsed_ms=self.elapsed_ms)
        raise DeliveryHTTPError(
            self.error or "delivery failed",
            status_code=self.status_code,
            elapsed_ms=self.elapsed_ms,
        )


class BatchResult(BaseModel):
    """Aggregate outcome of one scheduled-send processing run."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    errors: Annotated[list[dict[str, str]], Field(default_factory=list)]


class SendResult(BaseModel):
    """Outcome of handing a built message to the outbound transport."""

    success: bool
    provider_message_id: str | None = None
    error: str | None = None


class ReceiveResult(BaseModel):
    """Outcome of accepting one inbound email.

    Attributes:
        email_id: Relay-side id under which the email was stored.
        message_id: Message-ID of the email (synthetic when absent).
        parse_success: False when the message was only partially understood.
        parse_error: Reasons for a partial parse.
        endpoint_id: Endpoint the recipient was routed to, if any.
        delivery_type: ``webhook`` or ``email_forward`` when a delivery ran.
        delivered: Whether the routed delivery succeeded; None when nothing
            was routed.
        error: Failure reason of the routed delivery.
    """

    email_id: str
    message_id: str
    parse_success: bool = True
    parse_error: str | None = None
    endpoint_id: str | None = None
    delivery_type: str | None = None
    delivered: bool | None = None
    error: str | None = None
