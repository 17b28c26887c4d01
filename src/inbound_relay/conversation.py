# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Conversation threading with confidence scoring.

Messages are grouped in two passes:

1. Header chain. Two messages are linked when one names the other in
   ``In-Reply-To`` (method ``message-id``) or ``References`` (method
   ``references``). Links are resolved with a union-find, so a reply that
   arrives before its parent is still attached to it. Groups built only
   from header links have ``high`` confidence.
2. Subject fallback. A message with no header link at all joins an
   existing group whose normalized subject equals its own and whose
   participants overlap with its From/To/Cc set. A unique candidate gives
   ``medium`` confidence; when several groups qualify, the one with the
   highest participant overlap (earliest group on ties) is chosen and the
   thread is marked ``low``.
   A message that matches nothing forms its own thread, reported with
   method ``single``.

Within a thread, messages are ordered by date; undated messages follow the
dated ones and ties keep input order. Results depend only on the input
sequence, so repeated calls yield identical threads.

Example:
    Threading a reply with its parent::

        thread = conversation.thread([original, reply])
        thread.confidence        # Confidence.HIGH
        thread.messages[1].extracted_new_content.text
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence

from .errors import InvalidInput
from .models import (
    CanonicalEmail,
    Confidence,
    ExtractedContent,
    MessageDirection,
    Thread,
    ThreadingMethod,
    ThreadMessage,
)
from .parser import clean_message_id
from .reply_parser import extract_new_html, extract_new_text

_PREFIX_RE = re.compile(r"^\s*(?:re|r|fwd|fw|aw|wg|vs|sv|reply|forward)\s*(?:\[\d+\])?\s*:\s*", re.I)
_TAG_PREFIX_RE = re.compile(r"^\s*\[[^\]]*\]\s*")
_SPACES_RE = re.compile(r"\s+")

_CONFIDENCE_RANK = {Confidence.HIGH: 0, Confidence.MEDIUM: 1, Confidence.LOW: 2}


def normalize_subject(subject: str | None) -> str:
    """Fold a subject for comparison.

    Lower-cases, strips any number of reply/forward prefixes (English,
    German, Scandinavian variants) and list tags such as ``[team]``, and
    collapses whitespace.

    >>> normalize_subject("RE: Fwd: [ops]  Disk  full")
    'disk full'
    """
    if not subject:
        return ""
    folded = subject.strip()
    while True:
        stripped = _PREFIX_RE.sub("", folded, count=1)
        stripped = _TAG_PREFIX_RE.sub("", stripped, count=1)
        if stripped == folded:
            break
        folded = stripped
    return _SPACES_RE.sub(" ", folded).strip().lower()


def participant_overlap(first: set[str], second: set[str]) -> float:
    """Jaccard overlap of two participant sets."""
    if not first or not second:
        return 0.0
    return len(first & second) / len(first | second)


@dataclass
class _Group:
    members: list[int]
    confidence: Confidence = Confidence.HIGH
    method: ThreadingMethod = ThreadingMethod.MESSAGE_ID
    participants: set[str] = field(default_factory=set)
    subject_key: str = ""

    def downgrade(self, confidence: Confidence, method: ThreadingMethod) -> None:
        if _CONFIDENCE_RANK[confidence] >= _CONFIDENCE_RANK[self.confidence]:
            self.confidence = confidence
            self.method = method


class _UnionFind:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, item: int) -> int:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # The earliest message stays the root.
            low, high = sorted((root_a, root_b))
            self.parent[high] = low


def _sort_key(message: CanonicalEmail, index: int) -> tuple:
    date = message.date
    if date is None:
        return (1, datetime.min.replace(tzinfo=timezone.utc), index)
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return (0, date, index)


class ThreadingEngine:
    """Groups canonical emails into threads.

    Args:
        own_addresses: Addresses of the mailbox owner. Messages sent from one
            of them are typed ``outbound`` and count as read.
    """

    def __init__(self, own_addresses: Iterable[str] | None = None):
        self.own_addresses = {address.lower() for address in own_addresses or ()}

    def _header_groups(self, messages: Sequence[CanonicalEmail]) -> tuple[_UnionFind, dict[int, ThreadingMethod]]:
        by_id: dict[str, int] = {}
        for index, message in enumerate(messages):
            by_id.setdefault(clean_message_id(message.message_id), index)

        links = _UnionFind(len(messages))
        linked: dict[int, ThreadingMethod] = {}
        for index, message in enumerate(messages):
            parent = by_id.get(clean_message_id(message.in_reply_to))
            if parent is not None and parent != index:
                links.union(index, parent)
                linked[index] = ThreadingMethod.MESSAGE_ID
                linked.setdefault(parent, ThreadingMethod.MESSAGE_ID)
                continue
            for reference in reversed(message.references):
                ancestor = by_id.get(clean_message_id(reference))
                if ancestor is not None and ancestor != index:
                    links.union(index, ancestor)
                    linked[index] = ThreadingMethod.REFERENCES
                    linked.setdefault(ancestor, ThreadingMethod.REFERENCES)
                    break
        return links, linked

    def group(self, messages: Sequence[CanonicalEmail]) -> list[Thread]:
        """Split ``messages`` into threads, ordered by their earliest member."""
        if not messages:
            return []
        links, linked = self._header_groups(messages)

        groups: dict[int, _Group] = {}
        for index in range(len(messages)):
            if index not in linked:
                continue
            root = links.find(index)
            group = groups.setdefault(root, _Group(members=[]))
            group.members.append(index)
            if linked[index] == ThreadingMethod.REFERENCES and group.method == ThreadingMethod.MESSAGE_ID:
                group.method = ThreadingMethod.REFERENCES
        for root, group in groups.items():
            group.subject_key = normalize_subject(messages[root].subject)
            for index in group.members:
                group.participants |= messages[index].participants()

        ordered: list[_Group] = [groups[root] for root in sorted(groups)]
        for index, message in enumerate(messages):
            if index in linked:
                continue
            self._attach_by_subject(index, message, ordered)

        ordered.sort(key=lambda item: min(item.members))
        return [self._build_thread(messages, group) for group in ordered]

    def _attach_by_subject(self, index: int, message: CanonicalEmail, groups: list[_Group]) -> None:
        subject_key = normalize_subject(message.subject)
        participants = message.participants()
        candidates: list[tuple[float, int, _Group]] = []
        if subject_key:
            for group in groups:
                if group.subject_key != subject_key:
                    continue
                overlap = participant_overlap(participants, group.participants)
                if overlap > 0:
                    candidates.append((overlap, min(group.members), group))

        if not candidates:
            groups.append(
                _Group(
                    members=[index],
                    method=ThreadingMethod.SINGLE,
                    participants=participants,
                    subject_key=subject_key,
                )
            )
            return

        # Highest overlap first, earliest group on ties.
        candidates.sort(key=lambda item: (-item[0], item[1]))
        chosen = candidates[0][2]
        chosen.members.append(index)
        chosen.participants |= participants
        confidence = Confidence.MEDIUM if len(candidates) == 1 else Confidence.LOW
        chosen.downgrade(confidence, ThreadingMethod.SUBJECT)

    def _build_thread(self, messages: Sequence[CanonicalEmail], group: _Group) -> Thread:
        members = sorted(group.members, key=lambda index: _sort_key(messages[index], index))
        root = min(group.members)
        return Thread(
            thread_id=messages[root].message_id,
            messages=[
                self._annotate(messages[index], position)
                for position, index in enumerate(members, start=1)
            ],
            confidence=group.confidence,
            threading_method=group.method,
        )

    def _annotate(self, message: CanonicalEmail, position: int) -> ThreadMessage:
        outbound = (message.sender_address or "").lower() in self.own_addresses
        data = message.model_dump()
        data.update(
            type=MessageDirection.OUTBOUND if outbound else MessageDirection.INBOUND,
            thread_position=position,
            extracted_new_content=ExtractedContent(
                text=extract_new_text(message.text_body),
                html=extract_new_html(message.html_body),
            ),
            is_read=outbound,
        )
        return ThreadMessage.model_validate(data)

    def thread(self, messages: Sequence[CanonicalEmail]) -> Thread:
        """Thread a sequence supplied as one conversation.

        When the messages fall into several groups they are merged into a
        single thread with ``low`` confidence and method ``merged``.

        Raises:
            InvalidInput: If ``messages`` is empty.
        """
        if not messages:
            raise InvalidInput("cannot thread an empty sequence of messages")
        threads = self.group(messages)
        if len(threads) == 1:
            return threads[0]
        merged = _Group(
            members=list(range(len(messages))),
            confidence=Confidence.LOW,
            method=ThreadingMethod.MERGED,
        )
        return self._build_thread(messages, merged)


def group_threads(messages: Sequence[CanonicalEmail], own_addresses: Iterable[str] | None = None) -> list[Thread]:
    """Split messages into threads; see :meth:`ThreadingEngine.group`."""
    return ThreadingEngine(own_addresses).group(messages)


def thread(messages: Sequence[CanonicalEmail], own_addresses: Iterable[str] | None = None) -> Thread:
    """Thread messages known to form one conversation; see :meth:`ThreadingEngine.thread`."""
    return ThreadingEngine(own_addresses).thread(messages)
