# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Separation of new content from quoted replies.

Mail clients append the message being answered below an attribution line
("On Mon, 27 Jan 2025, Alice wrote:") or a separator ("-----Original
Message-----"), quoting it with ``>`` in plain text and with
``<blockquote>`` or a Gmail quote container in HTML. The helpers here cut
that trailing citation so a thread view shows only what each message added.

When the cut would leave nothing, the body is returned unchanged.
"""

from __future__ import annotations

import re

ATTRIBUTION_PATTERNS = [
    re.compile(r"^On .+, .+ wrote:\s*$"),
    re.compile(r"^On .+ wrote:\s*$"),
    re.compile(r"^Am .+ schrieb .+:\s*$"),
    re.compile(r"^Le .+ a écrit\s?:\s*$"),
    re.compile(r"^El .+ escribió:\s*$"),
    re.compile(r"^Il .+ ha scritto:\s*$"),
    re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}.*wrote:\s*$"),
    re.compile(r"^\d{1,2}/\d{1,2}/\d{4} \d{1,2}:\d{2}.*wrote:\s*$"),
]

SEPARATOR_PATTERNS = [
    re.compile(r"^-{2,} ?Original Message ?-{2,}", re.I),
    re.compile(r"^-{2,} ?Forwarded [Mm]essage ?-{2,}"),
    re.compile(r"^Begin forwarded message:"),
]

HTML_QUOTE_PATTERNS = [
    re.compile(r"<div[^>]*class=\"[^\"]*gmail_quote[^\"]*\"[^>]*>", re.I),
    re.compile(r"<blockquote[^>]*class=\"[^\"]*gmail_quote[^\"]*\"[^>]*>", re.I),
    re.compile(r"<div[^>]*class=\"[^\"]*moz-cite-prefix[^\"]*\"[^>]*>", re.I),
    re.compile(r"<blockquote[^>]*>", re.I),
    re.compile(r"<div[^>]*style=\"[^\"]*border-left[^\"]*\"[^>]*>", re.I),
    re.compile(r"On [^<>]+, [^<>]+ wrote:"),
    re.compile(r"-{2,} ?Original Message ?-{2,}", re.I),
    re.compile(r"-{2,} ?Forwarded [Mm]essage ?-{2,}"),
]

_TAGS_RE = re.compile(r"<[^>]+>")


def _is_attribution(line: str) -> bool:
    stripped = line.strip()
    return any(pattern.match(stripped) for pattern in ATTRIBUTION_PATTERNS)


def _is_quote(line: str) -> bool:
    return line.lstrip().startswith(">")


def extract_new_text(body: str | None) -> str | None:
    """Return a plain-text body without its trailing quoted reply.

    The cut happens at the earliest forward/original-message separator, or
    else at the start of the trailing block of ``>`` lines together with the
    attribution line introducing it (which clients may wrap over two lines).

    Args:
        body: Plain-text body; None is returned unchanged.

    Returns:
        The new content, or ``body`` itself when stripping would empty it.
    """
    if not body:
        return body
    lines = body.split("\n")
    cut = len(lines)

    for index, line in enumerate(lines):
        if any(pattern.match(line.strip()) for pattern in SEPARATOR_PATTERNS):
            cut = index
            break

    end = cut
    while end > 0 and (not lines[end - 1].strip() or _is_quote(lines[end - 1])):
        end -= 1
    if any(_is_quote(line) for line in lines[end:cut]):
        cut = end
        if cut > 0 and _is_attribution(lines[cut - 1]):
            cut -= 1
        elif cut > 1 and _is_attribution(f"{lines[cut - 2].strip()} {lines[cut - 1].strip()}"):
            cut -= 2
    elif end > 0 and _is_attribution(lines[end - 1]):
        cut = end - 1

    new_content = "\n".join(lines[:cut]).rstrip()
    if not new_content.strip():
        return body
    return new_content


def extract_new_html(body: str | None) -> str | None:
    """Return an HTML body cut before its quoted reply container.

    The earliest quote marker wins: a Gmail or Thunderbird quote container,
    a ``<blockquote>``, a bordered quote ``<div>`` or a textual attribution.

    Args:
        body: HTML body; None is returned unchanged.

    Returns:
        The new content, or ``body`` itself when nothing visible would remain.
    """
    if not body:
        return body
    positions = [match.start() for pattern in HTML_QUOTE_PATTERNS if (match := pattern.search(body))]
    if not positions:
        return body
    new_content = body[: min(positions)].strip()
    if not _TAGS_RE.sub("", new_content).strip():
        return body
    return new_content
