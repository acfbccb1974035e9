"""
Page selection parsing, merging and serialization.

A page selection reaches the backend in two shapes: a free-form range string
typed by the user (e.g. "1-10, 12-16") and a list of page numbers toggled in
the viewer. This module folds both into a set of page numbers and writes the
set back out in compact canonical form ("1-3,5,7-9").

Parsing is lenient on purpose: the input is frequently a half-typed value from
a live text field, so malformed tokens are dropped instead of rejected. No
function here raises for any string or page list.

The module has no dependency on the web, storage or rendering layers and is
shared by the upload handler and the interactive selection endpoints.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import AbstractSet, FrozenSet, Iterable, Iterator, Optional, Tuple

# Leading optional sign and ASCII digits; anything after them is ignored
_LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)", re.ASCII)

PageSet = FrozenSet[int]


class ReconciliationPolicy(str, Enum):
    """How a direct edit of the range text combines with the current selection."""

    UNION = "union"
    TEXT_AUTHORITATIVE = "text_authoritative"


def parse_page_number(value: str) -> Optional[int]:
    """
    Read the integer at the start of ``value``.

    Leading whitespace and a sign are allowed and trailing characters are
    ignored, so ``"12abc"`` reads as 12 and ``"1.5"`` as 1. Returns None when
    ``value`` does not start with an ASCII digit.

    Example:
        >>> parse_page_number(" +5")
        5
        >>> parse_page_number("x1") is None
        True
    """
    match = _LEADING_INTEGER.match(value)
    if match is None:
        return None
    return int(match.group(1))


def _intervals(range_string: Optional[str]) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` for every token that parses; single pages yield ``(n, n)``."""
    if not range_string:
        return

    for token in range_string.split(","):
        token = token.strip()
        if "-" in token:
            start_text, end_text = token.split("-", 1)
            start = parse_page_number(start_text)
            end = parse_page_number(end_text)
            if start is None or end is None:
                continue
            yield start, end
        else:
            page = parse_page_number(token)
            if page is not None:
                yield page, page


def parse(range_string: Optional[str]) -> PageSet:
    """
    Expand a range string into the set of page numbers it names.

    Args:
        range_string: Comma-separated tokens, each a single page ("5") or an
            inclusive range ("3-9"). Surrounding whitespace is ignored.

    Returns:
        Frozen set of page numbers. Tokens that do not parse are skipped and a
        reversed range ("9-3") contributes nothing.

    Example:
        >>> sorted(parse("1-3, 7,abc"))
        [1, 2, 3, 7]
    """
    pages: set[int] = set()
    for start, end in _intervals(range_string):
        pages.update(range(start, end + 1))
    return frozenset(pages)


def count_pages(range_string: Optional[str], extra_pages: Iterable[int] = ()) -> int:
    """
    Size of ``parse(range_string) | set(extra_pages)`` without expanding ranges.

    Lets a caller refuse a selection such as "1-1000000000" before paying for
    the expansion.
    """
    intervals = [(start, end) for start, end in _intervals(range_string) if start <= end]
    intervals.extend((page, page) for page in set(extra_pages))
    intervals.sort()

    total = 0
    current_start: Optional[int] = None
    current_end = 0
    for start, end in intervals:
        if current_start is not None and start <= current_end + 1:
            current_end = max(current_end, end)
            continue
        if current_start is not None:
            total += current_end - current_start + 1
        current_start, current_end = start, end

    if current_start is not None:
        total += current_end - current_start + 1
    return total


def serialize(pages: Iterable[int]) -> str:
    """
    Write a set of page numbers as a canonical range string.

    Consecutive pages collapse into "start-end", isolated pages stand alone,
    and tokens appear in ascending order.

    Example:
        >>> serialize({1, 2, 3, 5, 7, 8, 9})
        '1-3,5,7-9'
    """
    tokens: list[str] = []
    run_start: Optional[int] = None
    previous: Optional[int] = None

    for page in sorted(set(pages)):
        if previous is not None and page == previous + 1:
            previous = page
            continue
        if run_start is not None:
            tokens.append(_format_run(run_start, previous))
        run_start = previous = page

    if run_start is not None:
        tokens.append(_format_run(run_start, previous))

    return ",".join(tokens)


def _format_run(start: int, end: Optional[int]) -> str:
    if end is None or end == start:
        return str(start)
    return f"{start}-{end}"


def merge(range_string: Optional[str], individual_pages: Iterable[int]) -> str:
    """
    Combine a manual range string with individually selected pages.

    This is the one-shot reconciliation used at upload time: the parsed range
    string is unioned with the individual pages and the union is serialized.

    Args:
        range_string: Manual range entry; may be empty or None.
        individual_pages: Pages picked one by one in the viewer.

    Returns:
        Canonical range string of the union.

    Example:
        >>> merge("1-3,7", [5, 6, 8])
        '1-3,5-8'
    """
    return serialize(parse(range_string) | set(individual_pages))


def toggle(pages: AbstractSet[int], page: int) -> PageSet:
    """Return a copy of ``pages`` with ``page`` removed if present, added otherwise."""
    if page in pages:
        return frozenset(pages) - {page}
    return frozenset(pages) | {page}


def clamp(pages: Iterable[int], page_count: int) -> PageSet:
    """
    Restrict a selection to the pages that exist in a document.

    The parsing functions above never check bounds because they may run before
    the page count is known. Callers that do know it (e.g. the processing step
    after opening the PDF) use this to drop pages outside ``[1, page_count]``.
    """
    return frozenset(page for page in pages if 1 <= page <= page_count)


class SelectionSession:
    """
    Selection state for one document while the user edits it interactively.

    The session keeps the page set shown as highlighted in the viewer and the
    text of the range field. Clicking a page toggles it and rewrites the text
    field from the new set; editing the text field re-parses it and folds the
    result into the set according to ``policy``.

    With ``ReconciliationPolicy.UNION`` a text edit never drops pages that were
    selected before the edit, so a page removed from the text field but
    previously clicked reappears. ``ReconciliationPolicy.TEXT_AUTHORITATIVE``
    makes the text field replace the selection on every edit.
    """

    def __init__(
        self,
        pages: Iterable[int] = (),
        range_text: str = "",
        policy: ReconciliationPolicy = ReconciliationPolicy.UNION,
    ) -> None:
        self.policy = ReconciliationPolicy(policy)
        self.pages: PageSet = frozenset(pages)
        self.range_text = range_text
        if range_text:
            self.edit_text(range_text)

    @property
    def range_string(self) -> str:
        return serialize(self.pages)

    def edit_text(self, text: str) -> PageSet:
        """Apply a direct edit of the range text field."""
        self.range_text = text
        parsed = parse(text)
        if self.policy is ReconciliationPolicy.TEXT_AUTHORITATIVE:
            self.pages = parsed
        else:
            self.pages = parsed | self.pages
        return self.pages

    def toggle(self, page: int) -> PageSet:
        """Apply a viewer click on ``page`` and echo the selection into the text field."""
        self.pages = toggle(self.pages, page)
        self.range_text = serialize(self.pages)
        return self.pages
