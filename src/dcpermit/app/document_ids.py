"""Document identifiers of the form ``C2-<YY>-<NNNN>``.

``YY`` is the last two digits of the Buddhist Era year (Gregorian + 543) and
``NNNN`` is one more than the number of permits already recorded for that
year. The count is read from the permit store and the new row is written
later, with nothing in between holding a lock: two clients that read the
same count mint the same identifier. The store's unique constraint on
``document_id`` rejects the second insert.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

from dcpermit.app.data_store import StoreConnectivityError


DOCUMENT_ID_PREFIX = "C2"
BUDDHIST_ERA_OFFSET = 543
SEQUENCE_WIDTH = 4

ALLOCATION_SOURCE_STORE = "store"
ALLOCATION_SOURCE_CACHE = "cache"
ALLOCATION_SOURCE_TIMESTAMP = "timestamp"

_DOCUMENT_ID_PATTERN = re.compile(rf"^{DOCUMENT_ID_PREFIX}-(\d{{2}})-(\d{{{SEQUENCE_WIDTH},}})$")


def buddhist_short_year(year: int) -> str:
    return f"{(int(year) + BUDDHIST_ERA_OFFSET) % 100:02d}"


def document_id_prefix(year: int) -> str:
    return f"{DOCUMENT_ID_PREFIX}-{buddhist_short_year(year)}-"


def format_document_id(year: int, existing_count: int) -> str:
    count = int(existing_count)
    if count < 0:
        raise ValueError(f"Existing permit count cannot be negative: {count}")
    return f"{document_id_prefix(year)}{count + 1:0{SEQUENCE_WIDTH}d}"


def parse_document_id(value: str) -> tuple[str, int] | None:
    match = _DOCUMENT_ID_PATTERN.fullmatch(str(value or "").strip())
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def count_document_ids_for_year(document_ids: Iterable[str], year: int) -> int:
    short_year = buddhist_short_year(year)
    count = 0
    for document_id in document_ids:
        parsed = parse_document_id(document_id)
        if parsed is not None and parsed[0] == short_year:
            count += 1
    return count


def timestamp_sequence(now: datetime) -> int:
    """Four digit fallback suffix, not sequential and only weakly unique."""
    return int(now.timestamp()) % (10**SEQUENCE_WIDTH)


@dataclass(frozen=True, slots=True)
class DocumentIdAllocation:
    document_id: str
    source: str = ALLOCATION_SOURCE_STORE
    warning: str = ""

    @property
    def degraded(self) -> bool:
        return self.source != ALLOCATION_SOURCE_STORE


class DocumentIdAllocator:
    """Allocates the next identifier from a ``prefix -> count`` query.

    When the count query cannot reach the store the allocator falls back to
    the last loaded permit list, or to a clock-derived suffix when no list
    has been loaded yet. Both fallbacks return a warning instead of raising.
    """

    def __init__(
        self,
        count_existing: Callable[[str], int],
        *,
        calendar_timezone: tzinfo | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._count_existing = count_existing
        self._calendar_timezone = calendar_timezone
        self._logger = logger or logging.getLogger("dcpermit.document_ids")

    def calendar_year(self, now: datetime) -> int:
        """Year of ``now`` on the site calendar; the host's local zone unless one was given."""
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self._calendar_timezone).year

    def allocate(
        self,
        now: datetime,
        *,
        cached_document_ids: Iterable[str] | None = None,
    ) -> DocumentIdAllocation:
        year = self.calendar_year(now)
        prefix = document_id_prefix(year)
        try:
            existing = int(self._count_existing(prefix))
        except StoreConnectivityError as exc:
            return self._fallback(now, cached_document_ids=cached_document_ids, error=exc)
        return DocumentIdAllocation(
            document_id=format_document_id(year, max(0, existing)),
            source=ALLOCATION_SOURCE_STORE,
        )

    def _fallback(
        self,
        now: datetime,
        *,
        cached_document_ids: Iterable[str] | None,
        error: Exception,
    ) -> DocumentIdAllocation:
        year = self.calendar_year(now)
        if cached_document_ids is not None:
            existing = count_document_ids_for_year(cached_document_ids, year)
            allocation = DocumentIdAllocation(
                document_id=format_document_id(year, existing),
                source=ALLOCATION_SOURCE_CACHE,
                warning=(
                    "Could not count permits in the store; numbered from the last loaded list. "
                    f"The identifier may collide with permits saved elsewhere. ({error})"
                ),
            )
        else:
            sequence = timestamp_sequence(now)
            allocation = DocumentIdAllocation(
                document_id=f"{document_id_prefix(year)}{sequence:0{SEQUENCE_WIDTH}d}",
                source=ALLOCATION_SOURCE_TIMESTAMP,
                warning=(
                    "Could not count permits in the store; numbered from the current time. "
                    f"The identifier is not sequential. ({error})"
                ),
            )
        self._logger.warning(
            "Document ID fallback (%s): %s", allocation.source, allocation.document_id
        )
        return allocation
