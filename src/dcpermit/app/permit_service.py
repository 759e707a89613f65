from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock

from dcpermit.app.data_store import PermitNotFoundError, PermitStore, PermitStoreError
from dcpermit.app.document_ids import DocumentIdAllocator
from dcpermit.app.permit_drafts import DraftAlreadySubmittedError, PermitDraft
from dcpermit.app.permit_models import (
    SubmittedWorkPermit,
    WorkPermitRequest,
    require_valid_request,
    sort_newest_first,
)
from dcpermit.core.event_stream import EventStream


LOAD_SOURCE_PRIMARY = "primary"
LOAD_SOURCE_CACHE = "cache"
LOAD_SOURCE_EMPTY = "empty"
_EVENT_SOURCE = "permit_service"


@dataclass(frozen=True, slots=True)
class PermitLoadResult:
    permits: tuple[SubmittedWorkPermit, ...]
    source: str = LOAD_SOURCE_PRIMARY
    warning: str = ""

    @property
    def ok(self) -> bool:
        return self.source == LOAD_SOURCE_PRIMARY


class PermitOperationInProgressError(RuntimeError):
    """Raised when a create/update starts while another one is outstanding."""


class PermitLifecycleManager:
    """Creates, updates and lists work permits and owns the in-memory permit list.

    ``fetch_all`` replaces the list with the store contents. ``create`` and
    ``update`` merge their result into the list after the store accepts the
    write, so a failed write never changes what the caller sees.
    """

    def __init__(
        self,
        store: PermitStore,
        *,
        allocator: DocumentIdAllocator | None = None,
        clock: Callable[[], datetime] | None = None,
        event_stream: EventStream | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._logger = logger or logging.getLogger("dcpermit.permits")
        self._allocator = allocator or DocumentIdAllocator(store.count_permits, logger=self._logger)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._events = event_stream or EventStream()
        self._permits: dict[str, SubmittedWorkPermit] = {}
        self._loaded = False
        self._last_warning = ""
        self._busy = False
        self._lock = RLock()

    @property
    def store(self) -> PermitStore:
        return self._store

    @property
    def event_stream(self) -> EventStream:
        return self._events

    @property
    def permits(self) -> tuple[SubmittedWorkPermit, ...]:
        with self._lock:
            return tuple(sort_newest_first(self._permits.values()))

    @property
    def has_loaded(self) -> bool:
        return self._loaded

    @property
    def last_warning(self) -> str:
        return self._last_warning

    @property
    def busy(self) -> bool:
        return self._busy

    def get_permit(self, document_id: str) -> SubmittedWorkPermit:
        with self._lock:
            permit = self._permits.get(document_id)
        if permit is None:
            raise PermitNotFoundError(document_id)
        return permit

    def fetch_all(self) -> PermitLoadResult:
        try:
            rows = self._store.list_permits()
        except PermitStoreError as exc:
            with self._lock:
                previous = tuple(sort_newest_first(self._permits.values()))
                source = LOAD_SOURCE_CACHE if self._loaded else LOAD_SOURCE_EMPTY
                self._last_warning = f"Could not load work permits: {exc}"
                warning = self._last_warning
            self._logger.warning("%s", warning)
            self._events.record(
                "permits.load_failed",
                source=_EVENT_SOURCE,
                payload={"backend": self._store.backend, "kept": len(previous), "error": str(exc)},
            )
            return PermitLoadResult(permits=previous, source=source, warning=warning)

        permits = sort_newest_first(SubmittedWorkPermit.from_storage_row(row) for row in rows)
        with self._lock:
            self._permits = {permit.document_id: permit for permit in permits}
            self._loaded = True
            self._last_warning = ""
        self._events.record(
            "permits.loaded",
            source=_EVENT_SOURCE,
            payload={"backend": self._store.backend, "count": len(permits)},
        )
        self._events.snapshot(
            "permits.cache",
            data={"document_ids": [permit.document_id for permit in permits]},
        )
        return PermitLoadResult(permits=tuple(permits), source=LOAD_SOURCE_PRIMARY)

    def create(self, request: WorkPermitRequest) -> SubmittedWorkPermit:
        with self._operation("create"):
            now = self._clock()
            require_valid_request(request, not_before=now)
            allocation = self._allocator.allocate(now, cached_document_ids=self._cached_document_ids())
            if allocation.degraded:
                self._last_warning = allocation.warning
                self._events.record(
                    "document_id.fallback",
                    source=_EVENT_SOURCE,
                    payload={"document_id": allocation.document_id, "source": allocation.source},
                )

            permit = SubmittedWorkPermit.from_request(
                request,
                document_id=allocation.document_id,
                submission_timestamp=now,
            )
            try:
                stored_row = self._store.insert_permit(permit.to_storage_row())
            except PermitStoreError as exc:
                self._record_save_failure("create", permit.document_id, exc)
                raise

            stored = permit.with_record_id(stored_row.get("id"))
            self._merge(stored)
            self._events.record(
                "permit.created",
                source=_EVENT_SOURCE,
                payload={
                    "document_id": stored.document_id,
                    "personnel": len(stored.personnel),
                    "id_source": allocation.source,
                },
            )
            return stored

    def update(self, document_id: str, request: WorkPermitRequest) -> SubmittedWorkPermit:
        with self._operation("update"):
            with self._lock:
                cached = self._permits.get(document_id)
            require_valid_request(
                request,
                not_before=cached.submission_timestamp if cached is not None else None,
            )

            try:
                current_row = self._store.fetch_permit(document_id)
                if current_row is None:
                    raise PermitNotFoundError(document_id)
                current = SubmittedWorkPermit.from_storage_row(current_row)
                if cached is None:
                    require_valid_request(request, not_before=current.submission_timestamp)
                updated = current.with_request(request)
                stored_row = self._store.replace_permit(document_id, updated.to_storage_row())
            except PermitStoreError as exc:
                self._record_save_failure("update", document_id, exc)
                raise

            updated = updated.with_record_id(stored_row.get("id") or current.record_id)
            self._merge(updated)
            self._events.record(
                "permit.updated",
                source=_EVENT_SOURCE,
                payload={"document_id": document_id, "personnel": len(updated.personnel)},
            )
            return updated

    def submit(self, draft: PermitDraft) -> SubmittedWorkPermit:
        if draft.submitted:
            raise DraftAlreadySubmittedError(f"Draft for {draft.document_id or 'a new permit'} was already submitted.")
        if draft.is_editing:
            result = self.update(draft.document_id, draft.request)
        else:
            result = self.create(draft.request)
        draft.mark_submitted(result)
        return result

    def edit_draft(self, document_id: str) -> PermitDraft:
        return PermitDraft.for_edit(self.get_permit(document_id))

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        with self._lock:
            if self._busy:
                raise PermitOperationInProgressError(
                    f"Another work permit save is in progress; {name} was not started."
                )
            self._busy = True
        try:
            yield
        finally:
            with self._lock:
                self._busy = False

    def _cached_document_ids(self) -> list[str] | None:
        with self._lock:
            if not self._loaded:
                return None
            return list(self._permits)

    def _merge(self, permit: SubmittedWorkPermit) -> None:
        with self._lock:
            self._permits[permit.document_id] = permit

    def _record_save_failure(self, operation: str, document_id: str, exc: PermitStoreError) -> None:
        self._logger.warning("Work permit %s failed for %s: %s", operation, document_id, exc)
        self._events.record(
            "permit.save_failed",
            source=_EVENT_SOURCE,
            payload={
                "operation": operation,
                "document_id": document_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
