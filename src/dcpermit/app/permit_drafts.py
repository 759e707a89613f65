from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from dcpermit.app.permit_models import (
    PERSON_TYPE_INTERNAL,
    Personnel,
    SubmittedWorkPermit,
    WorkPermitRequest,
    change_personnel_type,
    new_personnel,
    parse_iso_datetime,
)


_UNSET: Any = object()


class DraftAlreadySubmittedError(RuntimeError):
    """Raised when a submitted draft is edited or submitted again."""


class PermitDraft:
    """Editable permit: a fresh request or a submitted permit loaded for editing.

    Submitting is terminal. Further changes need a new draft from
    ``PermitDraft.for_edit``.
    """

    def __init__(
        self,
        request: WorkPermitRequest | None = None,
        *,
        original: SubmittedWorkPermit | None = None,
    ) -> None:
        self._request = request or WorkPermitRequest()
        self._original = original
        self._result: SubmittedWorkPermit | None = None

    @classmethod
    def new(cls) -> "PermitDraft":
        return cls()

    @classmethod
    def for_edit(cls, permit: SubmittedWorkPermit) -> "PermitDraft":
        return cls(permit.request, original=permit)

    @property
    def request(self) -> WorkPermitRequest:
        return self._request

    @property
    def original(self) -> SubmittedWorkPermit | None:
        return self._original

    @property
    def is_editing(self) -> bool:
        return self._original is not None

    @property
    def document_id(self) -> str:
        return self._original.document_id if self._original is not None else ""

    @property
    def submitted(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> SubmittedWorkPermit | None:
        return self._result

    @property
    def can_submit(self) -> bool:
        request = self._request
        return bool(request.personnel and request.reason.strip() and request.entry_date_time is not None)

    def set_fields(
        self,
        *,
        reason: str = _UNSET,
        entry_date_time: datetime | str | None = _UNSET,
        equipment_in: str = _UNSET,
        equipment_out: str = _UNSET,
    ) -> WorkPermitRequest:
        self._ensure_open()
        changes: dict[str, Any] = {}
        if reason is not _UNSET:
            changes["reason"] = str(reason or "")
        if entry_date_time is not _UNSET:
            changes["entry_date_time"] = parse_iso_datetime(entry_date_time)
        if equipment_in is not _UNSET:
            changes["equipment_in"] = str(equipment_in or "")
        if equipment_out is not _UNSET:
            changes["equipment_out"] = str(equipment_out or "")
        self._request = replace(self._request, **changes)
        return self._request

    def add_personnel(self, person_type: str = PERSON_TYPE_INTERNAL) -> Personnel:
        self._ensure_open()
        person = new_personnel(person_type)
        self._request = replace(self._request, personnel=(*self._request.personnel, person))
        return person

    def remove_personnel(self, personnel_id: str) -> bool:
        self._ensure_open()
        remaining = tuple(p for p in self._request.personnel if p.personnel_id != personnel_id)
        if len(remaining) == len(self._request.personnel):
            return False
        self._request = replace(self._request, personnel=remaining)
        return True

    def replace_personnel(self, personnel_id: str, person: Personnel) -> bool:
        self._ensure_open()
        found = False
        rows: list[Personnel] = []
        for existing in self._request.personnel:
            if existing.personnel_id == personnel_id:
                rows.append(person)
                found = True
            else:
                rows.append(existing)
        if found:
            self._request = replace(self._request, personnel=tuple(rows))
        return found

    def change_personnel_type(self, personnel_id: str, new_type: str) -> Personnel | None:
        for existing in self._request.personnel:
            if existing.personnel_id == personnel_id:
                changed = change_personnel_type(existing, new_type)
                self.replace_personnel(personnel_id, changed)
                return changed
        return None

    def mark_submitted(self, result: SubmittedWorkPermit) -> None:
        self._ensure_open()
        self._result = result

    def _ensure_open(self) -> None:
        if self._result is not None:
            raise DraftAlreadySubmittedError(
                f"Draft for {self._result.document_id} was already submitted."
            )
