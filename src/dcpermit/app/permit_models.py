from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Union
from uuid import uuid4


PERSON_TYPE_INTERNAL = "INTERNAL"
PERSON_TYPE_EXTERNAL = "EXTERNAL"
PERSON_TYPES: tuple[str, ...] = (PERSON_TYPE_INTERNAL, PERSON_TYPE_EXTERNAL)


class PermitValidationError(ValueError):
    """Raised before any store call when a request cannot be persisted."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems: tuple[str, ...] = tuple(problems)
        detail = " ".join(self.problems) if self.problems else "Work permit request is invalid."
        super().__init__(detail)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_key(value: Any) -> str:
    return _as_text(value).strip()


def _is_blank(value: Any) -> bool:
    return not _as_text(value).strip()


def _first_value(value: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        candidate = value.get(key)
        if candidate is not None and candidate != "":
            return candidate
    return None


def _safe_uuid(value: Any) -> str:
    normalized = _as_key(value)
    return normalized or uuid4().hex


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return _ensure_utc(value)
    text = _as_key(value)
    if not text:
        return None
    normalized = text.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return _ensure_utc(parsed)


def format_iso_datetime(value: datetime | None) -> str:
    if value is None:
        return ""
    return _ensure_utc(value).isoformat()


def normalize_person_type(value: Any) -> str:
    normalized = _as_key(value).upper()
    if normalized in PERSON_TYPES:
        return normalized
    return PERSON_TYPE_INTERNAL


@dataclass(frozen=True, slots=True)
class InternalPersonnel:
    personnel_id: str
    employee_id: str = ""

    @property
    def person_type(self) -> str:
        return PERSON_TYPE_INTERNAL

    def missing_fields(self) -> list[str]:
        return [] if not _is_blank(self.employee_id) else ["employee ID"]

    def to_mapping(self) -> dict[str, str]:
        return {
            "id": self.personnel_id,
            "type": PERSON_TYPE_INTERNAL,
            "employeeId": _as_text(self.employee_id),
            "fullName": "",
            "company": "",
            "nationalId": "",
        }

    def to_storage_row(self) -> dict[str, str]:
        return {
            "personnel_id": self.personnel_id,
            "type": PERSON_TYPE_INTERNAL,
            "employee_id": _as_text(self.employee_id),
            "full_name": "",
            "company": "",
            "national_id": "",
        }


@dataclass(frozen=True, slots=True)
class ExternalPersonnel:
    personnel_id: str
    full_name: str = ""
    company: str = ""
    national_id: str = ""

    @property
    def person_type(self) -> str:
        return PERSON_TYPE_EXTERNAL

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if _is_blank(self.full_name):
            missing.append("full name")
        if _is_blank(self.company):
            missing.append("company")
        if _is_blank(self.national_id):
            missing.append("national ID")
        return missing

    def to_mapping(self) -> dict[str, str]:
        return {
            "id": self.personnel_id,
            "type": PERSON_TYPE_EXTERNAL,
            "employeeId": "",
            "fullName": _as_text(self.full_name),
            "company": _as_text(self.company),
            "nationalId": _as_text(self.national_id),
        }

    def to_storage_row(self) -> dict[str, str]:
        return {
            "personnel_id": self.personnel_id,
            "type": PERSON_TYPE_EXTERNAL,
            "employee_id": "",
            "full_name": _as_text(self.full_name),
            "company": _as_text(self.company),
            "national_id": _as_text(self.national_id),
        }


Personnel = Union[InternalPersonnel, ExternalPersonnel]


def new_personnel(person_type: str = PERSON_TYPE_INTERNAL) -> Personnel:
    if normalize_person_type(person_type) == PERSON_TYPE_EXTERNAL:
        return ExternalPersonnel(personnel_id=uuid4().hex)
    return InternalPersonnel(personnel_id=uuid4().hex)


def change_personnel_type(person: Personnel, new_type: str) -> Personnel:
    """Return a blank entry of ``new_type`` keeping the identifier."""
    normalized = normalize_person_type(new_type)
    if normalized == person.person_type:
        return person
    if normalized == PERSON_TYPE_EXTERNAL:
        return ExternalPersonnel(personnel_id=person.personnel_id)
    return InternalPersonnel(personnel_id=person.personnel_id)


def personnel_from_mapping(value: Mapping[str, Any] | None) -> Personnel:
    """Build a personnel entry from either the camelCase or the snake_case shape."""
    if not isinstance(value, Mapping):
        return InternalPersonnel(personnel_id=uuid4().hex)

    personnel_id = _safe_uuid(_first_value(value, "personnel_id", "id"))
    person_type = normalize_person_type(_first_value(value, "type", "person_type"))
    if person_type == PERSON_TYPE_EXTERNAL:
        return ExternalPersonnel(
            personnel_id=personnel_id,
            full_name=_as_text(_first_value(value, "fullName", "full_name")),
            company=_as_text(value.get("company")),
            national_id=_as_text(_first_value(value, "nationalId", "national_id")),
        )
    return InternalPersonnel(
        personnel_id=personnel_id,
        employee_id=_as_text(_first_value(value, "employeeId", "employee_id")),
    )


def _parse_personnel_list(value: Any) -> tuple[Personnel, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(personnel_from_mapping(item) for item in value if isinstance(item, Mapping))


@dataclass(frozen=True, slots=True)
class WorkPermitRequest:
    reason: str = ""
    entry_date_time: datetime | None = None
    personnel: tuple[Personnel, ...] = ()
    equipment_in: str = ""
    equipment_out: str = ""

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "WorkPermitRequest":
        if not isinstance(value, Mapping):
            return cls()
        return cls(
            reason=_as_text(value.get("reason")),
            entry_date_time=parse_iso_datetime(_first_value(value, "entryDateTime", "entry_date_time")),
            personnel=_parse_personnel_list(value.get("personnel")),
            equipment_in=_as_text(_first_value(value, "equipmentIn", "equipment_in")),
            equipment_out=_as_text(_first_value(value, "equipmentOut", "equipment_out")),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "reason": _as_text(self.reason),
            "entryDateTime": format_iso_datetime(self.entry_date_time),
            "personnel": [person.to_mapping() for person in self.personnel],
            "equipmentIn": _as_text(self.equipment_in),
            "equipmentOut": _as_text(self.equipment_out),
        }


@dataclass(frozen=True, slots=True)
class SubmittedWorkPermit:
    document_id: str
    submission_timestamp: datetime
    reason: str = ""
    entry_date_time: datetime | None = None
    personnel: tuple[Personnel, ...] = ()
    equipment_in: str = ""
    equipment_out: str = ""
    record_id: str = ""

    @property
    def request(self) -> WorkPermitRequest:
        return WorkPermitRequest(
            reason=self.reason,
            entry_date_time=self.entry_date_time,
            personnel=self.personnel,
            equipment_in=self.equipment_in,
            equipment_out=self.equipment_out,
        )

    def with_request(self, request: WorkPermitRequest) -> "SubmittedWorkPermit":
        """Copy with new editable fields; identity and submission time are kept."""
        return replace(
            self,
            reason=_as_text(request.reason),
            entry_date_time=request.entry_date_time,
            personnel=tuple(request.personnel),
            equipment_in=_as_text(request.equipment_in),
            equipment_out=_as_text(request.equipment_out),
        )

    def with_record_id(self, record_id: Any) -> "SubmittedWorkPermit":
        return replace(self, record_id=_as_key(record_id))

    @classmethod
    def from_request(
        cls,
        request: WorkPermitRequest,
        *,
        document_id: str,
        submission_timestamp: datetime,
    ) -> "SubmittedWorkPermit":
        return cls(
            document_id=document_id,
            submission_timestamp=_ensure_utc(submission_timestamp),
        ).with_request(request)

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "SubmittedWorkPermit":
        request = WorkPermitRequest.from_mapping(value)
        submitted = parse_iso_datetime(
            _first_value(value, "submissionTimestamp", "submission_timestamp")
        )
        return cls(
            document_id=_as_key(_first_value(value, "documentId", "document_id")),
            submission_timestamp=submitted or datetime.fromtimestamp(0, tz=timezone.utc),
            record_id=_as_key(value.get("id")),
        ).with_request(request)

    @classmethod
    def from_storage_row(cls, row: Mapping[str, Any]) -> "SubmittedWorkPermit":
        return cls.from_mapping(row)

    def to_mapping(self) -> dict[str, Any]:
        payload = self.request.to_mapping()
        payload["documentId"] = self.document_id
        payload["submissionTimestamp"] = format_iso_datetime(self.submission_timestamp)
        payload["id"] = self.record_id
        return payload

    def to_storage_row(self) -> dict[str, Any]:
        """Snake_case row without the storage-assigned ``id``."""
        return {
            "document_id": self.document_id,
            "reason": _as_text(self.reason),
            "entry_date_time": format_iso_datetime(self.entry_date_time),
            "equipment_in": _as_text(self.equipment_in),
            "equipment_out": _as_text(self.equipment_out),
            "submission_timestamp": format_iso_datetime(self.submission_timestamp),
            "personnel": [person.to_storage_row() for person in self.personnel],
        }


def sort_newest_first(permits: Iterable[SubmittedWorkPermit]) -> list[SubmittedWorkPermit]:
    return sorted(
        permits,
        key=lambda permit: (_ensure_utc(permit.submission_timestamp), permit.document_id),
        reverse=True,
    )


def _truncate_to_minute(value: datetime) -> datetime:
    return _ensure_utc(value).replace(second=0, microsecond=0)


def validate_request(
    request: WorkPermitRequest,
    *,
    not_before: datetime | None = None,
) -> list[str]:
    problems: list[str] = []
    if _is_blank(request.reason):
        problems.append("Reason for entry is required.")
    if request.entry_date_time is None:
        problems.append("Entry date and time is required.")
    elif not_before is not None and _truncate_to_minute(request.entry_date_time) < _truncate_to_minute(not_before):
        problems.append(
            "Entry date and time cannot be earlier than "
            f"{_truncate_to_minute(not_before).isoformat()}."
        )
    if not request.personnel:
        problems.append("At least one person must be listed.")
    for index, person in enumerate(request.personnel, start=1):
        for label in person.missing_fields():
            problems.append(f"Person {index}: {label} is required.")
    return problems


def require_valid_request(
    request: WorkPermitRequest,
    *,
    not_before: datetime | None = None,
) -> None:
    problems = validate_request(request, not_before=not_before)
    if problems:
        raise PermitValidationError(problems)
