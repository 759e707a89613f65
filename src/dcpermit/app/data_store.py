from __future__ import annotations

import json
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Any, Iterator, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from dcpermit.app.db_debug import db_debug


BACKEND_LOCAL_SQLITE = "local_sqlite"
BACKEND_SUPABASE = "supabase"
DEFAULT_SQLITE_FILE_NAME = "work_permits.sqlite3"
_DEFAULT_SUPABASE_SCHEMA = "public"
_DEFAULT_SUPABASE_TABLE = "work_permits"
_DEFAULT_SUPABASE_TIMEOUT_SECONDS = 8.0
_PERMITS_TABLE = "work_permits"
_PERSONNEL_TABLE = "work_permit_personnel"
_HEADER_FIELDS: tuple[str, ...] = (
    "document_id",
    "reason",
    "entry_date_time",
    "equipment_in",
    "equipment_out",
    "submission_timestamp",
)
_MUTABLE_HEADER_FIELDS: tuple[str, ...] = (
    "reason",
    "entry_date_time",
    "equipment_in",
    "equipment_out",
)
_PERSONNEL_FIELDS: tuple[str, ...] = (
    "personnel_id",
    "type",
    "employee_id",
    "full_name",
    "company",
    "national_id",
)


class PermitStoreError(RuntimeError):
    """Base class for permit store failures."""


class StoreConnectivityError(PermitStoreError):
    """The store could not be reached or the request failed."""


class StoreConstraintError(PermitStoreError):
    """The store rejected a write, e.g. a duplicate document ID."""


class PermitNotFoundError(PermitStoreError):
    def __init__(self, document_id: str, message: str = "") -> None:
        detail = message.strip() if message.strip() else f"Work permit {document_id!r} was not found."
        super().__init__(detail)
        self.document_id = document_id


class PermitStore(Protocol):
    backend: str

    def list_permits(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def fetch_permit(self, document_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def count_permits(self, document_id_prefix: str) -> int:
        raise NotImplementedError

    def insert_permit(self, row: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def replace_permit(self, document_id: str, row: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class SupabasePermitStoreConfig:
    url: str = ""
    api_key: str = ""
    schema: str = _DEFAULT_SUPABASE_SCHEMA
    table: str = _DEFAULT_SUPABASE_TABLE
    timeout_seconds: float = _DEFAULT_SUPABASE_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> SupabasePermitStoreConfig:
        raw = value or {}
        url = str(raw.get("url", "") or "").strip().rstrip("/")
        api_key = str(raw.get("api_key", "") or "").strip()
        schema = str(raw.get("schema", "") or "").strip() or _DEFAULT_SUPABASE_SCHEMA
        table = str(raw.get("table", "") or "").strip() or _DEFAULT_SUPABASE_TABLE
        timeout_raw = raw.get("timeout_seconds", _DEFAULT_SUPABASE_TIMEOUT_SECONDS)
        try:
            timeout_seconds = float(timeout_raw)
        except (TypeError, ValueError):
            timeout_seconds = _DEFAULT_SUPABASE_TIMEOUT_SECONDS
        timeout_seconds = max(1.0, timeout_seconds)
        return cls(
            url=url,
            api_key=api_key,
            schema=schema,
            table=table,
            timeout_seconds=timeout_seconds,
        )


class LocalSqlitePermitStore:
    backend = BACKEND_LOCAL_SQLITE

    def __init__(
        self,
        data_root: Path | str,
        *,
        sqlite_file_name: str = DEFAULT_SQLITE_FILE_NAME,
    ) -> None:
        self.data_root = _normalize_path(Path(data_root))
        self._sqlite_file_name = str(sqlite_file_name or DEFAULT_SQLITE_FILE_NAME).strip()
        if not self._sqlite_file_name:
            self._sqlite_file_name = DEFAULT_SQLITE_FILE_NAME

    @property
    def storage_file_path(self) -> Path:
        return self.data_root / self._sqlite_file_name

    def list_permits(self) -> list[dict[str, Any]]:
        started_at = perf_counter()
        with self._translate_errors("list"):
            with closing(self._connect()) as connection:
                headers = connection.execute(
                    f"select id, {', '.join(_HEADER_FIELDS)} from {_PERMITS_TABLE} "
                    "order by submission_timestamp desc, document_id desc"
                ).fetchall()
                rows = [self._row_with_personnel(connection, header) for header in headers]
        db_debug(
            "sqlite.list",
            path=str(self.storage_file_path),
            rows=len(rows),
            duration_ms=round((perf_counter() - started_at) * 1000.0, 2),
        )
        return rows

    def fetch_permit(self, document_id: str) -> dict[str, Any] | None:
        with self._translate_errors("fetch"):
            with closing(self._connect()) as connection:
                header = self._fetch_header(connection, document_id)
                if header is None:
                    return None
                return self._row_with_personnel(connection, header)

    def count_permits(self, document_id_prefix: str) -> int:
        with self._translate_errors("count"):
            with closing(self._connect()) as connection:
                row = connection.execute(
                    f"select count(*) from {_PERMITS_TABLE} where substr(document_id, 1, ?) = ?",
                    (len(document_id_prefix), document_id_prefix),
                ).fetchone()
        count = int(row[0]) if row is not None else 0
        db_debug("sqlite.count", prefix=document_id_prefix, count=count)
        return count

    def insert_permit(self, row: Mapping[str, Any]) -> dict[str, Any]:
        document_id = str(row.get("document_id", "") or "")
        started_at = perf_counter()
        with self._translate_errors("insert", document_id=document_id):
            with closing(self._connect()) as connection:
                with connection:
                    cursor = connection.execute(
                        f"insert into {_PERMITS_TABLE} ({', '.join(_HEADER_FIELDS)}) "
                        f"values ({', '.join('?' for _ in _HEADER_FIELDS)})",
                        tuple(str(row.get(name, "") or "") for name in _HEADER_FIELDS),
                    )
                    permit_id = int(cursor.lastrowid or 0)
                    self._insert_personnel(connection, permit_id, row.get("personnel"))
            stored = self.fetch_permit(document_id)
        db_debug(
            "sqlite.insert",
            document_id=document_id,
            personnel=len(stored.get("personnel", [])) if stored else 0,
            duration_ms=round((perf_counter() - started_at) * 1000.0, 2),
        )
        if stored is None:
            raise StoreConnectivityError(f"Inserted work permit {document_id!r} could not be read back.")
        return stored

    def replace_permit(self, document_id: str, row: Mapping[str, Any]) -> dict[str, Any]:
        started_at = perf_counter()
        with self._translate_errors("replace", document_id=document_id):
            with closing(self._connect()) as connection:
                with connection:
                    header = self._fetch_header(connection, document_id)
                    if header is None:
                        raise PermitNotFoundError(document_id)
                    permit_id = int(header["id"])
                    connection.execute(
                        f"update {_PERMITS_TABLE} set "
                        f"{', '.join(f'{name} = ?' for name in _MUTABLE_HEADER_FIELDS)} "
                        "where id = ?",
                        (*(str(row.get(name, "") or "") for name in _MUTABLE_HEADER_FIELDS), permit_id),
                    )
                    connection.execute(
                        f"delete from {_PERSONNEL_TABLE} where permit_id = ?",
                        (permit_id,),
                    )
                    self._insert_personnel(connection, permit_id, row.get("personnel"))
            stored = self.fetch_permit(document_id)
        db_debug(
            "sqlite.replace",
            document_id=document_id,
            personnel=len(stored.get("personnel", [])) if stored else 0,
            duration_ms=round((perf_counter() - started_at) * 1000.0, 2),
        )
        if stored is None:
            raise PermitNotFoundError(document_id)
        return stored

    def _connect(self) -> sqlite3.Connection:
        self.data_root.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(str(self.storage_file_path), timeout=4.0)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("pragma foreign_keys = on")
            self._ensure_schema(connection)
        except sqlite3.Error:
            connection.close()
            raise
        return connection

    def _ensure_schema(self, connection: sqlite3.Connection) -> None:
        connection.executescript(
            f"""
            create table if not exists {_PERMITS_TABLE} (
                id integer primary key autoincrement,
                document_id text not null unique,
                reason text not null,
                entry_date_time text not null,
                equipment_in text not null default '',
                equipment_out text not null default '',
                submission_timestamp text not null
            );
            create table if not exists {_PERSONNEL_TABLE} (
                id integer primary key autoincrement,
                permit_id integer not null references {_PERMITS_TABLE}(id) on delete cascade,
                position integer not null,
                personnel_id text not null,
                type text not null,
                employee_id text not null default '',
                full_name text not null default '',
                company text not null default '',
                national_id text not null default ''
            );
            create index if not exists {_PERSONNEL_TABLE}_permit_idx
                on {_PERSONNEL_TABLE} (permit_id, position);
            """
        )

    def _fetch_header(self, connection: sqlite3.Connection, document_id: str) -> sqlite3.Row | None:
        return connection.execute(
            f"select id, {', '.join(_HEADER_FIELDS)} from {_PERMITS_TABLE} where document_id = ? limit 1",
            (document_id,),
        ).fetchone()

    def _row_with_personnel(self, connection: sqlite3.Connection, header: sqlite3.Row) -> dict[str, Any]:
        row = {name: header[name] for name in _HEADER_FIELDS}
        row["id"] = header["id"]
        personnel = connection.execute(
            f"select {', '.join(_PERSONNEL_FIELDS)} from {_PERSONNEL_TABLE} "
            "where permit_id = ? order by position",
            (header["id"],),
        ).fetchall()
        row["personnel"] = [{name: person[name] for name in _PERSONNEL_FIELDS} for person in personnel]
        return row

    def _insert_personnel(self, connection: sqlite3.Connection, permit_id: int, personnel: Any) -> None:
        rows = personnel if isinstance(personnel, (list, tuple)) else []
        connection.executemany(
            f"insert into {_PERSONNEL_TABLE} (permit_id, position, {', '.join(_PERSONNEL_FIELDS)}) "
            f"values (?, ?, {', '.join('?' for _ in _PERSONNEL_FIELDS)})",
            [
                (permit_id, position, *(str(person.get(name, "") or "") for name in _PERSONNEL_FIELDS))
                for position, person in enumerate(rows)
                if isinstance(person, Mapping)
            ],
        )

    @contextmanager
    def _translate_errors(self, operation: str, *, document_id: str = "") -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            db_debug(
                "sqlite.error",
                operation=operation,
                path=str(self.storage_file_path),
                document_id=document_id,
                error=str(exc),
            )
            if isinstance(exc, sqlite3.IntegrityError):
                raise StoreConstraintError(
                    f"SQLite rejected {operation} of work permit {document_id!r}: {exc}"
                ) from exc
            raise StoreConnectivityError(f"SQLite {operation} failed: {exc}") from exc


class SupabasePermitStore:
    """Work permits in a PostgREST table with personnel as a jsonb column."""

    backend = BACKEND_SUPABASE

    def __init__(self, *, config: SupabasePermitStoreConfig | None = None) -> None:
        self._config = config or SupabasePermitStoreConfig()

    @property
    def config(self) -> SupabasePermitStoreConfig:
        return self._config

    def list_permits(self) -> list[dict[str, Any]]:
        rows = self._request_json(
            method="GET",
            query="?select=*&order=submission_timestamp.desc,document_id.desc",
        )
        if not isinstance(rows, list):
            raise StoreConnectivityError("Supabase returned an unexpected permit list payload.")
        return [_normalize_supabase_row(row) for row in rows if isinstance(row, dict)]

    def fetch_permit(self, document_id: str) -> dict[str, Any] | None:
        rows = self._request_json(
            method="GET",
            query=f"?select=*&document_id=eq.{quote(document_id, safe='-_')}&limit=1",
        )
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            return None
        return _normalize_supabase_row(rows[0])

    def count_permits(self, document_id_prefix: str) -> int:
        pattern = quote(f"{document_id_prefix}*", safe="-_*")
        _status, headers, _body = self._request(
            method="HEAD",
            query=f"?select=id&document_id=like.{pattern}",
            prefer="count=exact",
        )
        count = _parse_content_range_total(headers.get("content-range", ""))
        if count is None:
            raise StoreConnectivityError("Supabase did not report a permit count.")
        db_debug("supabase.count", prefix=document_id_prefix, count=count)
        return count

    def insert_permit(self, row: Mapping[str, Any]) -> dict[str, Any]:
        payload = {name: row.get(name, "") for name in _HEADER_FIELDS}
        payload["personnel"] = _personnel_payload(row.get("personnel"))
        inserted = self._request_json(
            method="POST",
            query="?select=*",
            payload=[payload],
            prefer="return=representation",
        )
        first = _first_row(inserted)
        if first is None:
            raise StoreConnectivityError(
                f"Supabase did not return the inserted work permit {payload['document_id']!r}."
            )
        return _normalize_supabase_row(first)

    def replace_permit(self, document_id: str, row: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {name: row.get(name, "") for name in _MUTABLE_HEADER_FIELDS}
        payload["personnel"] = _personnel_payload(row.get("personnel"))
        patched = self._request_json(
            method="PATCH",
            query=f"?select=*&document_id=eq.{quote(document_id, safe='-_')}",
            payload=payload,
            prefer="return=representation",
        )
        first = _first_row(patched)
        if first is None:
            db_debug("supabase.replace.not_found", document_id=document_id)
            raise PermitNotFoundError(document_id)
        return _normalize_supabase_row(first)

    def _require_config(self) -> SupabasePermitStoreConfig:
        if self._config.configured:
            return self._config
        raise StoreConnectivityError(
            "Supabase backend is selected, but Supabase URL or API key is missing."
        )

    def _request_json(
        self,
        *,
        method: str,
        query: str = "",
        payload: Any | None = None,
        prefer: str = "",
    ) -> Any:
        _status, _headers, body = self._request(
            method=method,
            query=query,
            payload=payload,
            prefer=prefer,
        )
        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except ValueError as exc:
            db_debug(
                "supabase.response.parse_error",
                method=method.upper(),
                body_bytes=len(body),
                error=str(exc),
            )
            raise StoreConnectivityError(
                f"Supabase returned non-JSON payload ({len(body)} bytes)."
            ) from exc

    def _request(
        self,
        *,
        method: str,
        query: str = "",
        payload: Any | None = None,
        prefer: str = "",
    ) -> tuple[int, Mapping[str, str], bytes]:
        config = self._require_config()
        path = f"/rest/v1/{quote(config.table, safe='_')}"
        request_url = f"{config.url.rstrip('/')}{path}{query}"
        request_data: bytes | None = None
        if payload is not None:
            request_data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        db_debug(
            "supabase.request",
            method=method.upper(),
            path=path,
            query_present=bool(query),
            payload_bytes=len(request_data) if request_data is not None else 0,
        )
        headers = {
            "apikey": config.api_key,
            "Authorization": f"Bearer {config.api_key}",
        }
        if config.schema:
            headers["Accept-Profile"] = config.schema
            headers["Content-Profile"] = config.schema
        if payload is not None:
            headers["Content-Type"] = "application/json"
        if prefer:
            headers["Prefer"] = prefer

        request = Request(request_url, data=request_data, headers=headers, method=method.upper())
        started_at = perf_counter()
        try:
            with urlopen(request, timeout=config.timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                response_headers = {key.lower(): value for key, value in response.headers.items()}
                body = response.read()
        except HTTPError as exc:
            detail_body = ""
            try:
                detail_body = exc.read().decode("utf-8", errors="replace").strip()
            except OSError:
                detail_body = ""
            detail = f"{exc.code} {exc.reason}"
            if detail_body:
                detail = f"{detail}: {detail_body}"
            db_debug(
                "supabase.request.error",
                method=method.upper(),
                path=path,
                code=int(exc.code),
                reason=str(exc.reason),
            )
            if _is_postgrest_conflict(exc.code, detail_body):
                raise StoreConstraintError(f"Supabase rejected the write for {path}: {detail}") from exc
            raise StoreConnectivityError(f"Supabase request failed for {path}: {detail}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            db_debug(
                "supabase.request.error",
                method=method.upper(),
                path=path,
                error=str(exc),
            )
            raise StoreConnectivityError(f"Supabase request failed for {path}: {exc}") from exc

        db_debug(
            "supabase.response",
            method=method.upper(),
            path=path,
            status=status_code,
            body_bytes=len(body),
            duration_ms=round((perf_counter() - started_at) * 1000.0, 2),
        )
        return status_code, response_headers, body


def _personnel_payload(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [
        {name: str(person.get(name, "") or "") for name in _PERSONNEL_FIELDS}
        for person in value
        if isinstance(person, Mapping)
    ]


def _normalize_supabase_row(row: Mapping[str, Any]) -> dict[str, Any]:
    normalized = {name: row.get(name) for name in _HEADER_FIELDS}
    normalized["id"] = row.get("id")
    personnel = row.get("personnel")
    if isinstance(personnel, str):
        try:
            personnel = json.loads(personnel)
        except ValueError:
            personnel = []
    normalized["personnel"] = _personnel_payload(personnel)
    return normalized


def _first_row(value: Any) -> dict[str, Any] | None:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return None


def _parse_content_range_total(value: str) -> int | None:
    # "0-24/3573" or "*/0"
    text = str(value or "").strip()
    if "/" not in text:
        return None
    total = text.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return None
    return int(total)


def _is_postgrest_conflict(code: int, body: str) -> bool:
    if int(code) == 409:
        return True
    text = str(body or "").casefold()
    # PostgREST can report unique violations as 400.
    return "duplicate key value" in text or "23505" in text


def create_permit_store(
    backend: str,
    data_root: Path | str,
    *,
    supabase_config: SupabasePermitStoreConfig | None = None,
) -> PermitStore:
    normalized_backend = str(backend or "").strip().lower()
    if normalized_backend == BACKEND_SUPABASE:
        return SupabasePermitStore(config=supabase_config)
    return LocalSqlitePermitStore(data_root)


def _normalize_path(path: Path) -> Path:
    expanded = path.expanduser()
    try:
        return expanded.resolve()
    except OSError:
        return expanded
