from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import aiosqlite

from productive_resolve.db import Database, now_ms
from productive_resolve.models import REFERENCE_KINDS, ReferenceKind, ReferenceRow


logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 60 * 60 * 1000


def _attr(record: Mapping[str, Any], name: str) -> Any:
    attributes = record.get("attributes")
    if isinstance(attributes, Mapping):
        return attributes.get(name)
    return None


def _rel_id(record: Mapping[str, Any], name: str) -> str | None:
    relationships = record.get("relationships")
    if not isinstance(relationships, Mapping):
        return None
    rel = relationships.get(name)
    if not isinstance(rel, Mapping):
        return None
    data = rel.get("data")
    if isinstance(data, Mapping) and data.get("id") is not None:
        return str(data["id"])
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _project_columns(record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": _text(_attr(record, "name")) or "",
        "project_number": _text(_attr(record, "project_number")),
        "archived": 1 if _attr(record, "archived") or _attr(record, "archived_at") else 0,
        "company_id": _rel_id(record, "company"),
    }


def _person_columns(record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "first_name": _text(_attr(record, "first_name")) or "",
        "last_name": _text(_attr(record, "last_name")) or "",
        "email": _text(_attr(record, "email")),
        "active": 0 if _attr(record, "active") is False else 1,
        "company_id": _rel_id(record, "company"),
    }


def _service_columns(record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": _text(_attr(record, "name")) or "",
        "project_id": _rel_id(record, "project"),
        "deal_id": _rel_id(record, "deal"),
    }


def _company_columns(record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": _text(_attr(record, "name")) or "",
        "billing_name": _text(_attr(record, "billing_name")),
    }


def _deal_columns(record: Mapping[str, Any]) -> dict[str, Any]:
    number = _attr(record, "deal_number")
    if number is None:
        number = _attr(record, "number")
    return {
        "name": _text(_attr(record, "name")) or "",
        "deal_number": _text(number),
        "company_id": _rel_id(record, "company"),
        "project_id": _rel_id(record, "project"),
    }


@dataclass(frozen=True)
class KindSpec:
    table: str
    columns: tuple[str, ...]
    # SQL expressions matched with LIKE; the first ones win the prefix ordering.
    search: tuple[str, ...]
    order_by: tuple[str, ...]
    unique: str | None
    extract: Callable[[Mapping[str, Any]], dict[str, Any]]


KIND_SPECS: dict[ReferenceKind, KindSpec] = {
    "projects": KindSpec(
        table="projects",
        columns=("name", "project_number", "archived", "company_id"),
        search=("name", "project_number"),
        order_by=("name",),
        unique="project_number",
        extract=_project_columns,
    ),
    "people": KindSpec(
        table="people",
        columns=("first_name", "last_name", "email", "active", "company_id"),
        search=("first_name", "last_name", "email", "first_name || ' ' || last_name"),
        order_by=("first_name", "last_name"),
        unique="email",
        extract=_person_columns,
    ),
    "services": KindSpec(
        table="services",
        columns=("name", "project_id", "deal_id"),
        search=("name",),
        order_by=("name",),
        unique=None,
        extract=_service_columns,
    ),
    "companies": KindSpec(
        table="companies",
        columns=("name", "billing_name"),
        search=("name", "billing_name"),
        order_by=("name",),
        unique=None,
        extract=_company_columns,
    ),
    "deals": KindSpec(
        table="deals",
        columns=("name", "deal_number", "company_id", "project_id"),
        search=("name", "deal_number"),
        order_by=("name",),
        unique="deal_number",
        extract=_deal_columns,
    ),
}


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ReferenceCache:
    """
    Durable mirror of reference entities for one tenant.

    Rows are written whole: an upsert replaces every searchable column, the raw
    JSON:API payload and `synced_at`.
    """

    def __init__(self, db: Database, *, clock: Callable[[], int] = now_ms) -> None:
        self.db = db
        self._clock = clock

    @staticmethod
    def spec(kind: ReferenceKind) -> KindSpec:
        spec = KIND_SPECS.get(kind)
        if spec is None:
            raise ValueError(f"Unknown reference kind: {kind}")
        return spec

    async def upsert(self, kind: ReferenceKind, records: Iterable[Mapping[str, Any]]) -> int:
        spec = self.spec(kind)
        now = self._clock()
        names = ("id", *spec.columns, "data", "synced_at")
        placeholders = ", ".join("?" for _ in names)
        sql = f"INSERT OR REPLACE INTO {spec.table} ({', '.join(names)}) VALUES ({placeholders})"

        written = 0
        for record in records:
            rid = record.get("id")
            if rid is None or str(rid) == "":
                continue
            columns = spec.extract(record)
            values = (
                str(rid),
                *(columns[name] for name in spec.columns),
                json.dumps(dict(record), separators=(",", ":"), ensure_ascii=False),
                now,
            )
            await self.db.conn.execute(sql, values)
            written += 1
        await self.db.commit()
        if written:
            logger.debug("upserted %d %s", written, kind)
        return written

    async def upsert_projects(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.upsert("projects", records)

    async def upsert_people(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.upsert("people", records)

    async def upsert_services(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.upsert("services", records)

    async def upsert_companies(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.upsert("companies", records)

    async def upsert_deals(self, records: Iterable[Mapping[str, Any]]) -> int:
        return await self.upsert("deals", records)

    def _select(self, spec: KindSpec) -> str:
        return f"SELECT id, {', '.join(spec.columns)}, data, synced_at FROM {spec.table}"

    def _order(self, spec: KindSpec) -> str:
        return ", ".join(f"{col} COLLATE NOCASE" for col in spec.order_by) + ", id"

    @staticmethod
    def _row(kind: ReferenceKind, spec: KindSpec, row: Any) -> ReferenceRow:
        columns = {name: row[i + 1] for i, name in enumerate(spec.columns)}
        data_text = row[len(spec.columns) + 1]
        try:
            data = json.loads(data_text)
        except (TypeError, ValueError):
            data = {}
        return ReferenceRow(
            kind=kind,
            id=str(row[0]),
            columns=columns,
            data=data if isinstance(data, dict) else {},
            synced_at=int(row[len(spec.columns) + 2]),
        )

    async def _fetch(self, kind: ReferenceKind, sql: str, params: tuple[Any, ...]) -> list[ReferenceRow]:
        spec = self.spec(kind)
        async with self.db.conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row(kind, spec, row) for row in rows]

    async def search(
        self,
        kind: ReferenceKind,
        term: str,
        limit: int = 50,
        *,
        where: Mapping[str, str] | None = None,
        max_age_ms: int | None = None,
    ) -> list[ReferenceRow]:
        """
        Case-insensitive substring search over the kind's searchable columns.

        Rows whose searchable text starts with `term` come first, then the rest
        in lexical order of the display columns. `where` restricts candidates by
        exact column values (e.g. services of one project); `max_age_ms` drops
        rows not refreshed within that window.
        """
        spec = self.spec(kind)
        escaped = _escape_like(term.strip())
        contains = f"%{escaped}%"
        prefix = f"{escaped}%"

        match_sql = " OR ".join(f"{expr} LIKE ? ESCAPE '\\'" for expr in spec.search)
        prefix_sql = " OR ".join(f"{expr} LIKE ? ESCAPE '\\'" for expr in spec.search)
        clauses = [f"({match_sql})"]
        params: list[Any] = [contains] * len(spec.search)
        for column, value in (where or {}).items():
            if column not in spec.columns:
                raise ValueError(f"Unknown column for {kind}: {column}")
            clauses.append(f"{column} = ?")
            params.append(value)
        if max_age_ms is not None:
            clauses.append("synced_at >= ?")
            params.append(self._clock() - max_age_ms)

        sql = (
            f"{self._select(spec)} WHERE {' AND '.join(clauses)} "
            f"ORDER BY CASE WHEN ({prefix_sql}) THEN 0 ELSE 1 END, {self._order(spec)} "
            "LIMIT ?"
        )
        params.extend([prefix] * len(spec.search))
        params.append(max(0, int(limit)))
        return await self._fetch(kind, sql, tuple(params))

    def _age_clause(self, max_age_ms: int | None) -> tuple[str, tuple[Any, ...]]:
        if max_age_ms is None:
            return "", ()
        return " AND synced_at >= ?", (self._clock() - max_age_ms,)

    async def find_by_unique(
        self,
        kind: ReferenceKind,
        value: str,
        *,
        max_age_ms: int | None = None,
    ) -> list[ReferenceRow]:
        spec = self.spec(kind)
        if not spec.unique:
            raise ValueError(f"{kind} has no unique lookup column")
        age_sql, age_params = self._age_clause(max_age_ms)
        sql = f"{self._select(spec)} WHERE {spec.unique} = ? COLLATE NOCASE{age_sql} ORDER BY id"
        return await self._fetch(kind, sql, (value.strip(), *age_params))

    async def list_by(
        self,
        kind: ReferenceKind,
        column: str,
        value: str,
        *,
        max_age_ms: int | None = None,
    ) -> list[ReferenceRow]:
        spec = self.spec(kind)
        if column not in spec.columns:
            raise ValueError(f"Unknown column for {kind}: {column}")
        age_sql, age_params = self._age_clause(max_age_ms)
        sql = f"{self._select(spec)} WHERE {column} = ?{age_sql} ORDER BY {self._order(spec)}"
        return await self._fetch(kind, sql, (value, *age_params))

    async def services_by_project(self, project_id: str) -> list[ReferenceRow]:
        return await self.list_by("services", "project_id", project_id)

    async def get(self, kind: ReferenceKind, rid: str) -> ReferenceRow | None:
        spec = self.spec(kind)
        rows = await self._fetch(kind, f"{self._select(spec)} WHERE id = ?", (rid,))
        return rows[0] if rows else None

    async def all(self, kind: ReferenceKind) -> list[ReferenceRow]:
        spec = self.spec(kind)
        return await self._fetch(kind, f"{self._select(spec)} ORDER BY {self._order(spec)}", ())

    async def sync_time(self, kind: ReferenceKind) -> int | None:
        spec = self.spec(kind)
        async with self.db.conn.execute(f"SELECT MAX(synced_at) FROM {spec.table}") as cursor:
            row = await cursor.fetchone()
        if not row or row[0] is None:
            return None
        return int(row[0])

    async def is_cache_valid(self, kind: ReferenceKind, max_age_ms: int) -> bool:
        synced_at = await self.sync_time(kind)
        if synced_at is None:
            return False
        return self._clock() - synced_at <= max_age_ms

    @staticmethod
    def _full_sync_key(kind: ReferenceKind, scope: str | None) -> str:
        return f"full_sync:{kind}" if scope is None else f"full_sync:{kind}:{scope}"

    async def mark_full_sync(self, kind: ReferenceKind, *, scope: str | None = None) -> None:
        """Record that every record of `kind` (or of one `scope`, e.g. `project:12`) was just fetched."""
        self.spec(kind)
        await self.db.set_meta(self._full_sync_key(kind, scope), str(self._clock()))

    async def full_sync_time(self, kind: ReferenceKind, *, scope: str | None = None) -> int | None:
        value = await self.db.get_meta(self._full_sync_key(kind, scope))
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    async def is_mirror_complete(self, kind: ReferenceKind, max_age_ms: int, *, scope: str | None = None) -> bool:
        """True when a full fetch of `kind` (or `scope`) finished within `max_age_ms`."""
        synced_at = await self.full_sync_time(kind, scope=scope)
        if synced_at is None:
            return False
        return self._clock() - synced_at <= max_age_ms

    async def stats(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for kind in REFERENCE_KINDS:
            async with self.db.conn.execute(f"SELECT COUNT(*) FROM {KIND_SPECS[kind].table}") as cursor:
                row = await cursor.fetchone()
            out[kind] = int(row[0]) if row and row[0] is not None else 0
        out["db_size_bytes"] = self.db.file_size()
        return out

    async def clear(self) -> None:
        """Wipe every reference table together with the query cache and refresh queue."""
        tables = [KIND_SPECS[kind].table for kind in REFERENCE_KINDS]
        tables.extend(["cache", "refresh_queue", "_meta"])
        deletes = "".join(f"DELETE FROM {table};\n" for table in tables)
        # executescript commits pending statements first; the wipe itself is one transaction.
        try:
            await self.db.conn.executescript(f"BEGIN IMMEDIATE;\n{deletes}COMMIT;")
        except aiosqlite.Error:
            if self.db.conn.in_transaction:
                await self.db.conn.rollback()
            raise
        try:
            await self.db.conn.execute("VACUUM")
        except aiosqlite.OperationalError as exc:
            logger.debug("vacuum skipped: %s", exc)
