from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from servicehub.models import (
    Category,
    HealthRecord,
    InfoRecord,
    Service,
    ServiceWithDetails,
    StreamsRecord,
    User,
)
from servicehub.store.base import (
    SERVICE_PATCH_FIELDS,
    USER_PATCH_FIELDS,
    ConflictError,
    MissingReferenceError,
    RecordStore,
    category_filter,
    clean_patch,
    new_id,
    utc_ts,
)


SCHEMA_VERSION = 1


def _json_dumps(obj: Any) -> str | None:
    if obj is None:
        return None
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # WAL lets the API read while the reconciliation cycle writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS categories (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL UNIQUE,
          description TEXT,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS services (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          grp TEXT NOT NULL DEFAULT '',
          category_id TEXT REFERENCES categories(id) ON DELETE SET NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_services_category ON services(category_id);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS health_records (
          id TEXT PRIMARY KEY,
          service_id TEXT NOT NULL UNIQUE REFERENCES services(id) ON DELETE CASCADE,
          status TEXT NOT NULL,
          components_json TEXT,
          last_checked_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS info_records (
          id TEXT PRIMARY KEY,
          service_id TEXT NOT NULL UNIQUE REFERENCES services(id) ON DELETE CASCADE,
          version TEXT,
          branch TEXT,
          build_time TEXT,
          last_updated_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS streams_records (
          id TEXT PRIMARY KEY,
          service_id TEXT NOT NULL UNIQUE REFERENCES services(id) ON DELETE CASCADE,
          state TEXT,
          threads TEXT,
          topics TEXT,
          partitions TEXT,
          last_updated_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          email TEXT NOT NULL UNIQUE,
          display_name TEXT,
          role TEXT NOT NULL,
          token_hash TEXT NOT NULL UNIQUE,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_categories (
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
          PRIMARY KEY (user_id, category_id)
        );
        """
    )


def _category_from_row(r: sqlite3.Row, prefix: str = "") -> Category:
    return Category(
        id=str(r[f"{prefix}id"]),
        name=str(r[f"{prefix}name"]),
        description=r[f"{prefix}description"],
        created_at_ts=float(r[f"{prefix}created_at_ts"]),
    )


def _service_from_row(r: sqlite3.Row) -> Service:
    return Service(
        id=str(r["id"]),
        name=str(r["name"]),
        url=str(r["url"]),
        group=str(r["grp"] or ""),
        category_id=r["category_id"],
        created_at_ts=float(r["created_at_ts"]),
        updated_at_ts=float(r["updated_at_ts"]),
    )


def _health_from_row(r: sqlite3.Row, prefix: str = "") -> HealthRecord:
    return HealthRecord(
        id=str(r[f"{prefix}id"]),
        service_id=str(r[f"{prefix}service_id"]),
        status=str(r[f"{prefix}status"]),
        components=_json_loads(r[f"{prefix}components_json"]),
        last_checked_ts=float(r[f"{prefix}last_checked_ts"]),
    )


def _info_from_row(r: sqlite3.Row, prefix: str = "") -> InfoRecord:
    return InfoRecord(
        id=str(r[f"{prefix}id"]),
        service_id=str(r[f"{prefix}service_id"]),
        version=r[f"{prefix}version"],
        branch=r[f"{prefix}branch"],
        build_time=r[f"{prefix}build_time"],
        last_updated_ts=float(r[f"{prefix}last_updated_ts"]),
    )


def _streams_from_row(r: sqlite3.Row, prefix: str = "") -> StreamsRecord:
    return StreamsRecord(
        id=str(r[f"{prefix}id"]),
        service_id=str(r[f"{prefix}service_id"]),
        state=r[f"{prefix}state"],
        threads=r[f"{prefix}threads"],
        topics=r[f"{prefix}topics"],
        partitions=r[f"{prefix}partitions"],
        last_updated_ts=float(r[f"{prefix}last_updated_ts"]),
    )


_DETAILS_SELECT = """
    SELECT
      s.*,
      h.id AS h_id, h.service_id AS h_service_id, h.status AS h_status,
      h.components_json AS h_components_json, h.last_checked_ts AS h_last_checked_ts,
      i.id AS i_id, i.service_id AS i_service_id, i.version AS i_version, i.branch AS i_branch,
      i.build_time AS i_build_time, i.last_updated_ts AS i_last_updated_ts,
      k.id AS k_id, k.service_id AS k_service_id, k.state AS k_state, k.threads AS k_threads,
      k.topics AS k_topics, k.partitions AS k_partitions, k.last_updated_ts AS k_last_updated_ts,
      c.id AS c_id, c.name AS c_name, c.description AS c_description, c.created_at_ts AS c_created_at_ts
    FROM services s
    LEFT JOIN health_records h ON h.service_id = s.id
    LEFT JOIN info_records i ON i.service_id = s.id
    LEFT JOIN streams_records k ON k.service_id = s.id
    LEFT JOIN categories c ON c.id = s.category_id
"""


def _details_from_row(r: sqlite3.Row) -> ServiceWithDetails:
    return ServiceWithDetails(
        service=_service_from_row(r),
        health=_health_from_row(r, "h_") if r["h_id"] is not None else None,
        info=_info_from_row(r, "i_") if r["i_id"] is not None else None,
        streams=_streams_from_row(r, "k_") if r["k_id"] is not None else None,
        category=_category_from_row(r, "c_") if r["c_id"] is not None else None,
    )


def _in_clause(values: Iterable[str]) -> tuple[str, list[str]]:
    vals = sorted(values)
    return ",".join("?" for _ in vals), vals


class SqliteStore(RecordStore):
    """
    SQLite-backed record store.

    One short-lived connection per call. Writes that read-then-write run inside
    BEGIN IMMEDIATE so concurrent cycles and API calls serialize on the db lock.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
        finally:
            conn.close()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
                conn.execute("COMMIT;")
            except Exception:
                conn.execute("ROLLBACK;")
                raise

    # -----------------
    # Categories
    # -----------------
    def create_category(self, *, name: str, description: str | None = None) -> Category:
        category = Category(id=new_id(), name=name.strip(), description=description, created_at_ts=utc_ts())
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT INTO categories (id, name, description, created_at_ts) VALUES (?, ?, ?, ?)",
                    (category.id, category.name, category.description, category.created_at_ts),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"category_exists: {category.name}") from e
        return category

    def get_category(self, category_id: str) -> Category | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM categories WHERE id=?", (category_id,)).fetchone()
        return _category_from_row(r) if r else None

    def list_categories(self) -> list[Category]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM categories ORDER BY name ASC").fetchall()
        return [_category_from_row(r) for r in rows]

    def delete_category(self, category_id: str) -> bool:
        # services.category_id is nulled and user_categories rows cascade.
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM categories WHERE id=?", (category_id,))
            return int(cur.rowcount or 0) > 0

    @staticmethod
    def _require_categories(conn: sqlite3.Connection, category_ids: Iterable[str | None]) -> None:
        for cid in category_ids:
            if cid is None:
                continue
            if conn.execute("SELECT 1 FROM categories WHERE id=?", (cid,)).fetchone() is None:
                raise MissingReferenceError(f"unknown_category: {cid}")

    # -----------------
    # Services
    # -----------------
    def create_service(self, *, name: str, url: str, group: str = "", category_id: str | None = None) -> Service:
        now = utc_ts()
        service = Service(
            id=new_id(),
            name=name.strip(),
            url=url.strip(),
            group=(group or "").strip(),
            category_id=category_id,
            created_at_ts=now,
            updated_at_ts=now,
        )
        with self._tx() as conn:
            self._require_categories(conn, [category_id])
            conn.execute(
                """
                INSERT INTO services (id, name, url, grp, category_id, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (service.id, service.name, service.url, service.group, service.category_id, now, now),
            )
        return service

    def get_service(self, service_id: str) -> Service | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM services WHERE id=?", (service_id,)).fetchone()
        return _service_from_row(r) if r else None

    def list_services(self, category_ids: Iterable[str] | None = None) -> list[Service]:
        allowed = category_filter(category_ids)
        if allowed is not None and not allowed:
            return []
        sql = "SELECT * FROM services"
        params: list[Any] = []
        if allowed is not None:
            marks, params = _in_clause(allowed)
            sql += f" WHERE category_id IN ({marks})"
        sql += " ORDER BY created_at_ts ASC, rowid ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_service_from_row(r) for r in rows]

    def update_service(self, service_id: str, patch: dict[str, Any]) -> Service | None:
        cleaned = clean_patch(patch, SERVICE_PATCH_FIELDS)
        sets: list[str] = []
        params: list[Any] = []
        for key, col in (("name", "name"), ("url", "url"), ("group", "grp")):
            if cleaned.get(key) is not None:
                sets.append(f"{col}=?")
                params.append(str(cleaned[key]).strip())

        with self._tx() as conn:
            if conn.execute("SELECT 1 FROM services WHERE id=?", (service_id,)).fetchone() is None:
                return None
            if "category_id" in cleaned:
                self._require_categories(conn, [cleaned["category_id"]])
                sets.append("category_id=?")
                params.append(cleaned["category_id"])
            if sets:
                sets.append("updated_at_ts=?")
                params.append(utc_ts())
                conn.execute(f"UPDATE services SET {', '.join(sets)} WHERE id=?", (*params, service_id))
            r = conn.execute("SELECT * FROM services WHERE id=?", (service_id,)).fetchone()
        return _service_from_row(r)

    def delete_service(self, service_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM services WHERE id=?", (service_id,))
            return int(cur.rowcount or 0) > 0

    # -----------------
    # Latest-state records
    # -----------------
    def _upsert(self, conn: sqlite3.Connection, sql: str, params: tuple[Any, ...], service_id: str) -> bool:
        if conn.execute("SELECT 1 FROM services WHERE id=?", (service_id,)).fetchone() is None:
            return False
        conn.execute(sql, params)
        return True

    def upsert_health(
        self,
        service_id: str,
        *,
        status: str,
        components: Any = None,
        observed_at_ts: float | None = None,
    ) -> HealthRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._tx() as conn:
            ok = self._upsert(
                conn,
                """
                INSERT INTO health_records (id, service_id, status, components_json, last_checked_ts)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(service_id) DO UPDATE SET
                  status=excluded.status,
                  components_json=excluded.components_json,
                  last_checked_ts=excluded.last_checked_ts
                WHERE excluded.last_checked_ts >= health_records.last_checked_ts
                """,
                (new_id(), service_id, status, _json_dumps(components), ts),
                service_id,
            )
            if not ok:
                return None
            r = conn.execute("SELECT * FROM health_records WHERE service_id=?", (service_id,)).fetchone()
        return _health_from_row(r)

    def upsert_info(
        self,
        service_id: str,
        *,
        version: str | None,
        branch: str | None,
        build_time: str | None,
        observed_at_ts: float | None = None,
    ) -> InfoRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._tx() as conn:
            ok = self._upsert(
                conn,
                """
                INSERT INTO info_records (id, service_id, version, branch, build_time, last_updated_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(service_id) DO UPDATE SET
                  version=excluded.version,
                  branch=excluded.branch,
                  build_time=excluded.build_time,
                  last_updated_ts=excluded.last_updated_ts
                WHERE excluded.last_updated_ts >= info_records.last_updated_ts
                """,
                (new_id(), service_id, version, branch, build_time, ts),
                service_id,
            )
            if not ok:
                return None
            r = conn.execute("SELECT * FROM info_records WHERE service_id=?", (service_id,)).fetchone()
        return _info_from_row(r)

    def upsert_streams(
        self,
        service_id: str,
        *,
        state: str | None,
        threads: str | None,
        topics: str | None,
        partitions: str | None,
        observed_at_ts: float | None = None,
    ) -> StreamsRecord | None:
        ts = utc_ts() if observed_at_ts is None else float(observed_at_ts)
        with self._tx() as conn:
            ok = self._upsert(
                conn,
                """
                INSERT INTO streams_records (id, service_id, state, threads, topics, partitions, last_updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(service_id) DO UPDATE SET
                  state=excluded.state,
                  threads=excluded.threads,
                  topics=excluded.topics,
                  partitions=excluded.partitions,
                  last_updated_ts=excluded.last_updated_ts
                WHERE excluded.last_updated_ts >= streams_records.last_updated_ts
                """,
                (new_id(), service_id, state, threads, topics, partitions, ts),
                service_id,
            )
            if not ok:
                return None
            r = conn.execute("SELECT * FROM streams_records WHERE service_id=?", (service_id,)).fetchone()
        return _streams_from_row(r)

    def get_health(self, service_id: str) -> HealthRecord | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM health_records WHERE service_id=?", (service_id,)).fetchone()
        return _health_from_row(r) if r else None

    def get_info(self, service_id: str) -> InfoRecord | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM info_records WHERE service_id=?", (service_id,)).fetchone()
        return _info_from_row(r) if r else None

    def get_streams(self, service_id: str) -> StreamsRecord | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM streams_records WHERE service_id=?", (service_id,)).fetchone()
        return _streams_from_row(r) if r else None

    # -----------------
    # Combined reads (single joined query)
    # -----------------
    def get_service_with_details(
        self, service_id: str, *, category_ids: Iterable[str] | None = None
    ) -> ServiceWithDetails | None:
        allowed = category_filter(category_ids)
        with self._conn() as conn:
            r = conn.execute(_DETAILS_SELECT + " WHERE s.id=?", (service_id,)).fetchone()
        if r is None:
            return None
        details = _details_from_row(r)
        if allowed is not None and details.service.category_id not in allowed:
            return None
        return details

    def list_services_with_details(self, category_ids: Iterable[str] | None = None) -> list[ServiceWithDetails]:
        allowed = category_filter(category_ids)
        if allowed is not None and not allowed:
            return []
        sql = _DETAILS_SELECT
        params: list[Any] = []
        if allowed is not None:
            marks, params = _in_clause(allowed)
            sql += f" WHERE s.category_id IN ({marks})"
        sql += " ORDER BY s.created_at_ts ASC, s.rowid ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_details_from_row(r) for r in rows]

    # -----------------
    # Users
    # -----------------
    @staticmethod
    def _user_categories(conn: sqlite3.Connection, user_id: str) -> tuple[str, ...]:
        rows = conn.execute(
            "SELECT category_id FROM user_categories WHERE user_id=? ORDER BY rowid ASC", (user_id,)
        ).fetchall()
        return tuple(str(r["category_id"]) for r in rows)

    def _user_from_row(self, conn: sqlite3.Connection, r: sqlite3.Row) -> User:
        return User(
            id=str(r["id"]),
            email=str(r["email"]),
            display_name=r["display_name"],
            role=str(r["role"]),
            category_ids=self._user_categories(conn, str(r["id"])),
            created_at_ts=float(r["created_at_ts"]),
        )

    def create_user(
        self,
        *,
        email: str,
        role: str,
        token_hash: str,
        display_name: str | None = None,
        category_ids: Iterable[str] = (),
    ) -> User:
        user_id = new_id()
        clean_email = email.strip().lower()
        cats = tuple(dict.fromkeys(category_ids))
        now = utc_ts()
        try:
            with self._tx() as conn:
                self._require_categories(conn, cats)
                conn.execute(
                    """
                    INSERT INTO users (id, email, display_name, role, token_hash, created_at_ts)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, clean_email, display_name, role, token_hash, now),
                )
                conn.executemany(
                    "INSERT INTO user_categories (user_id, category_id) VALUES (?, ?)",
                    [(user_id, cid) for cid in cats],
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"user_exists: {clean_email}") from e
        return User(
            id=user_id,
            email=clean_email,
            display_name=display_name,
            role=role,
            category_ids=cats,
            created_at_ts=now,
        )

    def get_user(self, user_id: str) -> User | None:
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
            return self._user_from_row(conn, r) if r else None

    def get_user_by_token_hash(self, token_hash: str) -> User | None:
        if not token_hash:
            return None
        with self._conn() as conn:
            r = conn.execute("SELECT * FROM users WHERE token_hash=?", (token_hash,)).fetchone()
            return self._user_from_row(conn, r) if r else None

    def list_users(self) -> list[User]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at_ts ASC, rowid ASC").fetchall()
            return [self._user_from_row(conn, r) for r in rows]

    def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None:
        cleaned = {k: v for k, v in clean_patch(patch, USER_PATCH_FIELDS).items() if v is not None}
        if "email" in cleaned:
            cleaned["email"] = str(cleaned["email"]).strip().lower()
        try:
            with self._tx() as conn:
                if conn.execute("SELECT 1 FROM users WHERE id=?", (user_id,)).fetchone() is None:
                    return None
                if cleaned:
                    sets = ", ".join(f"{k}=?" for k in cleaned)
                    conn.execute(f"UPDATE users SET {sets} WHERE id=?", (*cleaned.values(), user_id))
                r = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
                return self._user_from_row(conn, r)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"user_exists: {cleaned.get('email')}") from e

    def delete_user(self, user_id: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM users WHERE id=?", (user_id,))
            return int(cur.rowcount or 0) > 0

    def set_user_categories(self, user_id: str, category_ids: Iterable[str]) -> bool:
        cats = tuple(dict.fromkeys(category_ids))
        with self._tx() as conn:
            if conn.execute("SELECT 1 FROM users WHERE id=?", (user_id,)).fetchone() is None:
                return False
            self._require_categories(conn, cats)
            conn.execute("DELETE FROM user_categories WHERE user_id=?", (user_id,))
            conn.executemany(
                "INSERT INTO user_categories (user_id, category_id) VALUES (?, ?)",
                [(user_id, cid) for cid in cats],
            )
            return True
