from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import aiosqlite
from loguru import logger

from errors import NotFoundError, StorageUnavailable, ValidationError
from models import (
    Session,
    SessionCommand,
    SessionOverrides,
    SessionStatus,
    Template,
    TemplateFields,
    TemplateSnapshot,
    apply_command,
    validated,
)
from tools import IdGenerator, TimeTools


class Database:
    """Provides the SQLite connection and schema initialization.

    A ``Database`` is constructed explicitly and handed to every repository
    that needs it. ``open()`` must be awaited before use and ``close()`` when
    done; ``async with Database(path) as db`` does both.
    """

    SCHEMA_VERSION = "2"

    _TABLE_DEFINITIONS = {
        "templates": (
            """CREATE TABLE templates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    sets INTEGER NOT NULL,
                    target_total INTEGER NOT NULL,
                    rest_sec INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );""",
            [
                "id",
                "name",
                "sets",
                "target_total",
                "rest_sec",
                "created_at",
                "updated_at",
            ],
        ),
        "sessions": (
            """CREATE TABLE sessions (
                    id TEXT PRIMARY KEY,
                    template_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    sets INTEGER NOT NULL,
                    target_total INTEGER NOT NULL,
                    rest_sec INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    reps_by_set TEXT NOT NULL DEFAULT '[]',
                    total_reps INTEGER NOT NULL DEFAULT 0,
                    is_achieved INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'in_progress'
                );""",
            [
                "id",
                "template_id",
                "name",
                "sets",
                "target_total",
                "rest_sec",
                "started_at",
                "ended_at",
                "reps_by_set",
                "total_reps",
                "is_achieved",
                "status",
            ],
        ),
        "meta": (
            """CREATE TABLE meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );""",
            ["key", "value"],
        ),
    }

    _INDEX_DEFINITIONS = [
        "CREATE INDEX IF NOT EXISTS idx_sessions_started_at ON sessions (started_at);",
        "CREATE INDEX IF NOT EXISTS idx_sessions_template_id ON sessions (template_id);",
    ]

    def __init__(self, db_path: str = "pullup.db") -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock: asyncio.Lock | None = None

    async def open(self) -> "Database":
        if self._conn is not None:
            return self
        try:
            self._conn = await aiosqlite.connect(self._db_path)
            await self._ensure_schema()
        except sqlite3.Error as e:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
            raise StorageUnavailable(f"cannot open {self._db_path}: {e}") from e
        self._lock = asyncio.Lock()
        logger.info("Opened workout store at {}", self._db_path)
        return self

    async def close(self) -> None:
        if self._conn is None:
            return
        conn = self._conn
        self._conn = None
        self._lock = None
        await conn.close()
        logger.info("Closed workout store at {}", self._db_path)

    async def __aenter__(self) -> "Database":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageUnavailable("database is not open")
        return self._conn

    async def _ensure_schema(self) -> None:
        conn = self._require()
        for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
            await self._ensure_table(conn, table, sql, columns)
        for sql in self._INDEX_DEFINITIONS:
            await conn.execute(sql)
        await conn.execute(
            "INSERT INTO meta (key, value) VALUES ('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (self.SCHEMA_VERSION,),
        )
        await conn.commit()

    async def _ensure_table(
        self, conn: aiosqlite.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = await conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if await cur.fetchone() is None:
            await conn.execute(sql)
            return

        cur = await conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in await cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("Migrating table {} to current columns", table)
        await conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        await conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        await conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "status":
                        if "ended_at" in existing_cols:
                            return "CASE WHEN ended_at IS NULL THEN 'in_progress' ELSE 'completed' END"
                        return "'in_progress'"
                    if col == "reps_by_set":
                        return "'[]'"
                    if col in ("total_reps", "is_achieved"):
                        return "0"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                await conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                await conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        await conn.execute(f"DROP TABLE {table}_old;")

    @asynccontextmanager
    async def transaction(self):
        """Yield the connection inside one committed unit of work.

        Any exception rolls the unit back. SQLite errors surface as
        :class:`StorageUnavailable`.
        """
        conn = self._require()
        async with self._lock:
            try:
                yield conn
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise StorageUnavailable(str(e)) from e
            except BaseException:
                await conn.rollback()
                raise


class AsyncBaseRepository:
    """Base repository running queries on an injected :class:`Database`."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(query, params)
            return list(await cursor.fetchall())


class TemplateRepository(AsyncBaseRepository):
    """Repository for exercise templates."""

    PRESETS = [
        {"id": "tpl_wide", "name": "Pull-ups (wide)", "sets": 5, "target_total": 15, "rest_sec": 90},
        {"id": "tpl_curl", "name": "Arm curl", "sets": 4, "target_total": 40, "rest_sec": 60},
        {"id": "tpl_narrow", "name": "Pull-ups (narrow)", "sets": 4, "target_total": 12, "rest_sec": 90},
        {"id": "tpl_dips", "name": "Dips", "sets": 4, "target_total": 20, "rest_sec": 90},
        {"id": "tpl_v_raise", "name": "V raise", "sets": 3, "target_total": 10, "rest_sec": 60},
    ]
    LEGACY_DEFAULT_NAMES = ("懸垂 7セット", "Pull-ups 7 sets")

    _SELECT = (
        "SELECT id, name, sets, target_total, rest_sec, created_at, updated_at "
        "FROM templates"
    )

    @staticmethod
    def _row_to_template(row: Tuple) -> Template:
        tid, name, sets, target_total, rest_sec, created_at, updated_at = row
        return Template(
            id=tid,
            name=name,
            sets=sets,
            target_total=target_total,
            rest_sec=rest_sec,
            created_at=TimeTools.from_storage(created_at),
            updated_at=TimeTools.from_storage(updated_at),
        )

    @classmethod
    def _preset_position(cls, template_id: str) -> int:
        for pos, preset in enumerate(cls.PRESETS):
            if preset["id"] == template_id:
                return pos
        return len(cls.PRESETS)

    async def list(self) -> List[Template]:
        rows = await self.fetch_all(f"{self._SELECT} ORDER BY created_at, id;")
        templates = [self._row_to_template(r) for r in rows]
        templates.sort(key=lambda t: self._preset_position(t.id))
        return templates

    async def get(self, template_id: str) -> Optional[Template]:
        rows = await self.fetch_all(f"{self._SELECT} WHERE id = ?;", (template_id,))
        return self._row_to_template(rows[0]) if rows else None

    async def create(
        self, name: str, sets: int, target_total: int, rest_sec: int
    ) -> Template:
        fields = validated(
            TemplateFields,
            {
                "name": name,
                "sets": sets,
                "target_total": target_total,
                "rest_sec": rest_sec,
            },
        )
        now = TimeTools.utcnow()
        template = Template(
            id=IdGenerator.template_id(),
            created_at=now,
            updated_at=now,
            **fields.model_dump(),
        )
        await self.execute(
            "INSERT INTO templates (id, name, sets, target_total, rest_sec, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?);",
            (
                template.id,
                template.name,
                template.sets,
                template.target_total,
                template.rest_sec,
                TimeTools.to_storage(template.created_at),
                TimeTools.to_storage(template.updated_at),
            ),
        )
        logger.info("Created template {} ({})", template.id, template.name)
        return template

    async def update(self, template_id: str, **fields) -> Template:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"{self._SELECT} WHERE id = ?;", (template_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"template {template_id} not found")
            current = self._row_to_template(row)
            merged = current.model_dump(include=set(TemplateFields.model_fields))
            merged.update(fields)
            checked = validated(TemplateFields, merged)
            updated = current.model_copy(
                update={**checked.model_dump(), "updated_at": TimeTools.utcnow()}
            )
            await conn.execute(
                "UPDATE templates SET name = ?, sets = ?, target_total = ?, rest_sec = ?, updated_at = ? "
                "WHERE id = ?;",
                (
                    updated.name,
                    updated.sets,
                    updated.target_total,
                    updated.rest_sec,
                    TimeTools.to_storage(updated.updated_at),
                    template_id,
                ),
            )
        return updated

    async def delete(self, template_id: str) -> None:
        await self.execute("DELETE FROM templates WHERE id = ?;", (template_id,))

    async def ensure_default_template(self) -> str:
        """Seed the preset catalog and return the first preset id.

        Presets are inserted only when their id is absent, so calling this on
        every startup keeps user edits. Templates carrying a retired default
        name are removed.
        """
        preset_ids = [p["id"] for p in self.PRESETS]
        async with self.db.transaction() as conn:
            for preset in self.PRESETS:
                cursor = await conn.execute(
                    "SELECT 1 FROM templates WHERE id = ?;", (preset["id"],)
                )
                if await cursor.fetchone() is not None:
                    continue
                now = TimeTools.to_storage(TimeTools.utcnow())
                await conn.execute(
                    "INSERT INTO templates (id, name, sets, target_total, rest_sec, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?);",
                    (
                        preset["id"],
                        preset["name"],
                        preset["sets"],
                        preset["target_total"],
                        preset["rest_sec"],
                        now,
                        now,
                    ),
                )
                logger.info("Seeded preset template {}", preset["id"])
            name_marks = ", ".join("?" for _ in self.LEGACY_DEFAULT_NAMES)
            id_marks = ", ".join("?" for _ in preset_ids)
            cursor = await conn.execute(
                f"DELETE FROM templates WHERE name IN ({name_marks}) AND id NOT IN ({id_marks});",
                (*self.LEGACY_DEFAULT_NAMES, *preset_ids),
            )
            if cursor.rowcount:
                logger.warning("Removed {} legacy default template(s)", cursor.rowcount)
        return preset_ids[0]


class SessionRepository(AsyncBaseRepository):
    """Repository for workout sessions.

    Sessions are indexed by ``started_at`` for ordered history scans and by
    ``template_id`` for per-exercise lookups.
    """

    _COLUMNS = (
        "id, template_id, name, sets, target_total, rest_sec, started_at, "
        "ended_at, reps_by_set, total_reps, is_achieved, status"
    )
    _UPDATABLE = set(Session.model_fields) - {"id"}

    @staticmethod
    def _row_to_session(row: Tuple) -> Session:
        (
            sid,
            template_id,
            name,
            sets,
            target_total,
            rest_sec,
            started_at,
            ended_at,
            reps_by_set,
            total_reps,
            is_achieved,
            status,
        ) = row
        return Session(
            id=sid,
            template_id=template_id,
            template_snapshot=TemplateSnapshot(
                name=name, sets=sets, target_total=target_total, rest_sec=rest_sec
            ),
            started_at=TimeTools.from_storage(started_at),
            ended_at=TimeTools.from_storage(ended_at),
            reps_by_set=json.loads(reps_by_set),
            total_reps=total_reps,
            is_achieved=bool(is_achieved),
            status=SessionStatus(status),
        )

    @staticmethod
    def _session_params(session: Session) -> Tuple:
        snap = session.template_snapshot
        return (
            session.template_id,
            snap.name,
            snap.sets,
            snap.target_total,
            snap.rest_sec,
            TimeTools.to_storage(session.started_at),
            TimeTools.to_storage(session.ended_at) if session.ended_at else None,
            json.dumps(session.reps_by_set),
            session.total_reps,
            int(session.is_achieved),
            session.status.value,
        )

    async def _load(self, conn: aiosqlite.Connection, session_id: str) -> Session:
        cursor = await conn.execute(
            f"SELECT {self._COLUMNS} FROM sessions WHERE id = ?;", (session_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"session {session_id} not found")
        return self._row_to_session(row)

    async def _write(self, conn: aiosqlite.Connection, session: Session) -> None:
        await conn.execute(
            "UPDATE sessions SET template_id = ?, name = ?, sets = ?, target_total = ?, rest_sec = ?, "
            "started_at = ?, ended_at = ?, reps_by_set = ?, total_reps = ?, is_achieved = ?, status = ? "
            "WHERE id = ?;",
            (*self._session_params(session), session.id),
        )

    async def create(
        self,
        template_id: str,
        overrides: SessionOverrides | dict | None = None,
        started_at=None,
    ) -> Session:
        if isinstance(overrides, dict):
            overrides = validated(SessionOverrides, overrides)
        started = started_at or TimeTools.utcnow()
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"{TemplateRepository._SELECT} WHERE id = ?;", (template_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"template {template_id} not found")
            template = TemplateRepository._row_to_template(row)
            session = Session(
                id=IdGenerator.session_id(started),
                template_id=template_id,
                template_snapshot=TemplateSnapshot.from_template(template, overrides),
                started_at=started,
            )
            await conn.execute(
                f"INSERT INTO sessions ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);",
                (session.id, *self._session_params(session)),
            )
        logger.info(
            "Created session {} from template {} ({} sets, {}s rest)",
            session.id,
            template_id,
            session.template_snapshot.sets,
            session.template_snapshot.rest_sec,
        )
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM sessions WHERE id = ?;", (session_id,)
        )
        return self._row_to_session(rows[0]) if rows else None

    async def update(self, session_id: str, **fields) -> Session:
        """Shallow-merge ``fields`` over the stored session.

        Derived rep fields are not recomputed; use :meth:`apply` for rep
        changes. ``status`` follows ``ended_at`` unless given, and a patch
        where the two disagree is rejected.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValidationError(f"unknown session fields: {sorted(unknown)}")
        async with self.db.transaction() as conn:
            current = await self._load(conn, session_id)
            merged = current.model_dump()
            merged.update(fields)
            if "status" not in fields:
                merged["status"] = (
                    SessionStatus.IN_PROGRESS
                    if merged["ended_at"] is None
                    else SessionStatus.COMPLETED
                )
            session = validated(Session, merged)
            if session.is_completed != (session.ended_at is not None):
                raise ValidationError(
                    f"status {session.status.value} disagrees with ended_at"
                )
            await self._write(conn, session)
        return session

    async def apply(self, session_id: str, *commands: SessionCommand) -> Session:
        """Apply update commands in one transaction and return the result."""
        async with self.db.transaction() as conn:
            session = await self._load(conn, session_id)
            for command in commands:
                session = apply_command(session, command)
                logger.debug("Session {}: applied {!r}", session_id, command)
            await self._write(conn, session)
        if session.is_completed:
            logger.debug(
                "Session {} total {} achieved={}",
                session_id,
                session.total_reps,
                session.is_achieved,
            )
        return session

    async def delete(self, session_id: str) -> None:
        await self.execute("DELETE FROM sessions WHERE id = ?;", (session_id,))

    async def list_all(self, limit: int | None = None) -> List[Session]:
        query = f"SELECT {self._COLUMNS} FROM sessions ORDER BY started_at DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            if limit < 0:
                raise ValidationError("limit must be non-negative")
            query += " LIMIT ?"
            params = (limit,)
        rows = await self.fetch_all(query + ";", params)
        return [self._row_to_session(r) for r in rows]

    async def list_for_template(self, template_id: str) -> List[Session]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM sessions WHERE template_id = ?;",
            (template_id,),
        )
        sessions = [self._row_to_session(r) for r in rows]
        sessions.sort(key=lambda s: (s.started_at, s.id), reverse=True)
        return sessions

    async def last_for_template(
        self, template_id: str, exclude_id: str | None = None
    ) -> Optional[Session]:
        """Return the latest completed session for ``template_id``.

        Falls back to the latest session of any state when none has been
        completed.
        """
        sessions = [
            s for s in await self.list_for_template(template_id) if s.id != exclude_id
        ]
        if not sessions:
            return None
        for session in sessions:
            if session.is_completed:
                return session
        return sessions[0]


class MetaRepository(AsyncBaseRepository):
    """Small key/value store for application metadata."""

    async def get(self, key: str) -> Optional[str]:
        rows = await self.fetch_all("SELECT value FROM meta WHERE key = ?;", (key,))
        return rows[0][0] if rows else None

    async def set(self, key: str, value: str) -> None:
        await self.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (key, str(value)),
        )

    async def delete(self, key: str) -> None:
        await self.execute("DELETE FROM meta WHERE key = ?;", (key,))
