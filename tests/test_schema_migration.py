import os
import sqlite3
import sys
import asyncio

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import Database, SessionRepository
from models import SessionStatus


def open_and_close(path: str) -> None:
    async def run() -> None:
        async with Database(path):
            pass

    asyncio.run(run())


class TestSchemaMigration:
    def test_drops_existing_backup_table(self, tmp_path):
        db_file = tmp_path / "test.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE templates (id TEXT PRIMARY KEY, name TEXT, sets INTEGER, target_total INTEGER, rest_sec INTEGER, created_at TEXT)"
        )
        conn.execute("CREATE TABLE templates_old (id TEXT)")
        conn.commit()
        conn.close()

        open_and_close(str(db_file))

        conn = sqlite3.connect(str(db_file))
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='templates_old'"
        )
        assert cur.fetchone() is None
        cur = conn.execute("PRAGMA table_info(templates)")
        cols = [row[1] for row in cur.fetchall()]
        assert "updated_at" in cols
        conn.close()

    def test_sessions_gain_status_from_end_time(self, tmp_path):
        db_file = tmp_path / "old.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE sessions (id TEXT PRIMARY KEY, template_id TEXT NOT NULL, name TEXT NOT NULL, sets INTEGER NOT NULL, target_total INTEGER NOT NULL, rest_sec INTEGER NOT NULL, started_at TEXT NOT NULL, ended_at TEXT, reps_by_set TEXT NOT NULL, total_reps INTEGER NOT NULL, is_achieved INTEGER NOT NULL)"
        )
        conn.execute(
            "INSERT INTO sessions VALUES ('ses_done', 'tpl_a', 'Dips', 2, 10, 60, '2024-01-01T09:00:00.000000+00:00', '2024-01-01T09:20:00.000000+00:00', '[6, 5]', 11, 1)"
        )
        conn.execute(
            "INSERT INTO sessions VALUES ('ses_open', 'tpl_a', 'Dips', 2, 10, 60, '2024-01-02T09:00:00.000000+00:00', NULL, '[4]', 4, 0)"
        )
        conn.commit()
        conn.close()

        async def load():
            async with Database(str(db_file)) as db:
                repo = SessionRepository(db)
                return await repo.get("ses_done"), await repo.get("ses_open")

        done, open_ = asyncio.run(load())
        assert done.status is SessionStatus.COMPLETED
        assert done.reps_by_set == [6, 5]
        assert done.is_achieved is True
        assert open_.status is SessionStatus.IN_PROGRESS
        assert open_.ended_at is None

        conn = sqlite3.connect(str(db_file))
        version = conn.execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ).fetchone()[0]
        conn.close()
        assert version == Database.SCHEMA_VERSION
