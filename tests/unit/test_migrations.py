"""Unit tests for the migration runner."""

import aiosqlite
import pytest

from threadbridge.core.migrations.runner import MIGRATIONS_DIR, discover_migrations, run_pending_migrations

pytestmark = pytest.mark.unit


async def _columns(conn: aiosqlite.Connection, table: str) -> set[str]:
    cursor = await conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in await cursor.fetchall()}


class TestDiscovery:
    def test_bundled_migrations_are_ordered(self):
        names = [path.stem for path in discover_migrations(MIGRATIONS_DIR)]
        assert names == sorted(names)
        assert names[0] == "001_initial_tables"
        assert "runner" not in names

    def test_ignores_unnumbered_files(self, tmp_path):
        (tmp_path / "002_second.py").write_text("async def up(db):\n    pass\n")
        (tmp_path / "001_first.py").write_text("async def up(db):\n    pass\n")
        (tmp_path / "helpers.py").write_text("")
        assert [p.name for p in discover_migrations(tmp_path)] == ["001_first.py", "002_second.py"]


class TestRunner:
    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path):
        async with aiosqlite.connect(tmp_path / "m.db") as conn:
            applied = await run_pending_migrations(conn)
            assert applied == len(discover_migrations(MIGRATIONS_DIR))
            assert await run_pending_migrations(conn) == 0

            cursor = await conn.execute("SELECT COUNT(*) FROM schema_migrations")
            assert (await cursor.fetchone())[0] == applied

    @pytest.mark.asyncio
    async def test_rerun_without_version_rows(self, tmp_path):
        async with aiosqlite.connect(tmp_path / "m.db") as conn:
            applied = await run_pending_migrations(conn)
            await conn.execute(
                "INSERT INTO channel_directories (channel_id, directory, channel_type, app_id) "
                "VALUES ('c1', '/p', 'text', 'a1')"
            )
            await conn.execute("DELETE FROM schema_migrations")
            await conn.commit()

            assert await run_pending_migrations(conn) == applied
            cursor = await conn.execute("SELECT app_id FROM channel_directories WHERE channel_id = 'c1'")
            assert (await cursor.fetchone())[0] == "a1"

    @pytest.mark.asyncio
    async def test_upgrades_legacy_database(self, tmp_path):
        async with aiosqlite.connect(tmp_path / "legacy.db") as conn:
            await conn.execute(
                """
                CREATE TABLE channel_directories (
                    channel_id TEXT PRIMARY KEY,
                    directory TEXT NOT NULL,
                    channel_type TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await conn.execute(
                "INSERT INTO channel_directories (channel_id, directory, channel_type) VALUES ('c1', '/proj', 'text')"
            )
            await conn.commit()

            await run_pending_migrations(conn)

            assert "app_id" in await _columns(conn, "channel_directories")
            assert "finished_at" in await _columns(conn, "scheduled_messages")
            cursor = await conn.execute("SELECT directory, app_id FROM channel_directories WHERE channel_id = 'c1'")
            assert tuple(await cursor.fetchone()) == ("/proj", None)

    @pytest.mark.asyncio
    async def test_missing_up_raises(self, tmp_path):
        (tmp_path / "001_broken.py").write_text("VALUE = 1\n")
        async with aiosqlite.connect(tmp_path / "m.db") as conn:
            with pytest.raises(RuntimeError, match="missing up"):
                await run_pending_migrations(conn, tmp_path)

    @pytest.mark.asyncio
    async def test_applies_only_new_versions(self, tmp_path):
        (tmp_path / "001_create.py").write_text(
            "async def up(db):\n"
            "    await db.execute('CREATE TABLE one (id INTEGER)')\n"
            "    await db.commit()\n"
        )
        async with aiosqlite.connect(tmp_path / "m.db") as conn:
            assert await run_pending_migrations(conn, tmp_path) == 1

            (tmp_path / "002_add.py").write_text(
                "async def up(db):\n"
                "    await db.execute('CREATE TABLE two (id INTEGER)')\n"
                "    await db.commit()\n"
            )
            assert await run_pending_migrations(conn, tmp_path) == 1
            assert await run_pending_migrations(conn, tmp_path) == 0
