"""
数据库管理器测试
"""
from pathlib import Path

from sqlalchemy import inspect, text
from sqlalchemy.dialects import sqlite

from rf_core.database import DatabaseManager, dialect_insert


async def test_check_connection(db_manager):
    assert await db_manager.check_connection() is True


async def test_dialect_insert_matches_backend(db_manager):
    async with db_manager.get_session() as session:
        assert dialect_insert(session) is sqlite.insert


async def test_slow_queries_written_to_rotating_log(settings, tmp_path):
    slow_settings = settings.model_copy(update={
        "slow_query_threshold_ms": 0,
        "db_url": f"sqlite+aiosqlite:///{tmp_path / 'slow.db'}",
    })
    manager = DatabaseManager(slow_settings)
    try:
        async with manager.get_session() as session:
            await session.execute(text("SELECT 1"))
    finally:
        await manager.close()

    log_file = Path(slow_settings.slow_query_log_dir) / "slow.log"
    assert "SELECT 1" in log_file.read_text(encoding="utf-8")


async def test_drop_tables(db_manager):
    await db_manager.drop_tables()

    engine = db_manager.create_async_engine()
    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    assert "returns" not in tables
