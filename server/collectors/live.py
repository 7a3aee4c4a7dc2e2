# server/collectors/live.py
# Read-only introspection run directly against a target, not persisted.
from __future__ import annotations

from db.engine_pool import LiveConnection

EXTENSIONS_SQL = """
    SELECT
        e.extname AS name,
        e.extversion AS version,
        n.nspname AS schema,
        c.description
    FROM pg_extension e
    JOIN pg_namespace n ON n.oid = e.extnamespace
    LEFT JOIN pg_description c ON c.objoid = e.oid
    ORDER BY e.extname
"""

DATABASE_SIZE_SQL = "SELECT pg_size_pretty(pg_database_size(current_database())) AS size"

TABLE_SIZES_SQL = """
    SELECT
        schemaname,
        relname AS table_name,
        pg_size_pretty(pg_total_relation_size(relid)) AS total_size,
        pg_size_pretty(pg_relation_size(relid)) AS table_size,
        pg_size_pretty(pg_total_relation_size(relid) - pg_relation_size(relid)) AS index_size
    FROM pg_stat_user_tables
    ORDER BY pg_total_relation_size(relid) DESC
    LIMIT :limit
"""


async def list_extensions(conn: LiveConnection) -> list[dict]:
    return await conn.fetch_all(EXTENSIONS_SQL)


async def database_size(conn: LiveConnection) -> str:
    size = await conn.fetch_value(DATABASE_SIZE_SQL)
    return size or "Unknown"


async def table_sizes(conn: LiveConnection, limit: int = 20) -> list[dict]:
    return await conn.fetch_all(TABLE_SIZES_SQL, {"limit": limit})
