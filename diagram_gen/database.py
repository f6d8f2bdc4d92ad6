import json

import aiosqlite

from diagram_gen.config import settings

CREATE_RECORDS = """
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

CREATE_RECORDS_KIND_INDEX = """
CREATE INDEX IF NOT EXISTS idx_records_kind ON records(kind)
"""

_DDL = [CREATE_RECORDS, CREATE_RECORDS_KIND_INDEX]


async def init_db(db_path: str | None = None) -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(db_path or settings.db_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


async def get_async_conn(db_path: str | None = None) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(db_path or settings.db_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn


class RecordStore:
    """Keyed JSON record store on SQLite.

    Every record is a JSON object with a ``kind`` key.  Each call opens its
    own connection, so independent keys can be written concurrently; a
    single ``put`` is one atomic upsert.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or settings.db_path

    async def init(self) -> None:
        await init_db(self.db_path)

    async def get(self, record_id: str) -> dict | None:
        conn = await get_async_conn(self.db_path)
        try:
            row = await conn.execute("SELECT body FROM records WHERE id = ?", (record_id,))
            found = await row.fetchone()
            return json.loads(found["body"]) if found else None
        finally:
            await conn.close()

    async def put(self, record_id: str, record: dict) -> None:
        if "kind" not in record:
            raise ValueError("records must carry a 'kind'")
        conn = await get_async_conn(self.db_path)
        try:
            await conn.execute(
                """INSERT INTO records (id, kind, body) VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       kind = excluded.kind,
                       body = excluded.body,
                       updated_at = CURRENT_TIMESTAMP""",
                (record_id, record["kind"], json.dumps(record)),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def query_by_type(self, kind: str) -> list[dict]:
        conn = await get_async_conn(self.db_path)
        try:
            rows = await conn.execute(
                "SELECT body FROM records WHERE kind = ? ORDER BY created_at, id", (kind,)
            )
            return [json.loads(row["body"]) for row in await rows.fetchall()]
        finally:
            await conn.close()

    async def query_all(self) -> list[dict]:
        conn = await get_async_conn(self.db_path)
        try:
            rows = await conn.execute("SELECT body FROM records ORDER BY created_at, id")
            return [json.loads(row["body"]) for row in await rows.fetchall()]
        finally:
            await conn.close()
