"""SQLite-backed message store: live content in memory, durable writes with WAL + safe PRAGMAs"""
from __future__ import annotations

import datetime
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List

from chatstream_service.context.memory_store import MemoryMessageStore


class SqliteMessageStore(MemoryMessageStore):
    def __init__(self, dsn: str = "sqlite:///./data/chatstream.db"):
        super().__init__()
        # Parse DSN
        if dsn.startswith("sqlite:///"):
            path = dsn[len("sqlite:///") :]
        else:
            path = dsn

        if path == ":memory:":
            target = path
        else:
            p = Path(path).expanduser().resolve()
            p.parent.mkdir(parents=True, exist_ok=True)
            target = str(p)

        self.conn = sqlite3.connect(target, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_pragmas()
        self._init_schema()

    def _init_pragmas(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        self.conn.commit()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS lifecycle_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL,
                type TEXT NOT NULL,
                data TEXT NOT NULL,
                ts TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_message ON lifecycle_events(message_id, seq)"
        )
        self.conn.commit()

    def get_content(self, message_id: str) -> str:
        if message_id not in self.contents:
            row = self.conn.execute("SELECT content FROM messages WHERE id = ?", (message_id,)).fetchone()
            if row is not None:
                self.contents[message_id] = row["content"]
        return super().get_content(message_id)

    def append_text(self, message_id: str, text: str) -> None:
        self.get_content(message_id)
        super().append_text(message_id, text)

    def overwrite_content(self, message_id: str, full_text: str) -> None:
        self.get_content(message_id)
        super().overwrite_content(message_id, full_text)

    def dispatch_lifecycle_event(self, message_id: str, event: Dict[str, Any]) -> None:
        super().dispatch_lifecycle_event(message_id, event)
        ts = datetime.datetime.now(datetime.timezone.utc).isoformat()
        self.conn.execute(
            "INSERT INTO lifecycle_events(message_id, type, data, ts) VALUES (?, ?, ?, ?)",
            (message_id, str(event.get("type", "")), json.dumps(event.get("data", {})), ts),
        )
        self.conn.commit()

    async def persist(self, message_id: str, content: str) -> None:
        ts = datetime.datetime.now(datetime.timezone.utc).isoformat()
        # later writes carry a superset of earlier content; never shrink the row
        self.conn.execute(
            """
            INSERT INTO messages(id, content, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET content = excluded.content, updated_at = excluded.updated_at
            WHERE length(excluded.content) >= length(messages.content)
            """,
            (message_id, content, ts),
        )
        self.conn.commit()
        await super().persist(message_id, content)

    def load_persisted(self, message_id: str) -> str | None:
        row = self.conn.execute("SELECT content FROM messages WHERE id = ?", (message_id,)).fetchone()
        return row["content"] if row is not None else None

    def lifecycle_history(self, message_id: str) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT type, data FROM lifecycle_events WHERE message_id = ? ORDER BY seq ASC",
            (message_id,),
        ).fetchall()
        return [{"type": r["type"], "data": json.loads(r["data"])} for r in rows]

    def close(self) -> None:
        self.conn.close()
