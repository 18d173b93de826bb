"""SQLite storage for stories, messages and memories."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable

from memloom.exceptions import StorageError
from memloom.types import Memory, MemoryAction, MemoryCategory, Message, Role, Story
from memloom.utils import blob_to_vector, iso_str, parse_iso, utcnow, vector_to_blob

SCHEMA_VERSION = 1

# SQLite caps bound parameters per statement; stay well below the old 999 limit.
_MAX_PARAMS = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stories_user ON stories(user_id);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id INTEGER NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant')),
    content TEXT NOT NULL,
    extracted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (story_id) REFERENCES stories(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_messages_story ON messages(story_id);
CREATE INDEX IF NOT EXISTS idx_messages_extracted ON messages(extracted);
CREATE INDEX IF NOT EXISTS idx_messages_story_extracted ON messages(story_id, extracted);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    content TEXT,
    prev_content TEXT,
    category TEXT,
    importance REAL,
    confidence REAL,
    embedding BLOB,
    action TEXT CHECK (action IS NULL OR action IN ('ADD', 'UPDATE', 'DELETE')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id);
"""

_MEMORY_COLUMNS = {
    "content", "prev_content", "category", "importance", "confidence", "embedding", "action",
}


class SQLiteStore:
    """Relational backing store; the vector index is rebuilt from these rows."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute("PRAGMA busy_timeout=30000")
        self._init_schema()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                cur = self._conn.cursor()
                cur.executescript(_SCHEMA)
                cur.execute(
                    "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                self._conn.commit()
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise

    def close(self) -> None:
        self._conn.close()

    # --- Stories ---

    def insert_story(self, story: Story) -> Story:
        cur = self._conn.execute(
            "INSERT INTO stories(user_id, name, created_at) VALUES (?, ?, ?)",
            (story.user_id, story.name, iso_str(story.created_at)),
        )
        self._conn.commit()
        story.id = int(cur.lastrowid)
        return story

    # --- Messages ---

    def insert_messages(self, messages: list[Message]) -> list[Message]:
        with self._conn:
            for msg in messages:
                cur = self._conn.execute(
                    """INSERT INTO messages(story_id, role, content, extracted, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        msg.story_id, Role(msg.role).value, msg.content, int(msg.extracted),
                        iso_str(msg.created_at), iso_str(msg.updated_at),
                    ),
                )
                msg.id = int(cur.lastrowid)
        return messages

    def list_messages_by_story(
        self,
        story_id: int,
        limit: int | None = None,
        offset: int | None = None,
        last_n: int | None = None,
    ) -> list[Message]:
        if last_n is not None:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE story_id=? ORDER BY created_at DESC, id DESC LIMIT ?",
                (story_id, last_n),
            ).fetchall()
            return [self._row_to_message(r) for r in reversed(rows)]
        sql = "SELECT * FROM messages WHERE story_id=? ORDER BY created_at ASC, id ASC"
        params: list[Any] = [story_id]
        if limit is not None or offset is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset or 0])
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def list_messages_by_user(
        self,
        user_id: str,
        story_id: int | None = None,
        extracted: bool | None = None,
    ) -> list[Message]:
        sql = (
            "SELECT m.* FROM messages m JOIN stories s ON s.id = m.story_id "
            "WHERE s.user_id=?"
        )
        params: list[Any] = [user_id]
        if story_id is not None:
            sql += " AND m.story_id=?"
            params.append(story_id)
        if extracted is not None:
            sql += " AND m.extracted=?"
            params.append(int(extracted))
        sql += " ORDER BY m.created_at ASC, m.id ASC"
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def mark_messages_extracted(self, message_ids: Iterable[int]) -> int:
        """Flip ``extracted`` for not-yet-extracted ids in one transaction."""
        ids = sorted({int(i) for i in message_ids})
        if not ids:
            return 0
        now = iso_str(utcnow())
        changed = 0
        with self._conn:
            for start in range(0, len(ids), _MAX_PARAMS):
                part = ids[start:start + _MAX_PARAMS]
                placeholders = ",".join("?" for _ in part)
                cur = self._conn.execute(
                    f"UPDATE messages SET extracted=1, updated_at=? "
                    f"WHERE extracted=0 AND id IN ({placeholders})",
                    (now, *part),
                )
                changed += cur.rowcount
        return changed

    def count_messages(self, extracted: bool | None = None) -> int:
        if extracted is None:
            row = self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE extracted=?", (int(extracted),)
            ).fetchone()
        return row[0]

    # --- Memories ---

    def insert_memories(self, memories: list[Memory]) -> list[Memory]:
        with self._conn:
            for mem in memories:
                cur = self._conn.execute(
                    """INSERT INTO memories(user_id, content, prev_content, category, importance,
                       confidence, embedding, action, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        mem.user_id, mem.content, mem.prev_content,
                        _enum_value(mem.category), mem.importance, mem.confidence,
                        vector_to_blob(mem.embedding) if mem.embedding is not None else None,
                        _enum_value(mem.action),
                        iso_str(mem.created_at), iso_str(mem.updated_at),
                    ),
                )
                mem.id = int(cur.lastrowid)
        return memories

    def get_memory(self, user_id: str, memory_id: int) -> Memory | None:
        row = self._conn.execute(
            "SELECT * FROM memories WHERE id=? AND user_id=?", (memory_id, user_id)
        ).fetchone()
        return self._row_to_memory(row) if row else None

    def get_memories(self, memory_ids: list[int]) -> dict[int, Memory]:
        out: dict[int, Memory] = {}
        ids = list(dict.fromkeys(int(i) for i in memory_ids))
        for start in range(0, len(ids), _MAX_PARAMS):
            part = ids[start:start + _MAX_PARAMS]
            placeholders = ",".join("?" for _ in part)
            rows = self._conn.execute(
                f"SELECT * FROM memories WHERE id IN ({placeholders})", part
            ).fetchall()
            for r in rows:
                out[r["id"]] = self._row_to_memory(r)
        return out

    def list_memories(
        self,
        user_id: str,
        category: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Memory]:
        sql = "SELECT * FROM memories WHERE user_id=?"
        params: list[Any] = [user_id]
        if category:
            sql += " AND category=?"
            params.append(category)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None or offset is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset or 0])
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def update_memory(self, user_id: str, memory_id: int, fields: dict[str, Any]) -> Memory | None:
        unknown = set(fields) - _MEMORY_COLUMNS
        if unknown:
            raise StorageError(f"unknown memory fields: {sorted(unknown)}")
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "embedding":
                values[key] = vector_to_blob(value) if value is not None else None
            elif key in {"category", "action"}:
                values[key] = _enum_value(value)
            else:
                values[key] = value
        values["updated_at"] = iso_str(utcnow())
        assignments = ", ".join(f"{k}=?" for k in values)
        cur = self._conn.execute(
            f"UPDATE memories SET {assignments} WHERE id=? AND user_id=?",
            (*values.values(), memory_id, user_id),
        )
        self._conn.commit()
        if cur.rowcount == 0:
            return None
        return self.get_memory(user_id, memory_id)

    def delete_memory(self, user_id: str, memory_id: int) -> Memory | None:
        existing = self.get_memory(user_id, memory_id)
        if existing is None:
            return None
        self._conn.execute("DELETE FROM memories WHERE id=? AND user_id=?", (memory_id, user_id))
        self._conn.commit()
        return existing

    def list_memory_embeddings(self, user_id: str) -> list[tuple[int, bytes]]:
        rows = self._conn.execute(
            "SELECT id, embedding FROM memories WHERE user_id=? AND embedding IS NOT NULL",
            (user_id,),
        ).fetchall()
        return [(r["id"], r["embedding"]) for r in rows]

    def list_memory_user_ids(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT user_id FROM memories WHERE embedding IS NOT NULL ORDER BY user_id"
        ).fetchall()
        return [r[0] for r in rows]

    def count_memories(self, user_id: str | None = None) -> int:
        if user_id is None:
            row = self._conn.execute("SELECT COUNT(*) FROM memories").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM memories WHERE user_id=?", (user_id,)
            ).fetchone()
        return row[0]

    # --- Row Converters ---

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            story_id=row["story_id"],
            role=Role(row["role"]),
            content=row["content"],
            extracted=bool(row["extracted"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"] or "",
            prev_content=row["prev_content"],
            category=MemoryCategory(row["category"]) if row["category"] else None,
            importance=row["importance"],
            confidence=row["confidence"],
            embedding=blob_to_vector(row["embedding"]),
            action=MemoryAction(row["action"]) if row["action"] else None,
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)
