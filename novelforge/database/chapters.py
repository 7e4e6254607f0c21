"""
Chapter Store

The slice of the chapter schema the pipeline stages read and write:
content, summary, editorial flags, scene cards and per-book character
states. Everything else about books and projects lives elsewhere.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

import aiosqlite

from novelforge.database.connection import Database


class ChapterStatus(str, Enum):
    PENDING = "pending"
    WRITING = "writing"
    EDITING = "editing"
    COMPLETED = "completed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _chapter_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    chapter = dict(row)
    chapter["flags"] = json.loads(chapter["flags"]) if chapter["flags"] else []
    chapter["scene_cards"] = json.loads(chapter["scene_cards"]) if chapter["scene_cards"] else []
    return chapter


class ChapterStore:
    """Service class for chapter reads and writes made by pipeline stages."""

    def __init__(self, db: Database):
        self.db = db
        db.register_schema(self._create_tables)

    async def _create_tables(self, conn: aiosqlite.Connection):
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS chapters (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                chapter_number INTEGER NOT NULL,
                title TEXT,
                scene_cards TEXT,
                content TEXT,
                summary TEXT,
                flags TEXT NOT NULL DEFAULT '[]',
                word_count INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_chapters_book
            ON chapters(book_id, chapter_number)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS character_states (
                book_id TEXT NOT NULL,
                character_name TEXT NOT NULL,
                state TEXT NOT NULL,
                source_chapter_id TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (book_id, character_name)
            )
        """)

    # =========================================================================
    # Chapters
    # =========================================================================

    async def create_chapter(
        self,
        book_id: str,
        chapter_number: int,
        title: Optional[str] = None,
        scene_cards: Optional[List[Dict[str, Any]]] = None,
        chapter_id: Optional[str] = None,
        conn: Optional[aiosqlite.Connection] = None
    ) -> str:
        chapter_id = chapter_id or str(uuid.uuid4())
        now = _now()
        async with self.db.transaction(conn) as c:
            await c.execute("""
                INSERT INTO chapters
                (id, book_id, chapter_number, title, scene_cards, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                chapter_id,
                book_id,
                chapter_number,
                title,
                json.dumps(scene_cards or []),
                now,
                now
            ))
        return chapter_id

    async def delete_book_chapters(
        self,
        book_id: str,
        conn: Optional[aiosqlite.Connection] = None
    ) -> List[str]:
        """Delete every chapter of a book. Returns the deleted ids."""
        async with self.db.transaction(conn) as c:
            cursor = await c.execute("SELECT id FROM chapters WHERE book_id = ?", (book_id,))
            chapter_ids = [row["id"] for row in await cursor.fetchall()]
            await c.execute("DELETE FROM chapters WHERE book_id = ?", (book_id,))
        return chapter_ids

    async def get_chapter(
        self,
        chapter_id: str,
        conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[Dict[str, Any]]:
        cursor = await (conn or self.db.conn).execute(
            "SELECT * FROM chapters WHERE id = ?", (chapter_id,)
        )
        row = await cursor.fetchone()
        return _chapter_from_row(row) if row else None

    async def get_previous_summaries(
        self,
        book_id: str,
        chapter_number: int,
        limit: int = 3
    ) -> List[Dict[str, Any]]:
        """Summaries of the chapters right before `chapter_number`, oldest first."""
        cursor = await self.db.conn.execute("""
            SELECT chapter_number, title, summary
            FROM chapters
            WHERE book_id = ? AND chapter_number < ? AND summary IS NOT NULL
            ORDER BY chapter_number DESC
            LIMIT ?
        """, (book_id, chapter_number, limit))
        rows = [dict(row) for row in await cursor.fetchall()]
        rows.reverse()
        return rows

    async def update_status(self, chapter_id: str, status: ChapterStatus):
        async with self.db.transaction() as conn:
            await conn.execute("""
                UPDATE chapters SET status = ?, updated_at = ? WHERE id = ?
            """, (status.value, _now(), chapter_id))

    async def save_content(
        self,
        chapter_id: str,
        content: str,
        status: Optional[ChapterStatus] = None
    ):
        """Store chapter text and its word count."""
        word_count = len(content.split())
        async with self.db.transaction() as conn:
            if status is None:
                await conn.execute("""
                    UPDATE chapters
                    SET content = ?, word_count = ?, updated_at = ?
                    WHERE id = ?
                """, (content, word_count, _now(), chapter_id))
            else:
                await conn.execute("""
                    UPDATE chapters
                    SET content = ?, word_count = ?, status = ?, updated_at = ?
                    WHERE id = ?
                """, (content, word_count, status.value, _now(), chapter_id))

    async def save_summary(self, chapter_id: str, summary: str):
        async with self.db.transaction() as conn:
            await conn.execute("""
                UPDATE chapters SET summary = ?, updated_at = ? WHERE id = ?
            """, (summary.strip(), _now(), chapter_id))

    async def reset_chapter(
        self,
        chapter_id: str,
        conn: Optional[aiosqlite.Connection] = None
    ):
        """Clear derived state before a full regeneration."""
        async with self.db.transaction(conn) as c:
            await c.execute("""
                UPDATE chapters
                SET status = 'pending',
                    content = NULL,
                    summary = NULL,
                    flags = '[]',
                    word_count = 0,
                    updated_at = ?
                WHERE id = ?
            """, (_now(), chapter_id))

    # =========================================================================
    # Flags
    # =========================================================================

    async def add_flags(
        self,
        chapter_id: str,
        editor_type: str,
        flags: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Append editor flags for later human review. Returns the stored flags."""
        if not flags:
            return []

        stored = [
            {
                "id": str(uuid.uuid4()),
                "editor": editor_type,
                "severity": flag.get("severity", "medium"),
                "message": flag.get("message", ""),
                "location": flag.get("location"),
                "resolved": False,
                "created_at": _now(),
            }
            for flag in flags
        ]

        async with self.db.transaction() as conn:
            cursor = await conn.execute("SELECT flags FROM chapters WHERE id = ?", (chapter_id,))
            row = await cursor.fetchone()
            if not row:
                return []
            existing = json.loads(row["flags"]) if row["flags"] else []
            await conn.execute("""
                UPDATE chapters SET flags = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(existing + stored), _now(), chapter_id))
        return stored

    async def get_flags(self, chapter_id: str) -> Optional[List[Dict[str, Any]]]:
        """Flags of a chapter, or None when the chapter does not exist."""
        chapter = await self.get_chapter(chapter_id)
        return chapter["flags"] if chapter else None

    async def resolve_flag(self, chapter_id: str, flag_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.transaction() as conn:
            cursor = await conn.execute("SELECT flags FROM chapters WHERE id = ?", (chapter_id,))
            row = await cursor.fetchone()
            if not row:
                return None

            flags = json.loads(row["flags"]) if row["flags"] else []
            flag = next((f for f in flags if f.get("id") == flag_id), None)
            if flag is None:
                return None

            flag["resolved"] = True
            await conn.execute("""
                UPDATE chapters SET flags = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(flags), _now(), chapter_id))
            return flag

    # =========================================================================
    # Character States
    # =========================================================================

    async def save_character_states(
        self,
        book_id: str,
        states: Dict[str, Dict[str, Any]],
        source_chapter_id: Optional[str] = None
    ) -> int:
        """Upsert the latest state of each character in a book."""
        now = _now()
        async with self.db.transaction() as conn:
            for name, state in states.items():
                await conn.execute("""
                    INSERT INTO character_states
                    (book_id, character_name, state, source_chapter_id, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(book_id, character_name) DO UPDATE SET
                        state = excluded.state,
                        source_chapter_id = excluded.source_chapter_id,
                        updated_at = excluded.updated_at
                """, (book_id, name, json.dumps(state), source_chapter_id, now))
        return len(states)

    async def get_character_states(self, book_id: str) -> Dict[str, Dict[str, Any]]:
        cursor = await self.db.conn.execute("""
            SELECT character_name, state FROM character_states WHERE book_id = ?
        """, (book_id,))
        return {
            row["character_name"]: json.loads(row["state"])
            for row in await cursor.fetchall()
        }
