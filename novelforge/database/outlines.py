"""
Outline Store

Durable home of outline structures. Generation saves the partial outline
after every act through `upsert_outline`, keyed by a fixed outline id, so
repeated saves overwrite one row and a crash keeps the acts already done.
"""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import aiosqlite

from novelforge.database.connection import Database


def count_chapters(structure: Dict[str, Any]) -> int:
    return sum(len(act.get("chapters") or []) for act in structure.get("acts", []))


def _outline_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    outline = dict(row)
    outline["structure"] = json.loads(outline["structure"]) if outline["structure"] else {"acts": []}
    outline["is_complete"] = bool(outline["is_complete"])
    return outline


class OutlineStore:
    """Service class for outline persistence."""

    def __init__(self, db: Database):
        self.db = db
        db.register_schema(self._create_tables)

    async def _create_tables(self, conn: aiosqlite.Connection):
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS outlines (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                structure_type TEXT NOT NULL,
                structure TEXT NOT NULL,
                total_chapters INTEGER NOT NULL DEFAULT 0,
                target_word_count INTEGER NOT NULL DEFAULT 80000,
                is_complete INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outlines_book
            ON outlines(book_id, created_at)
        """)

    async def upsert_outline(
        self,
        outline_id: str,
        book_id: str,
        structure: Dict[str, Any],
        structure_type: str = "three_act",
        target_word_count: int = 80000,
        complete: bool = False
    ) -> int:
        """
        Insert or update an outline by id. Returns the chapter count saved.

        Chapters are renumbered sequentially across acts before saving.
        """
        chapter_number = 1
        for act in structure.get("acts", []):
            for chapter in act.get("chapters") or []:
                chapter["number"] = chapter_number
                chapter_number += 1

        total_chapters = count_chapters(structure)
        now = datetime.now(timezone.utc).isoformat(timespec="microseconds")

        async with self.db.transaction() as conn:
            await conn.execute("""
                INSERT INTO outlines
                (id, book_id, structure_type, structure, total_chapters, target_word_count,
                 is_complete, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    structure = excluded.structure,
                    total_chapters = excluded.total_chapters,
                    is_complete = excluded.is_complete,
                    updated_at = excluded.updated_at
            """, (
                outline_id,
                book_id,
                structure_type,
                json.dumps(structure),
                total_chapters,
                target_word_count,
                1 if complete else 0,
                now,
                now
            ))
        return total_chapters

    async def get_outline(self, outline_id: str) -> Optional[Dict[str, Any]]:
        cursor = await self.db.conn.execute(
            "SELECT * FROM outlines WHERE id = ?", (outline_id,)
        )
        row = await cursor.fetchone()
        return _outline_from_row(row) if row else None

    async def get_latest_for_book(self, book_id: str) -> Optional[Dict[str, Any]]:
        cursor = await self.db.conn.execute("""
            SELECT * FROM outlines
            WHERE book_id = ?
            ORDER BY created_at DESC
            LIMIT 1
        """, (book_id,))
        row = await cursor.fetchone()
        return _outline_from_row(row) if row else None
