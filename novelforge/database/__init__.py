"""
NovelForge Database Layer

One SQLite datastore (aiosqlite) shared by the job queue and the chapter
and outline stores the pipeline stages write to.
"""

from .connection import Database, DatabaseNotConnectedError
from .chapters import ChapterStore, ChapterStatus
from .outlines import OutlineStore

__all__ = [
    "Database",
    "DatabaseNotConnectedError",
    "ChapterStore",
    "ChapterStatus",
    "OutlineStore",
]
