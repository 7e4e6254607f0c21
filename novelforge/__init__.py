"""NovelForge: AI chapter generation pipeline driven by a persistent job queue."""

__version__ = "1.0.0"
