"""Storage backends for persona_sms."""

from __future__ import annotations

from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
