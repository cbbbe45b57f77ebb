"""Durable store for Lockbox, a single SQLite file."""

from __future__ import annotations

from lockbox.store.sqlite import SCHEMA_VERSION, SQLiteStore

__all__ = ["SCHEMA_VERSION", "SQLiteStore"]
