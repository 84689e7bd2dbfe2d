"""
Key-value persistence for named blobs of structured records.

Stores hold JSON-serialisable values under string keys with last-write-wins
semantics. ``SqlKeyValueStore`` keeps them in a single SQL table;
``InMemoryStore`` is used in tests and for throwaway sessions.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from fincore.settings import get_database_url

metadata = MetaData()

kv_entries = Table(
    "kv_entries",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class InMemoryStore:
    """Dict-backed store; values are copied through JSON like a real backend."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqlKeyValueStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str | None = None) -> "SqlKeyValueStore":
        url = database_url or get_database_url()
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        return cls(create_engine(url, connect_args=connect_args))

    def get(self, key: str, default: Any = None) -> Any:
        stmt = select(kv_entries.c.value).where(kv_entries.c.key == key)
        with self.engine.begin() as conn:
            raw = conn.execute(stmt).scalar_one_or_none()
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(kv_entries)
                .where(kv_entries.c.key == key)
                .values(value=payload, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(
                    insert(kv_entries).values(key=key, value=payload, updated_at=now)
                )
