"""SQLite persistence for PRD records and stored provider API keys.

Both stores open a short-lived connection per call and serialize access with an
``asyncio.Lock``; the database file is created on first use.
"""
import asyncio
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ai.adapters.credentials import ApiKeyRecord
from core.errors import PersistenceError, ValidationError
from core.logging import logger

__all__ = ["PRDRecordDraft", "PRDRecord", "PRDStore", "ApiKeyStore"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PRDRecordDraft:
    owner_id: str
    title: str
    requirements: str
    platform: str
    content: str


@dataclass
class PRDRecord:
    id: str
    owner_id: str
    title: str
    requirements: str
    platform: str
    content: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class _SQLiteStore(ABC):
    def __init__(self, db_path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not initialize database {self._db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @abstractmethod
    def _init_db(self) -> None:
        """Creates the tables this store needs."""


class PRDStore(_SQLiteStore):
    """Persistence gateway for generated PRDs."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS prds (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    requirements TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_prds_owner ON prds(owner_id, created_at)")

    @staticmethod
    def _row(row: sqlite3.Row) -> PRDRecord:
        return PRDRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            requirements=row["requirements"],
            platform=row["platform"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def insert(self, draft: PRDRecordDraft) -> PRDRecord:
        record = PRDRecord(id=str(uuid.uuid4()), created_at=_now(), **asdict(draft))
        async with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        "INSERT INTO prds (id, owner_id, title, requirements, platform, content, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (record.id, record.owner_id, record.title, record.requirements,
                         record.platform, record.content, record.created_at.isoformat()),
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to save PRD: {e}") from e
        logger.debug(f"Saved PRD {record.id} for {record.owner_id}")
        return record

    async def query(self, owner_id: str) -> List[PRDRecord]:
        """All PRDs of ``owner_id``, newest first."""
        async with self._lock:
            try:
                with self._connect() as conn:
                    rows = conn.execute(
                        "SELECT * FROM prds WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC",
                        (owner_id,),
                    ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to load PRD history: {e}") from e
        return [self._row(r) for r in rows]

    async def get(self, prd_id: str) -> Optional[PRDRecord]:
        async with self._lock:
            try:
                with self._connect() as conn:
                    row = conn.execute("SELECT * FROM prds WHERE id = ?", (prd_id,)).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to load PRD {prd_id}: {e}") from e
        return self._row(row) if row else None

    async def delete(self, prd_id: str) -> bool:
        """Deletes one PRD. Returns False if it did not exist."""
        async with self._lock:
            try:
                with self._connect() as conn:
                    cur = conn.execute("DELETE FROM prds WHERE id = ?", (prd_id,))
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to delete PRD {prd_id}: {e}") from e
        return cur.rowcount > 0


class ApiKeyStore(_SQLiteStore):
    """Stored provider keys: per-user overrides and global admin defaults."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    key_type TEXT NOT NULL,
                    api_key TEXT NOT NULL,
                    is_global INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys(user_id, key_type)")

    @staticmethod
    def _row(row: sqlite3.Row) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row["id"],
            user_id=row["user_id"],
            key_type=row["key_type"],
            api_key=row["api_key"],
            is_global=bool(row["is_global"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def _select(self, sql: str, params: tuple) -> List[ApiKeyRecord]:
        async with self._lock:
            try:
                with self._connect() as conn:
                    rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to load API keys: {e}") from e
        return [self._row(r) for r in rows]

    async def user_keys(self, user_id: str) -> List[ApiKeyRecord]:
        return await self._select(
            "SELECT * FROM api_keys WHERE user_id = ? AND is_global = 0 "
            "ORDER BY key_type ASC, created_at DESC",
            (user_id,),
        )

    async def global_keys(self) -> List[ApiKeyRecord]:
        return await self._select(
            "SELECT * FROM api_keys WHERE is_global = 1 ORDER BY key_type ASC, created_at DESC",
            (),
        )

    async def save_key(self, key_type: str, api_key: str, user_id: Optional[str] = None) -> ApiKeyRecord:
        """Stores a key, replacing an existing one of the same type in the same scope.

        ``user_id=None`` stores a global key.
        """
        if not key_type or not api_key or not api_key.strip():
            raise ValidationError("Please select a key type and enter an API key")
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            key_type=key_type,
            api_key=api_key.strip(),
            is_global=user_id is None,
            created_at=_now(),
        )
        async with self._lock:
            try:
                with self._connect() as conn:
                    if record.is_global:
                        conn.execute("DELETE FROM api_keys WHERE is_global = 1 AND key_type = ?", (key_type,))
                    else:
                        conn.execute(
                            "DELETE FROM api_keys WHERE is_global = 0 AND user_id = ? AND key_type = ?",
                            (user_id, key_type),
                        )
                    conn.execute(
                        "INSERT INTO api_keys (id, user_id, key_type, api_key, is_global, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (record.id, record.user_id, record.key_type, record.api_key,
                         int(record.is_global), record.created_at.isoformat()),
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to save API key: {e}") from e
        return record

    async def delete_key(self, key_id: str) -> bool:
        async with self._lock:
            try:
                with self._connect() as conn:
                    cur = conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to delete API key: {e}") from e
        return cur.rowcount > 0
