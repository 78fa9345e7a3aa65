"""SQLite persistence provider for self-hosted deployments."""

import asyncio
import functools
import json
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

from schemas.credentials import OAuthTokens
from schemas.database import ProviderName, SQLiteConnectionConfig
from schemas.memory import CoreMemory, ExtendedMemory, MemoryFilter, Milestone
from schemas.session import Session, SessionFilter, SortOrder

from .base import DEFAULT_TIMEOUT, DatabaseProvider, new_core_memory
from .errors import DatabaseConnectionError, DatabaseError, RecordNotFoundError
from .similarity import decode_embedding, encode_embedding

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        messages TEXT NOT NULL,
        agent_context TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        PRIMARY KEY (user_id, session_id)
    );
    CREATE INDEX IF NOT EXISTS idx_sessions_created_at ON sessions(user_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at);

    CREATE TABLE IF NOT EXISTS core_memory (
        user_id TEXT PRIMARY KEY,
        preferences TEXT NOT NULL,
        relationship_stage TEXT NOT NULL,
        relationship_start_date INTEGER NOT NULL,
        key_milestones TEXT NOT NULL,
        critical_context TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS extended_memory (
        memory_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        conversation_summary TEXT NOT NULL,
        embedding BLOB,
        learned_patterns TEXT NOT NULL,
        emotional_context TEXT,
        topics TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        ttl INTEGER
    );
    CREATE INDEX IF NOT EXISTS idx_extended_memory_user ON extended_memory(user_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_extended_memory_ttl ON extended_memory(ttl);

    CREATE TABLE IF NOT EXISTS oauth_tokens (
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        token_type TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        scopes TEXT NOT NULL,
        tenant_id TEXT,
        tenant_name TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (user_id, provider)
    );
    CREATE INDEX IF NOT EXISTS idx_oauth_tokens_expires_at ON oauth_tokens(expires_at);
"""


def _direction(sort_order: SortOrder) -> str:
    return "ASC" if sort_order == SortOrder.ASC else "DESC"


class SQLiteProvider(DatabaseProvider):
    """
    File-based provider.

    A single connection is owned by a one-worker thread pool, so
    statements run in issuance order and never block the event loop.
    Not safe for several processes writing the same file.
    """

    name = ProviderName.EMBEDDED_FILE
    native_errors = (sqlite3.Error,)

    def __init__(self, config: SQLiteConnectionConfig, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize SQLite provider.

        Args:
            config: Connection settings (database file path, read-only flag)
            timeout: Deadline in seconds for each operation
        """
        super().__init__(timeout=timeout)
        self.config = config
        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.is_connected():
            return

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sqlite-provider")
        loop = asyncio.get_running_loop()
        try:
            self._conn = await loop.run_in_executor(executor, self._open)
        except (sqlite3.Error, OSError) as e:
            executor.shutdown(wait=False)
            raise DatabaseConnectionError(
                self.name.value,
                f"Failed to open SQLite database: {self.config.filename}",
                e
            ) from e

        self._executor = executor
        logger.info(f"SQLite connected: {self.config.filename}")

    async def disconnect(self) -> None:
        if self._executor is None:
            return

        executor, conn = self._executor, self._conn
        self._executor = None
        self._conn = None
        if conn is not None:
            await asyncio.get_running_loop().run_in_executor(executor, conn.close)
        executor.shutdown(wait=True)
        logger.info(f"SQLite disconnected: {self.config.filename}")

    def is_connected(self) -> bool:
        return self._conn is not None and self._executor is not None

    async def _execute(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def _open(self) -> sqlite3.Connection:
        """Open the connection and create the schema (runs on the worker thread)."""
        filename = self.config.filename
        in_memory = filename == MEMORY_DATABASE

        if self.config.readonly and not in_memory:
            conn = sqlite3.connect(f"file:{filename}?mode=ro", uri=True, isolation_level=None)
        else:
            if not in_memory:
                Path(filename).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(filename, isolation_level=None)

        conn.row_factory = sqlite3.Row
        if not self.config.readonly:
            if not in_memory:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Write transaction holding the database write lock from the start."""
        cursor = self._conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        else:
            cursor.execute("COMMIT")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            session_id=row["session_id"],
            user_id=row["user_id"],
            messages=json.loads(row["messages"]),
            agent_context=json.loads(row["agent_context"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_core_memory(row: sqlite3.Row) -> CoreMemory:
        return CoreMemory(
            user_id=row["user_id"],
            preferences=json.loads(row["preferences"]),
            relationship_stage=row["relationship_stage"],
            relationship_start_date=row["relationship_start_date"],
            key_milestones=json.loads(row["key_milestones"]),
            critical_context=json.loads(row["critical_context"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_extended_memory(row: sqlite3.Row) -> ExtendedMemory:
        return ExtendedMemory(
            memory_id=row["memory_id"],
            user_id=row["user_id"],
            conversation_summary=row["conversation_summary"],
            embedding=decode_embedding(row["embedding"]) if row["embedding"] is not None else None,
            learned_patterns=json.loads(row["learned_patterns"]),
            emotional_context=row["emotional_context"],
            topics=json.loads(row["topics"]),
            created_at=row["created_at"],
            ttl=row["ttl"],
        )

    @staticmethod
    def _row_to_oauth_tokens(row: sqlite3.Row) -> OAuthTokens:
        return OAuthTokens(
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_type=row["token_type"],
            expires_at=row["expires_at"],
            scopes=json.loads(row["scopes"]),
            tenant_id=row["tenant_id"],
            tenant_name=row["tenant_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _insert_session(self, session: Session) -> None:
        wire = session.to_wire()
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO sessions
                    (session_id, user_id, messages, agent_context, created_at, updated_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.session_id,
                        session.user_id,
                        json.dumps(wire["messages"]),
                        json.dumps(wire["agentContext"]),
                        session.created_at,
                        session.updated_at,
                        session.expires_at,
                    )
                )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Session already exists: {session.session_id}", self.name.value, e) from e

    def _select_session(self, cursor: sqlite3.Cursor, user_id: str, session_id: str) -> Optional[Session]:
        cursor.execute(
            "SELECT * FROM sessions WHERE user_id = ? AND session_id = ?",
            (user_id, session_id)
        )
        row = cursor.fetchone()
        return self._row_to_session(row) if row else None

    def _fetch_session(self, user_id: str, session_id: str) -> Optional[Session]:
        return self._select_session(self._conn.cursor(), user_id, session_id)

    def _update_session(self, user_id: str, session_id: str, changes: dict, updated_at: int) -> Session:
        with self._transaction() as cursor:
            existing = self._select_session(cursor, user_id, session_id)
            if existing is None:
                raise RecordNotFoundError(self.name.value, "Session", session_id)

            updated = existing.model_copy(update={**changes, "updated_at": updated_at})
            wire = updated.to_wire()
            cursor.execute(
                """
                UPDATE sessions
                SET messages = ?, agent_context = ?, updated_at = ?, expires_at = ?
                WHERE user_id = ? AND session_id = ?
                """,
                (
                    json.dumps(wire["messages"]),
                    json.dumps(wire["agentContext"]),
                    updated.updated_at,
                    updated.expires_at,
                    user_id,
                    session_id,
                )
            )
        return updated

    def _remove_session(self, user_id: str, session_id: str) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM sessions WHERE user_id = ? AND session_id = ?",
                (user_id, session_id)
            )

    def _query_sessions(self, filter: SessionFilter) -> List[Session]:
        query = "SELECT * FROM sessions WHERE user_id = ?"
        params: List[Any] = [filter.user_id]

        if filter.session_id:
            query += " AND session_id = ?"
            params.append(filter.session_id)

        direction = _direction(filter.sort_order)
        query += f" ORDER BY created_at {direction}, session_id {direction}"

        if filter.limit:
            query += " LIMIT ?"
            params.append(filter.limit)

        cursor = self._conn.cursor()
        cursor.execute(query, params)
        return [self._row_to_session(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------

    def _select_core_memory(self, cursor: sqlite3.Cursor, user_id: str) -> Optional[CoreMemory]:
        cursor.execute("SELECT * FROM core_memory WHERE user_id = ?", (user_id,))
        row = cursor.fetchone()
        return self._row_to_core_memory(row) if row else None

    def _write_core_memory(self, cursor: sqlite3.Cursor, memory: CoreMemory) -> None:
        wire = memory.to_wire()
        cursor.execute(
            """
            INSERT OR REPLACE INTO core_memory
            (user_id, preferences, relationship_stage, relationship_start_date,
             key_milestones, critical_context, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory.user_id,
                json.dumps(wire["preferences"]),
                memory.relationship_stage.value,
                memory.relationship_start_date,
                json.dumps(wire["keyMilestones"]),
                json.dumps(wire["criticalContext"]),
                memory.created_at,
                memory.updated_at,
            )
        )

    def _fetch_core_memory(self, user_id: str) -> Optional[CoreMemory]:
        return self._select_core_memory(self._conn.cursor(), user_id)

    def _upsert_core_memory(self, user_id: str, changes: dict, now: int) -> CoreMemory:
        with self._transaction() as cursor:
            existing = self._select_core_memory(cursor, user_id) or new_core_memory(user_id, now)
            memory = existing.model_copy(update={**changes, "updated_at": now})
            self._write_core_memory(cursor, memory)
        return memory

    def _append_milestone(self, user_id: str, milestone: Milestone, now: int) -> CoreMemory:
        # BEGIN IMMEDIATE serializes concurrent appends, even from other processes
        with self._transaction() as cursor:
            existing = self._select_core_memory(cursor, user_id) or new_core_memory(user_id, now)
            memory = existing.model_copy(update={
                "key_milestones": [*existing.key_milestones, milestone],
                "updated_at": now,
            })
            self._write_core_memory(cursor, memory)
        return memory

    def _remove_core_memory(self, user_id: str) -> None:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM core_memory WHERE user_id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Extended memory
    # ------------------------------------------------------------------

    def _insert_extended_memory(self, memory: ExtendedMemory) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO extended_memory
                (memory_id, user_id, conversation_summary, embedding, learned_patterns,
                 emotional_context, topics, created_at, ttl)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.memory_id,
                    memory.user_id,
                    memory.conversation_summary,
                    encode_embedding(memory.embedding) if memory.embedding is not None else None,
                    json.dumps(memory.learned_patterns),
                    memory.emotional_context,
                    json.dumps(memory.topics),
                    memory.created_at,
                    memory.ttl,
                )
            )

    def _fetch_extended_memory(self, user_id: str, memory_id: str) -> Optional[ExtendedMemory]:
        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT * FROM extended_memory WHERE user_id = ? AND memory_id = ?",
            (user_id, memory_id)
        )
        row = cursor.fetchone()
        return self._row_to_extended_memory(row) if row else None

    def _query_extended_memories(self, filter: MemoryFilter) -> List[ExtendedMemory]:
        query = "SELECT * FROM extended_memory WHERE user_id = ?"
        params: List[Any] = [filter.user_id]

        if filter.topics:
            placeholders = ", ".join("?" for _ in filter.topics)
            query += (
                " AND EXISTS (SELECT 1 FROM json_each(extended_memory.topics)"
                f" WHERE json_each.value IN ({placeholders}))"
            )
            params.extend(filter.topics)

        direction = _direction(filter.sort_order)
        query += f" ORDER BY created_at {direction}, memory_id {direction}"

        if filter.limit:
            query += " LIMIT ?"
            params.append(filter.limit)

        cursor = self._conn.cursor()
        cursor.execute(query, params)
        return [self._row_to_extended_memory(row) for row in cursor.fetchall()]

    def _remove_extended_memory(self, user_id: str, memory_id: str) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM extended_memory WHERE user_id = ? AND memory_id = ?",
                (user_id, memory_id)
            )

    def _remove_extended_memories(self, user_id: str) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM extended_memory WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def _fetch_embedded_memories(self, user_id: str) -> List[ExtendedMemory]:
        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT * FROM extended_memory WHERE user_id = ? AND embedding IS NOT NULL",
            (user_id,)
        )
        return [self._row_to_extended_memory(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # OAuth tokens
    # ------------------------------------------------------------------

    def _write_oauth_tokens(self, cursor: sqlite3.Cursor, tokens: OAuthTokens) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO oauth_tokens
            (user_id, provider, access_token, refresh_token, token_type, expires_at,
             scopes, tenant_id, tenant_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tokens.user_id,
                tokens.provider,
                tokens.access_token,
                tokens.refresh_token,
                tokens.token_type,
                tokens.expires_at,
                json.dumps(tokens.scopes),
                tokens.tenant_id,
                tokens.tenant_name,
                tokens.created_at,
                tokens.updated_at,
            )
        )

    def _select_oauth_tokens(self, cursor: sqlite3.Cursor, user_id: str, provider: str) -> Optional[OAuthTokens]:
        cursor.execute(
            "SELECT * FROM oauth_tokens WHERE user_id = ? AND provider = ?",
            (user_id, provider)
        )
        row = cursor.fetchone()
        return self._row_to_oauth_tokens(row) if row else None

    def _put_oauth_tokens(self, tokens: OAuthTokens) -> None:
        with self._transaction() as cursor:
            self._write_oauth_tokens(cursor, tokens)

    def _fetch_oauth_tokens(self, user_id: str, provider: str) -> Optional[OAuthTokens]:
        return self._select_oauth_tokens(self._conn.cursor(), user_id, provider)

    def _update_oauth_tokens(self, user_id: str, provider: str, changes: dict, updated_at: int) -> OAuthTokens:
        # One transaction: readers see either the old or the new token set, never a mix
        with self._transaction() as cursor:
            existing = self._select_oauth_tokens(cursor, user_id, provider)
            if existing is None:
                raise RecordNotFoundError(self.name.value, "OAuthTokens", f"{user_id}:{provider}")
            updated = existing.model_copy(update={**changes, "updated_at": updated_at})
            self._write_oauth_tokens(cursor, updated)
        return updated

    def _remove_oauth_tokens(self, user_id: str, provider: str) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM oauth_tokens WHERE user_id = ? AND provider = ?",
                (user_id, provider)
            )
