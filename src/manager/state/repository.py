"""Conversation state persistence.

The durable store is the serialisation point for concurrent triggers on
the same conversation: every save is a compare-and-swap on the ``version``
field, so a racing pass fails instead of silently overwriting.

Two implementations of the ConversationRepository protocol:
- InMemoryConversationRepository for local development and tests
- PostgresConversationRepository (asyncpg) storing the snapshot as JSONB

Expected schema::

    CREATE TABLE conversation_states (
        thread_id   TEXT PRIMARY KEY,
        state       JSONB NOT NULL,
        version     INTEGER NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL
    );
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import asyncpg

from src.manager.state.models import ConversationState


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        thread_id: The conversation with the conflict.
        expected_version: The version the writer read.
    """

    def __init__(self, thread_id: str, expected_version: int):
        self.thread_id = thread_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for conversation {thread_id}: expected {expected_version}"
        )


@runtime_checkable
class ConversationRepository(Protocol):
    """Persistence contract for conversation snapshots, keyed by thread id."""

    async def get(self, thread_id: str) -> Optional[ConversationState]:
        ...

    async def save(self, state: ConversationState) -> ConversationState:
        """Persist a snapshot.

        A snapshot with ``version == 1`` is inserted; any other version
        replaces the stored row only if the stored version is one lower.
        Returns the snapshot as stored.

        Raises:
            VersionConflictError: If the stored version moved on.
        """
        ...


class InMemoryConversationRepository:
    """Dictionary-backed repository for local development and tests."""

    def __init__(self) -> None:
        self._states: Dict[str, ConversationState] = {}

    async def get(self, thread_id: str) -> Optional[ConversationState]:
        return self._states.get(thread_id)

    async def save(self, state: ConversationState) -> ConversationState:
        existing = self._states.get(state.thread_id)
        if existing is None:
            if state.version != 1:
                raise VersionConflictError(state.thread_id, state.version - 1)
        elif existing.version != state.version - 1:
            raise VersionConflictError(state.thread_id, state.version - 1)
        self._states[state.thread_id] = state
        return state


class PostgresConversationRepository:
    """PostgreSQL implementation of ConversationRepository using asyncpg.

    Example:
        >>> async with PostgresConversationRepository("postgresql://...") as repo:
        ...     state = await repo.get(thread_id)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise DatabaseError(f"Failed to connect to PostgreSQL: {e}", original_error=e) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    async def __aenter__(self) -> "PostgresConversationRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def get(self, thread_id: str) -> Optional[ConversationState]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT state, version FROM conversation_states WHERE thread_id = $1",
                    thread_id,
                )
        except Exception as e:
            logger.error(
                "Failed to get conversation state",
                extra={"thread_id": thread_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get conversation state: {e}", original_error=e) from e

        if row is None:
            return None

        raw = row["state"]
        data = json.loads(raw) if isinstance(raw, str) else raw
        data["version"] = row["version"]
        return ConversationState.model_validate(data)

    async def save(self, state: ConversationState) -> ConversationState:
        payload = state.model_dump_json()
        now = datetime.now(timezone.utc)

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if state.version == 1:
                        status = await conn.execute(
                            """
                            INSERT INTO conversation_states (thread_id, state, version, updated_at)
                            VALUES ($1, $2::jsonb, $3, $4)
                            ON CONFLICT (thread_id) DO NOTHING
                            """,
                            state.thread_id,
                            payload,
                            state.version,
                            now,
                        )
                    else:
                        status = await conn.execute(
                            """
                            UPDATE conversation_states
                            SET state = $2::jsonb, version = $3, updated_at = $4
                            WHERE thread_id = $1 AND version = $5
                            """,
                            state.thread_id,
                            payload,
                            state.version,
                            now,
                            state.version - 1,
                        )
        except Exception as e:
            logger.error(
                "Failed to save conversation state",
                extra={"thread_id": state.thread_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save conversation state: {e}", original_error=e) from e

        # asyncpg returns e.g. "INSERT 0 1" / "UPDATE 1"
        if status.split()[-1] == "0":
            raise VersionConflictError(state.thread_id, state.version - 1)

        logger.info(
            "Saved conversation state",
            extra={"thread_id": state.thread_id, "version": state.version},
        )
        return state
