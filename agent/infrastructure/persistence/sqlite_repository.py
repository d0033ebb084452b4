"""SQLite-backed agent store

One connection per repository, used from a worker thread; an asyncio lock
keeps statements from different coroutines from interleaving.
"""

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

import structlog

from domain.exceptions import AgentNotFoundError, PersistenceError
from domain.models.agent import AgentInstance, AgentInstanceMessage
from domain.models.agent_state import AgentStatus
from domain.models.base import utc_now
from domain.repositories.agent_repository import AgentRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
    CREATE TABLE IF NOT EXISTS agent_instances (
        id TEXT PRIMARY KEY,
        agent_def_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        ai_api_config TEXT,
        avatar_url TEXT,
        closed INTEGER DEFAULT 0,
        created TEXT NOT NULL,
        modified TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS agent_messages (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        content_type TEXT,
        duration INTEGER,
        metadata TEXT,
        created TEXT NOT NULL,
        modified TEXT NOT NULL,
        FOREIGN KEY (agent_id) REFERENCES agent_instances(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_agent ON agent_messages(agent_id, modified);
    CREATE INDEX IF NOT EXISTS idx_instances_created ON agent_instances(created);
"""

COLUMN_FIELDS = {"name", "status", "closed", "ai_api_config", "avatar_url"}


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class SqliteAgentRepository(AgentRepository):

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        self._lock = asyncio.Lock()

    def close(self) -> None:
        self._conn.close()

    async def _run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._transaction, operation)
            except sqlite3.Error as e:
                logger.error("SQLite operation failed", db_path=self.db_path, error=str(e))
                raise PersistenceError(str(e)) from e

    def _transaction(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        with self._conn:
            return operation(self._conn)

    @staticmethod
    def _row_to_instance(row: sqlite3.Row, messages: Optional[List[AgentInstanceMessage]] = None) -> AgentInstance:
        return AgentInstance(
            id=row["id"],
            agent_def_id=row["agent_def_id"],
            name=row["name"],
            status=AgentStatus.model_validate_json(row["status"]),
            ai_api_config=_loads(row["ai_api_config"]),
            avatar_url=row["avatar_url"],
            closed=bool(row["closed"]),
            created=datetime.fromisoformat(row["created"]),
            modified=datetime.fromisoformat(row["modified"]),
            messages=messages or [],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> AgentInstanceMessage:
        return AgentInstanceMessage(
            id=row["id"],
            agent_id=row["agent_id"],
            role=row["role"],
            content=row["content"],
            content_type=row["content_type"] or "text/plain",
            duration=row["duration"],
            metadata=_loads(row["metadata"]) or {},
            created=datetime.fromisoformat(row["created"]),
            modified=datetime.fromisoformat(row["modified"]),
        )

    @staticmethod
    def _upsert_message(conn: sqlite3.Connection, message: AgentInstanceMessage) -> None:
        conn.execute("""
            INSERT INTO agent_messages (id, agent_id, role, content, content_type, duration, metadata, created, modified)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                content_type = excluded.content_type,
                duration = excluded.duration,
                metadata = excluded.metadata,
                modified = excluded.modified
        """, (message.id, message.agent_id, message.role.value, message.content, message.content_type,
              message.duration, _dumps(message.metadata), _ts(message.created), _ts(message.modified)))

    def _load_messages(self, conn: sqlite3.Connection, agent_id: str) -> List[AgentInstanceMessage]:
        rows = conn.execute(
            "SELECT * FROM agent_messages WHERE agent_id = ? ORDER BY modified ASC, rowid ASC", (agent_id,)
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    async def create_instance(self, instance: AgentInstance) -> AgentInstance:
        def operation(conn: sqlite3.Connection) -> None:
            conn.execute("""
                INSERT INTO agent_instances (id, agent_def_id, name, status, ai_api_config, avatar_url, closed, created, modified)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (instance.id, instance.agent_def_id, instance.name, instance.status.model_dump_json(),
                  _dumps(instance.ai_api_config), instance.avatar_url, int(instance.closed),
                  _ts(instance.created), _ts(instance.modified)))
            for message in instance.messages:
                self._upsert_message(conn, message)

        await self._run(operation)
        logger.debug("Created instance", agent_id=instance.id)
        return instance

    async def get_instance(self, agent_id: str) -> Optional[AgentInstance]:
        def operation(conn: sqlite3.Connection) -> Optional[AgentInstance]:
            row = conn.execute("SELECT * FROM agent_instances WHERE id = ?", (agent_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_instance(row, self._load_messages(conn, agent_id))

        return await self._run(operation)

    async def update_instance(self, agent_id: str, **fields: Any) -> AgentInstance:
        unknown = set(fields) - COLUMN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        values = {}
        for key, value in fields.items():
            if key == "status":
                value = AgentStatus.model_validate(value).model_dump_json()
            elif key == "ai_api_config":
                value = _dumps(value)
            elif key == "closed":
                value = int(bool(value))
            values[key] = value
        values["modified"] = _ts(utc_now())

        def operation(conn: sqlite3.Connection) -> Optional[AgentInstance]:
            assignments = ", ".join(f"{column} = ?" for column in values)
            cursor = conn.execute(f"UPDATE agent_instances SET {assignments} WHERE id = ?",
                                  (*values.values(), agent_id))
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM agent_instances WHERE id = ?", (agent_id,)).fetchone()
            return self._row_to_instance(row, self._load_messages(conn, agent_id))

        instance = await self._run(operation)
        if instance is None:
            raise AgentNotFoundError(f"Agent instance {agent_id} not found", details={"agent_id": agent_id})
        return instance

    async def delete_instance(self, agent_id: str) -> bool:
        def operation(conn: sqlite3.Connection) -> bool:
            conn.execute("DELETE FROM agent_messages WHERE agent_id = ?", (agent_id,))
            return conn.execute("DELETE FROM agent_instances WHERE id = ?", (agent_id,)).rowcount > 0

        deleted = await self._run(operation)
        if deleted:
            logger.debug("Deleted instance", agent_id=agent_id)
        return deleted

    async def list_instances(
        self,
        page: int = 1,
        page_size: int = 20,
        closed: Optional[bool] = None,
        search_name: Optional[str] = None,
    ) -> List[AgentInstance]:
        clauses, params = [], []
        if closed is not None:
            clauses.append("closed = ?")
            params.append(int(closed))
        if search_name:
            clauses.append("LOWER(name) LIKE ?")
            params.append(f"%{search_name.lower()}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([page_size, (max(page, 1) - 1) * page_size])

        def operation(conn: sqlite3.Connection) -> List[AgentInstance]:
            rows = conn.execute(
                f"SELECT * FROM agent_instances {where} ORDER BY created DESC LIMIT ? OFFSET ?", params
            ).fetchall()
            return [self._row_to_instance(row) for row in rows]

        return await self._run(operation)

    async def save_message(self, message: AgentInstanceMessage) -> AgentInstanceMessage:
        def operation(conn: sqlite3.Connection) -> bool:
            exists = conn.execute("SELECT 1 FROM agent_instances WHERE id = ?", (message.agent_id,)).fetchone()
            if exists is None:
                return False
            self._upsert_message(conn, message)
            return True

        if not await self._run(operation):
            raise AgentNotFoundError(f"Agent instance {message.agent_id} not found",
                                     details={"agent_id": message.agent_id})
        return message

    async def get_message(self, message_id: str) -> Optional[AgentInstanceMessage]:
        def operation(conn: sqlite3.Connection) -> Optional[AgentInstanceMessage]:
            row = conn.execute("SELECT * FROM agent_messages WHERE id = ?", (message_id,)).fetchone()
            return self._row_to_message(row) if row else None

        return await self._run(operation)
