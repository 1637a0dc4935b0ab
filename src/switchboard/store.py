"""SQLite-backed persistence: message history, namespaces, sessions, tasks.

The router only needs a handful of queries from here: "new user messages since
the global watermark" to feed inbound events, and "everything not written by
the assistant since this conversation's delivery watermark" to render a
merged prompt. Everything else is bookkeeping for the scheduler and registry.
"""

import json
import sqlite3
from pathlib import Path

from switchboard.models import (
    PROVENANCE_ASSISTANT,
    PROVENANCE_USER,
    InboundEvent,
    Namespace,
    ScheduledTask,
    TaskRunLog,
    utc_now_iso,
)

_TASK_COLUMNS = {
    "prompt",
    "schedule_type",
    "schedule_value",
    "context_mode",
    "next_run",
    "last_run",
    "last_result",
    "status",
}


class Store:
    """SQLite-backed persistent state."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                conversation_key TEXT PRIMARY KEY,
                name TEXT,
                last_message_time TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT,
                conversation_key TEXT,
                sender TEXT,
                sender_name TEXT,
                content TEXT,
                timestamp TEXT,
                message_type TEXT DEFAULT 'text',
                attachments_json TEXT,
                quoted_json TEXT,
                provenance TEXT DEFAULT 'user',
                PRIMARY KEY (id, conversation_key)
            );

            CREATE TABLE IF NOT EXISTS namespaces (
                conversation_key TEXT PRIMARY KEY,
                name TEXT,
                folder TEXT UNIQUE,
                trigger TEXT,
                added_at TEXT
            );

            CREATE TABLE IF NOT EXISTS sessions (
                folder TEXT PRIMARY KEY,
                session_id TEXT
            );

            CREATE TABLE IF NOT EXISTS router_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                owner_namespace TEXT,
                conversation_key TEXT,
                prompt TEXT,
                schedule_type TEXT,
                schedule_value TEXT,
                context_mode TEXT DEFAULT 'isolated',
                next_run TEXT,
                last_run TEXT,
                last_result TEXT,
                status TEXT DEFAULT 'active',
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS task_run_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT,
                started_at TEXT,
                duration_ms INTEGER,
                status TEXT,
                result TEXT,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(timestamp);
            CREATE INDEX IF NOT EXISTS idx_messages_key ON messages(conversation_key);
            CREATE INDEX IF NOT EXISTS idx_tasks_next_run ON scheduled_tasks(next_run);
            CREATE INDEX IF NOT EXISTS idx_tasks_owner ON scheduled_tasks(owner_namespace);
            CREATE INDEX IF NOT EXISTS idx_runs_task ON task_run_logs(task_id, started_at);
        """)
        conn.commit()
        conn.close()

    # --- Messages ---

    def store_chat_metadata(self, conversation_key: str, timestamp: str, name: str | None = None) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT INTO chats (conversation_key, name, last_message_time) VALUES (?, ?, ?) "
            "ON CONFLICT(conversation_key) DO UPDATE SET "
            "name = COALESCE(excluded.name, chats.name), "
            "last_message_time = MAX(COALESCE(chats.last_message_time, ''), excluded.last_message_time)",
            (conversation_key, name, timestamp),
        )
        conn.commit()
        conn.close()

    def get_all_chats(self) -> list[dict]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT conversation_key, name, last_message_time FROM chats "
            "ORDER BY last_message_time DESC"
        ).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def store_message(self, event: InboundEvent) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO messages "
            "(id, conversation_key, sender, sender_name, content, timestamp, message_type, "
            "attachments_json, quoted_json, provenance) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.conversation_key,
                event.sender,
                event.sender_name,
                event.content,
                event.timestamp,
                event.message_type,
                json.dumps(event.attachments) if event.attachments else None,
                json.dumps(event.quoted) if event.quoted else None,
                event.provenance,
            ),
        )
        conn.commit()
        conn.close()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> InboundEvent:
        return InboundEvent(
            id=row["id"],
            conversation_key=row["conversation_key"],
            sender=row["sender"],
            sender_name=row["sender_name"] or "",
            content=row["content"] or "",
            timestamp=row["timestamp"],
            message_type=row["message_type"] or "text",
            attachments=json.loads(row["attachments_json"]) if row["attachments_json"] else [],
            quoted=json.loads(row["quoted_json"]) if row["quoted_json"] else None,
            provenance=row["provenance"] or PROVENANCE_USER,
        )

    def get_new_messages(self, conversation_keys: list[str], since: str) -> list[InboundEvent]:
        """User-authored messages newer than ``since`` across the given conversations."""
        if not conversation_keys:
            return []
        placeholders = ", ".join("?" for _ in conversation_keys)
        conn = self._connect()
        rows = conn.execute(
            f"SELECT * FROM messages WHERE timestamp > ? AND conversation_key IN ({placeholders}) "
            "AND provenance = ? ORDER BY timestamp, rowid",
            [since, *conversation_keys, PROVENANCE_USER],
        ).fetchall()
        conn.close()
        return [self._row_to_event(r) for r in rows]

    def get_messages_since(self, conversation_key: str, since: str) -> list[InboundEvent]:
        """Everything not written by the assistant itself since ``since``."""
        conn = self._connect()
        rows = conn.execute(
            "SELECT * FROM messages WHERE conversation_key = ? AND timestamp > ? "
            "AND provenance != ? ORDER BY timestamp, rowid",
            (conversation_key, since, PROVENANCE_ASSISTANT),
        ).fetchall()
        conn.close()
        return [self._row_to_event(r) for r in rows]

    # --- Namespaces ---

    def set_namespace(self, namespace: Namespace) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO namespaces (conversation_key, name, folder, trigger, added_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (namespace.conversation_key, namespace.name, namespace.folder, namespace.trigger, namespace.added_at),
        )
        conn.commit()
        conn.close()

    def get_all_namespaces(self) -> dict[str, Namespace]:
        conn = self._connect()
        rows = conn.execute("SELECT * FROM namespaces ORDER BY added_at").fetchall()
        conn.close()
        return {
            r["conversation_key"]: Namespace(
                conversation_key=r["conversation_key"],
                name=r["name"],
                folder=r["folder"],
                trigger=r["trigger"],
                added_at=r["added_at"],
            )
            for r in rows
        }

    # --- Sessions ---

    def get_session(self, folder: str) -> str | None:
        conn = self._connect()
        row = conn.execute("SELECT session_id FROM sessions WHERE folder = ?", (folder,)).fetchone()
        conn.close()
        return row["session_id"] if row else None

    def set_session(self, folder: str, session_id: str) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO sessions (folder, session_id) VALUES (?, ?)",
            (folder, session_id),
        )
        conn.commit()
        conn.close()

    # --- Router state ---

    def get_router_state(self, key: str) -> str | None:
        conn = self._connect()
        row = conn.execute("SELECT value FROM router_state WHERE key = ?", (key,)).fetchone()
        conn.close()
        return row["value"] if row else None

    def set_router_state(self, key: str, value: str) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT OR REPLACE INTO router_state (key, value) VALUES (?, ?)",
            (key, value),
        )
        conn.commit()
        conn.close()

    def get_last_agent_timestamp(self, conversation_key: str) -> str:
        return self.get_router_state(f"last_agent:{conversation_key}") or ""

    def set_last_agent_timestamp(self, conversation_key: str, timestamp: str) -> None:
        self.set_router_state(f"last_agent:{conversation_key}", timestamp)

    # --- Scheduled tasks ---

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(**{k: row[k] for k in row.keys()})

    def create_task(self, task: ScheduledTask) -> ScheduledTask:
        conn = self._connect()
        conn.execute(
            "INSERT INTO scheduled_tasks (id, owner_namespace, conversation_key, prompt, schedule_type, "
            "schedule_value, context_mode, next_run, last_run, last_result, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.id, task.owner_namespace, task.conversation_key, task.prompt,
                task.schedule_type, task.schedule_value, task.context_mode, task.next_run,
                task.last_run, task.last_result, task.status, task.created_at,
            ),
        )
        conn.commit()
        conn.close()
        return task

    def get_task(self, task_id: str) -> ScheduledTask | None:
        conn = self._connect()
        row = conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        conn.close()
        return self._row_to_task(row) if row else None

    def update_task(self, task_id: str, **kwargs) -> None:
        invalid = set(kwargs) - _TASK_COLUMNS
        if invalid:
            raise ValueError(f"Invalid task columns: {sorted(invalid)}")
        sets = ", ".join(f"{k} = ?" for k in kwargs)
        conn = self._connect()
        conn.execute(f"UPDATE scheduled_tasks SET {sets} WHERE id = ?", [*kwargs.values(), task_id])
        conn.commit()
        conn.close()

    def delete_task(self, task_id: str) -> None:
        conn = self._connect()
        conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        conn.commit()
        conn.close()

    def list_tasks(self, owner_namespace: str | None = None) -> list[ScheduledTask]:
        conn = self._connect()
        if owner_namespace:
            rows = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE owner_namespace = ? ORDER BY created_at DESC",
                (owner_namespace,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM scheduled_tasks ORDER BY created_at DESC").fetchall()
        conn.close()
        return [self._row_to_task(r) for r in rows]

    def get_due_tasks(self, now_iso: str | None = None) -> list[ScheduledTask]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT * FROM scheduled_tasks WHERE status = 'active' AND next_run IS NOT NULL "
            "AND next_run <= ? ORDER BY next_run",
            (now_iso or utc_now_iso(),),
        ).fetchall()
        conn.close()
        return [self._row_to_task(r) for r in rows]

    def update_task_after_run(self, task_id: str, next_run: str | None, last_result: str) -> None:
        """Record the outcome; a task without a next run is completed."""
        conn = self._connect()
        conn.execute(
            "UPDATE scheduled_tasks SET next_run = ?, last_run = ?, last_result = ?, "
            "status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END WHERE id = ?",
            (next_run, utc_now_iso(), last_result, next_run, task_id),
        )
        conn.commit()
        conn.close()

    def log_task_run(self, run: TaskRunLog) -> None:
        conn = self._connect()
        conn.execute(
            "INSERT INTO task_run_logs (task_id, started_at, duration_ms, status, result, error) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (run.task_id, run.started_at, run.duration_ms, run.status, run.result, run.error),
        )
        conn.commit()
        conn.close()

    def get_task_runs(self, task_id: str, limit: int = 20) -> list[TaskRunLog]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT task_id, started_at, duration_ms, status, result, error FROM task_run_logs "
            "WHERE task_id = ? ORDER BY started_at DESC, id DESC LIMIT ?",
            (task_id, limit),
        ).fetchall()
        conn.close()
        return [TaskRunLog(**dict(r)) for r in rows]
