"""
Relational persistence for conversations (PostgreSQL via psycopg).

Tables:
  - chats: conversation metadata and the two per-conversation settings
  - messages: append-only message log, ordered by creation time

Without a connection every read returns nothing and every write is a no-op,
so the service keeps working with process-local state only.
"""

import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


class ConversationStore:
    """Reads and writes conversation rows. Errors propagate to the caller."""

    def __init__(self, pg_conn=None):
        self._pg_conn = pg_conn

    @property
    def enabled(self) -> bool:
        return self._pg_conn is not None

    def setup_tables(self):
        """Create chats and messages tables if missing."""
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    context_template TEXT,
                    instruct_mode TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGSERIAL PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_session_id
                ON messages (session_id)
            """)

    # ── Messages ──

    def load_messages(self, session_id: str) -> list[dict]:
        """Messages for a conversation in creation order."""
        if not self._pg_conn:
            return []
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT role, content, created_at FROM messages
                WHERE session_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        return [_row_dict(row, ("role", "content", "created_at")) for row in rows]

    def append_message(
        self, session_id: str, role: str, content: str, created_at: datetime
    ):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "INSERT INTO messages (session_id, role, content, created_at) "
                "VALUES (%s, %s, %s, %s)",
                (session_id, role, content, created_at),
            )

    def delete_messages(self, session_id: str):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM messages WHERE session_id = %s", (session_id,))

    # ── Settings ──

    def load_settings(self, session_id: str) -> Optional[dict]:
        """Return {context_template, instruct_mode} or None for an unknown chat."""
        if not self._pg_conn:
            return None
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "SELECT context_template, instruct_mode FROM chats WHERE id = %s",
                (session_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        data = _row_dict(row, ("context_template", "instruct_mode"))
        return {
            "context_template": data["context_template"] or "",
            "instruct_mode": data["instruct_mode"] or "",
        }

    def update_settings(
        self,
        session_id: str,
        context_template: Optional[str] = None,
        instruct_mode: Optional[str] = None,
    ):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            if context_template is not None:
                cur.execute(
                    "UPDATE chats SET context_template = %s WHERE id = %s",
                    (context_template, session_id),
                )
            if instruct_mode is not None:
                cur.execute(
                    "UPDATE chats SET instruct_mode = %s WHERE id = %s",
                    (instruct_mode, session_id),
                )

    # ── Conversation metadata ──

    def create_chat(self, session_id: str, title: str):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute(
                "INSERT INTO chats (id, title, created_at) VALUES (%s, %s, now()) "
                "ON CONFLICT (id) DO NOTHING",
                (session_id, title),
            )

    def list_chats(self) -> list[dict]:
        """All conversations, newest first."""
        if not self._pg_conn:
            return []
        with self._pg_conn.cursor() as cur:
            cur.execute("SELECT id, title, created_at FROM chats ORDER BY created_at DESC")
            rows = cur.fetchall()
        result = []
        for row in rows:
            data = _row_dict(row, ("id", "title", "created_at"))
            created = data["created_at"]
            result.append({
                "id": data["id"],
                "title": data["title"],
                "createdAt": created.isoformat() if hasattr(created, "isoformat") else str(created),
            })
        return result

    def rename_chat(self, session_id: str, title: str):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute("UPDATE chats SET title = %s WHERE id = %s", (title, session_id))

    def delete_chat(self, session_id: str):
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM messages WHERE session_id = %s", (session_id,))
            cur.execute("DELETE FROM chats WHERE id = %s", (session_id,))


def _row_dict(row, columns: tuple) -> dict:
    """Accept both dict_row and tuple rows."""
    if isinstance(row, dict):
        return {c: row.get(c) for c in columns}
    return dict(zip(columns, row))
