"""SQLite persistence for plugrag.

Stores:
- Bots (tenant ownership, status and API credentials)
- Document records and their processing state
- The durable job queue (see plugrag.jobs.queue)
- Vector entry metadata, keyed by the FAISS id of each embedding
- Chat sessions, messages and usage events
"""
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from plugrag import config

logger = structlog.get_logger()


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


DOCUMENT_STATUSES = ("uploaded", "processing", "completed", "failed", "deleted")
EMBEDDING_STATUSES = ("pending", "processing", "completed", "failed")

# Columns the worker may change on a document record
DOCUMENT_MUTABLE_FIELDS = {
    "status",
    "embedding_status",
    "detected_kind",
    "chunk_count",
    "vector_count",
    "token_count",
    "estimated_cost",
    "processing_error",
    "processing_started_at",
    "processed_at",
    "embedded_at",
    "metadata_json",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS bots (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        api_key TEXT,
        fallback_to_global INTEGER NOT NULL DEFAULT 1,
        chat_model TEXT,
        embedding_model TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        bot_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        original_name TEXT NOT NULL,
        storage_key TEXT NOT NULL,
        mime_type TEXT,
        byte_size INTEGER NOT NULL DEFAULT 0,
        detected_kind TEXT,
        status TEXT NOT NULL DEFAULT 'uploaded',
        embedding_status TEXT NOT NULL DEFAULT 'pending',
        chunk_count INTEGER NOT NULL DEFAULT 0,
        vector_count INTEGER NOT NULL DEFAULT 0,
        token_count INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        processing_error TEXT,
        metadata_json TEXT,
        uploaded_at TEXT NOT NULL,
        processing_started_at TEXT,
        processed_at TEXT,
        embedded_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_bot ON documents(bot_id, status)",
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        payload_json TEXT NOT NULL,
        state TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        attempts_made INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        failure_reason TEXT,
        result_json TEXT,
        run_at REAL NOT NULL,
        lease_expires_at REAL,
        created_at REAL NOT NULL,
        processed_at REAL,
        finished_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_state_run_at ON jobs(state, run_at)",
    """
    CREATE TABLE IF NOT EXISTS vector_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        bot_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        document_id TEXT NOT NULL,
        chunk_index REAL NOT NULL,
        file_name TEXT,
        fragment_type TEXT,
        token_count INTEGER NOT NULL DEFAULT 0,
        content TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(bot_id, document_id, chunk_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vector_entries_bot ON vector_entries(bot_id)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        bot_id TEXT NOT NULL,
        title TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        sources_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id)",
    """
    CREATE TABLE IF NOT EXISTS usage_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        bot_id TEXT NOT NULL,
        owner_id TEXT,
        event_type TEXT NOT NULL,
        model TEXT,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        response_time_ms INTEGER,
        has_relevant_context INTEGER,
        metadata_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
]


@dataclass
class DocumentRecord:
    """A stored document and its processing state."""

    id: str
    bot_id: str
    owner_id: str
    original_name: str
    storage_key: str
    mime_type: Optional[str] = None
    byte_size: int = 0
    detected_kind: Optional[str] = None
    status: str = "uploaded"
    embedding_status: str = "pending"
    chunk_count: int = 0
    vector_count: int = 0
    token_count: int = 0
    estimated_cost: float = 0.0
    processing_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    uploaded_at: Optional[str] = None
    processing_started_at: Optional[str] = None
    processed_at: Optional[str] = None
    embedded_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentRecord":
        data = dict(row)
        metadata_json = data.pop("metadata_json", None)
        data["metadata"] = json.loads(metadata_json) if metadata_json else {}
        return cls(**data)


class Database:
    """Thin data-access layer over a single SQLite file.

    Every call opens its own connection, so instances are safe to share
    between asyncio tasks and worker threads.
    """

    def __init__(self, path: Path = None):
        """Initialize the database handle.

        Args:
            path: SQLite file path (default from config)
        """
        self.path = Path(path or config.DB_PATH)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.get_connection()

        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
            logger.info("database_initialized", db_path=str(self.path))

        except Exception as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    # Bots

    def upsert_bot(
        self,
        bot_id: str,
        owner_id: str,
        name: Optional[str] = None,
        status: str = "active",
        api_key: Optional[str] = None,
        fallback_to_global: bool = True,
        chat_model: Optional[str] = None,
        embedding_model: Optional[str] = None,
    ) -> None:
        """Create or replace a bot record.

        Args:
            bot_id: Bot identifier
            owner_id: Owning tenant
            name: Display name
            status: 'active' or 'disabled'
            api_key: Bot-specific API key, if any
            fallback_to_global: Whether the global key may be used instead
            chat_model: Chat model override
            embedding_model: Embedding model override
        """
        now = utc_now()
        conn = self.get_connection()

        try:
            conn.execute("""
                INSERT INTO bots (
                    id, owner_id, name, status, api_key, fallback_to_global,
                    chat_model, embedding_model, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    name = excluded.name,
                    status = excluded.status,
                    api_key = excluded.api_key,
                    fallback_to_global = excluded.fallback_to_global,
                    chat_model = excluded.chat_model,
                    embedding_model = excluded.embedding_model,
                    updated_at = excluded.updated_at
            """, (
                bot_id,
                owner_id,
                name,
                status,
                api_key,
                int(fallback_to_global),
                chat_model,
                embedding_model,
                now,
                now,
            ))
            conn.commit()
            logger.info("bot_saved", bot_id=bot_id, owner_id=owner_id)

        except Exception as e:
            conn.rollback()
            logger.error("bot_save_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    def get_bot(self, bot_id: str) -> Optional[Dict[str, Any]]:
        """Get a bot record by id, or None."""
        conn = self.get_connection()

        try:
            row = conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
            if not row:
                return None
            bot = dict(row)
            bot["fallback_to_global"] = bool(bot["fallback_to_global"])
            return bot

        except Exception as e:
            logger.error("bot_retrieval_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    # Documents

    def create_document(self, record: DocumentRecord) -> DocumentRecord:
        """Insert a new document record in the 'uploaded' state.

        Args:
            record: Document to insert

        Returns:
            The stored record
        """
        record.uploaded_at = record.uploaded_at or utc_now()
        conn = self.get_connection()

        try:
            conn.execute("""
                INSERT INTO documents (
                    id, bot_id, owner_id, original_name, storage_key,
                    mime_type, byte_size, status, embedding_status,
                    metadata_json, uploaded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.bot_id,
                record.owner_id,
                record.original_name,
                record.storage_key,
                record.mime_type,
                record.byte_size,
                record.status,
                record.embedding_status,
                json.dumps(record.metadata) if record.metadata else None,
                record.uploaded_at,
            ))
            conn.commit()
            logger.info("document_created", document_id=record.id, bot_id=record.bot_id)
            return record

        except Exception as e:
            conn.rollback()
            logger.error("document_create_failed", error=str(e), document_id=record.id)
            raise
        finally:
            conn.close()

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        """Get a document record by id, or None."""
        conn = self.get_connection()

        try:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            return DocumentRecord.from_row(row) if row else None

        except Exception as e:
            logger.error("document_retrieval_failed", error=str(e), document_id=document_id)
            raise
        finally:
            conn.close()

    def update_document(self, document_id: str, **fields: Any) -> None:
        """Update processing fields of a document record.

        Args:
            document_id: Document to update
            **fields: Column values; 'metadata' is stored as JSON

        Raises:
            ValueError: If a field is not a mutable document column
        """
        if "metadata" in fields:
            fields["metadata_json"] = json.dumps(fields.pop("metadata"))

        unknown = set(fields) - DOCUMENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update document fields: {sorted(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self.get_connection()

        try:
            conn.execute(
                f"UPDATE documents SET {assignments} WHERE id = ?",
                (*fields.values(), document_id),
            )
            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error("document_update_failed", error=str(e), document_id=document_id)
            raise
        finally:
            conn.close()

    def list_documents(
        self, bot_id: str, status: Optional[str] = None
    ) -> List[DocumentRecord]:
        """List a bot's documents, optionally filtered by status."""
        conn = self.get_connection()

        try:
            if status:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE bot_id = ? AND status = ? ORDER BY uploaded_at",
                    (bot_id, status),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE bot_id = ? ORDER BY uploaded_at",
                    (bot_id,),
                ).fetchall()
            return [DocumentRecord.from_row(row) for row in rows]

        except Exception as e:
            logger.error("documents_list_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    # Vector entries

    def replace_vector_entries(
        self, bot_id: str, entries: List[Dict[str, Any]]
    ) -> Tuple[List[int], List[int]]:
        """Insert vector entries, replacing any with the same ordinal key.

        An entry is identified by (bot_id, document_id, chunk_index), so a
        retried document overwrites the rows of its earlier attempt.

        Args:
            bot_id: Owning bot
            entries: Dicts with tenant_id, document_id, chunk_index, content,
                and optionally file_name, fragment_type, token_count, metadata

        Returns:
            Tuple of (replaced_ids, new_ids); new_ids follow the entry order
        """
        now = utc_now()
        replaced_ids: List[int] = []
        new_ids: List[int] = []
        conn = self.get_connection()

        try:
            for entry in entries:
                key = (bot_id, entry["document_id"], float(entry["chunk_index"]))
                row = conn.execute("""
                    SELECT id FROM vector_entries
                    WHERE bot_id = ? AND document_id = ? AND chunk_index = ?
                """, key).fetchone()
                if row:
                    replaced_ids.append(row["id"])
                    conn.execute("DELETE FROM vector_entries WHERE id = ?", (row["id"],))

                cursor = conn.execute("""
                    INSERT INTO vector_entries (
                        bot_id, tenant_id, document_id, chunk_index, file_name,
                        fragment_type, token_count, content, metadata_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    bot_id,
                    entry["tenant_id"],
                    entry["document_id"],
                    float(entry["chunk_index"]),
                    entry.get("file_name"),
                    entry.get("fragment_type"),
                    entry.get("token_count", 0),
                    entry["content"],
                    json.dumps(entry["metadata"]) if entry.get("metadata") else None,
                    now,
                ))
                new_ids.append(cursor.lastrowid)

            conn.commit()
            return replaced_ids, new_ids

        except Exception as e:
            conn.rollback()
            logger.error("vector_entries_insert_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    def delete_vector_entries(self, ids: Iterable[int]) -> None:
        """Delete vector entries by id."""
        ids = list(ids)
        if not ids:
            return
        conn = self.get_connection()

        try:
            placeholders = ",".join("?" * len(ids))
            conn.execute(f"DELETE FROM vector_entries WHERE id IN ({placeholders})", ids)
            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error("vector_entries_delete_failed", error=str(e))
            raise
        finally:
            conn.close()

    def get_vector_entries(self, bot_id: str, ids: List[int]) -> List[Dict[str, Any]]:
        """Retrieve a bot's vector entries by FAISS id.

        Entries belonging to another bot are never returned, even if their
        ids are requested.
        """
        if not ids:
            return []
        conn = self.get_connection()

        try:
            placeholders = ",".join("?" * len(ids))
            rows = conn.execute(f"""
                SELECT * FROM vector_entries
                WHERE bot_id = ? AND id IN ({placeholders})
            """, (bot_id, *ids)).fetchall()

            entries = []
            for row in rows:
                entry = dict(row)
                metadata_json = entry.pop("metadata_json")
                entry["metadata"] = json.loads(metadata_json) if metadata_json else {}
                entries.append(entry)
            return entries

        except Exception as e:
            logger.error("vector_entries_retrieval_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    def vector_entry_ids(
        self, bot_id: str, document_id: Optional[str] = None
    ) -> List[int]:
        """Ids of a bot's vector entries, optionally for one document."""
        conn = self.get_connection()

        try:
            if document_id is None:
                rows = conn.execute(
                    "SELECT id FROM vector_entries WHERE bot_id = ?", (bot_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id FROM vector_entries WHERE bot_id = ? AND document_id = ?",
                    (bot_id, document_id),
                ).fetchall()
            return [row["id"] for row in rows]

        except Exception as e:
            logger.error("vector_entry_ids_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    def sample_vector_entries(self, bot_id: str, limit: int = 3) -> List[Dict[str, Any]]:
        """A few of a bot's vector entries, for debugging."""
        conn = self.get_connection()

        try:
            rows = conn.execute("""
                SELECT id, document_id, file_name, chunk_index, fragment_type,
                       token_count, substr(content, 1, 200) AS content_preview
                FROM vector_entries WHERE bot_id = ?
                ORDER BY id LIMIT ?
            """, (bot_id, limit)).fetchall()
            return [dict(row) for row in rows]

        except Exception as e:
            logger.error("vector_entries_sample_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    # Sessions and messages

    def create_session(self, session_id: str, bot_id: str, title: Optional[str] = None) -> None:
        """Create a chat session for a bot."""
        conn = self.get_connection()

        try:
            conn.execute(
                "INSERT INTO sessions (id, bot_id, title, created_at) VALUES (?, ?, ?, ?)",
                (session_id, bot_id, title, utc_now()),
            )
            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error("session_create_failed", error=str(e), session_id=session_id)
            raise
        finally:
            conn.close()

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get a session by id, or None."""
        conn = self.get_connection()

        try:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            return dict(row) if row else None

        except Exception as e:
            logger.error("session_retrieval_failed", error=str(e), session_id=session_id)
            raise
        finally:
            conn.close()

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Append a message to a session.

        Returns:
            ID of the inserted message
        """
        conn = self.get_connection()

        try:
            cursor = conn.execute("""
                INSERT INTO messages (session_id, role, content, sources_json, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                session_id,
                role,
                content,
                json.dumps(sources) if sources else None,
                utc_now(),
            ))
            conn.commit()
            return cursor.lastrowid

        except Exception as e:
            conn.rollback()
            logger.error("message_insert_failed", error=str(e), session_id=session_id)
            raise
        finally:
            conn.close()

    def get_messages(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Messages of a session in chronological order.

        Args:
            session_id: Session to read
            limit: If given, only the most recent ``limit`` messages
        """
        conn = self.get_connection()

        try:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
                    (session_id, limit),
                ).fetchall()
                rows = list(reversed(rows))

            messages = []
            for row in rows:
                message = dict(row)
                sources_json = message.pop("sources_json")
                message["sources"] = json.loads(sources_json) if sources_json else []
                messages.append(message)
            return messages

        except Exception as e:
            logger.error("messages_retrieval_failed", error=str(e), session_id=session_id)
            raise
        finally:
            conn.close()

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.

        Returns:
            True if deleted, False if not found
        """
        conn = self.get_connection()

        try:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            conn.commit()
            return cursor.rowcount > 0

        except Exception as e:
            conn.rollback()
            logger.error("session_delete_failed", error=str(e), session_id=session_id)
            raise
        finally:
            conn.close()

    # Usage

    def insert_usage_event(
        self,
        bot_id: str,
        event_type: str,
        owner_id: Optional[str] = None,
        model: Optional[str] = None,
        tokens_used: int = 0,
        response_time_ms: Optional[int] = None,
        has_relevant_context: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record a usage event (chat answer, embedding run)."""
        conn = self.get_connection()

        try:
            cursor = conn.execute("""
                INSERT INTO usage_events (
                    bot_id, owner_id, event_type, model, tokens_used,
                    response_time_ms, has_relevant_context, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                bot_id,
                owner_id,
                event_type,
                model,
                tokens_used,
                response_time_ms,
                None if has_relevant_context is None else int(has_relevant_context),
                json.dumps(metadata) if metadata else None,
                utc_now(),
            ))
            conn.commit()
            return cursor.lastrowid

        except Exception as e:
            conn.rollback()
            logger.error("usage_event_insert_failed", error=str(e), bot_id=bot_id)
            raise
        finally:
            conn.close()

    def count_usage_events(self, bot_id: str) -> int:
        """Number of usage events recorded for a bot."""
        conn = self.get_connection()

        try:
            return conn.execute(
                "SELECT COUNT(*) FROM usage_events WHERE bot_id = ?", (bot_id,)
            ).fetchone()[0]

        except Exception as e:
            logger.error("usage_event_count_failed", error=str(e))
            raise
        finally:
            conn.close()
