"""Per-bot chat sessions for plugrag.

Sessions belong to one bot; the orchestrator only ever sees the recent
history of a session reduced to role and content.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog

from plugrag import config
from plugrag.db import Database

logger = structlog.get_logger()

TITLE_LENGTH = 50


def session_title(first_message: str) -> str:
    """Short title from the first user message, cut at a word boundary."""
    if len(first_message) <= TITLE_LENGTH:
        return first_message
    return first_message[:TITLE_LENGTH].rsplit(" ", 1)[0] + "..."


class ConversationManager:
    """Sessions and history, scoped to the bot that owns them."""

    def __init__(self, db: Database, context_window_size: int = None):
        """
        Args:
            db: Database holding sessions and messages
            context_window_size: Messages handed to the prompt (default HISTORY_MAX_MESSAGES)
        """
        self.db = db
        self.context_window_size = context_window_size or config.HISTORY_MAX_MESSAGES

    def create_session(self, bot_id: str, first_message: Optional[str] = None) -> str:
        session_id = str(uuid.uuid4())
        title = session_title(first_message) if first_message else None
        self.db.create_session(session_id, bot_id, title)
        logger.info("conversation_session_created", session_id=session_id, bot_id=bot_id)
        return session_id

    def get_session(self, session_id: str, bot_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Look up a session.

        Args:
            session_id: Session to fetch
            bot_id: When given, a session owned by another bot counts as missing

        Returns:
            Session row as a dict, or None
        """
        session = self.db.get_session(session_id)
        if session is None:
            return None
        if bot_id is not None and session["bot_id"] != bot_id:
            logger.warning("conversation_session_bot_mismatch", session_id=session_id, bot_id=bot_id)
            return None
        return session

    def record_exchange(
        self,
        session_id: str,
        question: str,
        answer: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Store a user question and the assistant's answer with its sources."""
        self.add_message(session_id, "user", question)
        self.add_message(session_id, "assistant", answer, sources)

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        message_id = self.db.add_message(session_id, role, content, sources)
        logger.debug("conversation_message_added", session_id=session_id, role=role, message_id=message_id)
        return message_id

    def get_recent_messages(self, session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Last ``limit`` messages (default: the context window), oldest first."""
        return self.db.get_messages(session_id, limit or self.context_window_size)

    def format_conversation_history(self, session_id: str) -> List[Dict[str, str]]:
        """Recent history as ``{"role", "content"}`` pairs for the prompt."""
        return [
            {"role": message["role"], "content": message["content"]}
            for message in self.get_recent_messages(session_id)
        ]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages; False if it did not exist."""
        deleted = self.db.delete_session(session_id)
        if deleted:
            logger.info("conversation_session_deleted", session_id=session_id)
        return deleted
