"""Tests for conversation sessions and history."""
import pytest

from plugrag.memory import ConversationManager
from plugrag.memory.manager import session_title


@pytest.fixture
def conversations(db):
    return ConversationManager(db, context_window_size=3)


def test_session_lifecycle(conversations):
    session_id = conversations.create_session("bot-a", first_message="Where do I park?")

    session = conversations.get_session(session_id)
    assert session["bot_id"] == "bot-a"
    assert session["title"] == "Where do I park?"

    assert conversations.delete_session(session_id) is True
    assert conversations.get_session(session_id) is None
    assert conversations.delete_session(session_id) is False


def test_session_belongs_to_its_bot(conversations):
    session_id = conversations.create_session("bot-a")

    assert conversations.get_session(session_id, bot_id="bot-a") is not None
    assert conversations.get_session(session_id, bot_id="bot-b") is None


def test_session_title_is_cut_at_a_word():
    long_message = "How do I request a parking permit for the underground garage next week?"

    title = session_title(long_message)

    assert title.endswith("...")
    assert len(title) <= 53
    assert long_message.startswith(title[:-3])
    assert session_title("Short one") == "Short one"


def test_recent_messages_are_oldest_first_and_windowed(conversations):
    session_id = conversations.create_session("bot-a")
    for i in range(5):
        conversations.add_message(session_id, "user" if i % 2 == 0 else "assistant", f"message {i}")

    messages = conversations.get_recent_messages(session_id)

    assert [m["content"] for m in messages] == ["message 2", "message 3", "message 4"]


def test_record_exchange_keeps_sources_on_the_answer(conversations):
    session_id = conversations.create_session("bot-a")

    conversations.record_exchange(session_id, "question", "answer", [{"file_name": "a.txt", "chunk_index": 0}])

    question, answer = conversations.get_recent_messages(session_id)
    assert question["role"] == "user"
    assert not question["sources"]
    assert answer["sources"] == [{"file_name": "a.txt", "chunk_index": 0}]


def test_history_keeps_role_and_content_only(conversations):
    session_id = conversations.create_session("bot-a")
    conversations.record_exchange(session_id, "hello", "hi there")

    assert conversations.format_conversation_history(session_id) == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
    ]
