"""Pytest fixtures for trace-search tests."""

import json
from datetime import datetime, timezone

import pytest

from trace_search.models import ConversationRecord

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_pair():
    return _make_pair


def _make_pair(
    user_text,
    reply_blocks,
    *,
    timestamp="2024-02-28T10:00:00.000Z",
    reply_timestamp="2024-02-28T10:00:05.000Z",
    model="claude-sonnet-4",
    usage=None,
    system=None,
):
    """Build a transcript pair in the indexer's input shape."""
    request = {
        "timestamp": timestamp,
        "model": model,
        "messages": [{"role": "user", "content": user_text}],
    }
    if system is not None:
        request["system"] = system
    return {
        "request": request,
        "response": {
            "timestamp": reply_timestamp,
            "model": model,
            "content": reply_blocks,
            "usage": usage or {"input_tokens": 100, "output_tokens": 50},
        },
    }


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def auth_conversation():
    return ConversationRecord(
        id="conv-auth",
        source_file="/logs/auth.jsonl",
        pairs=[
            _make_pair(
                "How do I implement authentication?",
                [
                    {"type": "thinking", "thinking": "Consider JWT versus sessions"},
                    {"type": "text", "text": "For authentication, you can use JWT tokens."},
                    {
                        "type": "tool_use",
                        "id": "tool-1",
                        "name": "Read",
                        "input": {"file_path": "/src/auth.py"},
                    },
                ],
                usage={
                    "input_tokens": 120,
                    "output_tokens": 80,
                    "cache_read_input_tokens": 30,
                    "cache_creation_input_tokens": 10,
                },
                system="You are a helpful coding assistant.",
            ),
        ],
    )


@pytest.fixture
def database_conversation():
    return ConversationRecord(
        id="conv-db",
        source_file="/logs/db.jsonl",
        pairs=[
            _make_pair(
                "Why is my database migration failing?",
                [
                    {"type": "text", "text": "The migration references a missing column."},
                    {
                        "type": "tool_use",
                        "id": "tool-2",
                        "name": "WebFetch",
                        "input": {"url": "https://docs.example.com/migrations"},
                    },
                ],
                timestamp="2024-01-10T09:00:00.000Z",
                reply_timestamp="2024-01-10T09:00:07.000Z",
                model="claude-opus-4",
            ),
        ],
    )


@pytest.fixture
def conversations(auth_conversation, database_conversation):
    return [auth_conversation, database_conversation]


@pytest.fixture
def sample_session_jsonl(tmp_path):
    """Create a Claude Code JSONL session file inside a project directory."""
    project_dir = tmp_path / "projects" / "-Users-name-Code-webapp"
    project_dir.mkdir(parents=True)
    session_file = project_dir / "session-123.jsonl"

    records = [
        {
            "type": "user",
            "uuid": "msg-001",
            "parentUuid": None,
            "sessionId": "session-123",
            "timestamp": "2024-01-15T10:00:00.000Z",
            "message": {
                "role": "user",
                "content": "<session-start-hook>Project uses FastAPI</session-start-hook>"
                " How do I implement authentication?",
            },
        },
        {
            "type": "assistant",
            "uuid": "msg-002",
            "parentUuid": "msg-001",
            "sessionId": "session-123",
            "timestamp": "2024-01-15T10:00:05.000Z",
            "requestId": "req-1",
            "message": {
                "model": "claude-sonnet-4",
                "id": "resp-1",
                "type": "message",
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "For authentication, you can use JWT tokens..."},
                ],
                "stop_reason": "end_turn",
                "stop_sequence": None,
                "usage": {"input_tokens": 10, "output_tokens": 20},
            },
        },
        {"type": "file-history-snapshot", "messageId": "snap-1", "snapshot": {}},
        {
            "type": "user",
            "uuid": "msg-003",
            "parentUuid": "msg-002",
            "sessionId": "session-123",
            "timestamp": "2024-01-15T10:01:00.000Z",
            "message": {"role": "user", "content": "Can you show me an example?"},
        },
    ]

    with open(session_file, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")
        f.write("{not json\n")

    return session_file
