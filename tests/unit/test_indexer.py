"""Tests for index assembly."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from trace_search import indexer
from trace_search.indexer import (
    IndexBuildError,
    build_index,
    derive_title,
    format_timestamp,
    load_summaries,
    normalize_timestamp,
    serialize_index,
)
from trace_search.models import ConversationRecord, ConversationSummary, SearchIndex


def test_build_index_entries(conversations, now):
    """Test the fields of built index entries."""
    index = build_index(conversations, now=now)

    assert index.version == "1.0"
    assert [entry.id for entry in index.conversations] == ["conv-auth", "conv-db"]

    auth = index.conversations[0]
    assert auth.title == "How do I implement authentication?"
    assert auth.summary is None
    assert auth.start_time == "2024-02-28T10:00:00.000Z"
    assert auth.end_time == "2024-02-28T10:00:05.000Z"
    assert auth.message_count == 2
    assert auth.models == {"claude-sonnet-4"}
    assert auth.token_usage.input == 120
    assert auth.token_usage.output == 80
    assert auth.token_usage.cached == 40
    assert auth.file_paths == {"/src/auth.py"}
    assert auth.source_file == "/logs/auth.jsonl"
    assert auth.searchable_text.startswith("You are a helpful coding assistant.\n\n")


def test_build_index_metadata(conversations, now):
    """Test aggregate index metadata."""
    metadata = build_index(conversations, now=now).metadata

    assert metadata.total_conversations == 2
    assert metadata.total_tokens == (120 + 80) + (100 + 50)
    assert metadata.earliest == "2024-01-10T09:00:00.000Z"
    assert metadata.latest == "2024-02-28T10:00:05.000Z"
    assert metadata.model_counts == {"claude-opus-4": 1, "claude-sonnet-4": 1}
    assert metadata.generated_at == "2024-03-01T12:00:00.000Z"
    assert metadata.index_size > 0


def test_model_counted_once_per_conversation(make_pair, now):
    """Test that a model used twice counts once for its conversation."""
    record = ConversationRecord(
        id="multi",
        pairs=[
            make_pair("first question here", [{"type": "text", "text": "one"}], model="model-a"),
            make_pair("second question here", [{"type": "text", "text": "two"}], model="model-a"),
            make_pair("third question here", [{"type": "text", "text": "three"}], model="model-b"),
        ],
    )
    index = build_index([record], now=now)

    assert index.conversations[0].models == {"model-a", "model-b"}
    assert index.metadata.model_counts == {"model-a": 1, "model-b": 1}


def test_index_size_matches_serialized_document(conversations, now):
    """Test that the recorded size equals the serialized document size."""
    index = build_index(conversations, now=now)
    assert index.metadata.index_size == len(serialize_index(index).encode("utf-8"))


def test_deterministic_except_generation_time(conversations):
    """Test that builds differ only in generation time."""
    first = build_index(conversations, now=datetime(2024, 3, 1, tzinfo=timezone.utc))
    second = build_index(conversations, now=datetime(2024, 6, 1, tzinfo=timezone.utc))

    def without_time(index):
        data = index.to_dict()
        data.pop("generatedAt")
        data["metadata"].pop("generatedAt")
        return json.dumps(data, sort_keys=False)

    assert first.generated_at != second.generated_at
    assert without_time(first) == without_time(second)


def test_builds_do_not_share_state(auth_conversation, database_conversation, now):
    """Test that separate builds produce independent indexes."""
    first = build_index([auth_conversation], now=now)
    second = build_index([database_conversation], now=now)

    assert [entry.id for entry in second.conversations] == ["conv-db"]
    assert "authentication" in first.inverted_index
    assert "authentication" not in second.inverted_index


def test_inverted_index_is_read_only(conversations, now):
    """Test that the inverted index cannot be modified."""
    index = build_index(conversations, now=now)

    with pytest.raises(TypeError):
        index.inverted_index["new"] = []  # type: ignore[index]


def test_round_trip_through_dict(conversations, now):
    """Test that a reloaded index serializes identically."""
    index = build_index(conversations, now=now)
    reloaded = SearchIndex.from_dict(json.loads(serialize_index(index)))

    assert serialize_index(reloaded) == serialize_index(index)


def test_unparseable_records_are_dropped(auth_conversation, now):
    """Test that unusable corpus items are skipped."""
    index = build_index(["not a conversation", 42, auth_conversation, {"id": "x"}], now=now)

    assert [entry.id for entry in index.conversations] == ["conv-auth"]


def test_accepts_bare_pair_lists_and_dicts(make_pair, now):
    """Test the accepted conversation input shapes."""
    pairs = [make_pair("bare pair list question", [{"type": "text", "text": "answer"}])]
    index = build_index(
        [pairs, {"id": "named", "pairs": pairs, "sourceFile": "/x.jsonl", "htmlFile": "/x.html"}],
        now=now,
    )

    assert [entry.id for entry in index.conversations] == ["conversation-0", "named"]
    assert index.conversations[1].html_file == "/x.html"


def test_unreadable_corpus_raises():
    """Test that a non-iterable corpus raises IndexBuildError."""
    with pytest.raises(IndexBuildError):
        build_index(None)  # type: ignore[arg-type]


def test_summary_supplies_title(auth_conversation, now):
    """Test that a supplied summary sets title and summary."""
    summaries = {"conv-auth": ConversationSummary(title="Auth setup", summary="JWT discussion")}
    entry = build_index([auth_conversation], summaries, now=now).conversations[0]

    assert entry.title == "Auth setup"
    assert entry.summary == "JWT discussion"


def test_derive_title_truncates_long_message():
    """Test truncation of titles taken from the first message."""
    message = "x" * 75
    assert derive_title([message], "", None) == "x" * 60 + "..."
    assert derive_title(["short"], "", None) == "short"


def test_derive_title_without_user_messages():
    """Test the fallback title when there is no user message."""
    assert derive_title([], "2024-01-01T00:00:00.000Z", None) == "Conversation 2024-01-01T00:00:00.000Z"
    assert derive_title([], "t", ConversationSummary(title="")) == "Conversation t"


def test_orphaned_pair_uses_request_time(now):
    """Test timing of a pair without a response."""
    record = ConversationRecord(
        id="orphan",
        pairs=[
            {
                "request": {
                    "timestamp": "2024-02-01T08:00:00.000Z",
                    "messages": [{"role": "user", "content": "anyone there?"}],
                },
                "response": None,
            }
        ],
    )
    entry = build_index([record], now=now).conversations[0]

    assert entry.start_time == entry.end_time == "2024-02-01T08:00:00.000Z"
    assert entry.message_count == 1
    assert entry.models == frozenset()


def test_numeric_timestamps_are_normalized():
    """Test normalizing epoch and string timestamps."""
    assert normalize_timestamp(1705312800.5) == "2024-01-15T10:00:00.500Z"
    assert normalize_timestamp("2024-01-15T10:00:00Z") == "2024-01-15T10:00:00Z"
    assert normalize_timestamp(None) == ""
    assert normalize_timestamp(True) == ""


def test_format_timestamp_is_fixed_width():
    """Test that formatted timestamps always have milliseconds."""
    dt = datetime(2024, 1, 2, 3, 4, 5, 6000, tzinfo=timezone.utc)
    assert format_timestamp(dt) == "2024-01-02T03:04:05.006Z"


def test_load_summaries(tmp_path):
    """Test reading a summaries file."""
    path = tmp_path / "summaries.json"
    path.write_text(
        json.dumps({"a": "Plain title", "b": {"title": "Titled", "summary": "Body"}, "c": 3})
    )
    summaries = load_summaries(path)

    assert summaries["a"] == ConversationSummary(title="Plain title")
    assert summaries["b"] == ConversationSummary(title="Titled", summary="Body")
    assert "c" not in summaries


def test_index_size_settles_for_larger_corpus(make_pair, now):
    """Test that the recorded size matches the document across digit-count boundaries."""
    records = [
        ConversationRecord(
            id=f"bulk-{i}",
            pairs=[make_pair(f"question number {i} about caching", [{"type": "text", "text": "answer " * i}])],
        )
        for i in range(40)
    ]
    index = build_index(records, now=now)
    assert index.metadata.index_size == len(serialize_index(index).encode("utf-8"))


def test_deeply_nested_tool_input_does_not_abort_build(auth_conversation, make_pair, now):
    """Test that one conversation with very deep tool input still indexes alongside others."""
    nested = {}
    for _ in range(5000):
        nested = {"child": nested}
    deep = ConversationRecord(
        id="deep",
        pairs=[make_pair("recursive structure", [{"type": "tool_use", "name": "Deep", "input": nested}])],
    )
    index = build_index([deep, auth_conversation], now=now)

    assert [entry.id for entry in index.conversations] == ["deep", "conv-auth"]
    assert index.conversations[0].tool_calls[0].input == ""


def test_failing_conversation_is_dropped(auth_conversation, database_conversation, now):
    """Test that an extraction failure drops only that conversation."""
    real_extract = indexer.extract_content

    def flaky_extract(pairs):
        if pairs is database_conversation.pairs:
            raise ValueError("bad content")
        return real_extract(pairs)

    with patch.object(indexer, "extract_content", flaky_extract):
        index = build_index([auth_conversation, database_conversation], now=now)

    assert [entry.id for entry in index.conversations] == ["conv-auth"]
