"""Data models for trace-search."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

INDEX_VERSION = "1.0"


# Content blocks (closed tagged variant)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Any


@dataclass(frozen=True)
class ToolResultBlock:
    content: Any


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_content_block(raw: Any) -> ContentBlock | None:
    """Map a raw content block dict onto its variant.

    Unknown block types and non-dict values return None.
    """
    if not isinstance(raw, dict):
        return None

    block_type = raw.get("type")
    if block_type == "text":
        return TextBlock(text=_str(raw.get("text")))
    if block_type == "thinking":
        return ThinkingBlock(thinking=_str(raw.get("thinking")))
    if block_type == "tool_use":
        return ToolUseBlock(name=_str(raw.get("name")), input=raw.get("input", {}))
    if block_type == "tool_result":
        return ToolResultBlock(content=raw.get("content"))
    return None


# Extraction output


@dataclass
class ToolCall:
    """A tool invocation: name plus its JSON-serialized input."""

    name: str
    input: str

    def summary(self) -> str:
        return f"{self.name}: {self.input}"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "input": self.input}


@dataclass
class ExtractedContent:
    """Searchable content pulled out of one conversation."""

    user_messages: list[str] = field(default_factory=list)
    assistant_messages: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    file_paths: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)
    system_prompt: str = ""

    def searchable_text(self) -> str:
        """Concatenate content in fixed order, skipping empty parts."""
        parts = [self.system_prompt, *self.user_messages, *self.assistant_messages]
        parts.extend(call.summary() for call in self.tool_calls)
        return "\n\n".join(part for part in parts if part)


# Input records


@dataclass
class ConversationRecord:
    """One conversation handed to the indexer: an ordered list of transcript pairs."""

    id: str
    pairs: list[dict[str, Any]]
    source_file: str = ""
    html_file: str = ""


@dataclass
class ConversationSummary:
    title: str = ""
    summary: str | None = None


# Index document


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    cached: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "cached": self.cached}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenUsage":
        return cls(
            input=int(data.get("input", 0)),
            output=int(data.get("output", 0)),
            cached=int(data.get("cached", 0)),
        )


@dataclass(frozen=True)
class ConversationIndexEntry:
    """A conversation as stored in the search index."""

    id: str
    source_file: str
    html_file: str
    title: str
    summary: str | None
    start_time: str
    end_time: str
    message_count: int
    models: frozenset[str]
    token_usage: TokenUsage
    searchable_text: str
    user_messages: tuple[str, ...] = ()
    assistant_messages: tuple[str, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    file_paths: frozenset[str] = frozenset()
    errors: tuple[str, ...] = ()
    system_prompt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceFile": self.source_file,
            "htmlFile": self.html_file,
            "title": self.title,
            "summary": self.summary,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "messageCount": self.message_count,
            "models": sorted(self.models),
            "tokenUsage": self.token_usage.to_dict(),
            "searchableText": self.searchable_text,
            "userMessages": list(self.user_messages),
            "assistantMessages": list(self.assistant_messages),
            "toolCalls": [call.to_dict() for call in self.tool_calls],
            "filePaths": sorted(self.file_paths),
            "errors": list(self.errors),
            "systemPrompt": self.system_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationIndexEntry":
        return cls(
            id=data["id"],
            source_file=data.get("sourceFile", ""),
            html_file=data.get("htmlFile", ""),
            title=data.get("title", ""),
            summary=data.get("summary"),
            start_time=data.get("startTime", ""),
            end_time=data.get("endTime", ""),
            message_count=int(data.get("messageCount", 0)),
            models=frozenset(data.get("models", [])),
            token_usage=TokenUsage.from_dict(data.get("tokenUsage", {})),
            searchable_text=data.get("searchableText", ""),
            user_messages=tuple(data.get("userMessages", [])),
            assistant_messages=tuple(data.get("assistantMessages", [])),
            tool_calls=tuple(
                ToolCall(name=call.get("name", ""), input=call.get("input", ""))
                for call in data.get("toolCalls", [])
            ),
            file_paths=frozenset(data.get("filePaths", [])),
            errors=tuple(data.get("errors", [])),
            system_prompt=data.get("systemPrompt", ""),
        )


@dataclass(frozen=True)
class Posting:
    """Occurrences of one token within one conversation."""

    conversation_id: str
    positions: tuple[int, ...]
    snippets: tuple[str, ...] = ()

    @property
    def frequency(self) -> int:
        return len(self.positions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "positions": list(self.positions),
            "frequency": self.frequency,
            "snippets": list(self.snippets),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Posting":
        return cls(
            conversation_id=data["conversationId"],
            positions=tuple(data.get("positions", [])),
            snippets=tuple(data.get("snippets", [])),
        )


InvertedIndex = Mapping[str, Sequence[Posting]]


def freeze_inverted_index(index: Mapping[str, Sequence[Posting]]) -> InvertedIndex:
    """Return a read-only view with tuple posting lists."""
    return MappingProxyType({token: tuple(postings) for token, postings in index.items()})


@dataclass(frozen=True)
class SearchMetadata:
    total_conversations: int
    total_tokens: int
    earliest: str
    latest: str
    model_counts: dict[str, int]
    index_size: int
    generated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalConversations": self.total_conversations,
            "totalTokens": self.total_tokens,
            "dateRange": {"earliest": self.earliest, "latest": self.latest},
            "modelCounts": dict(self.model_counts),
            "indexSize": self.index_size,
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchMetadata":
        date_range = data.get("dateRange", {})
        return cls(
            total_conversations=int(data.get("totalConversations", 0)),
            total_tokens=int(data.get("totalTokens", 0)),
            earliest=date_range.get("earliest", ""),
            latest=date_range.get("latest", ""),
            model_counts=dict(data.get("modelCounts", {})),
            index_size=int(data.get("indexSize", 0)),
            generated_at=data.get("generatedAt", ""),
        )


@dataclass(frozen=True)
class SearchIndex:
    """The root index document. Read-only once built."""

    version: str
    generated_at: str
    conversations: tuple[ConversationIndexEntry, ...]
    inverted_index: InvertedIndex
    metadata: SearchMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "conversations": [entry.to_dict() for entry in self.conversations],
            "invertedIndex": {
                token: [posting.to_dict() for posting in postings]
                for token, postings in self.inverted_index.items()
            },
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchIndex":
        return cls(
            version=data["version"],
            generated_at=data.get("generatedAt", ""),
            conversations=tuple(
                ConversationIndexEntry.from_dict(entry) for entry in data.get("conversations", [])
            ),
            inverted_index=freeze_inverted_index(
                {
                    token: [Posting.from_dict(posting) for posting in postings]
                    for token, postings in data.get("invertedIndex", {}).items()
                }
            ),
            metadata=SearchMetadata.from_dict(data.get("metadata", {})),
        )


# Query side


@dataclass(frozen=True)
class SearchFilters:
    """Post-retrieval filters. Unknown values disable that dimension."""

    scope: str = "all"  # "all" | "user" | "assistant" | "tools"
    time_range: str = "all"  # "all" | "today" | "week" | "month"
    models: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchFilters":
        return cls(
            scope=str(data.get("scope", "all")),
            time_range=str(data.get("timeRange", data.get("time_range", "all"))),
            models=_model_selection(data.get("models")),
        )


def _model_selection(value: Any) -> frozenset[str]:
    """Normalize a models filter value; anything unrecognized means no filter."""
    if isinstance(value, str):
        return frozenset({value}) if value else frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(item for item in value if isinstance(item, str))
    return frozenset()


@dataclass
class SearchHit:
    """A ranked conversation with highlighted snippets."""

    id: str
    score: float
    title: str
    start_time: str
    models: list[str]
    message_count: int
    snippets: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "title": self.title,
            "startTime": self.start_time,
            "models": list(self.models),
            "messageCount": self.message_count,
            "snippets": list(self.snippets),
        }
