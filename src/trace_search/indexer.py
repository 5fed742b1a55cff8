"""Assemble the search index document from conversation records."""

import dataclasses
import json
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from trace_search.converter import SESSIONS_DIR, discover_sessions, load_session
from trace_search.extractor import extract_content
from trace_search.models import (
    INDEX_VERSION,
    ConversationIndexEntry,
    ConversationRecord,
    ConversationSummary,
    SearchIndex,
    SearchMetadata,
    TokenUsage,
    freeze_inverted_index,
)
from trace_search.postings import build_inverted_index

logger = logging.getLogger(__name__)
console = Console()

TITLE_MAX_CHARS = 60
SIZE_PASSES = 4


class IndexBuildError(Exception):
    """The conversation corpus could not be read."""


def format_timestamp(dt: datetime) -> str:
    """Format as fixed-width ISO-8601 UTC with milliseconds (2024-01-15T10:00:00.000Z)."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def normalize_timestamp(value: Any) -> str:
    """Return a timestamp as an ISO-8601 string.

    Strings pass through untouched; epoch seconds are converted.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return format_timestamp(datetime.fromtimestamp(value, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return ""
    return ""


def parse_record(raw: Any, position: int) -> ConversationRecord:
    """Coerce a raw corpus item into a ConversationRecord.

    Accepts a record, a bare list of pairs, or a dict with a "pairs" list.
    Raises ValueError for anything else.
    """
    if isinstance(raw, ConversationRecord):
        if not isinstance(raw.pairs, list):
            raise ValueError(f"conversation {raw.id!r} has no pair list")
        return raw
    if isinstance(raw, list):
        return ConversationRecord(id=f"conversation-{position}", pairs=raw)
    if isinstance(raw, dict) and isinstance(raw.get("pairs"), list):
        return ConversationRecord(
            id=str(raw.get("id") or f"conversation-{position}"),
            pairs=raw["pairs"],
            source_file=str(raw.get("sourceFile") or ""),
            html_file=str(raw.get("htmlFile") or ""),
        )
    raise ValueError(f"unrecognized conversation record of type {type(raw).__name__}")


def _count(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def sum_usage(pairs: list[Any]) -> TokenUsage:
    input_tokens = output_tokens = cached_tokens = 0
    for pair in pairs:
        response = pair.get("response") if isinstance(pair, dict) else None
        usage = response.get("usage") if isinstance(response, dict) else None
        if not isinstance(usage, dict):
            continue
        input_tokens += _count(usage.get("input_tokens"))
        output_tokens += _count(usage.get("output_tokens"))
        cached_tokens += _count(usage.get("cache_read_input_tokens"))
        cached_tokens += _count(usage.get("cache_creation_input_tokens"))
    return TokenUsage(input=input_tokens, output=output_tokens, cached=cached_tokens)


def collect_models(pairs: list[Any]) -> frozenset[str]:
    models = set()
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        for side in ("response", "request"):
            part = pair.get(side)
            model = part.get("model") if isinstance(part, dict) else None
            if isinstance(model, str) and model and model != "unknown":
                models.add(model)
                break
    return frozenset(models)


def _side(pair: Any, side: str) -> dict[str, Any]:
    part = pair.get(side) if isinstance(pair, dict) else None
    return part if isinstance(part, dict) else {}


def time_window(pairs: list[Any]) -> tuple[str, str]:
    """Start is the first request time; end is the last response (or request) time."""
    if not pairs:
        return "", ""
    start = normalize_timestamp(_side(pairs[0], "request").get("timestamp"))
    last = pairs[-1]
    end = normalize_timestamp(_side(last, "response").get("timestamp")) or normalize_timestamp(
        _side(last, "request").get("timestamp")
    )
    return start, end or start


def count_messages(pairs: list[Any]) -> int:
    count = 0
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        if isinstance(pair.get("request"), dict):
            count += 1
        if isinstance(pair.get("response"), dict):
            count += 1
    return count


def derive_title(
    user_messages: list[str], start_time: str, summary: ConversationSummary | None
) -> str:
    if summary is not None and summary.title:
        return summary.title
    if user_messages:
        first = user_messages[0]
        if len(first) > TITLE_MAX_CHARS:
            return first[:TITLE_MAX_CHARS] + "..."
        return first
    return f"Conversation {start_time}"


def build_entry(
    record: ConversationRecord, summary: ConversationSummary | None = None
) -> ConversationIndexEntry:
    """Extract one conversation's content and metadata into an index entry."""
    content = extract_content(record.pairs)
    start_time, end_time = time_window(record.pairs)

    return ConversationIndexEntry(
        id=record.id,
        source_file=record.source_file,
        html_file=record.html_file,
        title=derive_title(content.user_messages, start_time, summary),
        summary=summary.summary if summary is not None else None,
        start_time=start_time,
        end_time=end_time,
        message_count=count_messages(record.pairs),
        models=collect_models(record.pairs),
        token_usage=sum_usage(record.pairs),
        searchable_text=content.searchable_text(),
        user_messages=tuple(content.user_messages),
        assistant_messages=tuple(content.assistant_messages),
        tool_calls=tuple(content.tool_calls),
        file_paths=frozenset(content.file_paths),
        errors=tuple(content.errors),
        system_prompt=content.system_prompt,
    )


def build_metadata(
    entries: list[ConversationIndexEntry], generated_at: str
) -> SearchMetadata:
    # Fixed-width ISO strings compare correctly as plain strings
    starts = [entry.start_time for entry in entries if entry.start_time]
    ends = [entry.end_time for entry in entries if entry.end_time]

    model_counts: Counter[str] = Counter()
    for entry in entries:
        model_counts.update(entry.models)

    return SearchMetadata(
        total_conversations=len(entries),
        total_tokens=sum(entry.token_usage.input + entry.token_usage.output for entry in entries),
        earliest=min(starts) if starts else "",
        latest=max(ends) if ends else "",
        model_counts=dict(sorted(model_counts.items())),
        index_size=0,
        generated_at=generated_at,
    )


def serialize_index(index: SearchIndex) -> str:
    return json.dumps(index.to_dict(), ensure_ascii=False, separators=(",", ":"))


def build_index(
    conversations: Iterable[Any],
    summaries: Mapping[str, ConversationSummary] | None = None,
    *,
    now: datetime | None = None,
    workers: int | None = None,
) -> SearchIndex:
    """Build a search index document from conversation records.

    Each call starts from empty accumulators. Records that cannot be
    parsed are logged and skipped; only an unreadable corpus raises.

    Args:
        conversations: Records, bare pair lists, or {"id", "pairs", ...} dicts.
        summaries: Optional titles/summaries keyed by conversation id.
        now: Generation time (defaults to the current UTC time).
        workers: Thread count for per-conversation indexing.
    """
    try:
        items = list(conversations)
    except TypeError as e:
        raise IndexBuildError(f"Cannot read conversation list: {e}") from e

    summaries = summaries or {}
    entries: list[ConversationIndexEntry] = []
    for position, raw in enumerate(items):
        try:
            record = parse_record(raw, position)
        except ValueError as e:
            logger.warning("Skipping conversation %d: %s", position, e)
            continue
        try:
            entries.append(build_entry(record, summaries.get(record.id)))
        except (RecursionError, TypeError, ValueError) as e:
            logger.warning("Skipping conversation %s: %s", record.id, e)

    inverted_index = build_inverted_index(entries, workers=workers)
    generated_at = format_timestamp(now or datetime.now(tz=timezone.utc))

    index = SearchIndex(
        version=INDEX_VERSION,
        generated_at=generated_at,
        conversations=tuple(entries),
        inverted_index=freeze_inverted_index(inverted_index),
        metadata=build_metadata(entries, generated_at),
    )
    # The size is part of the document it measures; settle it in a few passes
    for _ in range(SIZE_PASSES):
        size = len(serialize_index(index).encode("utf-8"))
        if size == index.metadata.index_size:
            break
        index = dataclasses.replace(index, metadata=dataclasses.replace(index.metadata, index_size=size))
    logger.debug("Built index of %d conversations (%d bytes)", len(entries), index.metadata.index_size)
    return index


def load_summaries(path: Path) -> dict[str, ConversationSummary]:
    """Read a {conversation_id: {"title", "summary"}} JSON file."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")

    summaries = {}
    for conversation_id, value in data.items():
        if isinstance(value, str):
            summaries[conversation_id] = ConversationSummary(title=value)
        elif isinstance(value, dict):
            summaries[conversation_id] = ConversationSummary(
                title=str(value.get("title") or ""), summary=value.get("summary")
            )
    return summaries


def index_sessions(
    sessions_dir: Path = SESSIONS_DIR,
    summaries: Mapping[str, ConversationSummary] | None = None,
    dry_run: bool = False,
    workers: int | None = None,
) -> SearchIndex | None:
    """Convert Claude Code session logs and build an index from them.

    Returns None when there is nothing to index or on a dry run.
    """
    session_paths = discover_sessions(sessions_dir)
    if not session_paths:
        console.print(f"[yellow]No session files found in {sessions_dir}[/yellow]")
        return None

    console.print(f"Found {len(session_paths)} session files")

    if dry_run:
        console.print(f"[yellow]Dry run - would index {len(session_paths)} sessions:[/yellow]")
        by_project: dict[str, list[Path]] = {}
        for path in session_paths:
            by_project.setdefault(path.parent.name, []).append(path)
        for project, paths in sorted(by_project.items()):
            console.print(f"  [cyan]{project}[/cyan]: {len(paths)} sessions")
        return None

    records: list[ConversationRecord] = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        parse_task = progress.add_task("Converting sessions...", total=len(session_paths))
        for path in session_paths:
            record = load_session(path)
            if record is not None:
                records.append(record)
            progress.advance(parse_task)

    if not records:
        console.print("[yellow]No content to index[/yellow]")
        return None

    console.print(f"Indexing {len(records)} conversations...")
    index = build_index(records, summaries, workers=workers)
    token_count = len(index.inverted_index)
    console.print(
        f"[green]Indexed {index.metadata.total_conversations} conversations "
        f"with {token_count} distinct tokens[/green]"
    )
    return index
