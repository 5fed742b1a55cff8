"""Ranked, filtered search over a built index.

Retrieval runs on an in-memory SQLite FTS5 table holding each
conversation's title, summary and searchable text, pre-tokenized with the
same rules as the inverted index. Query tokens match as prefixes and are
widened with close vocabulary neighbours (rapidfuzz) so small typos still
hit. Ranking is FTS5 bm25 with title weighted above summary above body.

Filters run after retrieval and never touch the score. The scope filter
is a raw, case-insensitive substring test of the whole query against the
scoped text, not a token match.
"""

import logging
import re
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rapidfuzz import fuzz, process
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from trace_search.models import ConversationIndexEntry, SearchFilters, SearchHit, SearchIndex
from trace_search.tokenizer import extract_context, tokenize

logger = logging.getLogger(__name__)
console = Console()

# Column weights for bm25(): id (unindexed), title, summary, body
FIELD_WEIGHTS = (0.0, 10.0, 5.0, 1.0)

MAX_RESULTS = 50
MAX_QUERY_TOKENS = 16
FUZZY_SCORE_CUTOFF = 80
FUZZY_NEIGHBOURS = 5

SNIPPET_HALF_WIDTH = 60
MAX_SNIPPETS = 3
HIGHLIGHT_OPEN = "<mark>"
HIGHLIGHT_CLOSE = "</mark>"

# Maximum age in days for each time range
TIME_WINDOWS = {"today": 1, "week": 7, "month": 30}


def init_fts(conn: sqlite3.Connection, entries: Iterable[ConversationIndexEntry]) -> None:
    """Create and fill the full-text table."""
    conn.execute(
        """
        CREATE VIRTUAL TABLE conversations_fts USING fts5(
            id UNINDEXED,
            title,
            summary,
            body,
            tokenize = "unicode61 tokenchars '_'"
        )
        """
    )
    conn.executemany(
        "INSERT INTO conversations_fts (id, title, summary, body) VALUES (?, ?, ?, ?)",
        (
            (
                entry.id,
                " ".join(tokenize(entry.title)),
                " ".join(tokenize(entry.summary or "")),
                " ".join(tokenize(entry.searchable_text)),
            )
            for entry in entries
        ),
    )
    conn.commit()


def query_tokens(query: str) -> list[str]:
    """Tokenize a query, dropping repeats and capping the count."""
    return list(dict.fromkeys(tokenize(query)))[:MAX_QUERY_TOKENS]


def fuzzy_neighbours(token: str, vocabulary: Sequence[str]) -> list[str]:
    matches = process.extract(
        token,
        vocabulary,
        scorer=fuzz.ratio,
        score_cutoff=FUZZY_SCORE_CUTOFF,
        limit=FUZZY_NEIGHBOURS,
    )
    return [choice for choice, _score, _index in matches if choice != token]


def build_match_expression(tokens: Sequence[str], vocabulary: Sequence[str]) -> str:
    """Build an FTS5 MATCH expression: each token as a prefix, OR'd with its fuzzy neighbours."""
    groups = []
    for token in tokens:
        terms = [f'"{token}"*']
        terms.extend(f'"{neighbour}"' for neighbour in fuzzy_neighbours(token, vocabulary))
        groups.append("(" + " OR ".join(terms) + ")")
    return " OR ".join(groups)


def scope_text(entry: ConversationIndexEntry, scope: str) -> str | None:
    """Return the raw text a scope restricts matching to, or None for no restriction."""
    if scope == "user":
        return " ".join(entry.user_messages)
    if scope == "assistant":
        return " ".join(entry.assistant_messages)
    if scope == "tools":
        return " ".join(call.name for call in entry.tool_calls)
    return None


def matches_scope(entry: ConversationIndexEntry, query: str, scope: str) -> bool:
    text = scope_text(entry, scope)
    if text is None:
        return True
    return query.lower() in text.lower()


def matches_models(entry: ConversationIndexEntry, models: frozenset[str]) -> bool:
    if not models:
        return True
    return bool(entry.models & models)


def parse_timestamp(value: str) -> datetime | None:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def matches_time_range(entry: ConversationIndexEntry, time_range: str, now: datetime) -> bool:
    max_days = TIME_WINDOWS.get(time_range)
    if max_days is None:
        return True
    started = parse_timestamp(entry.start_time)
    if started is None:
        return True
    age_days = (now - started).total_seconds() / 86400
    return age_days < max_days


def highlight(text: str, tokens: Sequence[str]) -> str:
    """Wrap every case-insensitive occurrence of any token in highlight markers."""
    if not tokens:
        return text
    # Longest first so overlapping tokens mark the widest match
    alternatives = sorted(set(tokens), key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(token) for token in alternatives), re.IGNORECASE)
    return pattern.sub(lambda m: f"{HIGHLIGHT_OPEN}{m.group()}{HIGHLIGHT_CLOSE}", text)


def snippet_fields(entry: ConversationIndexEntry, scope: str) -> list[str]:
    user = "\n".join(entry.user_messages)
    assistant = "\n".join(entry.assistant_messages)
    tools = "\n".join(call.summary() for call in entry.tool_calls)
    if scope == "user":
        return [user]
    if scope == "assistant":
        return [assistant]
    if scope == "tools":
        return [tools]
    return [user, assistant, tools]


def extract_snippets(entry: ConversationIndexEntry, tokens: Sequence[str], scope: str) -> list[str]:
    """Build up to MAX_SNIPPETS highlighted snippets, at most one per field."""
    snippets: list[str] = []
    for text in snippet_fields(entry, scope):
        if len(snippets) >= MAX_SNIPPETS:
            break
        for token in tokens:
            match = re.search(re.escape(token), text, re.IGNORECASE)
            if match is None:
                continue
            window = extract_context(text, match.start(), SNIPPET_HALF_WIDTH)
            snippets.append(highlight(window, tokens))
            break
    return snippets


class QueryEngine:
    """Runs queries against one immutable SearchIndex.

    The full-text table lives in a shared-cache in-memory database; each
    thread reads through its own connection.
    """

    def __init__(self, index: SearchIndex) -> None:
        self.index = index
        self._entries = {entry.id: entry for entry in index.conversations}
        self._uri = f"file:trace-search-{uuid.uuid4().hex}?mode=memory&cache=shared"
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []

        # Keeps the in-memory database alive for the engine's lifetime
        self._owner = self._connect()
        init_fts(self._owner, index.conversations)

        vocabulary = set(index.inverted_index)
        for entry in index.conversations:
            vocabulary.update(tokenize(entry.title))
            vocabulary.update(tokenize(entry.summary or ""))
        self._vocabulary = sorted(vocabulary)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._uri, uri=True, check_same_thread=False)
        self._connections.append(conn)
        return conn

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    def close(self) -> None:
        for conn in self._connections:
            conn.close()
        self._connections.clear()

    def __enter__(self) -> "QueryEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def retrieve(self, tokens: Sequence[str]) -> list[tuple[str, float]]:
        """Return (conversation_id, score) pairs, best first."""
        expression = build_match_expression(tokens, self._vocabulary)
        weights = ", ".join(str(weight) for weight in FIELD_WEIGHTS)
        sql = f"""
            SELECT id, bm25(conversations_fts, {weights}) AS score
            FROM conversations_fts
            WHERE conversations_fts MATCH ?
            ORDER BY score
        """
        try:
            rows = self._reader().execute(sql, (expression,)).fetchall()
        except sqlite3.OperationalError as e:
            logger.warning("Full-text query %r failed: %s", expression, e)
            return []
        # bm25() is negative, lower is better
        return [(row[0], -row[1]) for row in rows]

    def search(
        self,
        query: str,
        filters: SearchFilters | dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[SearchHit]:
        """Search conversations, filter, rank and attach highlighted snippets.

        A blank query returns no results.
        """
        if not query or not query.strip():
            return []

        if filters is None:
            filters = SearchFilters()
        elif isinstance(filters, dict):
            filters = SearchFilters.from_dict(filters)

        tokens = query_tokens(query)
        if not tokens:
            return []

        now = now or datetime.now(tz=timezone.utc)
        ranked: list[tuple[ConversationIndexEntry, float]] = []
        for conversation_id, score in self.retrieve(tokens):
            entry = self._entries.get(conversation_id)
            if entry is None:
                continue
            if not matches_scope(entry, query, filters.scope):
                continue
            if not matches_models(entry, filters.models):
                continue
            if not matches_time_range(entry, filters.time_range, now):
                continue
            ranked.append((entry, score))

        ranked.sort(key=lambda item: item[1], reverse=True)

        return [
            SearchHit(
                id=entry.id,
                score=score,
                title=entry.title,
                start_time=entry.start_time,
                models=sorted(entry.models),
                message_count=entry.message_count,
                snippets=extract_snippets(entry, tokens, filters.scope),
            )
            for entry, score in ranked[:MAX_RESULTS]
        ]


def render_snippet(snippet: str) -> str:
    """Turn highlight markers into Rich markup."""
    text = escape(snippet)
    return text.replace(HIGHLIGHT_OPEN, "[bold yellow]").replace(HIGHLIGHT_CLOSE, "[/bold yellow]")


def _age(start_time: str) -> str:
    started = parse_timestamp(start_time)
    if started is None:
        return "unknown time"
    age = datetime.now(tz=timezone.utc) - started
    if age.days > 0:
        return f"{age.days} days ago"
    if age.seconds > 3600:
        return f"{age.seconds // 3600} hours ago"
    return f"{age.seconds // 60} minutes ago"


def format_human_output(hits: list[SearchHit], search_time_ms: int) -> None:
    """Format results for human-readable output."""
    if not hits:
        console.print("[yellow]No results found. Try a different query.[/yellow]")
        return

    max_score = max(hit.score for hit in hits)

    for i, hit in enumerate(hits, 1):
        score_pct = int((hit.score / max_score) * 100) if max_score > 0 else 0

        header = Text()
        header.append(f"[{i}] ", style="bold cyan")
        header.append(hit.title, style="green")
        header.append(f" | {_age(hit.start_time)}", style="dim")
        header.append(f" | {score_pct}%", style="dim")

        body = "\n\n".join(render_snippet(snippet) for snippet in hit.snippets) or "[dim]no snippet[/dim]"
        models = ", ".join(hit.models) or "unknown model"
        panel = Panel(
            body,
            title=header,
            subtitle=f"→ {hit.id} | {models} | {hit.message_count} messages",
            subtitle_align="left",
        )
        console.print(panel)
        console.print()

    console.print("─" * 50)
    console.print(f"Found {len(hits)} results in {search_time_ms}ms")


def format_json_output(hits: list[SearchHit], query: str, search_time_ms: int) -> None:
    """Format results as JSON for programmatic use."""
    output = {
        "results": [hit.to_dict() for hit in hits],
        "query": query,
        "total_results": len(hits),
        "search_time_ms": search_time_ms,
    }
    console.print_json(data=output)


def perform_search(
    query: str,
    index_path: Path,
    filters: SearchFilters,
    limit: int = 10,
    json_output: bool = False,
) -> None:
    """Load the index, run a search and display results."""
    from trace_search.storage import index_exists, load_index

    if not index_exists(index_path):
        console.print(
            f"[yellow]No index found at {index_path}. Run 'trace-search index' first.[/yellow]"
        )
        return

    index = load_index(index_path)
    start_time = time.time()
    with QueryEngine(index) as engine:
        hits = engine.search(query, filters)[:limit]
    search_time_ms = int((time.time() - start_time) * 1000)

    if json_output:
        format_json_output(hits, query, search_time_ms)
    else:
        format_human_output(hits, search_time_ms)
