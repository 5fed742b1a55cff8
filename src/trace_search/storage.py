"""JSON file storage for the trace-search index document."""

import json
import os
from pathlib import Path
from typing import Any

from trace_search.indexer import serialize_index
from trace_search.models import INDEX_VERSION, SearchIndex

# Index location
INDEX_DIR = Path.home() / ".local" / "share" / "trace-search"
INDEX_PATH = INDEX_DIR / "index.json"

INDEX_PATH_ENV = "TRACE_SEARCH_INDEX"


class IndexFormatError(Exception):
    """The index file is not a readable index document."""


def default_index_path() -> Path:
    """Index path from TRACE_SEARCH_INDEX, falling back to INDEX_PATH."""
    override = os.environ.get(INDEX_PATH_ENV)
    return Path(override).expanduser() if override else INDEX_PATH


def index_exists(path: Path) -> bool:
    """Check if the index file exists."""
    return path.is_file()


def save_index(index: SearchIndex, path: Path) -> None:
    """Write the index document as JSON, replacing any previous file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(serialize_index(index), encoding="utf-8")
    tmp_path.replace(path)


def load_index(path: Path) -> SearchIndex:
    """Read an index document.

    Raises:
        IndexFormatError: If the file is not valid JSON or has an unsupported version.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise IndexFormatError(f"{path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise IndexFormatError(f"{path} does not contain an index document")

    version = data.get("version")
    if version != INDEX_VERSION:
        raise IndexFormatError(f"Unsupported index version {version!r} (expected {INDEX_VERSION})")

    try:
        return SearchIndex.from_dict(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise IndexFormatError(f"Malformed index document {path}: {e}") from e


def get_index_stats(path: Path) -> dict[str, Any]:
    """Get index statistics."""
    if not index_exists(path):
        return {
            "conversation_count": 0,
            "token_count": 0,
            "index_path": str(path),
            "index_size_human": _format_size(0),
            "generated_at": None,
            "model_counts": {},
        }

    index = load_index(path)
    return {
        "conversation_count": index.metadata.total_conversations,
        "token_count": index.metadata.total_tokens,
        "index_path": str(path),
        "index_size_human": _format_size(path.stat().st_size),
        "generated_at": index.generated_at,
        "model_counts": dict(index.metadata.model_counts),
    }


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
