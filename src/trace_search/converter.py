"""Convert Claude Code JSONL session logs into transcript pairs."""

import json
import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from trace_search.models import ConversationRecord

logger = logging.getLogger(__name__)

# Claude Code sessions location
SESSIONS_DIR = Path.home() / ".claude" / "projects"

SESSION_START_HOOK_RE = re.compile(r"<session-start-hook>(.*?)</session-start-hook>", re.DOTALL)


def discover_sessions(root: Path = SESSIONS_DIR) -> list[Path]:
    """Discover all JSONL session files under root."""
    if not root.exists():
        return []
    return sorted(root.glob("**/*.jsonl"))


def parse_entries(lines: Iterable[str]) -> list[dict[str, Any]]:
    """Parse JSONL lines into entry dicts, skipping blank and malformed lines."""
    entries = []
    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            # Partial records are common at the end of a live session
            logger.debug("Skipping malformed JSONL line %d: %s", line_num, e)
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def _message(entry: dict[str, Any]) -> dict[str, Any]:
    message = entry.get("message")
    return message if isinstance(message, dict) else {}


def build_history(user: dict[str, Any], by_uuid: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
    """Rebuild the message history leading up to a user entry.

    Walks the parentUuid chain back to the root, then appends the user
    message itself.
    """
    messages: list[dict[str, Any]] = []
    seen: set[str] = set()
    parent_uuid = user.get("parentUuid")

    while parent_uuid and parent_uuid not in seen:
        seen.add(parent_uuid)
        parent = by_uuid.get(parent_uuid)
        if parent is None:
            break
        if parent.get("type") in ("user", "assistant"):
            message = _message(parent)
            messages.append(
                {
                    "role": parent["type"],
                    "content": message.get("content") or message.get("role", ""),
                }
            )
        parent_uuid = parent.get("parentUuid")

    messages.reverse()
    message = _message(user)
    messages.append({"role": message.get("role", "user"), "content": message.get("content", "")})
    return messages


def extract_system_prompt(messages: list[dict[str, Any]]) -> str | None:
    """Return the session-start-hook text embedded in the first user message."""
    if not messages or messages[0].get("role") != "user":
        return None
    content = messages[0].get("content")
    if not isinstance(content, str):
        return None
    match = SESSION_START_HOOK_RE.search(content)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def _sort_key(pair: dict[str, Any]) -> datetime:
    ts = pair["request"].get("timestamp")
    if isinstance(ts, str):
        try:
            dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return datetime.min.replace(tzinfo=timezone.utc)


def convert_entries(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Pair each user entry with the assistant entry that answers it.

    Users without an answer produce a pair whose response is None.
    Pairs are returned in request time order.
    """
    by_uuid = {entry["uuid"]: entry for entry in entries if isinstance(entry.get("uuid"), str)}
    users = [entry for entry in entries if entry.get("type") == "user"]

    assistant_by_parent: dict[str, dict[str, Any]] = {}
    for entry in entries:
        if entry.get("type") == "assistant" and entry.get("parentUuid"):
            assistant_by_parent[entry["parentUuid"]] = entry

    pairs = []
    for user in users:
        assistant = assistant_by_parent.get(user.get("uuid", ""))
        if assistant is None:
            message = _message(user)
            pairs.append(
                {
                    "request": {
                        "timestamp": user.get("timestamp"),
                        "messages": [
                            {"role": message.get("role", "user"), "content": message.get("content", "")}
                        ],
                    },
                    "response": None,
                    "note": "Orphaned request (no response recorded)",
                }
            )
            continue

        messages = build_history(user, by_uuid)
        reply = _message(assistant)
        request: dict[str, Any] = {
            "timestamp": user.get("timestamp"),
            "model": reply.get("model"),
            "messages": messages,
        }
        system = extract_system_prompt(messages)
        if system:
            request["system"] = system

        pairs.append(
            {
                "request": request,
                "response": {
                    "timestamp": assistant.get("timestamp"),
                    "model": reply.get("model"),
                    "content": reply.get("content", []),
                    "usage": reply.get("usage", {}),
                    "request_id": assistant.get("requestId"),
                },
            }
        )

    return sorted(pairs, key=_sort_key)


def load_session(path: Path) -> ConversationRecord | None:
    """Read a JSONL session file into a ConversationRecord.

    Returns None if the file cannot be read or holds no user messages.
    """
    try:
        with open(path, encoding="utf-8") as f:
            entries = parse_entries(f)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Cannot read session %s: %s", path, e)
        return None

    pairs = convert_entries(entries)
    if not pairs:
        return None

    # Parent directory keeps ids unique across projects
    return ConversationRecord(
        id=f"{path.parent.name}_{path.stem}",
        pairs=pairs,
        source_file=str(path),
    )
