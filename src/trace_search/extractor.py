"""Pull searchable content out of a conversation's transcript pairs."""

import json
import logging
from typing import Any, assert_never

from trace_search.models import (
    ExtractedContent,
    TextBlock,
    ThinkingBlock,
    ToolCall,
    ToolResultBlock,
    ToolUseBlock,
    parse_content_block,
)

logger = logging.getLogger(__name__)

# Tool input keys that name a file
FILE_PATH_KEYS = ("file_path", "path", "filepath", "file")

# Tool inputs nested deeper than this are not scanned for file references
MAX_SCAN_DEPTH = 32

UNKNOWN_ERROR = "Unknown error"


def flatten_content(content: Any) -> str:
    """Flatten message content to text.

    Strings pass through; block arrays keep only their text blocks,
    joined by a blank line.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    texts = []
    for raw in content:
        block = parse_content_block(raw)
        if isinstance(block, TextBlock) and block.text:
            texts.append(block.text)
    return "\n\n".join(texts)


def serialize_tool_input(tool_input: Any) -> str:
    try:
        return json.dumps(tool_input, ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        # Circular, too deeply nested or non-JSON input
        return ""


def collect_file_paths(value: Any, found: set[str], depth: int = 0, seen: set[int] | None = None) -> None:
    """Recursively collect file references from a tool input structure.

    Only dicts and lists are descended into. Cycles and very deep
    nesting stop the scan rather than raising.
    """
    if depth > MAX_SCAN_DEPTH:
        return
    if seen is None:
        seen = set()
    if id(value) in seen:
        return

    if isinstance(value, dict):
        seen.add(id(value))
        for key, item in value.items():
            if key in FILE_PATH_KEYS:
                if isinstance(item, str) and item:
                    found.add(item)
            elif isinstance(item, (dict, list)):
                collect_file_paths(item, found, depth + 1, seen)
    elif isinstance(value, list):
        seen.add(id(value))
        for item in value:
            if isinstance(item, (dict, list)):
                collect_file_paths(item, found, depth + 1, seen)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if not message and isinstance(error.get("error"), dict):
            # Anthropic API shape: {"type": "error", "error": {"message": ...}}
            message = error["error"].get("message")
        return message if isinstance(message, str) and message else UNKNOWN_ERROR
    if isinstance(error, str) and error:
        return error
    return UNKNOWN_ERROR


def _scan_request(request: Any, content: ExtractedContent) -> None:
    if not isinstance(request, dict):
        return

    messages = request.get("messages")
    if isinstance(messages, list):
        for message in messages:
            if not isinstance(message, dict) or message.get("role") != "user":
                continue
            text = flatten_content(message.get("content"))
            if text:
                content.user_messages.append(text)

    if not content.system_prompt:
        content.system_prompt = flatten_content(request.get("system"))


def _scan_response(response: Any, content: ExtractedContent) -> None:
    if not isinstance(response, dict):
        return

    if response.get("error") is not None:
        content.errors.append(_error_message(response["error"]))

    blocks = response.get("content")
    if not isinstance(blocks, list):
        return

    for raw in blocks:
        block = parse_content_block(raw)
        if block is None:
            continue
        match block:
            case TextBlock(text=text):
                if text:
                    content.assistant_messages.append(text)
            case ToolUseBlock(name=name, input=tool_input):
                content.tool_calls.append(ToolCall(name=name, input=serialize_tool_input(tool_input)))
                collect_file_paths(tool_input, content.file_paths)
            case ThinkingBlock() | ToolResultBlock():
                pass
            case _:
                assert_never(block)


def extract_content(pairs: Any) -> ExtractedContent:
    """Extract user/assistant text, tool calls, file paths, errors and the system prompt.

    Malformed pairs or fields are skipped; this never raises on bad input.
    """
    content = ExtractedContent()
    if not isinstance(pairs, list):
        logger.debug("Expected a list of pairs, got %s", type(pairs).__name__)
        return content

    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        _scan_request(pair.get("request"), content)
        _scan_response(pair.get("response"), content)

    return content
