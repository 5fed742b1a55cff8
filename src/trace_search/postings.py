"""Inverted index construction over conversation searchable text."""

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from trace_search.models import ConversationIndexEntry, Posting
from trace_search.tokenizer import extract_context, tokenize

logger = logging.getLogger(__name__)

SNIPPET_HALF_WIDTH = 60
MAX_POSTING_SNIPPETS = 3


def token_positions(text: str) -> dict[str, list[int]]:
    """Map each token of text to its character offsets.

    Offsets come from a single forward scan: each token is searched for
    from the end of the previous match, so positions never decrease and
    no substring is matched twice. A token whose text was already passed
    by the cursor is not counted again.
    """
    lowered = text.lower()
    positions: dict[str, list[int]] = {}
    cursor = 0
    for token in tokenize(text):
        offset = lowered.find(token, cursor)
        if offset == -1:
            continue
        positions.setdefault(token, []).append(offset)
        cursor = offset + len(token)
    return positions


def index_conversation(entry: ConversationIndexEntry) -> list[tuple[str, Posting]]:
    """Build the (token, posting) pairs for one conversation."""
    text = entry.searchable_text
    postings = []
    for token, offsets in token_positions(text).items():
        snippets = tuple(
            extract_context(text, offset, SNIPPET_HALF_WIDTH)
            for offset in offsets[:MAX_POSTING_SNIPPETS]
        )
        postings.append(
            (token, Posting(conversation_id=entry.id, positions=tuple(offsets), snippets=snippets))
        )
    return postings


def build_inverted_index(
    entries: Sequence[ConversationIndexEntry], workers: int | None = None
) -> dict[str, list[Posting]]:
    """Build a token -> postings map across all conversations.

    Conversations are indexed independently (optionally on a thread pool)
    and merged in corpus order, so the result does not depend on workers.
    """
    if workers and workers > 1 and len(entries) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            partitions = list(pool.map(index_conversation, entries))
    else:
        partitions = [index_conversation(entry) for entry in entries]

    index: dict[str, list[Posting]] = {}
    for postings in partitions:
        for token, posting in postings:
            index.setdefault(token, []).append(posting)

    logger.debug("Indexed %d tokens across %d conversations", len(index), len(entries))
    return index
