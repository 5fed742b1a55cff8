"""Tokenization and context windows shared by indexing and search."""

import re

# Tokens this short carry no search value
MIN_TOKEN_LENGTH = 3

STOPWORDS = frozenset(
    {
        # articles, determiners
        "the", "a", "an", "this", "that", "these", "those",
        # conjunctions, prepositions
        "and", "or", "but", "nor", "so", "yet", "for", "of", "to", "in", "on",
        "at", "by", "with", "from", "as", "into", "about", "than", "then",
        # auxiliaries
        "is", "are", "was", "were", "be", "been", "being", "am",
        "have", "has", "had", "do", "does", "did",
        "will", "would", "shall", "should", "can", "could", "may", "might", "must",
        # pronouns
        "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
        "my", "your", "his", "its", "our", "their",
        # misc
        "not", "if", "there", "what", "which", "who", "all", "just",
    }
)

_SPLIT_RE = re.compile(r"\W+")


def tokenize(text: str) -> list[str]:
    """Lowercase and split text into search tokens.

    Tokens shorter than MIN_TOKEN_LENGTH and stopwords are dropped.
    """
    return [
        token
        for token in _SPLIT_RE.split(text.lower())
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    ]


def extract_context(text: str, position: int, half_width: int) -> str:
    """Return the text within half_width characters of position.

    Ellipses mark each side where the window was cut short of the text.
    """
    start = max(0, position - half_width)
    end = min(len(text), position + half_width)
    context = text[start:end]
    if start > 0:
        context = "..." + context
    if end < len(text):
        context = context + "..."
    return context
