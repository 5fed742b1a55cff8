"""Full-text search over archived Claude conversation transcripts."""

__version__ = "0.1.0"
