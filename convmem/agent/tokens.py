"""Approximate token estimation for compaction decisions."""

from collections.abc import Iterable

from convmem.session.records import ChatRecord

CHARS_PER_TOKEN = 4  # Non-logographic text (EN text/code/JSON)

# CJK ideograph blocks: one character costs about one token.
WIDE_GLYPH_RANGES = (
    (0x4E00, 0x9FFF),    # CJK Unified Ideographs
    (0x3400, 0x4DBF),    # Extension A
    (0x20000, 0x2A6DF),  # Extension B
    (0x2A700, 0x2B73F),  # Extension C
    (0x2B740, 0x2B81F),  # Extension D
    (0x2B820, 0x2CEAF),  # Extension E
    (0xF900, 0xFAFF),    # Compatibility Ideographs
    (0x2F800, 0x2FA1F),  # Compatibility Ideographs Supplement
)


def is_wide_glyph(char: str) -> bool:
    """Check if a character falls in a logographic range."""
    cp = ord(char)
    return any(lo <= cp <= hi for lo, hi in WIDE_GLYPH_RANGES)


def estimate_tokens(text: str) -> int:
    """Estimate token count: 1 per wide glyph, 1 per 4 other characters (floored)."""
    wide = sum(1 for ch in text if is_wide_glyph(ch))
    other = len(text) - wide
    return wide + other // CHARS_PER_TOKEN


def render_records(records: Iterable[ChatRecord]) -> str:
    """Render records as ``role: content`` lines."""
    return "".join(f"{r.render()}\n" for r in records)


def estimate_records_tokens(records: Iterable[ChatRecord]) -> int:
    """Estimate the cost of records as they are rendered for summarization."""
    return estimate_tokens(render_records(records))
