"""
Message splitting and escaping helpers shared by every channel adapter.
"""
from typing import List

# Break points tried in order; each is accepted only past the halfway mark
SPLIT_SEPARATORS = ("\n\n", "\n", ". ", " ")

HTML_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#39;",
}


def split_message(message: str, max_length: int) -> List[str]:
    """
    Split a long message into chunks that fit a platform's character limit.

    Tries to split at natural boundaries (paragraphs, lines, sentences, words)
    to maintain readability. A boundary only counts when it falls at or past
    half of `max_length`; otherwise the chunk is hard-cut at `max_length - 1`.

    Args:
        message: The message to split
        max_length: Maximum length per chunk

    Returns:
        List of trimmed message chunks, each at most max_length characters
    """
    if max_length < 2:
        raise ValueError(f"max_length must be at least 2, got {max_length}")

    if len(message) <= max_length:
        return [message.strip()]

    chunks = []
    remaining = message

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        window = remaining[:max_length]
        break_point = -1
        for separator in SPLIT_SEPARATORS:
            candidate = window.rfind(separator)
            if candidate >= max_length * 0.5:
                break_point = candidate
                break
        if break_point < 0:
            # No good boundary: hard cut
            break_point = max_length - 1

        chunk = remaining[:break_point + 1].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[break_point + 1:].strip()

    return chunks


def needs_splitting(message: str, max_length: int) -> bool:
    """Check if a message needs to be split"""
    return len(message) > max_length


def escape_html(text: str) -> str:
    """Escape &, <, >, " and ' as HTML entities."""
    return "".join(HTML_ENTITIES.get(char, char) for char in text)
