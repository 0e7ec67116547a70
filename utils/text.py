"""
Grapheme-aware text utilities.

Bluesky counts post length in user-perceived characters (extended grapheme
clusters), so every size check and split here works on graphemes rather than
code points or bytes.
"""

import unicodedata

import regex

_GRAPHEME = regex.compile(r"\X")

# A break point must lie past this share of the chunk budget
BREAK_THRESHOLD = 0.7


def graphemes(text: str) -> list[str]:
    """Split text into extended grapheme clusters."""
    return _GRAPHEME.findall(text)


def count_graphemes(text: str) -> int:
    """Count user-perceived characters in text."""
    return len(graphemes(text))


def _is_break(cluster: str) -> bool:
    first = cluster[0]
    return first.isspace() or unicodedata.category(first).startswith("P")


def first_marker(total: int) -> str:
    """Suffix appended to the first chunk of a thread."""
    return f" (1/{total})"


def continuation_marker(part: int, total: int) -> str:
    """Prefix prepended to every later chunk of a thread."""
    return f"…({part}/{total}) "


def _take_chunk(clusters: list[str], start: int, budget: int) -> int:
    """
    Pick the end index (exclusive) of the next chunk.

    Prefers the last whitespace/punctuation cluster inside the budget when it
    sits past BREAK_THRESHOLD of the budget, otherwise hard-breaks at the
    budget. Always advances by at least one cluster.
    """
    end = min(start + budget, len(clusters))
    if end == len(clusters):
        return end

    last_break = 0
    for offset, cluster in enumerate(clusters[start:end], 1):
        if _is_break(cluster):
            last_break = offset

    if last_break and last_break > budget * BREAK_THRESHOLD:
        return start + last_break
    return end


def _marker_reserves(total_digits: int) -> tuple[int, int]:
    """Graphemes taken by the first and the widest later marker for a chunk count of this width."""
    widest = 10 ** total_digits - 1
    return (
        count_graphemes(first_marker(10 ** (total_digits - 1))),
        count_graphemes(continuation_marker(widest, widest)),
    )


def _split_with_reservation(text: str, max_graphemes: int, first_reserve: int, later_reserve: int) -> list[str]:
    clusters = graphemes(text)
    chunks: list[str] = []
    pos = 0

    while pos < len(clusters):
        reserve = first_reserve if not chunks else later_reserve
        budget = max_graphemes - reserve

        end = _take_chunk(clusters, pos, budget)
        chunk = "".join(clusters[pos:end]).strip()
        if not chunk:
            # Nothing but separators before the break: force a hard break instead
            end = min(pos + budget, len(clusters))
            chunk = "".join(clusters[pos:end]).strip()

        if chunk:
            chunks.append(chunk)
        pos = end

        # Skip separators so the next chunk starts on content
        while pos < len(clusters) and clusters[pos].isspace():
            pos += 1

    return chunks


def split_text_into_chunks(text: str, max_graphemes: int) -> list[str]:
    """
    Split text into chunks that fit a thread of posts.

    Text that already fits comes back trimmed as a single chunk. Otherwise
    each chunk leaves room for the continuation marker it will carry, sized
    from the marker text for the final number of chunks. A budget too small
    to hold a marker plus one grapheme is split without that room.

    Args:
        text: Text to split.
        max_graphemes: Size budget for a marked chunk (at least 1).

    Returns:
        Ordered list of trimmed chunks without markers.
    """
    if max_graphemes < 1:
        raise ValueError(f"max_graphemes must be positive, got {max_graphemes}")

    if count_graphemes(text) <= max_graphemes:
        return [text.strip()]

    digits = 1
    while True:
        first_reserve, later_reserve = _marker_reserves(digits)
        if max_graphemes - max(first_reserve, later_reserve) < 1:
            return _split_with_reservation(text, max_graphemes, 0, 0)

        chunks = _split_with_reservation(text, max_graphemes, first_reserve, later_reserve)
        needed = len(str(len(chunks)))
        if needed <= digits:
            return chunks
        digits = needed


def add_continuation_markers(chunks: list[str]) -> list[str]:
    """
    Label each chunk with its position in the thread.

    The first chunk gets a " (1/N)" suffix, later chunks a "…(i/N) " prefix.
    A single chunk is returned untouched.
    """
    if len(chunks) <= 1:
        return list(chunks)

    total = len(chunks)
    marked = []
    for part, chunk in enumerate(chunks, 1):
        if part == 1:
            marked.append(chunk.strip() + first_marker(total))
        else:
            marked.append(continuation_marker(part, total) + chunk.strip())
    return marked


def split_into_thread(text: str, max_graphemes: int) -> list[str]:
    """
    Split text and add continuation markers; every result fits max_graphemes.

    Budgets too small for the markers get the plain chunks instead.
    """
    chunks = split_text_into_chunks(text, max_graphemes)
    marked = add_continuation_markers(chunks)
    if any(count_graphemes(post) > max_graphemes for post in marked):
        return chunks
    return marked
