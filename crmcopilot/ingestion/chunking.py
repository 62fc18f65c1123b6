from __future__ import annotations

from typing import Sequence


# Defaults sized for small embedding models; chunk text stays readable in citations.
CHUNK_SIZE_CHARS = 512
CHUNK_OVERLAP_CHARS = 64
MIN_CHUNK_CHARS = 50

# Most meaningful boundary first; CJK punctuation has no trailing space.
SEPARATORS: tuple[str, ...] = (
    "\n\n",
    "\n",
    "。",
    "！",
    "？",
    ". ",
    "! ",
    "? ",
    "；",
    "; ",
    "，",
    ", ",
    " ",
)


def _split_keep_separator(text: str, separator: str) -> list[str]:
    parts = text.split(separator)
    if len(parts) <= 1:
        return [text]
    # Separator stays attached to the preceding piece so offsets remain contiguous.
    pieces = [part + separator for part in parts[:-1]]
    pieces.append(parts[-1])
    return [piece for piece in pieces if piece]


def _hard_split(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def recursive_split(text: str, separators: Sequence[str], max_size: int) -> list[str]:
    if len(text) <= max_size:
        return [text]
    for position, separator in enumerate(separators):
        parts = _split_keep_separator(text, separator)
        if len(parts) <= 1:
            continue
        result: list[str] = []
        current = ""
        for part in parts:
            if len(current) + len(part) <= max_size:
                current += part
                continue
            if current:
                result.append(current)
            if len(part) <= max_size:
                current = part
            else:
                # Only finer separators are tried for an oversized piece.
                nested = recursive_split(part, separators[position + 1 :], max_size)
                result.extend(nested[:-1])
                current = nested[-1] if nested else ""
        if current:
            result.append(current)
        return result
    return _hard_split(text, max_size)


def _merge_small(pieces: list[str], *, max_size: int, min_size: int) -> list[str]:
    merged: list[str] = []
    for piece in pieces:
        stripped = piece.strip()
        if len(stripped) < min_size and merged and len(merged[-1]) + len(piece) <= max_size:
            merged[-1] += piece
            continue
        if stripped:
            merged.append(piece)
    return merged


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
    min_chunk_size: int = MIN_CHUNK_CHARS,
) -> list[tuple[str, int, int]]:
    """Split text into ``(content, start_offset, end_offset)`` chunks.

    Offsets point at the chunk's own span in ``text``; ``content`` is
    additionally prefixed with up to ``chunk_overlap`` trailing characters of
    the previous chunk. Text shorter than ``min_chunk_size`` yields no chunks.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be between 0 and chunk_size - 1")
    if not text or len(text.strip()) < min_chunk_size:
        return []

    pieces = _merge_small(
        recursive_split(text, SEPARATORS, chunk_size),
        max_size=chunk_size,
        min_size=min_chunk_size,
    )
    chunks: list[tuple[str, int, int]] = []
    cursor = 0
    previous = ""
    for piece in pieces:
        found = text.find(piece, cursor)
        start = found if found >= 0 else cursor
        end = start + len(piece)
        cursor = end
        prefix = previous[-chunk_overlap:] if previous and chunk_overlap else ""
        chunks.append((prefix + piece, start, end))
        previous = piece
    return chunks
