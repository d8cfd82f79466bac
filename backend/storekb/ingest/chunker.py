"""Chunking utilities."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

from storekb.core.config import Settings
from storekb.ingest.types import ChunkPayload, FetchedDocument

_SEGMENT_RE = re.compile(r"\n\s*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]*", re.MULTILINE)


@dataclass(slots=True)
class Segment:
    text: str
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


class Chunker:
    """Split cleaned text into overlapping chunks bounded by ``max_chars``.

    Paragraphs are the preferred unit; a paragraph longer than ``max_chars`` is
    split into sentences, and only a single sentence longer than ``max_chars``
    is hard-split at whitespace. Segments are packed greedily and consecutive
    chunks share trailing whole segments up to ``overlap_chars``.
    """

    def __init__(self, min_chars: int = 200, max_chars: int = 1200, overlap_chars: int = 150) -> None:
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        if min_chars > max_chars:
            raise ValueError("min_chars must not exceed max_chars")
        if not 0 <= overlap_chars < max_chars:
            raise ValueError("overlap_chars must be in [0, max_chars)")
        self.min_chars = min_chars
        self.max_chars = max_chars
        self.overlap_chars = overlap_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "Chunker":
        return cls(
            min_chars=settings.chunk_min_chars,
            max_chars=settings.chunk_max_chars,
            overlap_chars=settings.chunk_overlap_chars,
        )

    def split(self, source_ref: str, text: str) -> list[ChunkPayload]:
        spans = self._pack(text)
        return [
            ChunkPayload(
                source_ref=source_ref,
                position=ordinal,
                ordinal=ordinal,
                text=text[start:end],
                start_char=start,
                end_char=end,
            )
            for ordinal, (start, end) in enumerate(spans)
        ]

    def _pack(self, text: str) -> list[tuple[int, int]]:
        if not text.strip():
            return []

        segments: list[Segment] = []
        for segment in _iter_segments(text):
            segments.extend(self._shrink(text, segment))

        spans: list[tuple[int, int]] = []
        current: list[Segment] = []
        for segment in segments:
            if not current:
                current.append(segment)
                continue
            if segment.end - current[0].start <= self.max_chars:
                current.append(segment)
                continue
            spans.append((current[0].start, current[-1].end))
            current = self._overlap(current, segment)
            current.append(segment)

        if current:
            spans.append((current[0].start, current[-1].end))

        # A short tail is folded into its predecessor when the result still fits.
        if len(spans) > 1:
            tail_start, tail_end = spans[-1]
            prev_start, _prev_end = spans[-2]
            if tail_end - tail_start < self.min_chars and tail_end - prev_start <= self.max_chars:
                spans[-2:] = [(prev_start, tail_end)]
        return spans

    def _shrink(self, text: str, segment: Segment) -> list[Segment]:
        if segment.length <= self.max_chars:
            return [segment]
        shrunk: list[Segment] = []
        for sentence in _sentence_segments(text, segment):
            if sentence.length <= self.max_chars:
                shrunk.append(sentence)
            else:
                shrunk.extend(_split_at_whitespace(text, sentence, self.max_chars))
        return shrunk or _split_at_whitespace(text, segment, self.max_chars)

    def _overlap(self, segments: Sequence[Segment], incoming: Segment) -> list[Segment]:
        if self.overlap_chars <= 0:
            return []
        retained: list[Segment] = []
        last_end = segments[-1].end
        for segment in reversed(segments):
            if last_end - segment.start > self.overlap_chars:
                break
            if incoming.end - segment.start > self.max_chars:
                break
            retained.append(segment)
        retained.reverse()
        # Never carry the whole previous chunk forward.
        if len(retained) == len(segments):
            retained = retained[1:]
        return retained


def chunk_documents(documents: Iterable[FetchedDocument], chunker: Chunker) -> list[ChunkPayload]:
    """Chunk documents in order, assigning job-wide positions."""
    payloads: list[ChunkPayload] = []
    for document in documents:
        for chunk in chunker.split(document.source_ref, document.text):
            chunk.position = len(payloads)
            payloads.append(chunk)
    return payloads


def _iter_segments(text: str) -> Iterator[Segment]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        segment = _trim_segment(text, last_index, match.start())
        if segment:
            yield segment
        last_index = match.end()
    if last_index < len(text):
        segment = _trim_segment(text, last_index, len(text))
        if segment:
            yield segment


def _trim_segment(text: str, start: int, end: int) -> Segment | None:
    seg_start = start
    seg_end = end
    while seg_start < seg_end and text[seg_start].isspace():
        seg_start += 1
    while seg_end > seg_start and text[seg_end - 1].isspace():
        seg_end -= 1
    if seg_start >= seg_end:
        return None
    return Segment(text=text[seg_start:seg_end], start=seg_start, end=seg_end)


def _sentence_segments(text: str, segment: Segment) -> Iterator[Segment]:
    for match in _SENTENCE_RE.finditer(segment.text):
        rel_start, rel_end = match.span()
        sentence = _trim_segment(text, segment.start + rel_start, segment.start + rel_end)
        if sentence:
            yield sentence


def _split_at_whitespace(text: str, segment: Segment, max_chars: int) -> list[Segment]:
    pieces: list[Segment] = []
    cursor = segment.start
    while cursor < segment.end:
        limit = min(segment.end, cursor + max_chars)
        cut = limit
        if limit < segment.end:
            space = _last_space(text, cursor, limit)
            if space > cursor:
                cut = space
        piece = _trim_segment(text, cursor, cut)
        if piece:
            pieces.append(piece)
        cursor = cut
    return pieces


def _last_space(text: str, start: int, end: int) -> int:
    # Splitting exactly at ``end`` is fine when the next character is a space.
    if end < len(text) and text[end].isspace():
        return end
    for index in range(end - 1, start, -1):
        if text[index].isspace():
            return index
    return -1


__all__ = ["Chunker", "chunk_documents"]
