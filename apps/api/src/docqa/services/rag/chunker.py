from __future__ import annotations

from collections.abc import Sequence

from docqa.services.rag.types import Chunk, ExtractedPage

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ", "")

Span = tuple[int, int]


class InvalidConfig(ValueError):
    pass


def _validate(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise InvalidConfig("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise InvalidConfig("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise InvalidConfig("chunk_overlap must be smaller than chunk_size")


class RecursiveTextChunker:
    """Split text on the coarsest separator that keeps pieces under ``chunk_size``.

    Pieces are kept as ``(start, end)`` offsets into the source text, with each
    separator attached to the piece it terminates, so every chunk is an exact
    substring of the input and carries its start offset.
    """

    def __init__(
        self,
        *,
        chunk_size: int,
        chunk_overlap: int,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ) -> None:
        _validate(chunk_size, chunk_overlap)
        if not separators:
            raise InvalidConfig("separators must not be empty")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)

    def split(
        self,
        text: str,
        *,
        document_id: str,
        source: str,
        page: int | None = None,
        first_position: int = 0,
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        for start, end in self.split_spans(text):
            chunks.append(
                Chunk(
                    text=text[start:end],
                    document_id=document_id,
                    source=source,
                    position=first_position + len(chunks),
                    start_index=start,
                    page=page,
                )
            )
        return chunks

    def split_pages(
        self,
        pages: Sequence[ExtractedPage],
        *,
        document_id: str,
        source: str,
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        for page in pages:
            chunks.extend(
                self.split(
                    page.text,
                    document_id=document_id,
                    source=source,
                    page=page.page,
                    first_position=len(chunks),
                )
            )
        return chunks

    def split_spans(self, text: str) -> list[Span]:
        if not text:
            return []
        spans = self._split(text, 0, len(text), self.separators)
        return [(start, end) for start, end in spans if text[start:end].strip()]

    def _split(self, text: str, start: int, end: int, separators: Sequence[str]) -> list[Span]:
        separator = separators[-1]
        finer: Sequence[str] = ()
        for index, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if text.find(candidate, start, end) != -1:
                separator = candidate
                finer = separators[index + 1 :]
                break

        result: list[Span] = []
        pending: list[Span] = []
        for piece_start, piece_end in _pieces(text, start, end, separator):
            if piece_end - piece_start <= self.chunk_size:
                pending.append((piece_start, piece_end))
                continue

            if pending:
                result.extend(self._merge(pending))
                pending = []
            if finer:
                result.extend(self._split(text, piece_start, piece_end, finer))
            else:
                result.append((piece_start, piece_end))

        if pending:
            result.extend(self._merge(pending))
        return result

    def _merge(self, pieces: list[Span]) -> list[Span]:
        merged: list[Span] = []
        window: list[Span] = []
        total = 0

        for piece in pieces:
            length = piece[1] - piece[0]
            if window and total + length > self.chunk_size:
                merged.append((window[0][0], window[-1][1]))
                while total > self.chunk_overlap or (total + length > self.chunk_size and total > 0):
                    dropped = window.pop(0)
                    total -= dropped[1] - dropped[0]
            window.append(piece)
            total += length

        if window:
            merged.append((window[0][0], window[-1][1]))
        return merged


def _pieces(text: str, start: int, end: int, separator: str) -> list[Span]:
    if separator == "":
        return [(index, index + 1) for index in range(start, end)]

    pieces: list[Span] = []
    cursor = start
    while cursor < end:
        found = text.find(separator, cursor, end)
        stop = end if found == -1 else found + len(separator)
        # A run of separators sticks to the piece it follows.
        if pieces and not text[cursor:stop].strip():
            pieces[-1] = (pieces[-1][0], stop)
        else:
            pieces.append((cursor, stop))
        cursor = stop
    return pieces


def split_text(
    text: str,
    *,
    chunk_size: int,
    chunk_overlap: int,
    document_id: str,
    source: str,
) -> list[Chunk]:
    chunker = RecursiveTextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    return chunker.split(text, document_id=document_id, source=source)
