"""
Document text extraction and chunking utilities.

Features:
- Extract plain text from PDF, DOCX and TXT bytes
- Short summary generation (first N words)
- Paragraph-based chunking with overlap and character offsets
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

try:
    from ..config import config
except ImportError:
    from src.config import config


class ExtractionError(ValueError):
    """Raised when a file's content cannot be turned into usable text."""


@dataclass
class ExtractedText:
    """
    Result of text extraction.

    Attributes:
        text: Plain text content
        word_count: Number of whitespace-separated words
        page_count: Number of pages (PDF only)
    """
    text: str
    word_count: int
    page_count: Optional[int] = None


@dataclass
class TextChunk:
    """A slice of extracted text with its ordinal and character offsets."""
    content: str
    chunk_index: int
    start_char: int
    end_char: int

    @property
    def char_count(self) -> int:
        return len(self.content)

    @property
    def token_count(self) -> int:
        # Rough estimate: ~4 characters per token
        return max(1, len(self.content) // 4)


def _extract_pdf(content: bytes) -> ExtractedText:
    import pypdf

    try:
        reader = pypdf.PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        raise ExtractionError(f"Failed to read PDF: {e}") from e

    text = "\n\n".join(p.strip() for p in pages if p.strip())
    return ExtractedText(text=text, word_count=len(text.split()), page_count=len(pages))


def _extract_docx(content: bytes) -> ExtractedText:
    import docx

    try:
        document = docx.Document(io.BytesIO(content))
    except Exception as e:
        raise ExtractionError(f"Failed to read DOCX: {e}") from e

    paragraphs = [p.text.strip() for p in document.paragraphs if p.text.strip()]
    text = "\n\n".join(paragraphs)
    return ExtractedText(text=text, word_count=len(text.split()))


def _extract_txt(content: bytes) -> ExtractedText:
    text = content.decode("utf-8", errors="replace")
    return ExtractedText(text=text, word_count=len(text.split()))


_EXTRACTORS = {
    "pdf": _extract_pdf,
    "docx": _extract_docx,
    "txt": _extract_txt,
}


def extract_text(
    content: bytes,
    file_type: str,
    min_chars: Optional[int] = None,
) -> ExtractedText:
    """
    Convert raw file bytes to plain text.

    Args:
        content: Raw file bytes
        file_type: One of pdf, docx, txt
        min_chars: Minimum length of usable text (default from config)

    Returns:
        ExtractedText

    Raises:
        ExtractionError: If the type is unsupported, the file is corrupt, or
            too little text was found
    """
    min_chars = config.ingestion.min_extracted_chars if min_chars is None else min_chars

    extractor = _EXTRACTORS.get(file_type.lower())
    if extractor is None:
        raise ExtractionError(
            f"Unsupported file type: {file_type}. Supported: {', '.join(_EXTRACTORS)}"
        )

    result = extractor(content)
    result.text = result.text.strip()

    if len(result.text) < min_chars:
        raise ExtractionError(
            "Could not extract meaningful text from the document. "
            "It may be scanned images or empty."
        )

    logger.debug(
        f"Extracted {len(result.text)} chars ({result.word_count} words) from {file_type}"
    )
    return result


def generate_text_summary(text: str, max_words: Optional[int] = None) -> str:
    """First ``max_words`` words of ``text``, with "..." appended when truncated."""
    max_words = max_words or config.ingestion.summary_max_words
    words = text.split()
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words]) + "..."


class TextChunker:
    """
    Split text into chunks for embedding and retrieval.

    Strategy:
    - Split on paragraph boundaries (blank lines)
    - Merge small paragraphs up to chunk_size
    - Start each new chunk with the tail of the previous one (overlap),
      trimmed to its last line break
    - Split paragraphs longer than chunk_size at sentence/newline
      boundaries, carrying chunk_overlap characters into the next piece
    """

    separator = "\n\n"

    def __init__(self, chunk_size: Optional[int] = None, chunk_overlap: Optional[int] = None):
        """
        Initialize chunker.

        Args:
            chunk_size: Maximum chunk size in characters (default from config)
            chunk_overlap: Overlap between chunks (default from config)
        """
        self.chunk_size = chunk_size or config.rag.chunk_size
        self.chunk_overlap = config.rag.chunk_overlap if chunk_overlap is None else chunk_overlap

        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be < "
                f"chunk_size ({self.chunk_size})"
            )

    def chunk(self, text: str) -> List[TextChunk]:
        """
        Split ``text`` into ordered chunks.

        Ordinals are contiguous from 0 in reading order.
        """
        chunks: List[TextChunk] = []
        if not text.strip():
            return chunks

        paragraphs = [p for p in text.split(self.separator) if p.strip()]

        current = ""
        current_start = 0
        position = 0

        def flush(content: str, start: int):
            content = content.strip()
            if content:
                chunks.append(
                    TextChunk(
                        content=content,
                        chunk_index=len(chunks),
                        start_char=start,
                        end_char=start + len(content),
                    )
                )

        for raw in paragraphs:
            paragraph = raw.strip()

            found = text.find(paragraph, position)
            if found >= 0:
                position = found

            if len(paragraph) > self.chunk_size:
                flush(current, current_start)
                for offset, piece in self._split_large_paragraph(paragraph):
                    flush(piece, position + offset)
                current = ""
                current_start = position + len(paragraph)
                continue

            joiner = self.separator if current else ""
            if len(current) + len(joiner) + len(paragraph) > self.chunk_size:
                flush(current, current_start)

                if self.chunk_overlap > 0 and len(current) > self.chunk_overlap:
                    tail = current[-self.chunk_overlap:]
                    newline = tail.rfind("\n")
                    if newline >= 0:
                        tail = tail[newline + 1:]
                    tail = tail.strip()
                else:
                    tail = ""

                current_start = position
                if tail:
                    current = f"{tail}{self.separator}{paragraph}"
                    # the chunk begins where the carried tail sits in the source
                    tail_start = text.rfind(tail, 0, position)
                    if tail_start >= 0:
                        current_start = tail_start
                else:
                    current = paragraph
            else:
                if not current:
                    current_start = position
                current += joiner + paragraph

        flush(current, current_start)
        return chunks

    def _split_large_paragraph(self, text: str) -> List[tuple[int, str]]:
        """Split one oversized paragraph into (offset, piece) pairs."""
        pieces = []
        start = 0

        while start < len(text):
            end = start + self.chunk_size

            if end < len(text):
                window = text[start:end]
                break_point = max(window.rfind(". "), window.rfind("\n"))
                if break_point > self.chunk_size * 0.5:
                    end = start + break_point + 1
            else:
                end = len(text)

            pieces.append((start, text[start:end]))

            if end >= len(text):
                break
            start = max(start + 1, end - self.chunk_overlap)

        return pieces
