"""
Document chunking for the knowledge base.

Splits free text into overlapping, bounded windows and structured records
(products and similar field-labelled data) into per-field-group chunks.

Rules:
- Same input + config always yields the same chunks (re-ingestion relies on it)
- Soft boundaries (paragraph > line > sentence > clause > word) are only
  accepted inside the tail of the window, otherwise the window is hard-cut
- Every window advances past the previous one, overlap never stalls progress
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ingestion.config import CHUNKING_CONFIG
from ingestion.text_preprocessor import TextPreprocessor, estimate_tokens

logger = logging.getLogger(__name__)


class ChunkingFailure(Exception):
    """Raised when content cannot be chunked (empty or malformed input)"""
    pass


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunking configuration. Sizes are estimated tokens."""
    chunk_size: int = CHUNKING_CONFIG['chunk_size']
    chunk_overlap: int = CHUNKING_CONFIG['chunk_overlap']
    preserve_structure: bool = CHUNKING_CONFIG['preserve_structure']
    # Fraction of the window (from its end) where a soft boundary is accepted
    boundary_window: float = CHUNKING_CONFIG['boundary_window']
    chars_per_token: float = CHUNKING_CONFIG['chars_per_token']

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ChunkingFailure(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ChunkingFailure(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap}"
            )
        if not 0 < self.boundary_window <= 1:
            raise ChunkingFailure(f"boundary_window must be in (0, 1], got {self.boundary_window}")

    @property
    def max_chars(self) -> int:
        return max(1, int(self.chunk_size * self.chars_per_token))

    @property
    def overlap_chars(self) -> int:
        return int(self.chunk_overlap * self.chars_per_token)


RECORD_CHUNKING_CONFIG = ChunkingConfig(
    chunk_size=CHUNKING_CONFIG['record_chunk_size'],
    chunk_overlap=CHUNKING_CONFIG['record_chunk_overlap'],
)


@dataclass
class DocumentChunk:
    """A bounded slice of a document, ready for embedding."""
    content: str
    index: int
    token_count: int
    overlap_with_previous: bool = False
    overlap_with_next: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


# Soft boundary separators in order of preference
_SEPARATORS: Tuple[str, ...] = ('\n\n', '\n', '. ', '! ', '? ', '; ', ', ', ' ')

# Record fields rendered as the identity header, in display order
_RECORD_HEADER_FIELDS: Tuple[Tuple[str, str], ...] = (
    ('sku', 'SKU'),
    ('category', 'Category'),
)


class DocumentChunker:
    """
    Splits documents into overlapping chunks.

    Free text goes through a sliding character window sized from the token
    budget; structured records are grouped by field so a field that fits in
    one chunk is never split.
    """

    def __init__(self, preprocessor: Optional[TextPreprocessor] = None):
        self.preprocessor = preprocessor or TextPreprocessor()

    def chunk(self, content: str, config: Optional[ChunkingConfig] = None) -> List[DocumentChunk]:
        """
        Split free text into ordered chunks.

        Args:
            content: Raw document text
            config: Chunking configuration (defaults from environment)

        Returns:
            Chunks with contiguous 0-based indexes

        Raises:
            ChunkingFailure: If the content is empty after normalization
        """
        config = config or ChunkingConfig()
        text = self._prepare(content)

        spans = self._split_spans(text, config)
        chunks = []
        for i, (start, end) in enumerate(spans):
            piece = text[start:end].strip()
            chunks.append(DocumentChunk(
                content=piece,
                index=i,
                token_count=estimate_tokens(piece, config.chars_per_token),
                overlap_with_previous=i > 0 and start < spans[i - 1][1],
                overlap_with_next=i < len(spans) - 1 and spans[i + 1][0] < end,
                metadata={
                    'chunk_index': i,
                    'total_chunks': len(spans),
                    'start_char': start,
                    'end_char': end,
                },
            ))

        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks")
        return chunks

    def chunk_record(
        self,
        record: Mapping[str, Any],
        config: Optional[ChunkingConfig] = None,
    ) -> List[DocumentChunk]:
        """
        Chunk field-labelled data (name, sku, description, category,
        specifications, attributes) per logical field group.

        Groups are packed greedily; a group larger than one chunk is windowed
        like free text. Chunks after the first repeat the record's name so
        each one stays self-describing.
        """
        config = config or RECORD_CHUNKING_CONFIG
        name = self.preprocessor.normalize(str(record.get('name') or '')).strip()
        if not name:
            raise ChunkingFailure("Structured record requires a non-empty 'name'")

        title_line = f"Product: {name}"
        groups = self._record_groups(record, title_line)

        pieces: List[Tuple[str, List[str], bool, bool]] = []
        buffer: List[str] = []
        buffer_fields: List[str] = []

        def flush():
            if buffer:
                pieces.append(('\n\n'.join(buffer), list(buffer_fields), False, False))
                buffer.clear()
                buffer_fields.clear()

        for field_name, group_text in groups:
            candidate = self._with_title(group_text, title_line, first=not pieces and not buffer)
            joined = '\n\n'.join(buffer + [group_text]) if buffer else candidate

            if estimate_tokens(joined, config.chars_per_token) <= config.chunk_size:
                if not buffer:
                    buffer.append(candidate)
                else:
                    buffer.append(group_text)
                buffer_fields.append(field_name)
                continue

            flush()
            candidate = self._with_title(group_text, title_line, first=not pieces)
            if estimate_tokens(candidate, config.chars_per_token) <= config.chunk_size:
                buffer.append(candidate)
                buffer_fields.append(field_name)
                continue

            # Oversized group: window it, keeping the title on every window
            body_config = self._body_config(config, title_line)
            windows = self.chunk(group_text, body_config)
            for window in windows:
                pieces.append((
                    self._with_title(window.content, title_line, first=False),
                    [field_name],
                    window.overlap_with_previous,
                    window.overlap_with_next,
                ))

        flush()

        chunks = []
        for i, (piece, fields, overlap_prev, overlap_next) in enumerate(pieces):
            chunks.append(DocumentChunk(
                content=piece,
                index=i,
                token_count=estimate_tokens(piece, config.chars_per_token),
                overlap_with_previous=overlap_prev,
                overlap_with_next=overlap_next,
                metadata={
                    'chunk_index': i,
                    'total_chunks': len(pieces),
                    'fields': fields,
                    'structured': True,
                },
            ))

        logger.debug(f"Chunked record '{name}' into {len(chunks)} field-group chunks")
        return chunks

    # Private helpers
    def _prepare(self, content: Optional[str]) -> str:
        if content is None or not isinstance(content, str):
            raise ChunkingFailure("Content must be a string")
        text = self.preprocessor.normalize(content)
        if not text:
            raise ChunkingFailure("Content cannot be empty")
        return text

    def _split_spans(self, text: str, config: ChunkingConfig) -> List[Tuple[int, int]]:
        """Compute (start, end) character spans for every window."""
        length = len(text)
        max_chars = config.max_chars
        if length <= max_chars:
            return [(0, length)]

        overlap = config.overlap_chars
        spans: List[Tuple[int, int]] = []
        start = 0
        while start < length:
            hard_end = min(start + max_chars, length)
            if hard_end >= length:
                end = length
            elif config.preserve_structure:
                end = self._soft_boundary(text, start, hard_end, config)
            else:
                end = hard_end
            spans.append((start, end))
            if end >= length:
                break

            next_start = end - overlap if overlap else end
            if overlap:
                next_start = self._align_to_word(text, next_start, end)
            # Forward progress: never restart at or before the previous start
            start = max(next_start, start + 1)
            while start < length and text[start].isspace():
                start += 1
        return spans

    def _soft_boundary(self, text: str, start: int, hard_end: int, config: ChunkingConfig) -> int:
        """Best boundary inside the tail of the window, else the hard cut."""
        window_len = hard_end - start
        min_end = start + int(window_len * (1 - config.boundary_window))
        for separator in _SEPARATORS:
            pos = text.rfind(separator, min_end, hard_end)
            if pos != -1:
                end = pos + len(separator)
                if end > start:
                    return end
        return hard_end

    @staticmethod
    def _align_to_word(text: str, pos: int, limit: int) -> int:
        """Move pos forward to the start of the next word, staying before limit."""
        if pos <= 0 or text[pos - 1].isspace():
            return max(pos, 0)
        space = text.find(' ', pos, limit)
        return space + 1 if space != -1 else pos

    def _record_groups(self, record: Mapping[str, Any], title_line: str) -> List[Tuple[str, str]]:
        groups: List[Tuple[str, str]] = []

        header = [title_line]
        for key, label in _RECORD_HEADER_FIELDS:
            value = record.get(key)
            if value not in (None, ''):
                header.append(f"{label}: {self.preprocessor.normalize(str(value))}")
        groups.append(('identity', '\n'.join(header)))

        description = self.preprocessor.normalize(str(record.get('description') or ''))
        if description:
            groups.append(('description', f"Description: {description}"))

        for key, label in (('specifications', 'Specifications'), ('attributes', 'Attributes')):
            values = record.get(key)
            if isinstance(values, Mapping) and values:
                lines = '\n'.join(
                    f"{k}: {self.preprocessor.normalize(str(v))}" for k, v in values.items()
                )
                groups.append((key, f"{label}:\n{lines}"))
        return groups

    @staticmethod
    def _with_title(text: str, title_line: str, first: bool) -> str:
        if first or text.startswith(title_line):
            return text
        return f"{title_line}\n{text}"

    @staticmethod
    def _body_config(config: ChunkingConfig, title_line: str) -> ChunkingConfig:
        """Shrink the window so the repeated title still fits the token budget."""
        title_tokens = estimate_tokens(title_line + '\n', config.chars_per_token)
        size = max(config.chunk_size - title_tokens, 1)
        overlap = min(config.chunk_overlap, size - 1)
        return replace(config, chunk_size=size, chunk_overlap=max(overlap, 0))


def chunking_stats(chunks: List[DocumentChunk]) -> Dict[str, int]:
    """Summary statistics over a list of chunks."""
    if not chunks:
        return {
            'total_chunks': 0,
            'average_tokens': 0,
            'min_tokens': 0,
            'max_tokens': 0,
            'total_tokens': 0,
        }
    tokens = [c.token_count for c in chunks]
    return {
        'total_chunks': len(chunks),
        'average_tokens': round(sum(tokens) / len(chunks)),
        'min_tokens': min(tokens),
        'max_tokens': max(tokens),
        'total_tokens': sum(tokens),
    }
