"""
Text preprocessing for embedding safety.

Normalizes control characters, whitespace and typographic quotes, and caps
text length below the embedding provider's input limit.
"""

import logging
import math
import re
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CHARS_PER_TOKEN = 3.5

# C0/C1 control characters except tab and newline
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b-\x1f\x7f-\x9f]')
_ZERO_WIDTH = re.compile('[%s-%s%s%s]' % (chr(0x200B), chr(0x200D), chr(0x2060), chr(0xFEFF)))
_SENTENCE_END = re.compile(r'[.!?](?=\s|$)')

# Typographic quotes and non-breaking space, keyed by code point
_QUOTE_TRANSLATION = str.maketrans({
    0x2018: "'", 0x2019: "'", 0x201A: "'", 0x201B: "'",
    0x2032: "'", 0x00B4: "'",
    0x201C: '"', 0x201D: '"', 0x201E: '"', 0x201F: '"',
    0x2033: '"', 0x00AB: '"', 0x00BB: '"',
    0x00A0: ' ',
})


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Conservative token estimate (rounds up)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


class TextPreprocessor:
    """Cleans and truncates raw text before it is chunked or embedded."""

    def __init__(self, max_chars: int = 25000):
        self.max_chars = max_chars

    def normalize(self, text: Optional[str]) -> str:
        """Normalize line endings and quotes, drop control characters, keep paragraph breaks."""
        if not text or not isinstance(text, str):
            return ""

        text = text.replace('\r\n', '\n').replace('\r', '\n')
        text = text.translate(_QUOTE_TRANSLATION)
        text = _ZERO_WIDTH.sub('', text)
        text = _CONTROL_CHARS.sub(' ', text)
        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r' *\n *', '\n', text)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()

    def clean_for_embedding(self, text: Optional[str]) -> str:
        """Flatten all whitespace to single spaces and cap the length."""
        text = self.normalize(text)
        if not text:
            return ""
        text = ' '.join(text.split())
        return self.truncate(text, self.max_chars)

    def truncate(self, text: str, max_chars: Optional[int] = None, preserve_sentences: bool = True) -> str:
        """
        Cap text at max_chars.

        With preserve_sentences, cut after the last sentence end before the
        cap when one exists in the second half of the allowed span.
        """
        limit = max_chars or self.max_chars
        if len(text) <= limit:
            return text

        head = text[:limit]
        if preserve_sentences:
            last_end = None
            for match in _SENTENCE_END.finditer(head):
                last_end = match.end()
            if last_end is not None and last_end >= limit // 2:
                logger.debug(f"Truncated text at sentence boundary ({last_end}/{len(text)} chars)")
                return head[:last_end].rstrip()

        logger.warning(f"Text hard-truncated to {limit} characters for embedding")
        return head.rstrip()
