"""
Grounding context construction for answer generation.

Concatenates retrieved chunks (tagged with their source titles) within a
token budget and renders the system prompt that confines the model to that
context.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from database.vector_search import SearchMatch
from ingestion.config import CHUNKING_CONFIG, GENERATION_CONFIG
from ingestion.text_preprocessor import TextPreprocessor, estimate_tokens

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n---\n\n"

SYSTEM_PROMPT_TEMPLATE = """You are an assistant for a business CRM. Answer the user's question using ONLY the context below.

Context Information:
{context}

Instructions:
- Answer only from the provided context; do not use outside knowledge
- If the context does not contain enough information to answer, say so plainly instead of guessing
- Include specific details (names, SKUs, prices, dates) when the context provides them
- Reference sources by their [number] when making claims
- Be concise but complete and use a professional tone{extra}"""


@dataclass
class BuiltContext:
    """Grounding context plus the chunks that made it into it."""
    text: str
    matches: List[SearchMatch]
    token_estimate: int
    truncated: bool = False


class ContextBuilder:
    """
    Context construction for the RAG system.

    The first chunk is always included (truncated to fit when needed); each
    later chunk is included whole or dropped.
    """

    def __init__(
        self,
        max_context_tokens: int = GENERATION_CONFIG['max_context_tokens'],
        chars_per_token: float = CHUNKING_CONFIG['chars_per_token'],
        preprocessor: Optional[TextPreprocessor] = None,
    ):
        self.max_context_tokens = max_context_tokens
        self.chars_per_token = chars_per_token
        self.preprocessor = preprocessor or TextPreprocessor()

    def build(self, matches: Sequence[SearchMatch], max_context_tokens: Optional[int] = None) -> BuiltContext:
        budget = max_context_tokens or self.max_context_tokens
        sections: List[str] = []
        used: List[SearchMatch] = []
        truncated = False

        for match in matches:
            section = self._format(len(used) + 1, match, match.content)
            candidate = SEPARATOR.join(sections + [section])
            if estimate_tokens(candidate, self.chars_per_token) <= budget:
                sections.append(section)
                used.append(match)
                continue

            truncated = True
            if used:
                logger.debug(f"Chunk {match.chunk_id} does not fit the {budget}-token context, dropped")
                continue

            # First chunk alone exceeds the budget: keep a truncated prefix
            header = self._format(1, match, '')
            room = int(budget * self.chars_per_token) - len(header)
            if room > 0:
                body = self.preprocessor.truncate(match.content, room)
                sections.append(self._format(1, match, body))
                used.append(match)
            break

        text = SEPARATOR.join(sections)
        return BuiltContext(
            text=text,
            matches=used,
            token_estimate=estimate_tokens(text, self.chars_per_token),
            truncated=truncated or len(used) < len(matches),
        )

    def system_prompt(
        self,
        context: BuiltContext,
        contact_id: Optional[str] = None,
        include_recommendations: bool = False
    ) -> str:
        extra = ""
        if contact_id:
            extra += (
                f"\n- The question concerns contact {contact_id}; "
                "prioritise context about this contact where present"
            )
        if include_recommendations:
            extra += (
                "\n- Close with a short list of actionable recommendations, "
                "each grounded in the context"
            )
        return SYSTEM_PROMPT_TEMPLATE.format(context=context.text, extra=extra)

    @staticmethod
    def _format(position: int, match: SearchMatch, body: str) -> str:
        return f"[{position}] {match.title} ({match.source_type})\n{body}"
