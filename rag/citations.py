"""
Provenance and trust signals derived from retrieval quality.
"""

from dataclasses import dataclass
from typing import List, Sequence

from database.vector_search import SearchMatch
from ingestion.config import GENERATION_CONFIG


@dataclass
class Citation:
    chunk_id: str
    source_title: str
    source_type: str
    similarity_score: float
    excerpt: str


class CitationBuilder:
    def __init__(self, excerpt_chars: int = GENERATION_CONFIG['excerpt_chars']):
        self.excerpt_chars = excerpt_chars

    def excerpt(self, content: str) -> str:
        if len(content) <= self.excerpt_chars:
            return content
        return content[:self.excerpt_chars] + '...'

    def build(self, matches: Sequence[SearchMatch]) -> List[Citation]:
        """One citation per chunk, in ranking order"""
        return [
            Citation(
                chunk_id=str(match.chunk_id),
                source_title=match.title,
                source_type=match.source_type,
                similarity_score=match.similarity,
                excerpt=self.excerpt(match.content),
            )
            for match in matches
        ]


class ConfidenceScorer:
    """
    Weighted blend of mean retrieval similarity and answer completeness.

    completeness = min(len(answer) / completeness_chars, 1). The result is
    clamped to [0, max_confidence] and is 0 when no chunks were used.
    """

    def __init__(
        self,
        similarity_weight: float = GENERATION_CONFIG['similarity_weight'],
        completeness_weight: float = GENERATION_CONFIG['completeness_weight'],
        completeness_chars: int = GENERATION_CONFIG['completeness_chars'],
        max_confidence: float = GENERATION_CONFIG['max_confidence'],
    ):
        self.similarity_weight = similarity_weight
        self.completeness_weight = completeness_weight
        self.completeness_chars = max(completeness_chars, 1)
        self.max_confidence = max_confidence

    def score(self, matches: Sequence[SearchMatch], answer: str) -> float:
        if not matches:
            return 0.0
        mean_similarity = sum(m.similarity for m in matches) / len(matches)
        completeness = min(len(answer or '') / self.completeness_chars, 1.0)
        raw = self.similarity_weight * mean_similarity + self.completeness_weight * completeness
        return max(0.0, min(raw, self.max_confidence))
