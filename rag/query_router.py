"""
Source-type routing for retrieval.

A declarative table maps query vocabulary to the source types worth
searching. Several rules can match one query; when none does, every known
source type is searched.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Pattern, Sequence

from database.models import SourceType


@dataclass(frozen=True)
class RoutingRule:
    name: str
    pattern: Pattern[str]
    source_types: FrozenSet[str]

    def matches(self, query: str) -> bool:
        return bool(self.pattern.search(query))


def rule(name: str, keywords: Iterable[str], source_types: Iterable[SourceType]) -> RoutingRule:
    """Build a rule matching any keyword as a whole word (simple plurals included)."""
    alternatives = '|'.join(sorted((re.escape(k) for k in keywords), key=len, reverse=True))
    pattern = re.compile(rf"\b(?:{alternatives})(?:s|es)?\b", re.IGNORECASE)
    return RoutingRule(name, pattern, frozenset(t.value for t in source_types))


DEFAULT_RULES: Sequence[RoutingRule] = (
    rule(
        'product_pricing',
        ['product', 'item', 'buy', 'purchase', 'price', 'pricing', 'cost', 'specification',
         'spec', 'feature', 'sku', 'catalog', 'catalogue'],
        [SourceType.PRODUCT, SourceType.ERP_RECORD],
    ),
    rule(
        'erp_orders',
        ['order', 'invoice', 'stock', 'inventory', 'warehouse', 'shipment', 'delivery',
         'quotation', 'quote', 'payment'],
        [SourceType.ERP_RECORD],
    ),
    rule(
        'documents',
        ['document', 'file', 'manual', 'guide', 'policy', 'policies', 'pdf', 'instruction',
         'handbook', 'datasheet'],
        [SourceType.DOCUMENT],
    ),
    rule(
        'contacts',
        ['contact', 'customer', 'client', 'person', 'people', 'supplier', 'vendor', 'partner'],
        [SourceType.CONTACT],
    ),
    rule(
        'email',
        ['email', 'e-mail', 'mail', 'inbox', 'message', 'reply', 'correspondence'],
        [SourceType.EMAIL],
    ),
)


class QueryRouter:
    """Maps a natural-language query to the set of source types to search"""

    def __init__(self, rules: Optional[Sequence[RoutingRule]] = None):
        self.rules = tuple(DEFAULT_RULES if rules is None else rules)

    def matching_rules(self, query: str) -> List[RoutingRule]:
        return [r for r in self.rules if r.matches(query or '')]

    def route_sources(self, query: str) -> List[str]:
        """Source types in canonical order; all types when no rule matches"""
        matched = set()
        for r in self.matching_rules(query):
            matched |= r.source_types
        if not matched:
            return SourceType.all_types()
        return [t for t in SourceType.all_types() if t in matched]
