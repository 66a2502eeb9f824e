import pytest

from database.models import SourceType
from rag.query_router import QueryRouter, rule


@pytest.fixture
def router():
    return QueryRouter()


@pytest.mark.parametrize("query,expected", [
    ("What is the price of the XL200 brake pad?", ["product", "erp_record"]),
    ("Show me open invoices for March", ["erp_record"]),
    ("Where is the installation manual?", ["document"]),
    ("Which customers bought the product?", ["product", "contact", "erp_record"]),
    ("Did we reply to the last email from Acme?", ["email"]),
])
def test_routes_by_vocabulary(router, query, expected):
    assert router.route_sources(query) == expected


def test_unmatched_query_searches_everything(router):
    assert router.route_sources("Who won the football match?") == SourceType.all_types()
    assert router.route_sources("") == SourceType.all_types()


def test_matches_whole_words_only(router):
    # "priceless" and "ordered" are not the keywords "price" and "order"
    assert router.route_sources("A priceless view") == SourceType.all_types()
    assert [r.name for r in router.matching_rules("ORDER status")] == ["erp_orders"]


def test_multiple_rules_union_in_canonical_order(router):
    routed = router.route_sources("Email the customer the product price and invoice")
    assert routed == ["product", "contact", "erp_record", "email"]


def test_custom_rules():
    router = QueryRouter(rules=[rule('faq', ['faq', 'question'], [SourceType.DOCUMENT])])
    assert router.route_sources("Common questions") == ["document"]
    assert router.route_sources("price list") == SourceType.all_types()
