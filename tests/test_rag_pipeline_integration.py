"""
End-to-end pipeline tests: ingest CRM content, then answer questions over it
"""

import uuid

import pytest

from ingestion.knowledge_ingestor import IngestContent
from rag.response_generator import INSUFFICIENT_INFORMATION_ANSWER

TENANT = "acme-motors"

CATALOG = [
    IngestContent(
        source_type="product",
        title="XL200 Brake Pad",
        content="Ceramic brake pad for front axles. Price: 49.99 EUR per set.",
        source_id="sku-xl200",
        metadata={'sku': 'XL200', 'category': 'Brakes', 'attributes': {'warranty': '2 years'}},
    ),
    IngestContent(
        source_type="document",
        title="Rotor installation manual",
        content="Install the rotor before fitting new pads.\n\nTorque all bolts to 120 Nm.",
        source_id="doc-rotor",
    ),
    IngestContent(
        source_type="contact",
        title="Jane Doe",
        content="Customer since 2019. Prefers email for delivery updates.",
        source_id="contact-17",
    ),
]


async def ingest_catalog(rag_service):
    results = await rag_service.ingest_batch(TENANT, CATALOG)
    assert all(r.success for r in results)
    return results


@pytest.mark.asyncio
async def test_product_question_is_answered_from_catalog(rag_service, chat_client):
    await ingest_catalog(rag_service)

    response = await rag_service.answer("What is the price of the XL200 brake pad?", TENANT)

    assert response.answer == chat_client.answer
    assert [c.source_title for c in response.citations] == ["XL200 Brake Pad"]
    assert "49.99 EUR" in response.citations[0].excerpt
    assert response.confidence > 0.5
    assert "[1] XL200 Brake Pad (product)" in chat_client.calls[0]['system_prompt']


@pytest.mark.asyncio
async def test_unrelated_question_gets_insufficient_information(rag_service, chat_client):
    await ingest_catalog(rag_service)

    response = await rag_service.answer("Will the weather be good for football on Sunday?", TENANT)

    assert response.answer == INSUFFICIENT_INFORMATION_ANSWER
    assert response.confidence == pytest.approx(0.1)
    assert response.citations == []
    assert chat_client.calls == []


@pytest.mark.asyncio
async def test_reingesting_unchanged_catalog_is_a_no_op(rag_service, repository, embedder):
    await ingest_catalog(rag_service)
    calls = len(embedder.provider_calls)
    chunk_count = len(repository.chunks)

    results = await rag_service.ingest_batch(TENANT, CATALOG)

    assert all(r.skipped for r in results)
    assert len(embedder.provider_calls) == calls
    assert len(repository.chunks) == chunk_count


@pytest.mark.asyncio
async def test_archived_products_stop_being_cited(rag_service):
    await ingest_catalog(rag_service)

    archived = await rag_service.archive_missing_sources(TENANT, "product", live_source_ids=[])
    response = await rag_service.answer("What is the price of the XL200 brake pad?", TENANT)

    assert archived == 1
    assert response.answer == INSUFFICIENT_INFORMATION_ANSWER

    stats = await rag_service.get_stats(TENANT)
    assert stats['source_type_breakdown'] == {'document': 1, 'contact': 1}


@pytest.mark.asyncio
async def test_updated_product_replaces_old_answer_context(rag_service, chat_client):
    await ingest_catalog(rag_service)
    repriced = IngestContent(
        source_type="product",
        title="XL200 Brake Pad",
        content="Ceramic brake pad for front axles. Price: 54.99 EUR per set.",
        source_id="sku-xl200",
        metadata={'sku': 'XL200'},
    )
    await rag_service.ingest(TENANT, repriced)

    response = await rag_service.answer("What is the price of the XL200 brake pad?", TENANT)

    assert len(response.citations) == 1
    assert "54.99 EUR" in response.citations[0].excerpt
    assert "49.99" not in response.context_used


XL200_DESCRIPTION = """\
The Brake Pad XL200 is a premium ceramic brake pad set engineered for mid-size sedans, compact SUVs and \
light commercial vans. Each set contains four pads for one axle, complete with shims, anti-rattle clips and \
a tube of high temperature lubricant. The list price is 49.99 EUR per axle set, and fleet accounts receive \
tiered price breaks from ten sets upward.

The friction compound blends ceramic fibres with copper-free binders, which keeps dust levels low and \
protects alloy wheels from dark deposits. Testing on the dynamometer shows consistent stopping power between \
minus twenty and six hundred degrees Celsius, with no measurable fade during repeated mountain descents. \
Noise is controlled by a chamfered leading edge, a centre slot and a multi-layer rubber shim bonded to the \
backing plate.

Fitment covers more than two hundred vehicle models built from 2012 onward. The part finder in the online \
catalogue lists every compatible model by year and engine code. Workshops should install the pads together \
with new hardware and bed them in with ten moderate stops from fifty kilometres per hour. Wear sensors are \
included for models that require them, and replacement is recommended once the friction material wears \
below three millimetres at any point.

Every set is covered by a two year warranty against defects in materials and workmanship, provided that the \
pads were fitted by a certified workshop. The warranty does not cover wear from normal use, contamination \
with oil or damage caused by seized callipers.

Standard delivery takes two to three working days within the European Union. Orders placed before noon ship \
the same day from the central warehouse. A customer who orders twenty or more sets qualifies for free \
delivery and a dedicated account contact. The current price, stock level and expected lead time are shown \
on every quotation."""


@pytest.mark.asyncio
async def test_long_product_description_is_found_and_cited(rag_service, repository, embedder):
    assert 280 <= len(XL200_DESCRIPTION.split()) <= 320
    product = IngestContent(
        source_type="product",
        title="Brake Pad XL200",
        content=XL200_DESCRIPTION,
        source_id="sku-xl200-long",
    )

    result = await rag_service.ingest(TENANT, product)

    assert result.success and result.chunks_created >= 1
    chunks = repository.active_chunks(uuid.UUID(result.knowledge_base_id))
    assert len(chunks) == result.chunks_created
    assert all(len(chunk.embedding) == embedder.dimensions for chunk in chunks)

    found = await rag_service.retrieve("brake pad price", TENANT, similarity_threshold=0.6)
    assert found.total_found >= 1
    assert found.matches[0].title == "Brake Pad XL200"
    assert found.matches[0].similarity >= 0.6

    response = await rag_service.answer("brake pad price", TENANT)
    assert "Brake Pad XL200" in [c.source_title for c in response.citations]
