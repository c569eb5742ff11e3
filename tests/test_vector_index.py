import pytest

from conftest import FakeEmbeddingProvider
from site_kb.core.errors import InvalidTenantError, TenantIsolationViolation, VectorIndexError
from site_kb.index import FaissVectorBackend, SearchFilter, TenantVectorIndex, VectorRecord
from site_kb.processing.models import DocumentType

vec = FakeEmbeddingProvider.vector


@pytest.fixture
def corpus(make_doc):
    return [
        make_doc("Refund policy: a refund is possible within 30 days.", url="https://acme.test/refunds"),
        make_doc("Shipping and delivery take five days.", url="https://acme.test/shipping"),
        make_doc(
            "Product pricing and price list.",
            url="https://acme.test/pricing",
            doc_type=DocumentType.PRODUCT,
        ),
    ]


async def upsert_all(index, docs, tenant_id="acme", collection_id="site"):
    return await index.upsert(tenant_id, collection_id, docs, [vec(d.content) for d in docs])


async def test_search_ranks_by_similarity(index, corpus):
    report = await upsert_all(index, corpus)
    assert sorted(report.upserted) == sorted(d.id for d in corpus)
    assert report.failed == {}

    results = await index.search("acme", "site", vec("how do I get a refund"), top_k=2)

    assert len(results) == 2
    assert results[0].metadata["url"] == "https://acme.test/refunds"
    assert results[0].score > results[1].score
    assert results[0].metadata["tenant_id"] == "acme"
    assert "refund is possible" in results[0].content


async def test_search_never_crosses_tenants(index, corpus, make_doc):
    await upsert_all(index, corpus)
    other = make_doc("Globex refund rules.", tenant_id="globex", url="https://globex.test/refunds")
    await upsert_all(index, [other], tenant_id="globex")

    acme = await index.search("acme", "site", vec("refund"), top_k=10)
    globex = await index.search("globex", "site", vec("refund"), top_k=10)

    assert {r.metadata["tenant_id"] for r in acme} == {"acme"}
    assert [r.document_id for r in globex] == [other.id]


async def test_search_is_scoped_to_collection(index, corpus, make_doc):
    await upsert_all(index, corpus)
    docs = [make_doc("Support hours are nine to five.", collection_id="help", url="https://acme.test/hours")]
    await upsert_all(index, docs, collection_id="help")

    results = await index.search("acme", "help", vec("support hours"), top_k=10)

    assert [r.document_id for r in results] == [docs[0].id]


async def test_upsert_rejects_foreign_documents(index, make_doc):
    foreign = make_doc("Refund rules.", tenant_id="globex")

    with pytest.raises(TenantIsolationViolation):
        await index.upsert("acme", "site", [foreign], [vec(foreign.content)])

    assert (await index.stats("acme", "site")).vectors == 0
    assert (await index.stats("globex", "site")).documents == 0


async def test_search_aborts_on_foreign_metadata(backend, metadata_store, make_doc):
    index = TenantVectorIndex(backend, metadata_store)
    intruder = make_doc("Refund rules.", tenant_id="globex")

    # A vector in acme's namespace whose metadata row belongs to globex
    await backend.upsert("tenant_acme", [VectorRecord(intruder.id, "site", vec(intruder.content))])
    await metadata_store.upsert([intruder])

    with pytest.raises(TenantIsolationViolation):
        await index.search("acme", "site", vec("refund"), top_k=5)


async def test_dimension_mismatch_fails_the_document(index, corpus, make_doc):
    await upsert_all(index, corpus)
    odd = make_doc("Warranty terms.", url="https://acme.test/warranty")
    good = make_doc("Contact support.", url="https://acme.test/contact")

    report = await index.upsert("acme", "site", [odd, good], [[1.0, 2.0], vec(good.content)])
    assert report.upserted == [good.id]
    assert "dimension" in report.failed[odd.id]

    with pytest.raises(VectorIndexError):
        await index.upsert("acme", "site", [odd], [[1.0, 2.0]])


async def test_upsert_length_mismatch(index, corpus):
    with pytest.raises(VectorIndexError):
        await index.upsert("acme", "site", corpus, [vec("x")])


async def test_reupsert_replaces_vector(index, corpus):
    await upsert_all(index, corpus)
    await upsert_all(index, corpus)

    stats = await index.stats("acme", "site")
    assert stats.vectors == len(corpus)
    assert stats.documents == len(corpus)


async def test_search_filter_by_type(index, corpus):
    await upsert_all(index, corpus)

    results = await index.search(
        "acme",
        "site",
        vec("refund"),
        top_k=3,
        search_filter=SearchFilter(type=DocumentType.PRODUCT),
    )

    assert [r.metadata["url"] for r in results] == ["https://acme.test/pricing"]


async def test_delete_collection(index, corpus):
    await upsert_all(index, corpus)

    report = await index.delete("acme", "site")

    assert report.vectors_removed == len(corpus)
    assert report.documents_removed == len(corpus)
    assert await index.search("acme", "site", vec("refund")) == []


async def test_reconcile_removes_orphans(index, backend, metadata_store, corpus):
    await upsert_all(index, corpus)
    orphan_vector, orphan_doc = corpus[0], corpus[1]
    await metadata_store.delete_ids("acme", [orphan_vector.id])
    await backend.delete("tenant_acme", ids=[orphan_doc.id])

    report = await index.reconcile("acme")

    assert report.namespace == "tenant_acme"
    assert report.orphan_vectors_removed == 1
    assert report.orphan_documents_removed == 1
    assert await backend.ids("tenant_acme") == {corpus[2].id}
    assert await metadata_store.ids("acme") == {corpus[2].id}


async def test_invalid_identifiers_are_rejected(index, backend):
    with pytest.raises(InvalidTenantError):
        await index.search("../etc", "site", vec("refund"))
    with pytest.raises(InvalidTenantError):
        await backend.query("acme", "site", vec("refund"), 5)


async def test_faiss_indexes_persist_per_namespace(tmp_path, metadata_store, corpus):
    first = TenantVectorIndex(FaissVectorBackend(str(tmp_path)), metadata_store)
    await upsert_all(first, corpus)

    assert (tmp_path / "tenant_acme" / "site.faiss").exists()

    reloaded = TenantVectorIndex(FaissVectorBackend(str(tmp_path)), metadata_store)
    results = await reloaded.search("acme", "site", vec("shipping delivery"), top_k=1)

    assert results[0].metadata["url"] == "https://acme.test/shipping"
    assert (await reloaded.stats("acme", "site")).vectors == len(corpus)
