import asyncio
import math

import numpy as np
import pytest

from conftest import FakeEmbeddingProvider, ProviderDown, make_candidates
from diverse_retrieval.batch_embed import BatchEmbedder
from diverse_retrieval.errors import DimensionMismatchError, EmbeddingError, InvalidConfigurationError
from diverse_retrieval.pipeline_types import make_batches, pair_embeddings


def _texts(n):
    return [f"t{i}" for i in range(n)]


def _slow_first_batch(texts):
    # batch containing t0 finishes last
    return 0.05 if "t0" in texts else 0.0


async def _collect(stream):
    return [item async for item in stream]


def test_embed_preserves_input_order_when_batches_finish_out_of_order():
    provider = FakeEmbeddingProvider(latency=_slow_first_batch)
    embedder = BatchEmbedder(provider, batch_size=3, max_concurrency=4)
    texts = _texts(10)

    out = asyncio.run(embedder.embed(texts))

    assert len(out) == len(texts)
    for text, vec in zip(texts, out):
        np.testing.assert_allclose(vec, provider.vector_for(text))


def test_embed_matches_sequential_single_item_embedding():
    provider = FakeEmbeddingProvider()
    texts = _texts(17)

    batched = asyncio.run(BatchEmbedder(provider, batch_size=4, max_concurrency=3).embed(texts))
    single = [asyncio.run(provider.embed_query(t)) for t in texts]

    for a, b in zip(batched, single):
        np.testing.assert_allclose(a, b)


@pytest.mark.parametrize("batch_size", [1, 3, 7, 50])
@pytest.mark.parametrize("concurrency", [1, 2, 5])
def test_provider_call_count_is_independent_of_concurrency(batch_size, concurrency):
    provider = FakeEmbeddingProvider()
    embedder = BatchEmbedder(provider, batch_size=batch_size, max_concurrency=concurrency)

    asyncio.run(embedder.embed(_texts(23)))

    assert len(provider.calls) == math.ceil(23 / batch_size)
    assert embedder.batch_count(23) == len(provider.calls)


def test_empty_input_makes_no_provider_calls():
    provider = FakeEmbeddingProvider()
    embedder = BatchEmbedder(provider, batch_size=4)

    assert asyncio.run(embedder.embed([])) == []
    assert asyncio.run(embedder.embed_with_progress([], lambda done, total: None)) == []
    assert asyncio.run(_collect(embedder.embed_stream([]))) == []
    assert asyncio.run(_collect(embedder.embed_stream_concurrent([]))) == []
    assert provider.calls == []
    assert embedder.batch_count(0) == 0


def test_single_text_is_one_call():
    provider = FakeEmbeddingProvider()
    out = asyncio.run(BatchEmbedder(provider, batch_size=10).embed(["only"]))
    assert len(out) == 1
    assert provider.calls == [["only"]]


def test_concurrency_cap_bounds_in_flight_calls():
    provider = FakeEmbeddingProvider(latency=0.01)
    embedder = BatchEmbedder(provider, batch_size=1, max_concurrency=2)

    asyncio.run(embedder.embed(_texts(10)))

    assert provider.max_in_flight == 2


def test_progress_is_reported_after_each_batch():
    provider = FakeEmbeddingProvider()
    embedder = BatchEmbedder(provider, batch_size=3, max_concurrency=2)
    seen = []

    asyncio.run(embedder.embed_with_progress(_texts(10), lambda done, total: seen.append((done, total))))

    assert seen == [(1, 4), (2, 4), (3, 4), (4, 4)]


def test_failing_batch_fails_the_whole_call_and_cancels_siblings():
    provider = FakeEmbeddingProvider(
        fail_on=["t0"],
        latency=lambda texts: 0.0 if "t0" in texts else 1.0,
    )
    embedder = BatchEmbedder(provider, batch_size=2, max_concurrency=3)

    with pytest.raises(ProviderDown):
        asyncio.run(embedder.embed(_texts(10)))

    assert provider.in_flight == 0
    # the window never advanced past the first three batches
    assert len(provider.calls) == 3


def test_wrong_vector_count_is_an_embedding_error():
    class ShortProvider(FakeEmbeddingProvider):
        async def embed_texts(self, texts):
            vectors = await super().embed_texts(texts)
            return vectors[:-1]

    embedder = BatchEmbedder(ShortProvider(), batch_size=4)
    with pytest.raises(EmbeddingError):
        asyncio.run(embedder.embed(_texts(4)))


def test_cancelling_the_caller_cancels_in_flight_batches():
    async def run():
        provider = FakeEmbeddingProvider(latency=1.0)
        embedder = BatchEmbedder(provider, batch_size=1, max_concurrency=3)
        task = asyncio.create_task(embedder.embed(_texts(6)))
        await asyncio.sleep(0.05)
        assert provider.in_flight == 3
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return provider

    provider = asyncio.run(run())
    assert provider.in_flight == 0
    assert len(provider.calls) == 3


def test_embed_stream_yields_in_input_order():
    provider = FakeEmbeddingProvider(latency=_slow_first_batch)
    embedder = BatchEmbedder(provider, batch_size=3, max_concurrency=3)
    texts = _texts(8)

    items = asyncio.run(_collect(embedder.embed_stream(texts)))

    assert [i for i, _ in items] == list(range(8))
    assert provider.max_in_flight == 1
    for idx, vec in items:
        np.testing.assert_allclose(vec, provider.vector_for(texts[idx]))


def test_embed_stream_concurrent_tags_global_indices():
    provider = FakeEmbeddingProvider(latency=_slow_first_batch)
    embedder = BatchEmbedder(provider, batch_size=3, max_concurrency=3)
    texts = _texts(8)

    items = asyncio.run(_collect(embedder.embed_stream_concurrent(texts)))

    indices = [i for i, _ in items]
    assert sorted(indices) == list(range(8))
    # the slow first batch arrives last
    assert indices[-3:] == [0, 1, 2]
    for idx, vec in items:
        np.testing.assert_allclose(vec, provider.vector_for(texts[idx]))


def test_stream_ends_with_the_provider_error_after_earlier_items():
    provider = FakeEmbeddingProvider(fail_on=["t4"])
    embedder = BatchEmbedder(provider, batch_size=2)
    received = []

    async def consume():
        async for idx, _ in embedder.embed_stream(_texts(6)):
            received.append(idx)

    with pytest.raises(ProviderDown):
        asyncio.run(consume())

    assert received == [0, 1, 2, 3]
    assert len(provider.calls) == 3


def test_concurrent_stream_surfaces_the_provider_error():
    provider = FakeEmbeddingProvider(fail_on=["t5"])
    embedder = BatchEmbedder(provider, batch_size=2, max_concurrency=2)

    with pytest.raises(ProviderDown):
        asyncio.run(_collect(embedder.embed_stream_concurrent(_texts(6))))

    assert provider.in_flight == 0


def test_batch_size_defaults_to_provider_optimum():
    embedder = BatchEmbedder(FakeEmbeddingProvider(optimal_batch_size=16))
    assert embedder.batch_size == 16
    assert embedder.batch_count(33) == 3


def test_invalid_batch_size_is_rejected():
    with pytest.raises(InvalidConfigurationError):
        BatchEmbedder(FakeEmbeddingProvider(), batch_size=0)


def test_concurrency_below_one_is_clamped():
    embedder = BatchEmbedder(FakeEmbeddingProvider(), batch_size=2, max_concurrency=0)
    assert embedder.max_concurrency == 1


def test_make_batches_partitions_contiguously():
    batches = make_batches(_texts(7), 3)
    assert [(b.index, b.start, b.stop) for b in batches] == [(0, 0, 3), (1, 3, 6), (2, 6, 7)]
    assert batches[2].texts == ["t6"]
    assert make_batches([], 3) == []
    with pytest.raises(InvalidConfigurationError):
        make_batches(_texts(2), 0)


def test_pair_embeddings_requires_matching_counts():
    cands = make_candidates(["a", "b"])
    paired = pair_embeddings(cands, [[1.0, 0.0], [0.0, 1.0]])
    assert paired[1].candidate.id == "c1"
    assert paired[1].vector.dtype == np.float32
    with pytest.raises(DimensionMismatchError):
        pair_embeddings(cands, [[1.0, 0.0]])
