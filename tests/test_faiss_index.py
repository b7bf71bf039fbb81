"""Tests for the FAISS index helpers."""

import numpy as np

from embedding_pq_codec.index.faiss_index import build_index, search_index, storage_rows
from embedding_pq_codec.storage.base import NdArray
from embedding_pq_codec.storage.quantized import quantize


def test_search_returns_rows_and_scores() -> None:
    x = np.eye(8, dtype=np.float32) * np.arange(1, 9, dtype=np.float32)[:, None]
    idx = build_index(NdArray(x))
    assert idx.ntotal == 8
    results = search_index(x[3], idx, k=2)
    assert results[0] == (3, 16.0)
    assert len(results) == 2


def test_k_is_clamped() -> None:
    x = np.random.default_rng(0).standard_normal((5, 4)).astype(np.float32)
    idx = build_index(NdArray(x))
    assert len(search_index(x[0], idx, k=50)) == 5
    assert len(search_index(x[0], idx, k=0)) == 1


def test_index_over_quantized_storage() -> None:
    x = np.random.default_rng(1).standard_normal((64, 8)).astype(np.float32)
    storage = quantize(NdArray(x), 4, 4, 5, 1, False, rng=np.random.default_rng(2))
    idx = build_index(storage)
    assert idx.ntotal == 64
    np.testing.assert_array_equal(storage_rows(storage, 10, 20), storage.embeddings(range(10, 20)))
    e = storage.embedding(10)
    _, score = search_index(e, idx, k=1)[0]
    assert score >= float(e @ e) - 1e-4
