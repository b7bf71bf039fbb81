"""
FAISS index helpers for embedding storage.

Builds a flat inner-product index over the (reconstructed) rows of a storage
and searches it by a query vector.
"""

from typing import List, Tuple
import numpy as np
import faiss

from ..storage.base import Storage

BATCH_SIZE = 4096


def storage_rows(storage: Storage, start: int, stop: int) -> np.ndarray:
    """Rows ``start:stop`` of a storage as a float32 matrix."""
    if hasattr(storage, "view"):
        return np.asarray(storage.view()[start:stop], dtype=np.float32)
    if hasattr(storage, "embeddings"):
        return storage.embeddings(range(start, stop))
    return np.stack([storage.embedding(i) for i in range(start, stop)]).astype(np.float32)


def build_index(storage: Storage, use_gpu: bool = False) -> faiss.Index:
    n, d = storage.shape
    idx = faiss.IndexFlatIP(d)
    if use_gpu and faiss.get_num_gpus() > 0:
        res = faiss.StandardGpuResources()
        idx = faiss.index_cpu_to_gpu(res, 0, idx)
    for start in range(0, n, BATCH_SIZE):
        idx.add(np.ascontiguousarray(storage_rows(storage, start, min(start + BATCH_SIZE, n))))
    return idx


def search_index(qvec: np.ndarray, index: faiss.Index, k: int = 10) -> List[Tuple[int, float]]:
    k = max(1, min(k, index.ntotal))
    sim, ids = index.search(np.ascontiguousarray(qvec[None, :], dtype=np.float32), k)
    out = []
    for j, i in enumerate(ids[0]):
        if i == -1:
            continue
        out.append((int(i), float(sim[0, j])))
    return out
