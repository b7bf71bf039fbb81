"""
Evaluation metrics for quantized embedding storage.

Provides functions to compute the mean squared reconstruction error, the
cosine similarity between original and reconstructed embeddings, the
relative error of the embedding norms, and the recall of nearest neighbour
search on the reconstructed embeddings. All functions compare a dense
original (n, d) matrix against a storage of the same shape, reconstructing
the storage in batches of rows.
"""

from __future__ import annotations
from typing import Iterator, Tuple
import numpy as np
import torch
import torch.nn.functional as F

from ..index.faiss_index import BATCH_SIZE, build_index, storage_rows
from ..io.errors import ShapeError
from ..storage.base import NdArray, Storage


def _batches(original: np.ndarray, storage: Storage, batch_size: int) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
    original = np.asarray(original, dtype=np.float32)
    if original.shape != tuple(storage.shape):
        raise ShapeError(f"Original matrix has shape {original.shape}, storage has shape {storage.shape}")
    n = original.shape[0]
    for start in range(0, n, batch_size):
        stop = min(start + batch_size, n)
        yield original[start:stop], storage_rows(storage, start, stop)


def reconstruction_mse(original: np.ndarray, storage: Storage, batch_size: int = BATCH_SIZE) -> float:
    """Mean squared error over all matrix components."""
    total = 0.0
    count = 0
    for x, y in _batches(original, storage, batch_size):
        total += float(np.sum((x.astype(np.float64) - y) ** 2))
        count += x.size
    if count == 0:
        return float('nan')
    return total / count


def mean_cosine_similarity(original: np.ndarray, storage: Storage, batch_size: int = BATCH_SIZE, eps: float = 1e-9) -> float:
    """Average cosine similarity between each original row and its reconstruction."""
    sims = []
    for x, y in _batches(original, storage, batch_size):
        s = F.cosine_similarity(torch.from_numpy(x), torch.from_numpy(y), dim=1, eps=eps)
        sims.append(s.numpy())
    if not sims:
        return float('nan')
    return float(np.mean(np.concatenate(sims)))


def relative_norm_error(original: np.ndarray, storage: Storage, batch_size: int = BATCH_SIZE, eps: float = 1e-9) -> float:
    """Average of |‖reconstructed‖ - ‖original‖| / ‖original‖ over the rows."""
    errs = []
    for x, y in _batches(original, storage, batch_size):
        nx = np.linalg.norm(x, axis=1)
        ny = np.linalg.norm(y, axis=1)
        errs.append(np.abs(ny - nx) / np.maximum(nx, eps))
    if not errs:
        return float('nan')
    return float(np.mean(np.concatenate(errs)))


def neighbour_recall(original: np.ndarray, storage: Storage, queries: np.ndarray, k: int = 10) -> float:
    """Fraction of the exact top-k inner product neighbours that are found on the reconstructed rows."""
    original = np.asarray(original, dtype=np.float32)
    if original.shape != tuple(storage.shape):
        raise ShapeError(f"Original matrix has shape {original.shape}, storage has shape {storage.shape}")
    queries = np.ascontiguousarray(queries, dtype=np.float32)
    k = max(1, min(k, original.shape[0]))
    _, exact = build_index(NdArray(original)).search(queries, k)
    _, approx = build_index(storage).search(queries, k)
    hits = [len(set(e) & set(a)) for e, a in zip(exact.tolist(), approx.tolist())]
    return float(np.mean(hits)) / k
