"""
Trainers that learn product quantizers from an embedding matrix.

Three trainers are provided:

* ``PQTrainer``: k-means in each sub-space of the unmodified vectors.
* ``GaussianOPQTrainer``: rotates the vectors by a projection derived from
  the eigenvalue decomposition of the data covariance, such that the
  variance is balanced over the sub-spaces, then trains PQ on the rotated
  vectors.
* ``OPQTrainer``: starts from the Gaussian projection and alternates
  between refining the codebooks and fitting the rotation that best maps
  the vectors onto their reconstructions.

Codebooks are clustered with FAISS k-means. The random number generator is
only used to seed the k-means initialization.
"""

from __future__ import annotations
import time
from typing import List, Optional, Protocol

import faiss
import numpy as np
from loguru import logger
from tqdm import tqdm

from .quantizer import ProductQuantizer
from ..io.errors import ShapeError

MAX_BITS = 8


class TrainPQ(Protocol):
    """Interface of product quantizer trainers."""

    def train_pq(
        self,
        n_subquantizers: int,
        n_subquantizer_bits: int,
        n_iterations: int,
        n_attempts: int,
        instances: np.ndarray,
        rng: np.random.Generator,
    ) -> ProductQuantizer:
        ...


def check_train_params(n_subquantizers: int, n_subquantizer_bits: int, n_iterations: int, n_attempts: int, instances: np.ndarray) -> None:
    """Raise before training when the parameters cannot yield a valid quantizer."""
    if instances.ndim != 2:
        raise ShapeError(f"Expected a matrix of instances, got shape {instances.shape}")
    n, d = instances.shape
    if n_subquantizers <= 0:
        raise ValueError(f"Number of subquantizers must be positive, got {n_subquantizers}")
    if d % n_subquantizers != 0:
        raise ShapeError(f"Embedding length {d} is not divisible by the number of subquantizers {n_subquantizers}")
    if not 1 <= n_subquantizer_bits <= MAX_BITS:
        raise ValueError(f"Subquantizer bits must be in [1, {MAX_BITS}] for byte-sized codes, got {n_subquantizer_bits}")
    if n_iterations < 1:
        raise ValueError(f"Number of iterations must be at least 1, got {n_iterations}")
    if n_attempts < 1:
        raise ValueError(f"Number of attempts must be at least 1, got {n_attempts}")
    k = 2 ** n_subquantizer_bits
    if n < k:
        raise ValueError(f"Need at least {k} instances to train {k} centroids, got {n}")


def _seed(rng: np.random.Generator) -> int:
    return int(rng.integers(0, 2 ** 31 - 1))


def _kmeans(x: np.ndarray, k: int, n_iterations: int, n_attempts: int, seed: int, init: Optional[np.ndarray] = None) -> np.ndarray:
    km = faiss.Kmeans(x.shape[1], k, niter=n_iterations, nredo=n_attempts, seed=seed, verbose=False)
    km.train(np.ascontiguousarray(x, dtype=np.float32), init_centroids=init)
    return np.array(km.centroids, dtype=np.float32).reshape(k, x.shape[1])


def train_subquantizers(
    x: np.ndarray,
    n_subquantizers: int,
    n_centroids: int,
    n_iterations: int,
    n_attempts: int,
    rng: np.random.Generator,
    init: Optional[List[np.ndarray]] = None,
    progress: bool = False,
) -> List[np.ndarray]:
    """Cluster every sub-space of ``x`` separately, optionally from initial codebooks."""
    sub_len = x.shape[1] // n_subquantizers
    codebooks = []
    for m in tqdm(range(n_subquantizers), desc="Train subquantizers", disable=not progress, leave=False):
        sub = x[:, m * sub_len:(m + 1) * sub_len]
        codebooks.append(
            _kmeans(sub, n_centroids, n_iterations, n_attempts, _seed(rng), None if init is None else init[m])
        )
    return codebooks


def gaussian_projection(x: np.ndarray, n_subquantizers: int) -> np.ndarray:
    """Orthogonal projection that balances the covariance eigenvalues over the sub-spaces.

    Eigenvectors are visited in order of decreasing eigenvalue and assigned to
    the sub-space with the smallest sum of eigenvalues that still has room,
    which balances the variance over the sub-spaces. The columns of the
    projection are the eigenvectors grouped by sub-space.
    """
    d = x.shape[1]
    bucket_size = d // n_subquantizers
    centered = x.astype(np.float64) - x.mean(axis=0, dtype=np.float64)
    cov = centered.T @ centered / max(x.shape[0] - 1, 1)
    eigvals, eigvecs = np.linalg.eigh(cov)

    buckets: List[List[int]] = [[] for _ in range(n_subquantizers)]
    variances = np.zeros(n_subquantizers)
    for idx in np.argsort(eigvals)[::-1]:
        open_buckets = [b for b in range(n_subquantizers) if len(buckets[b]) < bucket_size]
        best = min(open_buckets, key=lambda b: variances[b])
        buckets[best].append(int(idx))
        variances[best] += max(eigvals[idx], 0.0)

    order = [idx for bucket in buckets for idx in bucket]
    return eigvecs[:, order].astype(np.float32)


def quantization_error(quantizer: ProductQuantizer, x: np.ndarray) -> float:
    """Mean squared error between the (projected) rows of ``x`` and their reconstructions."""
    target = x if quantizer.projection is None else x @ quantizer.projection
    reconstructed = quantizer.reconstruct_batch(quantizer.quantize_batch(x))
    return float(np.mean((target.astype(np.float64) - reconstructed) ** 2))


def procrustes(x: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Orthogonal matrix R minimizing ||x R - target||."""
    u, _, vt = np.linalg.svd(x.astype(np.float64).T @ target.astype(np.float64))
    return (u @ vt).astype(np.float32)


def _log_start(n_subquantizers: int, n_subquantizer_bits: int, instances: np.ndarray) -> None:
    logger.info(
        "Training {} subquantizers with {} bits on {} x {} instances",
        n_subquantizers, n_subquantizer_bits, *instances.shape,
    )


def _trained(name: str, quantizer: ProductQuantizer, instances: np.ndarray, t0: float) -> ProductQuantizer:
    logger.info(
        "Trained {} with {} subquantizers in {:.2f}s, quantization error {:.6g}",
        name, quantizer.quantized_len, time.perf_counter() - t0, quantization_error(quantizer, instances),
    )
    return quantizer


class PQTrainer:
    """Product quantization without a projection."""

    def __init__(self, progress: bool = False) -> None:
        self.progress = progress

    def train_pq(self, n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances, rng):
        instances = np.asarray(instances, dtype=np.float32)
        check_train_params(n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances)
        _log_start(n_subquantizers, n_subquantizer_bits, instances)
        t0 = time.perf_counter()
        codebooks = train_subquantizers(
            instances, n_subquantizers, 2 ** n_subquantizer_bits, n_iterations, n_attempts, rng,
            progress=self.progress,
        )
        return _trained("PQ", ProductQuantizer(None, codebooks), instances, t0)


class GaussianOPQTrainer:
    """Product quantization after a variance-balancing eigenvector projection."""

    def __init__(self, progress: bool = False) -> None:
        self.progress = progress

    def train_pq(self, n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances, rng):
        instances = np.asarray(instances, dtype=np.float32)
        check_train_params(n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances)
        _log_start(n_subquantizers, n_subquantizer_bits, instances)
        t0 = time.perf_counter()
        projection = gaussian_projection(instances, n_subquantizers)
        codebooks = train_subquantizers(
            instances @ projection, n_subquantizers, 2 ** n_subquantizer_bits, n_iterations, n_attempts, rng,
            progress=self.progress,
        )
        return _trained("Gaussian OPQ", ProductQuantizer(projection, codebooks), instances, t0)


class OPQTrainer:
    """Optimized product quantization (alternating codebook and rotation updates)."""

    def __init__(self, progress: bool = False) -> None:
        self.progress = progress

    def train_pq(self, n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances, rng):
        instances = np.asarray(instances, dtype=np.float32)
        check_train_params(n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, instances)
        _log_start(n_subquantizers, n_subquantizer_bits, instances)
        t0 = time.perf_counter()
        n_centroids = 2 ** n_subquantizer_bits
        projection = gaussian_projection(instances, n_subquantizers)
        codebooks = train_subquantizers(
            instances @ projection, n_subquantizers, n_centroids, n_iterations, n_attempts, rng
        )
        for _ in tqdm(range(n_iterations), desc="OPQ", disable=not self.progress):
            rotated = instances @ projection
            pq = ProductQuantizer(None, codebooks)
            reconstructed = pq.reconstruct_batch(pq.quantize_batch(rotated))
            projection = procrustes(instances, reconstructed)
            codebooks = train_subquantizers(
                instances @ projection, n_subquantizers, n_centroids, 1, 1, rng, init=codebooks
            )
        return _trained("OPQ", ProductQuantizer(projection, codebooks), instances, t0)


TRAINERS = {
    "pq": PQTrainer,
    "gaussian_opq": GaussianOPQTrainer,
    "opq": OPQTrainer,
}
