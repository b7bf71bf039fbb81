"""
Product quantizer for embedding matrices.

A product quantizer splits a d-dimensional vector into M sub-vectors of
length d/M and replaces every sub-vector by the index of its nearest
centroid in the codebook of that sub-space. Each codebook holds k = 2^b
centroids, so that a code fits in a single byte.

When a projection is present, vectors are multiplied by it before they are
split. Reconstruction concatenates the centroids and does not undo the
projection: reconstructed vectors live in the projected space.
"""

from __future__ import annotations
from typing import Optional, Sequence, Tuple
import numpy as np
import torch

from ..io.errors import ShapeError

MAX_CENTROIDS = 256


def _frozen(x: np.ndarray) -> np.ndarray:
    x = np.array(x, dtype=np.float32, order="C", copy=True)
    x.setflags(write=False)
    return x


class ProductQuantizer:
    """Optional projection plus M sub-quantizer codebooks of shape (k, d/M)."""

    def __init__(self, projection: Optional[np.ndarray], subquantizers: Sequence[np.ndarray]) -> None:
        if len(subquantizers) == 0:
            raise ShapeError("A product quantizer needs at least one subquantizer")
        subquantizers = tuple(_frozen(q) for q in subquantizers)
        first = subquantizers[0].shape
        for idx, q in enumerate(subquantizers):
            if q.ndim != 2:
                raise ShapeError(f"Subquantizer {idx} is not a matrix, shape: {q.shape}")
            if q.shape != first:
                raise ShapeError(f"Subquantizer {idx} has shape {q.shape}, expected {first}")
        if first[0] == 0 or first[0] > MAX_CENTROIDS:
            raise ShapeError(f"Number of centroids must be in [1, {MAX_CENTROIDS}], got {first[0]}")

        d = len(subquantizers) * first[1]
        if projection is not None:
            projection = _frozen(projection)
            if projection.shape != (d, d):
                raise ShapeError(f"Projection matrix has shape {projection.shape}, expected {(d, d)}")

        self._projection = projection
        self._subquantizers = subquantizers

    @property
    def projection(self) -> Optional[np.ndarray]:
        return self._projection

    @property
    def subquantizers(self) -> Tuple[np.ndarray, ...]:
        return self._subquantizers

    @property
    def quantized_len(self) -> int:
        """Number of sub-quantizers (M), which is also the length of a code."""
        return len(self._subquantizers)

    @property
    def n_quantizer_centroids(self) -> int:
        return self._subquantizers[0].shape[0]

    @property
    def subquantizer_len(self) -> int:
        return self._subquantizers[0].shape[1]

    @property
    def reconstructed_len(self) -> int:
        return self.quantized_len * self.subquantizer_len

    def quantize_batch(self, x: np.ndarray) -> np.ndarray:
        """Map each row of ``x`` (n, d) to its (M,) code, returned as (n, M) uint8."""
        x = np.asarray(x, dtype=np.float32)
        if x.ndim != 2 or x.shape[1] != self.reconstructed_len:
            raise ShapeError(f"Expected a matrix with {self.reconstructed_len} columns, got shape {x.shape}")
        t = torch.from_numpy(np.ascontiguousarray(x))
        if self._projection is not None:
            t = t @ torch.from_numpy(np.array(self._projection))
        n = t.shape[0]
        sub = t.reshape(n, self.quantized_len, self.subquantizer_len)
        codes = np.empty((n, self.quantized_len), dtype=np.uint8)
        if n == 0:
            return codes
        for m, centroids in enumerate(self._subquantizers):
            dists = torch.cdist(
                sub[:, m, :].contiguous(),
                torch.from_numpy(np.array(centroids)),
                compute_mode="donot_use_mm_for_euclid_dist",
            )
            codes[:, m] = dists.argmin(dim=1).numpy().astype(np.uint8)
        return codes

    def quantize_vector(self, x: np.ndarray) -> np.ndarray:
        return self.quantize_batch(np.asarray(x)[None, :])[0]

    def reconstruct_batch(self, codes: np.ndarray) -> np.ndarray:
        """Concatenate the centroids selected by each (M,) code row into a (n, d) matrix."""
        codes = np.asarray(codes)
        if codes.ndim != 2 or codes.shape[1] != self.quantized_len:
            raise ShapeError(f"Expected codes with {self.quantized_len} columns, got shape {codes.shape}")
        out = np.empty((codes.shape[0], self.reconstructed_len), dtype=np.float32)
        s = self.subquantizer_len
        for m, centroids in enumerate(self._subquantizers):
            out[:, m * s:(m + 1) * s] = centroids[codes[:, m]]
        return out

    def reconstruct_vector(self, codes: np.ndarray) -> np.ndarray:
        return self.reconstruct_batch(np.asarray(codes)[None, :])[0]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProductQuantizer):
            return NotImplemented
        if (self._projection is None) != (other._projection is None):
            return False
        if self._projection is not None and not np.array_equal(self._projection, other._projection):
            return False
        return len(self._subquantizers) == len(other._subquantizers) and all(
            np.array_equal(a, b) for a, b in zip(self._subquantizers, other._subquantizers)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return (
            f"ProductQuantizer(M={self.quantized_len}, d={self.reconstructed_len}, "
            f"k={self.n_quantizer_centroids}, projection={self._projection is not None})"
        )
