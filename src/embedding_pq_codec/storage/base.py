"""
Embedding matrix storage interfaces and dense in-memory storage.
"""

from __future__ import annotations
from typing import Protocol, Tuple
import numpy as np


class Storage(Protocol):
    """Row access to an embedding matrix, independent of how it is stored."""

    def embedding(self, idx: int) -> np.ndarray:
        ...

    @property
    def shape(self) -> Tuple[int, int]:
        ...


class StorageView(Storage, Protocol):
    """Storage that can expose the complete embedding matrix."""

    def view(self) -> np.ndarray:
        ...


class NdArray:
    """Dense (n, d) float32 embedding matrix."""

    def __init__(self, matrix: np.ndarray) -> None:
        matrix = np.ascontiguousarray(matrix, dtype=np.float32)
        if matrix.ndim != 2:
            raise ValueError(f"Expected a matrix, got array with shape {matrix.shape}")
        self._matrix = matrix

    def embedding(self, idx: int) -> np.ndarray:
        return self._matrix[idx].copy()

    @property
    def shape(self) -> Tuple[int, int]:
        return self._matrix.shape

    def view(self) -> np.ndarray:
        return self._matrix
