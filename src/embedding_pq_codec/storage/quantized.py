"""
Product-quantized embedding matrix storage.

A ``QuantizedArray`` stores one byte code per sub-quantizer for every
embedding, the product quantizer that the codes refer to, and optionally
the norm of every embedding when the embeddings were normalized before
quantization. Embeddings are reconstructed on lookup.

Chunk layout (little-endian), after the chunk identifier and length:

    projection flag (u32), norms flag (u32), M (u32), d (u32), k (u32),
    n (u64), code type (u32), reconstructed type (u32), padding to a
    multiple of 4 bytes, projection (d x d f32, if present), M codebooks
    (k x d/M f32 each), norms (n f32, if present), codes (n x M u8).
"""

from __future__ import annotations
from typing import BinaryIO, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from ..codecs.quantizer import MAX_CENTROIDS, ProductQuantizer
from ..codecs.training import PQTrainer, TrainPQ, check_train_params
from ..io.bitstream import (
    ChunkIdentifier,
    DataType,
    ensure_data_type,
    padding,
    read_array,
    read_chunk_header,
    read_u32,
    read_u64,
    skip_padding,
    tell,
    write_array,
    write_chunk_header,
    write_data_type,
    write_padding,
    write_u32,
    write_u64,
)
from ..io.errors import ShapeError
from .base import StorageView

# Chunk identifier, chunk length, five u32 fields, n and two type tags.
_PREFIX_LEN = 4 + 8 + 5 * 4 + 8 + 2 * 4
_CHUNK_HEADER_LEN = 4 + 8
_F32_WIDTH = DataType.F32.dtype.itemsize


def _data_len(
    has_projection: bool, has_norms: bool, quantized_len: int, reconstructed_len: int, n_centroids: int, n_embeddings: int
) -> int:
    """Bytes of array data following the padding."""
    return (
        has_projection * reconstructed_len * reconstructed_len * _F32_WIDTH
        + n_centroids * reconstructed_len * _F32_WIDTH
        + has_norms * n_embeddings * _F32_WIDTH
        + n_embeddings * quantized_len
    )


class QuantizedArray:
    """Quantized embedding matrix."""

    def __init__(self, quantizer: ProductQuantizer, quantized: np.ndarray, norms: Optional[np.ndarray] = None) -> None:
        quantized = np.asarray(quantized)
        if quantized.ndim != 2 or quantized.shape[1] != quantizer.quantized_len:
            raise ShapeError(
                f"Expected codes of shape (n, {quantizer.quantized_len}), got {quantized.shape}"
            )
        if not np.issubdtype(quantized.dtype, np.integer):
            raise ShapeError(f"Codes must be integers, got {quantized.dtype}")
        if quantized.size and (quantized.min() < 0 or quantized.max() >= quantizer.n_quantizer_centroids):
            raise ShapeError(f"Codes must be in [0, {quantizer.n_quantizer_centroids})")
        quantized = np.array(quantized, dtype=np.uint8, order="C", copy=True)
        quantized.setflags(write=False)

        if norms is not None:
            norms = np.array(norms, dtype=np.float32, copy=True)
            if norms.shape != (quantized.shape[0],):
                raise ShapeError(f"Expected {quantized.shape[0]} norms, got shape {norms.shape}")
            norms.setflags(write=False)

        self._quantizer = quantizer
        self._quantized = quantized
        self._norms = norms

    @property
    def quantizer(self) -> ProductQuantizer:
        return self._quantizer

    @property
    def quantized_embeddings(self) -> np.ndarray:
        return self._quantized

    @property
    def norms(self) -> Optional[np.ndarray]:
        return self._norms

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._quantized.shape[0], self._quantizer.reconstructed_len)

    def embedding(self, idx: int) -> np.ndarray:
        """Reconstruct the embedding in row ``idx``."""
        n = self._quantized.shape[0]
        if not 0 <= idx < n:
            raise IndexError(f"Embedding index {idx} is out of bounds for {n} embeddings")
        reconstructed = self._quantizer.reconstruct_vector(self._quantized[idx])
        if self._norms is not None:
            reconstructed *= self._norms[idx]
        return reconstructed

    def embeddings(self, indices: Sequence[int]) -> np.ndarray:
        """Reconstruct the embeddings in the given rows as a (len(indices), d) matrix."""
        indices = np.asarray(indices, dtype=np.int64).reshape(-1)
        n = self._quantized.shape[0]
        if indices.size and (indices.min() < 0 or indices.max() >= n):
            raise IndexError(f"Embedding indices out of bounds for {n} embeddings")
        reconstructed = self._quantizer.reconstruct_batch(self._quantized[indices])
        if self._norms is not None:
            reconstructed *= self._norms[indices][:, None]
        return reconstructed

    def chunk_identifier(self) -> ChunkIdentifier:
        return ChunkIdentifier.QUANTIZED_ARRAY

    def chunk_len(self, offset: int = 0) -> int:
        """Number of bytes following the chunk length field, for a chunk written at ``offset``."""
        q = self._quantizer
        data_len = _data_len(
            q.projection is not None,
            self._norms is not None,
            q.quantized_len,
            q.reconstructed_len,
            q.n_quantizer_centroids,
            self._quantized.shape[0],
        )
        return _PREFIX_LEN - _CHUNK_HEADER_LEN + padding(_F32_WIDTH, offset + _PREFIX_LEN) + data_len

    def write_chunk(self, f: BinaryIO) -> None:
        q = self._quantizer
        chunk_len = self.chunk_len(tell(f))
        write_chunk_header(f, ChunkIdentifier.QUANTIZED_ARRAY, chunk_len)

        write_u32(f, int(q.projection is not None), "Cannot write quantized embedding matrix projection")
        write_u32(f, int(self._norms is not None), "Cannot write quantized embedding matrix norms")
        write_u32(f, q.quantized_len, "Cannot write quantized embedding length")
        write_u32(f, q.reconstructed_len, "Cannot write reconstructed embedding length")
        write_u32(f, q.n_quantizer_centroids, "Cannot write number of subquantizer centroids")
        write_u64(f, self._quantized.shape[0], "Cannot write number of quantized embeddings")

        write_data_type(f, DataType.U8, "Cannot write quantized embedding type identifier")
        write_data_type(f, DataType.F32, "Cannot write reconstructed embedding type identifier")

        n_padding = write_padding(f, _F32_WIDTH)

        if q.projection is not None:
            write_array(f, q.projection, DataType.F32, "Cannot write projection matrix")
        for subquantizer in q.subquantizers:
            write_array(f, subquantizer, DataType.F32, "Cannot write subquantizer")
        if self._norms is not None:
            write_array(f, self._norms, DataType.F32, "Cannot write norms")
        write_array(f, self._quantized, DataType.U8, "Cannot write quantized embeddings")

        logger.debug("Wrote quantized array chunk: {} bytes, {} padding", chunk_len, n_padding)

    @classmethod
    def read_chunk(cls, f: BinaryIO) -> "QuantizedArray":
        chunk_len = read_chunk_header(f, ChunkIdentifier.QUANTIZED_ARRAY)

        has_projection = read_u32(f, "Cannot read quantized embedding matrix projection") != 0
        has_norms = read_u32(f, "Cannot read quantized embedding matrix norms") != 0
        quantized_len = read_u32(f, "Cannot read quantized embedding length")
        reconstructed_len = read_u32(f, "Cannot read reconstructed embedding length")
        n_centroids = read_u32(f, "Cannot read number of subquantizer centroids")
        n_embeddings = read_u64(f, "Cannot read number of quantized embeddings")

        ensure_data_type(f, DataType.U8, "Cannot read quantized embedding type identifier")
        ensure_data_type(f, DataType.F32, "Cannot read reconstructed embedding type identifier")

        if quantized_len == 0 or reconstructed_len % quantized_len != 0:
            raise ShapeError(
                f"Reconstructed length {reconstructed_len} is not divisible by quantized length {quantized_len}"
            )
        if not 0 < n_centroids <= MAX_CENTROIDS:
            raise ShapeError(f"Number of centroids must be in [1, {MAX_CENTROIDS}], got {n_centroids}")
        data_len = _data_len(has_projection, has_norms, quantized_len, reconstructed_len, n_centroids, n_embeddings)
        if _PREFIX_LEN - _CHUNK_HEADER_LEN + data_len > chunk_len:
            raise ShapeError(
                f"Chunk of {chunk_len} bytes cannot hold {n_embeddings} x {quantized_len} codes "
                f"of length {reconstructed_len} ({data_len} bytes of data)"
            )

        skip_padding(f, _F32_WIDTH)

        projection = None
        if has_projection:
            projection = read_array(
                f, DataType.F32, (reconstructed_len, reconstructed_len), "Cannot read projection matrix"
            )

        subquantizer_len = reconstructed_len // quantized_len
        subquantizers = [
            read_array(f, DataType.F32, (n_centroids, subquantizer_len), "Cannot read subquantizer")
            for _ in range(quantized_len)
        ]

        norms = read_array(f, DataType.F32, n_embeddings, "Cannot read norms") if has_norms else None
        quantized = read_array(f, DataType.U8, (n_embeddings, quantized_len), "Cannot read quantized embeddings")

        logger.debug("Read quantized array chunk: {} bytes, {} x {}", chunk_len, n_embeddings, reconstructed_len)
        return cls(ProductQuantizer(projection, subquantizers), quantized, norms)

    def __repr__(self) -> str:
        n, d = self.shape
        return f"QuantizedArray(n={n}, d={d}, quantizer={self._quantizer!r}, norms={self._norms is not None})"


def quantize(
    storage: StorageView,
    n_subquantizers: int,
    n_subquantizer_bits: int,
    n_iterations: int,
    n_attempts: int,
    normalize: bool,
    trainer: Optional[TrainPQ] = None,
    rng: Optional[np.random.Generator] = None,
) -> QuantizedArray:
    """Train a product quantizer on the embedding matrix and quantize the matrix with it.

    When ``normalize`` is set, embeddings are scaled to unit length before
    training and their norms are stored, so that lookups restore the original
    length. Rows with a zero norm are left as-is. ``rng`` seeds the trainer;
    a generator seeded from OS entropy is used when it is not given.
    """
    trainer = PQTrainer() if trainer is None else trainer
    rng = np.random.default_rng() if rng is None else rng

    embeds = storage.view()
    check_train_params(n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, embeds)

    norms = None
    if normalize:
        norms = np.linalg.norm(embeds, axis=1).astype(np.float32)
        embeds = np.divide(
            embeds, norms[:, None], out=np.array(embeds, dtype=np.float32, copy=True), where=norms[:, None] > 0
        )

    logger.info(
        "Quantizing {} x {} matrix: {} subquantizers, {} bits, {} iterations, {} attempts",
        embeds.shape[0], embeds.shape[1], n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts,
    )
    quantizer = trainer.train_pq(n_subquantizers, n_subquantizer_bits, n_iterations, n_attempts, embeds, rng)
    if quantizer.reconstructed_len != embeds.shape[1] or quantizer.quantized_len != n_subquantizers:
        raise ShapeError(
            f"Trainer returned a quantizer for {quantizer.quantized_len} x {quantizer.reconstructed_len}, "
            f"expected {n_subquantizers} x {embeds.shape[1]}"
        )

    return QuantizedArray(quantizer, quantizer.quantize_batch(embeds), norms)
