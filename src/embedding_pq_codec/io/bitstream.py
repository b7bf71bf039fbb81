"""
Chunk framing and binary I/O helpers for embedding storage chunks.

Every chunk starts with a little-endian u32 chunk identifier, followed by a
u64 holding the number of bytes in the remainder of the chunk. Arrays of
floating point values are preceded by zero padding, so that they start at a
multiple of their element width relative to the start of the stream. The
data is only aligned in memory when the stream itself is aligned at the
start of the chunk, which is up to the container that holds the chunk.
"""

from __future__ import annotations
import io
import math
import struct
import sys
from enum import IntEnum
from typing import BinaryIO, Tuple, Union

import numpy as np

from .errors import ChunkIOError, ShapeError, TypeMismatchError


class ChunkIdentifier(IntEnum):
    HEADER = 0
    SIMPLE_VOCAB = 1
    NDARRAY = 2
    BUCKET_SUBWORD_VOCAB = 3
    QUANTIZED_ARRAY = 4
    METADATA = 5
    NDNORMS = 6
    FASTTEXT_SUBWORD_VOCAB = 7
    EXPLICIT_SUBWORD_VOCAB = 8


class DataType(IntEnum):
    """Element types that can be stored in a chunk."""

    U8 = 1
    F32 = 10

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(_DTYPES[self])


_DTYPES = {DataType.U8: "<u1", DataType.F32: "<f4"}


def _describe(enum_cls, value: int) -> str:
    try:
        return enum_cls(value).name
    except ValueError:
        return f"unknown ({value})"


def padding(width: int, pos: int) -> int:
    """Number of bytes needed to align ``pos`` to a multiple of ``width``."""
    return (width - pos % width) % width


def _read_exact(f: BinaryIO, n: int, context: str) -> bytes:
    try:
        buf = f.read(n)
    except OSError as e:
        raise ChunkIOError(context, e) from e
    if len(buf) != n:
        err = EOFError(f"expected {n} bytes, got {len(buf)}")
        raise ChunkIOError(context, err) from err
    return buf


def _write(f: BinaryIO, data: bytes, context: str) -> None:
    try:
        f.write(data)
    except OSError as e:
        raise ChunkIOError(context, e) from e


def read_u32(f: BinaryIO, context: str) -> int:
    return struct.unpack("<I", _read_exact(f, 4, context))[0]


def read_u64(f: BinaryIO, context: str) -> int:
    return struct.unpack("<Q", _read_exact(f, 8, context))[0]


def write_u32(f: BinaryIO, value: int, context: str) -> None:
    _write(f, struct.pack("<I", value), context)


def write_u64(f: BinaryIO, value: int, context: str) -> None:
    _write(f, struct.pack("<Q", value), context)


def read_array(f: BinaryIO, data_type: DataType, shape: Union[int, Tuple[int, ...]], context: str) -> np.ndarray:
    """Read a row-major array of ``data_type`` elements into a new native array."""
    shape = (shape,) if isinstance(shape, int) else tuple(shape)
    n_bytes = math.prod(shape) * data_type.dtype.itemsize
    if n_bytes > sys.maxsize:
        raise ShapeError(f"{context}: array of shape {shape} is too large ({n_bytes} bytes)")
    raw = _read_exact(f, n_bytes, context)
    arr = np.frombuffer(raw, dtype=data_type.dtype)
    return arr.astype(data_type.dtype.newbyteorder("="), copy=True).reshape(shape)


def write_array(f: BinaryIO, arr: np.ndarray, data_type: DataType, context: str) -> None:
    """Write ``arr`` in row-major order as little-endian ``data_type`` elements."""
    data = np.ascontiguousarray(arr, dtype=data_type.dtype).tobytes()
    _write(f, data, context)


def tell(f: BinaryIO) -> int:
    try:
        return f.tell()
    except OSError as e:
        raise ChunkIOError("Cannot get file position for computing padding", e) from e


def write_padding(f: BinaryIO, width: int) -> int:
    n_padding = padding(width, tell(f))
    _write(f, bytes(n_padding), "Cannot write padding")
    return n_padding


def skip_padding(f: BinaryIO, width: int) -> int:
    n_padding = padding(width, tell(f))
    try:
        f.seek(n_padding, io.SEEK_CUR)
    except OSError as e:
        raise ChunkIOError("Cannot skip padding", e) from e
    return n_padding


def write_chunk_header(f: BinaryIO, identifier: ChunkIdentifier, chunk_len: int) -> None:
    write_u32(f, int(identifier), f"Cannot write {identifier.name} chunk identifier")
    write_u64(f, chunk_len, f"Cannot write {identifier.name} chunk length")


def ensure_chunk_type(f: BinaryIO, expected: ChunkIdentifier) -> None:
    found = read_u32(f, "Cannot read chunk identifier")
    if found != expected:
        raise TypeMismatchError("chunk identifier", expected.name, _describe(ChunkIdentifier, found))


def read_chunk_header(f: BinaryIO, expected: ChunkIdentifier) -> int:
    """Check the chunk identifier and return the declared chunk length."""
    ensure_chunk_type(f, expected)
    return read_u64(f, f"Cannot read {expected.name} chunk length")


def write_data_type(f: BinaryIO, data_type: DataType, context: str) -> None:
    write_u32(f, int(data_type), context)


def ensure_data_type(f: BinaryIO, expected: DataType, context: str) -> None:
    found = read_u32(f, context)
    if found != expected:
        raise TypeMismatchError("element type", expected.name, _describe(DataType, found))
