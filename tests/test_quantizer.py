"""Unit tests for the ProductQuantizer model."""

import numpy as np
import pytest

from embedding_pq_codec.codecs.quantizer import ProductQuantizer
from embedding_pq_codec.io.errors import ShapeError


def simple_quantizer(projection=None) -> ProductQuantizer:
    # Two sub-spaces of length 2, three centroids each.
    q0 = np.array([[0.0, 0.0], [1.0, 1.0], [5.0, 5.0]], dtype=np.float32)
    q1 = np.array([[-1.0, 0.0], [0.0, 2.0], [3.0, 3.0]], dtype=np.float32)
    return ProductQuantizer(projection, [q0, q1])


def test_dimensions() -> None:
    q = simple_quantizer()
    assert q.quantized_len == 2
    assert q.n_quantizer_centroids == 3
    assert q.subquantizer_len == 2
    assert q.reconstructed_len == 4
    assert q.projection is None


def test_quantize_picks_nearest_centroid() -> None:
    q = simple_quantizer()
    x = np.array([[0.9, 1.2, 2.9, 3.1], [4.0, 6.0, -0.8, 0.1]], dtype=np.float32)
    codes = q.quantize_batch(x)
    assert codes.dtype == np.uint8
    np.testing.assert_array_equal(codes, [[1, 2], [2, 0]])
    np.testing.assert_array_equal(q.quantize_vector(x[1]), [2, 0])


def test_reconstruct_concatenates_centroids() -> None:
    q = simple_quantizer()
    r = q.reconstruct_batch(np.array([[1, 2], [0, 1]], dtype=np.uint8))
    np.testing.assert_array_equal(r, [[1.0, 1.0, 3.0, 3.0], [0.0, 0.0, 0.0, 2.0]])
    np.testing.assert_array_equal(q.reconstruct_vector(np.array([2, 0])), [5.0, 5.0, -1.0, 0.0])


def test_projection_is_not_undone() -> None:
    # Swaps the two sub-spaces.
    projection = np.zeros((4, 4), dtype=np.float32)
    projection[0, 2] = projection[1, 3] = projection[2, 0] = projection[3, 1] = 1.0
    q = simple_quantizer(projection)
    x = np.array([[3.0, 3.0, 1.0, 1.0]], dtype=np.float32)
    codes = q.quantize_batch(x)
    np.testing.assert_array_equal(codes, [[1, 2]])
    np.testing.assert_array_equal(q.reconstruct_batch(codes), [[1.0, 1.0, 3.0, 3.0]])


def test_shape_errors() -> None:
    with pytest.raises(ShapeError):
        ProductQuantizer(None, [])
    with pytest.raises(ShapeError):
        ProductQuantizer(None, [np.zeros((4, 2)), np.zeros((4, 3))])
    with pytest.raises(ShapeError):
        ProductQuantizer(None, [np.zeros((257, 2))])
    with pytest.raises(ShapeError):
        ProductQuantizer(np.eye(3), [np.zeros((4, 2)), np.zeros((4, 2))])
    with pytest.raises(ShapeError):
        simple_quantizer().quantize_batch(np.zeros((2, 5)))


def test_immutable() -> None:
    q = simple_quantizer()
    with pytest.raises(ValueError):
        q.subquantizers[0][0, 0] = 1.0


def test_equality() -> None:
    assert simple_quantizer() == simple_quantizer()
    assert simple_quantizer() != simple_quantizer(np.eye(4))
    other = ProductQuantizer(None, [np.zeros((3, 2)), np.zeros((3, 2))])
    assert simple_quantizer() != other
