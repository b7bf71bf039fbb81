"""
Quantize an embedding matrix stored as a ``.npy`` file.

The matrix is loaded, a product quantizer is trained on it, and the
quantized matrix is written as a single quantized array chunk at the start
of the output file.

Usage:
    python -m embedding_pq_codec.cli.quantize --input embeds.npy --output embeds.pq --bits 8 --quantizer opq
"""

import argparse
import sys
from pathlib import Path
import numpy as np
from loguru import logger

from embedding_pq_codec.codecs.training import TRAINERS
from embedding_pq_codec.storage.base import NdArray
from embedding_pq_codec.storage.quantized import quantize
from embedding_pq_codec.utils.logging import init_logger

DEFAULT_BITS = 8
DEFAULT_ITERATIONS = 100
DEFAULT_ATTEMPTS = 1
DEFAULT_QUANTIZER = "pq"


def default_subquantizers(dims: int) -> int:
    return dims // 2 if dims % 2 == 0 else dims


def main() -> None:
    ap = argparse.ArgumentParser(description="Quantize an embedding matrix with product quantization.")
    ap.add_argument("--input", type=Path, required=True, help="Embedding matrix (.npy, shape (n, d))")
    ap.add_argument("--output", type=Path, required=True, help="Output file for the quantized matrix chunk")
    ap.add_argument("--subquantizers", type=int, default=None, help="Number of subquantizers (default: d/2)")
    ap.add_argument("--bits", type=int, default=DEFAULT_BITS, help="Bits per subquantizer code (1-8)")
    ap.add_argument("--iterations", type=int, default=DEFAULT_ITERATIONS)
    ap.add_argument("--attempts", type=int, default=DEFAULT_ATTEMPTS)
    ap.add_argument("--quantizer", type=str, default=DEFAULT_QUANTIZER, choices=sorted(TRAINERS))
    ap.add_argument("--no_normalize", action="store_true", help="Do not normalize embeddings before quantization")
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--log_level", type=str, default="INFO")
    args = ap.parse_args()
    init_logger(args.log_level)

    matrix = np.load(args.input)
    if matrix.ndim != 2:
        raise SystemExit(f"Expected a matrix in {args.input}, got shape {matrix.shape}")
    storage = NdArray(matrix)
    n, d = storage.shape
    n_subquantizers = args.subquantizers or default_subquantizers(d)
    logger.info("Loaded {} embeddings of length {} from {}", n, d, args.input)

    trainer = TRAINERS[args.quantizer](progress=sys.stderr.isatty())
    try:
        quantized = quantize(
            storage,
            n_subquantizers,
            args.bits,
            args.iterations,
            args.attempts,
            not args.no_normalize,
            trainer=trainer,
            rng=np.random.default_rng(args.seed),
        )
    except ValueError as e:
        raise SystemExit(f"Cannot quantize {args.input}: {e}")

    args.output.parent.mkdir(parents=True, exist_ok=True)
    with open(args.output, "wb") as f:
        quantized.write_chunk(f)

    in_size = n * d * 4
    out_size = args.output.stat().st_size
    ratio = out_size / in_size if in_size else 0.0
    print(f"Done. Stored {n} quantized embeddings in {args.output} ({out_size} bytes, {ratio:.2%} of f32)")


if __name__ == "__main__":
    main()
