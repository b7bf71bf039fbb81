"""
Evaluate a quantized embedding matrix.

This script reads a quantized array chunk and prints its shape. When the
original embedding matrix is given, it also computes the reconstruction
MSE, cosine similarity, norm error, and the recall of top-k inner product
search over randomly sampled query rows. Metrics can optionally be saved to
a JSON file.

Usage:
    python -m embedding_pq_codec.cli.eval --input embeds.pq --original embeds.npy --k 10
"""

import argparse
import json
from pathlib import Path
import numpy as np
from loguru import logger
from tqdm import tqdm

from embedding_pq_codec.eval.metrics import mean_cosine_similarity, neighbour_recall, reconstruction_mse, relative_norm_error
from embedding_pq_codec.io.errors import CodecError
from embedding_pq_codec.storage.quantized import QuantizedArray
from embedding_pq_codec.utils.logging import init_logger


def main() -> None:
    ap = argparse.ArgumentParser(description="Report the reconstruction quality of a quantized embedding matrix.")
    ap.add_argument("--input", type=Path, required=True, help="Quantized array chunk file")
    ap.add_argument("--original", type=Path, default=None, help="Original embedding matrix (.npy)")
    ap.add_argument("--k", type=int, default=10)
    ap.add_argument("--n_queries", type=int, default=100)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--out_json", type=str, default=None)
    ap.add_argument("--log_level", type=str, default="INFO")
    args = ap.parse_args()
    init_logger(args.log_level)

    try:
        with open(args.input, "rb") as f:
            quantized = QuantizedArray.read_chunk(f)
    except CodecError as e:
        raise SystemExit(f"Cannot read {args.input}: {e}")
    n, d = quantized.shape
    q = quantized.quantizer
    print(f"Embeddings: {n} x {d}")
    print(f"Subquantizers: {q.quantized_len}, centroids: {q.n_quantizer_centroids}, "
          f"projection: {q.projection is not None}, norms: {quantized.norms is not None}")
    metrics = {"n": n, "d": d}

    if args.original is not None:
        original = np.load(args.original).astype(np.float32)
        if original.shape != (n, d):
            raise SystemExit(f"Original matrix has shape {original.shape}, quantized matrix has shape {(n, d)}")
        if q.projection is not None:
            # Reconstructions stay in the projected space.
            original = (original @ q.projection).astype(np.float32)
        rng = np.random.default_rng(args.seed)
        query_rows = rng.choice(n, size=min(args.n_queries, n), replace=False)
        steps = [
            ("mse", lambda: reconstruction_mse(original, quantized)),
            ("cosine_similarity", lambda: mean_cosine_similarity(original, quantized)),
            ("norm_error", lambda: relative_norm_error(original, quantized)),
            (f"recall@{args.k}", lambda: neighbour_recall(original, quantized, original[query_rows], k=args.k)),
        ]
        for name, fn in tqdm(steps, desc="eval"):
            metrics[name] = fn()
            logger.debug("{}: {}", name, metrics[name])
        print(f"MSE: {metrics['mse']:.6f}")
        print(f"Cosine similarity: {metrics['cosine_similarity']:.4f}")
        print(f"Norm error: {metrics['norm_error']:.4%}")
        print(f"Recall@{args.k}: {metrics[f'recall@{args.k}']:.4f}")

    if args.out_json:
        with open(args.out_json, 'w', encoding='utf-8') as f:
            json.dump(metrics, f, ensure_ascii=False, indent=2)


if __name__ == '__main__':
    main()
