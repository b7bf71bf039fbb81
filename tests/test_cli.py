"""End-to-end tests of the quantize and eval command line tools."""

import json
import sys

import numpy as np
import pytest
from loguru import logger

from embedding_pq_codec.cli import eval as eval_cli
from embedding_pq_codec.cli import quantize as quantize_cli
from embedding_pq_codec.storage.quantized import QuantizedArray


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


def run(monkeypatch, module, *args: str) -> None:
    monkeypatch.setattr(sys, "argv", [module.__name__, *args])
    module.main()


def test_quantize_and_eval(tmp_path, monkeypatch, capsys) -> None:
    x = np.random.default_rng(0).standard_normal((120, 16)).astype(np.float32)
    np.save(tmp_path / "embeds.npy", x)
    out = tmp_path / "out" / "embeds.pq"

    run(monkeypatch, quantize_cli, "--input", str(tmp_path / "embeds.npy"), "--output", str(out),
        "--subquantizers", "4", "--bits", "4", "--iterations", "5", "--quantizer", "opq", "--seed", "3")
    assert "Done." in capsys.readouterr().out
    with open(out, "rb") as f:
        quantized = QuantizedArray.read_chunk(f)
    assert quantized.shape == (120, 16)
    assert quantized.quantizer.projection is not None
    assert quantized.norms is not None

    report = tmp_path / "report.json"
    run(monkeypatch, eval_cli, "--input", str(out), "--original", str(tmp_path / "embeds.npy"),
        "--k", "5", "--n_queries", "10", "--out_json", str(report))
    assert "Embeddings: 120 x 16" in capsys.readouterr().out
    metrics = json.loads(report.read_text(encoding="utf-8"))
    assert metrics["n"] == 120 and metrics["d"] == 16
    assert 0.0 <= metrics["recall@5"] <= 1.0
    assert metrics["mse"] > 0.0


def test_default_subquantizers() -> None:
    assert quantize_cli.default_subquantizers(300) == 150
    assert quantize_cli.default_subquantizers(15) == 15


def test_quantize_invalid_parameters(tmp_path, monkeypatch) -> None:
    np.save(tmp_path / "embeds.npy", np.zeros((10, 6), dtype=np.float32))
    with pytest.raises(SystemExit):
        run(monkeypatch, quantize_cli, "--input", str(tmp_path / "embeds.npy"), "--output", str(tmp_path / "x.pq"),
            "--subquantizers", "4")


def test_eval_rejects_other_files(tmp_path, monkeypatch) -> None:
    (tmp_path / "bad.pq").write_bytes(b"\x02\x00\x00\x00" + bytes(8))
    with pytest.raises(SystemExit):
        run(monkeypatch, eval_cli, "--input", str(tmp_path / "bad.pq"))
