import importlib.util
import json
from pathlib import Path

import pytest
import torch

from meshfield.arena import DeviceArena
from meshfield.surface_point import encode_face_ids
from meshfield.trainable import DEFAULT_CONFIG, TorchTrainable, load_network_config, merge_config

ROOT = Path(__file__).resolve().parents[1]


def _batch(n, n_faces, seed=0):
    gen = torch.Generator().manual_seed(seed)
    inputs = torch.empty(n, 3)
    inputs[:, 0] = encode_face_ids(torch.randint(0, n_faces, (n,), generator=gen, dtype=torch.int32))
    inputs[:, 1:] = torch.rand(n, 2, generator=gen) * 0.5
    return inputs


def test_merge_config_overlays_sections():
    config = merge_config({"optimizer": {"learning_rate": 0.5}, "network": {"n_neurons": 16}})
    assert config["optimizer"]["learning_rate"] == 0.5
    assert config["optimizer"]["otype"] == "Adam"
    assert config["network"]["n_neurons"] == 16
    assert DEFAULT_CONFIG["network"]["n_neurons"] == 64


@pytest.mark.parametrize(
    "overrides",
    [
        {"model": {}},
        {"loss": {"otype": "Huber"}},
        {"optimizer": {"otype": "Shampoo"}},
        {"encoding": {"otype": "HashGrid"}},
        {"network": {"activation": "Swish"}},
        {"network": 3},
        {"channel_groups": {"name": "diffuse"}},
    ],
)
def test_merge_config_rejects_unknown_values(overrides):
    with pytest.raises(ValueError):
        merge_config(overrides)


def test_bundled_config_loads():
    config = load_network_config(ROOT / "config" / "default.json")
    assert config["loss"]["otype"] == "RelativeL2"
    assert [g["name"] for g in config["channel_groups"]] == ["diffuse", "normal"]
    assert load_network_config(None)["loss"] == DEFAULT_CONFIG["loss"]


def test_load_network_config_errors(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_network_config(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2", encoding="utf-8")
    with pytest.raises(ValueError, match="not valid JSON"):
        load_network_config(bad)


def test_parameter_count_matches_layers():
    trainable = TorchTrainable(merge_config(), n_faces=2, n_output_dims=6)
    features = 2 * 3 * 8
    mlp = (8 * 64 + 64) + (64 * 64 + 64) + (64 * 6 + 6)
    assert trainable.parameter_count() == features + mlp


@pytest.mark.parametrize("loss", ["L2", "L1", "RelativeL2"])
def test_fits_a_constant_target(loss):
    torch.manual_seed(0)
    config = merge_config({"loss": {"otype": loss}})
    trainable = TorchTrainable(config, n_faces=4, n_output_dims=3)
    inputs = _batch(256, 4)
    targets = torch.full((256, 3), 0.5)

    first = trainable.loss(None, trainable.step(None, inputs, targets))
    for _ in range(200):
        ctx = trainable.step(None, inputs, targets)
    assert trainable.loss(None, ctx) < 0.1 * first


def test_infer_does_not_touch_weights():
    trainable = TorchTrainable(merge_config(), n_faces=3, n_output_dims=2)
    before = [p.detach().clone() for p in trainable.model.parameters()]
    inputs = _batch(32, 3)
    out = torch.full((32, 2), float("nan"))
    trainable.infer(None, inputs, out)
    assert torch.isfinite(out).all()
    for a, b in zip(before, trainable.model.parameters()):
        assert torch.equal(a, b)


def test_step_rejects_wrong_shapes():
    trainable = TorchTrainable(merge_config(), n_faces=3, n_output_dims=2)
    with pytest.raises(ValueError):
        trainable.step(None, _batch(8, 3), torch.zeros(8, 3))


def test_arena_reuses_buffers():
    arena = DeviceArena("cpu")
    a = arena.get("batch", (16, 3))
    assert arena.get("batch", (16, 3)) is a
    assert arena.allocations == 1
    assert arena.nbytes == 16 * 3 * 4

    b = arena.get("batch", (32, 3))
    assert b is not a
    assert arena.allocations == 2

    b.fill_(5.0)
    arena.reset()
    assert torch.count_nonzero(arena.get("batch", (32, 3))) == 0

    arena.release()
    assert len(arena) == 0
    assert "batch" not in arena


def test_report_script(tmp_path):
    spec = importlib.util.spec_from_file_location("generate_training_report", ROOT / "scripts" / "generate_training_report.py")
    report = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(report)

    log_file = tmp_path / "training.log"
    log_file.write_text(
        "Step#0: loss=0.5 time=10[µs]\n"
        "noise\n"
        "Step#10: loss=0.25 time=100[µs]\n"
        "Step#100: loss=0.125 time=900[µs]\n",
        encoding="utf-8",
    )
    assert report.main([str(log_file), "--out", str(tmp_path / "report")]) == 0
    metrics = json.loads((tmp_path / "report" / "training_metrics.json").read_text(encoding="utf-8"))
    assert metrics["steps"] == [0, 10, 100]
    assert metrics["final_loss"] == 0.125
    assert metrics["reduction_percent"] == pytest.approx(75.0)

    assert report.main([str(tmp_path / "missing.log"), "--out", str(tmp_path / "r2")]) == 1


def test_mean_loss_over_window_matches_single_losses():
    torch.manual_seed(1)
    trainable = TorchTrainable(merge_config({"loss": {"otype": "L2"}}), n_faces=3, n_output_dims=2)
    inputs = _batch(64, 3)
    targets = torch.full((64, 2), 0.25)
    contexts = [trainable.step(None, inputs, targets) for _ in range(5)]
    singles = [trainable.loss(None, c) for c in contexts]
    assert trainable.mean_loss(None, contexts) == pytest.approx(sum(singles) / len(singles), rel=1e-6)
    with pytest.raises(ValueError):
        trainable.mean_loss(None, [])


def test_arena_discard():
    arena = DeviceArena("cpu")
    arena.get("keep", (4,))
    arena.get("drop", (4,))
    arena.discard("drop", "never-allocated")
    assert "keep" in arena
    assert "drop" not in arena
