import math

import numpy as np
import pytest
import torch

from meshfield.arena import DeviceArena
from meshfield.eval_grid import bake_eval_grid, write_eval_grid
from meshfield.train import (
    TrainingLoop,
    in_loss_window,
    main,
    print_interval,
    run_training,
    should_print,
)


class CountingTrainable:
    """Reports the step number (1-based) as the loss; infers zeros."""

    def __init__(self):
        self.steps = 0
        self.loss_calls = 0
        self.mean_loss_calls = 0
        self.infer_calls = 0
        self.batches = []

    def step(self, stream, inputs, targets):
        self.steps += 1
        self.batches.append(inputs.clone())
        assert inputs.shape[1] == 3
        assert targets.shape == (inputs.shape[0], 6)
        return self.steps

    def loss(self, stream, context):
        self.loss_calls += 1
        return float(context)

    def mean_loss(self, stream, contexts):
        self.mean_loss_calls += 1
        return sum(float(c) for c in contexts) / len(contexts)

    def infer(self, stream, inputs, outputs):
        self.infer_calls += 1
        outputs.zero_()

    def parameter_count(self):
        return 7


def test_print_schedule():
    printed = [s for s in range(2001) if should_print(s)]
    assert printed == [0, 10, 100, 1000, 2000]
    assert [print_interval(s) for s in (0, 10, 11, 100, 101, 5000)] == [10, 10, 100, 100, 1000, 1000]


def test_loss_window_is_last_hundred_steps():
    window = [s for s in range(101, 1001) if in_loss_window(s)]
    assert window == list(range(901, 1001))
    assert all(in_loss_window(s) for s in range(0, 101))


def test_loop_runs_every_step_and_averages(quad_mesh, board_material, capsys):
    trainable = CountingTrainable()
    arena = DeviceArena("cpu")
    loop = TrainingLoop(quad_mesh, [board_material], np.array([0, 0]), trainable, batch_size=64, arena=arena)
    assert loop.state == "setup"
    assert "training_batch" in arena and "training_target" in arena

    result = loop.run(20)
    assert trainable.steps == 21
    # reports at steps 0 and 10, then the still open window at the end
    assert trainable.mean_loss_calls == 3
    assert trainable.loss_calls == 0
    assert trainable.infer_calls == 0
    # Steps 11..20 are still pending a report; their losses are 12..21.
    assert result.mse == pytest.approx(16.5)
    assert result.parameter_count == 7
    assert result.images == []

    out = capsys.readouterr().out
    assert "Step#0: loss=1 " in out
    assert "Step#10: loss=6.5 " in out
    assert "Step#20" not in out

    assert loop.state == "done"
    assert "training_batch" in arena and "training_target" in arena


def test_mse_falls_back_to_last_report(quad_mesh, plain_material):
    result = TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), batch_size=8).run(10)
    assert result.mse == pytest.approx(6.5)


def test_batches_differ_between_steps(quad_mesh, plain_material):
    trainable = CountingTrainable()
    TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), trainable, batch_size=32).run(2)
    first, second, _ = trainable.batches
    assert not torch.equal(first, second)


def test_same_seed_same_batches(quad_mesh, plain_material):
    a, b = CountingTrainable(), CountingTrainable()
    for t in (a, b):
        TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), t, batch_size=32, seed=99).run(3)
    for x, y in zip(a.batches, b.batches):
        assert torch.equal(x.view(torch.int32), y.view(torch.int32))


def test_evaluation_writes_images(quad_mesh, board_material, tmp_path):
    trainable = CountingTrainable()
    grid = bake_eval_grid(quad_mesh, 4, 4)
    loop = TrainingLoop(quad_mesh, [board_material], np.array([0, 0]), trainable, eval_grid=grid, batch_size=16)
    result = loop.run(0, output_prefix=tmp_path / "out_")

    assert trainable.infer_calls == 1
    assert result.inference_ms >= 0.0
    names = sorted(p.name for p in result.images)
    assert names == ["out_diffuse.png", "out_normal.png", "out_reference_diffuse.png", "out_reference_normal.png"]
    assert all(p.is_file() for p in result.images)


def test_loop_rejects_bad_settings(quad_mesh, plain_material):
    with pytest.raises(ValueError):
        TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), batch_size=0)
    with pytest.raises(ValueError):
        TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), sampling="random")


def test_run_training_end_to_end(quad_obj, tmp_path):
    from meshfield.mesh import load_obj

    mesh, materials, face_materials = load_obj(quad_obj)
    result = run_training(
        mesh=mesh,
        materials=materials,
        face_materials=face_materials,
        eval_grid=bake_eval_grid(mesh, 8, 8),
        config_path=None,
        n_steps=30,
        batch_size=256,
        seed=1337,
        sampling="area",
        device=torch.device("cpu"),
        output_prefix=str(tmp_path / "learned_"),
    )
    assert result is not None
    assert math.isfinite(result.mse)
    assert result.parameter_count > 0
    assert (tmp_path / "learned_diffuse.png").is_file()
    assert (tmp_path / "learned_reference_normal.png").is_file()


def test_run_training_reports_failures(quad_mesh, plain_material, tmp_path, capsys):
    bad = tmp_path / "bad.json"
    bad.write_text('{"loss": {"otype": "Huber"}}', encoding="utf-8")
    result = run_training(
        mesh=quad_mesh,
        materials=[plain_material],
        face_materials=np.array([0, 0]),
        eval_grid=None,
        config_path=bad,
        n_steps=1,
        batch_size=8,
        seed=1,
        sampling="uniform",
        device=torch.device("cpu"),
        output_prefix=None,
    )
    assert result is None
    assert "Uncaught exception" in capsys.readouterr().err


def test_main_usage_errors(tmp_path):
    assert main([]) == 1
    assert main(["--help"]) == 0
    assert main([str(tmp_path / "absent.obj"), str(tmp_path / "grid.txt")]) == 1


def test_main_bad_inputs(quad_obj, tmp_path):
    grid = tmp_path / "grid.txt"
    assert main([str(quad_obj), str(grid), "--device", "cpu"]) == 1

    grid.write_text("1,1\n0,0.5,0.5\n", encoding="utf-8")
    bad_config = tmp_path / "bad.json"
    bad_config.write_text("{not json", encoding="utf-8")
    assert main([str(quad_obj), str(grid), "--device", "cpu", "--config", str(bad_config)]) == 1


def test_main_bakes_grid_then_trains(quad_obj, tmp_path):
    grid = tmp_path / "grid.txt"
    assert main([str(quad_obj), str(grid), "--make-eval-grid", "8x8"]) == 0
    assert grid.read_text(encoding="utf-8").splitlines()[0] == "8,8"

    prefix = tmp_path / "learned_"
    argv = [str(quad_obj), str(grid), "--steps", "12", "--batch-size", "128", "--device", "cpu", "--output-prefix", str(prefix)]
    assert main(argv) == 0
    assert (tmp_path / "learned_diffuse.png").is_file()
    assert (tmp_path / "learned_reference_diffuse.png").is_file()


def test_main_rejects_bad_grid_size(quad_obj, tmp_path):
    assert main([str(quad_obj), str(tmp_path / "g.txt"), "--make-eval-grid", "8by8"]) == 1


def test_write_eval_grid_for_main(quad_mesh, tmp_path):
    path = write_eval_grid(tmp_path / "g.txt", bake_eval_grid(quad_mesh, 2, 2))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "2,2"
    assert len(lines) == 5


def test_losses_are_read_back_once_per_report(quad_mesh, plain_material):
    trainable = CountingTrainable()
    result = TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), trainable, batch_size=8).run(1000)
    assert trainable.steps == 1001
    # steps 0, 10, 100 and 1000
    assert trainable.mean_loss_calls == 4
    assert trainable.loss_calls == 0
    # window 901..1000 holds losses 902..1001
    assert result.mse == pytest.approx(951.5)


def test_arena_is_reset_and_reused_between_runs(quad_mesh, plain_material):
    arena = DeviceArena("cpu")
    grid = bake_eval_grid(quad_mesh, 2, 2)
    first = TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), eval_grid=grid, batch_size=16, arena=arena)
    batch = first.batch
    first.run(3)
    assert torch.count_nonzero(batch) == 0
    assert "eval_inputs" not in arena
    allocations = arena.allocations

    second = TrainingLoop(quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), batch_size=16, arena=arena)
    assert second.batch is batch
    second.run(1)
    assert arena.allocations == allocations


def test_precomputed_cdf_is_used(quad_mesh, plain_material):
    from meshfield.sampling import build_face_cdf

    cdf = build_face_cdf(quad_mesh)
    loop = TrainingLoop(
        quad_mesh, [plain_material], np.array([0, 0]), CountingTrainable(), batch_size=8, sampling="area", face_cdf=cdf
    )
    assert loop.face_cdf is cdf


class RecordingStream:
    def __init__(self):
        self.waited_on = []

    def wait_stream(self, other):
        self.waited_on.append(other)


def test_side_stream_waits_for_setup_work(quad_mesh, board_material, monkeypatch):
    import contextlib

    import meshfield.train as train_module

    events = []
    monkeypatch.setattr(torch.cuda, "current_stream", lambda device=None: "setup-stream")
    monkeypatch.setattr(train_module, "stream_context", lambda stream: contextlib.nullcontext())

    stream = RecordingStream()
    trainable = CountingTrainable()
    original_step = trainable.step

    def step(s, inputs, targets):
        events.append(("step", len(stream.waited_on)))
        return original_step(s, inputs, targets)

    def infer(s, inputs, outputs):
        events.append(("infer", len(stream.waited_on)))
        outputs.zero_()

    trainable.step = step
    trainable.infer = infer

    loop = TrainingLoop(
        quad_mesh, [board_material], np.array([0, 0]), trainable, eval_grid=bake_eval_grid(quad_mesh, 2, 2), batch_size=8, stream=stream
    )
    assert stream.waited_on == []
    loop.run(2)

    assert stream.waited_on == ["setup-stream", "setup-stream"]
    assert events[0] == ("step", 1)
    assert events[-1] == ("infer", 2)
