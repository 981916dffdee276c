"""Training loop: sample surface points, resolve texture targets, step the learner.

Every iteration runs sampler -> resolver -> step on one stream with no host
synchronisation in between. The host only waits when it needs a loss value for
the progress report, around the timed inference pass and for image export.
"""

from __future__ import annotations

import argparse
import platform
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np
import torch

from . import _log
from ._log import log, resource_line, warn
from .adjacency import build_adjacency, validate_adjacency
from .arena import DeviceArena
from .eval_grid import EvalGrid, bake_eval_grid, load_eval_grid, write_eval_grid
from .image_io import save_image
from .mesh import Material, Mesh, load_obj
from .resolver import ChannelGroup, TargetResolver, channel_groups_from_config, default_channel_groups, output_dims
from .sampling import DEFAULT_SEED, SAMPLING_MODES, SurfacePointSampler, build_face_cdf
from .surface_point import INPUT_DIMS
from .trainable import TorchTrainable, TrainableFunction, load_network_config, stream_context

MAX_LOSS_WINDOW = 100


def print_interval(step: int) -> int:
    """Reporting interval in force at `step`: 10, then 100, then 1000."""
    if step <= 10:
        return 10
    if step <= 100:
        return 100
    return 1000


def should_print(step: int) -> bool:
    return step % print_interval(step) == 0


def in_loss_window(step: int) -> bool:
    """True for the last min(interval, 100) steps up to and including a report."""
    interval = print_interval(step)
    r = step % interval
    return r == 0 or r > interval - min(interval, MAX_LOSS_WINDOW)


def check_device(device: torch.device) -> torch.device:
    """Advisory capability check; never refuses to run."""
    if device.type != "cuda":
        return device
    if not torch.cuda.is_available():
        warn("CUDA requested but not available, falling back to CPU")
        return torch.device("cpu")
    major, minor = torch.cuda.get_device_capability(device)
    if major < 7:
        warn(f"compute capability {major}.{minor} is below 7.0; training may be slow")
    return device


def _device_from_arg(arg: str) -> torch.device:
    if arg == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(arg)


def _synchronize(device: torch.device) -> None:
    if device.type == "cuda":
        torch.cuda.synchronize(device)


def _join_stream(stream: Optional[torch.cuda.Stream], device: torch.device) -> None:
    """Order `stream` after everything already queued on the device's current stream."""
    if stream is not None:
        stream.wait_stream(torch.cuda.current_stream(device))


@dataclass(frozen=True)
class RunResult:
    mse: float
    parameter_count: int
    inference_ms: float
    images: List[Path] = field(default_factory=list)


class TrainingLoop:
    """Owns every per-run resource: arena, random streams, sampler, resolver."""

    def __init__(
        self,
        mesh: Mesh,
        materials: Sequence[Material],
        face_materials: np.ndarray,
        trainable: TrainableFunction,
        *,
        eval_grid: Optional[EvalGrid] = None,
        channel_groups: Optional[Sequence[ChannelGroup]] = None,
        batch_size: int = 1 << 16,
        seed: int = DEFAULT_SEED,
        sampling: str = "uniform",
        face_cdf: Optional[np.ndarray] = None,
        device: torch.device | str = "cpu",
        arena: Optional[DeviceArena] = None,
        stream: Optional[torch.cuda.Stream] = None,
    ) -> None:
        self.state = "setup"
        self.device = torch.device(device)
        self.mesh = mesh
        self.trainable = trainable
        self.eval_grid = eval_grid
        self.stream = stream
        self.batch_size = int(batch_size)
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.arena = arena if arena is not None else DeviceArena(self.device)

        t0 = time.perf_counter()
        self.adjacency = build_adjacency(mesh)
        validate_adjacency(self.adjacency, mesh)
        self.face_cdf = face_cdf if face_cdf is not None else build_face_cdf(mesh)
        log(1, f"[Setup] adjacency+cdf in {(time.perf_counter() - t0) * 1000.0:.1f}ms")

        self.resolver = TargetResolver(
            mesh,
            materials,
            face_materials,
            channel_groups=channel_groups if channel_groups is not None else default_channel_groups(),
            device=self.device,
        )
        self.sampler = SurfacePointSampler(
            mesh.n_faces,
            self.batch_size,
            seed=seed,
            mode=sampling,
            face_cdf=self.face_cdf,
            device=self.device,
        )
        self.batch = self.arena.get("training_batch", (self.batch_size, INPUT_DIMS))
        self.targets = self.arena.get("training_target", (self.batch_size, self.resolver.n_output_dims))

    @property
    def n_output_dims(self) -> int:
        return self.resolver.n_output_dims

    def generate_batch(self) -> None:
        with stream_context(self.stream):
            self.sampler.sample(out=self.batch)
            self.resolver.resolve(self.batch, out=self.targets)

    def run(self, n_steps: int, *, output_prefix: Optional[str | Path] = None) -> RunResult:
        """Train for steps 0..n_steps inclusive, then evaluate and export."""
        n_steps = int(n_steps)
        if n_steps < 0:
            raise ValueError("n_steps must be >= 0")

        self.state = "iterating"
        # Setup queued its uploads on the current stream.
        _join_stream(self.stream, self.device)

        # Step contexts of the open loss window; read back only when reported.
        window: List[Any] = []
        last_report: Optional[float] = None
        result_images: List[Path] = []
        inference_ms = 0.0
        t_report = time.perf_counter()

        for step in range(n_steps + 1):
            self.generate_batch()
            ctx = self.trainable.step(self.stream, self.batch, self.targets)

            if in_loss_window(step):
                window.append(ctx)

            if should_print(step):
                last_report = self.trainable.mean_loss(self.stream, window)
                now = time.perf_counter()
                us = int((now - t_report) * 1e6)
                res = f" | {resource_line(self.device)}" if _log.VERBOSE >= 2 else ""
                print(f"Step#{step}: loss={last_report:.6g} time={us}[µs]{res}", flush=True)
                window = []
                t_report = time.perf_counter()

            if step == n_steps:
                self.state = "evaluating"
                if self.eval_grid is not None:
                    inference_ms, result_images = self.evaluate(self.eval_grid, output_prefix)

        if window:
            mse = self.trainable.mean_loss(self.stream, window)
        else:
            mse = float(last_report) if last_report is not None else float("nan")

        result = RunResult(
            mse=mse,
            parameter_count=int(self.trainable.parameter_count()),
            inference_ms=inference_ms,
            images=result_images,
        )
        # Batch buffers stay allocated for the next run on this arena.
        _synchronize(self.device)
        self.arena.discard("eval_inputs", "eval_outputs")
        self.arena.reset()
        self.state = "done"
        return result

    def evaluate(self, grid: EvalGrid, output_prefix: Optional[str | Path]) -> tuple[float, List[Path]]:
        """Timed inference over the grid; writes one image per channel group."""
        inputs = self.arena.get("eval_inputs", (grid.n, INPUT_DIMS))
        inputs.copy_(torch.from_numpy(np.array(grid.inputs, dtype=np.float32)))
        outputs = self.arena.get("eval_outputs", (grid.n, self.n_output_dims))

        _join_stream(self.stream, self.device)
        _synchronize(self.device)
        t0 = time.perf_counter()
        self.trainable.infer(self.stream, inputs, outputs)
        _synchronize(self.device)
        inference_ms = (time.perf_counter() - t0) * 1000.0
        print(f"Inference: {grid.width}x{grid.height} samples in {inference_ms:.3f}ms")

        images: List[Path] = []
        if output_prefix is None:
            return inference_ms, images

        with stream_context(self.stream):
            reference = self.resolver.resolve(inputs)
        _synchronize(self.device)
        mask = grid.mask.astype(np.float32)[:, None]
        predicted = outputs.detach().cpu().numpy() * mask
        reference = reference.detach().cpu().numpy() * mask

        prefix = str(output_prefix)
        for g in self.resolver.groups:
            lo, hi = g.channel_offset, g.channel_offset + g.channel_width
            for tag, data in (("", predicted), ("reference_", reference)):
                path = Path(f"{prefix}{tag}{g.name}.png")
                save_image(path, np.ascontiguousarray(data[:, lo:hi]), grid.width, grid.height, g.channel_width)
                images.append(path)
                log(1, f"[Export] {path}")
        return inference_ms, images


def run_training(
    *,
    mesh: Mesh,
    materials: Sequence[Material],
    face_materials: np.ndarray,
    eval_grid: Optional[EvalGrid],
    config_path: Optional[str | Path],
    n_steps: int,
    batch_size: int,
    seed: int,
    sampling: str,
    device: torch.device,
    output_prefix: Optional[str],
    face_cdf: Optional[np.ndarray] = None,
) -> Optional[RunResult]:
    """Build the learner and loop and run them; errors are reported, not raised.

    The run owns its device arena and frees it once the loop is done.
    """
    arena = DeviceArena(device)
    try:
        torch.manual_seed(int(seed))
        np.random.seed(int(seed))
        config = load_network_config(config_path)
        if "channel_groups" in config:
            groups = channel_groups_from_config(config["channel_groups"])
        else:
            groups = default_channel_groups()
        n_out = output_dims(groups)
        trainable = TorchTrainable(config, n_faces=mesh.n_faces, n_output_dims=n_out, device=device)
        stream = torch.cuda.Stream(device) if device.type == "cuda" else None

        loop = TrainingLoop(
            mesh,
            materials,
            face_materials,
            trainable,
            eval_grid=eval_grid,
            channel_groups=groups,
            batch_size=batch_size,
            seed=seed,
            sampling=sampling,
            face_cdf=face_cdf,
            device=device,
            arena=arena,
            stream=stream,
        )
        t_train = time.perf_counter()
        result = loop.run(n_steps, output_prefix=output_prefix)
        log(1, f"[Training] total_time={(time.perf_counter() - t_train):.2f}s")
        return result
    except Exception as e:
        print(f"Uncaught exception: {e}", file=sys.stderr, flush=True)
        return None
    finally:
        arena.release()


def _parse_size(text: str) -> tuple[int, int]:
    try:
        w, h = (int(p) for p in text.lower().split("x"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {text!r}") from e
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError(f"grid size must be positive, got {text!r}")
    return w, h


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Fit a neural field to the material textures of a triangle mesh")
    ap.add_argument("mesh", type=str, help="Path to a triangulated .obj with texture coordinates")
    ap.add_argument("eval_grid", type=str, help="Evaluation grid file (width,height + face_id,w1,w2 records)")
    ap.add_argument("--config", type=str, default=None, help="Network config JSON (default: built-in)")
    ap.add_argument("--steps", type=int, default=10000, help="Training steps (default: 10000)")
    ap.add_argument("--batch-size", type=int, default=1 << 16, help="Samples per step (default: 65536)")
    ap.add_argument("--seed", type=int, default=DEFAULT_SEED, help=f"Sampler/model seed (default: {DEFAULT_SEED})")
    ap.add_argument("--sampling", type=str, default="uniform", choices=list(SAMPLING_MODES), help="Face selection (default: uniform)")
    ap.add_argument("--device", type=str, default="auto", choices=["auto", "cpu", "cuda"], help="Training device")
    ap.add_argument("--output-prefix", type=str, default="learned_", help="Prefix for exported images (default: learned_)")
    ap.add_argument(
        "--make-eval-grid",
        type=_parse_size,
        default=None,
        metavar="WxH",
        help="Bake an evaluation grid from the mesh UV layout into EVAL_GRID and exit.",
    )
    ap.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity (-v, -vv, -vvv).")

    try:
        args = ap.parse_args(list(argv) if argv is not None else None)
    except SystemExit as e:
        return 0 if e.code in (0, None) else 1
    _log.set_verbosity(args.verbose)

    mesh_path = Path(args.mesh)
    if not mesh_path.is_file():
        print(f"Error: mesh file not found: {mesh_path}", file=sys.stderr)
        return 1

    try:
        mesh, materials, face_materials = load_obj(mesh_path)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.make_eval_grid is not None:
        width, height = args.make_eval_grid
        out = write_eval_grid(args.eval_grid, bake_eval_grid(mesh, width, height))
        print(f"[EvalGrid] wrote {out}")
        return 0

    try:
        eval_grid = load_eval_grid(args.eval_grid)
        face_cdf = build_face_cdf(mesh)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    device = check_device(_device_from_arg(args.device))

    print("=" * 70)
    print("Mesh Texture Field Trainer")
    print("=" * 70)
    print(f"Mesh: {mesh_path} ({mesh.n_faces} faces, {len(materials)} materials)")
    print(f"Eval grid: {args.eval_grid} ({eval_grid.width}x{eval_grid.height})")
    print(f"Config: {args.config or 'built-in'}")
    print(f"Device: {device}")
    print(f"Steps: {args.steps}")
    print(f"Batch size: {args.batch_size}")
    print(f"Sampling: {args.sampling}")
    print(f"Seed: {args.seed}")
    print("=" * 70)

    log(1, f"[Env] python={sys.version.split()[0]} platform={platform.platform()}")
    log(1, f"[Env] numpy={np.__version__} torch={torch.__version__}")

    result = run_training(
        mesh=mesh,
        materials=materials,
        face_materials=face_materials,
        eval_grid=eval_grid,
        config_path=args.config,
        n_steps=int(args.steps),
        batch_size=int(args.batch_size),
        seed=int(args.seed),
        sampling=str(args.sampling),
        device=device,
        output_prefix=args.output_prefix,
        face_cdf=face_cdf,
    )
    if result is None:
        return 1

    print("=" * 70)
    print(f"MSE: {result.mse:.6g}")
    print(f"Parameters: {result.parameter_count:,}")
    print(f"Inference: {result.inference_ms:.3f}ms")
    print("=" * 70)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
