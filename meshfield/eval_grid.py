"""Fixed evaluation grid of surface points used for inference images.

Text format: the first line is `width,height`, then width*height lines of
`face_id,w1,w2`, row-major with x varying fastest. Records with a negative
weight mark texels that no face covers; they are masked out of exported images.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ._log import log
from .mesh import Mesh
from .surface_point import INPUT_DIMS, decode_face_ids, encode_face_ids

# Inside test tolerance, keeps texels on shared UV edges covered.
BARY_EPSILON = -1e-6


@dataclass(eq=False)
class EvalGrid:
    width: int
    height: int
    inputs: np.ndarray  # (width*height, 3) float32, face id bit-cast into column 0

    @property
    def n(self) -> int:
        return int(self.width) * int(self.height)

    @property
    def mask(self) -> np.ndarray:
        """True where the record is a real surface point."""
        return (self.inputs[:, 1] >= 0.0) & (self.inputs[:, 2] >= 0.0)

    @property
    def face_ids(self) -> np.ndarray:
        return decode_face_ids(np.ascontiguousarray(self.inputs[:, 0]))


def load_eval_grid(path: str | Path) -> EvalGrid:
    path = Path(path)
    if not path.is_file():
        raise ValueError(f"Evaluation grid not found: {path}")
    lines = [s.strip() for s in path.read_text(encoding="utf-8").splitlines()]
    lines = [s for s in lines if s]
    if not lines:
        raise ValueError(f"Evaluation grid is empty: {path}")

    try:
        width, height = (int(p) for p in lines[0].split(","))
    except ValueError as e:
        raise ValueError(f"{path}:1: expected 'width,height', got {lines[0]!r}") from e
    if width <= 0 or height <= 0:
        raise ValueError(f"{path}:1: grid size must be positive, got {width}x{height}")

    n = width * height
    if len(lines) - 1 != n:
        raise ValueError(f"{path}: expected {n} records for {width}x{height}, found {len(lines) - 1}")

    face_ids = np.empty((n,), dtype=np.int64)
    weights = np.empty((n, 2), dtype=np.float32)
    for i, s in enumerate(lines[1:]):
        parts = [p.strip() for p in s.split(",")]
        try:
            if len(parts) != 3:
                raise ValueError(f"expected 3 fields, got {len(parts)}")
            face_ids[i] = int(parts[0])
            weights[i, 0] = float(parts[1])
            weights[i, 1] = float(parts[2])
        except ValueError as e:
            raise ValueError(f"{path}:{i + 2}: bad record {s!r} ({e})") from e
        if face_ids[i] < 0 or face_ids[i] >= 2**31:
            raise ValueError(f"{path}:{i + 2}: face id {face_ids[i]} out of range")

    inputs = np.empty((n, INPUT_DIMS), dtype=np.float32)
    inputs[:, 0] = encode_face_ids(face_ids)
    inputs[:, 1:] = weights
    grid = EvalGrid(width=width, height=height, inputs=inputs)
    log(1, f"[EvalGrid] {path.name}: {width}x{height}, covered={int(np.sum(grid.mask))}/{n}")
    return grid


def write_eval_grid(path: str | Path, grid: EvalGrid) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    face_ids = grid.face_ids
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{grid.width},{grid.height}\n")
        for fid, w1, w2 in zip(face_ids.tolist(), grid.inputs[:, 1].tolist(), grid.inputs[:, 2].tolist()):
            f.write(f"{fid},{w1:.9g},{w2:.9g}\n")
    return path


def bake_eval_grid(mesh: Mesh, width: int, height: int) -> EvalGrid:
    """Rasterize the UV layout into a width x height evaluation grid.

    Texel (x, y) is sampled at its centre, u = (x + 0.5) / width and
    v = 1 - (y + 0.5) / height (row 0 at the top). Texels covered by several
    faces keep the last one drawn; uncovered texels get w1 = w2 = -1.
    """
    width = int(width)
    height = int(height)
    if width <= 0 or height <= 0:
        raise ValueError(f"Grid size must be positive, got {width}x{height}")

    face_ids = np.zeros((height, width), dtype=np.int64)
    w = np.full((height, width, 2), -1.0, dtype=np.float32)

    # Pixel-space positions of every texcoord; pixel centres sit on integers.
    px = mesh.texcoords[:, 0].astype(np.float64) * width - 0.5
    py = (1.0 - mesh.texcoords[:, 1].astype(np.float64)) * height - 0.5

    for f, (i0, i1, i2) in enumerate(np.asarray(mesh.face_texcoords).tolist()):
        x0, y0 = px[i0], py[i0]
        x1, y1 = px[i1], py[i1]
        x2, y2 = px[i2], py[i2]

        xmin = max(0, int(np.ceil(min(x0, x1, x2))))
        xmax = min(width - 1, int(np.floor(max(x0, x1, x2))))
        ymin = max(0, int(np.ceil(min(y0, y1, y2))))
        ymax = min(height - 1, int(np.floor(max(y0, y1, y2))))
        if xmin > xmax or ymin > ymax:
            continue

        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) < 1e-12:
            continue

        xx, yy = np.meshgrid(np.arange(xmin, xmax + 1, dtype=np.float64), np.arange(ymin, ymax + 1, dtype=np.float64))
        b1 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        b2 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        b3 = 1.0 - b1 - b2
        inside = (b1 >= BARY_EPSILON) & (b2 >= BARY_EPSILON) & (b3 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.where(inside)
        gy = iy + ymin
        gx = ix + xmin
        face_ids[gy, gx] = f
        w[gy, gx, 0] = np.clip(b1[iy, ix], 0.0, 1.0)
        w[gy, gx, 1] = np.clip(b2[iy, ix], 0.0, 1.0 - w[gy, gx, 0])

    inputs = np.empty((width * height, INPUT_DIMS), dtype=np.float32)
    inputs[:, 0] = encode_face_ids(face_ids.reshape(-1))
    inputs[:, 1:] = w.reshape(-1, 2)
    grid = EvalGrid(width=width, height=height, inputs=inputs)
    log(1, f"[EvalGrid] baked {width}x{height}, covered={int(np.sum(grid.mask))}/{grid.n}")
    return grid
