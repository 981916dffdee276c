"""Face-area CDF and the per-step surface point sampler.

Sampling runs as a batched tensor program on the training device: one lane
per batch slot, each lane with its own persistent random stream. Streams are
never reseeded, so consecutive `sample()` calls continue the same sequence.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np
import torch
import trimesh

from ._log import log
from .mesh import Mesh
from .surface_point import INPUT_DIMS, SurfacePoint, decode_face_ids, encode_face_ids, unpack_points

DEFAULT_SEED = 1337
SAMPLING_MODES = ("uniform", "area")

_MASK32 = 0xFFFFFFFF
_MASK16 = 0xFFFF
_GOLDEN32 = 0x9E3779B9


def face_areas(mesh: Mesh) -> np.ndarray:
    """Per-face area, 0.5 * |(v2 - v1) x (v3 - v1)|."""
    triangles = np.asarray(mesh.vertices, dtype=np.float64)[mesh.faces]
    return np.asarray(trimesh.triangles.area(triangles), dtype=np.float64)


def build_face_cdf(mesh: Mesh) -> np.ndarray:
    """Normalised running sum of face areas, shape (F,), last entry exactly 1.

    Zero-area faces leave the CDF flat and are never picked by area-weighted
    sampling. A mesh with no area at all is a configuration error.
    """
    areas = face_areas(mesh)
    total = float(np.sum(areas))
    if not np.isfinite(total) or total <= 0.0:
        raise ValueError(f"Mesh has zero total surface area (faces={mesh.n_faces}); cannot build face CDF")

    cdf = np.cumsum(areas) / total
    cdf = np.maximum.accumulate(np.clip(cdf, 0.0, 1.0))
    cdf[-1] = 1.0
    log(2, f"[CDF] faces={mesh.n_faces} total_area={total:.6f} degenerate={int(np.sum(areas <= 0.0))}")
    return cdf.astype(np.float32)


def _mul32(x: torch.Tensor, c: int) -> torch.Tensor:
    # (x * c) mod 2^32 for x < 2^32, split in 16-bit halves so int64 never overflows.
    lo = (x & _MASK16) * c
    hi = (((x >> 16) * c) & _MASK16) << 16
    return (lo + hi) & _MASK32


def _hash32(x: torch.Tensor) -> torch.Tensor:
    x = x & _MASK32
    x = x ^ (x >> 16)
    x = _mul32(x, 0x7FEB352D)
    x = x ^ (x >> 15)
    x = _mul32(x, 0x846CA68B)
    x = x ^ (x >> 16)
    return x


class LaneRandom:
    """Counter-based random streams, one per lane.

    Lane `i` is keyed by (seed, stream=i) and starts at `offset`; every draw
    advances the lane's counter by one.
    """

    def __init__(self, n: int, *, seed: int = DEFAULT_SEED, offset: int = 0, device: torch.device | str = "cpu") -> None:
        n = int(n)
        if n <= 0:
            raise ValueError("LaneRandom needs at least one lane")
        stream = torch.arange(n, dtype=torch.int64, device=device)
        seed_mix = _hash32(torch.tensor(int(seed) & _MASK32, dtype=torch.int64, device=device))
        self.key = _hash32(seed_mix ^ _hash32(stream + _GOLDEN32))
        self.counter = torch.full((n,), int(offset), dtype=torch.int64, device=device)

    @property
    def n(self) -> int:
        return int(self.counter.shape[0])

    def next_bits24(self) -> torch.Tensor:
        """Draw 24 random bits per lane as int64 in [0, 2^24)."""
        x = _hash32(self.key ^ _hash32(self.counter * 2 + 1))
        self.counter += 1
        return x >> 8

    def next_float(self) -> torch.Tensor:
        """Draw one float32 in [0, 1) per lane."""
        return self.next_bits24().to(torch.float32) * (1.0 / 16777216.0)


class SurfacePointSampler:
    """Fills an (N, 3) training input buffer with random surface points.

    Uniform-over-faces is the default; `mode="area"` picks faces by area
    through the face CDF instead.
    """

    def __init__(
        self,
        n_faces: int,
        batch_size: int,
        *,
        seed: int = DEFAULT_SEED,
        mode: str = "uniform",
        face_cdf: Optional[np.ndarray] = None,
        device: torch.device | str = "cpu",
    ) -> None:
        if int(n_faces) <= 0:
            raise ValueError("Cannot sample a mesh without faces")
        self.n_faces = int(n_faces)
        self.batch_size = int(batch_size)
        self.device = torch.device(device)
        self.rng = LaneRandom(self.batch_size, seed=seed, device=self.device)
        self._cdf: Optional[torch.Tensor] = None
        if face_cdf is not None:
            cdf = np.asarray(face_cdf, dtype=np.float32).reshape(-1)
            if cdf.shape[0] != self.n_faces:
                raise ValueError(f"face_cdf has {cdf.shape[0]} entries, mesh has {self.n_faces} faces")
            self._cdf = torch.from_numpy(cdf).to(self.device)
        self.mode = "uniform"
        self.set_mode(mode)

    def set_mode(self, mode: str) -> None:
        if mode not in SAMPLING_MODES:
            raise ValueError(f"Unknown sampling mode {mode!r} (expected one of {SAMPLING_MODES})")
        if mode == "area" and self._cdf is None:
            raise ValueError("Area-weighted sampling needs a face CDF")
        self.mode = mode

    def _pick_faces(self) -> torch.Tensor:
        bits = self.rng.next_bits24()
        if self.mode == "area":
            r = bits.to(torch.float32) * (1.0 / 16777216.0)
            face = torch.searchsorted(self._cdf, r, right=True)
            return face.clamp_(max=self.n_faces - 1)
        # floor(r * n_faces) in exact integer arithmetic
        return (bits * self.n_faces) >> 24

    def sample(self, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Draw one batch; writes into `out` when given and returns it."""
        if out is None:
            out = torch.empty((self.batch_size, INPUT_DIMS), dtype=torch.float32, device=self.device)
        if out.shape != (self.batch_size, INPUT_DIMS) or out.dtype != torch.float32:
            raise ValueError(f"Output buffer must be float32 ({self.batch_size}, {INPUT_DIMS}), got {out.dtype} {tuple(out.shape)}")

        face = self._pick_faces()
        r1 = self.rng.next_float()
        r2 = self.rng.next_float()
        s = torch.sqrt(r1)
        w1 = 1.0 - s
        w2 = torch.minimum(s * (1.0 - r2), 1.0 - w1)

        out[:, 0] = encode_face_ids(face)
        out[:, 1] = w1
        out[:, 2] = w2
        return out

    def sample_points(self) -> List[SurfacePoint]:
        return unpack_points(self.sample())


def surface_positions(mesh: Mesh, inputs: torch.Tensor) -> torch.Tensor:
    """3D positions of encoded surface points, (N, 3). Out-of-range ids give NaN."""
    face = decode_face_ids(inputs[:, 0].contiguous()).to(torch.int64)
    valid = (face >= 0) & (face < mesh.n_faces)
    face = face.clamp(0, mesh.n_faces - 1)

    buffers = mesh.to_device(inputs.device)
    tri = buffers["vertices"][buffers["faces"][face]]  # (N, 3, 3)
    w1 = inputs[:, 1:2]
    w2 = inputs[:, 2:3]
    pos = w1 * tri[:, 0] + w2 * tri[:, 1] + (1.0 - w1 - w2) * tri[:, 2]
    return torch.where(valid.unsqueeze(1), pos, torch.full_like(pos, float("nan")))
