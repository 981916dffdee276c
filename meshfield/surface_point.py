"""Surface points and the face-id-in-float buffer layout.

Training inputs live in a homogeneous float32 buffer of shape (N, 3):
[face_id, w1, w2] per row. The face id is stored by reinterpreting the bits
of an int32 as a float32 (an explicit bit-cast, never a numeric conversion),
so every value round-trips exactly. Arithmetic on the face-id column is
meaningless; decode it first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Union

import numpy as np
import torch

INPUT_DIMS = 3

ArrayLike = Union[np.ndarray, torch.Tensor]


@dataclass(frozen=True)
class SurfacePoint:
    face_id: int
    w1: float
    w2: float

    @property
    def w3(self) -> float:
        return 1.0 - self.w1 - self.w2

    @property
    def valid(self) -> bool:
        return self.w1 >= 0.0 and self.w2 >= 0.0


def encode_face_ids(face_ids: ArrayLike) -> ArrayLike:
    """Bit-cast integer face ids into float32 slots."""
    if isinstance(face_ids, torch.Tensor):
        return face_ids.to(torch.int32).contiguous().view(torch.float32)
    return np.ascontiguousarray(face_ids, dtype=np.int64).astype(np.int32).view(np.float32)


def decode_face_ids(slots: ArrayLike) -> ArrayLike:
    """Bit-cast float32 slots back to int32 face ids."""
    if isinstance(slots, torch.Tensor):
        if slots.dtype != torch.float32:
            raise TypeError(f"face id slots must be float32, got {slots.dtype}")
        return slots.contiguous().view(torch.int32)
    slots = np.ascontiguousarray(slots)
    if slots.dtype != np.float32:
        raise TypeError(f"face id slots must be float32, got {slots.dtype}")
    return slots.view(np.int32)


def pack_points(points: Iterable[SurfacePoint]) -> np.ndarray:
    """Serialize surface points into an (N, 3) float32 input buffer."""
    points = list(points)
    buf = np.empty((len(points), INPUT_DIMS), dtype=np.float32)
    if not points:
        return buf
    buf[:, 0] = encode_face_ids(np.array([p.face_id for p in points], dtype=np.int64))
    buf[:, 1] = [p.w1 for p in points]
    buf[:, 2] = [p.w2 for p in points]
    return buf


def unpack_points(buf: ArrayLike) -> List[SurfacePoint]:
    if isinstance(buf, torch.Tensor):
        buf = buf.detach().cpu().numpy()
    buf = np.asarray(buf, dtype=np.float32).reshape(-1, INPUT_DIMS)
    face_ids = decode_face_ids(np.ascontiguousarray(buf[:, 0]))
    return [SurfacePoint(int(f), float(w1), float(w2)) for f, w1, w2 in zip(face_ids, buf[:, 1], buf[:, 2])]
