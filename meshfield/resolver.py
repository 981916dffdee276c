"""Turn encoded surface points into supervised targets via material textures.

Each channel group owns a contiguous run of output channels and names the
material texture slot it reads. Materials without a valid texture in that slot
fall back to a constant: either a fixed vector or a named material attribute.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from ._log import log
from .mesh import NO_MATERIAL, Material, Mesh
from .surface_point import INPUT_DIMS, decode_face_ids

Fallback = Union[str, Tuple[float, ...]]

FLAT_NORMAL = (0.5, 0.5, 1.0)


@dataclass(frozen=True)
class ChannelGroup:
    name: str
    channel_offset: int
    channel_width: int
    texture: str
    fallback: Fallback

    def fallback_for(self, material: Optional[Material]) -> Tuple[float, ...]:
        if isinstance(self.fallback, str):
            if material is None:
                return (0.0,) * self.channel_width
            value = material.attribute(self.fallback)
        else:
            value = tuple(float(x) for x in self.fallback)
        if len(value) < self.channel_width:
            raise ValueError(f"Fallback for {self.name!r} has {len(value)} values, needs {self.channel_width}")
        return tuple(value[: self.channel_width])


def default_channel_groups() -> List[ChannelGroup]:
    return [
        ChannelGroup("diffuse", 0, 3, "map_Kd", "Kd"),
        ChannelGroup("normal", 3, 3, "map_Bump", FLAT_NORMAL),
    ]


def channel_groups_from_config(entries: Sequence[dict]) -> List[ChannelGroup]:
    groups = []
    for e in entries:
        fallback = e.get("fallback", (0.0,) * int(e["channel_width"]))
        if not isinstance(fallback, str):
            fallback = tuple(float(x) for x in fallback)
        groups.append(
            ChannelGroup(
                name=str(e["name"]),
                channel_offset=int(e["channel_offset"]),
                channel_width=int(e["channel_width"]),
                texture=str(e["texture"]),
                fallback=fallback,
            )
        )
    return groups


def output_dims(groups: Sequence[ChannelGroup]) -> int:
    return max((g.channel_offset + g.channel_width for g in groups), default=0)


def validate_channel_groups(groups: Sequence[ChannelGroup], n_output_dims: int) -> None:
    if not groups:
        raise ValueError("At least one channel group is required")
    used = np.zeros((int(n_output_dims),), dtype=bool)
    for g in groups:
        if not 1 <= g.channel_width <= 4:
            raise ValueError(f"Channel group {g.name!r}: width must be in [1, 4], got {g.channel_width}")
        if g.channel_offset < 0 or g.channel_offset + g.channel_width > n_output_dims:
            raise ValueError(f"Channel group {g.name!r} does not fit in {n_output_dims} output channels")
        span = used[g.channel_offset : g.channel_offset + g.channel_width]
        if np.any(span):
            raise ValueError(f"Channel group {g.name!r} overlaps another group")
        span[:] = True


@dataclass(eq=False)
class _TextureBucket:
    """Textures of one size stacked for a single gather per batch."""

    texels: torch.Tensor  # (M, H, W, 4)
    slots: torch.Tensor  # material row -> index into texels, -1 when not in this bucket


def _bucket_textures(textures: Sequence[Tuple[int, torch.Tensor]], n_rows: int, device: torch.device) -> List[_TextureBucket]:
    by_size: Dict[Tuple[int, int], List[Tuple[int, torch.Tensor]]] = {}
    for mat_index, tex in textures:
        by_size.setdefault((int(tex.shape[0]), int(tex.shape[1])), []).append((mat_index, tex))

    buckets = []
    for members in by_size.values():
        slots = torch.full((n_rows,), -1, dtype=torch.int64)
        for slot, (mat_index, _) in enumerate(members):
            slots[mat_index] = slot
        texels = torch.stack([tex for _, tex in members]).contiguous()
        buckets.append(_TextureBucket(texels=texels, slots=slots.to(device)))
    return buckets


def _sample_bilinear(texels: torch.Tensor, slot: torch.Tensor, uv: torch.Tensor) -> torch.Tensor:
    """Bilinear lookup of texture `slot[i]` at `uv[i]`, clamped to the border.

    Texel centres sit at ((x + 0.5) / W, 1 - (y + 0.5) / H); row 0 is the top
    of the image, so v is flipped.
    """
    m, h, w = (int(s) for s in texels.shape[:3])
    x = (uv[:, 0] * w - 0.5).clamp(0.0, w - 1)
    y = ((1.0 - uv[:, 1]) * h - 0.5).clamp(0.0, h - 1)
    x0 = x.floor()
    y0 = y.floor()
    fx = (x - x0).unsqueeze(1)
    fy = (y - y0).unsqueeze(1)
    x0 = x0.to(torch.int64)
    y0 = y0.to(torch.int64)
    x1 = (x0 + 1).clamp(max=w - 1)
    y1 = (y0 + 1).clamp(max=h - 1)

    flat = texels.view(m * h * w, texels.shape[3])
    base = slot * (h * w)
    c00 = flat[base + y0 * w + x0]
    c10 = flat[base + y0 * w + x1]
    c01 = flat[base + y1 * w + x0]
    c11 = flat[base + y1 * w + x1]
    top = c00 + (c10 - c00) * fx
    bottom = c01 + (c11 - c01) * fx
    return top + (bottom - top) * fy


class TargetResolver:
    """Batched texture lookup for encoded surface points.

    Samples whose face id is outside [0, n_faces) resolve to all-zero targets.
    Textures are grouped by size, so a batch costs one gather per distinct
    texture size rather than one per material.
    """

    def __init__(
        self,
        mesh: Mesh,
        materials: Sequence[Material],
        face_materials: np.ndarray,
        *,
        channel_groups: Optional[Sequence[ChannelGroup]] = None,
        n_output_dims: Optional[int] = None,
        device: torch.device | str = "cpu",
    ) -> None:
        self.device = torch.device(device)
        self.groups = list(channel_groups) if channel_groups is not None else default_channel_groups()
        self.n_output_dims = int(n_output_dims) if n_output_dims is not None else output_dims(self.groups)
        validate_channel_groups(self.groups, self.n_output_dims)

        self.n_faces = mesh.n_faces
        buffers = mesh.to_device(self.device)
        self.texcoords = buffers["texcoords"]
        self.face_texcoords = buffers["face_texcoords"]

        # "No material" becomes an extra row after the real materials.
        n_mat = len(materials)
        fm = np.asarray(face_materials, dtype=np.int64).reshape(-1)
        if fm.shape[0] != mesh.n_faces:
            raise ValueError(f"face_materials has {fm.shape[0]} entries, mesh has {mesh.n_faces} faces")
        fm = np.where(fm == NO_MATERIAL, n_mat, fm)
        self.face_materials = torch.from_numpy(fm).to(self.device)

        self._fallbacks: List[torch.Tensor] = []
        self._buckets: List[List[_TextureBucket]] = []
        for g in self.groups:
            rows = [g.fallback_for(m) for m in materials] + [g.fallback_for(None)]
            self._fallbacks.append(torch.tensor(rows, dtype=torch.float32, device=self.device))
            bound = [(i, m.texture(g.texture).to_device(self.device)) for i, m in enumerate(materials) if m.texture(g.texture).valid]
            self._buckets.append(_bucket_textures(bound, n_mat + 1, self.device))
            log(
                1,
                f"[Resolver] group={g.name} channels=[{g.channel_offset}, {g.channel_offset + g.channel_width}) "
                f"textured_materials={len(bound)}/{n_mat} texture_sizes={len(self._buckets[-1])}",
            )

    def interpolate_uv(self, inputs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Returns (uv (N, 2), clamped face ids, in-range mask)."""
        face = decode_face_ids(inputs[:, 0].contiguous()).to(torch.int64)
        valid = (face >= 0) & (face < self.n_faces)
        face = face.clamp(0, self.n_faces - 1)

        tc = self.face_texcoords[face]
        w1 = inputs[:, 1:2]
        w2 = inputs[:, 2:3]
        w3 = 1.0 - w1 - w2
        uv = w1 * self.texcoords[tc[:, 0]] + w2 * self.texcoords[tc[:, 1]] + w3 * self.texcoords[tc[:, 2]]
        return uv, face, valid

    def resolve(self, inputs: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Fill `out` (N, n_output_dims) with targets for `inputs` (N, 3)."""
        if inputs.ndim != 2 or inputs.shape[1] != INPUT_DIMS or inputs.dtype != torch.float32:
            raise ValueError(f"inputs must be float32 (N, {INPUT_DIMS}), got {inputs.dtype} {tuple(inputs.shape)}")
        n = int(inputs.shape[0])
        if out is None:
            out = torch.empty((n, self.n_output_dims), dtype=torch.float32, device=inputs.device)
        out.zero_()
        if n == 0:
            return out

        uv, face, valid = self.interpolate_uv(inputs)
        mat = self.face_materials[face]

        for g, fallback, buckets in zip(self.groups, self._fallbacks, self._buckets):
            values = fallback[mat]
            for bucket in buckets:
                slot = bucket.slots[mat]
                sampled = _sample_bilinear(bucket.texels, slot.clamp(min=0), uv)[:, : g.channel_width]
                values = torch.where((slot >= 0).unsqueeze(1), sampled, values)
            out[:, g.channel_offset : g.channel_offset + g.channel_width] = values

        out.masked_fill_(~valid.unsqueeze(1), 0.0)
        return out
