"""Triangle mesh, materials and textures, plus a small OBJ/MTL reader.

Faces carry separate vertex and texcoord indices (OBJ style), so UV seams do
not duplicate vertices. The reader only accepts triangulated meshes whose faces
all reference texture coordinates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
import trimesh

from ._log import log, warn
from .image_io import load_image

NO_MATERIAL = -1

# MTL keys that name a texture, mapped onto the slot names used by channel groups.
_TEXTURE_KEYS = {
    "map_kd": "map_Kd",
    "map_bump": "map_Bump",
    "bump": "map_Bump",
}


@dataclass(eq=False)
class Texture:
    """A material texture. `valid` is False when no image backs it."""

    valid: bool = False
    pixels: Optional[np.ndarray] = None  # (H, W, 4) float32, row 0 = top
    path: Optional[Path] = None
    _device_cache: Dict[str, torch.Tensor] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_file(cls, path: str | Path) -> "Texture":
        """Load a texture; unreadable files give an invalid texture."""
        path = Path(path)
        try:
            pixels, width, height = load_image(path)
        except OSError as e:
            warn(f"texture unavailable, using fallback: {e}")
            return cls(valid=False, path=path)
        log(1, f"[Texture] {path.name}: {width}x{height}")
        return cls(valid=True, pixels=pixels, path=path)

    @classmethod
    def from_array(cls, pixels: np.ndarray) -> "Texture":
        pixels = np.asarray(pixels, dtype=np.float32)
        if pixels.ndim != 3 or pixels.shape[2] not in (1, 3, 4):
            raise ValueError(f"Texture pixels must have shape (H, W, 1|3|4), got {pixels.shape}")
        if pixels.shape[2] != 4:
            rgb = np.repeat(pixels, 3, axis=2) if pixels.shape[2] == 1 else pixels
            alpha = np.ones(pixels.shape[:2] + (1,), dtype=np.float32)
            pixels = np.concatenate([rgb, alpha], axis=2)
        return cls(valid=True, pixels=np.ascontiguousarray(pixels))

    @property
    def width(self) -> int:
        return 0 if self.pixels is None else int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return 0 if self.pixels is None else int(self.pixels.shape[0])

    def to_device(self, device: torch.device | str) -> torch.Tensor:
        """(H, W, 4) float32 copy of the texture on `device`, uploaded once."""
        if not self.valid or self.pixels is None:
            raise ValueError("Cannot upload an invalid texture")
        key = str(torch.device(device))
        tex = self._device_cache.get(key)
        if tex is None:
            tex = torch.from_numpy(np.array(self.pixels, dtype=np.float32)).to(device)
            self._device_cache[key] = tex
        return tex


@dataclass
class Material:
    name: str
    kd: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    textures: Dict[str, Texture] = field(default_factory=dict)

    def texture(self, slot: str) -> Texture:
        return self.textures.get(slot) or Texture(valid=False)

    def attribute(self, name: str) -> Tuple[float, ...]:
        """Constant material attributes usable as channel-group fallbacks."""
        if name.lower() == "kd":
            return tuple(float(c) for c in self.kd)
        raise KeyError(f"Unknown material attribute {name!r}")


@dataclass(eq=False)
class Mesh:
    """Immutable triangle mesh with per-face texcoord indices.

    vertices: (V, 3) float32, texcoords: (T, 2) float32,
    faces: (F, 3) int64 vertex indices, face_texcoords: (F, 3) int64.
    """

    vertices: np.ndarray
    texcoords: np.ndarray
    faces: np.ndarray
    face_texcoords: np.ndarray

    def __post_init__(self) -> None:
        self.vertices = np.ascontiguousarray(self.vertices, dtype=np.float32).reshape(-1, 3)
        self.texcoords = np.ascontiguousarray(self.texcoords, dtype=np.float32).reshape(-1, 2)
        self.faces = np.ascontiguousarray(self.faces, dtype=np.int64).reshape(-1, 3)
        self.face_texcoords = np.ascontiguousarray(self.face_texcoords, dtype=np.int64).reshape(-1, 3)
        for arr in (self.vertices, self.texcoords, self.faces, self.face_texcoords):
            arr.setflags(write=False)

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_texcoords(self) -> int:
        return int(self.texcoords.shape[0])

    @property
    def n_faces(self) -> int:
        return int(self.faces.shape[0])

    def to_device(self, device: torch.device | str) -> Dict[str, torch.Tensor]:
        """Device copies of the mesh arrays, uploaded once per device."""
        key = str(torch.device(device))
        cache = self.__dict__.setdefault("_device_cache", {})
        if key not in cache:
            cache[key] = {
                name: torch.from_numpy(np.array(getattr(self, name))).to(device)
                for name in ("vertices", "texcoords", "faces", "face_texcoords")
            }
        return cache[key]

    def to_trimesh(self) -> trimesh.Trimesh:
        return trimesh.Trimesh(vertices=self.vertices, faces=self.faces, process=False)


def validate_mesh(mesh: Mesh, materials: Sequence[Material] = (), face_materials: Optional[np.ndarray] = None) -> None:
    """Reject meshes whose indices would be out of range downstream."""
    if mesh.n_faces == 0:
        raise ValueError("Mesh has no faces")
    if mesh.face_texcoords.shape != mesh.faces.shape:
        raise ValueError(
            f"faces and face_texcoords shape mismatch: {mesh.faces.shape} vs {mesh.face_texcoords.shape}"
        )
    if mesh.faces.min() < 0 or mesh.faces.max() >= mesh.n_vertices:
        raise ValueError(f"Vertex index out of range [0, {mesh.n_vertices})")
    if mesh.face_texcoords.min() < 0 or mesh.face_texcoords.max() >= mesh.n_texcoords:
        raise ValueError(f"Texcoord index out of range [0, {mesh.n_texcoords})")
    if not np.all(np.isfinite(mesh.vertices)) or not np.all(np.isfinite(mesh.texcoords)):
        raise ValueError("Mesh has non-finite vertex or texcoord values")

    if face_materials is not None:
        fm = np.asarray(face_materials)
        if fm.shape != (mesh.n_faces,):
            raise ValueError(f"face_materials must have shape ({mesh.n_faces},), got {fm.shape}")
        bad = (fm != NO_MATERIAL) & ((fm < 0) | (fm >= len(materials)))
        if np.any(bad):
            raise ValueError(f"Face material index out of range [0, {len(materials)})")


def _resolve_index(token: str, count: int, what: str, lineno: int) -> int:
    idx = int(token)
    if idx < 0:
        idx = count + idx
    else:
        idx -= 1
    if idx < 0 or idx >= count:
        raise ValueError(f"line {lineno}: {what} index {token} out of range (have {count})")
    return idx


def load_mtl(path: str | Path) -> Dict[str, Material]:
    """Parse an MTL file. Texture paths are relative to the MTL file."""
    path = Path(path)
    materials: Dict[str, Material] = {}
    current: Optional[Material] = None

    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        s = raw.strip()
        if not s or s.startswith("#"):
            continue
        parts = s.split()
        key = parts[0]

        if key == "newmtl":
            name = " ".join(parts[1:]) if len(parts) > 1 else ""
            current = Material(name=name)
            materials[name] = current
            continue
        if current is None:
            continue

        if key == "Kd" and len(parts) >= 4:
            current.kd = (float(parts[1]), float(parts[2]), float(parts[3]))
        elif key.lower() in _TEXTURE_KEYS and len(parts) >= 2:
            # Options such as "-bm 1.0" precede the file name.
            tex_path = path.parent / parts[-1]
            current.textures[_TEXTURE_KEYS[key.lower()]] = Texture.from_file(tex_path)

    log(1, f"[Mesh] {path.name}: {len(materials)} material(s)")
    return materials


def load_obj(path: str | Path) -> Tuple[Mesh, List[Material], np.ndarray]:
    """Read a triangulated OBJ with texture coordinates.

    Returns (mesh, materials, face_materials); faces outside any `usemtl` block
    map to NO_MATERIAL.
    """
    path = Path(path)
    print(f"[Mesh] Loading {path}...")
    if not path.is_file():
        raise FileNotFoundError(f"Mesh file not found: {path}")

    vertices: list[tuple[float, float, float]] = []
    texcoords: list[tuple[float, float]] = []
    faces: list[tuple[int, int, int]] = []
    face_tc: list[tuple[int, int, int]] = []
    face_mat: list[int] = []

    library: Dict[str, Material] = {}
    materials: List[Material] = []
    material_index: Dict[str, int] = {}
    current_mat = NO_MATERIAL

    for lineno, raw in enumerate(path.read_text(encoding="utf-8", errors="replace").splitlines(), start=1):
        s = raw.strip()
        if not s or s.startswith("#"):
            continue
        parts = s.split()
        key = parts[0]

        if key == "v":
            vertices.append((float(parts[1]), float(parts[2]), float(parts[3])))
        elif key == "vt":
            texcoords.append((float(parts[1]), float(parts[2]) if len(parts) > 2 else 0.0))
        elif key == "f":
            corners = parts[1:]
            if len(corners) != 3:
                raise ValueError(f"{path}:{lineno}: non-triangular face with {len(corners)} corners")
            vi: list[int] = []
            ti: list[int] = []
            for corner in corners:
                fields = corner.split("/")
                if len(fields) < 2 or not fields[1]:
                    raise ValueError(f"{path}:{lineno}: face corner {corner!r} has no texture coordinate")
                vi.append(_resolve_index(fields[0], len(vertices), "vertex", lineno))
                ti.append(_resolve_index(fields[1], len(texcoords), "texcoord", lineno))
            faces.append((vi[0], vi[1], vi[2]))
            face_tc.append((ti[0], ti[1], ti[2]))
            face_mat.append(current_mat)
        elif key == "mtllib":
            for name in parts[1:]:
                mtl_path = path.parent / name
                if mtl_path.is_file():
                    library.update(load_mtl(mtl_path))
                else:
                    warn(f"material library not found: {mtl_path}")
        elif key == "usemtl":
            name = " ".join(parts[1:])
            if name not in material_index:
                material_index[name] = len(materials)
                materials.append(library.get(name) or Material(name=name))
            current_mat = material_index[name]

    mesh = Mesh(
        vertices=np.asarray(vertices, dtype=np.float32).reshape(-1, 3),
        texcoords=np.asarray(texcoords, dtype=np.float32).reshape(-1, 2),
        faces=np.asarray(faces, dtype=np.int64).reshape(-1, 3),
        face_texcoords=np.asarray(face_tc, dtype=np.int64).reshape(-1, 3),
    )
    face_materials = np.asarray(face_mat, dtype=np.int64)
    validate_mesh(mesh, materials, face_materials)

    log(1, f"[Mesh] verts={mesh.n_vertices} texcoords={mesh.n_texcoords} faces={mesh.n_faces} materials={len(materials)}")
    if len(mesh.vertices) > 0:
        tm = mesh.to_trimesh()
        log(2, f"[Mesh] watertight={bool(tm.is_watertight)} euler_number={tm.euler_number}")
        log(2, f"[Mesh] bounds(min={tm.bounds[0].tolist()}, max={tm.bounds[1].tolist()})")
    return mesh, materials, face_materials
