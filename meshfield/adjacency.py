"""Per-vertex topological adjacency: incident faces and incident edges.

The table is flattened into two int64 arrays. `offsets[v]` is where vertex
v's segment starts inside `meta` (`offsets[V]` is the total length):

    meta[o]                     n_faces(v)
    meta[o+1 : o+1+nf]          incident face ids
    meta[o+1+nf]                n_edges(v)
    meta[...]                   n_edges(v) records (other_vertex, face_a, face_b)

Inside edge records faces are written as `face + n_vertices`, so a single
int namespace holds both vertex ids ([0, V)) and face refs ([V, V+F)).
A boundary edge has `face_b == EDGE_SENTINEL`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ._log import log, warn
from .mesh import Mesh

EDGE_SENTINEL = -1
NO_FACE = -1
EDGE_RECORD_SIZE = 3


@dataclass(frozen=True)
class EdgeRecord:
    """Undirected edge (v0 < v1) with its one or two faces."""

    v0: int
    v1: int
    face_a: int
    face_b: int = NO_FACE

    @property
    def boundary(self) -> bool:
        return self.face_b == NO_FACE

    def other(self, v: int) -> int:
        if v == self.v0:
            return self.v1
        if v == self.v1:
            return self.v0
        raise ValueError(f"vertex {v} is not an endpoint of edge ({self.v0}, {self.v1})")


def encode_face_ref(face: int, n_vertices: int) -> int:
    return EDGE_SENTINEL if face == NO_FACE else int(face) + int(n_vertices)


def decode_face_ref(ref: int, n_vertices: int) -> int:
    return NO_FACE if ref == EDGE_SENTINEL else int(ref) - int(n_vertices)


class _ScanRegistry:
    """Edge records grouped by their smaller vertex, found by linear scan."""

    def __init__(self, n_vertices: int) -> None:
        self.slots: List[List[List[int]]] = [[] for _ in range(n_vertices)]

    def find(self, lo: int, hi: int) -> Optional[List[int]]:
        for rec in self.slots[lo]:
            if rec[0] == hi:
                return rec
        return None

    def add(self, lo: int, rec: List[int]) -> None:
        self.slots[lo].append(rec)

    def records(self, lo: int) -> Iterable[List[int]]:
        return self.slots[lo]


class _HashRegistry:
    """Same observable behaviour as _ScanRegistry with O(1) lookups."""

    def __init__(self, n_vertices: int) -> None:
        self.slots: List[Dict[int, List[int]]] = [{} for _ in range(n_vertices)]

    def find(self, lo: int, hi: int) -> Optional[List[int]]:
        return self.slots[lo].get(hi)

    def add(self, lo: int, rec: List[int]) -> None:
        self.slots[lo][rec[0]] = rec

    def records(self, lo: int) -> Iterable[List[int]]:
        return self.slots[lo].values()


class AdjacencyTable:
    def __init__(self, n_vertices: int, n_faces: int, meta: np.ndarray, offsets: np.ndarray, edges: Dict[Tuple[int, int], EdgeRecord]) -> None:
        self.n_vertices = int(n_vertices)
        self.n_faces = int(n_faces)
        self.meta = meta
        self.offsets = offsets
        self._edges = edges
        self.meta.setflags(write=False)
        self.offsets.setflags(write=False)

    @property
    def edges(self) -> List[EdgeRecord]:
        return list(self._edges.values())

    def vertex_faces(self, v: int) -> np.ndarray:
        o = int(self.offsets[v])
        nf = int(self.meta[o])
        return self.meta[o + 1 : o + 1 + nf]

    def vertex_edges(self, v: int) -> List[Tuple[int, int, int]]:
        """(other_vertex, face_a, face_b) for every edge touching `v`, faces decoded."""
        o = int(self.offsets[v])
        o += 1 + int(self.meta[o])
        ne = int(self.meta[o])
        recs = self.meta[o + 1 : o + 1 + ne * EDGE_RECORD_SIZE].reshape(ne, EDGE_RECORD_SIZE)
        return [
            (int(other), decode_face_ref(int(fa), self.n_vertices), decode_face_ref(int(fb), self.n_vertices))
            for other, fa, fb in recs
        ]

    def raw_vertex_edges(self, v: int) -> np.ndarray:
        """Edge records of `v` exactly as stored in `meta`, shape (n_edges, 3)."""
        o = int(self.offsets[v])
        o += 1 + int(self.meta[o])
        ne = int(self.meta[o])
        return self.meta[o + 1 : o + 1 + ne * EDGE_RECORD_SIZE].reshape(ne, EDGE_RECORD_SIZE)

    def find_edge(self, a: int, b: int) -> Optional[EdgeRecord]:
        """Edge record for (a, b); both endpoint orders give the same record."""
        return self._edges.get((min(a, b), max(a, b)))


def build_adjacency(mesh: Mesh, *, use_hash: bool = False) -> AdjacencyTable:
    """Compute incident faces and edges for every vertex in one pass over faces.

    Edges are canonicalised as (min vertex, max vertex). The first face seen
    on an edge fills face_a, the second fills face_b; edges shared by more than
    two faces keep the first two and are reported.
    """
    n_vertices = mesh.n_vertices
    faces = np.asarray(mesh.faces, dtype=np.int64)

    vertex_faces: List[List[int]] = [[] for _ in range(n_vertices)]
    registry = _HashRegistry(n_vertices) if use_hash else _ScanRegistry(n_vertices)
    non_manifold = 0

    for f, tri in enumerate(faces.tolist()):
        for v in dict.fromkeys(tri):
            vertex_faces[v].append(f)
        for k in range(3):
            a, b = tri[k], tri[(k + 1) % 3]
            if a == b:
                continue
            lo, hi = (a, b) if a < b else (b, a)
            rec = registry.find(lo, hi)
            ref = encode_face_ref(f, n_vertices)
            if rec is None:
                registry.add(lo, [hi, ref, EDGE_SENTINEL])
            elif ref in (rec[1], rec[2]):
                # degenerate face listing the same edge twice
                continue
            elif rec[2] == EDGE_SENTINEL:
                rec[2] = ref
            else:
                non_manifold += 1

    if non_manifold:
        warn(f"{non_manifold} edge use(s) beyond two faces ignored (non-manifold mesh)")

    edges: Dict[Tuple[int, int], EdgeRecord] = {}
    vertex_edges: List[List[Tuple[int, int, int]]] = [[] for _ in range(n_vertices)]
    for lo in range(n_vertices):
        for hi, fa, fb in registry.records(lo):
            edges[(lo, hi)] = EdgeRecord(
                v0=lo,
                v1=hi,
                face_a=decode_face_ref(fa, n_vertices),
                face_b=decode_face_ref(fb, n_vertices),
            )
            vertex_edges[lo].append((hi, fa, fb))
            vertex_edges[hi].append((lo, fa, fb))

    offsets = np.zeros((n_vertices + 1,), dtype=np.int64)
    meta_parts: List[int] = []
    for v in range(n_vertices):
        offsets[v] = len(meta_parts)
        meta_parts.append(len(vertex_faces[v]))
        meta_parts.extend(vertex_faces[v])
        meta_parts.append(len(vertex_edges[v]))
        for rec in vertex_edges[v]:
            meta_parts.extend(rec)
    offsets[n_vertices] = len(meta_parts)

    meta = np.asarray(meta_parts, dtype=np.int64)
    log(1, f"[Adjacency] vertices={n_vertices} faces={mesh.n_faces} edges={len(edges)} meta={meta.size} ints")
    return AdjacencyTable(n_vertices, mesh.n_faces, meta, offsets, edges)


def validate_adjacency(table: AdjacencyTable, mesh: Mesh) -> None:
    """Cross-check the table against the mesh; raises ValueError on mismatch."""
    if table.n_vertices != mesh.n_vertices or table.n_faces != mesh.n_faces:
        raise ValueError("Adjacency table was built for a different mesh")
    if table.offsets.shape != (mesh.n_vertices + 1,) or int(table.offsets[-1]) != table.meta.size:
        raise ValueError("Adjacency offsets do not cover the meta blob")

    for f, tri in enumerate(np.asarray(mesh.faces).tolist()):
        for v in tri:
            if f not in table.vertex_faces(v):
                raise ValueError(f"face {f} missing from incident faces of vertex {v}")
        for k in range(3):
            a, b = tri[k], tri[(k + 1) % 3]
            if a == b:
                continue
            rec = table.find_edge(a, b)
            if rec is None:
                raise ValueError(f"edge ({a}, {b}) of face {f} missing")

    seen = 0
    for v in range(table.n_vertices):
        raw = table.raw_vertex_edges(v)
        if raw.size and (np.any(raw[:, 0] < 0) or np.any(raw[:, 0] >= table.n_vertices)):
            raise ValueError(f"vertex {v} has an edge to an out-of-range vertex")
        if raw.size and np.any((raw[:, 1] < table.n_vertices) | (raw[:, 1] >= table.n_vertices + table.n_faces)):
            raise ValueError(f"vertex {v} has an edge with a face ref outside [V, V+F)")
        for other, fa, fb in table.vertex_edges(v):
            rec = table.find_edge(v, other)
            if rec is None or (rec.face_a, rec.face_b) != (fa, fb):
                raise ValueError(f"edge ({v}, {other}) differs between its endpoints")
            seen += 1

    if seen != 2 * len(table.edges):
        raise ValueError(f"expected {2 * len(table.edges)} edge references, found {seen}")
