"""meshfield: fit a neural field to the textures of a triangle mesh.

Training data is synthesised on the fly: surface points are drawn as
(face id, barycentric w1, w2) triples, resolved through the mesh's per-face
texture coordinates and looked up in the material textures.
"""

from .adjacency import AdjacencyTable, build_adjacency, validate_adjacency
from .mesh import Material, Mesh, Texture, load_obj, validate_mesh
from .resolver import ChannelGroup, TargetResolver, default_channel_groups
from .sampling import SurfacePointSampler, build_face_cdf
from .surface_point import SurfacePoint, decode_face_ids, encode_face_ids

__all__ = [
    "AdjacencyTable",
    "ChannelGroup",
    "Material",
    "Mesh",
    "SurfacePoint",
    "SurfacePointSampler",
    "TargetResolver",
    "Texture",
    "build_adjacency",
    "build_face_cdf",
    "decode_face_ids",
    "default_channel_groups",
    "encode_face_ids",
    "load_obj",
    "validate_adjacency",
    "validate_mesh",
]

__version__ = "0.1.0"
