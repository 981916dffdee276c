from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from meshfield._log import set_verbosity
from meshfield.mesh import Material, Mesh, Texture

# 2x2 board, row 0 is the top of the image.
BOARD = np.array(
    [
        [[1.0, 0.0, 0.0, 1.0], [0.0, 1.0, 0.0, 1.0]],
        [[0.0, 0.0, 1.0, 1.0], [1.0, 1.0, 1.0, 1.0]],
    ],
    dtype=np.float32,
)


@pytest.fixture(autouse=True)
def quiet_logs():
    set_verbosity(0)
    yield
    set_verbosity(0)


@pytest.fixture
def triangle_mesh():
    return Mesh(
        vertices=[[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
        texcoords=[[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]],
        faces=[[0, 1, 2]],
        face_texcoords=[[0, 1, 2]],
    )


@pytest.fixture
def quad_mesh():
    """Unit square in the z=0 plane, UVs equal to xy, split along (0,0)-(1,1)."""
    return Mesh(
        vertices=[[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]],
        texcoords=[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]],
        faces=[[0, 1, 2], [0, 2, 3]],
        face_texcoords=[[0, 1, 2], [0, 2, 3]],
    )


@pytest.fixture
def board_material():
    return Material(name="board", kd=(0.2, 0.4, 0.6), textures={"map_Kd": Texture.from_array(BOARD)})


@pytest.fixture
def plain_material():
    return Material(name="plain", kd=(0.2, 0.4, 0.6))


def write_png(path: Path, pixels: np.ndarray) -> Path:
    data = (np.clip(pixels, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
    Image.fromarray(data).save(path)
    return path


@pytest.fixture
def quad_obj(tmp_path):
    """quad.obj + quad.mtl + board.png on disk."""
    write_png(tmp_path / "board.png", BOARD)
    (tmp_path / "quad.mtl").write_text(
        "newmtl board\n"
        "Kd 0.2 0.4 0.6\n"
        "map_Kd board.png\n"
        "map_Bump -bm 1.0 missing_bump.png\n",
        encoding="utf-8",
    )
    (tmp_path / "quad.obj").write_text(
        "mtllib quad.mtl\n"
        "v 0 0 0\nv 1 0 0\nv 1 1 0\nv 0 1 0\n"
        "vt 0 0\nvt 1 0\nvt 1 1\nvt 0 1\n"
        "vn 0 0 1\n"
        "usemtl board\n"
        "f 1/1/1 2/2/1 3/3/1\n"
        "f 1/1/1 3/3/1 4/4/1\n",
        encoding="utf-8",
    )
    return tmp_path / "quad.obj"
