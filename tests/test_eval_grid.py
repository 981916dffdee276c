import numpy as np
import pytest
import torch

from meshfield.eval_grid import EvalGrid, bake_eval_grid, load_eval_grid, write_eval_grid
from meshfield.resolver import TargetResolver
from meshfield.surface_point import encode_face_ids


def _write(tmp_path, text):
    path = tmp_path / "grid.txt"
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_grid(tmp_path):
    path = _write(tmp_path, "2,1\n0,0.25,0.5\n1,-1,-1\n")
    grid = load_eval_grid(path)
    assert (grid.width, grid.height, grid.n) == (2, 1, 2)
    assert grid.inputs.dtype == np.float32
    assert grid.face_ids.tolist() == [0, 1]
    assert grid.mask.tolist() == [True, False]
    np.testing.assert_allclose(grid.inputs[0, 1:], [0.25, 0.5])


@pytest.mark.parametrize(
    "text, match",
    [
        ("", "empty"),
        ("2\n0,0,0\n", "width,height"),
        ("0,1\n", "positive"),
        ("2,1\n0,0.1,0.1\n", "expected 2 records"),
        ("1,1\n0,0.1\n", "bad record"),
        ("1,1\nx,0.1,0.1\n", "bad record"),
        ("1,1\n-3,0.1,0.1\n", "out of range"),
    ],
)
def test_malformed_grids(tmp_path, text, match):
    with pytest.raises(ValueError, match=match):
        load_eval_grid(_write(tmp_path, text))


def test_missing_grid(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_eval_grid(tmp_path / "nope.txt")


def test_write_then_load(tmp_path):
    inputs = np.zeros((6, 3), dtype=np.float32)
    inputs[:, 0] = encode_face_ids(np.array([0, 1, 1, 0, 123456, 0]))
    inputs[:, 1] = [0.1, 0.2, 0.3, 0.0, 1.0, -1.0]
    inputs[:, 2] = [0.3, 0.2, 0.1, 1.0, 0.0, -1.0]
    grid = EvalGrid(width=3, height=2, inputs=inputs)

    loaded = load_eval_grid(write_eval_grid(tmp_path / "sub" / "grid.txt", grid))
    assert (loaded.width, loaded.height) == (3, 2)
    assert loaded.face_ids.tolist() == [0, 1, 1, 0, 123456, 0]
    np.testing.assert_array_equal(loaded.inputs[:, 1:], inputs[:, 1:])


def test_bake_covers_every_texel_of_the_quad(quad_mesh):
    grid = bake_eval_grid(quad_mesh, 8, 4)
    assert grid.n == 32
    assert grid.mask.all()
    assert set(grid.face_ids.tolist()) == {0, 1}

    # Interpolated UVs land on the texel centres, row 0 at the top.
    resolver = TargetResolver(quad_mesh, [], np.array([-1, -1]))
    uv, _, valid = resolver.interpolate_uv(torch.from_numpy(grid.inputs))
    assert valid.all()
    xs, ys = np.meshgrid(np.arange(8), np.arange(4))
    expected_u = (xs.reshape(-1) + 0.5) / 8
    expected_v = 1.0 - (ys.reshape(-1) + 0.5) / 4
    np.testing.assert_allclose(uv[:, 0].numpy(), expected_u, atol=1e-5)
    np.testing.assert_allclose(uv[:, 1].numpy(), expected_v, atol=1e-5)


def test_bake_masks_uncovered_texels(triangle_mesh):
    grid = bake_eval_grid(triangle_mesh, 4, 4)
    mask = grid.mask.reshape(4, 4)
    # UV triangle (0,0), (1,0), (0,1) covers the lower-left half of the image.
    assert mask[3, 0]
    assert not mask[0, 3]
    assert 0 < int(mask.sum()) < 16
    uncovered = grid.inputs[~grid.mask]
    assert np.all(uncovered[:, 1:] == -1.0)


def test_bake_rejects_bad_size(quad_mesh):
    with pytest.raises(ValueError):
        bake_eval_grid(quad_mesh, 0, 4)
