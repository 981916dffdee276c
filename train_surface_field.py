#!/usr/bin/env python3
"""Fit a neural field to the material textures of a triangulated mesh.

Each training step draws a batch of random surface points (face id plus
barycentric weights), looks the points up in the mesh's diffuse and bump
textures, and takes one optimizer step on the (point, texels) pairs. After the
last step the model is evaluated over a fixed grid of surface points and one
image per material channel group is written next to the reference lookups.

Example:
  python3 train_surface_field.py assets/model.obj assets/model_grid.txt --steps 10000 -v
  python3 train_surface_field.py assets/model.obj assets/model_grid.txt --make-eval-grid 1024x1024

Exit status is 0 on success and 1 on usage errors, unreadable inputs or a
failed training run.
"""

import sys

try:
    import numpy  # noqa: F401
    import torch  # noqa: F401
    import trimesh  # noqa: F401
    from PIL import Image  # noqa: F401
except ImportError as e:
    print("Error: Required packages not found.", file=sys.stderr)
    print(f"Missing: {e}", file=sys.stderr)
    print("\nInstall (example):", file=sys.stderr)
    print("  pip install -e .", file=sys.stderr)
    sys.exit(1)

from meshfield.train import main

if __name__ == "__main__":
    raise SystemExit(main())
