"""Image codec: RGBA float grids in, 8-bit PNG/JPEG out (Pillow)."""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image

_MODES = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}


def load_image(path: str | Path) -> Tuple[np.ndarray, int, int]:
    """Load an image as float32 RGBA in [0, 1].

    Returns (pixels, width, height) with pixels shaped (height, width, 4),
    row 0 being the top of the image.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {path}")
    try:
        with Image.open(path) as img:
            rgba = img.convert("RGBA")
            pixels = np.asarray(rgba, dtype=np.float32) / 255.0
    except OSError as e:
        raise OSError(f"Failed to decode image {path}: {e}") from e
    height, width = int(pixels.shape[0]), int(pixels.shape[1])
    return np.ascontiguousarray(pixels), width, height


def save_image(path: str | Path, pixels: np.ndarray, width: int, height: int, channel_count: int) -> Path:
    """Write `pixels` (height*width*channel_count floats, row-major) as 8-bit."""
    path = Path(path)
    channel_count = int(channel_count)
    if channel_count not in _MODES:
        raise ValueError(f"Unsupported channel count {channel_count} for {path}")

    data = np.asarray(pixels, dtype=np.float32).reshape(int(height), int(width), channel_count)
    data = np.nan_to_num(data, nan=0.0, posinf=1.0, neginf=0.0)
    data8 = (np.clip(data, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
    if channel_count == 1:
        data8 = data8[:, :, 0]

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        Image.fromarray(data8).save(path)
    except (OSError, ValueError) as e:
        raise OSError(f"Failed to write image {path}: {e}") from e
    return path
