from __future__ import annotations

from typing import Dict, Tuple

import torch

from ._log import log


class DeviceArena:
    """Named device buffers reused across iterations of a training run.

    `get()` hands back the same storage for the same name as long as shape and
    dtype match. `reset()` clears contents but keeps the storage for the next
    run; `discard()` drops single buffers and `release()` drops every one.
    """

    def __init__(self, device: torch.device | str) -> None:
        self.device = torch.device(device)
        self._buffers: Dict[str, torch.Tensor] = {}
        self.allocations = 0

    def get(self, name: str, shape: Tuple[int, ...], dtype: torch.dtype = torch.float32) -> torch.Tensor:
        shape = tuple(int(s) for s in shape)
        buf = self._buffers.get(name)
        if buf is None or tuple(buf.shape) != shape or buf.dtype != dtype:
            buf = torch.empty(shape, dtype=dtype, device=self.device)
            self._buffers[name] = buf
            self.allocations += 1
            log(3, f"[Arena] alloc {name} shape={shape} dtype={dtype}")
        return buf

    def discard(self, *names: str) -> None:
        """Drop single buffers; unknown names are ignored."""
        for name in names:
            self._buffers.pop(name, None)

    def reset(self) -> None:
        for buf in self._buffers.values():
            buf.zero_()

    def release(self) -> None:
        self._buffers.clear()
        if self.device.type == "cuda":
            torch.cuda.empty_cache()

    @property
    def nbytes(self) -> int:
        return sum(b.numel() * b.element_size() for b in self._buffers.values())

    def __contains__(self, name: str) -> bool:
        return name in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)
