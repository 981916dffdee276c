"""The trainable function consumed by the training loop, and a torch implementation.

The loop only talks to the `TrainableFunction` protocol:

    step(stream, inputs, targets) -> context   one optimizer update
    loss(stream, context) -> float             scalar loss of that update
    mean_loss(stream, contexts) -> float       mean over several updates, one read-back
    infer(stream, inputs, outputs)             forward pass, weights untouched
    parameter_count() -> int

`TorchTrainable` is the bundled learner: learned features on the three corners
of every face, blended with the barycentric weights, decoded by an MLP.
"""

from __future__ import annotations

import contextlib
import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Sequence

import torch
import torch.nn as nn
import torch.optim as optim

from ._log import log
from .surface_point import INPUT_DIMS, decode_face_ids

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "loss": {"otype": "RelativeL2"},
    "optimizer": {
        "otype": "Adam",
        "learning_rate": 1e-2,
        "beta1": 0.9,
        "beta2": 0.99,
        "epsilon": 1e-15,
        "l2_reg": 1e-6,
        "momentum": 0.9,
    },
    "encoding": {"otype": "FaceFeatures", "n_features": 8, "init_scale": 1e-2},
    "network": {
        "otype": "MLP",
        "activation": "ReLU",
        "output_activation": "None",
        "n_neurons": 64,
        "n_hidden_layers": 2,
    },
}

_LOSSES = ("L2", "L1", "RelativeL2")
_OPTIMIZERS = ("Adam", "SGD")
_ACTIVATIONS = {
    "relu": nn.ReLU,
    "leakyrelu": nn.LeakyReLU,
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "softplus": nn.Softplus,
    "none": nn.Identity,
}


class TrainableFunction(Protocol):
    def step(self, stream: Optional[torch.cuda.Stream], inputs: torch.Tensor, targets: torch.Tensor) -> Any: ...

    def loss(self, stream: Optional[torch.cuda.Stream], context: Any) -> float: ...

    def mean_loss(self, stream: Optional[torch.cuda.Stream], contexts: Sequence[Any]) -> float: ...

    def infer(self, stream: Optional[torch.cuda.Stream], inputs: torch.Tensor, outputs: torch.Tensor) -> None: ...

    def parameter_count(self) -> int: ...


def stream_context(stream: Optional[torch.cuda.Stream]):
    if stream is None:
        return contextlib.nullcontext()
    return torch.cuda.stream(stream)


def merge_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Defaults overlaid with `overrides`, section by section; validates names."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in (overrides or {}).items():
        if section == "channel_groups":
            if not isinstance(values, list):
                raise ValueError("Config section 'channel_groups' must be a list")
            config[section] = values
            continue
        if section not in config:
            raise ValueError(f"Unknown config section {section!r} (expected one of {sorted(config)})")
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section!r} must be an object")
        config[section].update(values)

    if config["loss"]["otype"] not in _LOSSES:
        raise ValueError(f"Unknown loss {config['loss']['otype']!r} (expected one of {_LOSSES})")
    if config["optimizer"]["otype"] not in _OPTIMIZERS:
        raise ValueError(f"Unknown optimizer {config['optimizer']['otype']!r} (expected one of {_OPTIMIZERS})")
    if config["encoding"]["otype"] != "FaceFeatures":
        raise ValueError(f"Unknown encoding {config['encoding']['otype']!r}")
    if config["network"]["otype"] != "MLP":
        raise ValueError(f"Unknown network {config['network']['otype']!r}")
    for key in ("activation", "output_activation"):
        if str(config["network"][key]).lower() not in _ACTIVATIONS:
            raise ValueError(f"Unknown {key} {config['network'][key]!r}")
    return config


def load_network_config(path: Optional[str | Path]) -> Dict[str, Any]:
    if path is None:
        return merge_config()
    path = Path(path)
    if not path.is_file():
        raise ValueError(f"Network config not found: {path}")
    try:
        overrides = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Network config {path} is not valid JSON: {e}") from e
    return merge_config(overrides)


class FaceFieldModel(nn.Module):
    """Per-face-corner features blended by (w1, w2, w3), then an MLP."""

    def __init__(self, n_faces: int, n_output_dims: int, encoding: Dict[str, Any], network: Dict[str, Any]) -> None:
        super().__init__()
        self.n_faces = int(n_faces)
        n_features = int(encoding["n_features"])
        self.features = nn.Parameter(
            (torch.rand(self.n_faces, 3, n_features) * 2.0 - 1.0) * float(encoding["init_scale"])
        )

        act = _ACTIVATIONS[str(network["activation"]).lower()]
        layers: list[nn.Module] = []
        width = n_features
        for _ in range(int(network["n_hidden_layers"])):
            layers.append(nn.Linear(width, int(network["n_neurons"])))
            layers.append(act())
            width = int(network["n_neurons"])
        layers.append(nn.Linear(width, int(n_output_dims)))
        layers.append(_ACTIVATIONS[str(network["output_activation"]).lower()]())
        self.mlp = nn.Sequential(*layers)

        for m in self.mlp:
            if isinstance(m, nn.Linear):
                nn.init.xavier_uniform_(m.weight, gain=0.5)
                nn.init.constant_(m.bias, 0.0)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        face = decode_face_ids(x[:, 0].contiguous()).to(torch.int64)
        valid = ((face >= 0) & (face < self.n_faces)).unsqueeze(1)
        corners = self.features[face.clamp(0, self.n_faces - 1)]  # (N, 3, n_features)
        w1 = x[:, 1:2]
        w2 = x[:, 2:3]
        feat = w1 * corners[:, 0] + w2 * corners[:, 1] + (1.0 - w1 - w2) * corners[:, 2]
        feat = torch.where(valid, feat, torch.zeros_like(feat))
        return self.mlp(feat)


@dataclass
class StepContext:
    loss: torch.Tensor


class TorchTrainable:
    """`TrainableFunction` backed by a torch module, optimizer and loss."""

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        n_faces: int,
        n_output_dims: int,
        device: torch.device | str = "cpu",
    ) -> None:
        self.config = config
        self.device = torch.device(device)
        self.n_output_dims = int(n_output_dims)
        self.model = FaceFieldModel(n_faces, n_output_dims, config["encoding"], config["network"]).to(self.device)

        opt = config["optimizer"]
        if opt["otype"] == "Adam":
            self.optimizer: optim.Optimizer = optim.Adam(
                self.model.parameters(),
                lr=float(opt["learning_rate"]),
                betas=(float(opt["beta1"]), float(opt["beta2"])),
                eps=float(opt["epsilon"]),
                weight_decay=float(opt["l2_reg"]),
            )
        else:
            self.optimizer = optim.SGD(
                self.model.parameters(),
                lr=float(opt["learning_rate"]),
                momentum=float(opt["momentum"]),
                weight_decay=float(opt["l2_reg"]),
            )
        self.loss_kind = str(config["loss"]["otype"])
        log(1, f"[Model] loss={self.loss_kind} optimizer={opt['otype']} params={self.parameter_count():,}")

    def _loss(self, pred: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        diff = pred - target
        if self.loss_kind == "L1":
            return diff.abs().mean()
        if self.loss_kind == "RelativeL2":
            return (diff * diff / (pred.detach() * pred.detach() + 0.01)).mean()
        return (diff * diff).mean()

    def step(self, stream: Optional[torch.cuda.Stream], inputs: torch.Tensor, targets: torch.Tensor) -> StepContext:
        if inputs.shape[1] != INPUT_DIMS or targets.shape[1] != self.n_output_dims:
            raise ValueError(f"step expects (N, {INPUT_DIMS}) inputs and (N, {self.n_output_dims}) targets")
        with stream_context(stream):
            self.model.train()
            pred = self.model(inputs)
            loss = self._loss(pred, targets)
            self.optimizer.zero_grad(set_to_none=True)
            loss.backward()
            self.optimizer.step()
        return StepContext(loss=loss.detach())

    def loss(self, stream: Optional[torch.cuda.Stream], context: StepContext) -> float:
        with stream_context(stream):
            return float(context.loss.item())

    def mean_loss(self, stream: Optional[torch.cuda.Stream], contexts: Sequence[StepContext]) -> float:
        if not contexts:
            raise ValueError("mean_loss needs at least one step context")
        with stream_context(stream):
            return float(torch.stack([c.loss for c in contexts]).mean().item())

    def infer(self, stream: Optional[torch.cuda.Stream], inputs: torch.Tensor, outputs: torch.Tensor) -> None:
        with stream_context(stream), torch.no_grad():
            self.model.eval()
            outputs.copy_(self.model(inputs))

    def parameter_count(self) -> int:
        return sum(p.numel() for p in self.model.parameters())
