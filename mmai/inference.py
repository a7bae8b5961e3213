"""
mmai/inference.py

Adapter between flattened inputs and the neural inference backend.

A model artifact exposes four metadata getters (get_version, get_side,
get_all_sizes, get_action_table) and one fixed-shape entry point per bucket,
predict{N}. Each entry point takes (state, edge_index, edge_attr, neighbors)
and returns 10 tensors, all with batch dimension 1:

  0  action            [1]             greedy engine action (diagnostics only)
  1  logits_category   [1, 4]
  2  logits_position_a [1, 165]
  3  logits_position_b [1, 165]
  4  mask_category     [1, 4]
  5  mask_position_a   [1, 4, 165]     row per category
  6  mask_position_b   [1, 4, 165, 165] row per (category, position A)
  7  category          [1]             greedy triple
  8  position_a        [1]
  9  position_b        [1]
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import numpy as np
import torch

from .buckets import Bucket, BucketCatalog
from .constants import BF_SIZE, LT_COUNT, MODEL_VERSION, N_CATEGORIES, N_MODEL_OUTPUTS, Side
from .encoding import FlattenedBatch, expected_input_shapes
from .exceptions import InferenceBackendError, ModelLoadError, ShapeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceOutputs:
    """Parsed model outputs with the batch dimension removed."""

    action: int
    logits_category: np.ndarray  # (4,)
    logits_position_a: np.ndarray  # (165,)
    logits_position_b: np.ndarray  # (165,)
    mask_category: np.ndarray  # (4,)
    mask_position_a: np.ndarray  # (4, 165)
    mask_position_b: np.ndarray  # (4, 165, 165)
    greedy_category: int
    greedy_position_a: int
    greedy_position_b: int

    @property
    def greedy_triple(self):
        return (self.greedy_category, self.greedy_position_a, self.greedy_position_b)


def method_name_for(bucket: Bucket) -> str:
    return f"predict{bucket.index}"


def _to_numpy(x) -> np.ndarray:
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy()
    return np.asarray(x)


def parse_outputs(
    raw: Sequence[Any],
    num_categories: int = N_CATEGORIES,
    num_nodes: int = BF_SIZE,
) -> InferenceOutputs:
    """
    Validates and unpacks the 10 raw tensors returned by a predict{N} call.

    Raises:
        ShapeError: If the output count or any output shape is wrong.
    """
    if len(raw) != N_MODEL_OUTPUTS:
        raise ShapeError(f"bad output size: want: {N_MODEL_OUTPUTS}, have: {len(raw)}")

    expected = [
        ("action", (1,)),
        ("logits_category", (1, num_categories)),
        ("logits_position_a", (1, num_nodes)),
        ("logits_position_b", (1, num_nodes)),
        ("mask_category", (1, num_categories)),
        ("mask_position_a", (1, num_categories, num_nodes)),
        ("mask_position_b", (1, num_categories, num_nodes, num_nodes)),
        ("category", (1,)),
        ("position_a", (1,)),
        ("position_b", (1,)),
    ]

    arrays = []
    for (name, shape), tensor in zip(expected, raw):
        arr = _to_numpy(tensor)
        if arr.shape != shape:
            raise ShapeError(f"{name}: bad shape: want: {shape}, have: {arr.shape}")
        arrays.append(arr[0])

    return InferenceOutputs(
        action=int(arrays[0]),
        logits_category=arrays[1].astype(np.float64),
        logits_position_a=arrays[2].astype(np.float64),
        logits_position_b=arrays[3].astype(np.float64),
        mask_category=arrays[4],
        mask_position_a=arrays[5],
        mask_position_b=arrays[6],
        greedy_category=int(arrays[7]),
        greedy_position_a=int(arrays[8]),
        greedy_position_b=int(arrays[9]),
    )


class InferenceBackend(ABC):
    """Runs named methods of a loaded model."""

    @abstractmethod
    def has_method(self, method_name: str) -> bool:
        ...

    @abstractmethod
    def call(self, method_name: str) -> Any:
        """Calls a no-argument metadata getter."""

    @abstractmethod
    def infer(self, method_name: str, inputs: Sequence[torch.Tensor]) -> List[torch.Tensor]:
        """Calls an entry point with the given input tensors."""


class TorchScriptBackend(InferenceBackend):
    """
    Backend over a torch module: a TorchScript archive loaded with
    torch.jit.load, or any nn.Module exposing the same methods.

    Every failure inside a call is raised as InferenceBackendError and is
    never retried.
    """

    def __init__(self, module: torch.nn.Module, device: str = "cpu"):
        self.module = module
        self.device = device
        if hasattr(module, "eval"):
            module.eval()

    @classmethod
    def from_path(cls, path: str, device: str = "cpu") -> "TorchScriptBackend":
        try:
            module = torch.jit.load(path, map_location=device)
        except (RuntimeError, ValueError, OSError) as e:
            raise ModelLoadError(f"failed to load model from {path}: {e}") from e
        return cls(module, device=device)

    def has_method(self, method_name: str) -> bool:
        return callable(getattr(self.module, method_name, None))

    def _method(self, method_name: str):
        fn = getattr(self.module, method_name, None)
        if not callable(fn):
            raise InferenceBackendError(f"model has no method '{method_name}'")
        return fn

    def call(self, method_name: str) -> Any:
        fn = self._method(method_name)
        try:
            with torch.inference_mode():
                return fn()
        except Exception as e:  # JUSTIFIED: backend failures are opaque
            raise InferenceBackendError(f"{method_name}() failed: {e}") from e

    def infer(self, method_name: str, inputs: Sequence[torch.Tensor]) -> List[torch.Tensor]:
        fn = self._method(method_name)
        try:
            with torch.inference_mode():
                out = fn(*inputs)
        except Exception as e:  # JUSTIFIED: backend failures are opaque
            raise InferenceBackendError(f"{method_name}() failed: {e}") from e
        if isinstance(out, torch.Tensor):
            return [out]
        return list(out)


def _as_int(value, name: str) -> int:
    try:
        return int(_to_numpy(value).reshape(-1)[0])
    except (TypeError, ValueError, IndexError) as e:
        raise ModelLoadError(f"metadata error: {name}: not an int") from e


class TorchModel:
    """
    A loaded model artifact: metadata plus its per-bucket entry points.

    Metadata is read and validated once on construction. Only version 13 is
    supported.
    """

    def __init__(self, backend: InferenceBackend, path: Optional[str] = None):
        self.backend = backend
        self.path = path

        self.version = _as_int(backend.call("get_version"), "version")
        if self.version != MODEL_VERSION:
            raise ModelLoadError(
                f"unsupported model version: want: {MODEL_VERSION}, have: {self.version}"
            )

        side = _as_int(backend.call("get_side"), "side")
        try:
            self.side = Side(side)
        except ValueError as e:
            raise ModelLoadError(f"metadata error: side: unknown value {side}") from e

        try:
            self.catalog = BucketCatalog(backend.call("get_all_sizes"), num_link_types=LT_COUNT)
        except ShapeError as e:
            raise ModelLoadError(f"failed to parse bucket catalog: {e}") from e

        action_table = _to_numpy(backend.call("get_action_table")).astype(np.int64)
        want = (N_CATEGORIES, BF_SIZE, BF_SIZE)
        if action_table.shape != want:
            raise ModelLoadError(
                f"action table: bad shape: want: {want}, have: {action_table.shape}"
            )
        action_table.setflags(write=False)
        self.action_table = action_table

        for bucket in self.catalog:
            if not backend.has_method(method_name_for(bucket)):
                raise ModelLoadError(f"model has no entry point for bucket {bucket.index}")

        logger.info(
            "MMAI model loaded: version=%d, side=%s, buckets=%d, path=%s",
            self.version,
            self.side.name,
            len(self.catalog),
            path,
        )

    @classmethod
    def from_path(cls, path: str, device: str = "cpu") -> "TorchModel":
        return cls(TorchScriptBackend.from_path(path, device=device), path=path)

    @classmethod
    def from_module(cls, module: torch.nn.Module, device: str = "cpu") -> "TorchModel":
        return cls(TorchScriptBackend(module, device=device))

    @property
    def device(self) -> str:
        return getattr(self.backend, "device", "cpu")

    def action_for(self, category: int, position_a: int, position_b: int) -> int:
        return int(self.action_table[category, position_a, position_b])

    def predict(self, batch: FlattenedBatch) -> InferenceOutputs:
        """
        Runs the entry point of the batch's bucket.

        Raises:
            ShapeError: If the batch does not match its bucket's input shapes
                or the outputs are malformed.
            InferenceBackendError: If the backend call fails.
        """
        bucket = batch.bucket
        if not 0 <= bucket.index < len(self.catalog) or self.catalog[bucket.index] != bucket:
            raise ShapeError(f"bucket {bucket.index} is not part of this model's catalog")

        expected = expected_input_shapes(bucket, batch.state.shape[0])
        for name, shape in batch.shapes().items():
            if shape != expected[name]:
                raise ShapeError(f"{name}: bad input shape: want: {expected[name]}, have: {shape}")

        raw = self.backend.infer(method_name_for(bucket), batch.as_tensors(self.device))
        return parse_outputs(raw)
