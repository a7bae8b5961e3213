"""
mmai/encoding.py

Converts per-link-type containers into the fixed-shape tensors a bucket's
entry point expects.

Tensor layout for a bucket with per-type capacities E_l (edges) and K_l
(neighbours), ΣE = sum(E_l), ΣK = sum(K_l):
  - state:      (N,)        float32 -- battlefield state vector, passed through
  - edge_index: (2, ΣE)     int64   -- link type segments in enum order
  - edge_attr:  (ΣE, 1)     float32 -- same segments as edge_index
  - neighbors:  (165, ΣK)   int64   -- per hex, link type segments in enum order

Padding is deliberately asymmetric:
  - edge segments are padded with index 0 / attribute 0.0. A padded edge looks
    exactly like a real link from hex 0 to hex 0; the model's own learned
    masking tells them apart, not the flattener.
  - neighbour segments are padded with -1, which is never a valid edge position.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
import torch

from .buckets import Bucket
from .constants import BF_SIZE, EDGE_PAD_ATTR, EDGE_PAD_INDEX, NEIGHBOR_PAD
from .exceptions import ShapeError
from .links import LinkIndex, link_type_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlattenedBatch:
    """Bucket-shaped model inputs for a single decision."""

    bucket: Bucket
    state: np.ndarray  # (N,) float32
    edge_index: np.ndarray  # (2, ΣE) int64
    edge_attr: np.ndarray  # (ΣE, 1) float32
    neighbors: np.ndarray  # (165, ΣK) int64

    @property
    def bucket_index(self) -> int:
        return self.bucket.index

    def shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {
            "state": tuple(self.state.shape),
            "edge_index": tuple(self.edge_index.shape),
            "edge_attr": tuple(self.edge_attr.shape),
            "neighbors": tuple(self.neighbors.shape),
        }

    def as_tensors(self, device: str = "cpu") -> List[torch.Tensor]:
        """Inputs in entry point order: state, edge_index, edge_attr, neighbors."""
        return [
            torch.from_numpy(self.state).to(device),
            torch.from_numpy(self.edge_index).to(device),
            torch.from_numpy(self.edge_attr).to(device),
            torch.from_numpy(self.neighbors).to(device),
        ]


def expected_input_shapes(
    bucket: Bucket, state_size: int, num_nodes: int = BF_SIZE
) -> Dict[str, Tuple[int, ...]]:
    """Shapes an entry point compiled for `bucket` accepts."""
    return {
        "state": (state_size,),
        "edge_index": (2, bucket.total_edges),
        "edge_attr": (bucket.total_edges, 1),
        "neighbors": (num_nodes, bucket.total_neighbors),
    }


def _check_length(name: str, want: int, have: int) -> None:
    if want != have:
        raise ShapeError(f"{name} size mismatch: want: {want}, have: {have}")


def flatten_links(
    indices: Sequence[LinkIndex],
    bucket: Bucket,
    num_nodes: int = BF_SIZE,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Concatenates and pads all link types to the bucket's capacities.

    Returns:
        (edge_index (2, ΣE) int64, edge_attr (ΣE,) float32,
         neighbors (num_nodes, ΣK) int64)

    Raises:
        ShapeError: If the data does not fit the bucket or a flattened buffer
            ends up with the wrong length. Both indicate a bug upstream:
            bucket selection guarantees the fit.
    """
    if len(indices) != bucket.num_link_types:
        raise ShapeError(
            f"unexpected links count: want: {bucket.num_link_types}, have: {len(indices)}"
        )

    sum_e = bucket.total_edges
    sum_k = bucket.total_neighbors

    # --- Edges: concat each link type, zero-padded to its edge capacity ---
    edge_index = np.full((2, sum_e), EDGE_PAD_INDEX, dtype=np.int64)
    edge_attr = np.full(sum_e, EDGE_PAD_ATTR, dtype=np.float32)
    offset = 0
    for l, index in enumerate(indices):
        cap = bucket.edge_capacity[l]
        n = index.num_edges
        if n > cap:
            raise ShapeError(
                f"LinkType({link_type_name(l)}) has {n} edges, bucket {bucket.index} holds {cap}"
            )
        edge_index[:, offset:offset + n] = index.edge_index
        edge_attr[offset:offset + n] = index.edge_attr
        offset += cap

    _check_length("ei_flat", sum_e, offset)
    _check_length("ei_flat.at(0)", sum_e, edge_index.shape[1])
    _check_length("ea_flat", sum_e, edge_attr.shape[0])

    # --- Neighbours: per hex, concat each link type, -1-padded to its capacity ---
    neighbors = np.full((num_nodes, sum_k), NEIGHBOR_PAD, dtype=np.int64)
    offset = 0
    for l, index in enumerate(indices):
        cap = bucket.neighbor_capacity[l]
        _check_length(f"LinkType({link_type_name(l)}) neighbor table", num_nodes, len(index.neighbors))
        for v, row in enumerate(index.neighbors):
            if len(row) > cap:
                raise ShapeError(
                    f"LinkType({link_type_name(l)}) hex {v} has degree {len(row)}, "
                    f"bucket {bucket.index} holds {cap}"
                )
            neighbors[v, offset:offset + len(row)] = row
        offset += cap

    _check_length("nbrs_flat row", sum_k, offset)
    _check_length("nbrs_flat rows", num_nodes, neighbors.shape[0])

    return edge_index, edge_attr, neighbors


def build_flattened_batch(
    indices: Sequence[LinkIndex],
    bucket: Bucket,
    state,
    num_nodes: int = BF_SIZE,
) -> FlattenedBatch:
    """
    Flattens all link types into `bucket` and attaches the state vector.

    Raises:
        ShapeError: If the state is not a non-empty 1-D vector, or flattening fails.
    """
    state_arr = np.array(state, dtype=np.float32)
    if state_arr.ndim != 1 or state_arr.shape[0] == 0:
        raise ShapeError(f"state must be a non-empty 1-D vector, got shape {state_arr.shape}")

    edge_index, edge_attr, neighbors = flatten_links(indices, bucket, num_nodes)
    batch = FlattenedBatch(
        bucket=bucket,
        state=state_arr,
        edge_index=edge_index,
        edge_attr=edge_attr.reshape(-1, 1),
        neighbors=neighbors,
    )

    expected = expected_input_shapes(bucket, state_arr.shape[0], num_nodes)
    for name, shape in batch.shapes().items():
        if shape != expected[name]:
            raise ShapeError(f"unexpected {name} shape: want: {expected[name]}, have: {shape}")
    return batch
