"""
mmai/networks.py

Reference policy network implementing the bucketed model interface.

BucketedPolicyNetwork exposes the same methods as an exported model artifact:
get_version, get_side, get_all_sizes, get_action_table and one predict{N}
entry point per bucket, each returning the 10-tensor output tuple documented
in mmai/inference.py. script_policy_network() compiles it to TorchScript with
the same entry points, and save_policy_network() writes that artifact.

Architecture:
  state(N)      -> Linear(hidden) -> ReLU                       = h_state
  edge_attr(1)  -> Linear(hidden) -> ReLU, mean over neighbours = h_agg (165, hidden)
  h_nodes = ReLU(h_agg + node_embedding + h_state)
  category head:   Linear(hidden -> 4) on h_state
  position heads:  Linear(hidden -> 1) on h_nodes, one for A and one for B

Neighbour slots hold per-link-type edge positions; the network shifts them by
the link type's edge segment offset before gathering, and ignores -1 slots.
"""

import functools
import logging
import os
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .buckets import BucketCatalog
from .constants import BF_SIZE, LT_COUNT, MODEL_VERSION, N_CATEGORIES, Side
from .exceptions import RangeError, ShapeError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIM = 64

# Catalog used for exported reference networks: [edges, neighbours] per link type
DEFAULT_ALL_SIZES = [
    [[64, 8]] * LT_COUNT,
    [[256, 16]] * LT_COUNT,
    [[1024, 32]] * LT_COUNT,
]

PredictOutput = Tuple[
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
    torch.Tensor,
]

# Compiled into the scripted module once per bucket
_ENTRY_POINT_SRC = (
    "def predict{index}(self, state, edge_index, edge_attr, neighbors):\n"
    "    return self._predict({index}, state, edge_index, edge_attr, neighbors)\n"
)


def identity_action_table(num_nodes: int = BF_SIZE) -> torch.Tensor:
    """Action table whose entry encodes its own (category, A, B) triple."""
    return torch.arange(N_CATEGORIES * num_nodes * num_nodes, dtype=torch.int64).view(
        N_CATEGORIES, num_nodes, num_nodes
    )


class BucketedPolicyNetwork(nn.Module):
    """
    Small graph policy with one fixed-shape entry point per bucket.

    Masks are constant buffers (all ones unless given), which makes the
    network useful for exercising the sampler's mask handling.
    """

    _edge_totals: List[int]
    _neighbor_totals: List[int]

    def __init__(
        self,
        all_sizes,
        state_dim: int = DEFAULT_STATE_DIM,
        hidden_dim: int = 32,
        side: Side = Side.ATTACKER,
        version: int = MODEL_VERSION,
        action_table: Optional[torch.Tensor] = None,
        masks: Optional[Tuple[torch.Tensor, torch.Tensor, torch.Tensor]] = None,
        num_nodes: int = BF_SIZE,
    ):
        super().__init__()
        catalog = BucketCatalog(all_sizes)
        self._state_dim = state_dim
        self._num_nodes = num_nodes
        self._model_version = int(version)
        self._side = int(side)
        self._edge_totals = [b.total_edges for b in catalog]
        self._neighbor_totals = [b.total_neighbors for b in catalog]

        self.state_proj = nn.Linear(state_dim, hidden_dim)
        self.edge_proj = nn.Linear(1, hidden_dim)
        self.node_embedding = nn.Embedding(num_nodes, hidden_dim)
        self.category_head = nn.Linear(hidden_dim, N_CATEGORIES)
        self.position_a_head = nn.Linear(hidden_dim, 1)
        self.position_b_head = nn.Linear(hidden_dim, 1)
        self._init_weights()

        self.register_buffer("all_sizes", torch.as_tensor(catalog.table.copy(), dtype=torch.int64))

        if action_table is None:
            action_table = identity_action_table(num_nodes)
        action_table = torch.as_tensor(action_table, dtype=torch.int64)
        if action_table.shape != (N_CATEGORIES, num_nodes, num_nodes):
            raise ShapeError(f"action_table: bad shape: {tuple(action_table.shape)}")
        self.register_buffer("action_table", action_table)

        if masks is None:
            masks = (
                torch.ones(N_CATEGORIES, dtype=torch.int32),
                torch.ones(N_CATEGORIES, num_nodes, dtype=torch.int32),
                torch.ones(N_CATEGORIES, num_nodes, num_nodes, dtype=torch.int32),
            )
        mask_category, mask_position_a, mask_position_b = masks
        self.register_buffer("mask_category", torch.as_tensor(mask_category, dtype=torch.int32))
        self.register_buffer("mask_position_a", torch.as_tensor(mask_position_a, dtype=torch.int32))
        self.register_buffer("mask_position_b", torch.as_tensor(mask_position_b, dtype=torch.int32))

        # Row per bucket: edge segment offset of every neighbour column,
        # right-padded to the widest bucket
        nbr_offsets = torch.zeros(len(catalog), max(self._neighbor_totals), dtype=torch.int64)
        for bucket in catalog:
            offsets = []
            edge_offset = 0
            for e_cap, k_cap in zip(bucket.edge_capacity, bucket.neighbor_capacity):
                offsets.extend([edge_offset] * k_cap)
                edge_offset += e_cap
            nbr_offsets[bucket.index, : len(offsets)] = torch.tensor(offsets, dtype=torch.int64)
            setattr(self, f"predict{bucket.index}", functools.partial(self._predict, bucket.index))
        self.register_buffer("nbr_offsets", nbr_offsets)

    def _init_weights(self):
        for module in (self.state_proj, self.edge_proj):
            nn.init.kaiming_normal_(module.weight, nonlinearity="relu")
            nn.init.zeros_(module.bias)

    @property
    def num_buckets(self) -> int:
        return len(self._edge_totals)

    # --- Metadata getters ---

    @torch.jit.export
    def get_version(self) -> int:
        return self._model_version

    @torch.jit.export
    def get_side(self) -> int:
        return self._side

    @torch.jit.export
    def get_all_sizes(self) -> torch.Tensor:
        return self.all_sizes

    @torch.jit.export
    def get_action_table(self) -> torch.Tensor:
        return self.action_table

    # --- Entry points ---

    def forward(
        self,
        bucket_index: int,
        state: torch.Tensor,
        edge_index: torch.Tensor,
        edge_attr: torch.Tensor,
        neighbors: torch.Tensor,
    ) -> PredictOutput:
        return self._predict(bucket_index, state, edge_index, edge_attr, neighbors)

    def _check_shape(self, bucket_index: int, name: str, tensor: torch.Tensor, shape: List[int]) -> None:
        actual = list(tensor.shape)
        if actual != shape:
            raise ShapeError(
                f"predict{bucket_index}: invalid {name} shape: expected {shape}, got {actual}"
            )

    def _check_inputs(
        self,
        bucket_index: int,
        state: torch.Tensor,
        edge_index: torch.Tensor,
        edge_attr: torch.Tensor,
        neighbors: torch.Tensor,
    ) -> None:
        if bucket_index < 0 or bucket_index >= len(self._edge_totals):
            raise RangeError(f"predict{bucket_index}: no such bucket")
        sum_e = self._edge_totals[bucket_index]
        sum_k = self._neighbor_totals[bucket_index]
        self._check_shape(bucket_index, "state", state, [self._state_dim])
        self._check_shape(bucket_index, "edge_index", edge_index, [2, sum_e])
        self._check_shape(bucket_index, "edge_attr", edge_attr, [sum_e, 1])
        self._check_shape(bucket_index, "neighbors", neighbors, [self._num_nodes, sum_k])

    def _aggregate(self, bucket_index: int, edge_attr: torch.Tensor, neighbors: torch.Tensor) -> torch.Tensor:
        """Mean of incoming edge embeddings per hex; (165, hidden)."""
        h_edges = F.relu(self.edge_proj(edge_attr))  # (ΣE, hidden)
        valid = neighbors >= 0  # (165, ΣK)
        offsets = self.nbr_offsets[bucket_index, : neighbors.shape[1]]
        positions = (neighbors + offsets).masked_fill(~valid, 0)
        gathered = h_edges[positions] * valid.unsqueeze(-1)  # (165, ΣK, hidden)
        counts = valid.sum(dim=1, keepdim=True).clamp(min=1)
        return gathered.sum(dim=1) / counts

    def _predict(
        self,
        bucket_index: int,
        state: torch.Tensor,
        edge_index: torch.Tensor,
        edge_attr: torch.Tensor,
        neighbors: torch.Tensor,
    ) -> PredictOutput:
        """
        Raises:
            RangeError: If `bucket_index` is not in the catalog.
            ShapeError: If an input does not match the bucket's shapes.
        """
        self._check_inputs(bucket_index, state, edge_index, edge_attr, neighbors)

        h_state = F.relu(self.state_proj(state))
        if neighbors.shape[1] > 0 and edge_attr.shape[0] > 0:
            h_agg = self._aggregate(bucket_index, edge_attr, neighbors)
        else:
            h_agg = torch.zeros(
                [self._num_nodes, h_state.shape[0]], dtype=h_state.dtype, device=h_state.device
            )
        h_nodes = F.relu(h_agg + self.node_embedding.weight + h_state)

        logits_category = self.category_head(h_state)
        logits_position_a = self.position_a_head(h_nodes).squeeze(-1)
        logits_position_b = self.position_b_head(h_nodes).squeeze(-1)

        # Greedy triple: masked arg-max at every level
        category = logits_category.masked_fill(self.mask_category == 0, float("-inf")).argmax()
        position_a = logits_position_a.masked_fill(
            self.mask_position_a[category] == 0, float("-inf")
        ).argmax()
        position_b = logits_position_b.masked_fill(
            self.mask_position_b[category, position_a] == 0, float("-inf")
        ).argmax()
        action = self.action_table[category, position_a, position_b]

        return (
            action.view(1),
            logits_category.unsqueeze(0),
            logits_position_a.unsqueeze(0),
            logits_position_b.unsqueeze(0),
            self.mask_category.unsqueeze(0),
            self.mask_position_a.unsqueeze(0),
            self.mask_position_b.unsqueeze(0),
            category.view(1),
            position_a.view(1),
            position_b.view(1),
        )


def build_policy_network(
    all_sizes: Sequence,
    state_dim: int = DEFAULT_STATE_DIM,
    hidden_dim: int = 32,
    side: Side = Side.ATTACKER,
    seed: Optional[int] = None,
    **kwargs,
) -> BucketedPolicyNetwork:
    """Builds a reference network in eval mode, optionally with seeded weights."""
    if seed is not None:
        torch.manual_seed(seed)
    net = BucketedPolicyNetwork(all_sizes, state_dim=state_dim, hidden_dim=hidden_dim, side=side, **kwargs)
    net.eval()
    return net


def script_policy_network(net: BucketedPolicyNetwork) -> torch.jit.ScriptModule:
    """
    Compiles `net` to TorchScript and adds one predict{N} method per bucket.

    Scripted modules of the same compiled type share their methods, so an
    entry point that already exists is not defined again.
    """
    scripted = torch.jit.script(net)
    for index in range(net.num_buckets):
        if not hasattr(scripted, f"predict{index}"):
            scripted.define(_ENTRY_POINT_SRC.format(index=index))
    return scripted


def save_policy_network(net: BucketedPolicyNetwork, path: str) -> str:
    """Writes `net` as a TorchScript artifact loadable by TorchModel.from_path()."""
    dir_path = os.path.dirname(path)
    if dir_path:
        os.makedirs(dir_path, exist_ok=True)
    scripted = script_policy_network(net)
    torch.jit.save(scripted, path)
    logger.info("Saved policy network (%d buckets) to %s", net.num_buckets, path)
    return path
