"""
mmai/links.py

Per-link-type containers built from the raw (src, dst, attribute) triples
produced by the battlefield encoder.

For every link type this module keeps the edge list and attributes as-is and
builds an unpadded neighbour table: for each destination hex, the ordered
list of edge positions pointing at it. Padding to a bucket happens later in
mmai/encoding.py.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .constants import BF_SIZE, LT_COUNT, LinkType
from .exceptions import RangeError, ShapeError

logger = logging.getLogger(__name__)

# One int64 array of edge positions per destination hex
NeighborTable = Tuple[np.ndarray, ...]


def link_type_name(link_type: int) -> str:
    """Human-readable name of a link type (falls back to the raw number)."""
    try:
        return LinkType(link_type).name
    except ValueError:
        return str(link_type)


@dataclass(frozen=True)
class LinkSet:
    """Raw links of one type, as parallel sequences of equal length."""

    link_type: int
    src_index: Sequence[int]
    dst_index: Sequence[int]
    attributes: Sequence[float]

    def __len__(self) -> int:
        return len(self.src_index)

    @classmethod
    def empty(cls, link_type: int) -> "LinkSet":
        return cls(link_type, [], [], [])


@dataclass(frozen=True)
class LinkIndex:
    """
    Indexed links of one type.

    Attributes:
        link_type: Position of this type in the link type enumeration.
        edge_index: (2, n) int64 array; row 0 holds sources, row 1 destinations.
        edge_attr: (n,) float32 array of per-link attributes.
        neighbors: One array per hex with the positions (ascending) of the
            edges whose destination is that hex.
    """

    link_type: int
    edge_index: np.ndarray
    edge_attr: np.ndarray
    neighbors: NeighborTable

    @property
    def num_edges(self) -> int:
        return int(self.edge_attr.shape[0])

    @property
    def degrees(self) -> np.ndarray:
        return np.array([len(row) for row in self.neighbors], dtype=np.int64)

    @property
    def max_degree(self) -> int:
        if not self.neighbors:
            return 0
        return max(len(row) for row in self.neighbors)


def build_neighbor_table(dst_index, num_nodes: int = BF_SIZE) -> NeighborTable:
    """
    Groups edge positions by destination hex.

    Two passes: the first validates node ids and counts the in-degree of every
    hex, the second places each edge position into its destination row. A
    stable sort keeps rows in ascending edge order, so the result never depends
    on the traversal order of the caller's containers.

    Raises:
        ShapeError: If dst_index is not one-dimensional.
        RangeError: If a destination lies outside [0, num_nodes).
    """
    dst = np.asarray(dst_index, dtype=np.int64)
    if dst.ndim != 1:
        raise ShapeError(f"dst_index must be 1-D, got shape {dst.shape}")

    # Pass 1: validate and count degrees per node
    out_of_range = (dst < 0) | (dst >= num_nodes)
    if out_of_range.any():
        edge = int(np.argmax(out_of_range))
        raise RangeError(
            f"dst contains node id out of range: {int(dst[edge])} (edge {edge})"
        )
    degrees = np.bincount(dst, minlength=num_nodes)

    # Pass 2: place edge positions into their destination rows
    order = np.argsort(dst, kind="stable").astype(np.int64)
    return tuple(np.split(order, np.cumsum(degrees)[:-1]))


def _as_index_array(values, label: str, name: str) -> np.ndarray:
    """Copies hex ids to int64, refusing anything that is not a whole number."""
    try:
        raw = np.array(values)
    except ValueError as e:
        raise ShapeError(f"{label} for LinkType({name}) is malformed: {e}") from e

    if raw.size == 0 or raw.dtype.kind in "iu":
        return raw.astype(np.int64)
    if raw.dtype.kind == "f":
        if np.all(np.isfinite(raw)):
            as_int = raw.astype(np.int64)
            if np.array_equal(as_int, raw):
                return as_int
        raise ShapeError(f"{label} for LinkType({name}) must hold whole numbers")
    raise ShapeError(f"{label} for LinkType({name}) must be integers, got dtype {raw.dtype}")


def build_link_index(link_set: LinkSet, num_nodes: int = BF_SIZE) -> LinkIndex:
    """
    Builds the container for one link type.

    The input sequences are copied, never modified.

    Raises:
        ShapeError: If the three sequences are not 1-D or differ in length,
            if an id is not a whole number or an attribute is not numeric.
        RangeError: If a destination lies outside [0, num_nodes).
    """
    name = link_type_name(link_set.link_type)
    src = _as_index_array(link_set.src_index, "src_index", name)
    dst = _as_index_array(link_set.dst_index, "dst_index", name)
    try:
        attrs = np.array(link_set.attributes, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ShapeError(f"attributes for LinkType({name}) must be numeric: {e}") from e

    for label, arr in (("src_index", src), ("dst_index", dst), ("attributes", attrs)):
        if arr.ndim != 1:
            raise ShapeError(f"{label} for LinkType({name}) must be 1-D, got shape {arr.shape}")

    nlinks = src.shape[0]
    if dst.shape[0] != nlinks:
        raise ShapeError(
            f"unexpected dst_index length for LinkType({name}): want: {nlinks}, have: {dst.shape[0]}"
        )
    if attrs.shape[0] != nlinks:
        raise ShapeError(
            f"unexpected attributes length for LinkType({name}): want: {nlinks}, have: {attrs.shape[0]}"
        )

    return LinkIndex(
        link_type=int(link_set.link_type),
        edge_index=np.stack([src, dst]),
        edge_attr=attrs,
        neighbors=build_neighbor_table(dst, num_nodes),
    )


def build_link_indices(
    link_sets: Sequence[LinkSet],
    num_link_types: int = LT_COUNT,
    num_nodes: int = BF_SIZE,
) -> List[LinkIndex]:
    """
    Builds containers for all link types, verifying their order.

    Raises:
        ShapeError: If link sets are out of order or their count is wrong.
    """
    indices: List[LinkIndex] = []
    for count, link_set in enumerate(link_sets):
        if int(link_set.link_type) != count:
            raise ShapeError(
                f"unexpected link type: want: {count}, have: {int(link_set.link_type)}"
            )
        indices.append(build_link_index(link_set, num_nodes))

    if len(indices) != num_link_types:
        raise ShapeError(
            f"unexpected links count: want: {num_link_types}, have: {len(indices)}"
        )
    return indices
