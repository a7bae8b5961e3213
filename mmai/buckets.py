"""
mmai/buckets.py

Bucket catalog and capacity search.

A trained model is exported once per bucket: a fixed-shape entry point whose
edge and neighbour tensors hold at most (edgeCapacity, neighborCapacity) per
link type. The catalog ships with the model as an (S, L, 2) integer table in
the exporter's order. Selection is a linear scan; the first bucket that holds
every link type's data wins. The catalog is never re-sorted.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .exceptions import NoCapacityError, ShapeError
from .links import LinkIndex, link_type_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bucket:
    """One catalog entry: per-link-type edge and neighbour capacities."""

    index: int
    edge_capacity: Tuple[int, ...]
    neighbor_capacity: Tuple[int, ...]

    @property
    def num_link_types(self) -> int:
        return len(self.edge_capacity)

    @property
    def total_edges(self) -> int:
        return sum(self.edge_capacity)

    @property
    def total_neighbors(self) -> int:
        return sum(self.neighbor_capacity)

    def fits(self, required: np.ndarray) -> bool:
        """True if every link type's requirement fits this bucket."""
        caps = np.column_stack([self.edge_capacity, self.neighbor_capacity])
        return bool(np.all(caps >= required))


class BucketCatalog:
    """
    Immutable, ordered table of buckets.

    Accepts nested lists, numpy arrays or torch tensors of shape (S, L, 2),
    where [s][l] = (edgeCapacity, neighborCapacity).
    """

    def __init__(self, sizes, num_link_types: Optional[int] = None):
        if hasattr(sizes, "detach"):  # torch.Tensor
            sizes = sizes.detach().cpu().numpy()
        try:
            table = np.array(sizes, dtype=np.int64)
        except (TypeError, ValueError) as e:
            raise ShapeError(f"bucket catalog is not a rectangular integer table: {e}") from e

        if table.ndim != 3:
            raise ShapeError(f"bucket catalog: bad ndim: want: 3, have: {table.ndim}")
        if table.shape[0] == 0:
            raise ShapeError("bucket catalog is empty")
        if table.shape[2] != 2:
            raise ShapeError(f"bucket catalog: bad size(2): want: 2, have: {table.shape[2]}")
        if num_link_types is not None and table.shape[1] != num_link_types:
            raise ShapeError(
                f"bucket catalog: bad size(1): want: {num_link_types}, have: {table.shape[1]}"
            )
        if (table < 0).any():
            raise ShapeError("bucket catalog contains negative capacities")

        table.setflags(write=False)
        self._table = table

    @classmethod
    def from_json(cls, text: str, num_link_types: Optional[int] = None) -> "BucketCatalog":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ShapeError(f"failed to parse bucket catalog JSON: {e}") from e
        return cls(data, num_link_types=num_link_types)

    @property
    def table(self) -> np.ndarray:
        return self._table

    @property
    def num_link_types(self) -> int:
        return int(self._table.shape[1])

    def __len__(self) -> int:
        return int(self._table.shape[0])

    def __getitem__(self, index: int) -> Bucket:
        if not 0 <= index < len(self):
            raise IndexError(f"bucket index {index} out of range [0, {len(self)})")
        entry = self._table[index]
        return Bucket(
            index=index,
            edge_capacity=tuple(int(x) for x in entry[:, 0]),
            neighbor_capacity=tuple(int(x) for x in entry[:, 1]),
        )

    def __iter__(self):
        for index in range(len(self)):
            yield self[index]

    def to_list(self):
        return self._table.tolist()


def required_capacities(indices: Sequence[LinkIndex]) -> np.ndarray:
    """(L, 2) array of (link count, max in-degree) for every link type."""
    required = np.zeros((len(indices), 2), dtype=np.int64)
    for l, index in enumerate(indices):
        required[l, 0] = index.num_edges
        required[l, 1] = index.max_degree
    return required


def select_bucket(
    required: np.ndarray,
    catalog: BucketCatalog,
    bucket_override: Optional[int] = None,
) -> Bucket:
    """
    Returns the first catalog bucket whose capacities dominate `required`.

    Args:
        required: (L, 2) array from required_capacities().
        catalog: The model's bucket catalog.
        bucket_override: If given, only this catalog index is considered. It is
            still checked against the requirements.

    Raises:
        ShapeError: If required and catalog disagree on the number of link types.
        NoCapacityError: If no bucket holds the data. Data is never truncated.
    """
    required = np.asarray(required, dtype=np.int64)
    if required.shape != (catalog.num_link_types, 2):
        raise ShapeError(
            f"required capacities: bad shape: want: ({catalog.num_link_types}, 2), have: {required.shape}"
        )

    fits = np.all(catalog.table >= required[np.newaxis, :, :], axis=(1, 2))
    if bucket_override is not None:
        candidates = [bucket_override] if 0 <= bucket_override < len(catalog) else []
    else:
        candidates = range(len(catalog))

    chosen = next((s for s in candidates if fits[s]), None)
    if chosen is None:
        detail = ", ".join(
            f"{link_type_name(l)}=[{required[l, 0]}, {required[l, 1]}]"
            for l in range(required.shape[0])
        )
        if bucket_override is not None:
            raise NoCapacityError(
                f"bucket {bucket_override} does not satisfy the data requirements ({detail})"
            )
        raise NoCapacityError(
            f"no bucket in the catalog satisfies the data requirements ({detail})"
        )

    bucket = catalog[chosen]
    logger.debug("Size: %d", chosen)
    for l in range(required.shape[0]):
        logger.debug(
            "  %d: [%d, %d] -> [%d, %d]",
            l,
            required[l, 0],
            required[l, 1],
            bucket.edge_capacity[l],
            bucket.neighbor_capacity[l],
        )
    return bucket
