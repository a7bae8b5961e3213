"""
tests/conftest.py

Shared fixtures and bootstrap logic for all tests.
"""

import os
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mmai.constants import LT_COUNT  # noqa: E402
from mmai.links import LinkSet  # noqa: E402

# Two link types, two buckets: [[E0, K0], [E1, K1]] per bucket
SMALL_SIZES = [
    [[2, 1], [1, 1]],
    [[4, 2], [2, 2]],
]

# Full link type set, three buckets of growing capacity
FULL_SIZES = [
    [[8, 2]] * LT_COUNT,
    [[32, 4]] * LT_COUNT,
    [[128, 8]] * LT_COUNT,
]

STATE_DIM = 16


@pytest.fixture(autouse=True)
def deterministic_seeds():
    """Fix all random seeds when MMAI_DETERMINISTIC=1 env var is set.

    Activate with: MMAI_DETERMINISTIC=1 pytest tests/
    """
    if os.environ.get("MMAI_DETERMINISTIC") == "1":
        import random as _random
        import torch as _torch

        _torch.manual_seed(42)
        np.random.seed(42)
        _random.seed(42)
        _torch.use_deterministic_algorithms(True)
    yield
    # Reset deterministic mode after test
    if os.environ.get("MMAI_DETERMINISTIC") == "1":
        import torch as _torch

        _torch.use_deterministic_algorithms(False)


def make_link_sets(links_by_type, num_link_types=LT_COUNT):
    """
    Builds an ordered list of LinkSets.

    ``links_by_type`` maps a link type to a list of (src, dst, attr) triples;
    missing types are empty.
    """
    link_sets = []
    for l in range(num_link_types):
        triples = links_by_type.get(l, [])
        link_sets.append(
            LinkSet(
                link_type=l,
                src_index=[t[0] for t in triples],
                dst_index=[t[1] for t in triples],
                attributes=[t[2] for t in triples],
            )
        )
    return link_sets


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def small_catalog():
    from mmai.buckets import BucketCatalog

    return BucketCatalog(SMALL_SIZES)


@pytest.fixture
def full_catalog():
    from mmai.buckets import BucketCatalog

    return BucketCatalog(FULL_SIZES, num_link_types=LT_COUNT)


@pytest.fixture
def policy_net():
    from mmai.networks import build_policy_network

    return build_policy_network(FULL_SIZES, state_dim=STATE_DIM, hidden_dim=8, seed=0)


@pytest.fixture
def torch_model(policy_net):
    from mmai.inference import TorchModel

    return TorchModel.from_module(policy_net)


@pytest.fixture
def observation():
    """A small valid observation with a few links in two link types."""
    from mmai.agent import Observation

    links = make_link_sets(
        {
            0: [(0, 1, 1.0), (2, 1, 0.5), (3, 4, 0.25)],
            2: [(10, 20, 1.0)],
        }
    )
    state = np.linspace(-1.0, 1.0, STATE_DIM, dtype=np.float32)
    return Observation(links=links, state=state)
