"""
tests/test_networks.py

Tests for the reference bucketed policy network (mmai/networks.py).
"""

import numpy as np
import pytest
import torch

from conftest import FULL_SIZES, SMALL_SIZES, make_link_sets
from mmai.buckets import BucketCatalog, required_capacities, select_bucket
from mmai.constants import BF_SIZE, N_CATEGORIES, N_MODEL_OUTPUTS, Side
from mmai.encoding import build_flattened_batch
from mmai.exceptions import InferenceBackendError, RangeError, ShapeError
from mmai.inference import TorchModel
from mmai.links import build_link_indices
from mmai.networks import (
    BucketedPolicyNetwork,
    build_policy_network,
    identity_action_table,
    save_policy_network,
    script_policy_network,
)

STATE_DIM = 8


def _tensors(links_by_type, bucket_index=None):
    catalog = BucketCatalog(SMALL_SIZES)
    indices = build_link_indices(make_link_sets(links_by_type, 2), num_link_types=2)
    bucket = select_bucket(required_capacities(indices), catalog, bucket_index)
    batch = build_flattened_batch(indices, bucket, np.ones(STATE_DIM, dtype=np.float32))
    return bucket, batch.as_tensors()


class TestBucketedPolicyNetwork:
    """Entry points and output contract."""

    def test_entry_point_per_bucket(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM)
        assert callable(net.predict0)
        assert callable(net.predict1)
        assert not hasattr(net, "predict2")

    def test_metadata_getters(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM)
        assert net.get_version() == 13
        assert net.get_side() == 0
        assert net.get_all_sizes().tolist() == SMALL_SIZES
        assert torch.equal(net.get_action_table(), identity_action_table())

    def test_output_contract(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=0)
        bucket, inputs = _tensors({0: [(0, 2, 1.0), (1, 2, 0.5)]})
        with torch.inference_mode():
            out = getattr(net, f"predict{bucket.index}")(*inputs)
        assert len(out) == N_MODEL_OUTPUTS
        shapes = [tuple(t.shape) for t in out]
        assert shapes == [
            (1,),
            (1, N_CATEGORIES),
            (1, BF_SIZE),
            (1, BF_SIZE),
            (1, N_CATEGORIES),
            (1, N_CATEGORIES, BF_SIZE),
            (1, N_CATEGORIES, BF_SIZE, BF_SIZE),
            (1,),
            (1,),
            (1,),
        ]
        category, a, b = int(out[7]), int(out[8]), int(out[9])
        assert int(out[0]) == int(identity_action_table()[category, a, b])

    def test_greedy_respects_masks(self):
        mask_category = torch.tensor([0, 0, 1, 0], dtype=torch.int32)
        mask_a = torch.zeros(N_CATEGORIES, BF_SIZE, dtype=torch.int32)
        mask_a[2, 33] = 1
        mask_b = torch.zeros(N_CATEGORIES, BF_SIZE, BF_SIZE, dtype=torch.int32)
        mask_b[2, 33, 100] = 1
        net = BucketedPolicyNetwork(
            SMALL_SIZES, state_dim=STATE_DIM, masks=(mask_category, mask_a, mask_b)
        )
        _, inputs = _tensors({})
        with torch.inference_mode():
            out = net.predict0(*inputs)
        assert (int(out[7]), int(out[8]), int(out[9])) == (2, 33, 100)

    def test_padding_slots_do_not_change_output(self):
        # Same links flattened into a small and a large bucket
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=1)
        links = {0: [(0, 2, 1.0)], 1: [(4, 2, 0.5)]}
        _, small = _tensors(links, bucket_index=0)
        _, large = _tensors(links, bucket_index=1)
        with torch.inference_mode():
            out_small = net.predict0(*small)
            out_large = net.predict1(*large)
        assert torch.allclose(out_small[2], out_large[2])
        assert torch.allclose(out_small[3], out_large[3])

    def test_wrong_input_shape_raises(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM)
        _, inputs = _tensors({})
        with pytest.raises(ShapeError, match="edge_index"):
            net.predict1(*inputs)

    def test_bad_action_table_raises(self):
        with pytest.raises(ShapeError):
            BucketedPolicyNetwork(SMALL_SIZES, action_table=torch.zeros(2, 2, 2))

    def test_forward_dispatches_by_bucket(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=2)
        bucket, inputs = _tensors({0: [(0, 2, 1.0)]})
        with torch.inference_mode():
            via_forward = net(bucket.index, *inputs)
            via_entry = getattr(net, f"predict{bucket.index}")(*inputs)
        assert all(torch.equal(x, y) for x, y in zip(via_forward, via_entry))

    def test_unknown_bucket_raises(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM)
        _, inputs = _tensors({})
        with pytest.raises(RangeError):
            net(5, *inputs)


class TestScriptedPolicyNetwork:
    """TorchScript compilation and saved artifacts."""

    def test_scripted_module_exposes_model_interface(self):
        scripted = script_policy_network(build_policy_network(SMALL_SIZES, state_dim=STATE_DIM))
        assert scripted.get_version() == 13
        assert scripted.get_side() == 0
        assert scripted.get_all_sizes().tolist() == SMALL_SIZES
        assert torch.equal(scripted.get_action_table(), identity_action_table())
        assert callable(scripted.predict0)
        assert callable(scripted.predict1)

    def test_scripted_outputs_match_eager(self):
        net = build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=3)
        scripted = script_policy_network(net)
        bucket, inputs = _tensors({0: [(0, 2, 1.0), (1, 2, 0.5)], 1: [(3, 7, 0.25)]})
        with torch.inference_mode():
            eager = getattr(net, f"predict{bucket.index}")(*inputs)
            compiled = getattr(scripted, f"predict{bucket.index}")(*inputs)
        assert len(compiled) == N_MODEL_OUTPUTS
        for x, y in zip(eager, compiled):
            assert torch.allclose(x, y)

    def test_networks_sharing_a_compiled_type(self):
        first = script_policy_network(build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=4))
        second = script_policy_network(build_policy_network(SMALL_SIZES, state_dim=STATE_DIM, seed=5))
        _, inputs = _tensors({})
        with torch.inference_mode():
            out_first = first.predict0(*inputs)
            out_second = second.predict0(*inputs)
        assert not torch.allclose(out_first[1], out_second[1])

    def test_saved_artifact_loads_as_model(self, tmp_path):
        net = build_policy_network(FULL_SIZES, state_dim=STATE_DIM, side=Side.DEFENDER, seed=6)
        path = save_policy_network(net, str(tmp_path / "models" / "defender.pt"))

        model = TorchModel.from_path(path)
        assert model.side is Side.DEFENDER
        assert model.catalog.to_list() == FULL_SIZES

        eager = TorchModel.from_module(net)
        links = make_link_sets({0: [(0, 1, 1.0), (2, 1, 0.5)], 3: [(4, 9, 0.3)]})
        indices = build_link_indices(links)
        bucket = select_bucket(required_capacities(indices), model.catalog)
        batch = build_flattened_batch(indices, bucket, np.linspace(0, 1, STATE_DIM, dtype=np.float32))
        loaded_out = model.predict(batch)
        eager_out = eager.predict(batch)
        np.testing.assert_allclose(loaded_out.logits_position_a, eager_out.logits_position_a, rtol=1e-5)
        assert loaded_out.greedy_triple == eager_out.greedy_triple

    def test_saved_artifact_rejects_bad_inputs(self, tmp_path):
        path = save_policy_network(
            build_policy_network(FULL_SIZES, state_dim=STATE_DIM), str(tmp_path / "m.pt")
        )
        model = TorchModel.from_path(path)
        indices = build_link_indices(make_link_sets({}))
        batch = build_flattened_batch(indices, model.catalog[0], np.zeros(STATE_DIM + 1, dtype=np.float32))
        with pytest.raises(InferenceBackendError):
            model.predict(batch)
