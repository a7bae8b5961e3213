"""
tests/test_inference.py

Tests for the inference adapter (mmai/inference.py): artifact metadata,
input validation and output parsing.
"""

import numpy as np
import pytest
import torch

from conftest import FULL_SIZES, STATE_DIM, make_link_sets
from mmai.buckets import Bucket, required_capacities, select_bucket
from mmai.constants import BF_SIZE, N_CATEGORIES, N_MODEL_OUTPUTS, Side
from mmai.encoding import build_flattened_batch
from mmai.exceptions import InferenceBackendError, ModelLoadError, ShapeError
from mmai.inference import (
    TorchModel,
    TorchScriptBackend,
    method_name_for,
    parse_outputs,
)
from mmai.links import build_link_indices
from mmai.networks import build_policy_network


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raw_outputs():
    return [
        torch.tensor([7]),
        torch.zeros(1, N_CATEGORIES),
        torch.zeros(1, BF_SIZE),
        torch.zeros(1, BF_SIZE),
        torch.ones(1, N_CATEGORIES, dtype=torch.int32),
        torch.ones(1, N_CATEGORIES, BF_SIZE, dtype=torch.int32),
        torch.ones(1, N_CATEGORIES, BF_SIZE, BF_SIZE, dtype=torch.int32),
        torch.tensor([1]),
        torch.tensor([2]),
        torch.tensor([3]),
    ]


def _batch(model, links_by_type=None, state_dim=STATE_DIM):
    indices = build_link_indices(make_link_sets(links_by_type or {}))
    bucket = select_bucket(required_capacities(indices), model.catalog)
    return build_flattened_batch(indices, bucket, np.zeros(state_dim, dtype=np.float32))


class _BrokenModule(torch.nn.Module):
    def get_version(self):
        raise RuntimeError("boom")


class TestParseOutputs:
    """Output count and shape validation."""

    def test_valid_outputs(self):
        outputs = parse_outputs(_raw_outputs())
        assert outputs.action == 7
        assert outputs.logits_category.shape == (N_CATEGORIES,)
        assert outputs.mask_position_a.shape == (N_CATEGORIES, BF_SIZE)
        assert outputs.mask_position_b.shape == (N_CATEGORIES, BF_SIZE, BF_SIZE)
        assert outputs.greedy_triple == (1, 2, 3)

    def test_wrong_count_raises(self):
        with pytest.raises(ShapeError, match="bad output size"):
            parse_outputs(_raw_outputs()[:N_MODEL_OUTPUTS - 1])

    def test_wrong_shape_raises(self):
        raw = _raw_outputs()
        raw[2] = torch.zeros(1, BF_SIZE - 1)
        with pytest.raises(ShapeError, match="logits_position_a"):
            parse_outputs(raw)

    def test_missing_batch_dimension_raises(self):
        raw = _raw_outputs()
        raw[1] = torch.zeros(N_CATEGORIES)
        with pytest.raises(ShapeError):
            parse_outputs(raw)


class TestTorchModel:
    """Metadata loading and prediction through the reference network."""

    def test_metadata(self, torch_model):
        assert torch_model.version == 13
        assert torch_model.side is Side.ATTACKER
        assert torch_model.catalog.to_list() == FULL_SIZES
        assert torch_model.action_table.shape == (N_CATEGORIES, BF_SIZE, BF_SIZE)

    def test_action_table_lookup(self, torch_model):
        assert torch_model.action_for(0, 0, 0) == 0
        assert torch_model.action_for(1, 2, 3) == 1 * BF_SIZE * BF_SIZE + 2 * BF_SIZE + 3

    def test_wrong_version_rejected(self):
        net = build_policy_network(FULL_SIZES, state_dim=STATE_DIM, version=12)
        with pytest.raises(ModelLoadError, match="unsupported model version"):
            TorchModel.from_module(net)

    def test_unknown_side_rejected(self):
        net = build_policy_network(FULL_SIZES, state_dim=STATE_DIM)
        net._side = 3
        with pytest.raises(ModelLoadError, match="side"):
            TorchModel.from_module(net)

    def test_catalog_link_type_count_enforced(self):
        net = build_policy_network([[[4, 2], [4, 2]]], state_dim=STATE_DIM)
        with pytest.raises(ModelLoadError):
            TorchModel.from_module(net)

    def test_predict(self, torch_model):
        outputs = torch_model.predict(_batch(torch_model, {0: [(0, 1, 1.0)]}))
        assert outputs.logits_position_a.shape == (BF_SIZE,)
        assert np.isfinite(outputs.logits_category).all()
        category, a, b = outputs.greedy_triple
        assert outputs.action == torch_model.action_for(category, a, b)

    def test_predict_rejects_foreign_bucket(self, torch_model):
        batch = _batch(torch_model)
        foreign = Bucket(0, (1,) * 7, (1,) * 7)
        object.__setattr__(batch, "bucket", foreign)
        with pytest.raises(ShapeError):
            torch_model.predict(batch)

    def test_predict_wraps_backend_failure(self, torch_model):
        # Wrong state length passes the adapter but fails inside the network
        batch = _batch(torch_model, state_dim=STATE_DIM + 1)
        with pytest.raises(InferenceBackendError):
            torch_model.predict(batch)


class TestTorchScriptBackend:
    """Method dispatch and error wrapping."""

    def test_method_name_for(self):
        assert method_name_for(Bucket(3, (1,), (1,))) == "predict3"

    def test_missing_method(self, policy_net):
        backend = TorchScriptBackend(policy_net)
        assert backend.has_method("predict0")
        assert not backend.has_method("predict99")
        with pytest.raises(InferenceBackendError, match="no method"):
            backend.infer("predict99", [])

    def test_failure_is_wrapped(self):
        backend = TorchScriptBackend(_BrokenModule())
        with pytest.raises(InferenceBackendError, match="boom"):
            backend.call("get_version")

    def test_runs_without_grad(self, policy_net):
        backend = TorchScriptBackend(policy_net)
        model = TorchModel(backend)
        raw = backend.infer("predict0", _batch(model).as_tensors())
        assert not raw[1].requires_grad

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ModelLoadError):
            TorchModel.from_path(str(tmp_path / "missing.pt"))

    def test_load_scripted_artifact(self, tmp_path):
        class _Scripted(torch.nn.Module):
            def __init__(self):
                super().__init__()
                self.register_buffer("sizes", torch.tensor([[[4, 2]] * 7]))
                self.register_buffer("table", torch.zeros(N_CATEGORIES, BF_SIZE, BF_SIZE, dtype=torch.int64))

            def forward(self, x: torch.Tensor) -> torch.Tensor:
                return x

            @torch.jit.export
            def get_version(self) -> int:
                return 13

            @torch.jit.export
            def get_side(self) -> int:
                return 1

            @torch.jit.export
            def get_all_sizes(self) -> torch.Tensor:
                return self.sizes

            @torch.jit.export
            def get_action_table(self) -> torch.Tensor:
                return self.table

            @torch.jit.export
            def predict0(self, state: torch.Tensor, ei: torch.Tensor, ea: torch.Tensor, nbr: torch.Tensor):
                return state

        path = tmp_path / "model.pt"
        torch.jit.save(torch.jit.script(_Scripted()), str(path))
        model = TorchModel.from_path(str(path))
        assert model.side is Side.DEFENDER
        assert len(model.catalog) == 1
        assert model.path == str(path)
