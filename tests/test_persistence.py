"""
tests/test_persistence.py

Tests for observation files and atomic .npz writes (mmai/persistence.py).
"""

import os

import numpy as np
import pytest

from conftest import make_link_sets
from mmai.agent import Observation
from mmai.constants import LT_COUNT
from mmai.exceptions import ObservationIOError
from mmai.persistence import atomic_npz_save, load_observation, save_observation


class TestAtomicNpzSave:
    def test_appends_extension(self, tmp_path):
        path = atomic_npz_save(lambda p: np.savez(p, x=np.arange(3)), str(tmp_path / "data"))
        assert path.endswith("data.npz")
        with np.load(path) as data:
            assert data["x"].tolist() == [0, 1, 2]

    def test_no_temp_files_left_on_failure(self, tmp_path):
        def failing_save(p):
            np.savez(p, x=np.arange(3))
            raise OSError("disk full")

        with pytest.raises(OSError):
            atomic_npz_save(failing_save, str(tmp_path / "data.npz"))
        assert os.listdir(tmp_path) == []


class TestObservationFiles:
    """Observation save/load."""

    def test_links_and_state_preserved(self, tmp_path, observation):
        path = save_observation(observation, str(tmp_path / "obs.npz"))
        loaded = load_observation(path)

        assert len(loaded.links) == LT_COUNT
        assert loaded.links[0].dst_index.tolist() == [1, 1, 4]
        assert loaded.links[0].attributes.dtype == np.float32
        assert loaded.links[2].src_index.tolist() == [10]
        assert [l.link_type for l in loaded.links] == list(range(LT_COUNT))
        np.testing.assert_array_equal(loaded.state, observation.state)
        assert loaded.is_terminal is False
        assert loaded.version == 13

    def test_terminal_flag(self, tmp_path):
        obs = Observation(links=make_link_sets({}), state=np.zeros(3), is_terminal=True)
        loaded = load_observation(save_observation(obs, str(tmp_path / "t.npz")))
        assert loaded.is_terminal is True
        assert all(len(l.src_index) == 0 for l in loaded.links)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ObservationIOError):
            load_observation(str(tmp_path / "missing.npz"))

    def test_missing_key(self, tmp_path):
        path = str(tmp_path / "partial.npz")
        np.savez(path, state=np.zeros(3), num_link_types=np.array(1), is_terminal=np.array(False))
        with pytest.raises(ObservationIOError, match="missing key"):
            load_observation(path)
