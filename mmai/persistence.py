# mmai/persistence.py
import os
import logging
import tempfile
from typing import List

import numpy as np

from .agent import Observation
from .constants import MODEL_VERSION
from .exceptions import ObservationIOError
from .links import LinkSet

logger = logging.getLogger(__name__)


def atomic_npz_save(save_fn, path: str) -> str:
    """
    Save a numpy .npz file atomically using a write-then-rename pattern.

    ``save_fn`` is a callable that accepts a file path and writes the .npz file
    there (e.g. ``lambda p: np.savez(p, **arrays)``). The extension ``.npz`` is
    appended by numpy automatically, so we operate on the base path and rename
    the resulting file.

    Returns:
        The final path, with the ``.npz`` extension.

    Raises:
        OSError: If the write or rename fails.
    """
    dir_path = os.path.dirname(path) or "."
    os.makedirs(dir_path, exist_ok=True)
    fd, tmp_base = tempfile.mkstemp(dir=dir_path, suffix=".tmp")
    os.close(fd)
    os.unlink(tmp_base)  # Remove so numpy can write <tmp_base>.npz
    target_npz = path if path.endswith(".npz") else path + ".npz"
    try:
        save_fn(tmp_base)
        os.replace(tmp_base + ".npz", target_npz)
    except Exception:
        for candidate in [tmp_base + ".npz", tmp_base]:
            try:
                os.unlink(candidate)
            except OSError:
                pass
        raise
    return target_npz


def save_observation(observation: Observation, path: str) -> str:
    """
    Writes an observation to ``path`` (.npz).

    Raises:
        ObservationIOError: If the file cannot be written.
    """
    arrays = {
        "state": np.asarray(observation.state, dtype=np.float32),
        "is_terminal": np.array(bool(observation.is_terminal)),
        "version": np.array(int(observation.version), dtype=np.int64),
        "num_link_types": np.array(len(observation.links), dtype=np.int64),
    }
    for l, link_set in enumerate(observation.links):
        arrays[f"src_{l}"] = np.asarray(link_set.src_index, dtype=np.int64)
        arrays[f"dst_{l}"] = np.asarray(link_set.dst_index, dtype=np.int64)
        arrays[f"attr_{l}"] = np.asarray(link_set.attributes, dtype=np.float32)

    try:
        saved = atomic_npz_save(lambda p: np.savez(p, **arrays), path)
    except OSError as e:
        raise ObservationIOError(f"Failed to write observation to {path}: {e}") from e
    logger.debug("Observation saved to %s", saved)
    return saved


def load_observation(path: str) -> Observation:
    """
    Reads an observation written by save_observation().

    Link sets are returned in stored order with link_type set to their
    position.

    Raises:
        ObservationIOError: If the file is missing, unreadable or lacks keys.
    """
    try:
        with np.load(path, allow_pickle=False) as data:
            num_link_types = int(data["num_link_types"])
            links: List[LinkSet] = [
                LinkSet(
                    link_type=l,
                    src_index=data[f"src_{l}"].copy(),
                    dst_index=data[f"dst_{l}"].copy(),
                    attributes=data[f"attr_{l}"].copy(),
                )
                for l in range(num_link_types)
            ]
            observation = Observation(
                links=links,
                state=data["state"].astype(np.float32),
                is_terminal=bool(data["is_terminal"]),
                version=int(data["version"]) if "version" in data else MODEL_VERSION,
            )
    except KeyError as e:
        raise ObservationIOError(f"Observation file {path} is missing key {e}") from e
    except (OSError, ValueError) as e:
        raise ObservationIOError(f"Failed to read observation from {path}: {e}") from e
    return observation
