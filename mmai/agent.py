"""
mmai/agent.py

Per-decision pipeline: link indexing, bucket selection, flattening,
inference and hierarchical sampling, ending in one engine action.

Nothing survives between decisions except the loaded model (catalog, action
table, entry points) and the agent's random source.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .buckets import required_capacities, select_bucket
from .config import SamplingConfig
from .constants import ACTION_RESET, MODEL_VERSION
from .encoding import FlattenedBatch, build_flattened_batch
from .exceptions import InvalidInputError
from .inference import TorchModel
from .links import LinkSet, build_link_indices
from .log_setup import ScopedTimer
from .sampling import HierarchicalSample, sample_hierarchical

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """Everything the encoder hands over for one decision."""

    links: Sequence[LinkSet]
    state: np.ndarray
    is_terminal: bool = False
    version: int = MODEL_VERSION


@dataclass
class Decision:
    """Result of BattleAgent.decide()."""

    action: int
    bucket_index: Optional[int] = None
    sample: Optional[HierarchicalSample] = None
    greedy_action: Optional[int] = None
    elapsed_ms: float = 0.0

    @property
    def confidence(self) -> float:
        return self.sample.confidence if self.sample is not None else 1.0


def resolve_seed(seed: int) -> int:
    """Returns `seed`, or a clock-derived seed if it is 0."""
    if seed == 0:
        seed = time.time_ns() & 0xFFFFFFFF
        logger.info("Seed is 0, using %d", seed)
    return seed


class BattleAgent:
    """Chooses engine actions with a loaded model."""

    def __init__(
        self,
        model: TorchModel,
        temperature: float = 1.0,
        seed: int = 0,
        bucket_override: Optional[int] = None,
    ):
        if temperature < 0:
            raise InvalidInputError(f"Negative temperature: {temperature}")
        self.model = model
        self.temperature = temperature
        self.bucket_override = bucket_override
        logger.info(
            "MMAI params: seed=%d, temperature=%s, model=%s",
            seed,
            temperature,
            model.path,
        )
        self.seed = resolve_seed(seed)
        self.rng = np.random.default_rng(self.seed)

    @classmethod
    def from_config(cls, model: TorchModel, sampling: SamplingConfig) -> "BattleAgent":
        return cls(
            model,
            temperature=sampling.temperature,
            seed=sampling.seed,
            bucket_override=sampling.bucket_override,
        )

    def _check_version(self, observation: Observation) -> None:
        if observation.version != self.model.version:
            raise InvalidInputError(
                f"unsupported observation version: want: {self.model.version}, have: {observation.version}"
            )

    def prepare_inputs(self, observation: Observation) -> FlattenedBatch:
        """
        Indexes the observation's links and flattens them into the smallest
        fitting bucket.

        Raises:
            InvalidInputError: On an unsupported observation version.
            ShapeError, RangeError: On malformed link data.
            NoCapacityError: If no bucket holds the data.
        """
        self._check_version(observation)
        indices = build_link_indices(observation.links)
        bucket = select_bucket(
            required_capacities(indices), self.model.catalog, self.bucket_override
        )
        return build_flattened_batch(indices, bucket, observation.state)

    def decide(self, observation: Observation) -> Decision:
        """
        Runs one full decision. Terminal observations yield ACTION_RESET.

        Raises:
            InvalidInputError: On an unsupported observation version, terminal
                or not.
        """
        self._check_version(observation)
        if observation.is_terminal:
            return Decision(action=ACTION_RESET)

        with ScopedTimer("getAction") as timer:
            batch = self.prepare_inputs(observation)
            outputs = self.model.predict(batch)
            sample = sample_hierarchical(outputs, self.temperature, self.rng)
            action = self.model.action_for(*sample.triple)

            if action != outputs.action:
                logger.debug("Sampled a non-greedy action: %d != %d", action, outputs.action)

            timer.name = "MMAI action: %d (confidence=%.2f)" % (action, sample.confidence)

        return Decision(
            action=action,
            bucket_index=batch.bucket_index,
            sample=sample,
            greedy_action=outputs.action,
            elapsed_ms=timer.elapsed_ms,
        )

    def choose_action(self, observation: Observation) -> int:
        return self.decide(observation).action
