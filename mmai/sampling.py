"""
mmai/sampling.py

Temperature-controlled sampling over the model's masked action heads.

The policy has three dependent heads: an action category, a primary hex
(position A) conditioned on the category, and a secondary hex (position B)
conditioned on both. Each head is sampled with sample_masked(); TripletSampler
runs the three stages in order and computes the joint confidence.

Temperature regimes:
  - T > 1e8:  uniform over valid entries
  - T < 1e-8: arg-max over valid entries (random source untouched)
  - else:     softmax(logits / T) restricted to valid entries
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .constants import GREEDY_TEMPERATURE, UNIFORM_TEMPERATURE
from .exceptions import InvalidInputError, NoValidChoiceError, SamplingOrderError
from .inference import InferenceOutputs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SampleResult:
    """Outcome of one masked choice."""

    index: int
    prob: float
    fallback: bool = False


@dataclass(frozen=True)
class HierarchicalSample:
    """Sampled (category, position A, position B) triple."""

    category: int
    position_a: int
    position_b: int
    confidence: float
    category_result: SampleResult
    position_a_result: SampleResult
    position_b_result: SampleResult

    @property
    def triple(self):
        return (self.category, self.position_a, self.position_b)


def _as_array(x, dtype) -> np.ndarray:
    if hasattr(x, "detach"):  # torch.Tensor
        x = x.detach().cpu().numpy()
    return np.asarray(x, dtype=dtype)


def _validate(logits: np.ndarray, mask: np.ndarray, temperature: float) -> None:
    if logits.ndim != 1 or mask.ndim != 1:
        raise InvalidInputError(
            f"logits and mask must be 1-D, got shapes {logits.shape} and {mask.shape}"
        )
    if logits.shape[0] == 0:
        raise InvalidInputError("Empty logits")
    if logits.shape[0] != mask.shape[0]:
        raise InvalidInputError(
            f"Logits/mask size mismatch: {logits.shape[0]} vs {mask.shape[0]}"
        )
    if np.isnan(temperature) or temperature < 0.0:
        raise InvalidInputError(f"Negative temperature: {temperature}")


def masked_softmax(logits, mask, temperature: float) -> np.ndarray:
    """
    Probabilities of softmax(logits / T) over valid entries.

    The maximum is subtracted before exponentiating. Masked entries get
    exactly 0.

    Raises:
        InvalidInputError: If there are no valid entries, a valid logit is NaN
            or +inf, or every valid logit is -inf.
    """
    logits = _as_array(logits, np.float64)
    valid = _as_array(mask, np.float64) != 0
    _validate(logits, valid, temperature)
    if not valid.any():
        raise InvalidInputError("No valid entries to normalize")
    if temperature <= 0.0:
        raise InvalidInputError("Softmax requires a positive temperature")

    valid_logits = logits[valid]
    if np.isnan(valid_logits).any() or np.isposinf(valid_logits).any():
        raise InvalidInputError("Non-finite logits among valid entries")
    if np.isneginf(valid_logits).all():
        raise InvalidInputError("All valid logits are -inf")

    scaled = valid_logits / temperature
    exp = np.exp(scaled - scaled.max())
    probs = np.zeros_like(logits)
    probs[valid] = exp / exp.sum()
    return probs


def sample_masked(
    logits,
    mask,
    hard_fail: bool,
    temperature: float,
    rng: np.random.Generator,
) -> SampleResult:
    """
    Samples one index from `logits` restricted to entries where `mask` != 0.

    Args:
        logits: 1-D float logits.
        mask: 1-D validity mask of the same length (non-zero = valid).
        hard_fail: Raise if no entry is valid instead of falling back.
        temperature: Non-negative sampling temperature.
        rng: Random source. Not consumed in the greedy regime or on fallback.

    Returns:
        SampleResult. With no valid entries and hard_fail=False this is the
        fallback (index 0, prob 0.0, fallback=True).

    Raises:
        InvalidInputError: Empty or mismatched inputs, negative temperature,
            NaN/+inf among valid logits, or all valid logits -inf when softmax
            sampling.
        NoValidChoiceError: No valid entries and hard_fail=True.
    """
    logits = _as_array(logits, np.float64)
    valid = _as_array(mask, np.float64) != 0
    _validate(logits, valid, temperature)

    valid_idx = np.flatnonzero(valid)
    n_valid = valid_idx.shape[0]
    if n_valid == 0:
        if hard_fail:
            raise NoValidChoiceError("No valid options available")
        return SampleResult(index=0, prob=0.0, fallback=True)

    valid_logits = logits[valid_idx]
    if np.isnan(valid_logits).any() or np.isposinf(valid_logits).any():
        raise InvalidInputError("Non-finite logits among valid entries")

    if temperature > UNIFORM_TEMPERATURE:
        pos = int(rng.integers(n_valid))
        return SampleResult(index=int(valid_idx[pos]), prob=1.0 / n_valid)

    if temperature < GREEDY_TEMPERATURE:
        # np.argmax returns the first maximum, i.e. the lowest valid index
        return SampleResult(index=int(valid_idx[np.argmax(valid_logits)]), prob=1.0)

    probs = masked_softmax(logits, valid, temperature)[valid_idx]
    pos = int(rng.choice(n_valid, p=probs))
    return SampleResult(index=int(valid_idx[pos]), prob=float(probs[pos]))


class SamplingStage(enum.Enum):
    CATEGORY = "category"
    POSITION_A = "position_a"
    POSITION_B = "position_b"
    DONE = "done"


class TripletSampler:
    """
    Three-stage sampler over one set of model outputs.

    Stages must run in order: sample_category(), sample_position_a(),
    sample_position_b(), then result(). The category is mandatory; either
    position may fall back when its mask row is empty, in which case it does
    not reduce the confidence.
    """

    def __init__(
        self,
        outputs: InferenceOutputs,
        temperature: float,
        rng: np.random.Generator,
    ):
        self.outputs = outputs
        self.temperature = temperature
        self.rng = rng
        self.stage = SamplingStage.CATEGORY
        self._category: Optional[SampleResult] = None
        self._position_a: Optional[SampleResult] = None
        self._position_b: Optional[SampleResult] = None

    def _expect(self, stage: SamplingStage) -> None:
        if self.stage is not stage:
            raise SamplingOrderError(
                f"cannot run stage {stage.value} while at stage {self.stage.value}"
            )

    def sample_category(self) -> SampleResult:
        self._expect(SamplingStage.CATEGORY)
        self._category = sample_masked(
            self.outputs.logits_category,
            self.outputs.mask_category,
            True,
            self.temperature,
            self.rng,
        )
        self.stage = SamplingStage.POSITION_A
        return self._category

    def sample_position_a(self) -> SampleResult:
        self._expect(SamplingStage.POSITION_A)
        mask = self.outputs.mask_position_a[self._category.index]
        self._position_a = sample_masked(
            self.outputs.logits_position_a, mask, False, self.temperature, self.rng
        )
        self.stage = SamplingStage.POSITION_B
        return self._position_a

    def sample_position_b(self) -> SampleResult:
        self._expect(SamplingStage.POSITION_B)
        mask = self.outputs.mask_position_b[self._category.index, self._position_a.index]
        self._position_b = sample_masked(
            self.outputs.logits_position_b, mask, False, self.temperature, self.rng
        )
        self.stage = SamplingStage.DONE
        return self._position_b

    def result(self) -> HierarchicalSample:
        self._expect(SamplingStage.DONE)
        cat, a, b = self._category, self._position_a, self._position_b
        confidence = cat.prob * (1.0 if a.fallback else a.prob) * (1.0 if b.fallback else b.prob)
        return HierarchicalSample(
            category=cat.index,
            position_a=a.index,
            position_b=b.index,
            confidence=confidence,
            category_result=cat,
            position_a_result=a,
            position_b_result=b,
        )


def sample_hierarchical(
    outputs: InferenceOutputs,
    temperature: float,
    rng: np.random.Generator,
) -> HierarchicalSample:
    """Runs all three stages of a TripletSampler and returns the result."""
    sampler = TripletSampler(outputs, temperature, rng)
    sampler.sample_category()
    sampler.sample_position_a()
    sampler.sample_position_b()
    sample = sampler.result()
    logger.debug(
        "Sampled (%d, %d, %d) with probs (%.4f, %.4f, %.4f), fallbacks (%s, %s)",
        sample.category,
        sample.position_a,
        sample.position_b,
        sample.category_result.prob,
        sample.position_a_result.prob,
        sample.position_b_result.prob,
        sample.position_a_result.fallback,
        sample.position_b_result.fallback,
    )
    return sample
