"""
mmai/registry.py

Session-wide model cache keyed by side ("attacker", "defender").

Models are loaded lazily on first use. When loading fails and a scripted
fallback is configured, the registry hands out a FallbackModel marker that
tells the caller which scripted AI should play the battle instead.
"""

import logging
from typing import Callable, Dict, Optional, Union

from .agent import BattleAgent
from .config import ModelConfig, SamplingConfig
from .constants import ACTION_UNSET, Side
from .exceptions import ConfigError, MMAIError
from .inference import TorchModel

logger = logging.getLogger(__name__)

FALLBACK_KEYWORDS = ("StupidAI", "BattleAI")
SIDE_KEYS = {"attacker": Side.ATTACKER, "defender": Side.DEFENDER}


class FallbackModel:
    """
    Marker for a scripted AI to be used instead of a neural model.

    Only `keyword` is meaningful; asking it for an action is a caller bug and
    returns ACTION_UNSET.
    """

    def __init__(self, keyword: str):
        if keyword not in FALLBACK_KEYWORDS:
            raise ConfigError(f"Unsupported fallback keyword: {keyword}")
        self.keyword = keyword

    @property
    def name(self) -> str:
        return self.keyword

    def choose_action(self, observation) -> int:
        logger.error(
            "choose_action called on a FallbackModel (%s); returning %d",
            self.keyword,
            ACTION_UNSET,
        )
        return ACTION_UNSET

    def __repr__(self) -> str:
        return f"FallbackModel({self.keyword!r})"


ModelLike = Union[TorchModel, FallbackModel]


class ModelRegistry:
    """Loads and caches one model per side key."""

    def __init__(
        self,
        config: ModelConfig,
        loader: Optional[Callable[[str, str], TorchModel]] = None,
    ):
        self.config = config
        self._loader = loader or (lambda path, device: TorchModel.from_path(path, device=device))
        self._models: Dict[str, TorchModel] = {}
        self._fallback: Optional[FallbackModel] = None

    def path_for(self, key: str) -> str:
        if key not in SIDE_KEYS:
            raise ConfigError(f"No such key in model config: {key}")
        path = getattr(self.config, key)
        if not path:
            raise ConfigError(f"No model configured for '{key}'")
        return path

    def get_model(self, key: str) -> ModelLike:
        """
        Returns the cached model for `key`, loading it on first use.

        Raises:
            MMAIError: If loading fails and either strict_load is set or no
                fallback is configured.
        """
        if key in self._models:
            logger.debug("Using previously loaded %s", key)
            return self._models[key]

        try:
            path = self.path_for(key)
            logger.info("Loading Torch %s model from %s", key, path)
            model = self._loader(path, self.config.device)
        except MMAIError as e:
            logger.error("Failed to load %s: %s", key, e)
            if self.config.strict_load:
                raise
            if not self.config.fallback:
                logger.error("Fallback model not configured, raising")
                raise
            if self._fallback is None:
                self._fallback = FallbackModel(self.config.fallback)
            logger.info("Will use fallback model: %s", self._fallback.name)
            return self._fallback

        if model.side not in (SIDE_KEYS[key], Side.BOTH):
            logger.warning(
                "Model loaded for %s plays side %s", key, model.side.name
            )
        self._models[key] = model
        return model

    def agent_for(self, key: str, sampling: SamplingConfig) -> Union[BattleAgent, FallbackModel]:
        model = self.get_model(key)
        if isinstance(model, FallbackModel):
            return model
        return BattleAgent.from_config(model, sampling)
