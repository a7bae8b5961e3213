"""mmai/config.py"""

from typing import List, Dict, TypeVar, Optional, Union
from dataclasses import dataclass, field, fields as dataclass_fields
import os
import logging
import re
import yaml

from .exceptions import ConfigError

T = TypeVar("T")


# Helper to get nested dict values safely
def get_nested(data: Dict, keys: List[str], default: T) -> T:
    """Safely retrieve a nested value from a dict."""
    current = data
    for key in keys:
        if isinstance(current, dict) and key in current:
            current = current.get(key)
        else:
            return default
    # Handle case where the final value retrieved is None, but default isn't None
    if current is None and default is not None:
        return default
    return current  # type: ignore


def parse_human_readable_size(size_str: Union[str, int]) -> int:
    """Parses a human-readable size string (e.g., '9MB', '512KB', '1024') into bytes."""
    if isinstance(size_str, int):
        return size_str
    if not isinstance(size_str, str):
        raise ValueError(f"Invalid size format: {size_str}. Must be int or string.")

    match = re.fullmatch(r"(\d+)\s*(KB|MB|GB)?", size_str.upper().strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    value = int(match.group(1))
    unit = match.group(2)
    if unit == "KB":
        value *= 1024
    elif unit == "MB":
        value *= 1024**2
    elif unit == "GB":
        value *= 1024**3
    return value


# --- Configuration Dataclasses ---


@dataclass
class ModelConfig:
    """Model artifacts per side and load behaviour."""

    attacker: str = ""  # path to the attacker's model artifact
    defender: str = ""  # path to the defender's model artifact
    fallback: str = ""  # scripted AI to use when a model fails to load ("" = none)
    strict_load: bool = False  # propagate load errors even with a fallback set
    device: str = "cpu"


@dataclass
class SamplingConfig:
    """Action sampling settings."""

    temperature: float = 1.0
    seed: int = 0  # 0 = seed from the clock
    bucket_override: Optional[int] = None  # force a catalog index


@dataclass
class LoggingConfig:
    """Settings for configuring logging behavior."""

    log_level_file: str = "DEBUG"  # Logging level for the log file
    log_level_console: str = "WARNING"  # Logging level for the console
    log_dir: str = "logs"
    log_file_prefix: str = "mmai"
    log_max_bytes: int = 9 * 1024 * 1024  # can be string like "9MB"
    log_backup_count: int = 5


# --- Main Config Class ---
@dataclass
class Config:
    """Root configuration object."""

    model: ModelConfig = field(default_factory=ModelConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    _source_path: Optional[str] = None  # Internal field to store config path


_SECTION_CLASSES = {
    "model": ModelConfig,
    "sampling": SamplingConfig,
    "logging": LoggingConfig,
}


def _section(config_dict: Dict, section_name: str, section_cls, **converters):
    """Builds one section dataclass, falling back to its defaults per key."""
    values = {}
    for f in dataclass_fields(section_cls):
        default = getattr(section_cls, f.name)
        value = get_nested(config_dict, [section_name, f.name], default)
        if f.name in converters:
            value = converters[f.name](value)
        values[f.name] = value
    return section_cls(**values)


def _optional_int(value) -> Optional[int]:
    return None if value is None else int(value)


def validate_config(cfg: Config) -> Config:
    """
    Checks value ranges.

    Raises:
        ConfigError: On a negative temperature or bucket override.
    """
    if cfg.sampling.temperature < 0:
        raise ConfigError(f"sampling.temperature must be >= 0, got {cfg.sampling.temperature}")
    if cfg.sampling.bucket_override is not None and cfg.sampling.bucket_override < 0:
        raise ConfigError(
            f"sampling.bucket_override must be >= 0, got {cfg.sampling.bucket_override}"
        )
    if cfg.sampling.seed < 0:
        raise ConfigError(f"sampling.seed must be >= 0, got {cfg.sampling.seed}")
    return cfg


def load_config(
    config_path: str = "config.yaml",
) -> Config:
    """Loads configuration from a YAML file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)
            if config_dict is None:
                logging.warning(
                    "Config file '%s' is empty or invalid. Using default configuration.",
                    config_path,
                )
                config_dict = {}

            # Warn on unknown keys in config sections
            for section_name, section_cls in _SECTION_CLASSES.items():
                section_data = config_dict.get(section_name, {})
                if isinstance(section_data, dict):
                    known_keys = {f.name for f in dataclass_fields(section_cls)}
                    for key in section_data:
                        if key not in known_keys:
                            logging.warning(
                                "Unknown %s key '%s', will be ignored",
                                section_name,
                                key,
                            )

            # --- Parse sections ---
            cfg = Config(
                model=_section(config_dict, "model", ModelConfig, strict_load=bool),
                sampling=_section(
                    config_dict,
                    "sampling",
                    SamplingConfig,
                    temperature=float,
                    seed=int,
                    bucket_override=_optional_int,
                ),
                logging=_section(
                    config_dict,
                    "logging",
                    LoggingConfig,
                    log_max_bytes=parse_human_readable_size,
                    log_backup_count=int,
                ),
                _source_path=os.path.abspath(config_path),
            )

    except FileNotFoundError:
        logging.error(
            "Config file '%s' not found. Using default configuration.", config_path
        )
        return Config(_source_path=None)
    except (TypeError, KeyError, AttributeError, yaml.YAMLError, ValueError) as e:
        logging.exception(
            "Error loading or parsing config file '%s': %s. Check structure/types. Using default config.",
            config_path,
            e,
        )
        return Config(_source_path=None)
    except IOError as e:
        logging.exception(
            "IOError loading config file '%s': %s. Using default config.", config_path, e
        )
        return Config(_source_path=None)

    return validate_config(cfg)
