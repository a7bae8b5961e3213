"""
mmai/exceptions.py

Exception hierarchy for the battle inference core.

Every error aborts the current decision and is propagated to the caller, who
may hand the battle to a scripted AI. None of them are retried: retrying with
unchanged inputs cannot change a shape or capacity outcome.
"""


class MMAIError(Exception):
    """Base class for all errors raised by the mmai package."""


class ShapeError(MMAIError, ValueError):
    """A length or dimension mismatch in inputs or internal buffers."""


class RangeError(MMAIError, IndexError):
    """A node id lies outside the battlefield."""


class NoCapacityError(MMAIError):
    """No bucket in the catalog can hold the current data."""


class NoValidChoiceError(MMAIError):
    """A mandatory masked choice has no valid entries."""


class InvalidInputError(MMAIError, ValueError):
    """Bad sampling input (temperature, logits or mask lengths, version)."""


class SamplingOrderError(MMAIError):
    """A hierarchical sampling stage was invoked out of order."""


class InferenceBackendError(MMAIError):
    """Opaque failure raised by the inference backend."""


class ModelLoadError(InferenceBackendError):
    """The model artifact could not be loaded or is incompatible."""


class ObservationIOError(MMAIError):
    """An observation file could not be read or written."""


class ConfigError(MMAIError, ValueError):
    """Invalid configuration value."""
