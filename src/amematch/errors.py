"""Exception hierarchy shared across the matching package."""


class AMEError(Exception):
    """Base class for all errors raised by ``amematch``."""


class ConfigError(AMEError, ValueError):
    """Raised before a run starts when arguments or input schemas are invalid."""


class FitFailure(AMEError, RuntimeError):
    """Raised when a predictive-error fitter cannot produce a score."""


class MissingLevelMismatch(FitFailure):
    """Raised when a covariate level is unknown to the design encoding."""


class EmptyMatchFailure(AMEError):
    """Raised when an effect estimate needs matched groups and there are none."""
