"""Exceptions raised by feasres-jax."""


class FeasresError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(FeasresError, ValueError):
    """The input problem cannot be turned into the requested model."""


class UnsupportedOperationError(FeasresError, NotImplementedError):
    """The model does not provide the requested evaluation."""


class ProblemClosedError(FeasresError, RuntimeError):
    """An evaluation was requested on a problem after ``close()``."""
