"""
Exception types raised by the deblurring pipeline.
"""


class ConfigurationError(ValueError):
    """Invalid or unsupported parameter, raised before any tree walk."""


class ResourceError(RuntimeError):
    """An externally supplied input (e.g. a top-level kernel) is missing or unusable."""


class NumericFailure(ArithmeticError):
    """A solver was handed input it cannot work with, e.g. a kernel without energy."""


class StateError(RuntimeError):
    """An operation was called before the data it depends on exists."""
