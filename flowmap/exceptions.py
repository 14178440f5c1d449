"""
Error taxonomy for the flowmap package.

All errors raised on purpose by flowmap derive from FlowmapError, so callers can
catch the whole family at once. Each concrete error also derives from the builtin
exception a caller would naturally expect (ValueError for bad options and input,
ArithmeticError for numerical failures, RuntimeError for misuse of the API).
"""


class FlowmapError(Exception):
    """Base class for all flowmap errors."""


class ConfigurationError(FlowmapError, ValueError):
    """Contradictory, missing or out-of-range configuration options."""

    def __init__(self, message: str, option: str = None):
        self.option = option
        if option is not None:
            message = f"Invalid option '{option}': {message}"
        super().__init__(message)


class InputError(FlowmapError, ValueError):
    """Malformed network input (ids, weights, bindings, partitions)."""


class NumericalError(FlowmapError, ArithmeticError):
    """Random walk did not converge, or flow became non-finite."""


class LogicError(FlowmapError, RuntimeError):
    """The API was used in the wrong order, e.g. reading results before a run."""
