from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when variables, terms or constraints are set up inconsistently.

    Configuration errors are raised by the call that caused them, before any
    state is modified."""


class DimensionMismatchError(ConfigurationError):
    """A variable, term argument or state vector has the wrong dimension."""


class UnknownVariableError(ConfigurationError):
    """A term argument refers to storage that was never registered."""


class ArityMismatchError(ConfigurationError):
    """The number of term arguments differs from the term's arity."""


class DuplicateConstraintError(ConfigurationError):
    """A constraint with the same name already exists."""


class UnsupportedOperationError(NotImplementedError):
    """A derivative order or evaluation mode is not available."""


class ConcurrentEvaluationError(RuntimeError):
    """A term failed while the worker pool was running.

    The original exception is available as `__cause__`."""
