"""Exception taxonomy for criterion nodes.

Every error raised by this package derives from :class:`CriterionError` and
from the builtin exception a caller would naturally catch for the same
condition. None of them are retried or recovered inside the package: a
structural precondition failing during ``validate`` aborts graph
construction, and one failing during ``evaluate`` or
``compute_input_partial`` aborts the current minibatch.
"""

__all__ = [
    "CriterionError",
    "ArityMismatch",
    "ShapeMismatch",
    "InvalidInputIndex",
    "InvalidInputType",
    "UnsupportedGradient",
    "DeviceResidencyViolation",
    "InvalidState",
    "StructuralLabelError",
]


class CriterionError(Exception):
    """Base class for all criterion node errors."""


class ArityMismatch(CriterionError, ValueError):
    """Wrong number of inputs attached to a node."""


class ShapeMismatch(CriterionError, ValueError):
    """Input shapes are incompatible, or an input has no elements."""


class InvalidInputIndex(CriterionError, IndexError):
    """Gradient requested for an input index outside the node's arity."""


class InvalidInputType(CriterionError, ValueError):
    """An input role requires a specific kind of node (e.g. a label source)."""


class UnsupportedGradient(CriterionError, ValueError):
    """Gradient requested for an input it is not defined for."""


class DeviceResidencyViolation(CriterionError, RuntimeError):
    """A tensor that must live in host memory resides on an accelerator."""


class InvalidState(CriterionError, RuntimeError):
    """Operation is not valid in the node's current state."""


class StructuralLabelError(CriterionError, ValueError):
    """Label encoding violates the structure the criterion expects."""
