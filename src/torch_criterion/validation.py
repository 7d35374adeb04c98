"""Validate-time checks shared by criterion nodes.

These raise the package's typed errors early, before any numeric work, so
that a malformed graph fails at construction rather than mid-epoch.

Functions:
    validate_not_empty: Every tensor has at least one element.
    validate_same_shape: Two tensors have identical (rows, cols).
    validate_rows / validate_cols: A tensor dimension equals an expected value.
    validate_host_resident: A tensor lives in host-addressable memory.
    check_nan: Diagnostic NaN warning, never control flow.
"""

import warnings

import torch
from torch import Tensor

from .errors import DeviceResidencyViolation, ShapeMismatch

__all__ = [
    "validate_not_empty",
    "validate_same_shape",
    "validate_rows",
    "validate_cols",
    "validate_host_resident",
    "check_nan",
]


def validate_not_empty(op: str, **tensors: Tensor) -> None:
    r"""validate_not_empty(op, **tensors) -> None

    Raises:
        ShapeMismatch: If any of the named tensors has no elements.

    Examples::

        >>> validate_not_empty("SquareError", label=torch.zeros(0, 3))
        ShapeMismatch: SquareError operation: input 'label' has 0 elements
    """
    for name, tensor in tensors.items():
        if tensor.numel() == 0:
            raise ShapeMismatch(f"{op} operation: input {name!r} has 0 elements")


def validate_same_shape(op: str, a: Tensor, b: Tensor, names=("input 0", "input 1")) -> None:
    if tuple(a.shape) != tuple(b.shape):
        raise ShapeMismatch(
            f"{op} operation: {names[0]} shape {tuple(a.shape)} does not match "
            f"{names[1]} shape {tuple(b.shape)}"
        )


def validate_rows(op: str, tensor: Tensor, expected: int, name: str) -> None:
    if tensor.shape[0] != expected:
        raise ShapeMismatch(f"{op} operation: {name} must have {expected} rows, got {tensor.shape[0]}")


def validate_cols(op: str, tensor: Tensor, expected: int, name: str) -> None:
    if tensor.shape[1] != expected:
        raise ShapeMismatch(
            f"{op} operation: {name} must have {expected} columns, got {tensor.shape[1]}"
        )


def validate_host_resident(op: str, tensor: Tensor, name: str) -> None:
    """Labels read element by element must not live on an accelerator.

    Raises:
        DeviceResidencyViolation: If ``tensor`` is not on the CPU.
    """
    if tensor.device.type != "cpu":
        raise DeviceResidencyViolation(
            f"{op}: {name} is on {tensor.device}; it is read one scalar per column "
            f"and must reside in host memory. Other inputs may stay on the accelerator."
        )


def check_nan(op: str, value: Tensor) -> bool:
    """Warn if ``value`` contains NaN. Returns True when a NaN was found."""
    if torch.isnan(value).any():
        warnings.warn(f"{op}: function value contains NaN", RuntimeWarning, stacklevel=3)
        return True
    return False
