"""Matrix norm penalties on a single input.

Padding columns are zeroed in a private copy of the input before the norm
is taken; the input node's own value is left untouched.
"""

import torch

from ..node import ComputationNode
from ..validation import validate_not_empty

__all__ = ["MatrixL1RegNode", "MatrixL2RegNode"]


class _NormRegularizer(ComputationNode):
    input_roles = ("input",)
    temporaries = ("_masked_input",)

    def validate(self) -> None:
        super().validate()
        validate_not_empty(self.operation_name, input=self.input_value(0))
        self._resize_scalar_output()
        self._masked_input = self._zeros(*self.input_value(0).shape)

    def _mask_input(self) -> torch.Tensor:
        self._masked_input = self.input_value(0).clone()
        self.mask_missing_columns(self._masked_input)
        return self._masked_input


class MatrixL1RegNode(_NormRegularizer):
    """Sum of absolute values; gradient ``seed * sign(input)``."""

    operation_name = "MatrixL1Reg"
    temporaries = ("_masked_input", "_gradient_of_l1_norm")

    def validate(self) -> None:
        super().validate()
        self._gradient_of_l1_norm = self._zeros(*self.input_value(0).shape)

    def evaluate(self) -> None:
        self._begin_forward()
        self._set_scalar(self._mask_input().abs().sum())

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        self._gradient_of_l1_norm = torch.sign(self._masked_input)
        self.input_gradient(0).add_(self.seed * self._gradient_of_l1_norm)


class MatrixL2RegNode(_NormRegularizer):
    """Frobenius norm; gradient ``seed / (norm + eps) * input``."""

    operation_name = "MatrixL2Reg"

    def evaluate(self) -> None:
        self._begin_forward()
        self._set_scalar(torch.linalg.matrix_norm(self._mask_input()))

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        scale = self.seed / (self.function_value.reshape(-1)[0] + self.config.eps_in_inverse)
        self.input_gradient(0).add_(scale * self._masked_input)
