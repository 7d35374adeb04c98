r"""Elementwise criteria comparing a target ``a`` with a prediction ``b``.

- SquareError: :math:`\tfrac12 \|a-b\|_F^2`; partials :math:`g(a-b)` and :math:`-g(a-b)`.
- CrossEntropyWithSoftmax: :math:`-\langle a, \log\sigma(b)\rangle`; partials
  :math:`-g\log\sigma(b)` and :math:`g(\sigma(b)-a)`.
- CrossEntropy: :math:`-\langle a, \log b\rangle`; partials :math:`-g\log b`
  and :math:`-g\,a/b`.

:math:`\sigma` is the column-wise softmax and :math:`g` the node's own
gradient. Padding columns are zeroed before every reduction.
"""

import torch

from ..node import ComputationNode, InputValue, LearnableParameter
from ..validation import validate_not_empty, validate_same_shape

__all__ = ["SquareErrorNode", "CrossEntropyWithSoftmaxNode", "CrossEntropyNode"]


class _PairwiseCriterion(ComputationNode):
    """Two same-shaped inputs reduced to a scalar."""

    input_roles = ("label", "prediction")

    def _infer_parameter_shapes(self) -> None:
        # a parameter declared with a zero dimension takes it from its peer
        for index in (0, 1):
            node = self.inputs(index)
            if not isinstance(node, LearnableParameter):
                continue
            rows, cols = node.function_value.shape
            if rows == 0 or cols == 0:
                peer = self.input_value(1 - index)
                node.resize(rows or peer.shape[0], cols or peer.shape[1])

    def validate(self) -> None:
        super().validate()
        self._infer_parameter_shapes()
        a, b = self.input_value(0), self.input_value(1)
        validate_not_empty(self.operation_name, **{self.input_roles[0]: a, self.input_roles[1]: b})
        validate_same_shape(self.operation_name, a, b, names=self.input_roles)
        self._resize_scalar_output()


class SquareErrorNode(_PairwiseCriterion):
    """Half the squared Frobenius distance between two matrices."""

    operation_name = "SquareError"
    input_roles = ("left", "right")
    temporaries = ("_left_minus_right",)

    def validate(self) -> None:
        super().validate()
        self._left_minus_right = self._zeros(*self.input_value(0).shape)

    def evaluate(self) -> None:
        self._begin_forward()
        self._left_minus_right = self.input_value(0) - self.input_value(1)
        self.mask_missing_columns(self._left_minus_right)
        norm = torch.linalg.matrix_norm(self._left_minus_right)
        self._set_scalar(norm * norm / 2)

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        scale = self.seed if input_index == 0 else -self.seed
        self.input_gradient(input_index).add_(scale * self._left_minus_right)


class CrossEntropyWithSoftmaxNode(_PairwiseCriterion):
    r"""Computes :math:`-\sum_i a_i \log \mathrm{softmax}_i(b)` per column, summed.

    Input 0 must be a label source (:class:`~torch_criterion.node.InputValue`).
    """

    operation_name = "CrossEntropyWithSoftmax"
    temporaries = ("_log_softmax_of_right", "_softmax_of_right")

    def validate(self) -> None:
        super().validate()
        self._require_input_type(0, InputValue, "label")
        shape = self.input_value(0).shape
        self._log_softmax_of_right = self._zeros(*shape)
        self._softmax_of_right = self._zeros(*shape)

    def evaluate(self) -> None:
        self._begin_forward()
        self._log_softmax_of_right = torch.log_softmax(self.input_value(1), dim=0)
        self._softmax_of_right = self._log_softmax_of_right.exp()
        self.mask_missing_columns(self._log_softmax_of_right)
        self._set_scalar(-(self.input_value(0) * self._log_softmax_of_right).sum())

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index == 0:
            self.input_gradient(0).add_(-self.seed * self._log_softmax_of_right)
        else:
            local = self._softmax_of_right - self.input_value(0)
            self.mask_missing_columns(local)
            self.input_gradient(1).add_(self.seed * local)


class CrossEntropyNode(_PairwiseCriterion):
    r"""Computes :math:`-\sum a \log b` where ``b`` is already a distribution."""

    operation_name = "CrossEntropy"
    temporaries = ("_log_of_right", "_left_div_right")

    def validate(self) -> None:
        super().validate()
        shape = self.input_value(1).shape
        self._log_of_right = self._zeros(*shape)
        self._left_div_right = self._zeros(*shape)

    def evaluate(self) -> None:
        self._begin_forward()
        self._log_of_right = torch.log(self.input_value(1))
        self.mask_missing_columns(self._log_of_right)
        self._set_scalar(-(self.input_value(0) * self._log_of_right).sum())

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index == 0:
            self.input_gradient(0).add_(-self.seed * self._log_of_right)
            return
        self._left_div_right = self.input_value(0) / self.input_value(1)
        self.mask_missing_columns(self._left_div_right)
        self.input_gradient(1).add_(-self.seed * self._left_div_right)
