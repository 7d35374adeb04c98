"""Criterion whose objective and derivatives are computed outside the graph.

An external process (a sequence trainer, a lattice rescorer) feeds the
objective as a 1x1 input and the derivatives with respect to the prediction
as a second input. The node reports the objective on the forward pass and
injects the derivatives into the prediction's gradient on the backward pass.
"""

from ..errors import ShapeMismatch, UnsupportedGradient
from ..node import ComputationNode, InputValue
from ..validation import validate_not_empty, validate_rows

__all__ = ["DummyCriterionNode"]


class DummyCriterionNode(ComputationNode):
    operation_name = "DummyCriterion"
    input_roles = ("objective", "derivative", "prediction")

    def validate(self) -> None:
        super().validate()
        self._require_input_type(0, InputValue, "objective")
        self._require_input_type(1, InputValue, "derivative")
        objective, derivative, prediction = (self.input_value(i) for i in range(3))
        validate_rows(self.operation_name, objective, 1, "objective")
        validate_not_empty(
            self.operation_name, objective=objective, derivative=derivative, prediction=prediction
        )
        if derivative.shape[0] != prediction.shape[0]:
            raise ShapeMismatch(
                f"{self.operation_name}: derivative has {derivative.shape[0]} rows, prediction "
                f"has {prediction.shape[0]}"
            )
        if derivative.shape[1] != prediction.shape[1]:
            self.inputs(1).resize(derivative.shape[0], prediction.shape[1])
        self._resize_scalar_output()

    def evaluate(self) -> None:
        self._begin_forward()
        objective = self.input_value(0)
        if tuple(objective.shape) != (1, 1):
            raise ShapeMismatch(
                f"{self.operation_name}: objective must be 1x1, got {tuple(objective.shape)}"
            )
        self._set_scalar(objective[0, 0])

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index != 2:
            raise UnsupportedGradient(
                f"{self.operation_name}: input {input_index} "
                f"({self.input_roles[input_index]}) is fed externally and takes no gradient"
            )
        local = self.input_value(1).clone()
        self.mask_missing_columns(local)
        self.input_gradient(2).add_(self.seed * local)
