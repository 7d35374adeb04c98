r"""Two-level (class, then word) softmax cross entropy.

The vocabulary is partitioned into contiguous class ranges. The label input
has four rows per column: the word id :math:`y`, its class :math:`c` and the
half-open word range :math:`[l, r)` of that class. The criterion is

.. math::
    -\sum_t \left[ \log \mathrm{softmax}(h_t^\top W_{:,l:r})_{y-l}
    + \log \mathrm{softmax}(u_t)_c \right]

where ``h`` are the hidden activations, ``W`` the output weights and ``u``
the class scores. Only the :math:`r-l` words of the observed class are
normalised, so the cost per column is the class size instead of the
vocabulary size.

A column whose range is empty and whose word id is 0 carries no target and
is skipped. Padding columns are skipped before their labels are read.
"""

import torch
from torch import Tensor

from ..errors import ShapeMismatch, StructuralLabelError, UnsupportedGradient
from ..node import ComputationNode, InputValue
from ..validation import validate_cols, validate_host_resident, validate_not_empty, validate_rows

__all__ = ["ClassBasedCrossEntropyWithSoftmaxNode"]


class ClassBasedCrossEntropyWithSoftmaxNode(ComputationNode):
    """Class-factored softmax criterion.

    Inputs: ``label`` (4 x T, host resident), ``hidden`` (H x T),
    ``weight`` (H x V), ``class_scores`` (C x T).
    """

    operation_name = "ClassBasedCrossEntropyWithSoftmax"
    input_roles = ("label", "hidden", "weight", "class_scores")
    temporaries = (
        "_log_softmax",
        "_softmax",
        "_class_log_softmax",
        "_class_softmax",
        "_grad_to_softmax_input",
        "_spans",
        "_grad_generation",
    )

    def __init__(self, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self._log_softmax = self._zeros(0, 0).reshape(0)
        self._softmax = self._zeros(0, 0).reshape(0)
        self._class_log_softmax = self._zeros(0, 0)
        self._class_softmax = self._zeros(0, 0)
        self._grad_to_softmax_input = self._zeros(0, 0).reshape(0)
        # (column, word offset in class, class, left, width, buffer offset)
        self._spans: list = []
        self._grad_generation = -1

    def validate(self) -> None:
        super().validate()
        self._require_input_type(0, InputValue, "label")
        label, hidden = self.input_value(0), self.input_value(1)
        weight, class_scores = self.input_value(2), self.input_value(3)
        validate_not_empty(
            self.operation_name, label=label, hidden=hidden, weight=weight, class_scores=class_scores
        )
        validate_host_resident(self.operation_name, label, "label")
        validate_rows(self.operation_name, label, 4, "label (word, class, left, right)")
        if hidden.shape[0] != weight.shape[0]:
            raise ShapeMismatch(
                f"{self.operation_name}: hidden has {hidden.shape[0]} rows but weight has "
                f"{weight.shape[0]}"
            )
        validate_cols(self.operation_name, hidden, label.shape[1], "hidden")
        validate_cols(self.operation_name, class_scores, label.shape[1], "class_scores")
        self._resize_scalar_output()

    def _check_column(self, t: int, word: int, cls: int, left: int, right: int) -> None:
        num_words = self.input_value(2).shape[1]
        num_classes = self.input_value(3).shape[0]
        if not 0 <= left <= right <= num_words:
            raise StructuralLabelError(
                f"{self.operation_name}: column {t} has class range [{left}, {right}) outside "
                f"the vocabulary of {num_words} words"
            )
        if not left <= word < right:
            raise StructuralLabelError(
                f"{self.operation_name}: column {t} word {word} is outside its class range "
                f"[{left}, {right})"
            )
        if not 0 <= cls < num_classes:
            raise StructuralLabelError(
                f"{self.operation_name}: column {t} class {cls} is outside [0, {num_classes})"
            )

    def evaluate(self) -> None:
        self._begin_forward()
        label = self.input_value(0)
        validate_host_resident(self.operation_name, label, "label")
        hidden, weight, class_scores = self.input_value(1), self.input_value(2), self.input_value(3)

        self._class_log_softmax = torch.log_softmax(class_scores, dim=0)
        self._class_softmax = self._class_log_softmax.exp()

        mask = self.column_mask(label.shape[1])
        padded = mask.tolist() if mask is not None else [False] * label.shape[1]
        entries = label.to(torch.long).t().tolist()

        pieces = []
        spans = []
        offset = 0
        total = hidden.new_zeros(())
        for t, (word, cls, left, right) in enumerate(entries):
            if padded[t]:
                continue
            if right == left:
                if word == 0:
                    continue
                raise StructuralLabelError(
                    f"{self.operation_name}: column {t} has an empty class range but word id {word}"
                )
            self._check_column(t, word, cls, left, right)
            width = right - left
            log_probs = torch.log_softmax(hidden[:, t] @ weight[:, left:right], dim=0)
            total = total + log_probs[word - left] + self._class_log_softmax[cls, t]
            pieces.append(log_probs)
            spans.append((t, word - left, cls, left, width, offset))
            offset += width

        self._log_softmax = torch.cat(pieces) if pieces else hidden.new_zeros(0)
        self._softmax = self._log_softmax.exp()
        self._spans = spans
        self._set_scalar(-total)

    def _compute_softmax_partial(self) -> None:
        """Build ``seed * (softmax - onehot)`` for every active column, once per forward."""
        if self._grad_generation == self._generation:
            return
        grad = self._softmax.clone()
        if self._spans:
            targets = torch.tensor(
                [offset + index for _, index, _, _, _, offset in self._spans], device=grad.device
            )
            grad[targets] -= 1
        self._grad_to_softmax_input = self.seed * grad
        self._grad_generation = self._generation

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index == 0:
            raise UnsupportedGradient(f"{self.operation_name}: no gradient with respect to the label")
        if not self._spans:
            return
        grad = self.input_gradient(input_index)

        if input_index == 3:
            columns = torch.tensor([span[0] for span in self._spans], device=grad.device)
            classes = torch.tensor([span[2] for span in self._spans], device=grad.device)
            local = self._class_softmax[:, columns].clone()
            local[classes, torch.arange(len(self._spans), device=grad.device)] -= 1
            grad[:, columns] += self.seed * local
            return

        self._compute_softmax_partial()
        hidden, weight = self.input_value(1), self.input_value(2)
        for t, _, _, left, width, offset in self._spans:
            g = self._grad_to_softmax_input[offset : offset + width]
            if input_index == 1:
                grad[:, t].add_(weight[:, left : left + width] @ g)
            else:
                grad[:, left : left + width].add_(torch.outer(hidden[:, t], g))

    def log_probabilities(self) -> Tensor:
        """Per-column log-likelihoods of the latest forward pass, zero where skipped."""
        label = self.input_value(0)
        out = self._class_log_softmax.new_zeros(label.shape[1])
        for t, index, cls, _, _, offset in self._spans:
            out[t] = self._log_softmax[offset + index] + self._class_log_softmax[cls, t]
        return out
