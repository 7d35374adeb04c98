r"""Linear-chain conditional random field criterion.

For a sequence of length :math:`n` over :math:`L` labels with emission
scores :math:`E \in \mathbb{R}^{L \times n}` and transition scores
:math:`A \in \mathbb{R}^{L \times L}`, where :math:`A_{k,j}` scores moving
from label :math:`j` to label :math:`k`, the score of a label path
:math:`y` is

.. math::
    s(y) = \sum_t E_{y_t, t} + \sum_{t \ge 1} A_{y_t, y_{t-1}}

and the criterion is :math:`-(s(y^*) - \log Z)` summed over streams. The
forward recursion computes :math:`\alpha` in the log semiring,

.. math::
    \alpha_{k,0} = E_{k,0}, \qquad
    \alpha_{k,t} = \log\sum_j \exp(\alpha_{j,t-1} + A_{k,j}) + E_{k,t}

and the backward recursion computes log posteriors :math:`\beta` directly,
conditioning each step on the label that follows it,

.. math::
    \beta_{k,n-1} = \alpha_{k,n-1} - \log Z, \qquad
    \beta_{k,t} = \log\sum_j \exp(\alpha_{k,t} + A_{j,k} - \zeta_{j,t+1} + \beta_{j,t+1})

with :math:`\zeta_{j,t+1} = \log\sum_m \exp(\alpha_{m,t} + A_{j,m})`.

With ``anchor_start=True`` the first step is reached from the observed first
label: :math:`\alpha_{k,0} = E_{k,0} + A_{k,y_0}`. That start transition
enters :math:`\log Z` only, the path score stays as above.

Each of the :math:`S` parallel streams of a minibatch owns a contiguous
block of :math:`N/S` columns and may end with trailing padding.
"""

from typing import Optional

import torch
from torch import Tensor

from ..errors import InvalidState, ShapeMismatch, StructuralLabelError, UnsupportedGradient
from ..node import ComputationNode, CopyNodeFlags, InputValue
from ..semirings import LogSemiring
from ..validation import validate_host_resident, validate_not_empty

__all__ = [
    "CRFNode",
    "crf_forward",
    "crf_backward",
    "crf_transition_expectations",
    "crf_path_score",
]


def crf_forward(emission: Tensor, transition: Tensor, first_label: Optional[int] = None) -> Tensor:
    r"""crf_forward(emission, transition, first_label=None) -> Tensor

    Log forward scores :math:`\alpha` of one sequence.

    Args:
        emission (Tensor): :math:`(L, n)` emission scores.
        transition (Tensor): :math:`(L, L)` scores, ``transition[k, j]`` for ``j -> k``.
        first_label (int, optional): anchor the first step on this label's
            self-transition. Default: ``None``

    Returns:
        Tensor: :math:`(L, n)`; ``logsumexp(alpha[:, -1])`` is :math:`\log Z`.
    """
    num_labels, num_steps = emission.shape
    alpha = emission.new_empty(num_labels, num_steps)
    alpha[:, 0] = emission[:, 0]
    if first_label is not None:
        alpha[:, 0] += transition[:, first_label]
    for t in range(1, num_steps):
        alpha[:, t] = LogSemiring.matmul(transition, alpha[:, t - 1 : t]).squeeze(-1) + emission[:, t]
    return alpha


def crf_backward(alpha: Tensor, transition: Tensor) -> Tensor:
    r"""crf_backward(alpha, transition) -> Tensor

    Log posterior marginals :math:`\beta` from the forward scores.

    Returns:
        Tensor: :math:`(L, n)`; ``beta.exp()`` sums to one in every column.
    """
    num_labels, num_steps = alpha.shape
    beta = alpha.new_empty(num_labels, num_steps)
    beta[:, -1] = alpha[:, -1] - LogSemiring.sum(alpha[:, -1], dim=0)
    for t in range(num_steps - 2, -1, -1):
        zeta = LogSemiring.matmul(transition, alpha[:, t : t + 1]).squeeze(-1)
        # rows index the next label j, columns the current label k
        scores = transition + alpha[:, t].unsqueeze(0) + (beta[:, t + 1] - zeta).unsqueeze(1)
        beta[:, t] = LogSemiring.sum(scores, dim=0)
    return beta


def crf_transition_expectations(
    alpha: Tensor, beta: Tensor, transition: Tensor, first_label: Optional[int] = None
) -> Tensor:
    r"""crf_transition_expectations(alpha, beta, transition, first_label=None) -> Tensor

    Expected transition counts :math:`\partial \log Z / \partial A` of one sequence.

    Returns:
        Tensor: :math:`(L, L)`, entry ``[k, j]`` is the expected number of ``j -> k`` steps.
    """
    counts = torch.zeros_like(transition)
    for t in range(1, alpha.shape[1]):
        zeta = LogSemiring.matmul(transition, alpha[:, t - 1 : t]).squeeze(-1)
        counts += (
            transition + alpha[:, t - 1].unsqueeze(0) + (beta[:, t] - zeta).unsqueeze(1)
        ).exp()
    if first_label is not None:
        counts[:, first_label] += beta[:, 0].exp()
    return counts


def crf_path_score(emission: Tensor, transition: Tensor, labels: Tensor) -> Tensor:
    """Unnormalised score of the label path ``labels`` (length ``n`` long tensor)."""
    steps = torch.arange(labels.shape[0], device=emission.device)
    return emission[labels, steps].sum() + transition[labels[1:], labels[:-1]].sum()


class CRFNode(ComputationNode):
    """Sequence-level CRF criterion over one-hot labels.

    Args:
        name (str): node name.
        anchor_start (bool, optional): start the forward recursion from the
            observed first label.
            Default: ``False``

    Inputs: ``label`` (L x N one-hot, host resident), ``emission`` (L x N),
    ``transition`` (L x L).
    """

    operation_name = "CRF"
    input_roles = ("label", "emission", "transition")
    temporaries = ("_alpha", "_beta", "_post_prob", "_streams", "_evaluated_generation")

    def __init__(self, name: str, anchor_start: bool = False, **kwargs):
        super().__init__(name, **kwargs)
        self.anchor_start = anchor_start
        self._alpha = self._zeros(0, 0)
        self._beta = self._zeros(0, 0)
        self._post_prob = self._zeros(0, 0)
        # (first column, valid length, label ids) per non-empty stream
        self._streams: list = []
        # generation of the latest forward pass that ran to completion
        self._evaluated_generation = -1

    def validate(self) -> None:
        super().validate()
        self._require_input_type(0, InputValue, "label")
        label, emission, transition = self.input_value(0), self.input_value(1), self.input_value(2)
        validate_not_empty(
            self.operation_name, label=label, emission=emission, transition=transition
        )
        validate_host_resident(self.operation_name, label, "label")
        if tuple(label.shape) != tuple(emission.shape):
            raise ShapeMismatch(
                f"{self.operation_name}: label {tuple(label.shape)} and emission "
                f"{tuple(emission.shape)} must have the same shape"
            )
        num_labels = emission.shape[0]
        if tuple(transition.shape) != (num_labels, num_labels):
            raise ShapeMismatch(
                f"{self.operation_name}: transition must be ({num_labels}, {num_labels}), got "
                f"{tuple(transition.shape)}"
            )
        self._resize_scalar_output()
        self._alpha = self._zeros(*emission.shape)
        self._beta = self._zeros(*emission.shape)
        self._post_prob = self._zeros(*emission.shape)

    def copy_to(self, other, flags: CopyNodeFlags = CopyNodeFlags.COPY_ALL):
        super().copy_to(other, flags)
        other.anchor_start = self.anchor_start

    def _stream_bounds(self, num_cols: int) -> list:
        """(first column, valid length) of each stream's contiguous block.

        Stream ``s`` owns columns ``[s * n, (s + 1) * n)``; its padding is read
        from the layout flags of that stream, time step by time step.
        """
        num_streams = self.num_parallel_sequences()
        if num_cols % num_streams:
            raise ShapeMismatch(
                f"{self.operation_name}: {num_cols} columns do not split into "
                f"{num_streams} streams"
            )
        num_steps = num_cols // num_streams
        has_padding = self.layout is not None and not self.layout.is_all_none()
        if has_padding and self.layout.num_time_steps != num_steps:
            raise ShapeMismatch(
                f"{self.operation_name}: layout has {self.layout.num_time_steps} time steps, "
                f"streams have {num_steps} columns"
            )
        bounds = []
        for s in range(num_streams):
            start = s * num_steps
            if not has_padding:
                bounds.append((start, num_steps))
                continue
            padded = self.layout.stream_mask(s)
            length = int((~padded).sum())
            if padded[:length].any():
                raise ShapeMismatch(
                    f"{self.operation_name}: stream {s} has padding before its last valid step; "
                    f"only trailing padding is supported"
                )
            bounds.append((start, length))
        return bounds

    def evaluate(self) -> None:
        self._begin_forward()
        label = self.input_value(0)
        validate_host_resident(self.operation_name, label, "label")
        emission, transition = self.input_value(1), self.input_value(2)

        present = (label != 0).any(dim=0)
        # index of the first nonzero row per column
        label_ids = (label != 0).to(label.dtype).argmax(dim=0)

        self._alpha = torch.full_like(emission, self.config.log_zero)
        self._beta = torch.full_like(emission, self.config.log_zero)
        self._post_prob = torch.zeros_like(emission)
        self._streams = []
        total = emission.new_zeros(())
        for start, length in self._stream_bounds(label.shape[1]):
            if length == 0:
                continue
            cols = slice(start, start + length)
            if not bool(present[cols].all()):
                raise StructuralLabelError(
                    f"{self.operation_name}: a valid column in [{start}, {start + length}) has "
                    f"no label"
                )
            labels = label_ids[cols].to(emission.device)
            first = int(labels[0]) if self.anchor_start else None
            alpha = crf_forward(emission[:, cols], transition, first)
            beta = crf_backward(alpha, transition)
            self._alpha[:, cols] = alpha
            self._beta[:, cols] = beta
            self._post_prob[:, cols] = beta.exp()
            path = crf_path_score(emission[:, cols], transition, labels)
            total = total + path - LogSemiring.sum(alpha[:, -1], dim=0)
            self._streams.append((start, length, labels))
        self._set_scalar(-total)
        self._evaluated_generation = self._generation

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index == 0:
            raise UnsupportedGradient(f"{self.operation_name}: no gradient with respect to the label")
        if self._evaluated_generation != self._generation:
            raise InvalidState(
                f"{self.operation_name}: backward requested without a completed forward pass; "
                f"run evaluate() first"
            )
        grad = self.input_gradient(input_index)

        if input_index == 1:
            label = self.input_value(0).to(device=grad.device, dtype=grad.dtype)
            local = torch.zeros_like(grad)
            for start, length, _ in self._streams:
                cols = slice(start, start + length)
                local[:, cols] = self._post_prob[:, cols] - label[:, cols]
            grad.add_(self.seed * local)
            return

        transition = self.input_value(2)
        for start, length, labels in self._streams:
            cols = slice(start, start + length)
            first = int(labels[0]) if self.anchor_start else None
            expected = crf_transition_expectations(
                self._alpha[:, cols], self._beta[:, cols], transition, first
            )
            observed = torch.zeros_like(transition)
            observed.index_put_(
                (labels[1:], labels[:-1]),
                torch.ones(length - 1, dtype=transition.dtype, device=transition.device),
                accumulate=True,
            )
            grad.add_(self.seed * (expected - observed))

    def posterior(self) -> Tensor:
        """Per-column label posteriors of the latest forward pass."""
        return self._post_prob
