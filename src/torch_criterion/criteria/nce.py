r"""Noise-contrastive estimation for large-vocabulary output layers.

Inputs are a label descriptor, hidden activations ``h`` of shape
:math:`(H, T)`, an output weight matrix ``W`` of shape :math:`(H, V)` and a
bias with :math:`V` elements. The score of word ``w`` at column ``t`` is
:math:`s = W_{:,w}^\top h_{:,t} + b_w`.

Three evaluation modes are persisted with the node:

- ``SOFTMAX``: exact normalized cross entropy over the whole vocabulary.
  The label is one row of word ids.
- ``UNNORMALIZED``: :math:`-\sum_t s_t` without a partition function. The
  label is one row of negated word ids.
- ``NONE``: the NCE training objective. The label has :math:`2n` rows: row
  :math:`2k` is the word of sample :math:`k` (sample 0 is the observed
  word, the others are noise draws) and row :math:`2k+1` is
  :math:`\log q(w)` under the noise distribution. With
  :math:`\tilde s = \log(n-1) + \log q(w)` and
  :math:`z = \log(e^s + e^{\tilde s})`, the observed sample contributes
  :math:`s - z` and every noise sample :math:`\tilde s - z`.

Gradients exist only in ``NONE`` mode and only for hidden, weight and bias.
"""

import io
import math
import struct
import warnings
from enum import IntEnum
from typing import BinaryIO

import torch
from torch import Tensor

from ..errors import InvalidState, ShapeMismatch, StructuralLabelError, UnsupportedGradient
from ..node import ComputationNode, CopyNodeFlags, InputValue
from ..validation import validate_not_empty

__all__ = ["NCEEvalMode", "NoiseContrastiveEstimationNode"]


class NCEEvalMode(IntEnum):
    SOFTMAX = 0
    UNNORMALIZED = 1
    NONE = 2


class NoiseContrastiveEstimationNode(ComputationNode):
    """NCE criterion with a persisted evaluation mode.

    Args:
        name (str): node name.
        eval_mode (NCEEvalMode, optional): Default: ``NCEEvalMode.NONE`` (training).
    """

    operation_name = "NCEBasedCrossEntropyWithSoftmax"
    input_roles = ("label", "hidden", "weight", "bias")
    temporaries = ("_log_softmax", "_nce_prediction", "_nce_words", "_last_forward")

    _MODE_FIELD = struct.Struct("<i")

    def __init__(self, name: str, eval_mode: NCEEvalMode = NCEEvalMode.NONE, **kwargs):
        super().__init__(name, **kwargs)
        self._eval_mode = NCEEvalMode(eval_mode)
        self._log_softmax = self._zeros(0, 0)
        self._nce_prediction = self._zeros(0, 0)
        self._nce_words = torch.zeros(0, 0, dtype=torch.long, device=self.device)
        # (mode, generation) of the latest forward pass
        self._last_forward = None

    @property
    def eval_mode(self) -> NCEEvalMode:
        return self._eval_mode

    @eval_mode.setter
    def eval_mode(self, mode: NCEEvalMode) -> None:
        self._eval_mode = NCEEvalMode(mode)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def save_to_file(self, stream: BinaryIO) -> None:
        super().save_to_file(stream)
        stream.write(self._MODE_FIELD.pack(int(self._eval_mode)))

    def load_from_file(self, stream: BinaryIO, model_version: int = 1) -> None:
        """Read the evaluation mode.

        Models written before the mode was persisted have some other field
        here. An out-of-range value therefore means "no mode stored": the
        mode falls back to ``NONE`` and the stream is rewound so the next
        reader sees that field.
        """
        super().load_from_file(stream, model_version)
        raw = stream.read(self._MODE_FIELD.size)
        if len(raw) != self._MODE_FIELD.size:
            raise EOFError(f"{self.name}: stream ended while reading the NCE evaluation mode")
        (value,) = self._MODE_FIELD.unpack(raw)
        if value in NCEEvalMode._value2member_map_:
            self._eval_mode = NCEEvalMode(value)
        else:
            self._eval_mode = NCEEvalMode.NONE
            stream.seek(-self._MODE_FIELD.size, io.SEEK_CUR)

    def copy_to(self, other, flags: CopyNodeFlags = CopyNodeFlags.COPY_ALL):
        super().copy_to(other, flags)
        other._eval_mode = self._eval_mode

    # ------------------------------------------------------------------
    # graph operations
    # ------------------------------------------------------------------

    def validate(self) -> None:
        super().validate()
        self._require_input_type(0, InputValue, "label")
        label, hidden = self.input_value(0), self.input_value(1)
        weight, bias = self.input_value(2), self.input_value(3)
        validate_not_empty(self.operation_name, label=label, hidden=hidden, weight=weight, bias=bias)
        if hidden.shape[0] != weight.shape[0]:
            raise ShapeMismatch(
                f"{self.operation_name}: hidden has {hidden.shape[0]} rows but weight has "
                f"{weight.shape[0]}"
            )
        if label.shape[1] != hidden.shape[1]:
            raise ShapeMismatch(
                f"{self.operation_name}: label has {label.shape[1]} columns but hidden has "
                f"{hidden.shape[1]}"
            )
        if bias.numel() != weight.shape[1]:
            raise ShapeMismatch(
                f"{self.operation_name}: bias has {bias.numel()} elements, expected "
                f"vocabulary size {weight.shape[1]}"
            )
        if label.shape[0] != 1 and label.shape[0] % 2 != 0:
            raise ShapeMismatch(
                f"{self.operation_name}: label needs 1 row (evaluation) or an even number of "
                f"rows (word, log noise probability pairs), got {label.shape[0]}"
            )
        self._resize_scalar_output()

    def _effective_mode(self, label: Tensor) -> NCEEvalMode:
        if (
            self._eval_mode != NCEEvalMode.NONE
            or label.shape[0] != 1
            or not self.config.infer_nce_mode_from_labels
        ):
            return self._eval_mode
        positive = bool((label > 0).any())
        negative = bool((label < 0).any())
        if positive and negative:
            raise StructuralLabelError(
                f"{self.operation_name}: single-row label mixes positive and negative word ids"
            )
        if not (positive or negative):
            return self._eval_mode
        inferred = NCEEvalMode.SOFTMAX if positive else NCEEvalMode.UNNORMALIZED
        warnings.warn(
            f"{self.name}: evaluation mode is NONE but the label row is "
            f"{'positive' if positive else 'negative'}; evaluating as {inferred.name}. "
            f"Set eval_mode explicitly to silence this.",
            UserWarning,
            stacklevel=3,
        )
        return inferred

    def _word_ids(self, rows: Tensor, vocab_size: int) -> Tensor:
        words = rows.to(torch.long)
        if words.numel() and (words.min() < 0 or words.max() >= vocab_size):
            raise StructuralLabelError(
                f"{self.operation_name}: word ids must be in [0, {vocab_size}), got range "
                f"[{words.min().item()}, {words.max().item()}]"
            )
        return words

    def _scores(self, words: Tensor, hidden: Tensor, weight: Tensor, bias: Tensor) -> Tensor:
        """Scores of ``words`` (shape ``(..., T)``) against the matching hidden columns."""
        words = words.to(weight.device)
        emb = weight[:, words]  # (H, ..., T)
        return (emb * hidden.reshape(hidden.shape[0], *([1] * (words.dim() - 1)), -1)).sum(0) + (
            bias.reshape(-1)[words]
        )

    def evaluate(self) -> None:
        self._begin_forward()
        label = self.input_value(0)
        hidden, weight, bias = self.input_value(1), self.input_value(2), self.input_value(3)
        vocab_size = weight.shape[1]
        # padded columns may hold stale ids; read them as word 0 and drop them below
        mask = self.column_mask(label.shape[1], device=label.device)
        if mask is not None:
            label = label.masked_fill(mask, 0)
        mode = self._effective_mode(label)

        if mode == NCEEvalMode.SOFTMAX:
            logits = hidden.t() @ weight + bias.reshape(1, -1)
            self._log_softmax = torch.log_softmax(logits, dim=1)
            words = self._word_ids(label[0], vocab_size).to(logits.device)
            per_column = self._log_softmax.gather(1, words.unsqueeze(1)).squeeze(1)
        elif mode == NCEEvalMode.UNNORMALIZED:
            words = self._word_ids(-label[0], vocab_size)
            per_column = self._scores(words, hidden, weight, bias)
        else:
            per_column = self._noise_contrastive_estimation(label, hidden, weight, bias)

        if mask is not None:
            mask = mask.to(per_column.device)
            per_column = per_column.masked_fill(mask, 0)
            if mode == NCEEvalMode.NONE:
                self._nce_prediction[:, mask] = 0
        self._set_scalar(-per_column.sum())
        self._last_forward = (mode, self._generation)

    def _noise_contrastive_estimation(self, label, hidden, weight, bias) -> Tensor:
        num_samples = label.shape[0] // 2
        if num_samples < 2:
            raise ShapeMismatch(
                f"{self.operation_name}: training needs the observed word and at least one "
                f"noise sample (4 label rows), got {label.shape[0]} rows"
            )
        words = self._word_ids(label[0::2], weight.shape[1])  # (n, T)
        log_noise = label[1::2].to(device=hidden.device, dtype=hidden.dtype)

        scores = self._scores(words, hidden, weight, bias)
        noise_scores = math.log(num_samples - 1) + log_noise
        z = torch.logaddexp(scores, noise_scores)
        log_prob = scores - z
        log_prob_noise = noise_scores - z

        observed = torch.zeros_like(scores)
        observed[0] = 1
        self._nce_prediction = observed - log_prob.exp()
        self._nce_words = words
        return log_prob[0] + log_prob_noise[1:].sum(0)

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)
        if input_index == 0:
            raise UnsupportedGradient(f"{self.operation_name}: no gradient with respect to the label")
        if self._eval_mode != NCEEvalMode.NONE:
            raise InvalidState(
                f"{self.operation_name}: gradients are only defined in training mode "
                f"(eval mode NONE), node is in {self._eval_mode.name}"
            )
        if self._last_forward != (NCEEvalMode.NONE, self._generation):
            raise InvalidState(
                f"{self.operation_name}: the latest forward pass did not evaluate the NCE "
                f"objective; run evaluate() with training labels first"
            )

        hidden, weight = self.input_value(1), self.input_value(2)
        words = self._nce_words.to(weight.device)  # (n, T)
        d_scores = -self.seed * self._nce_prediction  # (n, T)
        grad = self.input_gradient(input_index)

        if input_index == 1:
            grad.add_((weight[:, words] * d_scores.unsqueeze(0)).sum(1))
        elif input_index == 2:
            contributions = hidden.unsqueeze(1) * d_scores.unsqueeze(0)  # (H, n, T)
            grad.index_add_(1, words.reshape(-1), contributions.reshape(hidden.shape[0], -1))
        else:
            grad.view(-1).index_add_(0, words.reshape(-1), d_scores.reshape(-1))
