r"""The differentiable node contract shared by every criterion.

A node owns a function value and a gradient accumulator, both 2D tensors,
and refers to its inputs by integer handle into the owning
:class:`~torch_criterion.network.ComputationNetwork`. It never owns another
node. The scheduler drives four operations:

- :meth:`ComputationNode.attach_inputs`: bind the fixed arity of named roles
- :meth:`ComputationNode.validate`: shape inference and structural checks
- :meth:`ComputationNode.evaluate`: forward pass into ``function_value``
- :meth:`ComputationNode.compute_input_partial`: *add* the chain-rule
  contribution for one input into that input's ``gradient_value``

Gradient accumulators are the one resource several nodes write into during a
backward pass, so partials always accumulate and never overwrite.
"""

from enum import IntFlag
from typing import BinaryIO, Optional, Union

import torch
from torch import Tensor

from .config import CriterionConfig, get_default_config
from .errors import ArityMismatch, InvalidInputIndex, InvalidInputType, ShapeMismatch
from .layout import MinibatchLayout, MinibatchPackingFlags
from .validation import check_nan

__all__ = [
    "CopyNodeFlags",
    "ComputationNode",
    "InputValue",
    "LearnableParameter",
]


class CopyNodeFlags(IntFlag):
    COPY_NODE_NULL = 0
    COPY_VALUE = 1
    COPY_CHILDREN = 2
    COPY_ALL = COPY_VALUE | COPY_CHILDREN


class ComputationNode:
    """Base class for graph nodes.

    Subclasses declare ``operation_name``, the ``input_roles`` they accept and
    the attribute names of their private ``temporaries``; the base class uses
    the latter for device moves and value copies. Non-tensor temporaries
    (generation stamps, span lists) are copied by reference.

    Args:
        name (str): node name, unique within its network.
        device (str or torch.device, optional): placement of values and
            temporaries. Default: ``"cpu"``
        dtype (torch.dtype, optional): element type. Default: ``torch.float32``
        config (CriterionConfig, optional): runtime switches. Default: the
            process-wide default config.
    """

    operation_name = "ComputationNode"
    input_roles: tuple = ()
    temporaries: tuple = ()
    needs_gradient = True

    def __init__(
        self,
        name: str,
        device: Union[str, torch.device, None] = None,
        dtype: torch.dtype = torch.float32,
        config: Optional[CriterionConfig] = None,
    ):
        self.name = name
        self.device = torch.device(device if device is not None else "cpu")
        self.dtype = dtype
        self.config = config if config is not None else get_default_config()
        self.function_value = self._zeros(0, 0)
        self.gradient_value = self._zeros(0, 0)
        self.layout: Optional[MinibatchLayout] = None
        self.network = None
        self.handle: Optional[int] = None
        self._inputs: list = []
        # bumped by every forward pass; lazily built backward caches key on it
        self._generation = 0

    def _zeros(self, rows: int, cols: int) -> Tensor:
        return torch.zeros(rows, cols, device=self.device, dtype=self.dtype)

    @property
    def arity(self) -> int:
        return len(self.input_roles)

    @property
    def input_handles(self) -> tuple:
        return tuple(self._inputs)

    def inputs(self, index: int) -> "ComputationNode":
        """Return the node bound to input ``index``."""
        if self.network is None:
            raise RuntimeError(f"{self.name}: node is not part of a network")
        return self.network.node(self._inputs[index])

    def input_value(self, index: int) -> Tensor:
        return self.inputs(index).function_value

    def input_gradient(self, index: int) -> Tensor:
        return self.inputs(index).gradient_value

    def attach_inputs(self, *inputs) -> None:
        """Bind inputs, given as handles or as nodes of the same network.

        Raises:
            ArityMismatch: If the count differs from ``len(input_roles)``.
        """
        if len(inputs) != self.arity:
            raise ArityMismatch(
                f"{self.operation_name} takes {self.arity} inputs "
                f"({', '.join(self.input_roles)}), got {len(inputs)}"
            )
        handles = []
        for item in inputs:
            if isinstance(item, ComputationNode):
                if item.network is None or item.network is not self.network:
                    raise ValueError(
                        f"{self.name}: input {item.name!r} belongs to a different network"
                    )
                handles.append(item.handle)
            else:
                handles.append(int(item))
        self._inputs = handles

    # ------------------------------------------------------------------
    # scheduler-facing operations
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check structure and resize the output. Subclasses extend this."""
        if len(self._inputs) != self.arity:
            raise ArityMismatch(
                f"{self.operation_name} requires {self.arity} inputs, "
                f"{len(self._inputs)} attached"
            )

    def evaluate(self) -> None:
        raise NotImplementedError

    def compute_input_partial(self, input_index: int) -> None:
        raise NotImplementedError

    def _check_input_index(self, input_index: int) -> None:
        if not 0 <= input_index < self.arity:
            raise InvalidInputIndex(
                f"{self.operation_name} has {self.arity} inputs, got input index {input_index}"
            )

    def _require_input_type(self, index: int, node_type: type, role: str) -> None:
        node = self.inputs(index)
        if node.operation_name != node_type.operation_name:
            raise InvalidInputType(
                f"{self.operation_name} requires input {index} ({role}) to be "
                f"{node_type.operation_name}, got {node.operation_name}"
            )

    def _resize_scalar_output(self) -> None:
        if tuple(self.function_value.shape) != (1, 1):
            self.function_value = self._zeros(1, 1)
            self.gradient_value = self._zeros(1, 1)

    def _begin_forward(self) -> None:
        self._generation += 1

    def _set_scalar(self, value: Tensor) -> None:
        """Store a reduced loss and run the optional NaN diagnostic."""
        self.function_value = value.reshape(1, 1).to(device=self.device, dtype=self.dtype)
        if self.config.nan_check:
            check_nan(self.operation_name, self.function_value)

    @property
    def seed(self) -> Tensor:
        """This node's own gradient, the chain-rule factor for its inputs."""
        return self.gradient_value.reshape(-1)[0]

    def zero_gradient(self) -> None:
        self.gradient_value = torch.zeros_like(self.function_value)

    # ------------------------------------------------------------------
    # masking
    # ------------------------------------------------------------------

    def column_mask(self, num_cols: int, device=None) -> Optional[Tensor]:
        """Padding mask over ``num_cols`` columns, or ``None`` if nothing is padded."""
        if self.layout is None or self.layout.is_all_none():
            return None
        mask = self.layout.column_mask(MinibatchPackingFlags.NO_INPUT, device=device)
        if mask.numel() != num_cols:
            raise ShapeMismatch(
                f"{self.operation_name}: layout describes {mask.numel()} columns, "
                f"tensor has {num_cols}"
            )
        if not mask.any():
            return None
        return mask

    def mask_missing_columns(self, matrix: Tensor) -> bool:
        """Zero, in place, every column at a NO_LABEL/NO_FEATURE position.

        Returns:
            bool: True if at least one column was zeroed.
        """
        mask = self.column_mask(matrix.shape[1], device=matrix.device)
        if mask is None:
            return False
        matrix[:, mask] = 0
        return True

    def num_parallel_sequences(self) -> int:
        return self.layout.num_parallel_sequences if self.layout is not None else 1

    # ------------------------------------------------------------------
    # placement, copying, persistence
    # ------------------------------------------------------------------

    def move_to_device(self, device: Union[str, torch.device]) -> None:
        """Relocate value, gradient and temporaries to ``device``."""
        self.device = torch.device(device)
        self.function_value = self.function_value.to(self.device)
        self.gradient_value = self.gradient_value.to(self.device)
        for attr in self.temporaries:
            value = getattr(self, attr)
            if isinstance(value, Tensor):
                setattr(self, attr, value.to(self.device))

    def copy_to(self, other: "ComputationNode", flags: CopyNodeFlags = CopyNodeFlags.COPY_ALL):
        """Copy this node's state into ``other`` (same type)."""
        if type(other) is not type(self):
            raise TypeError(
                f"cannot copy {type(self).__name__} into {type(other).__name__}"
            )
        other.layout = self.layout
        if flags & CopyNodeFlags.COPY_CHILDREN:
            other._inputs = list(self._inputs)
        if flags & CopyNodeFlags.COPY_VALUE:
            other.function_value = self.function_value.clone()
            other.gradient_value = self.gradient_value.clone()
            other._generation = self._generation
            for attr in self.temporaries:
                value = getattr(self, attr)
                setattr(other, attr, value.clone() if isinstance(value, Tensor) else value)

    def save_to_file(self, stream: BinaryIO) -> None:
        """Persist node-specific state. Nodes without such state write nothing."""

    def load_from_file(self, stream: BinaryIO, model_version: int = 1) -> None:
        """Restore what :meth:`save_to_file` wrote."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, inputs={self._inputs})"


class InputValue(ComputationNode):
    """Leaf node fed from outside the graph (features, labels, objectives).

    Its gradient is never requested: it is a constant of the minibatch.
    """

    operation_name = "InputValue"
    needs_gradient = False

    def __init__(self, name: str, rows: int = 0, cols: int = 0, **kwargs):
        super().__init__(name, **kwargs)
        self.function_value = self._zeros(rows, cols)
        self.gradient_value = self._zeros(rows, cols)

    def set_value(self, value: Tensor) -> None:
        if value.dim() == 1:
            value = value.unsqueeze(0)
        if value.dim() != 2:
            raise ShapeMismatch(f"{self.name}: values must be 2D, got {value.dim()}D")
        self.function_value = value.to(device=self.device, dtype=self.dtype).clone()
        self.gradient_value = torch.zeros_like(self.function_value)

    def resize(self, rows: int, cols: int) -> None:
        """Zero-pad or truncate to (rows, cols), keeping the overlapping block."""
        resized = self._zeros(rows, cols)
        r = min(rows, self.function_value.shape[0])
        c = min(cols, self.function_value.shape[1])
        resized[:r, :c] = self.function_value[:r, :c]
        self.function_value = resized
        self.gradient_value = torch.zeros_like(resized)

    def evaluate(self) -> None:
        pass

    def compute_input_partial(self, input_index: int) -> None:
        self._check_input_index(input_index)


class LearnableParameter(InputValue):
    """Leaf node holding trainable weights; receives gradients."""

    operation_name = "LearnableParameter"
    needs_gradient = True
