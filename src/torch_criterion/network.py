r"""Arena that owns nodes and addresses them by stable integer handles.

Edges between nodes are handles, never ownership, so diamonds are legal and
no node can keep another alive. The network also carries a minimal
reference scheduler: :meth:`ComputationNetwork.forward` evaluates a root's
ancestors in topological order and :meth:`ComputationNetwork.backward`
seeds the root gradient with one and calls
:meth:`~torch_criterion.node.ComputationNode.compute_input_partial` in
reverse order for every input that takes a gradient.

Examples::

    >>> net = ComputationNetwork(dtype=torch.float64)
    >>> label = net.input("label", 3, 4)
    >>> pred = net.parameter("pred", 3, 4)
    >>> loss = net.create(SquareErrorNode, "loss", label, pred)
    >>> net.validate(loss)
    >>> value = net.forward(loss)
    >>> net.backward(loss)
    >>> net[pred].gradient_value.shape
    torch.Size([3, 4])
"""

import logging
from typing import Iterator, Mapping, Optional, Union

import torch
from torch import Tensor

from .config import CriterionConfig
from .layout import MinibatchLayout
from .node import ComputationNode, InputValue, LearnableParameter

__all__ = ["ComputationNetwork"]

logger = logging.getLogger(__name__)


class ComputationNetwork:
    """Owner of all nodes of one graph.

    Args:
        device (str or torch.device, optional): default placement for nodes
            created through this network. Default: ``"cpu"``
        dtype (torch.dtype, optional): default element type. Default:
            ``torch.float32``
        config (CriterionConfig, optional): passed to every node created here.
    """

    def __init__(
        self,
        device: Union[str, torch.device, None] = None,
        dtype: torch.dtype = torch.float32,
        config: Optional[CriterionConfig] = None,
    ):
        self.device = torch.device(device if device is not None else "cpu")
        self.dtype = dtype
        self.config = config
        self.layout: Optional[MinibatchLayout] = None
        self._nodes: list = []
        self._names: dict = {}

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def add(self, node: ComputationNode) -> int:
        """Take ownership of ``node`` and return its handle."""
        if node.name in self._names:
            raise ValueError(f"duplicate node name {node.name!r}")
        if node.network is not None:
            raise ValueError(f"node {node.name!r} already belongs to a network")
        node.network = self
        node.handle = len(self._nodes)
        node.layout = self.layout
        self._nodes.append(node)
        self._names[node.name] = node.handle
        return node.handle

    def create(self, node_cls, name: str, *inputs, device=None, **kwargs) -> int:
        """Construct a node of ``node_cls``, add it and attach ``inputs``."""
        kwargs.setdefault("dtype", self.dtype)
        if self.config is not None:
            kwargs.setdefault("config", self.config)
        node = node_cls(name, device=device if device is not None else self.device, **kwargs)
        handle = self.add(node)
        if inputs or node.arity == 0:
            node.attach_inputs(*inputs)
        return handle

    def input(self, name: str, rows: int = 0, cols: int = 0, device=None) -> int:
        """Add an :class:`InputValue` leaf (features, labels, fed objectives)."""
        return self.create(InputValue, name, rows=rows, cols=cols, device=device)

    def parameter(
        self, name: str, rows: int = 0, cols: int = 0, value: Optional[Tensor] = None, device=None
    ) -> int:
        """Add a :class:`LearnableParameter` leaf, optionally initialised to ``value``."""
        handle = self.create(LearnableParameter, name, rows=rows, cols=cols, device=device)
        if value is not None:
            self._nodes[handle].set_value(value)
        return handle

    # ------------------------------------------------------------------
    # access
    # ------------------------------------------------------------------

    def node(self, handle: Union[int, str]) -> ComputationNode:
        if isinstance(handle, str):
            handle = self._names[handle]
        return self._nodes[handle]

    __getitem__ = node

    def handle_of(self, name: str) -> int:
        return self._names[name]

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ComputationNode]:
        return iter(self._nodes)

    def set_value(self, handle: Union[int, str], value: Tensor) -> None:
        node = self.node(handle)
        if not isinstance(node, InputValue):
            raise TypeError(f"{node.name!r} is a {node.operation_name}, not a leaf node")
        node.set_value(value)

    def set_layout(self, layout: Optional[MinibatchLayout]) -> None:
        """Install the minibatch layout shared by every node."""
        self.layout = layout
        for node in self._nodes:
            node.layout = layout

    def move_to_device(self, device: Union[str, torch.device], skip=()) -> None:
        """Move every node except the handles in ``skip`` (e.g. host-only labels)."""
        skip = {self.node(h).handle for h in skip}
        for node in self._nodes:
            if node.handle not in skip:
                node.move_to_device(device)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def topological_order(self, root: Union[int, str]) -> list:
        """Handles of ``root`` and its ancestors, inputs before consumers."""
        root = self.node(root).handle
        order = []
        state = {}  # handle -> 1 visiting, 2 done
        stack = [(root, False)]
        while stack:
            handle, expanded = stack.pop()
            if expanded:
                state[handle] = 2
                order.append(handle)
                continue
            if state.get(handle) == 2:
                continue
            if state.get(handle) == 1:
                raise ValueError(f"cycle detected at node {self._nodes[handle].name!r}")
            state[handle] = 1
            stack.append((handle, True))
            for child in reversed(self._nodes[handle].input_handles):
                if state.get(child) == 1:
                    raise ValueError(f"cycle detected at node {self._nodes[child].name!r}")
                if state.get(child) != 2:
                    stack.append((child, False))
        return order

    def validate(self, root: Union[int, str]) -> None:
        for handle in self.topological_order(root):
            node = self._nodes[handle]
            logger.debug("validate %s (%s)", node.name, node.operation_name)
            node.validate()

    def forward(self, root: Union[int, str]) -> Tensor:
        """Evaluate ``root`` and its ancestors; return the root's function value."""
        for handle in self.topological_order(root):
            node = self._nodes[handle]
            logger.debug("evaluate %s (%s)", node.name, node.operation_name)
            node.evaluate()
        return self.node(root).function_value

    def backward(self, root: Union[int, str], seed: float = 1.0) -> None:
        """Clear gradients, seed ``root`` and propagate in reverse order."""
        order = self.topological_order(root)
        for handle in order:
            self._nodes[handle].zero_gradient()
        root_node = self.node(root)
        root_node.gradient_value.fill_(seed)
        for handle in reversed(order):
            node = self._nodes[handle]
            for index, child in enumerate(node.input_handles):
                if self._nodes[child].needs_gradient:
                    logger.debug("partial %s -> input %d (%s)", node.name, index, self._nodes[child].name)
                    node.compute_input_partial(index)

    def feed(self, minibatch, bindings: Mapping[int, Union[int, str]]) -> None:
        """Copy reader inputs into leaf nodes and install the minibatch layout.

        Args:
            minibatch (Minibatch): produced by an
                :class:`~torch_criterion.reader.Epoch`.
            bindings: reader input id -> node handle or name.
        """
        layout = None
        for input_id, target in bindings.items():
            item = minibatch.inputs[input_id]
            self.set_value(target, item.data)
            if item.layout is not None and item.layout.columns is not None:
                layout = item.layout.columns
        self.set_layout(layout)
