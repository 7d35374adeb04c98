"""Minibatch-production boundary between a data reader and the graph.

A reader exposes the static set of inputs it can produce and, given an
:class:`EpochConfiguration`, starts an :class:`Epoch` whose only operation
yields the next :class:`Minibatch`. Each minibatch maps an input id to an
:class:`Input`: the raw tensor, its size in bytes and a :class:`Layout`
whose ``columns`` part is the :class:`~torch_criterion.layout.MinibatchLayout`
criterion nodes mask with.

:class:`InMemoryReader` serves column blocks of tensors already in memory;
parsing, randomization and file formats are left to real readers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import torch
from torch import Tensor

from .layout import MinibatchLayout

__all__ = [
    "EpochConfiguration",
    "InputDescription",
    "Layout",
    "Input",
    "Minibatch",
    "Epoch",
    "Reader",
    "InMemoryReader",
]


@dataclass(frozen=True)
class EpochConfiguration:
    worker_rank: int
    number_of_workers: int
    minibatch_size: int
    total_size: int
    number_of_sequences: int
    index: int

    def __post_init__(self):
        if self.number_of_workers <= 0:
            raise ValueError(f"number_of_workers must be positive, got {self.number_of_workers}")
        if not 0 <= self.worker_rank < self.number_of_workers:
            raise ValueError(
                f"worker_rank must be in [0, {self.number_of_workers}), got {self.worker_rank}"
            )
        if self.minibatch_size <= 0:
            raise ValueError(f"minibatch_size must be positive, got {self.minibatch_size}")


@dataclass
class InputDescription:
    name: str
    id: int
    target_layout_type: str = "dense"
    properties: dict = field(default_factory=dict)


@dataclass
class Layout:
    """Column layout (time x streams) and per-sample row shape of an input."""

    columns: Optional[MinibatchLayout]
    rows: tuple = ()


@dataclass
class Input:
    data: Tensor
    data_size: int
    layout: Layout


@dataclass
class Minibatch:
    at_end_of_epoch: bool
    inputs: dict = field(default_factory=dict)

    def __bool__(self) -> bool:
        return not self.at_end_of_epoch


class Epoch(ABC):
    @abstractmethod
    def read_minibatch(self) -> Minibatch:
        raise NotImplementedError


class Reader(ABC):
    @abstractmethod
    def get_inputs(self) -> list:
        """Descriptions of every input this reader can produce."""
        raise NotImplementedError

    @abstractmethod
    def start_next_epoch(self, config: EpochConfiguration) -> Epoch:
        raise NotImplementedError


class _InMemoryEpoch(Epoch):
    def __init__(self, reader: "InMemoryReader", config: EpochConfiguration):
        self._reader = reader
        self._config = config
        total = reader.num_columns
        if config.total_size > 0:
            total = min(total, config.total_size)
        # contiguous shard per worker
        shard = -(-total // config.number_of_workers)
        self._position = config.worker_rank * shard
        self._end = min(total, self._position + shard)

    def read_minibatch(self) -> Minibatch:
        if self._position >= self._end:
            return Minibatch(at_end_of_epoch=True)
        stop = min(self._end, self._position + self._config.minibatch_size)
        num_cols = stop - self._position
        columns = MinibatchLayout(1, num_cols)
        inputs = {}
        for description in self._reader.get_inputs():
            data = self._reader.data[description.name][:, self._position : stop].clone()
            inputs[description.id] = Input(
                data=data,
                data_size=data.numel() * data.element_size(),
                layout=Layout(columns=columns, rows=(data.shape[0],)),
            )
        self._position = stop
        return Minibatch(at_end_of_epoch=False, inputs=inputs)


class InMemoryReader(Reader):
    """Serve consecutive column blocks of named 2D tensors as single-stream minibatches.

    Args:
        data (Mapping[str, Tensor]): input name -> ``(rows, columns)`` tensor.
            All tensors must share the column count.
        order (Sequence[str], optional): input names in id order. Default:
            the mapping's iteration order.

    Examples::

        >>> reader = InMemoryReader({"features": torch.randn(3, 10), "labels": torch.eye(10)[:3]})
        >>> epoch = reader.start_next_epoch(EpochConfiguration(0, 1, 4, 0, 0, 0))
        >>> mb = epoch.read_minibatch()
        >>> mb.inputs[0].data.shape
        torch.Size([3, 4])
    """

    def __init__(self, data: Mapping[str, Tensor], order: Optional[Sequence[str]] = None):
        if not data:
            raise ValueError("InMemoryReader needs at least one input")
        self.data = {name: torch.as_tensor(value) for name, value in data.items()}
        for name, value in self.data.items():
            if value.dim() != 2:
                raise ValueError(f"input {name!r} must be 2D (rows, columns), got {value.dim()}D")
        cols = {value.shape[1] for value in self.data.values()}
        if len(cols) != 1:
            raise ValueError(f"inputs must share the column count, got {sorted(cols)}")
        self.num_columns = cols.pop()
        names = list(order) if order is not None else list(self.data)
        unknown = [n for n in names if n not in self.data]
        if unknown:
            raise ValueError(f"order names unknown inputs {unknown}")
        self._descriptions = [InputDescription(name=n, id=i) for i, n in enumerate(names)]

    def get_inputs(self) -> list:
        return list(self._descriptions)

    def start_next_epoch(self, config: EpochConfiguration) -> Epoch:
        return _InMemoryEpoch(self, config)
