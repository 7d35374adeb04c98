r"""Minibatch layout: how parallel sequences are packed into buffer columns.

A minibatch holds :math:`T` time steps of :math:`S` parallel streams as
:math:`T \cdot S` columns. Column ``c`` is time ``c // S`` of stream
``c % S``, so the streams of one time step are adjacent. Every
(stream, time) position carries :class:`MinibatchPackingFlags`; positions
flagged ``NO_LABEL`` or ``NO_FEATURE`` are padding and must contribute
nothing to any loss or gradient.

Examples::

    >>> layout = MinibatchLayout.from_lengths([3, 2], num_time_steps=3)
    >>> layout.column_mask()
    tensor([False, False, False, False, False,  True])
"""

from enum import IntFlag
from typing import Optional, Sequence

import torch

__all__ = ["MinibatchPackingFlags", "MinibatchLayout"]


class MinibatchPackingFlags(IntFlag):
    NONE = 0
    SEQUENCE_START = 1
    SEQUENCE_END = 2
    NO_FEATURE = 4
    NO_LABEL = 8

    NO_INPUT = NO_FEATURE | NO_LABEL


class MinibatchLayout:
    """Per-position packing flags for ``num_parallel_sequences`` streams.

    Args:
        num_parallel_sequences (int): number of streams :math:`S`.
        num_time_steps (int): number of time steps :math:`T`.
    """

    def __init__(self, num_parallel_sequences: int, num_time_steps: int):
        if num_parallel_sequences <= 0:
            raise ValueError(
                f"num_parallel_sequences must be positive, got {num_parallel_sequences}"
            )
        if num_time_steps < 0:
            raise ValueError(f"num_time_steps must be non-negative, got {num_time_steps}")
        self.num_parallel_sequences = num_parallel_sequences
        self.num_time_steps = num_time_steps
        self._flags = torch.zeros(num_parallel_sequences, num_time_steps, dtype=torch.uint8)

    @classmethod
    def from_lengths(cls, lengths: Sequence[int], num_time_steps: Optional[int] = None):
        """Build a layout with one sequence per stream starting at time 0.

        Positions past a stream's length are flagged ``NO_INPUT``.
        """
        lengths = [int(n) for n in lengths]
        if num_time_steps is None:
            num_time_steps = max(lengths) if lengths else 0
        layout = cls(len(lengths), num_time_steps)
        for stream, length in enumerate(lengths):
            if length < 0 or length > num_time_steps:
                raise ValueError(
                    f"stream {stream} length must be in [0, {num_time_steps}], got {length}"
                )
            if length > 0:
                layout.set(stream, 0, MinibatchPackingFlags.SEQUENCE_START)
                layout.set(stream, length - 1, MinibatchPackingFlags.SEQUENCE_END)
            for t in range(length, num_time_steps):
                layout.set(stream, t, MinibatchPackingFlags.NO_INPUT)
        return layout

    @property
    def num_columns(self) -> int:
        return self.num_parallel_sequences * self.num_time_steps

    def column_index(self, stream: int, time: int) -> int:
        return time * self.num_parallel_sequences + stream

    def set(self, stream: int, time: int, flags: MinibatchPackingFlags) -> None:
        """OR ``flags`` into position (stream, time)."""
        self._flags[stream, time] |= int(flags)

    def reset(self, stream: int, time: int) -> None:
        self._flags[stream, time] = int(MinibatchPackingFlags.NONE)

    def flags_at(self, stream: int, time: int) -> MinibatchPackingFlags:
        return MinibatchPackingFlags(int(self._flags[stream, time]))

    def is_(self, time: int, flags: MinibatchPackingFlags) -> bool:
        """True if any stream at ``time`` carries any of ``flags``."""
        return bool((self._flags[:, time] & int(flags)).any())

    def is_at(self, stream: int, time: int, flags: MinibatchPackingFlags) -> bool:
        return bool(int(self._flags[stream, time]) & int(flags))

    def is_all_none(self) -> bool:
        return not bool(self._flags.any())

    def column_mask(
        self,
        flags: MinibatchPackingFlags = MinibatchPackingFlags.NO_INPUT,
        device=None,
    ) -> torch.Tensor:
        """Boolean mask over columns, True where the position carries ``flags``."""
        # (S, T) -> (T, S) so that flattening gives column t * S + s
        mask = (self._flags & int(flags)).bool().t().reshape(-1)
        if device is not None:
            mask = mask.to(device)
        return mask

    def stream_mask(
        self, stream: int, flags: MinibatchPackingFlags = MinibatchPackingFlags.NO_INPUT
    ) -> torch.Tensor:
        """Boolean mask over the time steps of one stream."""
        return (self._flags[stream] & int(flags)).bool()

    def copy(self) -> "MinibatchLayout":
        other = MinibatchLayout(self.num_parallel_sequences, self.num_time_steps)
        other._flags = self._flags.clone()
        return other

    def __eq__(self, other) -> bool:
        if not isinstance(other, MinibatchLayout):
            return NotImplemented
        return (
            self.num_parallel_sequences == other.num_parallel_sequences
            and self.num_time_steps == other.num_time_steps
            and torch.equal(self._flags, other._flags)
        )

    def __repr__(self) -> str:
        return (
            f"MinibatchLayout(num_parallel_sequences={self.num_parallel_sequences}, "
            f"num_time_steps={self.num_time_steps})"
        )
