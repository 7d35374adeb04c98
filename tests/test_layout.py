"""Tests for MinibatchLayout and packing flags."""

import pytest
import torch

from torch_criterion import MinibatchLayout, MinibatchPackingFlags


class TestMinibatchLayout:
    def test_column_index_is_time_major(self):
        layout = MinibatchLayout(3, 4)
        assert layout.num_columns == 12
        assert layout.column_index(stream=0, time=0) == 0
        assert layout.column_index(stream=2, time=0) == 2
        assert layout.column_index(stream=1, time=3) == 10

    def test_fresh_layout_has_no_flags(self):
        layout = MinibatchLayout(2, 5)
        assert layout.is_all_none()
        assert not layout.column_mask().any()

    def test_from_lengths_flags_padding(self):
        layout = MinibatchLayout.from_lengths([3, 1], num_time_steps=3)
        expected = torch.tensor([False, False, False, True, False, True])
        assert torch.equal(layout.column_mask(), expected)
        assert layout.is_at(0, 0, MinibatchPackingFlags.SEQUENCE_START)
        assert layout.is_at(0, 2, MinibatchPackingFlags.SEQUENCE_END)
        assert layout.is_at(1, 0, MinibatchPackingFlags.SEQUENCE_END)
        assert layout.flags_at(1, 2) == MinibatchPackingFlags.NO_INPUT

    def test_from_lengths_defaults_to_longest(self):
        layout = MinibatchLayout.from_lengths([2, 5])
        assert layout.num_time_steps == 5

    def test_from_lengths_rejects_overlong(self):
        with pytest.raises(ValueError, match="length"):
            MinibatchLayout.from_lengths([4], num_time_steps=3)

    def test_no_label_alone_counts_as_padding(self):
        layout = MinibatchLayout(1, 3)
        layout.set(0, 1, MinibatchPackingFlags.NO_LABEL)
        assert torch.equal(layout.column_mask(), torch.tensor([False, True, False]))
        assert layout.is_(1, MinibatchPackingFlags.NO_FEATURE | MinibatchPackingFlags.NO_LABEL)
        assert not layout.is_(0, MinibatchPackingFlags.NO_INPUT)

    def test_sequence_boundaries_are_not_padding(self):
        layout = MinibatchLayout(1, 2)
        layout.set(0, 0, MinibatchPackingFlags.SEQUENCE_START)
        assert not layout.is_all_none()
        assert not layout.column_mask().any()

    def test_set_ors_and_reset_clears(self):
        layout = MinibatchLayout(1, 1)
        layout.set(0, 0, MinibatchPackingFlags.SEQUENCE_START)
        layout.set(0, 0, MinibatchPackingFlags.SEQUENCE_END)
        assert layout.flags_at(0, 0) == (
            MinibatchPackingFlags.SEQUENCE_START | MinibatchPackingFlags.SEQUENCE_END
        )
        layout.reset(0, 0)
        assert layout.is_all_none()

    def test_stream_mask(self):
        layout = MinibatchLayout.from_lengths([3, 1], num_time_steps=3)
        assert torch.equal(layout.stream_mask(1), torch.tensor([False, True, True]))
        assert not layout.stream_mask(0).any()

    def test_copy_and_equality(self):
        layout = MinibatchLayout.from_lengths([2, 1])
        other = layout.copy()
        assert other == layout
        other.set(0, 0, MinibatchPackingFlags.NO_FEATURE)
        assert other != layout

    def test_invalid_stream_count(self):
        with pytest.raises(ValueError):
            MinibatchLayout(0, 3)
