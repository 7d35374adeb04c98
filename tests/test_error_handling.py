"""
Tests for the error taxonomy.

Every error raised by the package is a CriterionError and also the builtin
exception a caller would catch for the same condition.
"""

import pytest
import torch

from torch_criterion import (
    ArityMismatch,
    CriterionError,
    CRFNode,
    DeviceResidencyViolation,
    InvalidInputIndex,
    InvalidInputType,
    InvalidState,
    ShapeMismatch,
    SquareErrorNode,
    StructuralLabelError,
    UnsupportedGradient,
)
from torch_criterion.validation import (
    validate_cols,
    validate_host_resident,
    validate_not_empty,
    validate_rows,
    validate_same_shape,
)


class TestTaxonomy:
    @pytest.mark.parametrize(
        "error, builtin",
        [
            (ArityMismatch, ValueError),
            (ShapeMismatch, ValueError),
            (InvalidInputIndex, IndexError),
            (InvalidInputType, ValueError),
            (UnsupportedGradient, ValueError),
            (DeviceResidencyViolation, RuntimeError),
            (InvalidState, RuntimeError),
            (StructuralLabelError, ValueError),
        ],
    )
    def test_hierarchy(self, error, builtin):
        assert issubclass(error, CriterionError)
        assert issubclass(error, builtin)

    def test_catchable_as_base(self, net):
        a = net.input("a", 1, 1)
        with pytest.raises(CriterionError):
            net.create(SquareErrorNode, "loss", a)


class TestValidationHelpers:
    def test_not_empty_names_the_input(self):
        with pytest.raises(ShapeMismatch, match="'label'"):
            validate_not_empty("Op", label=torch.zeros(0, 3), other=torch.ones(1, 1))

    def test_same_shape(self):
        validate_same_shape("Op", torch.zeros(2, 3), torch.ones(2, 3))
        with pytest.raises(ShapeMismatch, match=r"\(2, 3\)"):
            validate_same_shape("Op", torch.zeros(2, 3), torch.ones(3, 2))

    def test_rows_and_cols(self):
        validate_rows("Op", torch.zeros(4, 2), 4, "label")
        validate_cols("Op", torch.zeros(4, 2), 2, "label")
        with pytest.raises(ShapeMismatch, match="4 rows"):
            validate_rows("Op", torch.zeros(3, 2), 4, "label")
        with pytest.raises(ShapeMismatch, match="5 columns"):
            validate_cols("Op", torch.zeros(3, 2), 5, "label")

    def test_host_resident_accepts_cpu(self, cpu_device):
        validate_host_resident("Op", torch.zeros(1, device=cpu_device), "label")

    @pytest.mark.requires_cuda
    def test_host_resident_rejects_accelerator(self, skip_if_no_cuda):
        with pytest.raises(DeviceResidencyViolation, match="host memory"):
            validate_host_resident("Op", torch.zeros(1, device="cuda"), "label")

    @pytest.mark.requires_cuda
    def test_crf_label_on_accelerator(self, net, skip_if_no_cuda):
        label = net.input("label")
        net.set_value(label, torch.eye(3))
        em = net.parameter("emission", value=torch.randn(3, 3))
        tr = net.parameter("transition", value=torch.randn(3, 3))
        loss = net.create(CRFNode, "crf", label, em, tr)
        net.move_to_device("cuda")
        with pytest.raises(DeviceResidencyViolation):
            net.validate(loss)
