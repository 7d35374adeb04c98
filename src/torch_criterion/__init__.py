"""
torch-criterion: Training-Criterion Nodes for Computation Graphs

This package provides the loss layer of a computation-graph trainer: nodes
that reduce a minibatch of predictions and targets to a scalar objective
and push hand-derived gradients back into their inputs.

Key Features:
- Elementwise criteria (squared error, cross entropy with and without softmax)
- L1 and L2 matrix regularizers
- Noise-contrastive estimation with persisted evaluation mode
- Class-factored (two-level) softmax for large vocabularies
- Linear-chain CRF forward-backward in the log semiring
- Pass-through criterion for externally computed objectives
- Minibatch layouts whose padding never reaches a loss or gradient
"""

from .config import CriterionConfig, get_default_config, set_default_config
from .criteria import (
    ClassBasedCrossEntropyWithSoftmaxNode,
    CRFNode,
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
    DummyCriterionNode,
    MatrixL1RegNode,
    MatrixL2RegNode,
    NCEEvalMode,
    NoiseContrastiveEstimationNode,
    SquareErrorNode,
    crf_backward,
    crf_forward,
)
from .errors import (
    ArityMismatch,
    CriterionError,
    DeviceResidencyViolation,
    InvalidInputIndex,
    InvalidInputType,
    InvalidState,
    ShapeMismatch,
    StructuralLabelError,
    UnsupportedGradient,
)
from .layout import MinibatchLayout, MinibatchPackingFlags
from .network import ComputationNetwork
from .node import ComputationNode, CopyNodeFlags, InputValue, LearnableParameter
from .reader import EpochConfiguration, InMemoryReader, Minibatch, Reader
from .semirings import LogSemiring

__version__ = "0.1.0"

__all__ = [
    # Graph
    "ComputationNetwork",
    "ComputationNode",
    "InputValue",
    "LearnableParameter",
    "CopyNodeFlags",
    # Criteria
    "SquareErrorNode",
    "CrossEntropyWithSoftmaxNode",
    "CrossEntropyNode",
    "MatrixL1RegNode",
    "MatrixL2RegNode",
    "NCEEvalMode",
    "NoiseContrastiveEstimationNode",
    "ClassBasedCrossEntropyWithSoftmaxNode",
    "CRFNode",
    "crf_forward",
    "crf_backward",
    "DummyCriterionNode",
    # Layout
    "MinibatchLayout",
    "MinibatchPackingFlags",
    # Reader boundary
    "Reader",
    "EpochConfiguration",
    "Minibatch",
    "InMemoryReader",
    # Configuration
    "CriterionConfig",
    "get_default_config",
    "set_default_config",
    # Semiring
    "LogSemiring",
    # Errors
    "CriterionError",
    "ArityMismatch",
    "ShapeMismatch",
    "InvalidInputIndex",
    "InvalidInputType",
    "UnsupportedGradient",
    "DeviceResidencyViolation",
    "InvalidState",
    "StructuralLabelError",
]
