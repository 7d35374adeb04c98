"""Training-criterion nodes: scalar losses with hand-written gradients."""

from .class_based import ClassBasedCrossEntropyWithSoftmaxNode
from .crf import CRFNode, crf_backward, crf_forward, crf_path_score, crf_transition_expectations
from .dummy import DummyCriterionNode
from .elementwise import CrossEntropyNode, CrossEntropyWithSoftmaxNode, SquareErrorNode
from .nce import NCEEvalMode, NoiseContrastiveEstimationNode
from .regularizers import MatrixL1RegNode, MatrixL2RegNode

__all__ = [
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
    "crf_transition_expectations",
    "crf_path_score",
    "DummyCriterionNode",
]
