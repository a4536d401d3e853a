# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Nodes Package
# ════════════════════════════════════════════════════════════════════════════════
# Computation node contract, leaf nodes and every criterion variant.
# ════════════════════════════════════════════════════════════════════════════════

from training_criteria.nodes.base import (
    ComputationNode,
    InputValueNode,
    LearnableParameterNode,
    CriterionNode,
)
from training_criteria.nodes.square_error import SquareErrorNode
from training_criteria.nodes.cross_entropy import (
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
)
from training_criteria.nodes.regularizers import MatrixL1RegNode, MatrixL2RegNode
from training_criteria.nodes.nce import NoiseContrastiveEstimationNode
from training_criteria.nodes.class_based import ClassBasedCrossEntropyWithSoftmaxNode
from training_criteria.nodes.crf import SequenceCRFNode
from training_criteria.nodes.dummy import DummyCriterionNode
from training_criteria.nodes.registry import (
    CRITERION_REGISTRY,
    register_criterion,
    get_criterion_class,
    create_criterion,
)

__all__ = [
    # Base
    "ComputationNode",
    "InputValueNode",
    "LearnableParameterNode",
    "CriterionNode",
    # Criteria
    "SquareErrorNode",
    "CrossEntropyNode",
    "CrossEntropyWithSoftmaxNode",
    "MatrixL1RegNode",
    "MatrixL2RegNode",
    "NoiseContrastiveEstimationNode",
    "ClassBasedCrossEntropyWithSoftmaxNode",
    "SequenceCRFNode",
    "DummyCriterionNode",
    # Registry
    "CRITERION_REGISTRY",
    "register_criterion",
    "get_criterion_class",
    "create_criterion",
]
