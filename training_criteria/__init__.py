# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Criterion Nodes for Dataflow-Graph Trainers
# ════════════════════════════════════════════════════════════════════════════════
# Loss nodes with explicit forward/backward passes: square error, cross
# entropy (plain, soft-max, class-based), L1/L2 regularizers, noise-contrastive
# estimation, linear-chain CRF and an external-gradient passthrough.
# Variable-length sequences share a batch through the MinibatchLayout mask.
# ════════════════════════════════════════════════════════════════════════════════

__version__ = "1.0.0"

# Core types, errors and configuration
from training_criteria.core import (
    CriterionConfig,
    CriterionType,
    NCEEvalMode,
    CopyNodeFlags,
    DeviceType,
    Precision,
    CriterionError,
    ShapeError,
    StructuralPreconditionError,
    InvalidGradientTargetError,
    NumericAnomalyError,
    LabelError,
    EvalModeError,
    DevicePlacementError,
    SerializationError,
    ConfigurationError,
    load_criterion_config,
    load_criterion_config_from_dict,
)

# Sequence mask
from training_criteria.tensor import (
    MinibatchLayout,
    MinibatchPackingFlags,
)

# Nodes
from training_criteria.nodes import (
    ComputationNode,
    InputValueNode,
    LearnableParameterNode,
    CriterionNode,
    SquareErrorNode,
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
    MatrixL1RegNode,
    MatrixL2RegNode,
    NoiseContrastiveEstimationNode,
    ClassBasedCrossEntropyWithSoftmaxNode,
    SequenceCRFNode,
    DummyCriterionNode,
    create_criterion,
)

__all__ = [
    "__version__",
    # Core
    "CriterionConfig",
    "CriterionType",
    "NCEEvalMode",
    "CopyNodeFlags",
    "DeviceType",
    "Precision",
    "CriterionError",
    "ShapeError",
    "StructuralPreconditionError",
    "InvalidGradientTargetError",
    "NumericAnomalyError",
    "LabelError",
    "EvalModeError",
    "DevicePlacementError",
    "SerializationError",
    "ConfigurationError",
    "load_criterion_config",
    "load_criterion_config_from_dict",
    # Mask
    "MinibatchLayout",
    "MinibatchPackingFlags",
    # Nodes
    "ComputationNode",
    "InputValueNode",
    "LearnableParameterNode",
    "CriterionNode",
    "SquareErrorNode",
    "CrossEntropyNode",
    "CrossEntropyWithSoftmaxNode",
    "MatrixL1RegNode",
    "MatrixL2RegNode",
    "NoiseContrastiveEstimationNode",
    "ClassBasedCrossEntropyWithSoftmaxNode",
    "SequenceCRFNode",
    "DummyCriterionNode",
    "create_criterion",
]
