# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Node Registry
# ════════════════════════════════════════════════════════════════════════════════
# Operation name -> node class, and the factory building a criterion from an
# operation name or a CriterionConfig.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from typing import Dict, Optional, Sequence, Type, Union

from training_criteria.core.config import load_criterion_config_from_dict
from training_criteria.core.errors import ConfigurationError
from training_criteria.core.types import CriterionConfig, CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.nodes.class_based import ClassBasedCrossEntropyWithSoftmaxNode
from training_criteria.nodes.crf import SequenceCRFNode
from training_criteria.nodes.cross_entropy import CrossEntropyNode, CrossEntropyWithSoftmaxNode
from training_criteria.nodes.dummy import DummyCriterionNode
from training_criteria.nodes.nce import NoiseContrastiveEstimationNode
from training_criteria.nodes.regularizers import MatrixL1RegNode, MatrixL2RegNode
from training_criteria.nodes.square_error import SquareErrorNode

# ═════════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════════

CRITERION_REGISTRY: Dict[str, Type[CriterionNode]] = {}


def register_criterion(node_cls: Type[CriterionNode]) -> Type[CriterionNode]:
    """Register a node class under its operation name."""
    name = node_cls.OPERATION_NAME
    if name in CRITERION_REGISTRY and CRITERION_REGISTRY[name] is not node_cls:
        raise ValueError(f"Operation {name} already registered to {CRITERION_REGISTRY[name].__name__}")
    CRITERION_REGISTRY[name] = node_cls
    return node_cls


for _node_cls in (
    SquareErrorNode,
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
    MatrixL1RegNode,
    MatrixL2RegNode,
    NoiseContrastiveEstimationNode,
    ClassBasedCrossEntropyWithSoftmaxNode,
    SequenceCRFNode,
    DummyCriterionNode,
):
    register_criterion(_node_cls)


def get_criterion_class(operation_name: Union[str, CriterionType]) -> Type[CriterionNode]:
    key = operation_name.value if isinstance(operation_name, CriterionType) else operation_name
    if key not in CRITERION_REGISTRY:
        raise ConfigurationError(
            message=f"Unknown criterion operation: {key}",
            field_path="criterion_type",
            expected=", ".join(sorted(CRITERION_REGISTRY)),
            got=str(key),
        )
    return CRITERION_REGISTRY[key]


# ═════════════════════════════════════════════════════════════════════════════════
# Factory Function
# ═════════════════════════════════════════════════════════════════════════════════

def create_criterion(
    criterion: Union[str, CriterionType, CriterionConfig],
    name: str,
    inputs: Optional[Sequence[ComputationNode]] = None,
) -> CriterionNode:
    """
    Create a criterion node.

    Args:
        criterion: Operation name, CriterionType, or a full CriterionConfig
        name: Node name
        inputs: Optional input nodes, bound with set_inputs()

    Returns:
        Configured, not yet validated criterion node

    Example:
        ```python
        config = load_criterion_config("criterion.yaml")
        node = create_criterion(config, "loss", inputs=[labels, logits])
        node.validate()
        ```
    """
    if isinstance(criterion, CriterionConfig):
        config = criterion
    else:
        config = load_criterion_config_from_dict({"criterion_type": criterion}, interpolate_env=False)
    criterion_type = config.criterion_type
    kwargs = dict(
        device=config.device.resolve(),
        dtype=config.precision.torch_dtype,
        nan_check=config.nan_check,
        dump_output=config.dump_output,
    )

    if criterion_type == CriterionType.NOISE_CONTRASTIVE_ESTIMATION:
        node = NoiseContrastiveEstimationNode(name, eval_mode=config.nce_eval_mode, **kwargs)
    elif criterion_type == CriterionType.MATRIX_L2_REG:
        node = MatrixL2RegNode(name, epsilon=config.l2_epsilon, **kwargs)
    else:
        node = get_criterion_class(criterion_type)(name, **kwargs)

    if inputs is not None:
        node.set_inputs(inputs)
    return node


# ═════════════════════════════════════════════════════════════════════════════════
# Export
# ═════════════════════════════════════════════════════════════════════════════════

__all__ = [
    "CRITERION_REGISTRY",
    "register_criterion",
    "get_criterion_class",
    "create_criterion",
]
