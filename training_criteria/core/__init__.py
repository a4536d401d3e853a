# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Core Package
# ════════════════════════════════════════════════════════════════════════════════
# Core types, errors, configuration and stream helpers for criterion nodes.
# ════════════════════════════════════════════════════════════════════════════════

from training_criteria.core.types import (
    # Constants
    LZERO,
    LSMALL,
    MINLOGEXP,
    EPS_IN_INVERSE,
    # Hardware
    DeviceType,
    Precision,
    # Nodes
    CriterionType,
    NCEEvalMode,
    CopyNodeFlags,
    CacheState,
    ImageLayout,
    # Config
    CriterionConfig,
)

from training_criteria.core.errors import (
    # Base
    CriterionError,
    # Graph construction
    ShapeError,
    StructuralPreconditionError,
    # Evaluation
    InvalidGradientTargetError,
    NumericAnomalyError,
    LabelError,
    EvalModeError,
    DevicePlacementError,
    SerializationError,
    # Configuration
    ConfigurationError,
    YAMLParseError,
    SchemaValidationError,
)

from training_criteria.core.config import (
    load_criterion_config,
    load_criterion_config_from_dict,
    merge_configs,
    interpolate_env_vars,
)

__all__ = [
    # Constants
    "LZERO",
    "LSMALL",
    "MINLOGEXP",
    "EPS_IN_INVERSE",
    # Types
    "DeviceType",
    "Precision",
    "CriterionType",
    "NCEEvalMode",
    "CopyNodeFlags",
    "CacheState",
    "ImageLayout",
    "CriterionConfig",
    # Errors
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
    "YAMLParseError",
    "SchemaValidationError",
    # Config
    "load_criterion_config",
    "load_criterion_config_from_dict",
    "merge_configs",
    "interpolate_env_vars",
]
