# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Core Types
# ════════════════════════════════════════════════════════════════════════════════
# Enumerations, numeric constants and pydantic configuration models shared by
# every criterion node.
#
# Design Principles:
# - Immutable configurations via frozen Pydantic models
# - Enum values double as persisted/operation-name values
# - Element type is a runtime choice, never baked into node code
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Final

import torch
from pydantic import BaseModel, ConfigDict, Field

# ─────────────────────────────────────────────────────────────────────────────────
# Constants - Log-Space Arithmetic
# ─────────────────────────────────────────────────────────────────────────────────

LZERO: Final[float] = -10e10                     # log(0) stand-in
LSMALL: Final[float] = -0.5e10                   # below this a log value counts as zero
MINLOGEXP: Final[float] = -math.log(-LZERO)      # exp(x) underflows below this
EPS_IN_INVERSE: Final[float] = 1e-30             # guards 1/x at x == 0


# ═════════════════════════════════════════════════════════════════════════════════
# Section 1: Hardware & Precision
# ═════════════════════════════════════════════════════════════════════════════════

class DeviceType(str, enum.Enum):
    """
    Compute device for node tensors.

    AUTO resolves to CUDA when available, CPU otherwise.
    """
    CPU = "cpu"
    CUDA = "cuda"
    AUTO = "auto"

    def resolve(self) -> torch.device:
        if self is DeviceType.AUTO:
            return torch.device("cuda" if torch.cuda.is_available() else "cpu")
        return torch.device(self.value)


class Precision(str, enum.Enum):
    """
    Element type of node tensors.

    - FP32: single precision, the training default
    - FP64: double precision, used for gradient checks
    """
    FP32 = "fp32"
    FP64 = "fp64"

    @property
    def torch_dtype(self) -> torch.dtype:
        return torch.float32 if self is Precision.FP32 else torch.float64


# ═════════════════════════════════════════════════════════════════════════════════
# Section 2: Node Enumerations
# ═════════════════════════════════════════════════════════════════════════════════

class CriterionType(str, enum.Enum):
    """
    Criterion operation names.

    The values are the operation names nodes report and persist.
    """
    SQUARE_ERROR = "SquareError"
    CROSS_ENTROPY = "CrossEntropy"
    CROSS_ENTROPY_WITH_SOFTMAX = "CrossEntropyWithSoftmax"
    MATRIX_L1_REG = "MatrixL1Reg"
    MATRIX_L2_REG = "MatrixL2Reg"
    NOISE_CONTRASTIVE_ESTIMATION = "NCEBasedCrossEntropyWithSoftmax"
    CLASS_BASED_CROSS_ENTROPY_WITH_SOFTMAX = "ClassBasedCrossEntropyWithSoftmax"
    SEQUENCE_CRF = "CRF"
    DUMMY_CRITERION = "DummyCriterion"


class NCEEvalMode(int, enum.Enum):
    """
    Evaluation mode of the noise-contrastive estimation node.

    Persisted as a 4-byte integer; NONE selects the NCE training objective.
    """
    SOFTMAX = 0
    UNNORMALIZED = 1
    NONE = 2


class CopyNodeFlags(enum.IntFlag):
    """What copy_to() carries over to the target node."""
    COPY_NODE_NULL = 0
    COPY_NODE_VALUE = 1
    COPY_NODE_CHILDREN = 2
    COPY_NODE_ALL = COPY_NODE_VALUE | COPY_NODE_CHILDREN


class CacheState(enum.Enum):
    """
    State of a lazily recomputed backward-pass cache.

    STALE after every forward pass, VALID once recomputed, IN_PROGRESS
    while the recomputation runs.
    """
    STALE = "stale"
    VALID = "valid"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class ImageLayout:
    """Sample geometry of a node's value columns."""
    width: int = 1
    height: int = 1
    channels: int = 1


# ═════════════════════════════════════════════════════════════════════════════════
# Section 3: Configuration
# ═════════════════════════════════════════════════════════════════════════════════

class CriterionConfig(BaseModel):
    """
    Criterion node configuration.

    Example YAML:
    ```yaml
    criterion:
      criterion_type: NCEBasedCrossEntropyWithSoftmax
      nce_eval_mode: 2
      precision: fp32
      device: auto
      nan_check: false
    ```
    """
    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    criterion_type: CriterionType = Field(
        default=CriterionType.CROSS_ENTROPY_WITH_SOFTMAX,
        description="Criterion operation to build"
    )
    nce_eval_mode: NCEEvalMode = Field(
        default=NCEEvalMode.NONE,
        description="Initial NCE evaluation mode (NONE = NCE training objective)"
    )
    precision: Precision = Field(
        default=Precision.FP32,
        description="Element type of node tensors"
    )
    device: DeviceType = Field(
        default=DeviceType.CPU,
        description="Device node tensors are placed on"
    )
    nan_check: bool = Field(
        default=False,
        description="Raise NumericAnomalyError on non-finite outputs (debug)"
    )
    dump_output: bool = Field(
        default=False,
        description="Log intermediate tensors at DEBUG level"
    )
    l2_epsilon: float = Field(
        default=EPS_IN_INVERSE, gt=0.0,
        description="Denominator guard of the MatrixL2Reg gradient"
    )


# ═════════════════════════════════════════════════════════════════════════════════
# Export
# ═════════════════════════════════════════════════════════════════════════════════

__all__ = [
    # Constants
    "LZERO",
    "LSMALL",
    "MINLOGEXP",
    "EPS_IN_INVERSE",
    # Hardware
    "DeviceType",
    "Precision",
    # Nodes
    "CriterionType",
    "NCEEvalMode",
    "CopyNodeFlags",
    "CacheState",
    "ImageLayout",
    # Config
    "CriterionConfig",
]
