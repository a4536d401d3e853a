# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Matrix Regularizers
# ════════════════════════════════════════════════════════════════════════════════
# MatrixL1Reg: sum |x|
# MatrixL2Reg: ||x||_F
#
# The mask is applied to a scratch copy of the input; the input's own value
# is never modified.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from typing import Optional

import torch
from torch import Tensor

from training_criteria.core.types import EPS_IN_INVERSE, CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode, Device
from training_criteria.tensor.layout import (
    MinibatchLayout,
    mask_to_zero_when_label_and_feature_missing,
)
from training_criteria.tensor.ops import (
    add_with_scale_of,
    assign_sign_of,
    frobenius_norm,
    matrix_norm1,
)


class _MatrixRegularizerNode(CriterionNode):
    SCRATCH_TENSORS = ("masked_input",)
    NUM_INPUTS = 1
    GRADIENT_INPUTS = (0,)

    def attach_inputs(self, input_node: ComputationNode) -> None:
        self.inputs = [input_node]

    def _validate_inputs(self) -> None:
        self._require_non_empty(0)
        shape = self.inputs[0].value.shape
        for attr in self.SCRATCH_TENSORS:
            setattr(self, attr, self._empty(*shape))

    @staticmethod
    def masked_copy(
        masked_input: Tensor,
        input_value: Tensor,
        layout: Optional[MinibatchLayout],
    ) -> Tensor:
        masked_input.copy_(input_value)
        mask_to_zero_when_label_and_feature_missing(layout, masked_input)
        return masked_input


class MatrixL1RegNode(_MatrixRegularizerNode):
    """L1 norm of the single input: sum of absolute values."""

    OPERATION_NAME = CriterionType.MATRIX_L1_REG.value
    SCRATCH_TENSORS = ("masked_input", "gradient_of_l1_norm")

    def _evaluate(self) -> float:
        masked = self.masked_copy(self.masked_input, self.inputs[0].value, self.layout)
        return matrix_norm1(masked).item()

    def _compute_gradient(self, input_index: int) -> None:
        assign_sign_of(self.gradient_of_l1_norm, self.masked_input)
        add_with_scale_of(self.upstream, self.gradient_of_l1_norm, self.inputs[0].gradient)


class MatrixL2RegNode(_MatrixRegularizerNode):
    """Frobenius norm of the single input."""

    OPERATION_NAME = CriterionType.MATRIX_L2_REG.value

    def __init__(
        self,
        name: str,
        device: Device = "cpu",
        dtype: torch.dtype = torch.float32,
        nan_check: bool = False,
        dump_output: bool = False,
        epsilon: float = EPS_IN_INVERSE,
    ):
        super().__init__(name, device=device, dtype=dtype, nan_check=nan_check, dump_output=dump_output)
        self.epsilon = epsilon

    def _copy_extra_state(self, target: "MatrixL2RegNode") -> None:
        target.epsilon = self.epsilon

    def _evaluate(self) -> float:
        masked = self.masked_copy(self.masked_input, self.inputs[0].value, self.layout)
        return frobenius_norm(masked).item()

    def _compute_gradient(self, input_index: int) -> None:
        norm = self.value.reshape(-1)[0].item()
        scale = self.upstream / (norm + self.epsilon)
        add_with_scale_of(scale, self.masked_input, self.inputs[0].gradient)


__all__ = [
    "MatrixL1RegNode",
    "MatrixL2RegNode",
]
