# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Square Error
# ════════════════════════════════════════════════════════════════════════════════
# loss = ||x0 - x1||_F^2 / 2, padding columns excluded.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from typing import Optional

from torch import Tensor

from training_criteria.core.types import CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.tensor.layout import (
    MinibatchLayout,
    mask_to_zero_when_label_and_feature_missing,
)
from training_criteria.tensor.ops import add_with_scale_of, frobenius_norm


class SquareErrorNode(CriterionNode):
    """
    Half squared Frobenius distance between two equally shaped inputs.

    Example:
        >>> node = SquareErrorNode("mse")
        >>> node.attach_inputs(target, prediction)
        >>> node.validate()
        >>> loss = node.evaluate_forward()
    """

    OPERATION_NAME = CriterionType.SQUARE_ERROR.value
    SCRATCH_TENSORS = ("left_minus_right",)
    NUM_INPUTS = 2
    GRADIENT_INPUTS = (0, 1)

    def attach_inputs(self, left: ComputationNode, right: ComputationNode) -> None:
        self.inputs = [left, right]

    def _validate_inputs(self) -> None:
        self._infer_learnable_shape(0, 1)
        self._infer_learnable_shape(1, 0)
        self._require_non_empty(0, 1)
        self._require_same_shape(0, 1)
        self.left_minus_right = self._empty(*self.inputs[0].value.shape)

    def _evaluate(self) -> float:
        return self.compute_loss(
            self.left_minus_right,
            self.inputs[0].value,
            self.inputs[1].value,
            self.layout,
        )

    def _compute_gradient(self, input_index: int) -> None:
        sign = 1.0 if input_index == 0 else -1.0
        self.accumulate_partial(
            self.inputs[input_index].gradient,
            self.left_minus_right,
            sign * self.upstream,
        )

    @staticmethod
    def compute_loss(
        left_minus_right: Tensor,
        left: Tensor,
        right: Tensor,
        layout: Optional[MinibatchLayout],
    ) -> float:
        left_minus_right.copy_(left - right)
        mask_to_zero_when_label_and_feature_missing(layout, left_minus_right)
        norm = frobenius_norm(left_minus_right).item()
        return 0.5 * norm * norm

    @staticmethod
    def accumulate_partial(
        input_gradient: Tensor,
        left_minus_right: Tensor,
        scale: float,
    ) -> None:
        add_with_scale_of(scale, left_minus_right, input_gradient)


__all__ = ["SquareErrorNode"]
